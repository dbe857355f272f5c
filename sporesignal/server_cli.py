"""``sporesignal`` console entry point."""

from __future__ import annotations

import argparse
import os
from pathlib import Path

CONFIG_ENV = "SPORESIGNAL_CONFIG"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sporesignal",
        description="Serve paced signal ingestion, SSE streams and window classification.",
    )
    env_config = os.getenv(CONFIG_ENV)
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(env_config) if env_config else None,
        help=f"Path to config YAML (default: ${CONFIG_ENV}, else config.yaml)",
    )
    parser.add_argument("--host", default=None, help="Override server.host")
    parser.add_argument("--port", type=int, default=None, help="Override server.port")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    if args.port is not None and not 1 <= args.port <= 65535:
        raise SystemExit(f"--port must be 1-65535, got {args.port}")
    # The app module builds a server at import time unless told not to.
    os.environ.setdefault("SPORESIGNAL_DISABLE_AUTO_APP", "1")
    from sporesignal.app import serve

    serve(args.config, host=args.host, port=args.port)
