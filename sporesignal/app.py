"""Runtime orchestration for upload -> paced ingest -> broadcast -> SSE/API.

Boundary note for maintainers:
- Keep this module focused on wiring, not algorithm details.
- Window classification belongs in ``classification.py`` / ``audio_params.py``.
- API schemas belong in ``api_models.py``.
"""

from __future__ import annotations

import argparse
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

import uvicorn
from fastapi import FastAPI

from .broadcast import BroadcastChannel
from .config import AppConfig, load_config
from .history_db import HistoryDB
from .ingest import IngestionPacer
from .range_cache import HistoryFetcher, RangeCache
from .routes import create_router
from .stream_gateway import StreamGateway

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class RuntimeState:
    config: AppConfig
    history_db: HistoryDB
    channel: BroadcastChannel
    pacer: IngestionPacer
    gateway: StreamGateway
    range_cache: RangeCache


def build_runtime(config: AppConfig) -> RuntimeState:
    history_db = HistoryDB(config.storage.db_path)
    channel = BroadcastChannel(queue_maxsize=config.stream.subscriber_queue_maxsize)
    return RuntimeState(
        config=config,
        history_db=history_db,
        channel=channel,
        pacer=IngestionPacer(history_db, channel, interval_ms=config.ingest.interval_ms),
        gateway=StreamGateway(channel, heartbeat_s=config.stream.heartbeat_s),
        range_cache=RangeCache(HistoryFetcher(history_db), ttl_s=config.cache.ttl_s),
    )


def create_app(config_path: Path | None = None) -> FastAPI:
    config = load_config(config_path)
    runtime = build_runtime(config)

    async def stop_runtime() -> None:
        active = len(runtime.pacer.active_jobs())
        if active:
            LOGGER.warning("Cancelling %d ingest job(s) on shutdown", active)
        await runtime.pacer.cancel_all()
        runtime.channel.close()
        try:
            runtime.history_db.close()
        except Exception:
            LOGGER.warning("Error closing history DB", exc_info=True)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            await stop_runtime()

    app = FastAPI(title="SporeSignal", lifespan=lifespan)
    app.state.runtime = runtime
    app.include_router(create_router(runtime))
    return app


app: FastAPI | None = (
    create_app()
    if __name__ != "__main__" and os.getenv("SPORESIGNAL_DISABLE_AUTO_APP", "0") != "1"
    else None
)


def serve(
    config_path: Path | None = None,
    *,
    host: str | None = None,
    port: int | None = None,
) -> None:
    """Build the app and run it under uvicorn; *host*/*port* override the config."""
    runtime_app = create_app(config_path=config_path)
    runtime: RuntimeState = runtime_app.state.runtime
    bind_host = host or runtime.config.server.host
    bind_port = port or runtime.config.server.port
    try:
        uvicorn.run(
            runtime_app,
            host=bind_host,
            port=bind_port,
            log_level=runtime.config.server.log_level,
        )
    except OSError:
        LOGGER.error("Failed to bind to %s:%d.", bind_host, bind_port, exc_info=True)
        raise


def main() -> None:
    parser = argparse.ArgumentParser(description="Run SporeSignal server")
    parser.add_argument("--config", type=Path, default=None, help="Path to config YAML")
    args = parser.parse_args()
    serve(args.config)


if __name__ == "__main__":
    main()
