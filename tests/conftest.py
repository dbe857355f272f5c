"""Shared test helpers for the sporesignal test suite."""

from __future__ import annotations

import asyncio
import os
import time

from sporesignal.domain_models import Sample

# Importing sporesignal.app must not build a server against the default config.
os.environ.setdefault("SPORESIGNAL_DISABLE_AUTO_APP", "1")

T0_MS = 1_767_225_600_000  # 2026-01-01T00:00:00Z


def wait_until(predicate, timeout_s: float = 2.0, step_s: float = 0.02) -> bool:
    """Poll *predicate* until it returns truthy, or *timeout_s* expires."""
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(step_s)
    return False


async def async_wait_until(predicate, timeout_s: float = 2.0, step_s: float = 0.02) -> bool:
    """Async version of :func:`wait_until` that yields to the event loop between polls."""
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(step_s)
    return False


def make_samples(values, *, start_ms: int = T0_MS, step_ms: int = 1000) -> list[Sample]:
    """Evenly spaced samples carrying *values* in order."""
    return [
        Sample(timestamp_ms=start_ms + i * step_ms, value=float(v)) for i, v in enumerate(values)
    ]


def route_endpoint(router, path: str, method: str | None = None):
    for route in router.routes:
        if getattr(route, "path", "") != path:
            continue
        if method is not None and method not in getattr(route, "methods", set()):
            continue
        return route.endpoint
    raise AssertionError(f"Route not found: {path}")
