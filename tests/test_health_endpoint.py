"""Tests for the /api/health endpoint."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from conftest import route_endpoint

from sporesignal.routes import create_router


def test_health_route_registered() -> None:
    router = create_router(MagicMock())
    routes = {r.path: r.methods for r in router.routes if hasattr(r, "methods")}
    assert "GET" in routes["/api/health"]


@pytest.mark.asyncio
async def test_health_endpoint_response_shape() -> None:
    state = MagicMock()
    state.pacer.active_jobs.return_value = [object(), object()]
    state.gateway.active_streams = 3
    state.channel.subscriber_count = 4
    state.channel.published_total = 120

    result = await route_endpoint(create_router(state), "/api/health")()

    assert result == {
        "status": "ok",
        "active_jobs": 2,
        "active_streams": 3,
        "subscribers": 4,
        "published_total": 120,
    }
