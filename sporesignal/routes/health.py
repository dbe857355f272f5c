"""Health check endpoint."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter

from ..api_models import HealthResponse

if TYPE_CHECKING:
    from ..app import RuntimeState


def create_health_routes(state: RuntimeState) -> APIRouter:
    router = APIRouter()

    @router.get("/api/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return {
            "status": "ok",
            "active_jobs": len(state.pacer.active_jobs()),
            "active_streams": state.gateway.active_streams,
            "subscribers": state.channel.subscriber_count,
            "published_total": state.channel.published_total,
        }

    return router
