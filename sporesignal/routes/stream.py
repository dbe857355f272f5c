"""Server-Sent Events endpoint relaying live samples and ingest progress."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from ..domain_models import normalize_entity_id
from ..stream_gateway import SSE_HEADERS

if TYPE_CHECKING:
    from ..app import RuntimeState

LOGGER = logging.getLogger(__name__)


def create_stream_routes(state: RuntimeState) -> APIRouter:
    router = APIRouter()

    @router.get("/api/stream")
    async def stream(
        request: Request,
        entity_id: str | None = Query(default=None),
        job_id: str | None = Query(default=None),
    ) -> StreamingResponse:
        try:
            entity_id = normalize_entity_id(entity_id) if entity_id else None
            job_id = normalize_entity_id(job_id) if job_id else None
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid entity_id or job_id") from exc
        LOGGER.debug("Stream client connected (entity=%s job=%s)", entity_id, job_id)
        return StreamingResponse(
            state.gateway.stream(
                entity_id=entity_id,
                job_id=job_id,
                is_disconnected=request.is_disconnected,
            ),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    return router
