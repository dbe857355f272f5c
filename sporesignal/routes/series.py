"""Historical series reads, windowed classification and deletion."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, HTTPException, Query

from ..api_models import (
    DeleteSeriesResponse,
    SeriesListResponse,
    SeriesResponse,
    WindowsResponse,
)
from ..classification import ClassificationOptions, classify
from ..range_cache import FetchFailure
from ..ranges import LIVE_RANGE, range_hours, range_window_ms
from ._helpers import async_require_entity, normalize_entity_id_or_400, normalize_range_or_400

if TYPE_CHECKING:
    from ..app import RuntimeState

LOGGER = logging.getLogger(__name__)

_MAX_LIMIT = 100_000


def create_series_routes(state: RuntimeState) -> APIRouter:
    router = APIRouter()

    @router.get("/api/series", response_model=SeriesListResponse)
    async def list_series() -> SeriesListResponse:
        entities = await asyncio.to_thread(state.history_db.list_entities)
        return {"entities": [entity.to_dict() for entity in entities]}

    @router.get("/api/series/{entity_id}", response_model=SeriesResponse)
    async def get_series(
        entity_id: str,
        range_token: str | None = Query(default=None, alias="range"),
        limit: int | None = Query(default=None, ge=1, le=_MAX_LIMIT),
    ) -> SeriesResponse:
        entity_id = normalize_entity_id_or_400(entity_id)
        token = normalize_range_or_400(range_token)
        await async_require_entity(state.history_db, entity_id)
        if token == LIVE_RANGE:
            # The live view holds at most the newest live_max_points samples.
            live_max = state.config.cache.live_max_points
            limit = live_max if limit is None else min(limit, live_max)
        samples = await asyncio.to_thread(
            state.history_db.get_recent_window,
            entity_id,
            range_window_ms(token),
            limit=limit,
        )
        return {
            "entityId": entity_id,
            "samples": [sample.to_dict() for sample in samples],
            "meta": {"range": token, "count": len(samples), "hours": range_hours(token)},
        }

    @router.get("/api/series/{entity_id}/windows", response_model=WindowsResponse)
    async def get_series_windows(
        entity_id: str,
        range_token: str | None = Query(default="all", alias="range"),
        window_ms: int | None = Query(default=None, ge=1_000),
        hop_ms: int | None = Query(default=None, ge=1_000),
    ) -> WindowsResponse:
        entity_id = normalize_entity_id_or_400(entity_id)
        token = normalize_range_or_400(range_token)
        await async_require_entity(state.history_db, entity_id)
        try:
            range_slice = await state.range_cache.get(entity_id, token)
        except FetchFailure as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        cls_cfg = state.config.classification
        options = ClassificationOptions(
            window_ms=window_ms,
            hop_ms=hop_ms,
            min_windows=cls_cfg.min_windows,
            max_windows=cls_cfg.max_windows,
            min_window_ms=cls_cfg.min_window_ms,
            min_samples_per_window=cls_cfg.min_samples_per_window,
        )
        analysis = await asyncio.to_thread(classify, range_slice.samples, options)
        payload = analysis.to_dict()
        payload["entityId"] = entity_id
        payload["range"] = token
        return payload

    @router.delete("/api/series/{entity_id}", response_model=DeleteSeriesResponse)
    async def delete_series(entity_id: str) -> DeleteSeriesResponse:
        entity_id = normalize_entity_id_or_400(entity_id)
        if state.pacer.has_active_job(entity_id):
            raise HTTPException(
                status_code=409,
                detail="Cannot delete a series while its upload is still ingesting",
            )
        deleted = await asyncio.to_thread(state.history_db.delete_entity, entity_id)
        if not deleted:
            raise HTTPException(status_code=404, detail="Entity not found")
        state.range_cache.invalidate(entity_id)
        return {"entityId": entity_id, "status": "deleted"}

    return router
