"""Shared route helpers used across multiple route modules."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from fastapi import HTTPException

from ..domain_models import Entity, normalize_entity_id
from ..ranges import normalize_range_token

if TYPE_CHECKING:
    from ..history_db import HistoryDB


def normalize_entity_id_or_400(entity_id: str) -> str:
    """Normalize an entity id or raise HTTP 400."""
    try:
        return normalize_entity_id(entity_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid entity_id") from exc


def normalize_range_or_400(token: str | None) -> str:
    try:
        return normalize_range_token(token)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Unknown range {token!r}") from exc


async def async_require_entity(history_db: HistoryDB, entity_id: str) -> Entity:
    """Fetch an entity in a thread or raise 404."""
    entity = await asyncio.to_thread(history_db.get_entity, entity_id)
    if entity is None:
        raise HTTPException(status_code=404, detail="Entity not found")
    return entity
