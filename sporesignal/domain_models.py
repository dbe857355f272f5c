"""Domain model objects for the SporeSignal backend.

Typed dataclasses for samples, tracked entities and the live messages that
travel over the broadcast channel.  External JSON contracts (API responses,
SSE frames) are produced through the ``to_*`` helpers so the wire shape
stays in one place.
"""

from __future__ import annotations

import math
import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

ENTITY_STATUSES: tuple[str, ...] = ("ingesting", "complete", "cancelled", "failed")

_ENTITY_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
_ONE_MS = timedelta(milliseconds=1)

# Epoch milliseconds that ``datetime`` can still render.
MIN_TIMESTAMP_MS: int = (datetime.min.replace(tzinfo=UTC) - _EPOCH) // _ONE_MS
MAX_TIMESTAMP_MS: int = (datetime.max.replace(tzinfo=UTC) - _EPOCH) // _ONE_MS


def _as_float_or_none(value: object) -> float | None:
    if value in (None, ""):
        return None
    try:
        out = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if math.isnan(out) or math.isinf(out):
        return None
    return out


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def new_entity_id() -> str:
    return uuid.uuid4().hex


def normalize_entity_id(entity_id: str) -> str:
    """Strip *entity_id* and reject anything outside ``[A-Za-z0-9_-]{1,64}``."""
    text = str(entity_id).strip()
    if not _ENTITY_ID_RE.match(text):
        raise ValueError(f"Invalid entity id: {entity_id!r}")
    return text


def ms_to_iso(timestamp_ms: int) -> str:
    """Render epoch milliseconds as an ISO-8601 UTC string with a ``Z`` suffix."""
    dt = _EPOCH + timedelta(milliseconds=int(timestamp_ms))
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _in_range_ms(timestamp_ms: float) -> int | None:
    if not MIN_TIMESTAMP_MS <= timestamp_ms <= MAX_TIMESTAMP_MS:
        return None
    return int(timestamp_ms)


def parse_timestamp_ms(value: object) -> int | None:
    """Parse an ISO-8601 string or epoch-milliseconds number; ``None`` if invalid.

    Naive ISO timestamps are taken as UTC.  Numbers outside the range
    ``ms_to_iso`` can render are rejected.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _in_range_ms(value) if math.isfinite(value) else None
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    numeric = _as_float_or_none(text)
    if numeric is not None:
        return _in_range_ms(numeric)
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return _in_range_ms((dt - _EPOCH) // _ONE_MS)


@dataclass(frozen=True, slots=True)
class Sample:
    timestamp_ms: int
    value: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": ms_to_iso(self.timestamp_ms),
            "timestampMs": self.timestamp_ms,
            "value": self.value,
        }


@dataclass(slots=True)
class Entity:
    entity_id: str
    name: str
    description: str = ""
    kind: str = ""
    owner_id: str = ""
    status: str = "ingesting"
    sample_count: int = 0
    created_at: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Entity:
        status = str(data.get("status") or "ingesting")
        return cls(
            entity_id=str(data.get("entity_id") or new_entity_id()),
            name=str(data.get("name") or "").strip()[:128],
            description=str(data.get("description") or "").strip()[:1024],
            kind=str(data.get("kind") or "").strip()[:64],
            owner_id=str(data.get("owner_id") or "").strip()[:128],
            status=status if status in ENTITY_STATUSES else "ingesting",
            sample_count=int(data.get("sample_count") or 0),
            created_at=data.get("created_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "name": self.name,
            "description": self.description,
            "kind": self.kind,
            "owner_id": self.owner_id,
            "status": self.status,
            "sample_count": self.sample_count,
            "created_at": self.created_at,
        }


@dataclass(frozen=True, slots=True)
class BroadcastMessage:
    """One live reading, produced once per inserted sample."""

    entity_id: str
    sample: Sample
    job_id: str | None = None

    def to_item(self) -> dict[str, Any]:
        item = {"entityId": self.entity_id}
        item.update(self.sample.to_dict())
        return item


@dataclass(frozen=True, slots=True)
class ProgressMessage:
    job_id: str
    entity_id: str
    inserted: int
    total: int
    status: str = "running"
    extra: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": "progress",
            "jobId": self.job_id,
            "entityId": self.entity_id,
            "inserted": self.inserted,
            "total": self.total,
            "status": self.status,
        }
        payload.update(self.extra)
        return payload


StreamMessage = BroadcastMessage | ProgressMessage
