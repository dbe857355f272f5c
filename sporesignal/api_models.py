"""Pydantic request/response models for the SporeSignal HTTP API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class EntityMetadata(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    description: str = Field(default="", max_length=1024)
    kind: str = Field(default="", max_length=64)
    owner_id: str = Field(default="", max_length=128)


class UploadRequest(BaseModel):
    entity: EntityMetadata
    csv_text: str | None = None
    rows: list[list[Any]] | None = None
    interval_ms: int | None = Field(default=None, ge=0, le=3_600_000)
    job_id: str | None = Field(default=None, pattern=r"^[A-Za-z0-9_-]{1,64}$")
    wait: bool = True


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    status: str
    active_jobs: int
    active_streams: int
    subscribers: int
    published_total: int


class UploadResponse(BaseModel):
    status: str
    entityId: str
    jobId: str
    insertedCount: int
    totalCount: int
    insertedSignals: int
    totalCsvRows: int
    intervalMs: int
    error: str | None = None


class SeriesListResponse(BaseModel):
    entities: list[dict[str, Any]]


class SeriesSample(BaseModel):
    timestamp: str
    timestampMs: int
    value: float


class SeriesMeta(BaseModel):
    range: str
    count: int
    hours: int | None = None


class SeriesResponse(BaseModel):
    entityId: str
    samples: list[SeriesSample]
    meta: SeriesMeta


class WindowsResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    entityId: str
    range: str
    windowMs: int
    hopMs: int
    globalStats: dict[str, Any]
    windows: list[dict[str, Any]]


class DeleteSeriesResponse(BaseModel):
    entityId: str
    status: str


class IngestJobResponse(BaseModel):
    jobId: str
    entityId: str
    status: str
    inserted: int
    total: int
    intervalMs: int
    error: str | None = None
    createdAt: str
    finishedAt: str | None = None


class IngestCancelResponse(BaseModel):
    jobId: str
    cancelled: bool
