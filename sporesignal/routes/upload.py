"""Upload endpoint that replays a series into the store, plus ingest job control."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse

from ..api_models import (
    IngestCancelResponse,
    IngestJobResponse,
    UploadRequest,
    UploadResponse,
)
from ..domain_models import Entity
from ..ingest import JOB_COMPLETED, IngestJob, WriteFailure
from ..sample_parser import EmptyInputError, ParseResult, parse_csv_text, parse_rows

if TYPE_CHECKING:
    from ..app import RuntimeState

LOGGER = logging.getLogger(__name__)


def _parse_upload(req: UploadRequest, step_ms: int) -> ParseResult:
    if req.csv_text is not None and req.csv_text.strip():
        return parse_csv_text(req.csv_text, step_ms=step_ms)
    if req.rows:
        return parse_rows(req.rows, step_ms=step_ms, has_header=False)
    raise EmptyInputError("Upload carries neither csv_text nor rows")


def _upload_payload(
    job: IngestJob,
    parsed: ParseResult,
    *,
    status: str,
    inserted: int,
    error: str | None = None,
) -> dict[str, Any]:
    return {
        "status": status,
        "entityId": job.entity_id,
        "jobId": job.job_id,
        "insertedCount": inserted,
        "totalCount": job.total,
        "insertedSignals": inserted,
        "totalCsvRows": parsed.total_rows,
        "intervalMs": job.interval_ms,
        "error": error,
    }


def create_upload_routes(state: RuntimeState) -> APIRouter:
    router = APIRouter()

    @router.post("/api/upload", response_model=UploadResponse)
    async def upload(req: UploadRequest) -> UploadResponse | JSONResponse:
        try:
            parsed = _parse_upload(req, state.config.ingest.timestamp_step_ms)
        except EmptyInputError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        entity = Entity.from_dict({**req.entity.model_dump(), "status": "ingesting"})
        # The job id is held from before the entity insert until launch.
        try:
            job = state.pacer.create_job(
                entity.entity_id,
                parsed.samples,
                interval_ms=req.interval_ms,
                job_id=req.job_id,
            )
        except ValueError as exc:
            raise HTTPException(status_code=409, detail="Ingest job is already running") from exc
        try:
            await asyncio.to_thread(state.history_db.create_entity, entity)
        except BaseException:
            state.pacer.discard(job.job_id)
            raise
        state.pacer.launch(job)
        LOGGER.info(
            "Upload accepted: entity=%s job=%s rows=%d samples=%d",
            entity.entity_id,
            job.job_id,
            parsed.total_rows,
            job.total,
        )
        if not req.wait:
            return _upload_payload(job, parsed, status="accepted", inserted=0)

        try:
            report = await state.pacer.wait(job.job_id)
        except WriteFailure as exc:
            return JSONResponse(
                status_code=500,
                content=_upload_payload(
                    job,
                    parsed,
                    status="failed",
                    inserted=exc.inserted_so_far,
                    error=str(exc),
                ),
            )
        status = "ok" if report.status == JOB_COMPLETED else report.status
        return _upload_payload(job, parsed, status=status, inserted=report.inserted)

    @router.get("/api/ingest/jobs/{job_id}", response_model=IngestJobResponse)
    async def get_ingest_job(job_id: str) -> IngestJobResponse:
        job = state.pacer.get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Ingest job not found")
        return job.snapshot()

    @router.post("/api/ingest/jobs/{job_id}/cancel", response_model=IngestCancelResponse)
    async def cancel_ingest_job(job_id: str) -> IngestCancelResponse:
        if state.pacer.get(job_id) is None:
            raise HTTPException(status_code=404, detail="Ingest job not found")
        return {"jobId": job_id, "cancelled": state.pacer.cancel(job_id)}

    return router
