"""Paced replay of an uploaded series into the store and the live channel.

``IngestionPacer`` owns one sequential job per upload.  For each sample the
job writes to the durable store, publishes the same sample on the broadcast
channel and then waits the configured interval.  Writes are strictly
ordered within a job; different jobs run concurrently as separate tasks.

The durable write and the live publish are independent: a failed write
ends the job (samples already written stay), a failed publish only loses
that tick on the live channel.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from .domain_models import BroadcastMessage, ProgressMessage, Sample, utc_now_iso

if TYPE_CHECKING:
    from .broadcast import BroadcastChannel
    from .history_db import HistoryDB

LOGGER = logging.getLogger(__name__)

DEFAULT_INTERVAL_MS = 1000

JOB_PENDING = "pending"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_CANCELLED = "cancelled"
JOB_FAILED = "failed"
TERMINAL_JOB_STATES: frozenset[str] = frozenset({JOB_COMPLETED, JOB_CANCELLED, JOB_FAILED})

_ENTITY_STATUS_FOR_JOB: dict[str, str] = {
    JOB_COMPLETED: "complete",
    JOB_CANCELLED: "cancelled",
    JOB_FAILED: "failed",
}


class WriteFailure(RuntimeError):
    """A durable write failed mid-replay; earlier writes are kept."""

    def __init__(self, entity_id: str, inserted_so_far: int, total: int, cause: str) -> None:
        super().__init__(
            f"Write failed for entity {entity_id} after {inserted_so_far}/{total} sample(s): "
            f"{cause}"
        )
        self.entity_id = entity_id
        self.inserted_so_far = inserted_so_far
        self.total = total


@dataclass(slots=True)
class IngestReport:
    status: str
    entity_id: str
    inserted: int
    total: int


@dataclass(slots=True)
class IngestJob:
    job_id: str
    entity_id: str
    samples: Sequence[Sample]
    interval_ms: int
    status: str = JOB_PENDING
    inserted: int = 0
    error: str | None = None
    created_at: str = field(default_factory=utc_now_iso)
    finished_at: str | None = None
    task: asyncio.Task[IngestReport] | None = field(default=None, repr=False)

    @property
    def total(self) -> int:
        return len(self.samples)

    @property
    def done(self) -> bool:
        return self.status in TERMINAL_JOB_STATES

    def report(self) -> IngestReport:
        return IngestReport(
            status=self.status,
            entity_id=self.entity_id,
            inserted=self.inserted,
            total=self.total,
        )

    def snapshot(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "entityId": self.entity_id,
            "status": self.status,
            "inserted": self.inserted,
            "total": self.total,
            "intervalMs": self.interval_ms,
            "error": self.error,
            "createdAt": self.created_at,
            "finishedAt": self.finished_at,
        }


class IngestionPacer:
    def __init__(
        self,
        store: HistoryDB,
        channel: BroadcastChannel,
        interval_ms: int = DEFAULT_INTERVAL_MS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        max_finished_jobs: int = 256,
    ) -> None:
        self.store = store
        self.channel = channel
        self.interval_ms = max(0, int(interval_ms))
        self._sleep = sleep
        self._jobs: dict[str, IngestJob] = {}
        self._max_finished_jobs = max(1, int(max_finished_jobs))
        self._status_writes: set[asyncio.Future[None]] = set()

    # -- job registry ---------------------------------------------------------

    def get(self, job_id: str) -> IngestJob | None:
        return self._jobs.get(job_id)

    def active_jobs(self) -> list[IngestJob]:
        return [job for job in self._jobs.values() if not job.done]

    def has_active_job(self, entity_id: str) -> bool:
        return any(job.entity_id == entity_id for job in self.active_jobs())

    def snapshot(self) -> list[dict[str, Any]]:
        return [job.snapshot() for job in self._jobs.values()]

    def _prune_finished(self) -> None:
        finished = [job_id for job_id, job in self._jobs.items() if job.done]
        excess = len(finished) - self._max_finished_jobs
        for job_id in finished[: max(0, excess)]:
            self._jobs.pop(job_id, None)

    def create_job(
        self,
        entity_id: str,
        samples: Sequence[Sample],
        *,
        interval_ms: int | None = None,
        job_id: str | None = None,
    ) -> IngestJob:
        job_id = job_id or uuid4().hex
        existing = self._jobs.get(job_id)
        if existing is not None and not existing.done:
            raise ValueError(f"Ingest job {job_id} is already running")
        job = IngestJob(
            job_id=job_id,
            entity_id=entity_id,
            samples=list(samples),
            interval_ms=self.interval_ms if interval_ms is None else max(0, int(interval_ms)),
        )
        self._jobs[job_id] = job
        self._prune_finished()
        return job

    def start(
        self,
        entity_id: str,
        samples: Sequence[Sample],
        *,
        interval_ms: int | None = None,
        job_id: str | None = None,
    ) -> IngestJob:
        """Register a job and run it as a background task."""
        job = self.create_job(entity_id, samples, interval_ms=interval_ms, job_id=job_id)
        return self.launch(job)

    def launch(self, job: IngestJob) -> IngestJob:
        """Run a job reserved with :meth:`create_job` as a background task."""
        if job.task is not None:
            raise ValueError(f"Ingest job {job.job_id} was already launched")
        job.task = asyncio.create_task(self._run_guarded(job), name=f"ingest-{job.job_id}")
        job.task.add_done_callback(lambda task: self._on_task_done(job, task))
        return job

    def discard(self, job_id: str) -> bool:
        """Drop a reserved job that was never launched."""
        job = self._jobs.get(job_id)
        if job is None or job.task is not None:
            return False
        del self._jobs[job_id]
        return True

    def _on_task_done(self, job: IngestJob, task: asyncio.Task[IngestReport]) -> None:
        # A task cancelled before its first step never entered run().
        if task.cancelled() and not job.done:
            self._mark_finished(job, JOB_CANCELLED)
            self._publish_progress(job)
            write = asyncio.ensure_future(self._record_status(job))
            self._status_writes.add(write)
            write.add_done_callback(self._status_writes.discard)

    async def wait(self, job_id: str) -> IngestReport:
        """Wait for a started job; re-raises :class:`WriteFailure` for failed jobs."""
        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(job_id)
        if job.task is None:
            return job.report()
        await asyncio.wait([job.task])
        if job.status == JOB_FAILED:
            raise WriteFailure(job.entity_id, job.inserted, job.total, job.error or "unknown")
        return job.report()

    def cancel(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.done or job.task is None:
            return False
        job.task.cancel()
        return True

    async def cancel_all(self) -> None:
        tasks = [job.task for job in self.active_jobs() if job.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._status_writes:
            await asyncio.gather(*self._status_writes, return_exceptions=True)

    # -- replay ---------------------------------------------------------------

    async def _run_guarded(self, job: IngestJob) -> IngestReport:
        try:
            return await self.run(job)
        except WriteFailure:
            return job.report()

    async def run(self, job: IngestJob) -> IngestReport:
        """Replay *job* in order; return its report when done or cancelled."""
        job.status = JOB_RUNNING
        LOGGER.info(
            "Ingest job %s started: entity=%s samples=%d interval_ms=%d",
            job.job_id,
            job.entity_id,
            job.total,
            job.interval_ms,
        )
        try:
            for index, sample in enumerate(job.samples):
                try:
                    await self._write(job, sample)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    job.error = str(exc) or type(exc).__name__
                    LOGGER.error(
                        "Ingest job %s: write %d/%d failed; aborting with %d sample(s) stored",
                        job.job_id,
                        index + 1,
                        job.total,
                        job.inserted,
                        exc_info=True,
                    )
                    await self._finish(job, JOB_FAILED)
                    raise WriteFailure(job.entity_id, job.inserted, job.total, job.error) from exc
                self._publish(
                    BroadcastMessage(entity_id=job.entity_id, sample=sample, job_id=job.job_id)
                )
                self._publish_progress(job)
                if job.interval_ms > 0 and index + 1 < job.total:
                    await self._sleep(job.interval_ms / 1000.0)
        except asyncio.CancelledError:
            LOGGER.info(
                "Ingest job %s cancelled after %d/%d sample(s)",
                job.job_id,
                job.inserted,
                job.total,
            )
            await self._finish(job, JOB_CANCELLED)
            return job.report()
        await self._finish(job, JOB_COMPLETED)
        LOGGER.info("Ingest job %s completed: %d sample(s)", job.job_id, job.inserted)
        return job.report()

    async def _write(self, job: IngestJob, sample: Sample) -> None:
        write = asyncio.ensure_future(
            asyncio.to_thread(self.store.append_sample, job.entity_id, sample)
        )
        try:
            await asyncio.shield(write)
        except asyncio.CancelledError:
            # An issued write is final: let it land and count it, then stop.
            await asyncio.wait([write])
            if not write.cancelled() and write.exception() is None:
                job.inserted += 1
            raise
        job.inserted += 1

    def _mark_finished(self, job: IngestJob, status: str) -> None:
        job.status = status
        job.finished_at = utc_now_iso()

    async def _finish(self, job: IngestJob, status: str) -> None:
        self._mark_finished(job, status)
        await self._record_status(job)
        self._publish_progress(job)

    async def _record_status(self, job: IngestJob) -> None:
        try:
            await asyncio.to_thread(
                self.store.set_entity_status, job.entity_id, _ENTITY_STATUS_FOR_JOB[job.status]
            )
        except Exception:
            LOGGER.warning(
                "Could not record final status for entity %s", job.entity_id, exc_info=True
            )

    def _publish_progress(self, job: IngestJob) -> None:
        extra = {"error": job.error} if job.error else {}
        self._publish(
            ProgressMessage(
                job_id=job.job_id,
                entity_id=job.entity_id,
                inserted=job.inserted,
                total=job.total,
                status=job.status,
                extra=extra,
            )
        )

    def _publish(self, message: BroadcastMessage | ProgressMessage) -> None:
        try:
            self.channel.publish(message)
        except Exception:
            LOGGER.warning(
                "Live publish failed for entity %s; message dropped from the live channel",
                message.entity_id,
                exc_info=True,
            )
