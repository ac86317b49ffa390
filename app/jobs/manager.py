"""Job lifecycle manager.

Owns every state change of a job:

    created -> processing -> completed | failed
    created -> expired          (trigger found the upload too old)
    processing -> expired       (watchdog found the pipeline orphaned)

Every write is a compare-and-set against the version the caller read, so two
triggers racing on the same job can never both dispatch a pipeline, and a
pipeline that outlived its job's processing window cannot overwrite it.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from functools import partial
from typing import Callable, List, Optional

from app.jobs.dispatcher import PipelineDispatcher
from app.jobs.errors import (
    ConcurrentUpdate,
    DispatchFailed,
    DispatchRejected,
    InvalidInput,
    InvalidState,
    JobError,
    JobExpired,
    PayloadTooLarge,
)
from app.jobs.models import JobRecord, JobState, new_job_id, utcnow
from app.jobs.pipeline import PipelineStageError, StagingPipeline
from app.jobs.reporting import ErrorReporter, LoggingErrorReporter
from app.jobs.store import JobStore
from app.storage.blobs import BlobGateway

logger = logging.getLogger(__name__)

EXPIRED_DETAIL = "expired"


class JobLifecycleManager:
    """Create, trigger, query and fetch results of staging jobs."""

    def __init__(
        self,
        store: JobStore,
        blobs: BlobGateway,
        pipeline: StagingPipeline,
        dispatcher: PipelineDispatcher,
        *,
        max_age_seconds: float = 300,
        max_upload_bytes: int = 10 * 1024 * 1024,
        pipeline_timeout_seconds: float = 600,
        stalled_after_seconds: float = 900,
        watchdog_interval_seconds: float = 0,
        reporter: Optional[ErrorReporter] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.blobs = blobs
        self.pipeline = pipeline
        self.dispatcher = dispatcher
        self.max_age_seconds = max_age_seconds
        self.max_upload_bytes = max_upload_bytes
        self.pipeline_timeout_seconds = pipeline_timeout_seconds
        self.stalled_after_seconds = stalled_after_seconds
        self.watchdog_interval_seconds = watchdog_interval_seconds
        self._reporter = reporter or LoggingErrorReporter()
        self._clock = clock
        self._watchdog: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle of the manager itself
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.dispatcher.start()
        if self.watchdog_interval_seconds > 0:
            self._watchdog = asyncio.create_task(self._watchdog_loop())

    async def stop(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            try:
                await self._watchdog
            except asyncio.CancelledError:
                pass
            self._watchdog = None
        await self.dispatcher.stop()
        await self.pipeline.invoker.aclose()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def create(
        self,
        data: bytes,
        *,
        requester: Optional[str] = None,
        filename: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> JobRecord:
        """Store the upload and record a new job in ``created``."""
        if not data:
            raise InvalidInput("No image file provided")
        if content_type and not content_type.startswith("image/"):
            raise InvalidInput("File must be an image")
        if len(data) > self.max_upload_bytes:
            raise PayloadTooLarge(
                f"File too large (max {self.max_upload_bytes // (1024 * 1024)} MB)"
            )

        job_id = new_job_id()
        source_ref = await self.blobs.store_original(
            job_id, filename, data, content_type or "application/octet-stream"
        )
        record = JobRecord(
            id=job_id,
            source_ref=source_ref,
            created_at=self._clock(),
            requester=requester,
            original_filename=filename,
            content_type=content_type,
        )
        stored = await self.store.insert(record)
        logger.info("Job %s created (%d bytes, requester=%s)", job_id, len(data), requester)
        return stored

    async def trigger(self, job_id: str) -> JobRecord:
        """Start processing. Returns the ``processing`` record.

        Raises JobNotFound, InvalidState (not ``created``), JobExpired (older
        than ``max_age_seconds``; the job is recorded as expired) or
        DispatchRejected (pool saturated; the job is left untouched). If the
        pool refuses the work after the job was claimed, the job is recorded
        as failed and DispatchFailed is raised instead.
        """
        job = await self.store.get(job_id)
        if job.state != JobState.CREATED:
            raise InvalidState(job_id, job.state, "process")

        now = self._clock()
        age = job.age_seconds(now)
        if age > self.max_age_seconds:
            expired = await self._claim(
                job, job.transition(JobState.EXPIRED, at=now, error_detail=EXPIRED_DETAIL)
            )
            logger.info("Job %s is too old (%ds), expired instead of processing", job_id, round(age))
            raise JobExpired(expired)

        if not self.dispatcher.has_capacity():
            raise DispatchRejected("Too many jobs in progress; try again shortly")

        processing = await self._claim(job, job.transition(JobState.PROCESSING, at=now))
        try:
            await self.dispatcher.submit(job_id, partial(self._run_pipeline, processing))
        except DispatchRejected as exc:
            failed = await self._finish(
                processing, JobState.FAILED, error_detail=f"dispatch: {exc.message}"
            )
            raise DispatchFailed(failed or await self.store.get(job_id), exc.message) from exc
        logger.info("Job %s processing started", job_id)
        return processing

    async def query(self, job_id: str) -> JobRecord:
        return await self.store.get(job_id)

    async def fetch_result(self, job_id: str) -> bytes:
        job = await self.store.get(job_id)
        if job.state != JobState.COMPLETED:
            raise InvalidState(job_id, job.state, "download")
        return await self.blobs.fetch_result(job.result_ref)

    async def reap_stalled(self) -> List[JobRecord]:
        """Expire ``processing`` jobs whose pipeline is gone (e.g. after a restart)."""
        cutoff = self._clock() - timedelta(seconds=self.stalled_after_seconds)
        reaped = []
        for job in await self.store.list_stalled(cutoff):
            detail = f"{EXPIRED_DETAIL}: no result {self.stalled_after_seconds:g}s after processing started"
            stored = await self._finish(job, JobState.EXPIRED, error_detail=detail)
            if stored is not None:
                reaped.append(stored)
        return reaped

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _claim(self, job: JobRecord, updated: JobRecord) -> JobRecord:
        """Compare-and-set used by trigger; a lost race reports the winner's state."""
        try:
            return await self.store.replace(updated, job.version)
        except ConcurrentUpdate:
            current = await self.store.get(job.id)
            raise InvalidState(job.id, current.state, "process") from None

    async def _run_pipeline(self, job: JobRecord) -> None:
        try:
            result_ref = await asyncio.wait_for(
                self.pipeline.run(job), timeout=self.pipeline_timeout_seconds
            )
        except PipelineStageError as exc:
            self._reporter.report(job.id, exc.stage, exc.cause)
            await self._finish(job, JobState.FAILED, error_detail=exc.detail)
            return
        except asyncio.TimeoutError as exc:
            self._reporter.report(job.id, "timeout", exc)
            await self._finish(
                job,
                JobState.FAILED,
                error_detail=f"timeout: no result after {self.pipeline_timeout_seconds:g}s",
            )
            return
        except Exception as exc:
            self._reporter.report(job.id, "pipeline", exc)
            await self._finish(job, JobState.FAILED, error_detail=f"pipeline: {exc}")
            return

        stored = await self._finish(job, JobState.COMPLETED, result_ref=result_ref)
        if stored is not None:
            logger.info("Job %s completed: %s", job.id, result_ref)

    async def _finish(self, job: JobRecord, state: JobState, **changes) -> Optional[JobRecord]:
        """Record a terminal outcome for a ``processing`` job read at ``job.version``."""
        try:
            final = job.transition(state, at=self._clock(), **changes)
            return await self.store.replace(final, job.version)
        except ConcurrentUpdate:
            logger.warning(
                "Job %s changed while its pipeline ran; %s outcome discarded", job.id, state.value
            )
        except (JobError, ValueError) as exc:
            # ValueError covers IllegalTransition and pydantic validation failures
            self._reporter.report(job.id, "record", exc)
        return None

    async def _watchdog_loop(self) -> None:
        while True:
            await asyncio.sleep(self.watchdog_interval_seconds)
            try:
                reaped = await self.reap_stalled()
            except Exception:
                logger.exception("Watchdog sweep failed")
                continue
            if reaped:
                logger.warning("Watchdog expired %d stalled job(s)", len(reaped))
