"""Lifecycle manager behaviour: create, trigger, query, fetch-result."""

import asyncio

import pytest

from app.jobs.errors import (
    DispatchFailed,
    DispatchRejected,
    InvalidInput,
    InvalidState,
    JobExpired,
    JobNotFound,
    PayloadTooLarge,
    TransformFailed,
)
from app.jobs.models import JobRecord, JobState
from app.jobs.store import InMemoryJobStore
from app.storage.blobs import BlobGateway, LocalBlobBackend
from tests.conftest import RefusingQueue

pytestmark = pytest.mark.asyncio


def assert_invariants(job: JobRecord) -> None:
    assert (job.result_ref is not None) == (job.state == JobState.COMPLETED)
    assert (job.error_detail is not None) == (job.state in (JobState.FAILED, JobState.EXPIRED))
    if job.completed_at is not None:
        assert job.created_at <= job.completed_at


class SlowReadStore(InMemoryJobStore):
    """Yields to the event loop after every read so triggers can interleave."""

    async def get(self, job_id):
        record = await super().get(job_id)
        await asyncio.sleep(0)
        return record


class OutputsDownBackend(LocalBlobBackend):
    def put(self, bucket, key, data, content_type):
        if bucket == "outputs":
            raise OSError("bucket unavailable")
        super().put(bucket, key, data, content_type)


async def _create(manager, png_bytes) -> JobRecord:
    return await manager.create(
        png_bytes, requester="u@example.com", filename="room.png", content_type="image/png"
    )


async def test_create_records_created_job(manager, png_bytes):
    job = await _create(manager, png_bytes)

    assert job.state == JobState.CREATED
    assert job.source_ref == f"uploads/{job.id}/room.png"
    assert job.result_ref is None
    snapshot = await manager.query(job.id)
    assert snapshot.state == JobState.CREATED
    assert snapshot.requester == "u@example.com"
    assert await manager.blobs.fetch_original(job.source_ref) == png_bytes
    assert_invariants(snapshot)


async def test_create_rejects_missing_bytes(manager):
    with pytest.raises(InvalidInput):
        await manager.create(b"", requester="u@example.com")


async def test_create_rejects_non_image_content(manager):
    with pytest.raises(InvalidInput):
        await manager.create(b"%PDF-1.4", content_type="application/pdf")


async def test_create_rejects_oversized_upload(build_manager, png_bytes):
    manager = build_manager(max_upload_bytes=16)
    with pytest.raises(PayloadTooLarge):
        await manager.create(png_bytes, content_type="image/png")


async def test_trigger_runs_pipeline_to_completion(manager, invoker, png_bytes):
    job = await _create(manager, png_bytes)

    processing = await manager.trigger(job.id)
    assert processing.state == JobState.PROCESSING
    assert processing.started_at is not None
    assert_invariants(processing)

    await manager.dispatcher.join()
    done = await manager.query(job.id)
    assert done.state == JobState.COMPLETED
    assert done.result_ref.startswith(f"outputs/{job.id}/staged_")
    assert_invariants(done)
    assert await manager.fetch_result(job.id) == b"staged-bytes"
    assert invoker.calls == [(png_bytes, "stage this room", None)]


async def test_trigger_with_preprocessing_sends_normalized_png(build_manager, invoker, png_bytes):
    manager = build_manager(preprocess=True)
    await manager.start()
    try:
        job = await _create(manager, png_bytes)
        await manager.trigger(job.id)
        await manager.dispatcher.join()
    finally:
        await manager.stop()

    sent = invoker.calls[0][0]
    assert sent != png_bytes
    assert sent.startswith(b"\x89PNG")


async def test_trigger_unknown_job(manager):
    with pytest.raises(JobNotFound):
        await manager.trigger("job_missing")


async def test_trigger_after_max_age_expires_without_transform(manager, invoker, clock, png_bytes):
    job = await _create(manager, png_bytes)
    clock.advance(minutes=6)

    with pytest.raises(JobExpired) as excinfo:
        await manager.trigger(job.id)

    expired = excinfo.value.record
    assert expired.state == JobState.EXPIRED
    assert expired.error_detail == "expired"
    assert_invariants(expired)
    assert (await manager.query(job.id)).state == JobState.EXPIRED
    assert invoker.calls == []

    with pytest.raises(InvalidState) as excinfo:
        await manager.fetch_result(job.id)
    assert excinfo.value.current == JobState.EXPIRED


async def test_trigger_at_exactly_max_age_still_processes(manager, clock, png_bytes):
    job = await _create(manager, png_bytes)
    clock.advance(minutes=5)
    assert (await manager.trigger(job.id)).state == JobState.PROCESSING


async def test_transform_failure_marks_job_failed(manager, invoker, reporter, png_bytes):
    invoker.error = TransformFailed("content policy violation")
    job = await _create(manager, png_bytes)

    await manager.trigger(job.id)
    await manager.dispatcher.join()

    failed = await manager.query(job.id)
    assert failed.state == JobState.FAILED
    assert failed.error_detail == "transform: content policy violation"
    assert_invariants(failed)
    assert [(r[0], r[1]) for r in reporter.reports] == [(job.id, "transform")]

    with pytest.raises(InvalidState) as excinfo:
        await manager.fetch_result(job.id)
    assert excinfo.value.current == JobState.FAILED


async def test_missing_original_fails_at_fetch_stage(manager, store, clock, invoker):
    await store.insert(JobRecord(id="job_orphan", source_ref="uploads/job_orphan/gone.png", created_at=clock()))

    await manager.trigger("job_orphan")
    await manager.dispatcher.join()

    failed = await manager.query("job_orphan")
    assert failed.state == JobState.FAILED
    assert failed.error_detail.startswith("fetch: ")
    assert invoker.calls == []


async def test_result_store_failure_marks_job_failed(build_manager, tmp_path, png_bytes):
    manager = build_manager(blobs=BlobGateway(OutputsDownBackend(str(tmp_path / "down"))))
    await manager.start()
    try:
        job = await _create(manager, png_bytes)
        await manager.trigger(job.id)
        await manager.dispatcher.join()
        failed = await manager.query(job.id)
    finally:
        await manager.stop()

    assert failed.state == JobState.FAILED
    assert failed.error_detail.startswith("store: ")


async def test_retrigger_is_rejected_with_current_state(manager, invoker, png_bytes):
    invoker.gate = asyncio.Event()
    job = await _create(manager, png_bytes)
    await manager.trigger(job.id)

    with pytest.raises(InvalidState) as excinfo:
        await manager.trigger(job.id)
    assert excinfo.value.current == JobState.PROCESSING

    invoker.gate.set()
    await manager.dispatcher.join()
    with pytest.raises(InvalidState) as excinfo:
        await manager.trigger(job.id)
    assert excinfo.value.current == JobState.COMPLETED
    assert len(invoker.calls) == 1


async def test_concurrent_triggers_dispatch_exactly_once(build_manager, invoker, png_bytes):
    manager = build_manager(store=SlowReadStore())
    await manager.start()
    invoker.gate = asyncio.Event()
    try:
        job = await _create(manager, png_bytes)
        results = await asyncio.gather(
            manager.trigger(job.id), manager.trigger(job.id), return_exceptions=True
        )
        winners = [r for r in results if isinstance(r, JobRecord)]
        losers = [r for r in results if isinstance(r, InvalidState)]
        assert len(winners) == 1 and len(losers) == 1
        assert winners[0].state == JobState.PROCESSING
        assert losers[0].current == JobState.PROCESSING

        invoker.gate.set()
        await manager.dispatcher.join()
    finally:
        await manager.stop()

    assert len(invoker.calls) == 1


async def test_query_is_idempotent(manager, png_bytes):
    job = await _create(manager, png_bytes)
    first = await manager.query(job.id)
    second = await manager.query(job.id)
    assert first.snapshot() == second.snapshot()
    assert first.version == second.version


async def test_fetch_result_before_completion(manager, png_bytes):
    job = await _create(manager, png_bytes)
    with pytest.raises(InvalidState) as excinfo:
        await manager.fetch_result(job.id)
    assert excinfo.value.current == JobState.CREATED


async def test_trigger_without_capacity_leaves_job_created(build_manager, png_bytes):
    manager = build_manager()  # dispatcher never started
    job = await _create(manager, png_bytes)

    with pytest.raises(DispatchRejected):
        await manager.trigger(job.id)
    assert (await manager.query(job.id)).state == JobState.CREATED


async def test_pipeline_timeout_marks_job_failed(build_manager, invoker, png_bytes):
    invoker.gate = asyncio.Event()  # never released
    manager = build_manager(pipeline_timeout_seconds=0.05)
    await manager.start()
    try:
        job = await _create(manager, png_bytes)
        await manager.trigger(job.id)
        await manager.dispatcher.join()
        failed = await manager.query(job.id)
    finally:
        await manager.stop()

    assert failed.state == JobState.FAILED
    assert failed.error_detail.startswith("timeout: ")


async def test_reaped_job_ignores_late_pipeline_result(manager, invoker, clock, png_bytes):
    invoker.gate = asyncio.Event()
    job = await _create(manager, png_bytes)
    await manager.trigger(job.id)

    clock.advance(seconds=manager.stalled_after_seconds + 1)
    reaped = await manager.reap_stalled()
    assert [r.id for r in reaped] == [job.id]

    invoker.gate.set()
    await manager.dispatcher.join()

    final = await manager.query(job.id)
    assert final.state == JobState.EXPIRED
    assert final.error_detail.startswith("expired")
    assert final.result_ref is None
    assert_invariants(final)


async def test_watchdog_expires_stalled_jobs(build_manager, invoker, clock, png_bytes):
    invoker.gate = asyncio.Event()
    manager = build_manager(stalled_after_seconds=60, watchdog_interval_seconds=0.01)
    await manager.start()
    try:
        job = await _create(manager, png_bytes)
        await manager.trigger(job.id)
        clock.advance(seconds=61)
        for _ in range(200):
            if (await manager.query(job.id)).state == JobState.EXPIRED:
                break
            await asyncio.sleep(0.01)
        assert (await manager.query(job.id)).state == JobState.EXPIRED
    finally:
        await manager.stop()


async def test_stop_closes_invoker(build_manager, invoker):
    manager = build_manager()
    await manager.start()
    await manager.stop()
    assert invoker.closed


async def test_submit_refused_after_claim_fails_job_for_good(build_manager, invoker, png_bytes):
    manager = build_manager(dispatcher=RefusingQueue())
    await manager.start()
    try:
        job = await _create(manager, png_bytes)

        with pytest.raises(DispatchFailed) as excinfo:
            await manager.trigger(job.id)
        failed = excinfo.value.record
        assert failed.id == job.id
        assert failed.state == JobState.FAILED
        assert failed.error_detail == "dispatch: pipeline pool is shutting down"
        assert_invariants(failed)

        # Not retryable: a second trigger sees the terminal state
        with pytest.raises(InvalidState) as retry:
            await manager.trigger(job.id)
        assert retry.value.current == JobState.FAILED
    finally:
        await manager.stop()
    assert invoker.calls == []


async def test_unrecordable_outcome_is_reported_not_raised(manager, store, reporter, clock, png_bytes):
    job = await _create(manager, png_bytes)
    processing = job.transition(JobState.PROCESSING, at=clock())
    processing = await store.replace(processing, job.version)

    # The clock stepped back past created_at, so the completed record is invalid
    clock.advance(hours=-1)
    assert await manager._finish(processing, JobState.COMPLETED, result_ref="outputs/x.png") is None

    assert [(job_id, stage) for job_id, stage, _ in reporter.reports] == [(job.id, "record")]
    assert isinstance(reporter.reports[0][2], ValueError)
    assert (await manager.query(job.id)).state == JobState.PROCESSING


async def test_pipeline_survives_clock_step_back(manager, invoker, reporter, clock, png_bytes):
    invoker.gate = asyncio.Event()
    job = await _create(manager, png_bytes)
    await manager.trigger(job.id)

    clock.advance(hours=-1)
    invoker.gate.set()
    await manager.dispatcher.join()

    assert "record" in [stage for _, stage, _ in reporter.reports]
    assert (await manager.query(job.id)).state == JobState.PROCESSING