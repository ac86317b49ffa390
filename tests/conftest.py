import asyncio
import io
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import pytest
from PIL import Image

from app.jobs.errors import DispatchRejected
from app.jobs.in_process_queue import InProcessQueue
from app.jobs.manager import JobLifecycleManager
from app.jobs.pipeline import StagingPipeline
from app.jobs.reporting import ErrorReporter
from app.jobs.store import InMemoryJobStore
from app.storage.blobs import BlobGateway, LocalBlobBackend
from app.transform.base import TransformInvoker


class FakeClock:
    """Settable wall clock for age and watchdog checks."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeInvoker(TransformInvoker):
    """Records calls; optionally blocks on ``gate`` or raises ``error``."""

    def __init__(self, result: bytes = b"staged-bytes"):
        self.result = result
        self.error: Optional[BaseException] = None
        self.gate: Optional[asyncio.Event] = None
        self.calls: List[Tuple[bytes, str, Optional[bytes]]] = []
        self.closed = False

    async def transform(self, image, prompt, mask=None):
        self.calls.append((image, prompt, mask))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result

    async def aclose(self):
        self.closed = True


class RefusingQueue(InProcessQueue):
    """Reports capacity but refuses every submission."""

    def has_capacity(self) -> bool:
        return True

    async def submit(self, job_id, work):
        raise DispatchRejected("pipeline pool is shutting down")


class RecordingReporter(ErrorReporter):
    def __init__(self):
        self.reports = []

    def report(self, job_id, stage, error):
        self.reports.append((job_id, stage, error))


def make_png(width: int = 64, height: int = 48, color=(200, 180, 160)) -> bytes:
    out = io.BytesIO()
    Image.new("RGB", (width, height), color).save(out, format="PNG")
    return out.getvalue()


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def blobs(tmp_path) -> BlobGateway:
    return BlobGateway(LocalBlobBackend(str(tmp_path / "blobs")))


@pytest.fixture
def invoker() -> FakeInvoker:
    return FakeInvoker()


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()


@pytest.fixture
def build_manager(store, blobs, invoker, reporter, clock):
    """Factory for managers over the shared fakes; keyword overrides win."""

    def _build(**overrides) -> JobLifecycleManager:
        gateway = overrides.pop("blobs", blobs)
        pipeline = StagingPipeline(
            gateway,
            overrides.pop("invoker", invoker),
            "stage this room",
            preprocess=overrides.pop("preprocess", False),
            dimension=32,
        )
        dispatcher = overrides.pop("dispatcher", None) or InProcessQueue(concurrency=2, max_pending=10)
        return JobLifecycleManager(
            overrides.pop("store", store),
            gateway,
            pipeline,
            dispatcher,
            reporter=reporter,
            clock=clock,
            **overrides,
        )

    return _build


@pytest.fixture
async def manager(build_manager):
    manager = build_manager()
    await manager.start()
    yield manager
    await manager.stop()
