"""The staging pipeline: fetch -> preprocess -> transform -> store."""

import asyncio
import logging
from typing import Optional

from app.jobs.models import JobRecord
from app.processing.images import build_edit_mask, normalize_image
from app.storage.blobs import BlobGateway
from app.transform.base import TransformInvoker

logger = logging.getLogger(__name__)


class PipelineStageError(Exception):
    """A pipeline stage failed; ``stage`` names which one."""

    def __init__(self, stage: str, cause: BaseException):
        super().__init__(f"{stage}: {_describe(cause)}")
        self.stage = stage
        self.cause = cause

    @property
    def detail(self) -> str:
        return str(self)


class StagingPipeline:
    """Runs one job's transformation. Knows nothing about job state."""

    def __init__(
        self,
        blobs: BlobGateway,
        invoker: TransformInvoker,
        prompt: str,
        *,
        preprocess: bool = True,
        dimension: int = 1024,
        use_mask: bool = False,
    ):
        self.blobs = blobs
        self.invoker = invoker
        self.prompt = prompt
        self.preprocess = preprocess
        self.dimension = dimension
        self.use_mask = use_mask

    async def run(self, job: JobRecord) -> str:
        """Return the result ref for ``job``; raises PipelineStageError."""
        try:
            image = await self.blobs.fetch_original(job.source_ref)
        except Exception as exc:
            raise PipelineStageError("fetch", exc) from exc
        logger.info("Job %s: original fetched (%d bytes)", job.id, len(image))

        mask: Optional[bytes] = None
        if self.preprocess:
            try:
                loop = asyncio.get_running_loop()
                image = await loop.run_in_executor(None, normalize_image, image, self.dimension)
                if self.use_mask:
                    mask = build_edit_mask(self.dimension)
            except Exception as exc:
                raise PipelineStageError("preprocess", exc) from exc
            logger.info("Job %s: normalized to %dx%d PNG", job.id, self.dimension, self.dimension)

        try:
            staged = await self.invoker.transform(image, self.prompt, mask=mask)
        except Exception as exc:
            raise PipelineStageError("transform", exc) from exc
        logger.info("Job %s: staged image received (%d bytes)", job.id, len(staged))

        try:
            return await self.blobs.store_result(job.id, staged)
        except Exception as exc:
            raise PipelineStageError("store", exc) from exc


def _describe(exc: BaseException) -> str:
    message = str(exc)
    return message if message else type(exc).__name__
