"""Builds the job lifecycle manager and its collaborators from settings."""

from typing import Optional

from supabase import Client

from app.config import Settings
from app.db.supabase_client import create_supabase
from app.jobs.in_process_queue import InProcessQueue
from app.jobs.manager import JobLifecycleManager
from app.jobs.pipeline import StagingPipeline
from app.jobs.store import InMemoryJobStore, JobStore
from app.jobs.supabase_store import SupabaseJobStore
from app.storage.blobs import BlobBackend, BlobGateway, LocalBlobBackend, SupabaseBlobBackend
from app.transform.openai_images import OpenAIImageEditor


class _LazySupabase:
    """Creates the Supabase client only if some backend asks for it."""

    def __init__(self, settings: Settings):
        self._settings = settings
        self._client: Optional[Client] = None

    def get(self) -> Client:
        if self._client is None:
            self._client = create_supabase(self._settings)
        return self._client


def build_job_store(settings: Settings, supabase: _LazySupabase) -> JobStore:
    if settings.job_store_backend == "memory":
        return InMemoryJobStore()
    if settings.job_store_backend == "supabase":
        return SupabaseJobStore(supabase.get(), table=settings.supabase_jobs_table)
    raise ValueError(f"Unknown job_store_backend: {settings.job_store_backend!r}")


def build_blob_backend(settings: Settings, supabase: _LazySupabase) -> BlobBackend:
    if settings.blob_backend == "local":
        return LocalBlobBackend(settings.blob_dir, ttl_hours=settings.blob_ttl_hours)
    if settings.blob_backend == "supabase":
        return SupabaseBlobBackend(supabase.get())
    raise ValueError(f"Unknown blob_backend: {settings.blob_backend!r}")


def build_manager(settings: Settings) -> JobLifecycleManager:
    supabase = _LazySupabase(settings)

    blobs = BlobGateway(
        build_blob_backend(settings, supabase),
        uploads_bucket=settings.uploads_bucket,
        outputs_bucket=settings.outputs_bucket,
    )
    invoker = OpenAIImageEditor(
        settings.openai_api_key,
        base_url=settings.openai_base_url,
        model=settings.openai_image_model,
        size=f"{settings.image_dimension}x{settings.image_dimension}",
        organization=settings.openai_organization,
        timeout=settings.openai_timeout_seconds,
        analyze_room_first=settings.analyze_room_first,
        vision_model=settings.openai_vision_model,
        mode=settings.openai_image_mode,
        quality=settings.openai_image_quality,
        generation_prompt_template=settings.generation_prompt_template,
    )
    pipeline = StagingPipeline(
        blobs,
        invoker,
        settings.staging_prompt,
        preprocess=settings.preprocess_images,
        dimension=settings.image_dimension,
        use_mask=settings.use_edit_mask,
    )
    dispatcher = InProcessQueue(
        concurrency=settings.max_concurrent_pipelines,
        max_pending=settings.max_pending_pipelines,
    )
    return JobLifecycleManager(
        build_job_store(settings, supabase),
        blobs,
        pipeline,
        dispatcher,
        max_age_seconds=settings.max_job_age_seconds,
        max_upload_bytes=settings.max_upload_bytes,
        pipeline_timeout_seconds=settings.pipeline_timeout_seconds,
        stalled_after_seconds=settings.stalled_after_seconds,
        watchdog_interval_seconds=settings.watchdog_interval_seconds,
    )
