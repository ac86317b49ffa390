"""Application configuration via environment variables."""

import os
import tempfile

from pydantic_settings import BaseSettings
from typing import Optional

from app.transform.openai_images import GENERATION_PROMPT_TEMPLATE


DEFAULT_STAGING_PROMPT = (
    "Transform this empty room into a beautifully staged, professionally "
    "furnished space. Add modern furniture, tasteful decor, proper lighting, "
    "and create an inviting atmosphere that would appeal to potential home "
    "buyers. Maintain the room's architecture and structure."
)


class Settings(BaseSettings):
    # Server
    port: int = 3000
    log_level: str = "INFO"

    # Job lifecycle
    max_job_age_seconds: int = 300
    pipeline_timeout_seconds: int = 600
    stalled_after_seconds: int = 900
    watchdog_interval_seconds: int = 60

    # Dispatch pool
    max_concurrent_pipelines: int = 4
    max_pending_pipelines: int = 100

    # Uploads
    max_upload_bytes: int = 10 * 1024 * 1024

    # Preprocessing
    preprocess_images: bool = True
    image_dimension: int = 1024
    use_edit_mask: bool = False

    # Transformation service (OpenAI-compatible)
    staging_prompt: str = DEFAULT_STAGING_PROMPT
    openai_api_key: str = ""
    openai_organization: Optional[str] = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_image_model: str = "dall-e-2"
    openai_vision_model: str = "gpt-4o"
    openai_timeout_seconds: float = 120.0
    analyze_room_first: bool = False
    # "edit" posts the photo to /images/edits; "generate" asks /images/generations
    # (e.g. dall-e-3 with quality "hd") for a staged rendering of the analyzed room
    openai_image_mode: str = "edit"
    openai_image_quality: Optional[str] = None
    generation_prompt_template: str = GENERATION_PROMPT_TEMPLATE

    # Storage backends: "memory"/"supabase" for jobs, "local"/"supabase" for blobs
    job_store_backend: str = "memory"
    blob_backend: str = "local"
    blob_dir: str = os.path.join(tempfile.gettempdir(), "room_staging_blobs")
    blob_ttl_hours: int = 24
    uploads_bucket: str = "uploads"
    outputs_bucket: str = "outputs"

    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_jobs_table: str = "staging_jobs"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
