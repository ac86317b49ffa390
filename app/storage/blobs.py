"""Blob storage for original uploads and staged results.

Keys follow the layout the upload clients already know:
  uploads/<job_id>/<original filename>     (uploads bucket)
  outputs/<job_id>/staged_<epoch-ms>.png   (outputs bucket)

The gateway only moves bytes; it never touches job records.
"""

import asyncio
import logging
import os
import re
import shutil
import time
from abc import ABC, abstractmethod
from functools import partial
from typing import Any, Callable, Optional

from supabase import Client

from app.jobs.errors import FetchFailed, StoreFailed

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


class BlobBackend(ABC):
    """Durable key -> bytes storage, grouped in buckets."""

    @abstractmethod
    def put(self, bucket: str, key: str, data: bytes, content_type: str) -> None:
        ...

    @abstractmethod
    def get(self, bucket: str, key: str) -> bytes:
        ...


class LocalBlobBackend(BlobBackend):
    """Files on local disk, one directory per bucket, with TTL-based cleanup."""

    def __init__(self, base_dir: str, ttl_hours: int = 24):
        self._base_dir = base_dir
        os.makedirs(self._base_dir, exist_ok=True)
        self._ttl_seconds = ttl_hours * 3600

    def _path(self, bucket: str, key: str) -> str:
        parts = [bucket] + key.split("/")
        if any(p in ("", ".", "..") for p in parts):
            raise ValueError(f"Invalid blob key: {bucket}/{key}")
        return os.path.join(self._base_dir, *parts)

    def put(self, bucket: str, key: str, data: bytes, content_type: str) -> None:
        path = self._path(bucket, key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        # Write then rename so readers never see a partial file
        tmp_path = f"{path}.part"
        with open(tmp_path, "wb") as dst:
            dst.write(data)
        os.replace(tmp_path, path)

    def get(self, bucket: str, key: str) -> bytes:
        with open(self._path(bucket, key), "rb") as src:
            return src.read()

    def cleanup_expired(self) -> int:
        """Remove job directories older than TTL. Returns count of removed dirs."""
        now = time.time()
        removed = 0
        for bucket in os.listdir(self._base_dir):
            bucket_dir = os.path.join(self._base_dir, bucket)
            if not os.path.isdir(bucket_dir):
                continue
            for prefix in os.listdir(bucket_dir):
                prefix_dir = os.path.join(bucket_dir, prefix)
                if not os.path.isdir(prefix_dir):
                    continue
                for entry in os.listdir(prefix_dir):
                    job_dir = os.path.join(prefix_dir, entry)
                    if os.path.isdir(job_dir) and now - os.path.getmtime(job_dir) > self._ttl_seconds:
                        shutil.rmtree(job_dir, ignore_errors=True)
                        removed += 1
        return removed


class SupabaseBlobBackend(BlobBackend):
    """Supabase Storage buckets."""

    def __init__(self, client: Client):
        self._client = client

    def put(self, bucket: str, key: str, data: bytes, content_type: str) -> None:
        self._client.storage.from_(bucket).upload(
            key, data, {"content-type": content_type, "upsert": "false"}
        )

    def get(self, bucket: str, key: str) -> bytes:
        return self._client.storage.from_(bucket).download(key)


class BlobGateway:
    """Fetch-original / store-result operations addressed by job id."""

    def __init__(
        self,
        backend: BlobBackend,
        uploads_bucket: str = "uploads",
        outputs_bucket: str = "outputs",
        clock: Callable[[], float] = time.time,
    ):
        self._backend = backend
        self._uploads_bucket = uploads_bucket
        self._outputs_bucket = outputs_bucket
        self._clock = clock

    @property
    def backend(self) -> BlobBackend:
        return self._backend

    async def store_original(
        self,
        job_id: str,
        filename: Optional[str],
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> str:
        source_ref = f"uploads/{job_id}/{safe_filename(filename)}"
        try:
            await _in_executor(self._backend.put, self._uploads_bucket, source_ref, data, content_type)
        except Exception as exc:
            logger.error("Storing original %s failed: %s", source_ref, exc)
            raise StoreFailed(f"could not store upload: {exc}") from exc
        return source_ref

    async def fetch_original(self, source_ref: str) -> bytes:
        try:
            return await _in_executor(self._backend.get, self._uploads_bucket, source_ref)
        except Exception as exc:
            raise FetchFailed(f"could not fetch original {source_ref}: {exc}") from exc

    async def store_result(self, job_id: str, data: bytes) -> str:
        # Timestamp suffix keeps a later attempt from overwriting an earlier output
        result_ref = f"outputs/{job_id}/staged_{int(self._clock() * 1000)}.png"
        try:
            await _in_executor(self._backend.put, self._outputs_bucket, result_ref, data, "image/png")
        except Exception as exc:
            raise StoreFailed(f"could not store result {result_ref}: {exc}") from exc
        return result_ref

    async def fetch_result(self, result_ref: str) -> bytes:
        try:
            return await _in_executor(self._backend.get, self._outputs_bucket, result_ref)
        except Exception as exc:
            raise FetchFailed(f"could not fetch result {result_ref}: {exc}") from exc


def safe_filename(filename: Optional[str]) -> str:
    name = os.path.basename((filename or "").replace("\\", "/"))
    name = _SAFE_NAME.sub("_", name).strip("._")
    return name or "image"


async def _in_executor(fn: Callable, *args: Any):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(fn, *args))
