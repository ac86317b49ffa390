"""Job API — upload an image, trigger staging, poll status, download the result."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import Response
from pydantic import BaseModel

from app.jobs.errors import (
    DispatchFailed,
    DispatchRejected,
    FetchFailed,
    InvalidInput,
    InvalidState,
    JobError,
    JobExpired,
    JobNotFound,
    PayloadTooLarge,
    StoreFailed,
)
from app.jobs.manager import JobLifecycleManager

router = APIRouter()

_CHUNK_BYTES = 1024 * 1024

# Most specific first
_STATUS_CODES = [
    (JobNotFound, 404),
    (PayloadTooLarge, 413),
    (InvalidInput, 400),
    (InvalidState, 409),
    (JobExpired, 410),
    (DispatchRejected, 503),
    (DispatchFailed, 500),
    (FetchFailed, 502),
    (StoreFailed, 502),
]


class JobAcceptedResponse(BaseModel):
    job_id: str
    state: str
    message: str


def get_manager(request: Request) -> JobLifecycleManager:
    """Manager wired in by the app lifespan."""
    manager = getattr(request.app.state, "manager", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="Job manager not initialized")
    return manager


def status_code_for(exc: JobError) -> int:
    return next((code for cls, code in _STATUS_CODES if isinstance(exc, cls)), 500)


def to_http_error(exc: JobError) -> HTTPException:
    detail: Dict[str, Any] = {"error": exc.kind, "message": exc.message}
    if isinstance(exc, InvalidState):
        detail["state"] = getattr(exc.current, "value", exc.current)
    if isinstance(exc, (JobExpired, DispatchFailed)):
        detail["job_id"] = exc.record.id
        detail["state"] = exc.record.state.value
    return HTTPException(status_code=status_code_for(exc), detail=detail)


async def read_upload(image: Optional[UploadFile], limit: int) -> bytes:
    """Read the upload in chunks, stopping as soon as it exceeds ``limit``."""
    if image is None:
        raise InvalidInput("No image file provided")

    data = bytearray()
    while True:
        chunk = await image.read(_CHUNK_BYTES)
        if not chunk:
            break
        data.extend(chunk)
        if len(data) > limit:
            raise PayloadTooLarge(f"File too large (max {limit // (1024 * 1024)} MB)")
    return bytes(data)


@router.post("/upload", response_model=JobAcceptedResponse)
async def upload_image(
    image: Optional[UploadFile] = File(None),
    email: Optional[str] = Form(None),
    manager: JobLifecycleManager = Depends(get_manager),
):
    """Store an uploaded room photo and create a job for it.

    Processing does not start until POST /process/{job_id}.
    """
    try:
        data = await read_upload(image, manager.max_upload_bytes)
        job = await manager.create(
            data,
            requester=email,
            filename=image.filename,
            content_type=image.content_type,
        )
    except JobError as exc:
        raise to_http_error(exc)

    return JobAcceptedResponse(
        job_id=job.id,
        state=job.state.value,
        message="Image uploaded successfully. Use /process/{job_id} to start staging.",
    )


@router.post("/process/{job_id}", response_model=JobAcceptedResponse)
async def process_job(job_id: str, manager: JobLifecycleManager = Depends(get_manager)):
    """Start staging; returns as soon as the job is marked processing."""
    try:
        job = await manager.trigger(job_id)
    except JobError as exc:
        raise to_http_error(exc)

    return JobAcceptedResponse(
        job_id=job.id,
        state=job.state.value,
        message="Image processing started. Poll /job/{job_id} for status.",
    )


@router.get("/job/{job_id}")
async def get_job(job_id: str, manager: JobLifecycleManager = Depends(get_manager)):
    """Full snapshot of the job record."""
    try:
        job = await manager.query(job_id)
    except JobError as exc:
        raise to_http_error(exc)
    return job.snapshot()


@router.get("/download/{job_id}")
async def download_result(job_id: str, manager: JobLifecycleManager = Depends(get_manager)):
    """Staged image of a completed job."""
    try:
        content = await manager.fetch_result(job_id)
    except JobError as exc:
        raise to_http_error(exc)

    return Response(
        content=content,
        media_type="image/png",
        headers={"Content-Disposition": f'attachment; filename="staged_{job_id}.png"'},
    )
