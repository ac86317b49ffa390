"""Browser-facing compatibility API.

Serves the paths and JSON shapes the existing web client already uses:
  POST /api/upload             -> {jobId, status: "uploaded", message}
  POST /api/process/{jobId}    -> {jobId, status: "processing", message}
  GET  /api/job/{jobId}        -> camelCase job record
  GET  /api/download/{jobId}   -> staged PNG

Errors come back as a flat ``{"error": ...}`` object instead of FastAPI's
``{"detail": ...}``. This is a thin layer over the same JobLifecycleManager
the /api/v1 routes use.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from app.api.v1.jobs import get_manager, read_upload, status_code_for
from app.jobs.errors import DispatchFailed, InvalidState, JobError, JobExpired, JobNotFound
from app.jobs.manager import JobLifecycleManager
from app.jobs.models import JobRecord, JobState

router = APIRouter()

# The web client calls a job that has not been processed yet "uploaded"
_CLIENT_STATUS = {JobState.CREATED: "uploaded"}


class CompatJobAccepted(BaseModel):
    jobId: str
    status: str
    message: str


class CompatJob(BaseModel):
    jobId: str
    email: Optional[str] = None
    originalImage: str
    status: str
    createdAt: str
    completedAt: Optional[str] = None
    stagedImage: Optional[str] = None
    error: Optional[str] = None


def client_status(state: JobState) -> str:
    return _CLIENT_STATUS.get(state, state.value)


def to_compat_job(job: JobRecord) -> CompatJob:
    return CompatJob(
        jobId=job.id,
        email=job.requester,
        originalImage=job.source_ref,
        status=client_status(job.state),
        createdAt=job.created_at.isoformat(),
        completedAt=job.completed_at.isoformat() if job.completed_at else None,
        stagedImage=job.result_ref,
        error=job.error_detail,
    )


def compat_error(exc: JobError, operation: str = "") -> JSONResponse:
    """Flat error body in the shape the web client reads."""
    status = status_code_for(exc)
    body: Dict[str, Any] = {"error": exc.message}

    if isinstance(exc, JobNotFound):
        body = {"error": "Job not found"}
    elif isinstance(exc, JobExpired):
        body = {
            "error": "Job expired",
            "message": "This job is too old. Please upload your image again.",
        }
    elif isinstance(exc, InvalidState):
        current = JobState(exc.current)
        if operation == "download":
            status = 400
            body = {"error": "Job not completed yet", "status": client_status(current)}
        else:
            body = {"error": exc.message, "status": client_status(current)}
    elif isinstance(exc, DispatchFailed):
        body = {
            "error": "Failed to start processing",
            "details": exc.message,
            "status": client_status(exc.record.state),
        }
    return JSONResponse(status_code=status, content=body)


@router.post("/upload", response_model=CompatJobAccepted)
async def upload_image(
    image: Optional[UploadFile] = File(None),
    email: Optional[str] = Form(None),
    manager: JobLifecycleManager = Depends(get_manager),
):
    try:
        data = await read_upload(image, manager.max_upload_bytes)
        job = await manager.create(
            data,
            requester=email,
            filename=image.filename,
            content_type=image.content_type,
        )
    except JobError as exc:
        return compat_error(exc)

    return CompatJobAccepted(
        jobId=job.id,
        status=client_status(job.state),
        message="Image uploaded successfully. Use /api/process/:jobId to start staging.",
    )


@router.post("/process/{job_id}", response_model=CompatJobAccepted)
async def process_job(job_id: str, manager: JobLifecycleManager = Depends(get_manager)):
    try:
        job = await manager.trigger(job_id)
    except JobError as exc:
        return compat_error(exc)

    return CompatJobAccepted(
        jobId=job.id,
        status=client_status(job.state),
        message="Image processing started. Check status at /api/job/:jobId",
    )


@router.get("/job/{job_id}", response_model=CompatJob)
async def get_job(job_id: str, manager: JobLifecycleManager = Depends(get_manager)):
    try:
        job = await manager.query(job_id)
    except JobError as exc:
        return compat_error(exc)
    return to_compat_job(job)


@router.get("/download/{job_id}")
async def download_result(job_id: str, manager: JobLifecycleManager = Depends(get_manager)):
    try:
        content = await manager.fetch_result(job_id)
    except JobError as exc:
        return compat_error(exc, "download")

    return Response(
        content=content,
        media_type="image/png",
        headers={"Content-Disposition": f'attachment; filename="staged_{job_id}.png"'},
    )
