"""Health check and service banner."""

from fastapi import APIRouter

router = APIRouter()

SERVICE_NAME = "Room Staging API"
SERVICE_VERSION = "0.1.0"


@router.get("/health")
async def health_check():
    return {"ok": True}


@router.get("/")
async def service_info():
    """Service status and the job endpoints, as the upload clients expect."""
    return {
        "status": f"{SERVICE_NAME} is running",
        "version": SERVICE_VERSION,
        "endpoints": {
            "upload": "POST /api/v1/upload",
            "process": "POST /api/v1/process/{job_id}",
            "status": "GET /api/v1/job/{job_id}",
            "download": "GET /api/v1/download/{job_id}",
        },
    }
