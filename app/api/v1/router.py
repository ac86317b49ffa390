"""Aggregate all v1 API routers."""

from fastapi import APIRouter
from app.api.v1.jobs import router as jobs_router
from app.api.v1.compat import router as compat_router

v1_router = APIRouter(prefix="/api/v1")
v1_router.include_router(jobs_router, tags=["jobs"])

# Compatibility shim: /api/upload, /api/process, /api/job, /api/download in the web client's shapes
jobs_router_compat = APIRouter(prefix="/api")
jobs_router_compat.include_router(compat_router, tags=["jobs-compat"])
