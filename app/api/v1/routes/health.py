"""
Health Check Routes
System status and diagnostics
"""
import logging
from fastapi import APIRouter

from app.core.config import settings
from app.models.schemas.health import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

VERSION = "1.0.0"


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        version=VERSION,
        scheduler="enabled" if settings.sync_scheduler_enabled else "disabled",
    )


@router.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "Workspace Sync API",
        "version": VERSION,
        "description": "Incremental Slack workspace sync into Supabase",
        "endpoints": {
            "health": "/health",
            "sync": "/sync/connections/{connection_id}",
            "background_sync": "/sync/connections/{connection_id}/background",
            "runs": "/sync/connections/{connection_id}/runs",
        }
    }
