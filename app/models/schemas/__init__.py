"""
Pydantic Schemas
All request/response models for API endpoints
"""

# Health check schemas
from .health import HealthResponse

# Sync schemas
from .sync import SyncRunResponse, SyncJobResponse, SyncRunListResponse

__all__ = [
    # Health
    "HealthResponse",
    # Sync
    "SyncRunResponse",
    "SyncJobResponse",
    "SyncRunListResponse",
]
