"""
Sync Schemas
Models for sync trigger and history endpoints
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel

from app.services.sync.history import SyncRun


class SyncRunResponse(BaseModel):
    """One sync run, as returned by the trigger and history endpoints."""
    id: str
    connection_id: str
    mode: str
    status: str  # "in_progress", "completed", "failed"
    started_at: datetime
    completed_at: Optional[datetime] = None
    containers_processed: int
    items_created: int
    items_updated: int
    items_seen: int
    items_failed: int
    members_processed: int
    api_calls: int
    statistics: Dict[str, Any] = {}
    error_message: Optional[str] = None

    @classmethod
    def from_run(cls, run: SyncRun) -> "SyncRunResponse":
        return cls(**run.model_dump(mode="json", exclude={"tenant_id", "error_details"}))


class SyncJobResponse(BaseModel):
    """Response for a queued background sync."""
    status: str  # "queued"
    connection_id: str
    mode: str
    message_id: str


class SyncRunListResponse(BaseModel):
    connection_id: str
    runs: List[SyncRunResponse]
