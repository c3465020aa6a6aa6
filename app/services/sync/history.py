"""
Sync History
SyncRun model and its append-only recorder

A run is inserted once with status in_progress and updated once when it
reaches completed or failed. Terminal runs are never written again.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from app.services.sync.database import SyncStore
from app.services.sync.records import SyncMode

logger = logging.getLogger(__name__)

STALE_RUN_MESSAGE = "Sync run abandoned"


class SyncStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class TerminalRunError(RuntimeError):
    """Attempt to transition a run that already completed or failed."""


class SyncRun(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str
    connection_id: str
    mode: SyncMode
    status: SyncStatus = SyncStatus.IN_PROGRESS
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    containers_processed: int = 0
    items_created: int = 0
    items_updated: int = 0
    items_seen: int = 0
    items_failed: int = 0
    members_processed: int = 0
    api_calls: int = 0

    statistics: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != SyncStatus.IN_PROGRESS

    def complete(self, statistics: Dict[str, Any]) -> None:
        self._ensure_open()
        self.status = SyncStatus.COMPLETED
        self.completed_at = datetime.now(timezone.utc)
        self.statistics = statistics

    def fail(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self._ensure_open()
        self.status = SyncStatus.FAILED
        self.completed_at = datetime.now(timezone.utc)
        self.error_message = message
        self.error_details = details

    def _ensure_open(self) -> None:
        if self.is_terminal:
            raise TerminalRunError(f"Sync run {self.id} is already {self.status.value}")

    def to_row(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SyncRun":
        data = dict(row)
        data["id"] = str(data["id"])
        data["tenant_id"] = str(data["tenant_id"])
        data["connection_id"] = str(data["connection_id"])
        data["statistics"] = data.get("statistics") or {}
        return cls(**data)


class SyncHistoryRecorder:
    """Persists SyncRun rows: one insert at start, one update at the terminal transition."""

    def __init__(self, store: SyncStore):
        self.store = store

    async def create(self, run: SyncRun) -> SyncRun:
        await self.store.insert_sync_run(run.to_row())
        logger.info(f"📝 Sync run {run.id} started ({run.mode.value}) for connection {run.connection_id}")
        return run

    async def update(self, run: SyncRun) -> SyncRun:
        if not run.is_terminal:
            raise TerminalRunError(f"Sync run {run.id} must be completed or failed before it is recorded")

        row = run.to_row()
        fields = {k: v for k, v in row.items() if k not in ("id", "tenant_id", "connection_id", "mode", "started_at")}
        await self.store.update_sync_run(run.id, run.tenant_id, fields)
        return run

    async def list_recent(self, connection_id: str, tenant_id: str, limit: int = 20) -> List[SyncRun]:
        rows = await self.store.list_sync_runs(connection_id, tenant_id, limit)
        return [SyncRun.from_row(row) for row in rows]

    async def fail_stale_runs(
        self,
        timeout_minutes: int,
        is_running: Callable[[str], bool] = lambda _connection_id: False,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Mark in_progress runs older than the timeout as failed.

        Runs whose connection is currently held by this process are left alone.

        Returns:
            Number of runs swept
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=timeout_minutes)
        swept = 0

        for row in await self.store.list_stale_sync_runs(cutoff):
            run = SyncRun.from_row(row)
            if run.is_terminal or is_running(run.connection_id):
                continue

            run.fail(
                STALE_RUN_MESSAGE,
                {"name": "StaleSyncRun", "started_at": run.started_at.isoformat(), "timeout_minutes": timeout_minutes},
            )
            await self.update(run)
            swept += 1
            logger.warning(f"⚠️  Marked abandoned sync run {run.id} (connection {run.connection_id}) as failed")

        return swept
