"""
Database helper functions for the Slack sync engine
Handles connections, synced entities and sync run rows in Supabase

Every query is scoped by tenant_id. Supabase client failures are wrapped in
PersistenceError so callers can tell storage failures apart from provider ones.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, TypeVar

from supabase import Client

from app.services.sync.errors import PersistenceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONNECTIONS_TABLE = "slack_connections"
MEMBERS_TABLE = "slack_members"
CONTAINERS_TABLE = "slack_containers"
MESSAGES_TABLE = "slack_messages"
SYNC_RUNS_TABLE = "slack_sync_runs"

# Natural keys (must match the unique indexes in migrations/)
MEMBER_KEY = "tenant_id,connection_id,external_id"
CONTAINER_KEY = "tenant_id,connection_id,external_id"
MESSAGE_KEY = "tenant_id,external_id"


class SyncStore:
    """Async facade over the Supabase tables the sync engine reads and writes."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    def _run(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except PersistenceError:
            raise
        except Exception as e:
            logger.error(f"❌ [{operation}] Supabase error: {type(e).__name__}: {e}")
            raise PersistenceError(operation, e) from e

    # ========================================================================
    # CONNECTIONS
    # ========================================================================

    async def get_connection(self, connection_id: str, tenant_id: str) -> Optional[Dict[str, Any]]:
        result = self._run("get_connection", lambda: (
            self.supabase.table(CONNECTIONS_TABLE)
            .select("*")
            .eq("id", connection_id)
            .eq("tenant_id", tenant_id)
            .limit(1)
            .execute()
        ))
        return result.data[0] if result.data else None

    async def list_active_connections(self) -> List[Dict[str, Any]]:
        """All active connections across tenants (scheduler only)."""
        result = self._run("list_active_connections", lambda: (
            self.supabase.table(CONNECTIONS_TABLE)
            .select("*")
            .eq("is_active", True)
            .execute()
        ))
        return result.data or []

    async def update_connection(self, connection_id: str, tenant_id: str, fields: Dict[str, Any]) -> None:
        self._run("update_connection", lambda: (
            self.supabase.table(CONNECTIONS_TABLE)
            .update(_serialize(fields))
            .eq("id", connection_id)
            .eq("tenant_id", tenant_id)
            .execute()
        ))

    # ========================================================================
    # MEMBERS
    # ========================================================================

    async def get_member(self, tenant_id: str, connection_id: str, external_id: str) -> Optional[Dict[str, Any]]:
        result = self._run("get_member", lambda: (
            self.supabase.table(MEMBERS_TABLE)
            .select("*")
            .eq("tenant_id", tenant_id)
            .eq("connection_id", connection_id)
            .eq("external_id", external_id)
            .limit(1)
            .execute()
        ))
        return result.data[0] if result.data else None

    async def upsert_member(self, row: Dict[str, Any]) -> Dict[str, Any]:
        result = self._run("upsert_member", lambda: (
            self.supabase.table(MEMBERS_TABLE)
            .upsert(_serialize(row), on_conflict=MEMBER_KEY)
            .execute()
        ))
        return result.data[0] if result.data else row

    # ========================================================================
    # CONTAINERS
    # ========================================================================

    async def upsert_container(self, row: Dict[str, Any]) -> Dict[str, Any]:
        result = self._run("upsert_container", lambda: (
            self.supabase.table(CONTAINERS_TABLE)
            .upsert(_serialize(row), on_conflict=CONTAINER_KEY)
            .execute()
        ))
        return result.data[0] if result.data else row

    async def list_active_containers(self, tenant_id: str, connection_id: str) -> List[Dict[str, Any]]:
        result = self._run("list_active_containers", lambda: (
            self.supabase.table(CONTAINERS_TABLE)
            .select("*")
            .eq("tenant_id", tenant_id)
            .eq("connection_id", connection_id)
            .eq("is_active", True)
            .execute()
        ))
        return result.data or []

    async def update_container(self, container_id: str, tenant_id: str, fields: Dict[str, Any]) -> None:
        self._run("update_container", lambda: (
            self.supabase.table(CONTAINERS_TABLE)
            .update(_serialize(fields))
            .eq("id", container_id)
            .eq("tenant_id", tenant_id)
            .execute()
        ))

    # ========================================================================
    # CONTENT
    # ========================================================================

    async def content_exists(self, tenant_id: str, external_id: str) -> bool:
        result = self._run("content_exists", lambda: (
            self.supabase.table(MESSAGES_TABLE)
            .select("id")
            .eq("tenant_id", tenant_id)
            .eq("external_id", external_id)
            .limit(1)
            .execute()
        ))
        return bool(result.data)

    async def upsert_content(self, row: Dict[str, Any]) -> None:
        self._run("upsert_content", lambda: (
            self.supabase.table(MESSAGES_TABLE)
            .upsert(_serialize(row), on_conflict=MESSAGE_KEY)
            .execute()
        ))

    async def count_content(self, tenant_id: str, container_id: str) -> int:
        result = self._run("count_content", lambda: (
            self.supabase.table(MESSAGES_TABLE)
            .select("id", count="exact")
            .eq("tenant_id", tenant_id)
            .eq("container_id", container_id)
            .limit(1)
            .execute()
        ))
        return result.count or 0

    # ========================================================================
    # SYNC RUNS
    # ========================================================================

    async def insert_sync_run(self, row: Dict[str, Any]) -> None:
        self._run("insert_sync_run", lambda: (
            self.supabase.table(SYNC_RUNS_TABLE)
            .insert(_serialize(row))
            .execute()
        ))

    async def update_sync_run(self, run_id: str, tenant_id: str, fields: Dict[str, Any]) -> None:
        self._run("update_sync_run", lambda: (
            self.supabase.table(SYNC_RUNS_TABLE)
            .update(_serialize(fields))
            .eq("id", run_id)
            .eq("tenant_id", tenant_id)
            .execute()
        ))

    async def list_stale_sync_runs(self, started_before: datetime) -> List[Dict[str, Any]]:
        """In-progress runs started before the cutoff, across tenants (sweeper only)."""
        result = self._run("list_stale_sync_runs", lambda: (
            self.supabase.table(SYNC_RUNS_TABLE)
            .select("*")
            .eq("status", "in_progress")
            .lt("started_at", started_before.isoformat())
            .execute()
        ))
        return result.data or []

    async def list_sync_runs(self, connection_id: str, tenant_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        result = self._run("list_sync_runs", lambda: (
            self.supabase.table(SYNC_RUNS_TABLE)
            .select("*")
            .eq("connection_id", connection_id)
            .eq("tenant_id", tenant_id)
            .order("started_at", desc=True)
            .limit(limit)
            .execute()
        ))
        return result.data or []


def _serialize(row: Dict[str, Any]) -> Dict[str, Any]:
    """datetimes to ISO strings so postgrest-py can JSON-encode the payload."""
    return {k: (v.isoformat() if isinstance(v, datetime) else v) for k, v in row.items()}
