"""
Slack sync orchestration engine
Runs one member -> container -> content sync for a single Slack connection

run_sync is single-flight per connection id within this process. Container
level failures (no access, transient provider errors) skip that container and
the run carries on; anything else fails the whole run, which is recorded on
both the SyncRun and the connection before the error is re-raised.
"""
import asyncio
import logging
import threading
import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Union

from app.services.sync.database import SyncStore
from app.services.sync.errors import (
    ConnectionInactiveError,
    ConnectionNotFoundError,
    PersistenceError,
    ProviderPermissionError,
    ProviderRateLimitError,
    RecordValidationError,
    SyncAlreadyInProgressError,
)
from app.services.sync.history import SyncHistoryRecorder, SyncRun
from app.services.sync.persistence import EntityUpserter
from app.services.sync.providers.slack import (
    normalize_slack_container,
    normalize_slack_member,
    normalize_slack_message,
)
from app.services.sync.providers.slack_client import ProviderCredentials, SlackClient
from app.services.sync.records import (
    ALL_CONTAINER_KINDS,
    Connection,
    ContainerKind,
    SyncMode,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RunStats:
    """Counters for one run. Only mutated from the event loop thread."""
    containers_processed: int = 0
    items_created: int = 0
    items_updated: int = 0
    items_seen: int = 0
    items_failed: int = 0
    members_processed: int = 0
    api_calls: int = 0
    rate_limit_hits: int = 0
    container_ids: List[str] = field(default_factory=list)
    skipped_containers: List[Dict[str, Any]] = field(default_factory=list)

    def record_retry(self, error: BaseException) -> None:
        # every retry is one more request to the provider
        self.api_calls += 1
        if isinstance(error, ProviderRateLimitError):
            self.rate_limit_hits += 1

    def skip(self, container: Dict[str, Any], reason: str) -> None:
        self.skipped_containers.append({
            "id": container.get("external_id"),
            "name": container.get("name"),
            "reason": reason,
        })

    def apply_to(self, run: SyncRun) -> None:
        run.containers_processed = self.containers_processed
        run.items_created = self.items_created
        run.items_updated = self.items_updated
        run.items_seen = self.items_seen
        run.items_failed = self.items_failed
        run.members_processed = self.members_processed
        run.api_calls = self.api_calls


class SyncOrchestrator:
    """Per-connection Slack sync. One instance per process."""

    def __init__(self, store: SyncStore, client: SlackClient, max_concurrent_containers: int = 1):
        self.store = store
        self.client = client
        self.upserter = EntityUpserter(store)
        self.history = SyncHistoryRecorder(store)
        self.max_concurrent_containers = max(1, max_concurrent_containers)

        # connection ids with a sync in flight
        self._running: Set[str] = set()
        self._running_lock = threading.Lock()

    # ========================================================================
    # SINGLE-FLIGHT GUARD
    # ========================================================================

    def is_running(self, connection_id: str) -> bool:
        with self._running_lock:
            return connection_id in self._running

    def _acquire(self, connection_id: str) -> None:
        with self._running_lock:
            if connection_id in self._running:
                raise SyncAlreadyInProgressError(connection_id)
            self._running.add(connection_id)

    def _release(self, connection_id: str) -> None:
        with self._running_lock:
            self._running.discard(connection_id)

    # ========================================================================
    # ENTRY POINT
    # ========================================================================

    async def run_sync(
        self,
        connection_id: str,
        tenant_id: str,
        mode: Union[SyncMode, str] = SyncMode.INCREMENTAL,
    ) -> SyncRun:
        """
        Sync one Slack connection.

        Args:
            connection_id: Connection to sync
            tenant_id: Tenant that must own the connection
            mode: "full" refetches all history, "incremental" starts at the last successful sync

        Returns:
            The completed SyncRun

        Raises:
            SyncAlreadyInProgressError: this connection is already syncing
            ConnectionNotFoundError: no such connection for this tenant
            ConnectionInactiveError: the connection was deactivated
            SyncError / Exception: any run-level failure, after the run was marked failed
        """
        mode = SyncMode(mode)
        self._acquire(connection_id)
        try:
            row = await self.store.get_connection(connection_id, tenant_id)
            if not row:
                raise ConnectionNotFoundError(connection_id, tenant_id)

            connection = Connection.from_row(row)
            if not connection.is_active:
                raise ConnectionInactiveError(connection_id)
            return await self._execute(connection, mode)
        finally:
            self._release(connection_id)

    async def _execute(self, connection: Connection, mode: SyncMode) -> SyncRun:
        logger.info(f"🚀 Starting {mode.value} Slack sync for connection {connection.id} (tenant {connection.tenant_id})")

        credentials = ProviderCredentials(
            access_token=connection.access_token,
            workspace_id=connection.workspace_id,
        )
        run = SyncRun(tenant_id=connection.tenant_id, connection_id=connection.id, mode=mode)
        stats = RunStats()
        started = time.monotonic()

        try:
            # 1. run start
            await self.history.create(run)

            # 2. attempt stamp (best effort)
            try:
                await self.store.update_connection(connection.id, connection.tenant_id, {"last_sync_at": _now()})
            except PersistenceError as e:
                logger.warning(f"⚠️  Could not stamp last_sync_at for connection {connection.id}: {e}")

            # 3. members
            await self._sync_members(connection, credentials, stats)

            # 4. containers
            await self._sync_containers(connection, credentials, stats)

            # 5. content per container
            since = self._fetch_window(connection, mode)
            containers = self._select_containers(
                connection,
                await self.store.list_active_containers(connection.tenant_id, connection.id),
            )
            logger.info(
                f"📂 Syncing content for {len(containers)} containers "
                f"(since={since.isoformat() if since else 'beginning'})"
            )
            finished = await self._sync_all_content(connection, credentials, containers, since, stats)

            # 6. item counts for containers that finished
            for container in finished:
                total = await self.store.count_content(connection.tenant_id, container["id"])
                await self.store.update_container(
                    container["id"],
                    connection.tenant_id,
                    {"total_items": total, "last_synced_at": _now()},
                )

            # 7. complete run
            duration = time.monotonic() - started
            stats.apply_to(run)
            run.complete({
                "duration_seconds": round(duration, 3),
                "api_calls_count": stats.api_calls,
                "container_ids": stats.container_ids,
                "skipped_containers": stats.skipped_containers,
                "items_per_second": round(stats.items_seen / duration, 2) if duration > 0 else 0.0,
                "rate_limit_hits": stats.rate_limit_hits,
            })
            await self.history.update(run)

            # 8. success stamp
            await self.store.update_connection(connection.id, connection.tenant_id, {
                "last_successful_sync_at": run.completed_at,
                "failed_sync_attempts": 0,
                "last_sync_error": None,
                "total_items_synced": stats.items_seen,
            })

            logger.info(
                f"✅ Slack sync completed for connection {connection.id}: "
                f"{stats.items_created} created, {stats.items_updated} updated, "
                f"{stats.containers_processed} containers ({len(stats.skipped_containers)} skipped), "
                f"{stats.members_processed} members in {duration:.1f}s"
            )
            return run

        except asyncio.CancelledError as e:
            logger.warning(f"⚠️  Slack sync cancelled for connection {connection.id}")
            await self._record_failure(connection, run, stats, e)
            raise

        except Exception as e:
            logger.error(f"❌ Slack sync failed for connection {connection.id}: {e}", exc_info=True)
            await self._record_failure(connection, run, stats, e)
            raise

    async def _record_failure(self, connection: Connection, run: SyncRun, stats: RunStats, error: BaseException) -> None:
        if isinstance(error, asyncio.CancelledError):
            message = "Sync cancelled"
        else:
            message = str(error) or type(error).__name__

        if not run.is_terminal:
            stats.apply_to(run)
            run.fail(
                message,
                {"name": type(error).__name__, "stack": traceback.format_exc()},
            )
            try:
                await self.history.update(run)
            except PersistenceError as e:
                logger.error(f"❌ Could not record failed sync run {run.id}: {e}")

        try:
            await self.store.update_connection(connection.id, connection.tenant_id, {
                "failed_sync_attempts": connection.failed_sync_attempts + 1,
                "last_sync_error": message,
            })
        except PersistenceError as e:
            logger.error(f"❌ Could not record failure on connection {connection.id}: {e}")

    # ========================================================================
    # MEMBERS / CONTAINERS
    # ========================================================================

    async def _sync_members(self, connection: Connection, credentials: ProviderCredentials, stats: RunStats) -> None:
        cursor: Optional[str] = None
        while True:
            stats.api_calls += 1
            page = await self.client.list_members(credentials, cursor=cursor, on_retry=stats.record_retry)

            for raw in page.items:
                try:
                    record = normalize_slack_member(raw)
                except RecordValidationError as e:
                    logger.warning(f"⚠️  {e}")
                    continue
                await self.upserter.upsert_member(connection.tenant_id, connection.id, record)
                stats.members_processed += 1

            cursor = page.next_cursor
            if not cursor:
                break

        logger.info(f"👥 Synced {stats.members_processed} members for connection {connection.id}")

    async def _sync_containers(self, connection: Connection, credentials: ProviderCredentials, stats: RunStats) -> None:
        count = 0
        cursor: Optional[str] = None
        while True:
            stats.api_calls += 1
            page = await self.client.list_containers(
                credentials, kinds=ALL_CONTAINER_KINDS, cursor=cursor, on_retry=stats.record_retry
            )

            for raw in page.items:
                try:
                    record = normalize_slack_container(raw)
                except RecordValidationError as e:
                    logger.warning(f"⚠️  {e}")
                    continue
                await self.upserter.upsert_container(connection.tenant_id, connection.id, record)
                count += 1

            cursor = page.next_cursor
            if not cursor:
                break

        logger.info(f"📁 Synced {count} containers for connection {connection.id}")

    # ========================================================================
    # CONTENT
    # ========================================================================

    @staticmethod
    def _fetch_window(connection: Connection, mode: SyncMode) -> Optional[datetime]:
        """Inclusive lower bound for content, or None for the whole history."""
        if mode == SyncMode.FULL:
            return None
        return connection.last_successful_sync_at

    @staticmethod
    def _select_containers(connection: Connection, containers: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        sync_settings = connection.sync_settings
        selected = []
        for container in containers:
            external_id = container.get("external_id")
            if sync_settings.container_filter and external_id not in sync_settings.container_filter:
                continue
            if sync_settings.exclude_containers and external_id in sync_settings.exclude_containers:
                continue
            if not sync_settings.sync_direct_messages and _kind_of(container).is_direct:
                continue
            selected.append(container)
        return selected

    async def _sync_all_content(
        self,
        connection: Connection,
        credentials: ProviderCredentials,
        containers: List[Dict[str, Any]],
        since: Optional[datetime],
        stats: RunStats,
    ) -> List[Dict[str, Any]]:
        """Returns the containers whose content sync finished."""
        if self.max_concurrent_containers == 1:
            finished = []
            for container in containers:
                if await self._sync_container(connection, credentials, container, since, stats):
                    finished.append(container)
            return finished

        semaphore = asyncio.Semaphore(self.max_concurrent_containers)

        async def bounded(container: Dict[str, Any]) -> bool:
            async with semaphore:
                return await self._sync_container(connection, credentials, container, since, stats)

        results = await asyncio.gather(*(bounded(c) for c in containers), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return [c for c, ok in zip(containers, results) if ok]

    async def _sync_container(
        self,
        connection: Connection,
        credentials: ProviderCredentials,
        container: Dict[str, Any],
        since: Optional[datetime],
        stats: RunStats,
    ) -> bool:
        """
        Sync one container's content, isolating provider failures.

        Returns:
            True if the container finished, False if it was skipped

        Raises:
            PersistenceError: storage failed; fatal to the run
        """
        stats.containers_processed += 1
        kind = _kind_of(container)
        name = container.get("name") or container.get("external_id")

        try:
            await self._sync_container_content(connection, credentials, container, since, stats)

        except ProviderPermissionError as e:
            if kind.is_direct:
                logger.info(f"⏭️  [{name}] No access to direct conversation ({e.code}), skipping")
                stats.skip(container, e.code or "permission_denied")
                return False

            if kind == ContainerKind.PRIVATE:
                logger.warning(f"⚠️  [{name}] No access to private channel ({e.code}), skipping")
                stats.skip(container, e.code or "permission_denied")
                return False

            logger.info(f"🔑 [{name}] Not a member ({e.code}), joining and retrying once")
            try:
                stats.api_calls += 1
                await self.client.join_container(credentials, container["external_id"], on_retry=stats.record_retry)
                await self._sync_container_content(connection, credentials, container, since, stats)
            except PersistenceError:
                raise
            except Exception as retry_error:
                logger.warning(f"⚠️  [{name}] Join and retry failed: {retry_error}")
                stats.skip(container, f"join_failed: {retry_error}")
                return False

        except PersistenceError:
            raise

        except Exception as e:
            logger.error(f"❌ [{name}] Content sync failed, skipping container: {e}")
            stats.skip(container, str(e) or type(e).__name__)
            return False

        stats.container_ids.append(container["external_id"])
        return True

    async def _sync_container_content(
        self,
        connection: Connection,
        credentials: ProviderCredentials,
        container: Dict[str, Any],
        since: Optional[datetime],
        stats: RunStats,
    ) -> None:
        cursor: Optional[str] = None
        while True:
            stats.api_calls += 1
            page = await self.client.list_content(
                credentials,
                container["external_id"],
                since=since,
                cursor=cursor,
                on_retry=stats.record_retry,
            )

            for raw in page.items:
                try:
                    record = normalize_slack_message(raw)
                except RecordValidationError as e:
                    stats.items_failed += 1
                    logger.warning(f"⚠️  [{container.get('name')}] {e}")
                    continue

                created = await self.upserter.upsert_content(
                    connection.tenant_id, connection.id, container["id"], record
                )
                stats.items_seen += 1
                if created:
                    stats.items_created += 1
                else:
                    stats.items_updated += 1

            cursor = page.next_cursor
            if not cursor:
                break


def _kind_of(container: Dict[str, Any]) -> ContainerKind:
    try:
        return ContainerKind(container.get("kind"))
    except ValueError:
        return ContainerKind.PUBLIC
