"""
Periodic Sync Scheduler
Fires incremental syncs for active connections whose interval has elapsed

Each tick first sweeps abandoned in_progress runs, then dispatches due
connections as fire-and-forget tasks on the running event loop. A failing
sync is logged and never breaks the loop.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional, Set

from pydantic import ValidationError

from app.services.sync.database import SyncStore
from app.services.sync.errors import SyncAlreadyInProgressError
from app.services.sync.orchestration.slack_sync import SyncOrchestrator
from app.services.sync.records import Connection, SyncMode

logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(
        self,
        store: SyncStore,
        orchestrator: SyncOrchestrator,
        default_interval_minutes: int = 30,
        stale_run_timeout_minutes: int = 120,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.default_interval_minutes = default_interval_minutes
        self.stale_run_timeout_minutes = stale_run_timeout_minutes
        self._tasks: Set[asyncio.Task] = set()

    def is_due(self, connection: Connection, now: Optional[datetime] = None) -> bool:
        """True when the connection's interval has elapsed since its last sync or attempt."""
        now = now or datetime.now(timezone.utc)
        last = connection.last_activity_at
        if last is None:
            return True
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)

        interval = connection.sync_settings.sync_interval or self.default_interval_minutes
        minutes_since = (now - last).total_seconds() / 60
        return minutes_since >= interval

    async def tick(self, now: Optional[datetime] = None) -> List[str]:
        """
        Run one scheduling pass.

        Returns:
            Connection ids dispatched on this tick
        """
        now = now or datetime.now(timezone.utc)

        try:
            swept = await self.orchestrator.history.fail_stale_runs(
                self.stale_run_timeout_minutes,
                is_running=self.orchestrator.is_running,
                now=now,
            )
            if swept:
                logger.info(f"🧹 Swept {swept} abandoned sync runs")
        except Exception as e:
            logger.error(f"❌ Stale run sweep failed: {e}", exc_info=True)

        try:
            rows = await self.store.list_active_connections()
        except Exception as e:
            logger.error(f"❌ Scheduler could not list connections: {e}", exc_info=True)
            return []

        dispatched = []
        for row in rows:
            try:
                connection = Connection.from_row(row)
            except (ValidationError, KeyError) as e:
                logger.warning(f"⚠️  Skipping malformed connection row {row.get('id')}: {e}")
                continue

            if self.orchestrator.is_running(connection.id):
                continue
            if not self.is_due(connection, now):
                continue

            self._dispatch(connection)
            dispatched.append(connection.id)

        if dispatched:
            logger.info(f"⏰ Scheduled {len(dispatched)} incremental syncs")
        return dispatched

    def _dispatch(self, connection: Connection) -> None:
        task = asyncio.create_task(self._run_guarded(connection))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_guarded(self, connection: Connection) -> None:
        try:
            await self.orchestrator.run_sync(connection.id, connection.tenant_id, SyncMode.INCREMENTAL)
        except SyncAlreadyInProgressError:
            logger.info(f"⏭️  Connection {connection.id} already syncing, skipped")
        except Exception as e:
            logger.error(f"❌ Scheduled sync failed for connection {connection.id}: {e}", exc_info=True)

    async def drain(self) -> None:
        """Wait for every dispatched sync to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def run_forever(self, poll_seconds: int = 60) -> None:
        logger.info(f"🚀 Sync scheduler started (every {poll_seconds}s)")
        try:
            while True:
                try:
                    await self.tick()
                except Exception as e:
                    logger.error(f"❌ Scheduler tick failed: {e}", exc_info=True)
                await asyncio.sleep(poll_seconds)
        finally:
            for task in list(self._tasks):
                task.cancel()
            logger.info("Sync scheduler stopped")
