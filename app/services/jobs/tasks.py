"""
Dramatiq Background Tasks
Runs manually triggered Slack syncs outside the API request
"""
import dramatiq
import asyncio
import logging
import httpx

from app.services.sync.errors import (
    ConnectionInactiveError,
    ConnectionNotFoundError,
    SyncAlreadyInProgressError,
)
from app.services.sync.history import SyncRun

logger = logging.getLogger(__name__)


def get_sync_dependencies():
    """
    Create fresh instances of dependencies for background tasks.
    Dramatiq workers run in separate processes, so we can't share global clients.
    """
    from supabase import create_client
    from app.core.config import settings

    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.provider_timeout_seconds),
        limits=httpx.Limits(max_keepalive_connections=5, max_connections=10)
    )
    supabase = create_client(settings.supabase_url, settings.supabase_service_key)

    return http_client, supabase


async def _run_sync_with_cleanup(http_client: httpx.AsyncClient, supabase, connection_id: str, tenant_id: str, mode: str) -> SyncRun:
    """
    Async wrapper that runs one sync and closes the HTTP client in the same event loop.
    """
    from app.core.dependencies import create_orchestrator

    try:
        orchestrator = create_orchestrator(supabase, http_client)
        return await orchestrator.run_sync(connection_id, tenant_id, mode)
    finally:
        await http_client.aclose()


@dramatiq.actor(
    max_retries=3,
    throws=(ConnectionNotFoundError, ConnectionInactiveError, SyncAlreadyInProgressError),
)
def sync_connection_task(connection_id: str, tenant_id: str, mode: str = "incremental"):
    """
    Background job for one Slack connection sync.

    Args:
        connection_id: Connection to sync
        tenant_id: Owning tenant
        mode: "full" or "incremental"
    """
    logger.info(f"🚀 Starting {mode} sync job for connection {connection_id}")

    http_client, supabase = get_sync_dependencies()

    try:
        run = asyncio.run(_run_sync_with_cleanup(http_client, supabase, connection_id, tenant_id, mode))
        logger.info(
            f"✅ Sync job for connection {connection_id} complete: "
            f"{run.items_created} created, {run.items_updated} updated"
        )
        return run.to_row()

    except (ConnectionNotFoundError, ConnectionInactiveError, SyncAlreadyInProgressError) as e:
        logger.warning(f"⚠️  Sync job for connection {connection_id} not run: {e}")
        raise

    except Exception as e:
        logger.error(f"❌ Sync job for connection {connection_id} failed: {e}", exc_info=True)
        raise  # Re-raise for Dramatiq retry logic
