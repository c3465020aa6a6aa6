"""
Dependency Injection
Provides reusable dependencies for FastAPI routes

DEPENDENCIES:
- Supabase client (connections, synced data, sync history)
- HTTP client (shared pool for Slack API calls)
- Sync orchestrator (owns the per-process single-flight guard)
"""
import logging
from typing import Optional

import httpx
from supabase import create_client, Client

from app.core.config import settings
from app.services.sync.database import SyncStore
from app.services.sync.orchestration.slack_sync import SyncOrchestrator
from app.services.sync.providers.slack_client import SlackClient

logger = logging.getLogger(__name__)

# ============================================================================
# GLOBAL CLIENTS (initialized once, reused across requests)
# ============================================================================

_supabase_client: Optional[Client] = None
_http_client: Optional[httpx.AsyncClient] = None

# One orchestrator per process so every trigger shares the single-flight guard
_orchestrator: Optional[SyncOrchestrator] = None


def create_orchestrator(supabase: Client, http_client: httpx.AsyncClient) -> SyncOrchestrator:
    """Wire store, Slack client and orchestrator from settings."""
    client = SlackClient(
        http_client,
        base_url=settings.slack_api_base_url,
        page_size=settings.slack_page_size,
        max_retries=settings.provider_max_retries,
        retry_min_wait=settings.provider_retry_min_wait,
        retry_max_wait=settings.provider_retry_max_wait,
    )
    return SyncOrchestrator(
        SyncStore(supabase),
        client,
        max_concurrent_containers=settings.sync_max_concurrent_containers,
    )


# ============================================================================
# INITIALIZATION (called on app startup)
# ============================================================================

async def initialize_clients():
    """
    Initialize all global clients on app startup.

    Called from main.py lifespan event.
    """
    global _supabase_client, _http_client, _orchestrator

    logger.info("Initializing global clients...")

    try:
        _supabase_client = create_client(
            settings.supabase_url,
            settings.supabase_service_key  # Backend uses service role
        )
        logger.info("✅ Supabase client initialized")
    except Exception as e:
        logger.error(f"❌ Failed to initialize Supabase: {e}")
        raise

    _http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.provider_timeout_seconds),
        limits=httpx.Limits(max_keepalive_connections=10, max_connections=20)
    )
    logger.info("✅ HTTP client initialized")

    _orchestrator = create_orchestrator(_supabase_client, _http_client)

    logger.info("✅ All clients initialized successfully")


async def shutdown_clients():
    """
    Shutdown all global clients on app shutdown.

    Called from main.py lifespan event.
    """
    global _supabase_client, _http_client, _orchestrator

    logger.info("Shutting down global clients...")

    if _http_client:
        try:
            await _http_client.aclose()
            logger.info("✅ HTTP client closed")
        except Exception as e:
            logger.error(f"Error closing HTTP client: {e}")

    # Supabase doesn't need explicit cleanup
    _supabase_client = None
    _http_client = None
    _orchestrator = None

    logger.info("✅ All clients shutdown complete")


# ============================================================================
# DEPENDENCY FUNCTIONS (injected into routes)
# ============================================================================

def get_supabase() -> Client:
    """
    Get Supabase client for dependency injection.

    Returns:
        Supabase client (service role, full access with RLS)
    """
    if _supabase_client is None:
        logger.error("Supabase client not initialized")
        raise RuntimeError("Supabase client not initialized. Call initialize_clients() first.")

    return _supabase_client


def get_orchestrator() -> SyncOrchestrator:
    """
    Get the process-wide sync orchestrator.

    Usage:
        @router.post("/sync")
        async def sync(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
            return await orchestrator.run_sync(...)
    """
    if _orchestrator is None:
        logger.error("Sync orchestrator not initialized")
        raise RuntimeError("Sync orchestrator not initialized. Call initialize_clients() first.")

    return _orchestrator

