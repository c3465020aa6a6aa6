"""
Sync Routes
Manual triggers and run history for Slack connection syncs
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, Query, Request

from app.core.security import get_current_user_context
from app.core.dependencies import get_orchestrator
from app.middleware.rate_limit import limiter
from app.models.schemas.sync import SyncJobResponse, SyncRunListResponse, SyncRunResponse
from app.services.sync.errors import (
    ConnectionInactiveError,
    ConnectionNotFoundError,
    ProviderError,
    SyncAlreadyInProgressError,
    SyncError,
)
from app.services.sync.orchestration.slack_sync import SyncOrchestrator
from app.services.sync.records import SyncMode

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


def _http_error(e: SyncError) -> HTTPException:
    if isinstance(e, ConnectionNotFoundError):
        return HTTPException(status_code=404, detail="Connection not found")
    if isinstance(e, ConnectionInactiveError):
        return HTTPException(status_code=400, detail="Cannot sync inactive connection")
    if isinstance(e, SyncAlreadyInProgressError):
        return HTTPException(status_code=409, detail="Sync already in progress for this connection")
    if isinstance(e, ProviderError):
        return HTTPException(status_code=502, detail=f"Slack API error: {e}")
    return HTTPException(status_code=500, detail=f"Sync failed: {e}")


@router.post("/connections/{connection_id}", response_model=SyncRunResponse)
@limiter.limit("30/hour")
async def trigger_sync(
    connection_id: str,
    request: Request,
    mode: SyncMode = Query(SyncMode.INCREMENTAL, description="full or incremental"),
    user_context: dict = Depends(get_current_user_context),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """
    Run a sync now and return the finished SyncRun.

    Returns 404 for an unknown connection (or one owned by another tenant),
    400 for a deactivated one and 409 when a sync for this connection is already running.
    """
    tenant_id = user_context["tenant_id"]
    logger.info(f"Manual {mode.value} sync requested for connection {connection_id} (tenant {tenant_id})")

    try:
        run = await orchestrator.run_sync(connection_id, tenant_id, mode)
    except SyncError as e:
        raise _http_error(e) from e

    return SyncRunResponse.from_run(run)


@router.post("/connections/{connection_id}/background", response_model=SyncJobResponse, status_code=202)
@limiter.limit("30/hour")
async def trigger_background_sync(
    connection_id: str,
    request: Request,
    mode: SyncMode = Query(SyncMode.INCREMENTAL, description="full or incremental"),
    user_context: dict = Depends(get_current_user_context),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Queue a sync on the Dramatiq worker."""
    from app.services.jobs.tasks import sync_connection_task

    tenant_id = user_context["tenant_id"]

    # fail fast on unknown connections instead of queueing a job that can't run
    connection = await orchestrator.store.get_connection(connection_id, tenant_id)
    if not connection:
        raise HTTPException(status_code=404, detail="Connection not found")
    if not connection.get("is_active", True):
        raise HTTPException(status_code=400, detail="Cannot sync inactive connection")

    message = sync_connection_task.send(connection_id, tenant_id, mode.value)
    logger.info(f"📤 Queued {mode.value} sync for connection {connection_id} (job {message.message_id})")

    return SyncJobResponse(
        status="queued",
        connection_id=connection_id,
        mode=mode.value,
        message_id=message.message_id,
    )


@router.get("/connections/{connection_id}/runs", response_model=SyncRunListResponse)
async def list_sync_runs(
    connection_id: str,
    limit: int = Query(20, ge=1, le=100),
    user_context: dict = Depends(get_current_user_context),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Most recent sync runs for a connection, newest first."""
    runs = await orchestrator.history.list_recent(connection_id, user_context["tenant_id"], limit)
    return SyncRunListResponse(
        connection_id=connection_id,
        runs=[SyncRunResponse.from_run(run) for run in runs],
    )
