"""Tests for the sync HTTP routes with auth and orchestrator overridden."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from app.core.dependencies import get_orchestrator
from app.core.security import get_current_user_context
from app.services.sync.errors import (
    ConnectionInactiveError,
    ConnectionNotFoundError,
    ProviderTransportError,
    SyncAlreadyInProgressError,
)
from app.services.sync.history import SyncRun
from app.services.sync.records import SyncMode
from main import app


@pytest.fixture
def orchestrator():
    orchestrator = MagicMock()
    orchestrator.run_sync = AsyncMock()
    orchestrator.history.list_recent = AsyncMock(return_value=[])
    return orchestrator


@pytest.fixture
def client(orchestrator):
    app.dependency_overrides[get_current_user_context] = lambda: {
        "user_id": "user-1", "tenant_id": "tenant-1", "email": "ana@example.com"
    }
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_manual_sync_returns_completed_run(client, orchestrator):
    run = SyncRun(tenant_id="tenant-1", connection_id="c1", mode=SyncMode.FULL)
    run.items_created = 3
    run.complete({"duration_seconds": 0.5})
    orchestrator.run_sync.return_value = run

    response = client.post("/sync/connections/c1?mode=full")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert body["items_created"] == 3
    assert "tenant_id" not in body
    orchestrator.run_sync.assert_awaited_once_with("c1", "tenant-1", SyncMode.FULL)


@pytest.mark.parametrize("error, status_code", [
    (ConnectionNotFoundError("c1", "tenant-1"), 404),
    (ConnectionInactiveError("c1"), 400),
    (SyncAlreadyInProgressError("c1"), 409),
    (ProviderTransportError("Slack users.list returned HTTP 503"), 502),
])
def test_sync_errors_map_to_http_status(client, orchestrator, error, status_code):
    orchestrator.run_sync.side_effect = error

    response = client.post("/sync/connections/c1")

    assert response.status_code == status_code


def test_run_history_is_listed(client, orchestrator):
    response = client.get("/sync/connections/c1/runs?limit=5")

    assert response.status_code == 200
    assert response.json() == {"connection_id": "c1", "runs": []}
    orchestrator.history.list_recent.assert_awaited_once_with("c1", "tenant-1", 5)


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_background_sync_rejects_inactive_connection(client, orchestrator, monkeypatch):
    from app.services.jobs import tasks

    send = MagicMock()
    monkeypatch.setattr(tasks.sync_connection_task, "send", send)
    orchestrator.store.get_connection = AsyncMock(return_value={"id": "c1", "tenant_id": "tenant-1", "is_active": False})

    response = client.post("/sync/connections/c1/background")

    assert response.status_code == 400
    assert response.json()["detail"] == "Cannot sync inactive connection"
    send.assert_not_called()


def test_background_sync_queues_job(client, orchestrator, monkeypatch):
    from app.services.jobs import tasks

    send = MagicMock(return_value=MagicMock(message_id="msg-1"))
    monkeypatch.setattr(tasks.sync_connection_task, "send", send)
    orchestrator.store.get_connection = AsyncMock(return_value={"id": "c1", "tenant_id": "tenant-1", "is_active": True})

    response = client.post("/sync/connections/c1/background?mode=full")

    assert response.status_code == 202
    assert response.json()["message_id"] == "msg-1"
    send.assert_called_once_with("c1", "tenant-1", "full")
