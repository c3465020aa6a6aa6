"""Tests for SyncOrchestrator.run_sync.

Covers the member -> container -> content procedure end to end against the
in-memory store:
- first full sync and a follow-up incremental sync with revoked access
- run-level failure bookkeeping
- idempotent re-sync
- single-flight per connection
- fetch window selection
- container-level isolation and the join-and-retry policy
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.services.sync.errors import (
    ConnectionInactiveError,
    ConnectionNotFoundError,
    PersistenceError,
    ProviderApiError,
    ProviderPermissionError,
    ProviderTransportError,
    SyncAlreadyInProgressError,
)
from app.services.sync.history import SyncStatus
from app.services.sync.orchestration.slack_sync import SyncOrchestrator
from app.services.sync.records import SyncMode

from fakes import FakeSlackClient, InMemorySyncStore, slack_channel, slack_message, slack_user

TENANT = "tenant-1"


def workspace_client() -> FakeSlackClient:
    """One member (U1 "Ana"), a public channel and a DM with U1."""
    return FakeSlackClient(
        members=[[slack_user("U1", "ana", display_name="Ana")]],
        containers=[[
            slack_channel("C1", "general", "public"),
            slack_channel("D1", kind="direct", user="U1"),
        ]],
        content={
            "C1": [[slack_message("1.1"), slack_message("1.2")]],
            "D1": [[slack_message("2.1")]],
        },
    )


@pytest.fixture
def store():
    return InMemorySyncStore()


@pytest.fixture
def connection(store):
    return store.add_connection(tenant_id=TENANT)


# ============================================================================
# SCENARIOS
# ============================================================================

@pytest.mark.asyncio
async def test_first_full_sync_creates_everything(store, connection):
    orchestrator = SyncOrchestrator(store, workspace_client())

    run = await orchestrator.run_sync(connection["id"], TENANT, SyncMode.FULL)

    assert run.status == SyncStatus.COMPLETED
    assert run.items_created == 3
    assert run.items_updated == 0
    assert run.containers_processed == 2
    assert run.members_processed == 1

    general = store.container(connection["id"], "C1")
    dm = store.container(connection["id"], "D1")
    assert general["total_items"] == 2
    assert dm["total_items"] == 1
    assert dm["name"] == "DM: Ana"

    stored_run = store.runs[run.id]
    assert stored_run["status"] == "completed"
    assert stored_run["statistics"]["container_ids"] == ["C1", "D1"]
    assert stored_run["statistics"]["skipped_containers"] == []

    conn = store.connections[connection["id"]]
    assert conn["last_successful_sync_at"] is not None
    assert conn["failed_sync_attempts"] == 0
    assert conn["total_items_synced"] == 3


@pytest.mark.asyncio
async def test_incremental_sync_skips_revoked_direct_container(store, connection):
    client = workspace_client()
    orchestrator = SyncOrchestrator(store, client)
    await orchestrator.run_sync(connection["id"], TENANT, SyncMode.FULL)
    dm_before = dict(store.container(connection["id"], "D1"))

    client.content = {
        "C1": [[]],
        "D1": ProviderPermissionError("Slack conversations.history failed: channel_not_found", code="channel_not_found"),
    }
    run = await orchestrator.run_sync(connection["id"], TENANT, SyncMode.INCREMENTAL)

    assert run.status == SyncStatus.COMPLETED
    assert run.items_created == 0
    assert run.items_updated == 0
    assert [s["id"] for s in run.statistics["skipped_containers"]] == ["D1"]
    assert client.joined == []

    dm_after = store.container(connection["id"], "D1")
    assert dm_after["total_items"] == dm_before["total_items"]
    assert dm_after["last_synced_at"] == dm_before["last_synced_at"]
    assert store.connections[connection["id"]]["failed_sync_attempts"] == 0


@pytest.mark.asyncio
async def test_channel_archived_upstream_becomes_inactive(store, connection):
    client = workspace_client()
    orchestrator = SyncOrchestrator(store, client)
    await orchestrator.run_sync(connection["id"], TENANT, SyncMode.FULL)
    assert store.container(connection["id"], "C1")["is_active"] is True

    client.containers_pages = [[
        {**slack_channel("C1", "general", "public"), "is_archived": True},
        slack_channel("D1", kind="direct", user="U1"),
    ]]
    client.content_calls.clear()
    run = await orchestrator.run_sync(connection["id"], TENANT, SyncMode.INCREMENTAL)

    general = store.container(connection["id"], "C1")
    assert general["is_archived"] is True
    assert general["is_active"] is False
    assert {c[0] for c in client.content_calls} == {"D1"}
    assert run.containers_processed == 1


@pytest.mark.asyncio
async def test_member_listing_failure_fails_run(store, connection):
    client = workspace_client()
    client.members_error = ProviderTransportError("Slack users.list returned HTTP 503", status_code=503)
    orchestrator = SyncOrchestrator(store, client)

    with pytest.raises(ProviderTransportError):
        await orchestrator.run_sync(connection["id"], TENANT, SyncMode.FULL)

    [stored_run] = store.runs.values()
    assert stored_run["status"] == "failed"
    assert "503" in stored_run["error_message"]
    assert stored_run["error_details"]["name"] == "ProviderTransportError"
    assert stored_run["completed_at"] is not None

    conn = store.connections[connection["id"]]
    assert conn["failed_sync_attempts"] == 1
    assert conn["last_sync_error"]
    assert conn["last_successful_sync_at"] is None

    assert "upsert_container" not in store.writes
    assert "upsert_content" not in store.writes
    assert not orchestrator.is_running(connection["id"])


@pytest.mark.asyncio
async def test_failures_accumulate_and_reset_on_success(store, connection):
    client = workspace_client()
    client.members_error = ProviderTransportError("boom")
    orchestrator = SyncOrchestrator(store, client)

    for _ in range(2):
        with pytest.raises(ProviderTransportError):
            await orchestrator.run_sync(connection["id"], TENANT)
    assert store.connections[connection["id"]]["failed_sync_attempts"] == 2

    client.members_error = None
    await orchestrator.run_sync(connection["id"], TENANT)

    conn = store.connections[connection["id"]]
    assert conn["failed_sync_attempts"] == 0
    assert conn["last_sync_error"] is None


# ============================================================================
# IDEMPOTENCE
# ============================================================================

@pytest.mark.asyncio
async def test_full_resync_is_idempotent(store, connection):
    orchestrator = SyncOrchestrator(store, workspace_client())

    await orchestrator.run_sync(connection["id"], TENANT, SyncMode.FULL)
    members, containers, messages = dict(store.members), dict(store.containers), dict(store.messages)

    second = await orchestrator.run_sync(connection["id"], TENANT, SyncMode.FULL)

    assert second.items_created == 0
    assert second.items_updated == 3
    assert store.members.keys() == members.keys()
    assert store.containers.keys() == containers.keys()
    assert store.messages.keys() == messages.keys()
    assert {k: v["id"] for k, v in store.containers.items()} == {k: v["id"] for k, v in containers.items()}


# ============================================================================
# SINGLE-FLIGHT
# ============================================================================

@pytest.mark.asyncio
async def test_concurrent_sync_for_same_connection_is_rejected(store, connection):
    client = workspace_client()
    client.members_gate = asyncio.Event()
    orchestrator = SyncOrchestrator(store, client)

    first = asyncio.create_task(orchestrator.run_sync(connection["id"], TENANT))
    await asyncio.sleep(0)
    assert orchestrator.is_running(connection["id"])

    with pytest.raises(SyncAlreadyInProgressError):
        await orchestrator.run_sync(connection["id"], TENANT)

    client.members_gate.set()
    run = await first

    assert run.status == SyncStatus.COMPLETED
    assert len(store.runs) == 1
    assert not orchestrator.is_running(connection["id"])


@pytest.mark.asyncio
async def test_different_connections_sync_concurrently(store):
    first = store.add_connection(tenant_id=TENANT)
    second = store.add_connection(tenant_id=TENANT)
    orchestrator = SyncOrchestrator(store, workspace_client())

    runs = await asyncio.gather(
        orchestrator.run_sync(first["id"], TENANT),
        orchestrator.run_sync(second["id"], TENANT),
    )

    assert [r.status for r in runs] == [SyncStatus.COMPLETED, SyncStatus.COMPLETED]


@pytest.mark.asyncio
async def test_unknown_or_foreign_connection_is_not_found(store, connection):
    orchestrator = SyncOrchestrator(store, workspace_client())

    with pytest.raises(ConnectionNotFoundError):
        await orchestrator.run_sync("missing", TENANT)
    with pytest.raises(ConnectionNotFoundError):
        await orchestrator.run_sync(connection["id"], "other-tenant")

    assert store.runs == {}
    assert not orchestrator.is_running(connection["id"])


@pytest.mark.asyncio
async def test_inactive_connection_is_rejected(store):
    connection = store.add_connection(tenant_id=TENANT, is_active=False)
    client = workspace_client()
    orchestrator = SyncOrchestrator(store, client)

    with pytest.raises(ConnectionInactiveError):
        await orchestrator.run_sync(connection["id"], TENANT, SyncMode.FULL)

    assert store.runs == {}
    assert store.members == {}
    assert store.connections[connection["id"]]["last_sync_at"] is None
    assert not orchestrator.is_running(connection["id"])


@pytest.mark.asyncio
async def test_cancelled_run_is_recorded_as_failed(store, connection):
    client = workspace_client()
    client.members_gate = asyncio.Event()
    orchestrator = SyncOrchestrator(store, client)

    task = asyncio.create_task(orchestrator.run_sync(connection["id"], TENANT))
    await asyncio.sleep(0)
    assert len(store.runs) == 1

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    [stored_run] = store.runs.values()
    assert stored_run["status"] == "failed"
    assert stored_run["error_message"] == "Sync cancelled"
    conn = store.connections[connection["id"]]
    assert conn["failed_sync_attempts"] == 1
    assert conn["last_sync_error"] == "Sync cancelled"
    assert not orchestrator.is_running(connection["id"])


# ============================================================================
# FETCH WINDOW
# ============================================================================

@pytest.mark.asyncio
async def test_incremental_window_starts_at_last_successful_sync(store):
    last_success = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    connection = store.add_connection(tenant_id=TENANT, last_successful_sync_at=last_success.isoformat())
    client = workspace_client()
    orchestrator = SyncOrchestrator(store, client)

    await orchestrator.run_sync(connection["id"], TENANT, SyncMode.INCREMENTAL)

    assert client.content_calls
    for _, since, _ in client.content_calls:
        assert since is not None
        assert since <= last_success


@pytest.mark.asyncio
async def test_full_mode_and_first_incremental_fetch_everything(store):
    connection = store.add_connection(
        tenant_id=TENANT,
        last_successful_sync_at=(datetime.now(timezone.utc) - timedelta(hours=1)).isoformat(),
    )
    client = workspace_client()
    orchestrator = SyncOrchestrator(store, client)
    await orchestrator.run_sync(connection["id"], TENANT, SyncMode.FULL)
    assert all(since is None for _, since, _ in client.content_calls)

    fresh = store.add_connection(tenant_id=TENANT)
    client.content_calls.clear()
    await orchestrator.run_sync(fresh["id"], TENANT, SyncMode.INCREMENTAL)
    assert all(since is None for _, since, _ in client.content_calls)


@pytest.mark.asyncio
async def test_content_pages_are_followed_to_the_end(store, connection):
    client = workspace_client()
    client.content["C1"] = [[slack_message("1.1")], [slack_message("1.2")], [slack_message("1.3")]]
    orchestrator = SyncOrchestrator(store, client)

    run = await orchestrator.run_sync(connection["id"], TENANT, SyncMode.FULL)

    assert run.items_created == 4
    assert [c for c in client.content_calls if c[0] == "C1"] == [("C1", None, None), ("C1", None, "1"), ("C1", None, "2")]


# ============================================================================
# PARTIAL FAILURE ISOLATION
# ============================================================================

@pytest.mark.asyncio
async def test_provider_error_in_one_container_does_not_fail_run(store, connection):
    client = workspace_client()
    client.content["C1"] = ProviderApiError("Slack conversations.history failed: invalid_cursor", code="invalid_cursor")
    orchestrator = SyncOrchestrator(store, client)

    run = await orchestrator.run_sync(connection["id"], TENANT, SyncMode.FULL)

    assert run.status == SyncStatus.COMPLETED
    assert run.containers_processed == 2
    assert run.items_created == 1
    assert run.statistics["container_ids"] == ["D1"]
    assert store.container(connection["id"], "C1")["total_items"] == 0
    assert store.container(connection["id"], "D1")["total_items"] == 1


@pytest.mark.asyncio
async def test_persistence_error_during_content_is_fatal(store, connection):
    store.fail_on.add("upsert_content")
    orchestrator = SyncOrchestrator(store, workspace_client())

    with pytest.raises(PersistenceError):
        await orchestrator.run_sync(connection["id"], TENANT, SyncMode.FULL)

    [stored_run] = store.runs.values()
    assert stored_run["status"] == "failed"
    assert store.connections[connection["id"]]["failed_sync_attempts"] == 1


@pytest.mark.asyncio
async def test_malformed_message_is_counted_and_skipped(store, connection):
    client = workspace_client()
    client.content["C1"] = [[slack_message("1.1"), {"type": "message", "text": "no ts"}, slack_message("1.2")]]
    orchestrator = SyncOrchestrator(store, client)

    run = await orchestrator.run_sync(connection["id"], TENANT, SyncMode.FULL)

    assert run.status == SyncStatus.COMPLETED
    assert run.items_failed == 1
    assert run.items_created == 3


# ============================================================================
# JOIN-AND-RETRY POLICY
# ============================================================================

@pytest.mark.asyncio
async def test_public_channel_is_joined_and_retried_once(store, connection):
    client = workspace_client()
    client.denied_until_join.add("C1")
    orchestrator = SyncOrchestrator(store, client)

    run = await orchestrator.run_sync(connection["id"], TENANT, SyncMode.FULL)

    assert client.joined == ["C1"]
    assert run.items_created == 3
    assert run.statistics["skipped_containers"] == []
    assert store.container(connection["id"], "C1")["total_items"] == 2


@pytest.mark.asyncio
async def test_failed_join_skips_public_channel(store, connection):
    client = workspace_client()
    client.denied_until_join.add("C1")
    client.join_error = ProviderPermissionError("Slack conversations.join failed: restricted_action", code="restricted_action")
    orchestrator = SyncOrchestrator(store, client)

    run = await orchestrator.run_sync(connection["id"], TENANT, SyncMode.FULL)

    assert run.status == SyncStatus.COMPLETED
    [skipped] = run.statistics["skipped_containers"]
    assert skipped["id"] == "C1"
    assert skipped["reason"].startswith("join_failed")


@pytest.mark.asyncio
async def test_channel_still_denied_after_join_is_retried_once(store, connection):
    client = workspace_client()
    client.denied.add("C1")
    orchestrator = SyncOrchestrator(store, client)

    run = await orchestrator.run_sync(connection["id"], TENANT, SyncMode.FULL)

    assert run.status == SyncStatus.COMPLETED
    assert client.joined == ["C1"]
    assert [c for c in client.content_calls if c[0] == "C1"] == [("C1", None, None), ("C1", None, None)]
    [skipped] = run.statistics["skipped_containers"]
    assert skipped["id"] == "C1"
    assert skipped["reason"].startswith("join_failed")
    assert store.container(connection["id"], "C1")["total_items"] == 0


@pytest.mark.asyncio
async def test_private_and_direct_containers_are_never_joined(store, connection):
    client = FakeSlackClient(
        members=[[slack_user("U1", "ana")]],
        containers=[[
            slack_channel("G1", "secret", "private"),
            slack_channel("D1", kind="direct", user="U1"),
            slack_channel("M1", "mpdm-ana--bo", "group_direct"),
        ]],
    )
    client.denied_until_join.update({"G1", "D1", "M1"})
    orchestrator = SyncOrchestrator(store, client)

    run = await orchestrator.run_sync(connection["id"], TENANT, SyncMode.FULL)

    assert run.status == SyncStatus.COMPLETED
    assert client.joined == []
    assert sorted(s["id"] for s in run.statistics["skipped_containers"]) == ["D1", "G1", "M1"]
    assert run.containers_processed == 3


# ============================================================================
# CONNECTION SETTINGS AND CONCURRENCY
# ============================================================================

@pytest.mark.asyncio
async def test_direct_messages_can_be_disabled(store):
    connection = store.add_connection(tenant_id=TENANT, sync_settings={"sync_direct_messages": False})
    client = workspace_client()
    orchestrator = SyncOrchestrator(store, client)

    run = await orchestrator.run_sync(connection["id"], TENANT, SyncMode.FULL)

    assert {c[0] for c in client.content_calls} == {"C1"}
    assert run.containers_processed == 1


@pytest.mark.asyncio
async def test_container_filter_and_exclusions(store):
    connection = store.add_connection(
        tenant_id=TENANT,
        sync_settings={"container_filter": ["C1", "D1"], "exclude_containers": ["D1"]},
    )
    client = workspace_client()
    orchestrator = SyncOrchestrator(store, client)

    await orchestrator.run_sync(connection["id"], TENANT, SyncMode.FULL)

    assert {c[0] for c in client.content_calls} == {"C1"}


@pytest.mark.asyncio
async def test_bounded_parallel_content_sync_matches_sequential(store, connection):
    orchestrator = SyncOrchestrator(store, workspace_client(), max_concurrent_containers=4)

    run = await orchestrator.run_sync(connection["id"], TENANT, SyncMode.FULL)

    assert run.status == SyncStatus.COMPLETED
    assert run.items_created == 3
    assert run.containers_processed == 2
    assert sorted(run.statistics["container_ids"]) == ["C1", "D1"]


@pytest.mark.asyncio
async def test_api_calls_are_counted(store, connection):
    orchestrator = SyncOrchestrator(store, workspace_client())

    run = await orchestrator.run_sync(connection["id"], TENANT, SyncMode.FULL)

    # users.list + conversations.list + one history page per container
    assert run.api_calls == 4
    assert run.statistics["api_calls_count"] == 4
