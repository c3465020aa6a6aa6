"""
Entity persistence helpers
Idempotent create-or-merge of normalized Slack records into Supabase

Each record is written by its natural key, so replaying the same page
(incremental overlap, join retry, crashed run) never creates duplicates.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from app.services.sync.database import SyncStore
from app.services.sync.records import (
    ContainerKind,
    ContainerRecord,
    ContentRecord,
    MemberRecord,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class EntityUpserter:
    """Writes member, container and content records for one tenant/connection."""

    def __init__(self, store: SyncStore):
        self.store = store

    # ========================================================================
    # MEMBERS
    # ========================================================================

    async def upsert_member(self, tenant_id: str, connection_id: str, record: MemberRecord) -> Dict[str, Any]:
        row = {
            "tenant_id": tenant_id,
            "connection_id": connection_id,
            "external_id": record.external_id,
            "workspace_id": record.workspace_id,
            "name": record.name,
            "real_name": record.real_name,
            "display_name": record.display_name,
            "email": record.email,
            "avatar_url": record.avatar_url,
            "title": record.title,
            "timezone": record.timezone,
            "timezone_offset": record.timezone_offset,
            "status_text": record.status_text,
            "status_emoji": record.status_emoji,
            "is_bot": record.is_bot,
            "is_admin": record.is_admin,
            "is_owner": record.is_owner,
            "is_primary_owner": record.is_primary_owner,
            "is_restricted": record.is_restricted,
            "is_ultra_restricted": record.is_ultra_restricted,
            "deactivated": record.deactivated,
            "provider_updated_at": record.provider_updated_at,
            "metadata": record.metadata,
            "last_synced_at": _now(),
        }
        return await self.store.upsert_member(row)

    # ========================================================================
    # CONTAINERS
    # ========================================================================

    async def resolve_container_name(self, tenant_id: str, connection_id: str, record: ContainerRecord) -> str:
        """
        Human-readable container name.

        Direct containers are named after the other member ("DM: Ana"), using
        the stored member row when there is one and the raw member id when not.
        """
        if record.container_kind == ContainerKind.DIRECT and record.dm_member_id:
            member = await self.store.get_member(tenant_id, connection_id, record.dm_member_id)
            if member:
                best = (
                    member.get("display_name")
                    or member.get("real_name")
                    or member.get("name")
                    or record.dm_member_id
                )
                return f"DM: {best}"
            return f"DM: {record.dm_member_id}"

        if record.container_kind == ContainerKind.GROUP_DIRECT:
            return record.name or f"Group DM: {record.external_id}"

        return record.name or record.external_id

    async def upsert_container(self, tenant_id: str, connection_id: str, record: ContainerRecord) -> Dict[str, Any]:
        name = await self.resolve_container_name(tenant_id, connection_id, record)
        row = {
            "tenant_id": tenant_id,
            "connection_id": connection_id,
            "external_id": record.external_id,
            "kind": record.container_kind.value,
            "name": name,
            "topic": record.topic,
            "purpose": record.purpose,
            "is_private": record.container_kind != ContainerKind.PUBLIC,
            "is_archived": record.is_archived,
            "is_general": record.is_general,
            "is_active": not record.is_archived,
            "member_count": record.member_count,
            "creator_id": record.creator_id,
            "provider_created_at": record.provider_created_at,
            "dm_member_id": record.dm_member_id,
            "metadata": record.metadata,
        }
        return await self.store.upsert_container(row)

    # ========================================================================
    # CONTENT
    # ========================================================================

    async def upsert_content(
        self,
        tenant_id: str,
        connection_id: str,
        container_id: str,
        record: ContentRecord,
    ) -> bool:
        """
        Create or merge one content item.

        Returns:
            True if the item did not exist before this call
        """
        existed = await self.store.content_exists(tenant_id, record.external_id)

        row = {
            "tenant_id": tenant_id,
            "connection_id": connection_id,
            "container_id": container_id,
            "external_id": record.external_id,
            "author_id": record.author_id,
            "text": record.text,
            "message_type": record.message_type,
            "subtype": record.subtype,
            "thread_ref": record.thread_ref,
            "is_thread_reply": record.is_thread_reply,
            "reply_count": record.reply_count,
            "reply_users": record.reply_users,
            "latest_reply_at": record.latest_reply_at,
            "reactions": record.reactions,
            "attachments": record.attachments,
            "files": record.files,
            "is_edited": record.is_edited,
            "edited_at": record.edited_at,
            "is_pinned": record.is_pinned,
            "bot_id": record.bot_id,
            "bot_username": record.bot_username,
            "provider_timestamp": record.provider_timestamp,
            "metadata": record.metadata,
            "last_synced_at": _now(),
        }
        await self.store.upsert_content(row)
        return not existed
