"""
Normalized Records
Typed variants for everything the sync engine moves between provider and store

Each provider record kind (member, container, content) has its own model with
a literal `kind` tag. Mandatory fields have no default, so a mapping function
that cannot fill them fails instead of writing a half-empty row.

Connection is the read-side view of a stored connection row.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ContainerKind(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    DIRECT = "direct"
    GROUP_DIRECT = "group_direct"

    @property
    def is_direct(self) -> bool:
        return self in (ContainerKind.DIRECT, ContainerKind.GROUP_DIRECT)


ALL_CONTAINER_KINDS = (
    ContainerKind.PUBLIC,
    ContainerKind.PRIVATE,
    ContainerKind.DIRECT,
    ContainerKind.GROUP_DIRECT,
)


class SyncMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


# ============================================================================
# PROVIDER RECORDS
# ============================================================================

class MemberRecord(BaseModel):
    kind: Literal["member"] = "member"
    external_id: str
    name: str
    workspace_id: Optional[str] = None
    real_name: Optional[str] = None
    display_name: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None
    title: Optional[str] = None
    timezone: Optional[str] = None
    timezone_offset: Optional[int] = None
    status_text: Optional[str] = None
    status_emoji: Optional[str] = None
    is_bot: bool = False
    is_admin: bool = False
    is_owner: bool = False
    is_primary_owner: bool = False
    is_restricted: bool = False
    is_ultra_restricted: bool = False
    deactivated: bool = False
    provider_updated_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def best_name(self) -> str:
        """Name shown to people: display name, then real name, then handle."""
        return self.display_name or self.real_name or self.name or self.external_id


class ContainerRecord(BaseModel):
    kind: Literal["container"] = "container"
    external_id: str
    container_kind: ContainerKind
    name: Optional[str] = None
    topic: Optional[str] = None
    purpose: Optional[str] = None
    is_archived: bool = False
    is_general: bool = False
    member_count: int = 0
    creator_id: Optional[str] = None
    provider_created_at: Optional[datetime] = None
    dm_member_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ContentRecord(BaseModel):
    kind: Literal["content"] = "content"
    external_id: str
    provider_timestamp: datetime
    author_id: str = "unknown"
    text: str = ""
    message_type: str = "message"
    subtype: Optional[str] = None
    thread_ref: Optional[str] = None
    is_thread_reply: bool = False
    reply_count: int = 0
    reply_users: Optional[List[str]] = None
    latest_reply_at: Optional[datetime] = None
    reactions: Optional[List[Dict[str, Any]]] = None
    attachments: Optional[List[Dict[str, Any]]] = None
    files: Optional[List[Dict[str, Any]]] = None
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    is_pinned: bool = False
    bot_id: Optional[str] = None
    bot_username: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# CONNECTION VIEW
# ============================================================================

class SyncSettings(BaseModel):
    """Per-connection sync settings stored as JSON on the connection row."""
    sync_interval: Optional[int] = None  # minutes
    container_filter: Optional[List[str]] = None
    exclude_containers: Optional[List[str]] = None
    sync_direct_messages: bool = True

    model_config = ConfigDict(extra="ignore")


class Connection(BaseModel):
    id: str
    tenant_id: str
    access_token: str
    workspace_id: Optional[str] = None
    scopes: Optional[str] = None
    is_active: bool = True
    last_sync_at: Optional[datetime] = None
    last_successful_sync_at: Optional[datetime] = None
    failed_sync_attempts: int = 0
    last_sync_error: Optional[str] = None
    total_items_synced: int = 0
    sync_settings: SyncSettings = Field(default_factory=SyncSettings)

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Connection":
        data = dict(row)
        data["id"] = str(data["id"])
        data["tenant_id"] = str(data["tenant_id"])
        data["sync_settings"] = data.get("sync_settings") or {}
        data["failed_sync_attempts"] = data.get("failed_sync_attempts") or 0
        data["total_items_synced"] = data.get("total_items_synced") or 0
        return cls(**data)

    @property
    def last_activity_at(self) -> Optional[datetime]:
        """Most recent of the last successful sync and the last attempt."""
        stamps = [s for s in (self.last_successful_sync_at, self.last_sync_at) if s]
        return max(stamps) if stamps else None
