"""
Slack Record Normalizer
Maps raw Slack Web API payloads onto normalized member/container/content records

Mapping is fail-closed: a payload missing a mandatory field raises
RecordValidationError instead of producing a partial record.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import ValidationError

from app.services.sync.errors import RecordValidationError
from app.services.sync.records import (
    ContainerKind,
    ContainerRecord,
    ContentRecord,
    MemberRecord,
)

logger = logging.getLogger(__name__)


# ============================================================================
# HELPERS
# ============================================================================

def slack_ts_to_datetime(value: Any) -> Optional[datetime]:
    """Convert a Slack timestamp ("1700000000.000100" or epoch int) to an aware datetime."""
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _text_value(field: Any) -> Optional[str]:
    # topic / purpose come back as {"value": "...", "creator": ..., "last_set": ...}
    if isinstance(field, dict):
        return field.get("value") or None
    return field or None


def container_kind_of(raw: Dict[str, Any]) -> Optional[ContainerKind]:
    if raw.get("is_im"):
        return ContainerKind.DIRECT
    if raw.get("is_mpim"):
        return ContainerKind.GROUP_DIRECT
    if raw.get("is_private") or raw.get("is_group"):
        return ContainerKind.PRIVATE
    if raw.get("is_channel") or "is_private" in raw:
        return ContainerKind.PUBLIC
    return None


# ============================================================================
# MEMBERS
# ============================================================================

def normalize_slack_member(raw: Dict[str, Any]) -> MemberRecord:
    """
    Normalize a users.list member.

    Args:
        raw: Member object from Slack

    Returns:
        MemberRecord

    Raises:
        RecordValidationError: id or name missing
    """
    member_id = raw.get("id")
    if not member_id:
        raise RecordValidationError("member", "missing id")
    if not raw.get("name"):
        raise RecordValidationError("member", "missing name", member_id)

    profile = raw.get("profile") or {}

    try:
        return MemberRecord(
            external_id=member_id,
            name=raw["name"],
            workspace_id=raw.get("team_id"),
            real_name=raw.get("real_name") or profile.get("real_name") or None,
            display_name=profile.get("display_name") or None,
            email=profile.get("email"),
            avatar_url=profile.get("image_512") or profile.get("image_192"),
            title=profile.get("title") or None,
            timezone=raw.get("tz"),
            timezone_offset=raw.get("tz_offset"),
            status_text=profile.get("status_text") or None,
            status_emoji=profile.get("status_emoji") or None,
            is_bot=bool(raw.get("is_bot")),
            is_admin=bool(raw.get("is_admin")),
            is_owner=bool(raw.get("is_owner")),
            is_primary_owner=bool(raw.get("is_primary_owner")),
            is_restricted=bool(raw.get("is_restricted")),
            is_ultra_restricted=bool(raw.get("is_ultra_restricted")),
            deactivated=bool(raw.get("deleted")),
            provider_updated_at=slack_ts_to_datetime(raw.get("updated")),
            metadata={
                "phone": profile.get("phone"),
                "skype": profile.get("skype"),
                "fields": profile.get("fields"),
                "locale": raw.get("locale"),
            },
        )
    except ValidationError as e:
        raise RecordValidationError("member", str(e), member_id) from e


# ============================================================================
# CONTAINERS
# ============================================================================

def normalize_slack_container(raw: Dict[str, Any]) -> ContainerRecord:
    """Normalize a conversations.list entry. Direct containers keep the raw name; the upserter resolves it."""
    container_id = raw.get("id")
    if not container_id:
        raise RecordValidationError("container", "missing id")

    kind = container_kind_of(raw)
    if kind is None:
        raise RecordValidationError("container", "cannot determine conversation type", container_id)

    try:
        return ContainerRecord(
            external_id=container_id,
            container_kind=kind,
            name=raw.get("name") or None,
            topic=_text_value(raw.get("topic")),
            purpose=_text_value(raw.get("purpose")),
            is_archived=bool(raw.get("is_archived")),
            is_general=bool(raw.get("is_general")),
            member_count=raw.get("num_members") or 0,
            creator_id=raw.get("creator"),
            provider_created_at=slack_ts_to_datetime(raw.get("created")),
            dm_member_id=raw.get("user") if kind == ContainerKind.DIRECT else None,
            metadata={
                "locale": raw.get("locale"),
                "shared_team_ids": raw.get("shared_team_ids"),
                "pending_shared": raw.get("pending_shared"),
                "previous_names": raw.get("previous_names"),
            },
        )
    except ValidationError as e:
        raise RecordValidationError("container", str(e), container_id) from e


# ============================================================================
# CONTENT
# ============================================================================

def normalize_slack_message(raw: Dict[str, Any]) -> ContentRecord:
    """
    Normalize a conversations.history message.

    The Slack `ts` is both the message's natural key and its timestamp,
    so a message without a parseable `ts` is rejected.
    """
    ts = raw.get("ts")
    if not ts:
        raise RecordValidationError("content", "missing ts")

    created_at = slack_ts_to_datetime(ts)
    if created_at is None:
        raise RecordValidationError("content", f"unparseable ts {ts!r}", str(ts))

    thread_ts = raw.get("thread_ts")
    edited = raw.get("edited") or {}

    try:
        return ContentRecord(
            external_id=str(ts),
            provider_timestamp=created_at,
            author_id=raw.get("user") or raw.get("bot_id") or "unknown",
            text=raw.get("text") or "",
            message_type=raw.get("type") or "message",
            subtype=raw.get("subtype"),
            thread_ref=thread_ts,
            is_thread_reply=bool(thread_ts) and thread_ts != ts,
            reply_count=raw.get("reply_count") or 0,
            reply_users=raw.get("reply_users"),
            latest_reply_at=slack_ts_to_datetime(raw.get("latest_reply")),
            reactions=raw.get("reactions"),
            attachments=raw.get("attachments"),
            files=raw.get("files"),
            is_edited=bool(edited),
            edited_at=slack_ts_to_datetime(edited.get("ts")),
            is_pinned=bool(raw.get("pinned_to")),
            bot_id=raw.get("bot_id"),
            bot_username=raw.get("username"),
            metadata={
                "blocks": raw.get("blocks"),
                "client_msg_id": raw.get("client_msg_id"),
                "team": raw.get("team"),
            },
        )
    except ValidationError as e:
        raise RecordValidationError("content", str(e), str(ts)) from e
