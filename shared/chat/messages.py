"""Message, channel and cache entry models shared by the sync layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Union

from shared.chat.errors import ValidationError

MAX_CONTENT_LENGTH = 1000


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(raw: Union[str, int, float, datetime, None]) -> Optional[datetime]:
    """
    Parse a wire timestamp into an aware UTC datetime.

    Accepts:
      - ISO 8601 strings (with "Z" or an explicit offset; naive means UTC)
      - epoch seconds or epoch milliseconds (int/float)
      - datetime instances

    Returns None when the value is missing or unparseable.
    """
    if raw is None or isinstance(raw, bool):
        return None

    if isinstance(raw, datetime):
        parsed = raw
    elif isinstance(raw, (int, float)):
        value = float(raw)
        # ms timestamps are > 1e12
        if value > 1_000_000_000_000:
            value = value / 1000.0
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(raw, str):
        if not raw.strip():
            return None
        try:
            parsed = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _iso(ts: Optional[datetime]) -> Optional[str]:
    if ts is None:
        return None
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _first(payload: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return None


def validate_content(content: Any) -> str:
    """
    Validate message text before any mutation is dispatched.

    Returns the trimmed content, which is what gets sent to the server.
    """
    if not isinstance(content, str):
        raise ValidationError("Message content is required")

    trimmed = content.strip()
    if not trimmed:
        raise ValidationError("Message cannot be empty")
    if len(trimmed) > MAX_CONTENT_LENGTH:
        raise ValidationError(
            f"Message must be {MAX_CONTENT_LENGTH} characters or fewer"
        )
    return trimmed


@dataclass(frozen=True)
class Message:
    message_id: str
    channel_id: str
    sender_id: str
    content: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    sender_name: Optional[str] = None

    @property
    def stamp(self) -> datetime:
        """Last-writer timestamp: last modification, else creation."""
        return self.updated_at or self.created_at

    @property
    def edited(self) -> bool:
        return self.updated_at is not None and self.updated_at > self.created_at

    @property
    def display_sender(self) -> str:
        return self.sender_name or self.sender_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.message_id,
            "channelId": self.channel_id,
            "senderId": self.sender_id,
            "senderName": self.sender_name,
            "content": self.content,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(
        cls,
        payload: Dict[str, Any],
        *,
        channel_id: Optional[str] = None,
    ) -> "Message":
        """
        Build a Message from an API or feed record.

        Both camelCase (server) and snake_case keys are accepted. A record
        without an id, a sender or string content is rejected with
        ValueError so it can never reach the cache.
        """
        if not isinstance(payload, dict):
            raise ValueError("message record must be an object")

        message_id = _first(payload, "id", "message_id", "messageId")
        if message_id is None or str(message_id) == "":
            raise ValueError("message record has no id")

        content = payload.get("content")
        if not isinstance(content, str):
            raise ValueError(f"message {message_id} has no content")

        sender = payload.get("sender") if isinstance(payload.get("sender"), dict) else {}
        sender_id = _first(payload, "senderId", "sender_id") or sender.get("id")
        if sender_id is None:
            raise ValueError(f"message {message_id} has no sender")

        sender_name = _first(payload, "senderName", "sender_name") or sender.get("name")
        resolved_channel = _first(payload, "channelId", "channel_id") or channel_id
        if resolved_channel is None:
            raise ValueError(f"message {message_id} has no channel")

        created_at = parse_timestamp(_first(payload, "createdAt", "created_at"))
        updated_at = parse_timestamp(_first(payload, "updatedAt", "updated_at"))

        return cls(
            message_id=str(message_id),
            channel_id=str(resolved_channel),
            sender_id=str(sender_id),
            content=content,
            created_at=created_at or utc_now(),
            updated_at=updated_at,
            sender_name=str(sender_name) if sender_name else None,
        )


@dataclass(frozen=True)
class Channel:
    channel_id: str
    name: str
    description: Optional[str] = None
    owner_id: Optional[str] = None
    member_ids: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Channel":
        channel_id = _first(payload, "id", "channel_id", "channelId")
        if channel_id is None:
            raise ValueError("channel record has no id")

        members = payload.get("members") or []
        member_ids = frozenset(
            str(m.get("id")) if isinstance(m, dict) else str(m)
            for m in members
            if m is not None
        )
        owner_id = _first(payload, "creatorId", "ownerId", "owner_id", "creator_id")

        return cls(
            channel_id=str(channel_id),
            name=str(payload.get("name") or ""),
            description=payload.get("description"),
            owner_id=str(owner_id) if owner_id is not None else None,
            member_ids=member_ids,
        )


@dataclass(frozen=True)
class CurrentUser:
    user_id: str
    name: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "CurrentUser":
        user_id = _first(payload, "id", "user_id", "userId")
        if user_id is None:
            raise ValueError("user record has no id")
        name = payload.get("name")
        return cls(user_id=str(user_id), name=str(name) if name else None)


class SyncStatus(str, Enum):
    CONFIRMED = "confirmed"
    PENDING_CREATE = "pending-create"
    PENDING_EDIT = "pending-edit"
    PENDING_DELETE = "pending-delete"


@dataclass(frozen=True)
class CacheEntry:
    """
    A message as the client currently shows it, plus its sync state.

    base is the last authoritative copy of the message (None until the
    server has confirmed it); version is bumped by every local mutation.
    """

    message: Message
    status: SyncStatus = SyncStatus.CONFIRMED
    correlation_token: Optional[str] = None
    base: Optional[Message] = None
    version: int = 0

    @property
    def message_id(self) -> str:
        return self.message.message_id

    @property
    def pending(self) -> bool:
        return self.status != SyncStatus.CONFIRMED

    @property
    def visible(self) -> bool:
        return self.status != SyncStatus.PENDING_DELETE


def can_edit(message: Message, user: Optional[CurrentUser]) -> bool:
    """Only the sender may edit a message."""
    return user is not None and message.sender_id == user.user_id


def can_delete(
    message: Message,
    user: Optional[CurrentUser],
    channel: Optional[Channel] = None,
) -> bool:
    """The sender or the channel owner may delete a message."""
    if user is None:
        return False
    if message.sender_id == user.user_id:
        return True
    return channel is not None and channel.owner_id == user.user_id


__all__ = [
    "MAX_CONTENT_LENGTH",
    "CacheEntry",
    "Channel",
    "CurrentUser",
    "Message",
    "SyncStatus",
    "can_delete",
    "can_edit",
    "parse_timestamp",
    "utc_now",
    "validate_content",
]
