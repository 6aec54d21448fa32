"""Message model for a two-party conversation and its wire (JSON) form."""

from __future__ import annotations

import math
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple, Union

from chat_client.errors import EnvelopeError


def now_ms() -> int:
    return int(time.time() * 1000)


def new_message_id() -> str:
    return f"m_{secrets.token_urlsafe(12)}"


def new_correlation_id() -> str:
    return f"c_{secrets.token_urlsafe(12)}"


def new_reply_id() -> str:
    return f"r_{secrets.token_urlsafe(12)}"


def room_id_for(user_id: str, peer_id: str) -> str:
    """Key of the logical room shared by an unordered pair of users."""

    first, second = sorted((user_id, peer_id))
    return f"{first}:{second}"


class MessageType(str, Enum):
    TEXT = "text"
    VOICE = "voice"
    FILE = "file"
    IMAGE = "image"
    STICKER = "sticker"


class MessageStatus(str, Enum):
    FAILED = "failed"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {
    MessageStatus.FAILED: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
}


@dataclass(frozen=True)
class VoiceMedia:
    duration: float
    waveform: Tuple[float, ...] = ()


@dataclass(frozen=True)
class FileMedia:
    file_url: str
    file_name: str
    file_size: int


Media = Union[VoiceMedia, FileMedia]

_MEDIA_FOR_TYPE = {
    MessageType.TEXT: None,
    MessageType.STICKER: None,
    MessageType.VOICE: VoiceMedia,
    MessageType.FILE: FileMedia,
    MessageType.IMAGE: FileMedia,
}


@dataclass(frozen=True)
class Reaction:
    """One emoji on a message; ``count`` is always ``len(users)``."""

    emoji: str
    users: FrozenSet[str]
    has_reacted: bool = False

    @property
    def count(self) -> int:
        return len(self.users)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "emoji": self.emoji,
            "count": self.count,
            "users": sorted(self.users),
            "hasReacted": self.has_reacted,
        }


@dataclass(frozen=True)
class Reply:
    id: str
    sender_id: str
    sender_name: str
    content: str
    timestamp: int

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "senderId": self.sender_id,
            "senderName": self.sender_name,
            "content": self.content,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class Message:
    id: str
    sender_id: str
    sender_name: str
    content: str
    timestamp: int
    type: MessageType = MessageType.TEXT
    status: MessageStatus = MessageStatus.SENT
    reactions: Tuple[Reaction, ...] = ()
    replies: Tuple[Reply, ...] = ()
    is_pinned: bool = False
    media: Optional[Media] = None
    correlation_id: Optional[str] = field(default=None)

    def __post_init__(self) -> None:
        expected = _MEDIA_FOR_TYPE[self.type]
        if expected is None:
            if self.media is not None:
                raise EnvelopeError(f"{self.type.value} messages carry no media")
        elif not isinstance(self.media, expected):
            raise EnvelopeError(f"{self.type.value} messages require {expected.__name__}")

    def to_wire(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "senderId": self.sender_id,
            "senderName": self.sender_name,
            "content": self.content,
            "timestamp": self.timestamp,
            "type": self.type.value,
            "status": self.status.value,
            "reactions": [reaction.to_wire() for reaction in self.reactions],
            "replies": [reply.to_wire() for reply in self.replies],
            "isPinned": self.is_pinned,
        }
        if self.correlation_id is not None:
            payload["correlationId"] = self.correlation_id
        if isinstance(self.media, VoiceMedia):
            payload["duration"] = self.media.duration
            payload["waveform"] = list(self.media.waveform)
        elif isinstance(self.media, FileMedia):
            payload["fileUrl"] = self.media.file_url
            payload["fileName"] = self.media.file_name
            payload["fileSize"] = self.media.file_size
        return payload


_MAX_TIMESTAMP_MS = 253_370_764_800_000


def _bounded(millis: int) -> int:
    if not 0 <= millis <= _MAX_TIMESTAMP_MS:
        raise EnvelopeError(f"timestamp {millis} out of range")
    return millis


def parse_timestamp(value: Any) -> int:
    """Accept epoch milliseconds or an ISO-8601 string; default to now.

    Values outside 1970-01-01 .. 9999-01-01 UTC are rejected so every accepted
    timestamp converts to a ``datetime`` in any time zone.
    """

    if value is None:
        return now_ms()
    if isinstance(value, bool):
        raise EnvelopeError("timestamp must be a number or ISO-8601 string")
    if isinstance(value, float) and not math.isfinite(value):
        raise EnvelopeError("timestamp must be finite")
    if isinstance(value, (int, float)):
        return _bounded(int(value))
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise EnvelopeError(f"invalid timestamp {value!r}") from exc
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return _bounded(int(parsed.timestamp() * 1000))
    raise EnvelopeError("timestamp must be a number or ISO-8601 string")


def _require_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise EnvelopeError(f"{key} required")
    return value


def reaction_from_wire(data: Any, viewer_id: Optional[str] = None) -> Optional[Reaction]:
    if not isinstance(data, dict):
        raise EnvelopeError("reaction must be an object")
    emoji = _require_str(data, "emoji")
    raw_users = data.get("users") or []
    if not isinstance(raw_users, list) or any(not isinstance(user, str) for user in raw_users):
        raise EnvelopeError("reaction users must be a list of user ids")
    users = frozenset(raw_users)
    if not users:
        return None
    if viewer_id is None:
        has_reacted = bool(data.get("hasReacted", False))
    else:
        has_reacted = viewer_id in users
    return Reaction(emoji=emoji, users=users, has_reacted=has_reacted)


def reply_from_wire(data: Any) -> Reply:
    if not isinstance(data, dict):
        raise EnvelopeError("reply must be an object")
    return Reply(
        id=_require_str(data, "id"),
        sender_id=_require_str(data, "senderId"),
        sender_name=str(data.get("senderName") or data["senderId"]),
        content=str(data.get("content", "")),
        timestamp=parse_timestamp(data.get("timestamp")),
    )


def _media_from_wire(message_type: MessageType, data: Dict[str, Any]) -> Optional[Media]:
    if message_type is MessageType.VOICE:
        duration = data.get("duration")
        waveform = data.get("waveform") or []
        if isinstance(duration, bool) or not isinstance(duration, (int, float)):
            raise EnvelopeError("voice messages require a numeric duration")
        if not isinstance(waveform, list) or any(
            isinstance(sample, bool) or not isinstance(sample, (int, float)) for sample in waveform
        ):
            raise EnvelopeError("waveform must be a list of numbers")
        return VoiceMedia(duration=duration, waveform=tuple(waveform))
    if message_type in {MessageType.FILE, MessageType.IMAGE}:
        file_size = data.get("fileSize")
        if isinstance(file_size, bool) or not isinstance(file_size, int):
            raise EnvelopeError("fileSize must be an integer")
        return FileMedia(
            file_url=_require_str(data, "fileUrl"),
            file_name=_require_str(data, "fileName"),
            file_size=file_size,
        )
    return None


def message_from_wire(data: Any, viewer_id: Optional[str] = None) -> Message:
    """Decode a wire message, recomputing ``hasReacted`` for ``viewer_id``."""

    if not isinstance(data, dict):
        raise EnvelopeError("message must be an object")
    try:
        message_type = MessageType(data.get("type") or MessageType.TEXT.value)
        status = MessageStatus(data.get("status") or MessageStatus.SENT.value)
    except ValueError as exc:
        raise EnvelopeError(str(exc)) from exc

    raw_reactions = data.get("reactions") or []
    raw_replies = data.get("replies") or []
    if not isinstance(raw_reactions, list) or not isinstance(raw_replies, list):
        raise EnvelopeError("reactions and replies must be lists")
    reactions = []
    for raw in raw_reactions:
        reaction = reaction_from_wire(raw, viewer_id)
        if reaction is not None:
            reactions.append(reaction)

    correlation_id = data.get("correlationId")
    sender_id = _require_str(data, "senderId")
    return Message(
        id=_require_str(data, "id"),
        sender_id=sender_id,
        sender_name=str(data.get("senderName") or sender_id),
        content=str(data.get("content", "")),
        timestamp=parse_timestamp(data.get("timestamp")),
        type=message_type,
        status=status,
        reactions=tuple(reactions),
        replies=tuple(reply_from_wire(raw) for raw in raw_replies),
        is_pinned=bool(data.get("isPinned", False)),
        media=_media_from_wire(message_type, data),
        correlation_id=correlation_id if isinstance(correlation_id, str) and correlation_id else None,
    )
