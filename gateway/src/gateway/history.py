from __future__ import annotations

import copy
from typing import Any, Dict, List, Tuple

Message = Dict[str, Any]


def room_id_for(user_id: str, peer_id: str) -> str:
    """Room key for an unordered pair of users."""

    first, second = sorted((user_id, peer_id))
    return f"{first}:{second}"


def idempotency_key(message: Message) -> str:
    correlation_id = message.get("correlationId")
    if isinstance(correlation_id, str) and correlation_id:
        return correlation_id
    return str(message["id"])


def _clean_reactions(raw: Any) -> list[dict[str, Any]]:
    """Keep well-formed, non-empty reactions without viewer-relative flags."""

    if not isinstance(raw, list):
        return []
    cleaned = []
    for reaction in raw:
        if not isinstance(reaction, dict):
            continue
        emoji = reaction.get("emoji")
        users = reaction.get("users")
        if not isinstance(emoji, str) or not emoji or not isinstance(users, list) or not users:
            continue
        if any(not isinstance(user, str) for user in users):
            continue
        unique = list(dict.fromkeys(users))
        cleaned.append({"emoji": emoji, "users": unique, "count": len(unique)})
    return cleaned


class RoomHistory:
    """In-memory, append-only message history per room with idempotency enforcement."""

    def __init__(self) -> None:
        self._messages: Dict[str, List[Message]] = {}
        self._idempotency: Dict[Tuple[str, str], Message] = {}

    def append(self, room_id: str, message: Message) -> tuple[Message, bool]:
        """Store ``message`` or return the copy stored for the same idempotency key.

        The stored copy is marked ``delivered`` and has viewer-relative
        ``hasReacted`` flags stripped from its reactions.
        """

        key = (room_id, idempotency_key(message))
        if key in self._idempotency:
            return self._idempotency[key], False

        stored = copy.deepcopy(message)
        stored["status"] = "delivered"
        stored["reactions"] = _clean_reactions(stored.get("reactions"))
        self._messages.setdefault(room_id, []).append(stored)
        self._idempotency[key] = stored
        return stored, True

    def list(self, room_id: str, limit: int | None = None) -> list[Message]:
        """Return the newest ``limit`` messages of the room in arrival order."""

        messages = self._messages.get(room_id, [])
        if limit is not None:
            if limit <= 0:
                return []
            messages = messages[-limit:]
        return copy.deepcopy(messages)

    def apply_reaction(self, room_id: str, message_id: str, emoji: str, user_id: str, active: bool) -> bool:
        """Set ``user_id``'s membership on ``emoji``; returns False for unknown messages."""

        for message in self._messages.get(room_id, []):
            if message.get("id") != message_id:
                continue
            reactions = message.setdefault("reactions", [])
            for reaction in reactions:
                if reaction["emoji"] != emoji:
                    continue
                users = [user for user in reaction["users"] if user != user_id]
                if active:
                    users.append(user_id)
                if users:
                    reaction["users"] = users
                    reaction["count"] = len(users)
                else:
                    reactions.remove(reaction)
                return True
            if active:
                reactions.append({"emoji": emoji, "users": [user_id], "count": 1})
            return True
        return False
