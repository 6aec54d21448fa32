from __future__ import annotations

from typing import Iterable, List

from chat_client.models import Message, MessageType

FILTER_ALL = "all"
FILTER_SENT = "sent"
FILTER_RECEIVED = "received"
MAX_RESULTS = 50


def search_messages(
    messages: Iterable[Message],
    query: str,
    current_user: str,
    message_filter: str = FILTER_ALL,
    limit: int = MAX_RESULTS,
) -> List[Message]:
    """Case-insensitive content search over a snapshot, newest ``limit`` matches kept.

    Voice messages have no searchable text and are skipped.
    """

    if message_filter not in {FILTER_ALL, FILTER_SENT, FILTER_RECEIVED}:
        raise ValueError(f"unknown filter: {message_filter}")
    needle = query.strip().lower()
    if not needle:
        return []
    matches = []
    for message in messages:
        if message.type is MessageType.VOICE:
            continue
        if message_filter == FILTER_SENT and message.sender_id != current_user:
            continue
        if message_filter == FILTER_RECEIVED and message.sender_id == current_user:
            continue
        if needle in message.content.lower():
            matches.append(message)
    if limit <= 0:
        return []
    return matches[-limit:]
