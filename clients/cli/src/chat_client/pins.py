from __future__ import annotations

from dataclasses import replace
from typing import List

from chat_client.message_table import MessageTable
from chat_client.models import Message


class PinIndex:
    """Pinned messages as a projection over the message table.

    Membership is read from ``Message.is_pinned`` on every call; the only
    state held here is the order in which ids were pinned, so the pinned
    view lists the most recently pinned message last.
    """

    def __init__(self, table: MessageTable) -> None:
        self._table = table
        self._order: List[str] = []
        table.add_replace_listener(self.reset)

    def pin(self, message_id: str) -> bool:
        message = self._table.get(message_id)
        if message is None or message.is_pinned:
            return False
        self._table.mutate(message_id, lambda m: replace(m, is_pinned=True))
        if message_id in self._order:
            self._order.remove(message_id)
        self._order.append(message_id)
        return True

    def unpin(self, message_id: str) -> bool:
        message = self._table.get(message_id)
        if message is None or not message.is_pinned:
            return False
        self._table.mutate(message_id, lambda m: replace(m, is_pinned=False))
        if message_id in self._order:
            self._order.remove(message_id)
        return True

    def ids(self) -> List[str]:
        pinned = [message.id for message in self._table if message.is_pinned]
        pinned_set = set(pinned)
        ordered = [message_id for message_id in self._order if message_id in pinned_set]
        seen = set(ordered)
        ordered.extend(message_id for message_id in pinned if message_id not in seen)
        return ordered

    def messages(self) -> List[Message]:
        result = []
        for message_id in self.ids():
            message = self._table.get(message_id)
            if message is not None:
                result.append(message)
        return result

    def reset(self) -> None:
        self._order = [message.id for message in self._table if message.is_pinned]

    def __contains__(self, message_id: object) -> bool:
        if not isinstance(message_id, str):
            return False
        message = self._table.get(message_id)
        return message is not None and message.is_pinned

    def __len__(self) -> int:
        return len(self.ids())
