from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from chat_client.models import Message

logger = logging.getLogger(__name__)

Updater = Callable[[Message], Message]
ReplaceListener = Callable[[], None]


class MessageTable:
    """Canonical id-indexed store of the messages in the open room.

    Iteration order is arrival order: history snapshot order followed by
    appends in the order they happened. Nothing is ever sorted by the
    ``timestamp`` field.
    """

    def __init__(self) -> None:
        self._messages: Dict[str, Message] = {}
        self._by_correlation: Dict[str, str] = {}
        self._replace_listeners: List[ReplaceListener] = []

    def add_replace_listener(self, listener: ReplaceListener) -> None:
        """Register a projection to rebuild after ``replace_all``."""

        self._replace_listeners.append(listener)

    def replace_all(self, messages: Iterable[Message]) -> None:
        """Swap the whole table for a history snapshot.

        Duplicate ids in the snapshot keep their first occurrence. Every
        registered projection is reset afterwards.
        """

        self._messages = {}
        self._by_correlation = {}
        for message in messages:
            if message.id in self._messages:
                logger.debug("dropping duplicate id %s from snapshot", message.id)
                continue
            self._store(message)
        for listener in list(self._replace_listeners):
            listener()

    def append(self, message: Message) -> bool:
        """Add ``message`` at the end of the table; existing ids are left untouched."""

        if message.id in self._messages:
            return False
        self._store(message)
        return True

    def mutate(self, message_id: str, updater: Updater) -> Optional[Message]:
        """Replace one message with ``updater(message)``; no-op when absent."""

        current = self._messages.get(message_id)
        if current is None:
            return None
        updated = updater(current)
        if updated.id != message_id:
            raise ValueError("updater must not change the message id")
        if current.correlation_id and current.correlation_id != updated.correlation_id:
            self._by_correlation.pop(current.correlation_id, None)
        self._store(updated)
        return updated

    def get(self, message_id: str) -> Optional[Message]:
        return self._messages.get(message_id)

    def find_by_correlation(self, correlation_id: Optional[str]) -> Optional[Message]:
        if not correlation_id:
            return None
        message_id = self._by_correlation.get(correlation_id)
        if message_id is None:
            return None
        return self._messages.get(message_id)

    def snapshot(self) -> Tuple[Message, ...]:
        """Read-only view for collaborators; messages are immutable values."""

        return tuple(self._messages.values())

    def ids(self) -> List[str]:
        return list(self._messages)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._messages

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages.values()))

    def __len__(self) -> int:
        return len(self._messages)

    def _store(self, message: Message) -> None:
        self._messages[message.id] = message
        if message.correlation_id:
            self._by_correlation[message.correlation_id] = message.id
