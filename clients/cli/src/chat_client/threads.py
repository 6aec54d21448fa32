from __future__ import annotations

from dataclasses import replace
from typing import Optional, Tuple

from chat_client.message_table import MessageTable
from chat_client.models import Message, Reply, new_reply_id, now_ms


class ThreadView:
    """Focus on one message's replies, read live from the message table."""

    def __init__(self, table: MessageTable) -> None:
        self._table = table
        self.message_id: Optional[str] = None
        table.add_replace_listener(self.close)

    @property
    def is_open(self) -> bool:
        return self.message_id is not None and self.message_id in self._table

    @property
    def message(self) -> Optional[Message]:
        if self.message_id is None:
            return None
        return self._table.get(self.message_id)

    @property
    def replies(self) -> Tuple[Reply, ...]:
        message = self.message
        if message is None:
            return ()
        return message.replies

    def open(self, message_id: str) -> bool:
        if message_id not in self._table:
            return False
        self.message_id = message_id
        return True

    def close(self) -> None:
        self.message_id = None

    def send_reply(self, message_id: str, content: str, sender_id: str, sender_name: str) -> Optional[Reply]:
        """Append a reply to ``message_id`` through the table; blank content is ignored."""

        text = content.strip()
        if not text or message_id not in self._table:
            return None
        reply = Reply(
            id=new_reply_id(),
            sender_id=sender_id,
            sender_name=sender_name,
            content=text,
            timestamp=now_ms(),
        )
        self._table.mutate(message_id, lambda m: replace(m, replies=m.replies + (reply,)))
        return reply
