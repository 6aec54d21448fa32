"""Authoritative local state for the open two-party conversation.

Every mutation is synchronous. Results of asynchronous work (history
snapshots, pushed messages, acknowledgements) are applied together with the
session token that was current when the work started; a token that no
longer matches the active room session means the user switched rooms in the
meantime and the result is dropped.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

from chat_client import reactions as reaction_engine
from chat_client.errors import ChatError, RoomError, SendFailure
from chat_client.message_table import MessageTable
from chat_client.models import Message, MessageStatus, Reply, room_id_for
from chat_client.pins import PinIndex
from chat_client.threads import ThreadView

logger = logging.getLogger(__name__)

ROOM_JOINING = "joining"
ROOM_LOADING = "loading"
ROOM_READY = "ready"
ROOM_FAILED = "failed"
ROOM_CLOSED = "closed"


@dataclass
class RoomSession:
    local_user_id: str
    local_user_name: str
    peer_id: str
    token: int
    connection: Any = None
    status: str = ROOM_JOINING
    error: Optional[RoomError] = None

    @property
    def room_id(self) -> str:
        return room_id_for(self.local_user_id, self.peer_id)


def _reconcile(local: Message, remote: Message, echo: bool, take_reactions: bool = False) -> Message:
    status = max(local.status, remote.status, key=lambda value: value.rank)
    if echo and status.rank < MessageStatus.DELIVERED.rank:
        status = MessageStatus.DELIVERED
    if take_reactions:
        return replace(local, status=status, reactions=remote.reactions)
    return replace(local, status=status)


@dataclass
class ConversationState:
    table: MessageTable = field(default_factory=MessageTable)
    session: Optional[RoomSession] = None
    local_typing: bool = False
    peer_typing: bool = False
    send_failures: Dict[str, SendFailure] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.pins = PinIndex(self.table)
        self.thread = ThreadView(self.table)
        self._tokens = itertools.count(1)

    # -- room session lifecycle -------------------------------------------

    def start_session(
        self,
        local_user_id: str,
        peer_id: str,
        *,
        local_user_name: Optional[str] = None,
        connection: Any = None,
    ) -> RoomSession:
        """Tear down the current room and open an empty one for ``peer_id``."""

        self.end_session()
        self.session = RoomSession(
            local_user_id=local_user_id,
            local_user_name=local_user_name or local_user_id,
            peer_id=peer_id,
            token=next(self._tokens),
            connection=connection,
        )
        return self.session

    def end_session(self) -> Optional[RoomSession]:
        previous = self.session
        if previous is not None:
            previous.status = ROOM_CLOSED
        self.session = None
        self.table.replace_all([])
        self.local_typing = False
        self.peer_typing = False
        self.send_failures.clear()
        return previous

    @property
    def local_user_id(self) -> Optional[str]:
        return self.session.local_user_id if self.session is not None else None

    def is_current(self, token: Optional[int]) -> bool:
        return token is not None and self.session is not None and self.session.token == token

    def token_for_room(self, room_id: Any) -> Optional[int]:
        """Token of the active session if ``room_id`` names its room."""

        if self.session is None or room_id != self.session.room_id:
            return None
        return self.session.token

    def _accept(self, token: Optional[int], what: str) -> bool:
        if self.is_current(token):
            return True
        logger.debug("discarding stale %s (token=%s, active=%s)", what, token, self.session and self.session.token)
        return False

    def mark_room_status(self, token: int, status: str) -> bool:
        if not self._accept(token, f"room status {status}"):
            return False
        assert self.session is not None
        self.session.status = status
        if status != ROOM_FAILED:
            self.session.error = None
        return True

    def fail_room(self, token: int, error: RoomError) -> bool:
        if not self._accept(token, "room failure"):
            return False
        assert self.session is not None
        logger.warning("room %s failed: %s", self.session.room_id, error)
        self.session.status = ROOM_FAILED
        self.session.error = error
        return True

    # -- inbound events ----------------------------------------------------

    def apply_history(self, token: Optional[int], messages: Iterable[Message]) -> bool:
        """Replace the table with a history snapshot for the active session."""

        if not self._accept(token, "history snapshot"):
            return False
        self.table.replace_all(messages)
        self.send_failures.clear()
        assert self.session is not None
        self.session.status = ROOM_READY
        self.session.error = None
        return True

    def merge_history(self, token: Optional[int], messages: Iterable[Message]) -> bool:
        """Fold a history snapshot into the table without dropping local state.

        Reactions come from the gateway copy, which holds every update made
        while this client was away; pins, replies and failed sends stay local.
        """

        if not self._accept(token, "history resync"):
            return False
        for message in messages:
            self._reconcile_or_append(message, take_reactions=True)
        assert self.session is not None
        self.session.status = ROOM_READY
        self.session.error = None
        return True

    def apply_inbound(self, token: Optional[int], message: Message) -> bool:
        if not self._accept(token, f"inbound message {message.id}"):
            return False
        assert self.session is not None
        if message.sender_id == self.session.peer_id:
            self.peer_typing = False
        self._reconcile_or_append(message)
        return True

    def _reconcile_or_append(self, message: Message, take_reactions: bool = False) -> Message:
        existing = self.table.get(message.id) or self.table.find_by_correlation(message.correlation_id)
        if existing is None:
            self.table.append(message)
            return message
        echo = self.session is not None and message.sender_id == self.session.local_user_id
        updated = self.table.mutate(existing.id, lambda local: _reconcile(local, message, echo, take_reactions))
        if updated is not None and updated.status is not MessageStatus.FAILED:
            self.send_failures.pop(existing.id, None)
        return updated or existing

    def apply_reaction_update(
        self, token: Optional[int], message_id: str, emoji: str, user_id: str, active: bool
    ) -> Optional[Message]:
        if not self._accept(token, f"reaction update on {message_id}"):
            return None
        viewer_id = self.local_user_id
        return self.table.mutate(
            message_id,
            lambda m: replace(
                m, reactions=reaction_engine.set_reaction(m.reactions, emoji, user_id, active, viewer_id)
            ),
        )

    def apply_peer_typing(self, token: Optional[int], user_id: str, typing: bool) -> bool:
        if not self._accept(token, "typing signal"):
            return False
        assert self.session is not None
        if user_id != self.session.peer_id:
            return False
        self.peer_typing = typing
        return True

    # -- local actions -----------------------------------------------------

    def append_outbound(self, message: Message) -> bool:
        if self.session is None:
            return False
        return self.table.append(message)

    def mark_status(self, message_id: str, status: MessageStatus) -> Optional[Message]:
        """Raise the status of ``message_id``; a lower rank never overwrites a higher one."""

        def _update(message: Message) -> Message:
            if status.rank <= message.status.rank:
                return message
            return replace(message, status=status)

        updated = self.table.mutate(message_id, _update)
        if updated is not None and updated.status is not MessageStatus.FAILED:
            self.send_failures.pop(message_id, None)
        return updated

    def mark_failed(self, message_id: str, failure: SendFailure) -> Optional[Message]:
        current = self.table.get(message_id)
        if current is None:
            return None
        if current.status.rank >= MessageStatus.DELIVERED.rank:
            # an echo already confirmed delivery
            return current
        self.send_failures[message_id] = failure
        return self.table.mutate(message_id, lambda m: replace(m, status=MessageStatus.FAILED))

    def mark_resending(self, message_id: str) -> Optional[Message]:
        current = self.table.get(message_id)
        if current is None or current.status is not MessageStatus.FAILED:
            return None
        self.send_failures.pop(message_id, None)
        return self.table.mutate(message_id, lambda m: replace(m, status=MessageStatus.SENT))

    def toggle_reaction(self, message_id: str, emoji: str, user_id: Optional[str] = None) -> Optional[Message]:
        actor = user_id or self.local_user_id
        if actor is None:
            return None
        return self.table.mutate(message_id, lambda m: reaction_engine.toggle_reaction(m, emoji, actor))

    def pin(self, message_id: str) -> bool:
        return self.pins.pin(message_id)

    def unpin(self, message_id: str) -> bool:
        return self.pins.unpin(message_id)

    def pinned_messages(self) -> List[Message]:
        return self.pins.messages()

    def open_thread(self, message_id: str) -> bool:
        return self.thread.open(message_id)

    def close_thread(self) -> None:
        self.thread.close()

    def send_reply(self, message_id: str, content: str) -> Optional[Reply]:
        if self.session is None:
            return None
        return self.thread.send_reply(
            message_id, content, self.session.local_user_id, self.session.local_user_name
        )

    def set_local_typing(self, typing: bool) -> bool:
        """Record local typing; returns True when the state changed."""

        if self.session is None or self.local_typing == typing:
            return False
        self.local_typing = typing
        return True

    def snapshot(self) -> Tuple[Message, ...]:
        return self.table.snapshot()

    def room_error(self) -> Optional[ChatError]:
        if self.session is None:
            return None
        return self.session.error
