"""Connection manager and room session orchestration for the chat client."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from chat_client.config import ClientConfig
from chat_client.conversation import ROOM_LOADING, ConversationState, RoomSession
from chat_client.dispatcher import OutboundDispatcher
from chat_client.errors import (
    ChatError,
    EnvelopeError,
    GatewayConnectionError,
    GatewayError,
    HistoryLoadFailure,
    JoinTimeout,
    RequestTimeout,
)
from chat_client.models import (
    FileMedia,
    Message,
    MessageType,
    Reply,
    VoiceMedia,
    message_from_wire,
)
from chat_client.reactions import reaction_for
from chat_client.transport import STATE_DISCONNECTED, GatewayTransport

logger = logging.getLogger(__name__)

_REQUEST_ERRORS = (GatewayConnectionError, GatewayError, RequestTimeout)


class ChatClient:
    """One gateway connection per login, one room session per selected peer.

    Public coroutines never raise transport or room failures: they return
    ``None``/``False`` and leave the failure on ``connection_state``,
    ``last_error``, the room session or the message status.
    """

    def __init__(self, config: ClientConfig | None = None, *, transport: Any = None) -> None:
        self.config = config or ClientConfig()
        self.transport = transport if transport is not None else GatewayTransport(self.config)
        self.state = ConversationState()
        self.dispatcher = OutboundDispatcher(self.state, self.transport, self.config)
        self.user_id: Optional[str] = None
        self.user_name: Optional[str] = None
        self.connection_state = STATE_DISCONNECTED
        self.last_error: Optional[Exception] = None
        self.transport.on_push = self._handle_push
        self.transport.on_state = self._handle_state
        self.transport.on_reconnect = self._resync

    # -- connection --------------------------------------------------------

    async def login(self, user_id: str, user_name: Optional[str] = None) -> bool:
        if self.user_id is not None:
            await self.logout()
        self.user_id = user_id
        self.user_name = user_name or user_id
        try:
            await self.transport.connect(user_id, self.user_name)
        except GatewayConnectionError as exc:
            self.last_error = exc
            self.user_id = None
            self.user_name = None
            return False
        self.last_error = None
        return True

    async def logout(self) -> None:
        await self.close_room()
        await self.transport.close()
        self.user_id = None
        self.user_name = None

    def _handle_state(self, state: str, error: Optional[Exception]) -> None:
        self.connection_state = state
        if error is not None:
            self.last_error = error

    # -- room sessions -----------------------------------------------------

    @property
    def session(self) -> Optional[RoomSession]:
        return self.state.session

    async def select_peer(self, peer_id: str) -> Optional[RoomSession]:
        """Open the room shared with ``peer_id``: join it, then load history."""

        if self.user_id is None:
            return None
        await self._leave_current_room()
        session = self.state.start_session(
            self.user_id, peer_id, local_user_name=self.user_name, connection=self.transport
        )
        await self._load_room(session, merge=False)
        return session

    async def retry_room(self) -> Optional[RoomSession]:
        session = self.state.session
        if session is None:
            return None
        return await self.select_peer(session.peer_id)

    async def close_room(self) -> None:
        await self._leave_current_room()
        self.state.end_session()

    async def _leave_current_room(self) -> None:
        session = self.state.session
        if session is None or not self.transport.connected:
            return
        try:
            await self.transport.emit("leave-room", self._room_body(session))
        except GatewayConnectionError as exc:
            logger.debug("leave-room for %s not sent: %s", session.room_id, exc)

    def _room_body(self, session: RoomSession) -> Dict[str, Any]:
        return {"userId": session.local_user_id, "recipientId": session.peer_id}

    async def _load_room(self, session: RoomSession, *, merge: bool) -> None:
        token = session.token
        body = self._room_body(session)
        try:
            await self.transport.request("join-room", body, timeout=self.config.join_timeout_s)
        except _REQUEST_ERRORS as exc:
            self.state.fail_room(token, JoinTimeout(session.room_id, str(exc)))
            return
        if not self.state.mark_room_status(token, ROOM_LOADING):
            return
        history_body = dict(body, limit=self.config.history_limit)
        try:
            frame = await self.transport.request(
                "get-history", history_body, timeout=self.config.history_timeout_s
            )
        except _REQUEST_ERRORS as exc:
            self.state.fail_room(token, HistoryLoadFailure(session.room_id, str(exc)))
            return
        raw_messages = (frame.get("body") or {}).get("messages")
        if not isinstance(raw_messages, list):
            self.state.fail_room(token, HistoryLoadFailure(session.room_id, "history frame without messages"))
            return
        messages = self._decode_messages(raw_messages)
        if merge:
            self.state.merge_history(token, messages)
        else:
            self.state.apply_history(token, messages)

    async def _resync(self) -> None:
        session = self.state.session
        if session is None:
            return
        logger.info("rejoining %s after reconnect", session.room_id)
        await self._load_room(session, merge=True)

    # -- inbound -----------------------------------------------------------

    def _decode_messages(self, raw_messages: Iterable[Any]) -> List[Message]:
        messages = []
        for raw in raw_messages:
            message = self._decode_message(raw)
            if message is not None:
                messages.append(message)
        return messages

    def _decode_message(self, raw: Any) -> Optional[Message]:
        try:
            return message_from_wire(raw, viewer_id=self.user_id)
        except EnvelopeError as exc:
            logger.warning("dropping malformed message: %s", exc)
            return None

    def _handle_push(self, frame: Dict[str, Any]) -> None:
        frame_type = frame.get("t")
        body = frame.get("body") or {}
        if not isinstance(body, dict):
            return
        token = self.state.token_for_room(body.get("roomId"))
        if frame_type == "receive-message":
            message = self._decode_message(body.get("message"))
            if message is not None:
                self.state.apply_inbound(token, message)
        elif frame_type in ("typing-start", "typing-stop"):
            user_id = body.get("userId")
            if isinstance(user_id, str):
                self.state.apply_peer_typing(token, user_id, frame_type == "typing-start")
        elif frame_type == "reaction-update":
            message_id = body.get("messageId")
            emoji = body.get("emoji")
            user_id = body.get("userId")
            if isinstance(message_id, str) and isinstance(emoji, str) and isinstance(user_id, str):
                self.state.apply_reaction_update(token, message_id, emoji, user_id, bool(body.get("active")))
        else:
            logger.debug("ignoring %r frame", frame_type)

    # -- outbound ----------------------------------------------------------

    async def send_text(self, content: str) -> Optional[Message]:
        if not content.strip():
            return None
        return await self.dispatcher.send(content, MessageType.TEXT)

    async def send_sticker(self, content: str) -> Optional[Message]:
        return await self.dispatcher.send(content, MessageType.STICKER)

    async def send_voice(
        self, duration: float, waveform: Sequence[float], content: str = "Voice message"
    ) -> Optional[Message]:
        media = VoiceMedia(duration=duration, waveform=tuple(waveform))
        return await self.dispatcher.send(content, MessageType.VOICE, media)

    async def send_file(self, file_url: str, file_name: str, file_size: int) -> Optional[Message]:
        media = FileMedia(file_url=file_url, file_name=file_name, file_size=file_size)
        return await self.dispatcher.send(file_name, MessageType.FILE, media)

    async def send_image(self, file_url: str, file_name: str, file_size: int) -> Optional[Message]:
        media = FileMedia(file_url=file_url, file_name=file_name, file_size=file_size)
        return await self.dispatcher.send("Image", MessageType.IMAGE, media)

    async def resend(self, message_id: str) -> bool:
        return await self.dispatcher.resend(message_id)

    async def forward(self, message_id: str, peer_ids: Iterable[str]) -> List[Message]:
        return await self.dispatcher.forward(message_id, peer_ids)

    async def toggle_reaction(self, message_id: str, emoji: str) -> Optional[Message]:
        session = self.state.session
        message = self.state.toggle_reaction(message_id, emoji)
        if session is None or message is None:
            return message
        reaction = reaction_for(message, emoji)
        active = reaction is not None and session.local_user_id in reaction.users
        body = dict(self._room_body(session), messageId=message_id, emoji=emoji, active=active)
        await self._emit_quietly("reaction-update", body)
        return message

    async def set_typing(self, typing: bool) -> bool:
        session = self.state.session
        if session is None or not self.state.set_local_typing(typing):
            return False
        await self._emit_quietly("typing-start" if typing else "typing-stop", self._room_body(session))
        return True

    async def _emit_quietly(self, frame_type: str, body: Dict[str, Any]) -> None:
        try:
            await self.transport.emit(frame_type, body)
        except GatewayConnectionError as exc:
            logger.warning("%s not delivered: %s", frame_type, exc)

    # -- local annotations and projections ---------------------------------

    def pin(self, message_id: str) -> bool:
        return self.state.pin(message_id)

    def unpin(self, message_id: str) -> bool:
        return self.state.unpin(message_id)

    def open_thread(self, message_id: str) -> bool:
        return self.state.open_thread(message_id)

    def close_thread(self) -> None:
        self.state.close_thread()

    def send_reply(self, message_id: str, content: str) -> Optional[Reply]:
        return self.state.send_reply(message_id, content)

    def snapshot(self) -> Tuple[Message, ...]:
        return self.state.snapshot()

    def pinned_messages(self) -> List[Message]:
        return self.state.pinned_messages()

    @property
    def thread_replies(self) -> Tuple[Reply, ...]:
        return self.state.thread.replies

    @property
    def peer_typing(self) -> bool:
        return self.state.peer_typing

    def room_error(self) -> Optional[ChatError]:
        return self.state.room_error()
