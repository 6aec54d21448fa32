from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Protocol

from chat_client.config import ClientConfig
from chat_client.conversation import ConversationState, RoomSession
from chat_client.errors import GatewayConnectionError, GatewayError, RequestTimeout, SendFailure
from chat_client.models import (
    Media,
    Message,
    MessageStatus,
    MessageType,
    new_correlation_id,
    new_message_id,
    now_ms,
)

logger = logging.getLogger(__name__)

_SEND_ERRORS = (GatewayConnectionError, GatewayError, RequestTimeout)


class Transport(Protocol):
    async def request(self, frame_type: str, body: Dict[str, Any], *, timeout: float) -> Dict[str, Any]:
        ...

    async def emit(self, frame_type: str, body: Dict[str, Any]) -> None:
        ...


def build_envelope(
    session: RoomSession,
    content: str,
    message_type: MessageType = MessageType.TEXT,
    media: Optional[Media] = None,
) -> Message:
    """Construct an outgoing message; media must match ``message_type``."""

    return Message(
        id=new_message_id(),
        sender_id=session.local_user_id,
        sender_name=session.local_user_name,
        content=content,
        timestamp=now_ms(),
        type=message_type,
        status=MessageStatus.SENT,
        media=media,
        correlation_id=new_correlation_id(),
    )


class OutboundDispatcher:
    """Applies outgoing messages optimistically, then submits them."""

    def __init__(self, state: ConversationState, transport: Transport, config: ClientConfig) -> None:
        self.state = state
        self.transport = transport
        self.config = config

    async def send(
        self,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        media: Optional[Media] = None,
    ) -> Optional[Message]:
        session = self.state.session
        if session is None:
            return None
        envelope = build_envelope(session, content, message_type, media)
        self.state.append_outbound(envelope)
        await self._submit(envelope, session.peer_id)
        return self.state.table.get(envelope.id) or envelope

    async def resend(self, message_id: str) -> bool:
        session = self.state.session
        if session is None:
            return False
        message = self.state.mark_resending(message_id)
        if message is None:
            return False
        return await self._submit(message, session.peer_id)

    async def forward(self, message_id: str, peer_ids: Iterable[str]) -> List[Message]:
        """Send a fresh copy of ``message_id`` to each peer's room.

        A copy addressed to the current peer lands in the open table like any
        other send; copies for other rooms only go to the gateway and are
        returned with their final status.
        """

        session = self.state.session
        original = self.state.table.get(message_id)
        if session is None or original is None:
            return []
        results: List[Message] = []
        for peer_id in dict.fromkeys(peer_ids):
            if peer_id == session.peer_id:
                sent = await self.send(original.content, original.type, original.media)
                if sent is not None:
                    results.append(sent)
                continue
            envelope = build_envelope(session, original.content, original.type, original.media)
            try:
                await self.transport.request(
                    "send-message",
                    {"message": envelope.to_wire(), "recipientId": peer_id},
                    timeout=self.config.send_timeout_s,
                )
            except _SEND_ERRORS as exc:
                logger.warning("forward of %s to %s failed: %s", message_id, peer_id, exc)
                results.append(replace(envelope, status=MessageStatus.FAILED))
                continue
            results.append(replace(envelope, status=MessageStatus.DELIVERED))
        return results

    async def _submit(self, message: Message, recipient_id: str) -> bool:
        body = {"message": message.to_wire(), "recipientId": recipient_id}
        try:
            await self.transport.request("send-message", body, timeout=self.config.send_timeout_s)
        except _SEND_ERRORS as exc:
            logger.warning("send of %s failed: %s", message.id, exc)
            self.state.mark_failed(message.id, SendFailure(message.id, str(exc)))
            return False
        self.state.mark_status(message.id, MessageStatus.DELIVERED)
        return True
