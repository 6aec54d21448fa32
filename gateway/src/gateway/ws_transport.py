from __future__ import annotations

import asyncio
import logging
import secrets
from typing import Any, Dict, Optional

from aiohttp import WSCloseCode, WSMsgType, web

from .history import RoomHistory, room_id_for
from .hub import Subscription, SubscriptionHub

logger = logging.getLogger(__name__)


class Runtime:
    def __init__(self, *, history: RoomHistory, hub: SubscriptionHub, history_limit: int) -> None:
        self.history = history
        self.hub = hub
        self.history_limit = history_limit
        self.sockets: Dict[str, web.WebSocketResponse] = {}


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def create_app(
    *,
    ping_interval_s: int = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
    history_limit: int = 500,
) -> web.Application:
    runtime = Runtime(history=RoomHistory(), hub=SubscriptionHub(), history_limit=history_limit)
    app = web.Application()
    app["runtime"] = runtime
    app["ws_config"] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_get("/v1/ws", websocket_handler)

    async def close_sockets(_: web.Application) -> None:
        for ws in list(runtime.sockets.values()):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"server shutdown")

    app.on_shutdown.append(close_sockets)
    return app


def _frame(frame_type: str, body: dict[str, Any], *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": frame_type, "id": request_id, "body": body}


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return _frame("error", {"code": code, "message": message}, request_id=request_id)


class _Connection:
    """Per-socket room membership; a connection listens to at most one room."""

    def __init__(self, runtime: Runtime, connection_id: str, user_id: str, enqueue) -> None:
        self.runtime = runtime
        self.connection_id = connection_id
        self.user_id = user_id
        self._enqueue = enqueue
        self.subscription: Optional[Subscription] = None

    def join(self, room_id: str) -> None:
        if self.subscription is not None and self.subscription.room_id == room_id:
            return
        self.leave()
        self.subscription = self.runtime.hub.subscribe(self.connection_id, room_id, self._enqueue)

    def leave(self, room_id: str | None = None) -> None:
        if self.subscription is None:
            return
        if room_id is not None and self.subscription.room_id != room_id:
            return
        self.runtime.hub.unsubscribe(self.subscription)
        self.subscription = None

    def broadcast(self, room_id: str, frame: dict[str, Any]) -> None:
        self.runtime.hub.broadcast(room_id, frame, exclude=self.connection_id)


def _room_for(connection: _Connection, body: Dict[str, Any]) -> tuple[str | None, str | None]:
    """Resolve the room named by a request body, or an error message."""

    user_id = body.get("userId")
    recipient_id = body.get("recipientId")
    if not isinstance(recipient_id, str) or not recipient_id:
        return None, "recipientId required"
    if user_id is not None and user_id != connection.user_id:
        return None, "userId does not match session"
    return room_id_for(connection.user_id, recipient_id), None


async def _handle_frame(ws: web.WebSocketResponse, connection: _Connection, frame: dict[str, Any]) -> None:
    runtime = connection.runtime
    frame_type = frame.get("t")
    request_id = frame.get("id")
    body = frame.get("body") or {}
    if not isinstance(body, dict):
        await ws.send_json(_error_frame("invalid_request", "body must be an object", request_id=request_id))
        return

    if frame_type == "ping":
        await ws.send_json(_frame("pong", {}, request_id=request_id))
        return
    if frame_type == "pong":
        return

    room_id, problem = _room_for(connection, body)
    if room_id is None:
        code = "forbidden" if problem == "userId does not match session" else "invalid_request"
        await ws.send_json(_error_frame(code, problem or "invalid request", request_id=request_id))
        return

    if frame_type == "join-room":
        connection.join(room_id)
        await ws.send_json(_frame("room-joined", {"roomId": room_id}, request_id=request_id))
    elif frame_type == "leave-room":
        connection.leave(room_id)
    elif frame_type == "get-history":
        limit = body.get("limit")
        if not isinstance(limit, int) or isinstance(limit, bool) or limit <= 0:
            limit = runtime.history_limit
        limit = min(limit, runtime.history_limit)
        messages = runtime.history.list(room_id, limit=limit)
        await ws.send_json(_frame("chat-history", {"roomId": room_id, "messages": messages}, request_id=request_id))
    elif frame_type == "send-message":
        message = body.get("message")
        if not isinstance(message, dict) or not isinstance(message.get("id"), str) or not message["id"]:
            await ws.send_json(_error_frame("invalid_request", "message with id required", request_id=request_id))
            return
        if message.get("senderId") != connection.user_id:
            await ws.send_json(_error_frame("forbidden", "senderId does not match session", request_id=request_id))
            return
        stored, created = runtime.history.append(room_id, message)
        if created:
            connection.broadcast(room_id, _frame("receive-message", {"roomId": room_id, "message": stored}))
        await ws.send_json(
            _frame(
                "message-acked",
                {"roomId": room_id, "messageId": stored["id"], "correlationId": stored.get("correlationId")},
                request_id=request_id,
            )
        )
    elif frame_type in ("typing-start", "typing-stop"):
        connection.broadcast(room_id, _frame(frame_type, {"roomId": room_id, "userId": connection.user_id}))
    elif frame_type == "reaction-update":
        message_id = body.get("messageId")
        emoji = body.get("emoji")
        active = body.get("active")
        if not isinstance(message_id, str) or not isinstance(emoji, str) or not isinstance(active, bool):
            await ws.send_json(
                _error_frame("invalid_request", "messageId, emoji and active required", request_id=request_id)
            )
            return
        if runtime.history.apply_reaction(room_id, message_id, emoji, connection.user_id, active):
            connection.broadcast(
                room_id,
                _frame(
                    "reaction-update",
                    {
                        "roomId": room_id,
                        "messageId": message_id,
                        "emoji": emoji,
                        "userId": connection.user_id,
                        "active": active,
                    },
                ),
            )
    else:
        await ws.send_json(_error_frame("invalid_request", "unknown frame type", request_id=request_id))


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime: Runtime = request.app["runtime"]
    ws_config: dict[str, Any] = request.app["ws_config"]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    last_activity = asyncio.get_event_loop().time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[dict | None] = asyncio.Queue(maxsize=1000)
    connection: _Connection | None = None
    closed = False
    background: set[asyncio.Task] = set()

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = asyncio.get_event_loop().time()
        missed_heartbeats = 0

    def enqueue_frame(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            task = asyncio.create_task(close_with_error("backpressure"))
            background.add(task)
            task.add_done_callback(background.discard)

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except ConnectionError:
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                now = asyncio.get_event_loop().time()
                if now - last_activity >= ws_config["ping_interval_s"]:
                    await ws.send_json({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        first_msg = await ws.receive()
        if first_msg.type != WSMsgType.TEXT:
            await ws.close(code=1002, message=b"invalid handshake")
            return ws
        try:
            payload = first_msg.json()
        except Exception:
            await ws.close(code=1002, message=b"invalid json")
            return ws

        if not isinstance(payload, dict) or payload.get("v") != 1:
            await ws.send_json(_error_frame("invalid_request", "unsupported version"))
            await ws.close()
            return ws

        body = payload.get("body") or {}
        user_id = body.get("userId") if isinstance(body, dict) else None
        if payload.get("t") != "session.start" or not isinstance(user_id, str) or not user_id:
            await ws.send_json(
                _error_frame("invalid_request", "first frame must be session.start with userId", request_id=payload.get("id"))
            )
            await ws.close()
            return ws

        mark_activity()
        connection = _Connection(runtime, f"conn_{secrets.token_urlsafe(8)}", user_id, enqueue_frame)
        runtime.sockets[connection.connection_id] = ws
        await ws.send_json(
            _frame(
                "session.ready",
                {"userId": user_id, "connectionId": connection.connection_id},
                request_id=payload.get("id"),
            )
        )
        logger.debug("session ready for %s on %s", user_id, connection.connection_id)

        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except Exception:
                    await ws.send_json(_error_frame("invalid_request", "malformed json"))
                    continue

                mark_activity()
                if not isinstance(frame, dict) or frame.get("v") != 1:
                    request_id = frame.get("id") if isinstance(frame, dict) else None
                    await ws.send_json(_error_frame("invalid_request", "unsupported version", request_id=request_id))
                    continue
                await _handle_frame(ws, connection, frame)
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        writer_task.cancel()
        if connection is not None:
            connection.leave()
            runtime.sockets.pop(connection.connection_id, None)
        if not outbound.full():
            outbound.put_nowait(None)
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws
