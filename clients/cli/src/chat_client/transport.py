"""Single websocket connection to the chat gateway."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from chat_client.config import ClientConfig
from chat_client.errors import GatewayConnectionError, GatewayError, RequestTimeout

logger = logging.getLogger(__name__)

STATE_DISCONNECTED = "disconnected"
STATE_CONNECTING = "connecting"
STATE_CONNECTED = "connected"
STATE_RECONNECTING = "reconnecting"

PushHandler = Callable[[Dict[str, Any]], None]
StateHandler = Callable[[str, Optional[Exception]], None]
ReconnectHandler = Callable[[], Awaitable[None]]


def build_frame(frame_type: str, body: Dict[str, Any], request_id: str | None = None) -> Dict[str, Any]:
    return {"v": 1, "t": frame_type, "id": request_id, "body": body}


class GatewayTransport:
    """Owns the websocket, correlates requests with responses by frame id.

    Frames without a pending request id are handed to ``on_push``. When the
    socket drops unexpectedly the transport reconnects in the background
    with exponential backoff and then awaits ``on_reconnect``.
    """

    def __init__(self, config: ClientConfig, *, http_session: aiohttp.ClientSession | None = None) -> None:
        self.config = config
        self._http = http_session
        self._owns_http = http_session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._identity: tuple[str, str] | None = None
        self._closing = False
        self.state = STATE_DISCONNECTED
        self.connection_id: str | None = None
        self.on_push: PushHandler | None = None
        self.on_state: StateHandler | None = None
        self.on_reconnect: ReconnectHandler | None = None

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def _set_state(self, state: str, error: Exception | None = None) -> None:
        self.state = state
        if self.on_state is not None:
            self.on_state(state, error)

    async def connect(self, user_id: str, user_name: str) -> None:
        """Open the connection and identify as ``user_id``.

        Raises ``GatewayConnectionError`` once every attempt has failed.
        """

        self._identity = (user_id, user_name)
        self._closing = False
        self._set_state(STATE_CONNECTING)
        try:
            await self._connect_with_backoff()
        except GatewayConnectionError as exc:
            self._set_state(STATE_DISCONNECTED, exc)
            raise
        self._set_state(STATE_CONNECTED)

    async def _connect_with_backoff(self) -> None:
        delays = self.config.backoff_delays()
        last_exc: Exception | None = None
        for attempt in range(1, self.config.connect_attempts + 1):
            if self._closing:
                break
            try:
                await self._open()
                return
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError, GatewayError) as exc:
                last_exc = exc
                logger.warning("connect attempt %d/%d failed: %s", attempt, self.config.connect_attempts, exc)
            if attempt <= len(delays):
                await asyncio.sleep(delays[attempt - 1])
        raise GatewayConnectionError(
            f"gateway unreachable after {self.config.connect_attempts} attempts"
        ) from last_exc

    async def _open(self) -> None:
        assert self._identity is not None
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
        heartbeat = self.config.heartbeat_s or None
        ws = await self._http.ws_connect(self.config.ws_url, heartbeat=heartbeat)
        user_id, user_name = self._identity
        try:
            await ws.send_json(build_frame("session.start", {"userId": user_id, "userName": user_name}, "start"))
            msg = await asyncio.wait_for(ws.receive(), timeout=self.config.join_timeout_s)
            if msg.type != aiohttp.WSMsgType.TEXT:
                raise GatewayError("invalid_handshake", f"unexpected {msg.type.name} frame")
            ready = msg.json()
            if ready.get("t") == "error":
                body = ready.get("body") or {}
                raise GatewayError(str(body.get("code", "error")), str(body.get("message", "")))
            if ready.get("t") != "session.ready":
                raise GatewayError("invalid_handshake", f"unexpected {ready.get('t')!r} frame")
        except BaseException:
            await ws.close()
            raise
        self.connection_id = (ready.get("body") or {}).get("connectionId")
        self._ws = ws
        self._reader_task = asyncio.create_task(self._reader(ws))

    async def _reader(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except ValueError:
                    logger.warning("dropping malformed frame from gateway")
                    continue
                if not isinstance(frame, dict):
                    continue
                if frame.get("t") == "ping":
                    try:
                        await ws.send_json(build_frame("pong", {}, frame.get("id")))
                    except (aiohttp.ClientError, ConnectionError):
                        break
                    continue
                try:
                    self._dispatch(frame)
                except Exception:
                    logger.exception("handler failed for %r frame", frame.get("t"))
            elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                break

        if ws is not self._ws:
            return
        self._ws = None
        error = GatewayConnectionError("connection to gateway lost")
        self._fail_pending(error)
        if self._closing:
            return
        logger.warning("gateway connection dropped; reconnecting")
        self._set_state(STATE_RECONNECTING, error)
        self._reconnect_task = asyncio.create_task(self._reconnect())

    def _dispatch(self, frame: Dict[str, Any]) -> None:
        request_id = frame.get("id")
        future = self._pending.pop(request_id, None) if isinstance(request_id, str) else None
        if future is not None:
            if future.done():
                return
            if frame.get("t") == "error":
                body = frame.get("body") or {}
                future.set_exception(GatewayError(str(body.get("code", "error")), str(body.get("message", ""))))
            else:
                future.set_result(frame)
            return
        if self.on_push is not None:
            self.on_push(frame)

    def _fail_pending(self, error: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    async def _reconnect(self) -> None:
        try:
            await self._connect_with_backoff()
        except GatewayConnectionError as exc:
            logger.warning("giving up on gateway: %s", exc)
            self._set_state(STATE_DISCONNECTED, exc)
            return
        self._set_state(STATE_CONNECTED)
        if self.on_reconnect is not None:
            await self.on_reconnect()

    def _require_ws(self) -> aiohttp.ClientWebSocketResponse:
        ws = self._ws
        if ws is None or ws.closed:
            raise GatewayConnectionError("not connected to gateway")
        return ws

    async def request(self, frame_type: str, body: Dict[str, Any], *, timeout: float) -> Dict[str, Any]:
        """Send a frame and wait for the response carrying the same id."""

        ws = self._require_ws()
        request_id = f"{frame_type}-{next(self._ids)}"
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await ws.send_json(build_frame(frame_type, body, request_id))
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise RequestTimeout(frame_type, timeout) from exc
        except (aiohttp.ClientError, ConnectionError) as exc:
            raise GatewayConnectionError(str(exc) or "connection to gateway lost") from exc
        finally:
            self._pending.pop(request_id, None)

    async def emit(self, frame_type: str, body: Dict[str, Any]) -> None:
        """Send a frame that has no response."""

        ws = self._require_ws()
        try:
            await ws.send_json(build_frame(frame_type, body))
        except (aiohttp.ClientError, ConnectionError) as exc:
            raise GatewayConnectionError(str(exc) or "connection to gateway lost") from exc

    async def close(self) -> None:
        self._closing = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            await asyncio.gather(self._reconnect_task, return_exceptions=True)
            self._reconnect_task = None
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        if self._reader_task is not None:
            await asyncio.gather(self._reader_task, return_exceptions=True)
            self._reader_task = None
        self._fail_pending(GatewayConnectionError("transport closed"))
        if self._owns_http and self._http is not None:
            await self._http.close()
            self._http = None
        self._set_state(STATE_DISCONNECTED)
