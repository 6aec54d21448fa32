"""Gateway core with a lightweight simulation CLI."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Callable, Dict, Iterable, TextIO

from aiohttp import web

from .history import RoomHistory, room_id_for
from .hub import Subscription, SubscriptionHub
from .ws_transport import create_app


def simulate(frames: Iterable[dict], output: TextIO) -> None:
    """Process JSON frames through the room history and hub and emit deliveries.

    Each frame names the acting ``connection_id`` and ``user_id``; rooms are
    resolved from ``user_id`` and ``recipient_id``.
    """

    history = RoomHistory()
    hub = SubscriptionHub()
    subscriptions: Dict[str, Subscription] = {}

    def callback_for(connection_id: str) -> Callable[[dict], None]:
        def _callback(frame: dict) -> None:
            output.write(json.dumps({"connection_id": connection_id, **frame}, sort_keys=True) + "\n")

        return _callback

    for frame in frames:
        frame_type = frame.get("t")
        connection_id = frame["connection_id"]
        user_id = frame["user_id"]
        room_id = room_id_for(user_id, frame["recipient_id"])
        if frame_type == "join-room":
            previous = subscriptions.pop(connection_id, None)
            if previous is not None:
                hub.unsubscribe(previous)
            subscriptions[connection_id] = hub.subscribe(connection_id, room_id, callback_for(connection_id))
        elif frame_type == "leave-room":
            previous = subscriptions.pop(connection_id, None)
            if previous is not None:
                hub.unsubscribe(previous)
        elif frame_type == "send-message":
            message = dict(frame["message"], senderId=user_id)
            stored, created = history.append(room_id, message)
            if created:
                hub.broadcast(
                    room_id,
                    {"t": "receive-message", "body": {"roomId": room_id, "message": stored}},
                    exclude=connection_id,
                )
        elif frame_type == "reaction-update":
            applied = history.apply_reaction(room_id, frame["message_id"], frame["emoji"], user_id, frame["active"])
            if applied:
                body = {
                    "roomId": room_id,
                    "messageId": frame["message_id"],
                    "emoji": frame["emoji"],
                    "userId": user_id,
                    "active": frame["active"],
                }
                hub.broadcast(room_id, {"t": "reaction-update", "body": body}, exclude=connection_id)
        elif frame_type == "get-history":
            messages = history.list(room_id, frame.get("limit"))
            callback_for(connection_id)({"t": "chat-history", "body": {"roomId": room_id, "messages": messages}})
        else:
            raise ValueError(f"unsupported frame type: {frame_type}")


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        return [json.loads(line) for line in content.splitlines() if line.strip()]

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_serve(args: argparse.Namespace) -> int:
    logging.basicConfig(level=args.log_level.upper())
    app = create_app(
        ping_interval_s=args.ping_interval,
        ping_miss_limit=args.ping_miss_limit,
        max_msg_size=args.max_msg_size,
        history_limit=args.history_limit,
    )
    web.run_app(app, host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    parser = argparse.ArgumentParser(description="Chat gateway CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Simulate room frames through the gateway core")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp gateway server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument("--ping-interval", type=int, default=30, help="Seconds between heartbeat pings")
    serve_parser.add_argument("--ping-miss-limit", type=int, default=2, help="Unanswered pings before closing")
    serve_parser.add_argument("--max-msg-size", type=int, default=1_048_576, help="Largest accepted frame in bytes")
    serve_parser.add_argument("--history-limit", type=int, default=500, help="Maximum messages per history reply")
    serve_parser.add_argument("--log-level", default="INFO", help="Python logging level")

    args = parser.parse_args(sys.argv[1:] if argv is None else argv)

    if args.command == "simulate":
        simulate(_load_frames(args.file or sys.stdin), output or sys.stdout)
        return 0
    return _run_serve(args)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
