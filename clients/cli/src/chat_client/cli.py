"""Command line entry points for the chat client."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, TextIO

from chat_client.client import ChatClient
from chat_client.config import load_client_config_from_env
from chat_client.conversation import ConversationState
from chat_client.dispatcher import build_envelope
from chat_client.models import MessageStatus, MessageType, message_from_wire


def _load_ops(handle: TextIO) -> List[Dict[str, Any]]:
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


def _render_state(state: ConversationState) -> Dict[str, Any]:
    session = state.session
    return {
        "room_id": session.room_id if session else None,
        "token": session.token if session else None,
        "status": session.status if session else None,
        "messages": [message.to_wire() for message in state.snapshot()],
        "pinned": state.pins.ids(),
        "thread": {
            "message_id": state.thread.message_id,
            "replies": [reply.to_wire() for reply in state.thread.replies],
        },
        "peer_typing": state.peer_typing,
    }


def simulate(ops: Iterable[Dict[str, Any]], output: TextIO) -> ConversationState:
    """Apply local actions and gateway events to a fresh state, offline.

    ``"@last"`` as a message id names the most recently added message.
    Events carry the active session token unless they name one explicitly.
    """

    state = ConversationState()
    last_id: Optional[str] = None

    def message_id(op: Dict[str, Any]) -> str:
        value = op["message_id"]
        return last_id if value == "@last" and last_id else value

    for op in ops:
        kind = op.get("op")
        token = op.get("token", state.session.token if state.session else None)
        viewer = state.local_user_id
        if kind == "start":
            state.start_session(op["user"], op["peer"], local_user_name=op.get("name"))
        elif kind == "close":
            state.end_session()
        elif kind == "history":
            state.apply_history(token, [message_from_wire(raw, viewer) for raw in op.get("messages", [])])
        elif kind == "receive":
            message = message_from_wire(op["message"], viewer)
            if state.apply_inbound(token, message):
                last_id = message.id
        elif kind == "send":
            if state.session is None:
                raise ValueError("send requires an open room")
            envelope = build_envelope(state.session, op.get("content", ""), MessageType(op.get("type", "text")))
            state.append_outbound(envelope)
            last_id = envelope.id
        elif kind == "react":
            state.toggle_reaction(message_id(op), op["emoji"])
        elif kind == "pin":
            state.pin(message_id(op))
        elif kind == "unpin":
            state.unpin(message_id(op))
        elif kind == "open_thread":
            state.open_thread(message_id(op))
        elif kind == "close_thread":
            state.close_thread()
        elif kind == "reply":
            state.send_reply(message_id(op), op["content"])
        elif kind == "typing":
            state.apply_peer_typing(token, op["user"], bool(op.get("active", True)))
        else:
            raise ValueError(f"unsupported op: {kind}")

    output.write(json.dumps(_render_state(state), sort_keys=True) + "\n")
    return state


async def _send_once(args: argparse.Namespace, output: TextIO) -> int:
    config = load_client_config_from_env()
    if args.base_url:
        config = replace(config, base_url=args.base_url)
    client = ChatClient(config)
    if not await client.login(args.user):
        output.write(json.dumps({"error": str(client.last_error)}) + "\n")
        return 1
    try:
        session = await client.select_peer(args.peer)
        if session is None or session.error is not None:
            output.write(json.dumps({"error": str(session.error if session else "no session")}) + "\n")
            return 1
        message = await client.send_text(args.text)
        if message is None:
            output.write(json.dumps({"error": "nothing to send"}) + "\n")
            return 1
        output.write(json.dumps(message.to_wire(), sort_keys=True) + "\n")
        return 1 if message.status is MessageStatus.FAILED else 0
    finally:
        await client.logout()


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    parser = argparse.ArgumentParser(description="Chat client")
    parser.add_argument("--log-level", default="WARNING", help="Python logging level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay ops through the conversation core")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON ops file; defaults to stdin",
    )

    send_parser = subparsers.add_parser("send", help="Send one text message to a peer")
    send_parser.add_argument("--base-url", default=None, help="Gateway base URL (defaults to CHAT_BASE_URL)")
    send_parser.add_argument("--user", required=True, help="Local user id")
    send_parser.add_argument("--peer", required=True, help="Peer user id")
    send_parser.add_argument("text", help="Message text")

    args = parser.parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(level=args.log_level.upper())
    stream = output or sys.stdout

    if args.command == "simulate":
        simulate(_load_ops(args.file or sys.stdin), stream)
        return 0
    return asyncio.run(_send_once(args, stream))
