import io
import json
import tempfile
import unittest
from pathlib import Path

from chat_client.cli import _load_ops, main, simulate


def _wire(message_id: str, sender: str, content: str) -> dict:
    return {"id": message_id, "senderId": sender, "content": content, "timestamp": 1}


class SimulateTests(unittest.TestCase):
    def _run(self, ops):
        buffer = io.StringIO()
        simulate(ops, buffer)
        return json.loads(buffer.getvalue())

    def test_load_ops_accepts_array_or_lines(self):
        self.assertEqual(_load_ops(io.StringIO(json.dumps([{"op": "close"}]))), [{"op": "close"}])
        self.assertEqual(_load_ops(io.StringIO('{"op": "start"}\n{"op": "close"}\n')), [{"op": "start"}, {"op": "close"}])
        self.assertEqual(_load_ops(io.StringIO("")), [])

    def test_history_react_pin_and_thread(self):
        state = self._run(
            [
                {"op": "start", "user": "u1", "peer": "u2"},
                {"op": "history", "messages": [_wire("m1", "u2", "Hi")]},
                {"op": "react", "message_id": "m1", "emoji": "👍"},
                {"op": "pin", "message_id": "m1"},
                {"op": "open_thread", "message_id": "m1"},
                {"op": "reply", "message_id": "m1", "content": "hello back"},
            ]
        )

        self.assertEqual(state["room_id"], "u1:u2")
        self.assertEqual(state["status"], "ready")
        self.assertEqual(state["pinned"], ["m1"])
        self.assertEqual(state["messages"][0]["reactions"], [{"emoji": "👍", "count": 1, "users": ["u1"], "hasReacted": True}])
        self.assertEqual(state["thread"]["message_id"], "m1")
        self.assertEqual([r["content"] for r in state["thread"]["replies"]], ["hello back"])

    def test_stale_token_events_are_dropped(self):
        state = self._run(
            [
                {"op": "start", "user": "u1", "peer": "u2"},
                {"op": "start", "user": "u1", "peer": "u3"},
                {"op": "history", "token": 1, "messages": [_wire("m1", "u2", "late")]},
                {"op": "history", "messages": [_wire("m2", "u3", "fresh")]},
                {"op": "typing", "token": 1, "user": "u2"},
            ]
        )

        self.assertEqual(state["token"], 2)
        self.assertEqual([m["id"] for m in state["messages"]], ["m2"])
        self.assertFalse(state["peer_typing"])

    def test_send_and_last_reference(self):
        state = self._run(
            [
                {"op": "start", "user": "u1", "peer": "u2"},
                {"op": "history", "messages": []},
                {"op": "send", "content": "hey"},
                {"op": "pin", "message_id": "@last"},
                {"op": "receive", "message": _wire("m9", "u2", "yo")},
                {"op": "typing", "user": "u2", "active": True},
            ]
        )

        self.assertEqual([m["content"] for m in state["messages"]], ["hey", "yo"])
        self.assertEqual(state["pinned"], [state["messages"][0]["id"]])
        self.assertTrue(state["peer_typing"])

    def test_close_empties_state(self):
        state = self._run(
            [
                {"op": "start", "user": "u1", "peer": "u2"},
                {"op": "history", "messages": [_wire("m1", "u2", "Hi")]},
                {"op": "close"},
            ]
        )

        self.assertIsNone(state["room_id"])
        self.assertEqual(state["messages"], [])

    def test_unknown_op(self):
        with self.assertRaises(ValueError):
            simulate([{"op": "teleport"}], io.StringIO())

    def test_main_simulate_from_file(self):
        ops = [{"op": "start", "user": "u1", "peer": "u2"}, {"op": "history", "messages": [_wire("m1", "u2", "Hi")]}]
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "ops.json"
            path.write_text(json.dumps(ops), encoding="utf-8")
            buffer = io.StringIO()

            exit_code = main(["simulate", "-f", str(path)], output=buffer)

        self.assertEqual(exit_code, 0)
        self.assertEqual(json.loads(buffer.getvalue())["messages"][0]["content"], "Hi")


if __name__ == "__main__":
    unittest.main()
