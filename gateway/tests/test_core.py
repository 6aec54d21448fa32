import unittest

from gateway.history import RoomHistory, idempotency_key, room_id_for
from gateway.hub import SubscriptionHub


def _message(message_id: str, *, sender: str = "alice", correlation_id: str | None = None, **extra) -> dict:
    message = {"id": message_id, "senderId": sender, "content": f"body {message_id}", "timestamp": 1, "status": "sent"}
    if correlation_id is not None:
        message["correlationId"] = correlation_id
    message.update(extra)
    return message


class TestRoomId(unittest.TestCase):
    def test_room_id_is_order_independent(self):
        self.assertEqual(room_id_for("bob", "alice"), "alice:bob")
        self.assertEqual(room_id_for("alice", "bob"), "alice:bob")

    def test_idempotency_key_prefers_correlation_id(self):
        self.assertEqual(idempotency_key(_message("m1", correlation_id="c1")), "c1")
        self.assertEqual(idempotency_key(_message("m1")), "m1")


class TestRoomHistory(unittest.TestCase):
    def test_append_marks_delivered_and_keeps_order(self):
        history = RoomHistory()

        first, created_first = history.append("r1", _message("m1"))
        second, created_second = history.append("r1", _message("m2"))

        self.assertTrue(created_first and created_second)
        self.assertEqual(first["status"], "delivered")
        self.assertEqual([m["id"] for m in history.list("r1")], ["m1", "m2"])

    def test_idempotent_append_returns_original(self):
        history = RoomHistory()

        first, created_first = history.append("r1", _message("m1", correlation_id="c1"))
        repeat, created_repeat = history.append("r1", _message("m9", correlation_id="c1"))

        self.assertTrue(created_first)
        self.assertFalse(created_repeat)
        self.assertIs(first, repeat)
        self.assertEqual(len(history.list("r1")), 1)

    def test_rooms_are_isolated(self):
        history = RoomHistory()
        history.append("r1", _message("m1"))

        self.assertEqual(history.list("r2"), [])

    def test_list_limit_keeps_newest(self):
        history = RoomHistory()
        for i in range(5):
            history.append("r1", _message(f"m{i}"))

        self.assertEqual([m["id"] for m in history.list("r1", limit=2)], ["m3", "m4"])
        self.assertEqual(history.list("r1", limit=0), [])

    def test_list_returns_copies(self):
        history = RoomHistory()
        history.append("r1", _message("m1"))

        listed = history.list("r1")
        listed[0]["content"] = "tampered"

        self.assertEqual(history.list("r1")[0]["content"], "body m1")

    def test_stored_reactions_drop_viewer_flag(self):
        history = RoomHistory()
        reactions = [
            {"emoji": "👍", "users": ["alice"], "count": 1, "hasReacted": True},
            {"emoji": "🎉", "users": [], "count": 0, "hasReacted": False},
        ]

        stored, _ = history.append("r1", _message("m1", reactions=reactions))

        self.assertEqual(stored["reactions"], [{"emoji": "👍", "users": ["alice"], "count": 1}])

    def test_malformed_reactions_are_not_stored(self):
        history = RoomHistory()
        reactions = [
            {"users": ["alice"]},
            {"emoji": "", "users": ["alice"]},
            {"emoji": "👍", "users": ["alice", 3]},
            {"emoji": "👀", "users": "alice"},
            "❤️",
            {"emoji": "🎉", "users": ["alice", "alice"], "count": 7},
        ]

        stored, created = history.append("r1", _message("m1", reactions=reactions))
        scalar, _ = history.append("r1", _message("m2", reactions="👍"))

        self.assertTrue(created)
        self.assertEqual(stored["reactions"], [{"emoji": "🎉", "users": ["alice"], "count": 1}])
        self.assertEqual(scalar["reactions"], [])
        self.assertTrue(history.apply_reaction("r1", "m2", "👍", "bob", True))
        self.assertEqual(history.list("r1")[1]["reactions"], [{"emoji": "👍", "users": ["bob"], "count": 1}])

    def test_apply_reaction_sets_membership(self):
        history = RoomHistory()
        history.append("r1", _message("m1"))

        self.assertTrue(history.apply_reaction("r1", "m1", "👍", "bob", True))
        self.assertTrue(history.apply_reaction("r1", "m1", "👍", "bob", True))
        self.assertTrue(history.apply_reaction("r1", "m1", "👍", "alice", True))
        reaction = history.list("r1")[0]["reactions"][0]
        self.assertEqual(reaction, {"emoji": "👍", "users": ["bob", "alice"], "count": 2})

        history.apply_reaction("r1", "m1", "👍", "bob", False)
        history.apply_reaction("r1", "m1", "👍", "alice", False)
        self.assertEqual(history.list("r1")[0]["reactions"], [])

    def test_apply_reaction_unknown_message(self):
        history = RoomHistory()

        self.assertFalse(history.apply_reaction("r1", "missing", "👍", "bob", True))


class TestSubscriptionHub(unittest.TestCase):
    def test_broadcast_skips_excluded_connection(self):
        hub = SubscriptionHub()
        received: dict[str, list] = {"a": [], "b": []}
        hub.subscribe("a", "r1", received["a"].append)
        hub.subscribe("b", "r1", received["b"].append)

        delivered = hub.broadcast("r1", {"t": "typing-start"}, exclude="a")

        self.assertEqual(delivered, 1)
        self.assertEqual(received["a"], [])
        self.assertEqual(received["b"], [{"t": "typing-start"}])

    def test_unsubscribe_stops_delivery(self):
        hub = SubscriptionHub()
        received: list = []
        subscription = hub.subscribe("a", "r1", received.append)

        hub.unsubscribe(subscription)
        hub.unsubscribe(subscription)
        hub.broadcast("r1", {"t": "receive-message"})

        self.assertEqual(received, [])
        self.assertEqual(hub.subscriber_count("r1"), 0)

    def test_rooms_do_not_leak(self):
        hub = SubscriptionHub()
        received: list = []
        hub.subscribe("a", "r1", received.append)

        self.assertEqual(hub.broadcast("r2", {"t": "receive-message"}), 0)
        self.assertEqual(received, [])


if __name__ == "__main__":
    unittest.main()
