import asyncio
import unittest

from aiohttp.test_utils import TestServer

from chat_client.client import ChatClient
from chat_client.config import ClientConfig
from chat_client.conversation import ROOM_READY
from chat_client.dispatcher import build_envelope
from chat_client.errors import GatewayConnectionError, SendFailure
from chat_client.models import MessageStatus
from chat_client.transport import STATE_CONNECTED, STATE_DISCONNECTED, STATE_RECONNECTING
from gateway.ws_transport import create_app


async def _eventually(predicate, timeout: float = 3.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class ReconnectTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.app = create_app(ping_interval_s=3600)
        self.runtime = self.app["runtime"]
        self.server = TestServer(self.app)
        await self.server.start_server()
        config = ClientConfig(
            base_url=str(self.server.make_url("/")),
            join_timeout_s=2,
            history_timeout_s=2,
            send_timeout_s=2,
            connect_attempts=2,
            backoff_initial_s=0.05,
            backoff_max_s=0.05,
        )
        self.ann = ChatClient(config)
        self.states: list[str] = []
        handle_state = self.ann.transport.on_state

        def record_state(state, error):
            self.states.append(state)
            handle_state(state, error)

        self.ann.transport.on_state = record_state
        self.runtime.history.append("ann:bob", {"id": "b1", "senderId": "bob", "content": "before", "timestamp": 1})
        self.assertTrue(await self.ann.login("ann", "Ann"))
        session = await self.ann.select_peer("bob")
        self.assertEqual(session.status, ROOM_READY)
        self.states.clear()

    async def asyncTearDown(self):
        await self.ann.logout()
        await self.server.close()

    async def _drop_connection(self) -> None:
        await self.runtime.sockets[self.ann.transport.connection_id].close()

    async def test_dropped_socket_rejoins_and_merges_history(self):
        first_connection = self.ann.transport.connection_id
        self.ann.pin("b1")
        await self.ann.toggle_reaction("b1", "🎉")
        await _eventually(lambda: bool(self.runtime.history.list("ann:bob")[0]["reactions"]))
        unsent = build_envelope(self.ann.session, "lost in transit")
        self.ann.state.append_outbound(unsent)
        self.ann.state.mark_failed(unsent.id, SendFailure(unsent.id, "offline"))

        self.runtime.history.append("ann:bob", {"id": "b2", "senderId": "bob", "content": "missed", "timestamp": 2})
        self.runtime.history.apply_reaction("ann:bob", "b1", "👍", "bob", True)
        await self._drop_connection()

        await _eventually(lambda: len(self.ann.snapshot()) == 3)
        self.assertEqual(self.states, [STATE_RECONNECTING, STATE_CONNECTED])
        self.assertNotEqual(self.ann.transport.connection_id, first_connection)
        self.assertEqual(self.runtime.hub.subscriber_count("ann:bob"), 1)
        self.assertEqual(self.ann.session.status, ROOM_READY)

        snapshot = self.ann.snapshot()
        self.assertEqual([m.id for m in snapshot], ["b1", unsent.id, "b2"])
        self.assertEqual([m.id for m in self.ann.pinned_messages()], ["b1"])
        self.assertIs(snapshot[1].status, MessageStatus.FAILED)
        self.assertIn(unsent.id, self.ann.state.send_failures)
        reactions = {r.emoji: (r.count, r.has_reacted) for r in snapshot[0].reactions}
        self.assertEqual(reactions, {"🎉": (1, True), "👍": (1, False)})

    async def test_pushes_resume_after_reconnect(self):
        await self._drop_connection()
        await _eventually(lambda: self.states == [STATE_RECONNECTING, STATE_CONNECTED])
        await _eventually(lambda: self.runtime.hub.subscriber_count("ann:bob") == 1)

        bob = ChatClient(ClientConfig(base_url=str(self.server.make_url("/")), connect_attempts=1))
        try:
            self.assertTrue(await bob.login("bob"))
            await bob.select_peer("ann")
            await bob.send_text("welcome back")

            await _eventually(lambda: len(self.ann.snapshot()) == 2)
            self.assertEqual(self.ann.snapshot()[-1].content, "welcome back")
        finally:
            await bob.logout()

    async def test_exhausted_attempts_report_disconnected(self):
        await self.server.close()

        await _eventually(lambda: self.ann.connection_state == STATE_DISCONNECTED)

        self.assertEqual(self.states, [STATE_RECONNECTING, STATE_DISCONNECTED])
        self.assertIsInstance(self.ann.last_error, GatewayConnectionError)
        self.assertFalse(self.ann.transport.connected)
        self.assertEqual([m.id for m in self.ann.snapshot()], ["b1"])

        sent = await self.ann.send_text("anyone there?")

        self.assertIs(sent.status, MessageStatus.FAILED)
        self.assertIn(sent.id, self.ann.state.send_failures)


if __name__ == "__main__":
    unittest.main()
