import json
import unittest

from client import ReconnectPolicy, RelayClient


class FakeClientSocket:
    """Plays back `frames`, then ends with `close_code`."""

    def __init__(self, frames=(), close_code=1006):
        self.frames = list(frames)
        self.close_code = close_code
        self.sent = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def close(self, code=1000):
        self.close_code = code

    def __aiter__(self):
        return self._playback()

    async def _playback(self):
        for frame in self.frames:
            yield frame


class RefusedConnection:
    async def __aenter__(self):
        raise ConnectionRefusedError("relay is down")

    async def __aexit__(self, *exc):
        return False


class FakeConnector:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    def __call__(self, url):
        self.calls += 1
        return self.outcomes.pop(0)


class TestReconnectPolicy(unittest.TestCase):

    def test_delay_grows_linearly_up_to_cap(self):
        policy = ReconnectPolicy()
        self.assertEqual([policy.delay(n) for n in (1, 2, 5, 10, 11, 50)], [1.0, 2.0, 5.0, 10.0, 10.0, 10.0])

    def test_only_normal_closure_stops_reconnecting(self):
        self.assertFalse(ReconnectPolicy.should_reconnect(1000))
        for code in (1001, 1006, 1011, None):
            self.assertTrue(ReconnectPolicy.should_reconnect(code))


class TestRelayClient(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.sleeps = []

    async def fake_sleep(self, delay):
        self.sleeps.append(delay)

    def make_client(self, outcomes, room=None):
        self.connector = FakeConnector(outcomes)
        return RelayClient("ws://relay/ws", "u1", room=room, connect=self.connector, sleep=self.fake_sleep)

    async def test_normal_closure_does_not_reconnect(self):
        client = self.make_client([FakeClientSocket(close_code=1000)])
        await client.run()
        self.assertEqual(self.connector.calls, 1)
        self.assertEqual(self.sleeps, [])

    async def test_abnormal_closure_reconnects_with_backoff_and_resets(self):
        client = self.make_client([
            FakeClientSocket(close_code=1006),
            RefusedConnection(),
            FakeClientSocket(close_code=1006),
            FakeClientSocket(close_code=1000),
        ])
        await client.run()
        self.assertEqual(self.connector.calls, 4)
        self.assertEqual(self.sleeps, [1.0, 2.0, 1.0])
        self.assertEqual(client.reconnect_delays, [1.0, 2.0, 1.0])
        self.assertEqual(client.reconnect_attempts, 0)

    async def test_backoff_is_capped(self):
        client = self.make_client([RefusedConnection() for _ in range(12)] + [FakeClientSocket(close_code=1000)])
        await client.run()
        self.assertEqual(self.sleeps, [1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 7.0, 8.0, 9.0, 10.0, 10.0, 10.0])

    async def test_binds_user_on_connect_and_dispatches_frames(self):
        received = []

        async def on_message(frame):
            received.append(frame)

        socket = FakeClientSocket(
            frames=[json.dumps({"type": "message", "text": "hi"}), "garbage", json.dumps({"type": "unknown"})],
            close_code=1000,
        )
        client = self.make_client([socket], room="u1_u2")
        client.on("message", on_message)

        await client.run()

        self.assertEqual(socket.sent, [
            {"type": "join", "name": "u1", "room": "u1_u2"},
            {"type": "status", "user": "u1", "online": True},
        ])
        self.assertEqual(received, [{"type": "message", "text": "hi"}])

    async def test_non_object_frame_does_not_stop_reconnecting(self):
        client = self.make_client([
            FakeClientSocket(frames=["[1, 2]", "\"text\"", "null"], close_code=1006),
            FakeClientSocket(close_code=1000),
        ])
        await client.run()
        self.assertEqual(self.connector.calls, 2)
        self.assertEqual(self.sleeps, [1.0])

    async def test_failing_handler_does_not_stop_the_client(self):
        received = []

        async def on_message(frame):
            received.append(frame["text"])
            if frame["text"] == "boom":
                raise ValueError("bad frame")

        client = self.make_client([
            FakeClientSocket(frames=[json.dumps({"type": "message", "text": "boom"}),
                                     json.dumps({"type": "message", "text": "after"})], close_code=1006),
            FakeClientSocket(close_code=1000),
        ])
        client.on("message", on_message)

        await client.run()

        self.assertEqual(received, ["boom", "after"])
        self.assertEqual(self.connector.calls, 2)

    async def test_send_while_disconnected_raises(self):
        client = self.make_client([])
        with self.assertRaises(ConnectionError):
            await client.send_message("hello", room="u1_u2")


if __name__ == "__main__":
    unittest.main()
