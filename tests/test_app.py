import unittest

from fastapi.testclient import TestClient

from app import create_app
from constants import RelaySettings
from fakes import FakeBackend


class TestRelayEndpoint(unittest.TestCase):

    def setUp(self):
        self.backend = FakeBackend()
        self.backend.update_profile_status("stale", True)
        self.app = create_app(backend=self.backend, settings=RelaySettings(history_limit=10, storage_timeout=2.0))
        self.client = TestClient(self.app)
        self.client.__enter__()

    def tearDown(self):
        self.client.__exit__(None, None, None)

    def test_startup_resets_stale_presence(self):
        self.assertFalse(self.backend.profiles["stale"]["is_online"])

    def test_health(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok", "online_users": 0})

    def test_direct_chat_round_trip(self):
        with self.client.websocket_connect("/ws") as alice, self.client.websocket_connect("/ws") as bob:
            alice.send_json({"type": "join", "name": "alice", "room": "alice_bob"})
            alice.send_json({"type": "get_active_users"})
            self.assertEqual(alice.receive_json()["type"], "active_users")

            bob.send_json({"type": "join", "name": "bob", "room": "alice_bob"})
            # alice is told bob came online, which also means bob is registered
            self.assertEqual(alice.receive_json(), {"type": "status", "user": "bob", "online": True})

            alice.send_json({"type": "message", "room": "alice_bob", "text": "hi bob", "id": "1"})
            echo = alice.receive_json()
            ack = alice.receive_json()
            delivered = bob.receive_json()

            self.assertEqual(echo["type"], "message")
            self.assertEqual(ack["type"], "ack")
            self.assertTrue(ack["ok"])
            self.assertEqual(ack["id"], "1")
            self.assertEqual(delivered["username"], "alice")
            self.assertEqual(delivered["text"], "hi bob")
            self.assertEqual(delivered["room"], "alice_bob")
            self.assertEqual(delivered["inserted_at"], ack["inserted_at"])

            bob.send_json({"type": "get_active_users"})
            users = {user["id"]: user["online"] for user in bob.receive_json()["users"]}
            self.assertTrue(users["alice"])
            self.assertTrue(users["bob"])

            bob.close(code=1000)
            offline = alice.receive_json()
            self.assertEqual(offline["type"], "status")
            self.assertEqual(offline["user"], "bob")
            self.assertFalse(offline["online"])

        response = self.client.get("/rooms/alice_bob/messages")
        self.assertEqual(response.status_code, 200)
        self.assertEqual([m["text"] for m in response.json()["messages"]], ["hi bob"])

    def test_malformed_frame_keeps_connection_open(self):
        with self.client.websocket_connect("/ws") as ws:
            ws.send_text("this is not json")
            self.assertEqual(ws.receive_json()["type"], "error")
            ws.send_json({"type": "join", "name": "carol"})
            ws.send_json({"type": "message", "room": "carol_dave", "text": "still open"})
            frames = [ws.receive_json(), ws.receive_json()]
            self.assertEqual([frame["type"] for frame in frames], ["message", "ack"])

    def test_history_replayed_on_join(self):
        self.backend.save_message("bob", "alice_bob", "earlier", "alice", "bob")
        with self.client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "join", "name": "alice", "room": "alice_bob"})
            frame = ws.receive_json()
            self.assertEqual(frame["type"], "history")
            self.assertEqual(frame["text"], "earlier")
            self.assertEqual(frame["username"], "bob")


class TestRoomRoutes(unittest.TestCase):

    def setUp(self):
        self.backend = FakeBackend()
        self.client = TestClient(create_app(backend=self.backend, settings=RelaySettings()))
        self.client.__enter__()

    def tearDown(self):
        self.client.__exit__(None, None, None)

    def test_direct_room_token(self):
        response = self.client.post("/rooms/direct", json={"user_a": "zed", "user_b": "amy"})
        self.assertEqual(response.json(), {"room_id": "amy_zed"})

    def test_direct_room_rejects_separator_in_ids(self):
        response = self.client.post("/rooms/direct", json={"user_a": "a_b", "user_b": "c"})
        self.assertEqual(response.status_code, 400)

    def test_message_pagination(self):
        for i in range(5):
            self.backend.save_message("amy", "team", f"m{i}")
        response = self.client.get("/rooms/team/messages", params={"limit": 2, "offset": 1})
        self.assertEqual([m["text"] for m in response.json()["messages"]], ["m2", "m3"])

    def test_group_membership(self):
        response = self.client.post("/rooms/groups/team/members", json={"user_id": "amy"})
        self.assertEqual(response.status_code, 201)
        self.client.post("/rooms/groups/team/members", json={"user_id": "bob"})
        self.assertEqual(self.client.get("/rooms/groups/team/members").json()["members"], ["amy", "bob"])

        response = self.client.delete("/rooms/groups/team/members/amy")
        self.assertEqual(response.json()["members"], ["bob"])
        self.assertEqual(self.client.delete("/rooms/groups/team/members/amy").status_code, 404)

    def test_group_id_with_separator_is_rejected(self):
        response = self.client.post("/rooms/groups/a_b/members", json={"user_id": "amy"})
        self.assertEqual(response.status_code, 400)

    def test_storage_failure_is_503(self):
        self.backend.fail_on.add("get_group_members")
        self.assertEqual(self.client.get("/rooms/groups/team/members").status_code, 503)

    def test_unread_counters(self):
        self.backend.increment_unread("bob", "amy_bob", "amy")
        self.backend.increment_unread("bob", "amy_bob", "amy")
        response = self.client.get("/rooms/unread/bob")
        self.assertEqual(response.json()["rooms"], {"amy_bob": {"count": 2, "last_sender_id": "amy"}})

        self.client.delete("/rooms/unread/bob/amy_bob")
        self.assertEqual(self.client.get("/rooms/unread/bob").json()["rooms"], {})


if __name__ == "__main__":
    unittest.main()
