"""In-memory stand-ins for Redis and for accepted websockets."""
import asyncio
import json
import time
from datetime import datetime, timedelta, timezone


class FakeBackend:
    """Mirrors backend.RedisBackend with plain dicts.

    `fail_on` names methods that raise; `delays` maps method names to a
    blocking sleep in seconds, to exercise storage timeouts.
    """

    def __init__(self):
        self.messages = {}
        self.last_messages = {}
        self.groups = {}
        self.profiles = {}
        self.unread = {}
        self.fail_on = set()
        self.delays = {}
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _enter(self, name):
        if name in self.delays:
            time.sleep(self.delays[name])
        if name in self.fail_on:
            raise RuntimeError(f"{name} unavailable")

    def _now(self):
        self._clock += timedelta(seconds=1)
        return self._clock.isoformat()

    def save_message(self, sender_id, room_id, content, participant1_id=None, participant2_id=None):
        self._enter("save_message")
        created_at = self._now()
        row = {"username": sender_id, "text": content, "inserted_at": created_at, "room": room_id}
        self.messages.setdefault(room_id, []).append(row)
        for participant in {participant1_id, participant2_id}:
            if participant:
                self.last_messages.setdefault(participant, {})[room_id] = row
        return created_at

    def get_last_messages(self, room_id, limit=50, offset=0):
        self._enter("get_last_messages")
        rows = self.messages.get(room_id, [])
        end = len(rows) - offset
        if end <= 0 or limit <= 0:
            return []
        return [dict(row) for row in rows[max(0, end - limit):end]]

    def get_last_messages_for_user_rooms(self, user_id):
        self._enter("get_last_messages_for_user_rooms")
        return dict(self.last_messages.get(user_id, {}))

    def get_group_members(self, group_id):
        self._enter("get_group_members")
        return set(self.groups.get(group_id, set()))

    def add_group_member(self, group_id, user_id):
        self._enter("add_group_member")
        members = self.groups.setdefault(group_id, set())
        added = user_id not in members
        members.add(user_id)
        return added

    def remove_group_member(self, group_id, user_id):
        self._enter("remove_group_member")
        members = self.groups.get(group_id, set())
        if user_id not in members:
            return False
        members.discard(user_id)
        return True

    def update_profile_status(self, user_id, is_online):
        self._enter("update_profile_status")
        last_seen_at = self._now()
        profile = self.profiles.setdefault(user_id, {"username": None})
        profile.update(is_online=is_online, last_seen_at=last_seen_at)
        return last_seen_at

    def get_online_statuses(self):
        self._enter("get_online_statuses")
        return [
            {"id": user_id, "username": profile.get("username"),
             "is_online": profile["is_online"], "last_seen_at": profile["last_seen_at"]}
            for user_id, profile in sorted(self.profiles.items())
        ]

    def reset_all_user_statuses(self):
        self._enter("reset_all_user_statuses")
        reset = 0
        for user_id, profile in self.profiles.items():
            if profile["is_online"]:
                self.update_profile_status(user_id, False)
                reset += 1
        return reset

    def increment_unread(self, user_id, room_id, sender_id):
        self._enter("increment_unread")
        entry = self.unread.setdefault(user_id, {}).setdefault(room_id, {"count": 0})
        entry["count"] += 1
        entry["last_sender_id"] = sender_id
        return entry["count"]

    def get_unread(self, user_id):
        self._enter("get_unread")
        return {room: dict(entry) for room, entry in self.unread.get(user_id, {}).items() if entry["count"] > 0}

    def clear_unread(self, user_id, room_id):
        self._enter("clear_unread")
        return self.unread.get(user_id, {}).pop(room_id, None) is not None


class FakeWebSocket:
    """Records every frame sent to it. With `fail` set, every send raises."""

    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send_text(self, data):
        if self.fail:
            raise RuntimeError("socket is dead")
        self.sent.append(json.loads(data))

    def of_type(self, frame_type):
        return [frame for frame in self.sent if frame.get("type") == frame_type]


class StalledWebSocket(FakeWebSocket):
    """A peer that stopped reading: send_text never returns."""

    def __init__(self):
        super().__init__()
        self.drained = asyncio.Event()

    async def send_text(self, data):
        await self.drained.wait()
