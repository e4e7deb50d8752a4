import json
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

import redis

from constants import RelaySettings
from errors import StorageError
from logging_config import get_logger
from redis_keys import (
    REDIS_GROUP_MEMBERS_KEY,
    REDIS_LAST_MESSAGES_KEY,
    REDIS_MESSAGES_KEY,
    REDIS_PROFILE_KEY,
    REDIS_PROFILES_KEY,
    REDIS_UNREAD_KEY,
    REDIS_UNREAD_ROOMS_KEY,
)

logger = get_logger(__name__)


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def message_row_to_wire(row: dict) -> dict:
    """Map a stored message row onto the field names clients read."""
    return {
        "username": row.get("sender_id"),
        "text": row.get("content"),
        "inserted_at": row.get("created_at"),
        "room": row.get("room_id"),
    }


class RedisBackend:
    """Blocking storage calls for messages, group membership, presence and unread counters.

    Every method talks to Redis synchronously; the relay never calls these
    directly from the event loop (see relay.storage.RelayStorage).
    """

    def __init__(self, redis_client):
        self.redis_client = redis_client

    @classmethod
    def from_settings(cls, settings: RelaySettings) -> "RedisBackend":
        """Connect and ping. Raises StorageError when Redis is unreachable."""
        client = redis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            password=settings.redis_password,
            decode_responses=True,
            socket_timeout=settings.storage_timeout,
            socket_connect_timeout=settings.storage_timeout,
        )
        try:
            client.ping()
        except redis.RedisError as e:
            logger.error(f"Failed to connect to Redis at {settings.redis_host}:{settings.redis_port}: {e}", exc_info=True)
            raise StorageError(f"Redis unreachable at {settings.redis_host}:{settings.redis_port}") from e
        logger.info(f"Redis client connected successfully to {settings.redis_host}:{settings.redis_port}")
        return cls(client)

    # messages

    def save_message(self, sender_id: str, room_id: str, content: str,
                     participant1_id: Optional[str] = None, participant2_id: Optional[str] = None) -> str:
        """Append a message row to the room and return its created_at timestamp."""
        created_at = utcnow_iso()
        row = {
            "sender_id": sender_id,
            "room_id": room_id,
            "content": content,
            "created_at": created_at,
            "participant1_id": participant1_id,
            "participant2_id": participant2_id,
        }
        row_json = json.dumps(row)
        pipe = self.redis_client.pipeline()
        pipe.rpush(REDIS_MESSAGES_KEY.format(room_id=room_id), row_json)
        for participant in {participant1_id, participant2_id}:
            if participant:
                pipe.hset(REDIS_LAST_MESSAGES_KEY.format(user_id=participant), room_id, row_json)
        pipe.execute()
        logger.debug(f"Message saved for user {sender_id} in room {room_id}")
        return created_at

    def get_last_messages(self, room_id: str, limit: int = 50, offset: int = 0) -> List[dict]:
        """Return up to `limit` messages, oldest first, skipping the `offset` newest."""
        if limit <= 0:
            return []
        key = REDIS_MESSAGES_KEY.format(room_id=room_id)
        rows = self.redis_client.lrange(key, -(offset + limit), -(offset + 1))
        logger.debug(f"Fetched {len(rows)} messages for room {room_id}")
        return [message_row_to_wire(json.loads(row)) for row in rows]

    def get_last_messages_for_user_rooms(self, user_id: str) -> Dict[str, dict]:
        rows = self.redis_client.hgetall(REDIS_LAST_MESSAGES_KEY.format(user_id=user_id))
        return {room_id: message_row_to_wire(json.loads(row)) for room_id, row in rows.items()}

    # groups

    def get_group_members(self, group_id: str) -> Set[str]:
        members = self.redis_client.smembers(REDIS_GROUP_MEMBERS_KEY.format(group_id=group_id))
        logger.debug(f"Group {group_id} has {len(members)} members")
        return set(members)

    def add_group_member(self, group_id: str, user_id: str) -> bool:
        added = self.redis_client.sadd(REDIS_GROUP_MEMBERS_KEY.format(group_id=group_id), user_id)
        return bool(added)

    def remove_group_member(self, group_id: str, user_id: str) -> bool:
        removed = self.redis_client.srem(REDIS_GROUP_MEMBERS_KEY.format(group_id=group_id), user_id)
        return bool(removed)

    # presence

    def update_profile_status(self, user_id: str, is_online: bool) -> str:
        """Set the presence columns and return the new last_seen_at."""
        last_seen_at = utcnow_iso()
        pipe = self.redis_client.pipeline()
        pipe.hset(REDIS_PROFILE_KEY.format(user_id=user_id), mapping={
            "is_online": "1" if is_online else "0",
            "last_seen_at": last_seen_at,
        })
        pipe.sadd(REDIS_PROFILES_KEY, user_id)
        pipe.execute()
        logger.debug(f"User {user_id} status updated to {'online' if is_online else 'offline'}")
        return last_seen_at

    def get_online_statuses(self) -> List[dict]:
        statuses = []
        for user_id in sorted(self.redis_client.smembers(REDIS_PROFILES_KEY)):
            profile = self.redis_client.hgetall(REDIS_PROFILE_KEY.format(user_id=user_id))
            statuses.append({
                "id": user_id,
                "username": profile.get("username"),
                "is_online": profile.get("is_online") == "1",
                "last_seen_at": profile.get("last_seen_at"),
            })
        logger.debug(f"Fetched {len(statuses)} profiles with status info")
        return statuses

    def reset_all_user_statuses(self) -> int:
        """Mark every profile that is still online as offline. Used at process start."""
        reset = 0
        for status in self.get_online_statuses():
            if status["is_online"]:
                self.update_profile_status(status["id"], False)
                reset += 1
        logger.info(f"All previously online users reset to offline ({reset} profiles)")
        return reset

    # unread counters

    def increment_unread(self, user_id: str, room_id: str, sender_id: str) -> int:
        key = REDIS_UNREAD_KEY.format(user_id=user_id, room_id=room_id)
        pipe = self.redis_client.pipeline()
        pipe.hincrby(key, "count", 1)
        pipe.hset(key, mapping={"last_sender_id": sender_id, "updated_at": utcnow_iso()})
        pipe.sadd(REDIS_UNREAD_ROOMS_KEY.format(user_id=user_id), room_id)
        count = pipe.execute()[0]
        return int(count)

    def get_unread(self, user_id: str) -> Dict[str, dict]:
        unread = {}
        for room_id in self.redis_client.smembers(REDIS_UNREAD_ROOMS_KEY.format(user_id=user_id)):
            data = self.redis_client.hgetall(REDIS_UNREAD_KEY.format(user_id=user_id, room_id=room_id))
            count = int(data.get("count", 0))
            if count > 0:
                unread[room_id] = {"count": count, "last_sender_id": data.get("last_sender_id")}
        return unread

    def clear_unread(self, user_id: str, room_id: str) -> bool:
        pipe = self.redis_client.pipeline()
        pipe.delete(REDIS_UNREAD_KEY.format(user_id=user_id, room_id=room_id))
        pipe.srem(REDIS_UNREAD_ROOMS_KEY.format(user_id=user_id), room_id)
        deleted, _ = pipe.execute()
        return bool(deleted)
