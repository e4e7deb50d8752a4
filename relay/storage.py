import asyncio
import functools
from typing import Dict, List, Optional, Set

from errors import StorageError, StorageTimeout
from logging_config import get_logger

logger = get_logger(__name__)


class RelayStorage:
    """Async facade over a blocking backend (backend.RedisBackend).

    Each call runs in the default executor and is bounded by `timeout`
    seconds. Every failure surfaces as StorageError, timeouts as
    StorageTimeout; the abandoned executor call is left to finish on its own.
    """

    def __init__(self, backend, timeout: float = 5.0):
        self.backend = backend
        self.timeout = timeout

    async def _run(self, operation: str, *args):
        func = functools.partial(getattr(self.backend, operation), *args)
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(loop.run_in_executor(None, func), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise StorageTimeout(f"{operation} timed out after {self.timeout}s") from e
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"{operation} failed: {e}") from e

    async def save_message(self, sender_id: str, room_id: str, content: str,
                           participant1_id: Optional[str] = None,
                           participant2_id: Optional[str] = None) -> str:
        return await self._run("save_message", sender_id, room_id, content, participant1_id, participant2_id)

    async def recent_messages(self, room_id: str, limit: int, offset: int = 0) -> List[dict]:
        return await self._run("get_last_messages", room_id, limit, offset)

    async def last_messages_for_user(self, user_id: str) -> Dict[str, dict]:
        return await self._run("get_last_messages_for_user_rooms", user_id)

    async def group_members(self, group_id: str) -> Set[str]:
        return await self._run("get_group_members", group_id)

    async def add_group_member(self, group_id: str, user_id: str) -> bool:
        return await self._run("add_group_member", group_id, user_id)

    async def remove_group_member(self, group_id: str, user_id: str) -> bool:
        return await self._run("remove_group_member", group_id, user_id)

    async def set_presence(self, user_id: str, online: bool) -> str:
        return await self._run("update_profile_status", user_id, online)

    async def profile_statuses(self) -> List[dict]:
        return await self._run("get_online_statuses")

    async def reset_presence(self) -> int:
        return await self._run("reset_all_user_statuses")

    async def increment_unread(self, user_id: str, room_id: str, sender_id: str) -> int:
        return await self._run("increment_unread", user_id, room_id, sender_id)

    async def unread(self, user_id: str) -> Dict[str, dict]:
        return await self._run("get_unread", user_id)

    async def clear_unread(self, user_id: str, room_id: str) -> bool:
        return await self._run("clear_unread", user_id, room_id)
