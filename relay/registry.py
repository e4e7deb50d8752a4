import asyncio
from typing import Dict, FrozenSet, Set

from logging_config import get_logger
from relay.connection import Connection

logger = get_logger(__name__)


class ConnectionRegistry:
    """Process-wide map of user identity -> open connections.

    Mutations go through one lock. Lookups return a frozen snapshot so fan-out
    can iterate while other connections of the same user register or leave.
    """

    def __init__(self):
        self._connections: Dict[str, Set[Connection]] = {}
        self._lock = asyncio.Lock()

    async def register(self, identity: str, connection: Connection) -> bool:
        """Add the connection. Returns True if this made the identity come online."""
        async with self._lock:
            connections = self._connections.get(identity)
            came_online = connections is None
            if came_online:
                connections = self._connections[identity] = set()
            connections.add(connection)
            logger.debug(f"User {identity} now has {len(connections)} active connections")
            return came_online

    async def unregister(self, identity: str, connection: Connection) -> bool:
        """Remove the connection. Returns True if this removed the identity's last one."""
        async with self._lock:
            connections = self._connections.get(identity)
            if not connections or connection not in connections:
                return False
            connections.discard(connection)
            if connections:
                logger.debug(f"User {identity} still has {len(connections)} active connections")
                return False
            del self._connections[identity]
            logger.debug(f"User {identity} has no more active connections")
            return True

    def connections_for(self, identity: str) -> FrozenSet[Connection]:
        return frozenset(self._connections.get(identity, ()))

    def is_online(self, identity: str) -> bool:
        return identity in self._connections

    def online_identities(self) -> FrozenSet[str]:
        return frozenset(self._connections)

    def __len__(self):
        return len(self._connections)
