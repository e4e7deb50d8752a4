import asyncio
from typing import Iterable, Optional, Union

from pydantic import BaseModel

from constants import PRESENCE_ROOM
from errors import FrameError, StorageError
from logging_config import get_logger
from relay.connection import Connection
from relay.registry import ConnectionRegistry
from relay.resolver import MembershipResolver
from relay.rooms import DirectRoom, Room, parse_room
from relay.storage import RelayStorage
from schemas.frames import Ack, ChatMessage, StatusNotice, TypingNotice

logger = get_logger(__name__)


class MessageRouter:
    """Persists inbound chat messages and fans them out to open connections.

    Delivery is best-effort and at-most-once: sends are not retried and
    recipients never acknowledge. A connection whose send fails, or does not
    finish within send_timeout seconds, is dropped from the registry.
    """

    def __init__(self, registry: ConnectionRegistry, resolver: MembershipResolver,
                 storage: RelayStorage, presence_room: str = PRESENCE_ROOM,
                 send_timeout: float = 5.0):
        self.registry = registry
        self.resolver = resolver
        self.storage = storage
        self.presence_room = presence_room
        self.send_timeout = send_timeout

    async def handle_inbound_message(self, sender: Optional[str], room_token: Optional[str],
                                     text: Optional[str]) -> Ack:
        if not sender or not room_token or not text:
            logger.warning(f"Rejected message with missing field (sender={sender!r}, room={room_token!r})")
            return Ack(ok=False, room=room_token, reason="missing_field")

        try:
            room = parse_room(room_token)
        except FrameError as e:
            logger.warning(f"Rejected message from {sender}: {e}")
            return Ack(ok=False, room=room_token, reason="invalid_room")

        participant1_id = participant2_id = None
        if isinstance(room, DirectRoom):
            participant1_id, participant2_id = room.sorted_participants()

        try:
            inserted_at = await self.storage.save_message(sender, room.token, text, participant1_id, participant2_id)
        except StorageError as e:
            logger.error(f"Failed to save message from {sender} in room {room.token}: {e}", exc_info=True)
            return Ack(ok=False, room=room.token, reason="storage_unavailable")

        message = ChatMessage(username=sender, text=text, inserted_at=inserted_at, room=room.token)
        recipients = await self.resolver.resolve_recipients(room)
        delivered = await self.fan_out(recipients, message)
        logger.debug(f"Message from {sender} in room {room.token} delivered to {delivered} connections")

        await self._count_unread(recipients, sender, room)
        return Ack(ok=True, room=room.token, inserted_at=inserted_at)

    async def fan_out(self, recipients: Iterable[str], payload: Union[BaseModel, dict],
                      exclude: Optional[Connection] = None) -> int:
        """Send payload to every open connection of every recipient.

        Returns the number of successful sends. Failed connections are
        unregistered and do not affect the others.
        """
        targets = [
            (identity, connection)
            for identity in set(recipients)
            for connection in self.registry.connections_for(identity)
            if connection is not exclude
        ]
        if not targets:
            return 0

        results = await asyncio.gather(
            *(asyncio.wait_for(connection.send(payload), self.send_timeout) for _, connection in targets),
            return_exceptions=True,
        )

        delivered = 0
        for (identity, connection), result in zip(targets, results):
            if isinstance(result, asyncio.TimeoutError):
                logger.warning(f"Send to connection {connection.id} of user {identity} timed out "
                               f"after {self.send_timeout}s")
                await self.registry.unregister(identity, connection)
            elif isinstance(result, Exception):
                logger.warning(f"Error sending to connection {connection.id} of user {identity}: {result}")
                await self.registry.unregister(identity, connection)
            else:
                delivered += 1
        return delivered

    async def _count_unread(self, recipients: Iterable[str], sender: str, room: Room):
        for recipient in recipients:
            if recipient == sender:
                continue
            viewing = any(c.room_token == room.token for c in self.registry.connections_for(recipient))
            if viewing:
                continue
            try:
                await self.storage.increment_unread(recipient, room.token, sender)
            except StorageError as e:
                logger.error(f"Failed to update unread count for {recipient} in room {room.token}: {e}")

    async def presence_peers(self, identity: str, room: Optional[Room]) -> set:
        if room is None or room.token == self.presence_room:
            peers = set(self.registry.online_identities())
        else:
            peers = await self.resolver.resolve_recipients(room)
        peers.discard(identity)
        return peers

    async def announce_status(self, identity: str, online: bool, last_seen: Optional[str] = None,
                              room: Optional[Room] = None) -> int:
        notice = StatusNotice(user=identity, online=online, last_seen=last_seen)
        peers = await self.presence_peers(identity, room)
        delivered = await self.fan_out(peers, notice)
        logger.debug(f"Announced {identity} {'online' if online else 'offline'} to {delivered} connections")
        return delivered

    async def relay_typing(self, connection: Connection, room: Room) -> int:
        notice = TypingNotice(username=connection.identity, room=room.token)
        recipients = await self.resolver.resolve_recipients(room)
        return await self.fan_out(recipients, notice, exclude=connection)
