import asyncio
from typing import Optional, Union

from pydantic import BaseModel

from backend import utcnow_iso
from constants import DIRECT_ROOM_SEPARATOR
from errors import FrameError, StorageError
from logging_config import get_logger
from relay.connection import Connection, ConnectionState
from relay.registry import ConnectionRegistry
from relay.rooms import Room, parse_room
from relay.router import MessageRouter
from relay.storage import RelayStorage
from schemas.frames import (
    Ack,
    ActiveUser,
    ActiveUsers,
    ErrorFrame,
    GetActiveUsersFrame,
    GetLastMessagesFrame,
    HistoryMessage,
    JoinFrame,
    LastMessages,
    LeaveFrame,
    MessageFrame,
    StatusFrame,
    TypingFrame,
    parse_frame,
)

logger = get_logger(__name__)


class ConnectionHandler:
    """Per-connection protocol: CONNECTED -> JOINED -> CLOSED.

    The caller feeds frames of one connection strictly in arrival order and
    calls on_close exactly once when the transport goes away.
    """

    def __init__(self, registry: ConnectionRegistry, router: MessageRouter,
                 storage: RelayStorage, history_limit: int = 50):
        self.registry = registry
        self.router = router
        self.storage = storage
        self.history_limit = history_limit
        self._handlers = {
            "join": self.on_join,
            "message": self.on_message,
            "typing": self.on_typing,
            "leave": self.on_leave,
            "status": self.on_status,
            "get_active_users": self.on_get_active_users,
            "get_last_messages_for_user_rooms": self.on_get_last_messages,
        }

    def open(self, websocket) -> Connection:
        connection = Connection(websocket)
        logger.info(f"Connection {connection.id} opened")
        return connection

    async def handle_frame(self, connection: Connection, raw: str):
        """Dispatch one text frame. Malformed frames are answered with an error frame and dropped."""
        try:
            frame = parse_frame(raw)
        except FrameError as e:
            logger.warning(f"Discarding malformed frame on connection {connection.id}: {e}")
            await self._safe_send(connection, ErrorFrame(reason=str(e)))
            return
        logger.debug(f"Received {frame.type} frame on connection {connection.id}")
        await self._handlers[frame.type](connection, frame)

    async def on_join(self, connection: Connection, frame: JoinFrame):
        identity = frame.identity or connection.identity
        if not identity:
            logger.warning(f"Join without identity on connection {connection.id}")
            await self._safe_send(connection, ErrorFrame(reason="join requires an identity"))
            return
        if not await self._check_identity(connection, identity):
            return

        room = None
        if frame.room:
            room = await self._parse_room_or_report(connection, frame.room)
            if room is None:
                return

        if connection.identity and connection.identity != identity:
            await self._release_identity(connection)

        connection.bind(identity)
        connection.room = room
        came_online = await self.registry.register(identity, connection)
        logger.info(f"User {identity} joined room {connection.room_token} on connection {connection.id}")

        if came_online:
            await self._mark_online(connection)
        if room is not None:
            await self._replay_history(connection, room)

    async def on_message(self, connection: Connection, frame: MessageFrame):
        if connection.state != ConnectionState.JOINED:
            await self._safe_send(connection, Ack(ok=False, room=frame.room, reason="not_joined", id=frame.id))
            return
        room_token = frame.room or connection.room_token
        ack = await self.router.handle_inbound_message(connection.identity, room_token, frame.text)
        await self._safe_send(connection, ack.model_copy(update={"id": frame.id}))

    async def on_typing(self, connection: Connection, frame: TypingFrame):
        if not await self._require_joined(connection, frame.type):
            return
        token = frame.room or connection.room_token
        if not token:
            return
        room = await self._parse_room_or_report(connection, token)
        if room is not None:
            await self.router.relay_typing(connection, room)

    async def on_leave(self, connection: Connection, frame: LeaveFrame):
        if not await self._require_joined(connection, frame.type):
            return
        try:
            leaving = parse_room(frame.room).token if frame.room else None
        except FrameError:
            leaving = frame.room
        if leaving and leaving == connection.room_token:
            connection.room = None
            logger.info(f"User {connection.identity} left room {frame.room} on connection {connection.id}")
        else:
            logger.debug(f"User {connection.identity} sent leave for room {frame.room}, "
                         f"but is in room {connection.room_token}")

    async def on_status(self, connection: Connection, frame: StatusFrame):
        identity = frame.user or connection.identity
        if not identity:
            await self._safe_send(connection, ErrorFrame(reason="status requires a user"))
            return
        if not await self._check_identity(connection, identity):
            return
        if connection.identity and connection.identity != identity:
            logger.warning(f"Connection {connection.id} of {connection.identity} sent status for {identity}")
            await self._safe_send(connection, ErrorFrame(reason="status user does not match connection"))
            return

        if connection.identity is not None:
            # Presence follows registry occupancy; a bound connection keeps its user online
            logger.debug(f"Ignoring status online={frame.online} from {identity} on connection {connection.id}")
            return
        if not frame.online:
            logger.warning(f"Offline status for {identity} on unbound connection {connection.id}")
            await self._safe_send(connection, ErrorFrame(reason="offline status requires a bound user"))
            return

        connection.bind(identity)
        came_online = await self.registry.register(identity, connection)
        logger.info(f"User {identity} bound from status frame on connection {connection.id}")
        if came_online:
            await self._mark_online(connection)

    async def on_get_active_users(self, connection: Connection, frame: GetActiveUsersFrame):
        if not await self._require_joined(connection, frame.type):
            return
        try:
            statuses = await self.storage.profile_statuses()
        except StorageError as e:
            logger.error(f"Failed to get online statuses: {e}", exc_info=True)
            statuses = []

        online = self.registry.online_identities()
        users = [
            ActiveUser(
                id=status["id"],
                username=status.get("username"),
                online=status["id"] in online,
                last_seen=status.get("last_seen_at"),
            )
            for status in statuses
        ]
        known = {status["id"] for status in statuses}
        users.extend(ActiveUser(id=identity, online=True) for identity in sorted(online - known))
        await self._safe_send(connection, ActiveUsers(users=users))
        logger.debug(f"Sent {len(users)} user statuses to {connection.identity}")

    async def on_get_last_messages(self, connection: Connection, frame: GetLastMessagesFrame):
        if not await self._require_joined(connection, frame.type):
            return
        try:
            messages = await self.storage.last_messages_for_user(connection.identity)
        except StorageError as e:
            logger.error(f"Failed to get last messages for {connection.identity}: {e}", exc_info=True)
            messages = {}
        await self._safe_send(connection, LastMessages(messages=messages))

    async def on_close(self, connection: Connection):
        connection.close()
        if connection.identity is None:
            logger.info(f"Connection {connection.id} closed with no user bound")
            return
        await self._release_identity(connection)
        logger.info(f"User {connection.identity} disconnected connection {connection.id}")

    async def _release_identity(self, connection: Connection):
        identity = connection.identity
        await self.registry.unregister(identity, connection)
        if self.registry.is_online(identity):
            logger.debug(f"User {identity} still has {len(self.registry.connections_for(identity))} connections")
            return
        try:
            last_seen = await self.storage.set_presence(identity, False)
        except StorageError as e:
            logger.error(f"Failed to mark {identity} offline: {e}", exc_info=True)
            last_seen = utcnow_iso()
        await self.router.announce_status(identity, False, last_seen, connection.room)

    async def _mark_online(self, connection: Connection):
        try:
            await self.storage.set_presence(connection.identity, True)
        except StorageError as e:
            logger.error(f"Failed to mark {connection.identity} online: {e}", exc_info=True)
        await self.router.announce_status(connection.identity, True, room=connection.room)

    async def _replay_history(self, connection: Connection, room: Room):
        if self.history_limit <= 0:
            return
        try:
            rows = await self.storage.recent_messages(room.token, self.history_limit)
        except StorageError as e:
            logger.error(f"Failed to get message history for room {room.token}: {e}", exc_info=True)
            return
        for row in rows:
            if not await self._safe_send(connection, HistoryMessage(**row)):
                return
        logger.debug(f"Replayed {len(rows)} messages of room {room.token} to connection {connection.id}")

    async def _check_identity(self, connection: Connection, identity: str) -> bool:
        if DIRECT_ROOM_SEPARATOR not in identity:
            return True
        logger.warning(f"Rejected identity {identity!r} on connection {connection.id}")
        await self._safe_send(connection, ErrorFrame(reason=f"identity must not contain {DIRECT_ROOM_SEPARATOR!r}"))
        return False

    async def _require_joined(self, connection: Connection, frame_type: str) -> bool:
        if connection.state == ConnectionState.JOINED:
            return True
        logger.warning(f"Discarding {frame_type} frame from connection {connection.id} before join")
        await self._safe_send(connection, ErrorFrame(reason=f"{frame_type} requires join"))
        return False

    async def _parse_room_or_report(self, connection: Connection, token: str) -> Optional[Room]:
        try:
            return parse_room(token)
        except FrameError as e:
            logger.warning(f"Invalid room on connection {connection.id}: {e}")
            await self._safe_send(connection, ErrorFrame(reason=str(e)))
            return None

    async def _safe_send(self, connection: Connection, payload: Union[BaseModel, dict]) -> bool:
        try:
            await asyncio.wait_for(connection.send(payload), self.router.send_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Send to connection {connection.id} timed out after {self.router.send_timeout}s")
            return False
        except Exception as e:
            logger.warning(f"Error sending to connection {connection.id}: {e}")
            return False
        return True
