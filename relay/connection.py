import asyncio
import json
import uuid
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel

from relay.rooms import Room


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    JOINED = "joined"
    CLOSED = "closed"


class ConnectionGone(Exception):
    """Raised by Connection.send once the connection is closed."""


class Connection:
    """One accepted websocket plus the identity and room bound to it.

    Hashes by object identity, so the registry can keep it in a set.
    """

    def __init__(self, websocket, connection_id: Optional[str] = None):
        self.id = connection_id or str(uuid.uuid4())
        self.websocket = websocket
        self.identity: Optional[str] = None
        self.room: Optional[Room] = None
        self.state = ConnectionState.CONNECTED
        self._send_lock = asyncio.Lock()

    @property
    def room_token(self) -> Optional[str]:
        return self.room.token if self.room else None

    def bind(self, identity: str):
        self.identity = identity
        self.state = ConnectionState.JOINED

    def close(self):
        self.state = ConnectionState.CLOSED

    async def send(self, payload: Union[BaseModel, dict]):
        if self.state == ConnectionState.CLOSED:
            raise ConnectionGone(f"Connection {self.id} is closed")
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json", exclude_none=True)
        async with self._send_lock:
            await self.websocket.send_text(json.dumps(payload))

    def __repr__(self):
        return f"<Connection {self.id[:8]} identity={self.identity!r} state={self.state.value}>"
