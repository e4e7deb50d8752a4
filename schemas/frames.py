import json
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from errors import FrameError


# Inbound (client -> server)

class JoinFrame(BaseModel):
    type: Literal["join"]
    name: Optional[str] = None
    user: Optional[str] = None
    room: Optional[str] = None

    @property
    def identity(self) -> Optional[str]:
        return self.name or self.user


class MessageFrame(BaseModel):
    type: Literal["message"]
    room: Optional[str] = None
    text: Optional[str] = None
    id: Optional[str] = None


class TypingFrame(BaseModel):
    type: Literal["typing"]
    room: Optional[str] = None
    username: Optional[str] = None


class LeaveFrame(BaseModel):
    type: Literal["leave"]
    room: Optional[str] = None


class StatusFrame(BaseModel):
    type: Literal["status"]
    user: Optional[str] = None
    online: bool = True


class GetActiveUsersFrame(BaseModel):
    type: Literal["get_active_users"]


class GetLastMessagesFrame(BaseModel):
    type: Literal["get_last_messages_for_user_rooms"]


InboundFrame = Annotated[
    Union[JoinFrame, MessageFrame, TypingFrame, LeaveFrame, StatusFrame,
          GetActiveUsersFrame, GetLastMessagesFrame],
    Field(discriminator="type"),
]

_inbound_adapter = TypeAdapter(InboundFrame)


def parse_frame(raw: str):
    """Parse one text frame into its inbound model. Raises FrameError."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise FrameError(f"Unparseable frame: {e}") from e
    if not isinstance(data, dict):
        raise FrameError("Frame must be a JSON object")
    if "type" not in data:
        raise FrameError("Frame has no type")
    try:
        return _inbound_adapter.validate_python(data)
    except ValidationError as e:
        raise FrameError(f"Invalid {data.get('type')!r} frame: {e.errors()[0].get('msg')}") from e


# Outbound (server -> client)

class ChatMessage(BaseModel):
    type: Literal["message"] = "message"
    username: str
    text: str
    inserted_at: str
    room: str


class HistoryMessage(BaseModel):
    type: Literal["history"] = "history"
    username: str
    text: str
    inserted_at: Optional[str] = None
    room: Optional[str] = None


class StatusNotice(BaseModel):
    type: Literal["status"] = "status"
    user: str
    online: bool
    last_seen: Optional[str] = None


class TypingNotice(BaseModel):
    type: Literal["typing"] = "typing"
    username: str
    room: str


class ActiveUser(BaseModel):
    id: str
    username: Optional[str] = None
    online: bool
    last_seen: Optional[str] = None


class ActiveUsers(BaseModel):
    type: Literal["active_users"] = "active_users"
    users: List[ActiveUser]


class LastMessages(BaseModel):
    type: Literal["last_messages_for_user_rooms"] = "last_messages_for_user_rooms"
    messages: Dict[str, dict]


class Ack(BaseModel):
    """Sent only to the sender of a `message` frame."""
    type: Literal["ack"] = "ack"
    ok: bool
    room: Optional[str] = None
    inserted_at: Optional[str] = None
    reason: Optional[str] = None
    id: Optional[str] = None


class ErrorFrame(BaseModel):
    type: Literal["error"] = "error"
    reason: str
