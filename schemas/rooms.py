from pydantic import BaseModel
from typing import Dict, List, Optional


class DirectRoomRequest(BaseModel):
    user_a: str
    user_b: str

class DirectRoomResponse(BaseModel):
    room_id: str

class StoredMessage(BaseModel):
    username: str
    text: str
    inserted_at: Optional[str] = None
    room: Optional[str] = None

class MessageHistoryResponse(BaseModel):
    room_id: str
    messages: List[StoredMessage]

class GroupMemberRequest(BaseModel):
    user_id: str

class GroupMembersResponse(BaseModel):
    group_id: str
    members: List[str]

class UnreadCount(BaseModel):
    count: int
    last_sender_id: Optional[str] = None

class UnreadResponse(BaseModel):
    user_id: str
    rooms: Dict[str, UnreadCount]
