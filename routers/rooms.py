from fastapi import APIRouter, Depends, HTTPException, Query, Request
from schemas.rooms import (
    DirectRoomRequest,
    DirectRoomResponse,
    GroupMemberRequest,
    GroupMembersResponse,
    MessageHistoryResponse,
    UnreadResponse,
)
from errors import FrameError, StorageError
from relay.rooms import is_group_id, parse_room, room_token
from relay.storage import RelayStorage
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


def get_storage(request: Request) -> RelayStorage:
    return request.app.state.storage


def _check_group_id(group_id: str):
    if not is_group_id(group_id):
        logger.warning(f"Rejected group id containing the direct-chat separator: {group_id}")
        raise HTTPException(status_code=400, detail="Group id must not contain the direct-chat separator")


@rooms_router.post("/direct", response_model=DirectRoomResponse)
async def create_direct_room(body: DirectRoomRequest):
    # Body: { "user_a": "...", "user_b": "..." } -> { "room_id": "<sorted ids joined by _>" }
    if not body.user_a or not body.user_b:
        raise HTTPException(status_code=400, detail="Both participants are required")
    token = room_token(body.user_a, body.user_b)
    try:
        parse_room(token)
    except FrameError:
        raise HTTPException(status_code=400, detail="User ids must not contain the direct-chat separator")
    return DirectRoomResponse(room_id=token)


@rooms_router.get("/{room_id}/messages", response_model=MessageHistoryResponse)
async def get_room_messages(
    room_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    storage: RelayStorage = Depends(get_storage),
):
    """
    Message history for a room, oldest first.

    `offset` skips that many of the newest messages, so successive pages walk
    backwards in time.
    """
    try:
        room = parse_room(room_id)
    except FrameError as e:
        raise HTTPException(status_code=400, detail=str(e))
    try:
        messages = await storage.recent_messages(room.token, limit, offset)
    except StorageError as e:
        logger.error(f"Error fetching history for room {room.token}: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail="Storage unavailable")
    logger.info(f"History for room {room.token}: {len(messages)} messages (limit={limit}, offset={offset})")
    return MessageHistoryResponse(room_id=room.token, messages=messages)


@rooms_router.get("/groups/{group_id}/members", response_model=GroupMembersResponse)
async def get_group_members(group_id: str, storage: RelayStorage = Depends(get_storage)):
    _check_group_id(group_id)
    try:
        members = await storage.group_members(group_id)
    except StorageError as e:
        logger.error(f"Error fetching members of group {group_id}: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail="Storage unavailable")
    return GroupMembersResponse(group_id=group_id, members=sorted(members))


@rooms_router.post("/groups/{group_id}/members", response_model=GroupMembersResponse, status_code=201)
async def add_group_member(group_id: str, body: GroupMemberRequest, storage: RelayStorage = Depends(get_storage)):
    _check_group_id(group_id)
    try:
        await storage.add_group_member(group_id, body.user_id)
        members = await storage.group_members(group_id)
    except StorageError as e:
        logger.error(f"Error adding {body.user_id} to group {group_id}: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail="Storage unavailable")
    logger.info(f"User {body.user_id} added to group {group_id}")
    return GroupMembersResponse(group_id=group_id, members=sorted(members))


@rooms_router.delete("/groups/{group_id}/members/{user_id}", response_model=GroupMembersResponse)
async def remove_group_member(group_id: str, user_id: str, storage: RelayStorage = Depends(get_storage)):
    _check_group_id(group_id)
    try:
        removed = await storage.remove_group_member(group_id, user_id)
        members = await storage.group_members(group_id)
    except StorageError as e:
        logger.error(f"Error removing {user_id} from group {group_id}: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail="Storage unavailable")
    if not removed:
        raise HTTPException(status_code=404, detail="User is not a member of this group")
    logger.info(f"User {user_id} removed from group {group_id}")
    return GroupMembersResponse(group_id=group_id, members=sorted(members))


@rooms_router.get("/unread/{user_id}", response_model=UnreadResponse)
async def get_unread(user_id: str, storage: RelayStorage = Depends(get_storage)):
    try:
        rooms = await storage.unread(user_id)
    except StorageError as e:
        logger.error(f"Error fetching unread counters for {user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail="Storage unavailable")
    return UnreadResponse(user_id=user_id, rooms=rooms)


@rooms_router.delete("/unread/{user_id}/{room_id}")
async def clear_unread(user_id: str, room_id: str, storage: RelayStorage = Depends(get_storage)):
    try:
        cleared = await storage.clear_unread(user_id, room_id)
    except StorageError as e:
        logger.error(f"Error clearing unread counter for {user_id} in {room_id}: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail="Storage unavailable")
    return {"message": "Unread counter cleared", "cleared": cleared}
