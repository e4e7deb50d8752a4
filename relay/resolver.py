from typing import Set, Union

from errors import FrameError, StorageError
from logging_config import get_logger
from relay.rooms import DirectRoom, Room, parse_room
from relay.storage import RelayStorage

logger = get_logger(__name__)


class MembershipResolver:
    def __init__(self, storage: RelayStorage):
        self.storage = storage

    async def resolve_recipients(self, room: Union[Room, str]) -> Set[str]:
        """Return every identity that should receive traffic for `room`.

        Direct rooms resolve to both participants, the sender included. Group
        rooms are looked up in storage; a failed lookup resolves to nobody.
        """
        if isinstance(room, str):
            try:
                room = parse_room(room)
            except FrameError as e:
                logger.warning(f"Cannot resolve recipients: {e}")
                return set()

        if isinstance(room, DirectRoom):
            return set(room.participants)

        try:
            members = await self.storage.group_members(room.group_id)
        except StorageError as e:
            logger.error(f"Failed to get members of group {room.group_id}: {e}", exc_info=True)
            return set()
        return set(members)
