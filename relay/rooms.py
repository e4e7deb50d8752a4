"""Room tokens.

A direct chat between two users is addressed by the two identities sorted and
joined with DIRECT_ROOM_SEPARATOR, so both sides compute the same token. Any
token without the separator is a group id. Tokens are parsed into DirectRoom
or GroupRoom once, where a frame enters the relay.
"""
from dataclasses import dataclass
from typing import FrozenSet, Union

from constants import DIRECT_ROOM_SEPARATOR
from errors import FrameError


def room_token(user_a: str, user_b: str) -> str:
    return DIRECT_ROOM_SEPARATOR.join(sorted([str(user_a), str(user_b)]))


@dataclass(frozen=True)
class DirectRoom:
    user_a: str
    user_b: str

    @property
    def token(self) -> str:
        return room_token(self.user_a, self.user_b)

    @property
    def participants(self) -> FrozenSet[str]:
        return frozenset((self.user_a, self.user_b))

    def sorted_participants(self):
        first, second = sorted([self.user_a, self.user_b])
        return first, second


@dataclass(frozen=True)
class GroupRoom:
    group_id: str

    @property
    def token(self) -> str:
        return self.group_id


Room = Union[DirectRoom, GroupRoom]


def is_group_id(value: str) -> bool:
    return bool(value) and DIRECT_ROOM_SEPARATOR not in value


def parse_room(token: str) -> Room:
    """Raises FrameError for an empty token or a direct token without exactly two ids."""
    if not token:
        raise FrameError("Room token is empty")
    if DIRECT_ROOM_SEPARATOR not in token:
        return GroupRoom(token)
    parts = token.split(DIRECT_ROOM_SEPARATOR)
    if len(parts) != 2 or not all(parts):
        raise FrameError(f"Direct room token must hold exactly two identities: {token!r}")
    first, second = sorted(parts)
    return DirectRoom(first, second)
