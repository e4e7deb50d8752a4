import os
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from errors import ConfigError

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = os.getenv("REDIS_PORT", "6379")
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

STORAGE_TIMEOUT = os.getenv("STORAGE_TIMEOUT", "5.0")
HISTORY_LIMIT = os.getenv("HISTORY_LIMIT", "50")
PRESENCE_ROOM = os.getenv("PRESENCE_ROOM", "global")
SEND_TIMEOUT = os.getenv("SEND_TIMEOUT", "5.0")

# Part of the wire contract: group ids must never contain it
DIRECT_ROOM_SEPARATOR = "_"

NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006


class RelaySettings(BaseModel):
    redis_host: str = "localhost"
    redis_port: int = Field(6379, gt=0, lt=65536)
    redis_password: Optional[str] = None
    storage_timeout: float = Field(5.0, gt=0)
    history_limit: int = Field(50, ge=0)
    presence_room: str = Field("global", min_length=1)
    send_timeout: float = Field(5.0, gt=0)


def load_settings() -> RelaySettings:
    """Build typed settings from the environment values above.

    Raises ConfigError when a value cannot be parsed; callers treat that as
    fatal at startup.
    """
    try:
        return RelaySettings(
            redis_host=REDIS_HOST,
            redis_port=REDIS_PORT,
            redis_password=REDIS_PASSWORD or None,
            storage_timeout=STORAGE_TIMEOUT,
            history_limit=HISTORY_LIMIT,
            presence_room=PRESENCE_ROOM,
            send_timeout=SEND_TIMEOUT,
        )
    except ValidationError as e:
        raise ConfigError(f"Invalid relay configuration: {e}") from e
