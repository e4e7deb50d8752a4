class RelayError(Exception):
    """Base class for every error raised by the relay."""


class ConfigError(RelayError):
    """Missing or invalid configuration. Fatal at startup."""


class StorageError(RelayError):
    """A storage call failed. Aborts the single operation that made it."""


class StorageTimeout(StorageError):
    pass


class FrameError(RelayError):
    """An inbound frame could not be parsed or is missing a required field."""
