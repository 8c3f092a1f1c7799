from __future__ import annotations


class TrackRelayError(Exception):
    """Base class for errors raised by trackrelay."""


class ConfigurationError(TrackRelayError, ValueError):
    """Raised when tracker settings or start() arguments are invalid."""


class StoredValueDecodeError(TrackRelayError):
    """A persisted value could not be decoded as the expected type."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"stored value for {key!r} is corrupt: {reason}")
        self.key = key
        self.reason = reason


class SerializationOverflowError(TrackRelayError):
    """The pending batch serialized to more bytes than the configured ceiling."""

    def __init__(self, size_bytes: int, limit_bytes: int) -> None:
        super().__init__(f"serialized batch is {size_bytes} bytes (limit {limit_bytes})")
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes


class BatchEncodeError(TrackRelayError):
    """The pending batch could not be encoded as a request body."""


class StoreReadError(TrackRelayError):
    """The store could not be read; the stored value is unknown, not absent."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"failed to read {key!r}: {reason}")
        self.key = key
        self.reason = reason
