from .controller import (
    MAX_BATCH_BODY_BYTES,
    ControllerState,
    DeliveryController,
    FlushOutcome,
    FlushResult,
)
from .exceptions import (
    BatchEncodeError,
    ConfigurationError,
    SerializationOverflowError,
    StoreReadError,
    StoredValueDecodeError,
    TrackRelayError,
)
from .models import EventRecord, Occurrence
from .pending import PendingEventStore
from .store import KeyValueStore, MemoryKeyValueStore, SqliteKeyValueStore
from .stored_property import StoredProperty
from .tracking_config import TrackingConfig, TrackingSettings
from .transport import DeliveryResponse, HttpTransport

__all__ = [
    "MAX_BATCH_BODY_BYTES",
    "BatchEncodeError",
    "ConfigurationError",
    "ControllerState",
    "DeliveryController",
    "DeliveryResponse",
    "EventRecord",
    "FlushOutcome",
    "FlushResult",
    "HttpTransport",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "Occurrence",
    "PendingEventStore",
    "SerializationOverflowError",
    "SqliteKeyValueStore",
    "StoredProperty",
    "StoreReadError",
    "StoredValueDecodeError",
    "TrackRelayError",
    "TrackingConfig",
    "TrackingSettings",
]
