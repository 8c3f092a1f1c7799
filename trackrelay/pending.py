from __future__ import annotations

from typing import Any, List, Sequence

from trackrelay.models import EventRecord
from trackrelay.store import KeyValueStore
from trackrelay.stored_property import StoredProperty


PENDING_EVENTS_KEY = "trackrelay.pending_events"


def _decode_records(value: Any) -> List[EventRecord]:
    if not isinstance(value, list):
        raise TypeError(f"expected list of records, got {type(value).__name__}")
    out: List[EventRecord] = []
    for idx, item in enumerate(value):
        if not isinstance(item, dict):
            raise TypeError(f"record {idx} is not an object")
        out.append(EventRecord.from_wire(item))
    return out


def _encode_records(records: List[EventRecord]) -> List[dict[str, str]]:
    return [r.to_wire() for r in records]


class PendingEventStore:
    """Ordered, durable batch of records not yet confirmed by the collector.

    Callers serialize access; this class holds no lock across read-modify-write.
    Read-modify-write operations raise StoreReadError without writing when
    the current batch cannot be read.
    """

    def __init__(self, store: KeyValueStore, *, key: str = PENDING_EVENTS_KEY) -> None:
        self._batch: StoredProperty[List[EventRecord]] = StoredProperty(
            store,
            key,
            decode=_decode_records,
            encode=_encode_records,
        )

    def append(self, record: EventRecord) -> None:
        batch = list(self._batch.get() or [])
        batch.append(record)
        self._batch.set(batch)

    def clear(self) -> None:
        self._batch.set(None)

    def snapshot(self) -> List[EventRecord]:
        return list(self._batch.get() or [])

    def count(self) -> int:
        return len(self._batch.get() or [])

    def discard_delivered(self, delivered: Sequence[EventRecord]) -> int:
        """Drop `delivered` from the head of the batch.

        Returns the number of records removed. Nothing is removed when the
        batch no longer starts with `delivered` (it was cleared meanwhile).
        """

        n = len(delivered)
        if n == 0:
            return 0
        batch = self._batch.get() or []
        if len(batch) < n or list(batch[:n]) != list(delivered):
            return 0
        remaining = list(batch[n:])
        self._batch.set(remaining or None)
        return n
