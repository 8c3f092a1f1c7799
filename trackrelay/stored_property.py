"""Typed read-through / write-through cache over one key of a KeyValueStore."""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Generic, Mapping, TypeVar

from trackrelay.exceptions import StoredValueDecodeError
from trackrelay.store import KeyValueStore


logger = logging.getLogger("trackrelay.stored_property")

T = TypeVar("T")

Decoder = Callable[[Any], T]
Encoder = Callable[[T], Any]


class _Unset:
    pass


_UNSET = _Unset()


class StoredProperty(Generic[T]):
    """Memoizes the last value read from or written to `key`.

    `set()` writes through to the store before returning. A stored value
    that fails to decode is reported once and then treated as absent. A
    failed read (StoreReadError) propagates and leaves the mirror unset, so
    the next `get()` reads the store again.
    """

    def __init__(
        self,
        store: KeyValueStore,
        key: str,
        *,
        decode: Decoder[T],
        encode: Encoder[T] | None = None,
    ) -> None:
        self.store = store
        self.key = key
        self._decode = decode
        self._encode: Callable[[Any], Any] = encode or (lambda v: v)
        self._mirror: T | None | _Unset = _UNSET
        self._lock = threading.RLock()

    def load(self) -> T | None:
        """Read the store, bypassing the mirror.

        Raises StoredValueDecodeError when the stored text is not valid JSON
        or does not match the expected type, and StoreReadError when the
        store could not be read.
        """

        raw = self.store.get(self.key)
        if raw is None:
            return None
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StoredValueDecodeError(self.key, f"invalid json: {exc.msg}") from exc
        if parsed is None:
            return None
        try:
            return self._decode(parsed)
        except StoredValueDecodeError:
            raise
        except (TypeError, ValueError) as exc:
            raise StoredValueDecodeError(self.key, str(exc)) from exc

    def get(self) -> T | None:
        with self._lock:
            if not isinstance(self._mirror, _Unset):
                return self._mirror
            try:
                value = self.load()
            except StoredValueDecodeError as exc:
                logger.warning("ignoring corrupt stored value: %s", exc)
                value = None
            self._mirror = value
            return value

    def set(self, value: T | None) -> bool:
        with self._lock:
            self._mirror = value
            if value is None:
                ok = self.store.delete(self.key)
            else:
                ok = self.store.set(self.key, json.dumps(self._encode(value), sort_keys=True))
            if not ok:
                logger.error("write-through failed for key=%s; value kept in memory only", self.key)
            return ok

    def invalidate(self) -> None:
        with self._lock:
            self._mirror = _UNSET


def decode_str(value: Any) -> str:
    if not isinstance(value, str):
        raise TypeError(f"expected string, got {type(value).__name__}")
    return value


def decode_bool(value: Any) -> bool:
    if not isinstance(value, bool):
        raise TypeError(f"expected bool, got {type(value).__name__}")
    return value


def decode_float(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"expected number, got {type(value).__name__}")
    return float(value)


def decode_str_map(value: Any) -> Dict[str, str]:
    if not isinstance(value, Mapping):
        raise TypeError(f"expected mapping, got {type(value).__name__}")
    out: Dict[str, str] = {}
    for k, v in value.items():
        if not isinstance(k, str) or not isinstance(v, str):
            raise TypeError("expected mapping of strings to strings")
        out[k] = v
    return out


def decode_datetime(value: Any) -> datetime:
    dt = datetime.fromisoformat(decode_str(value))
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def encode_datetime(value: datetime) -> str:
    return value.isoformat()
