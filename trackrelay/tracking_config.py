from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Mapping

from trackrelay.pending import PendingEventStore
from trackrelay.store import KeyValueStore
from trackrelay.stored_property import (
    StoredProperty,
    decode_bool,
    decode_datetime,
    decode_float,
    decode_str,
    decode_str_map,
    encode_datetime,
)


ENABLED_KEY = "trackrelay.enabled"
ENDPOINT_URL_KEY = "trackrelay.endpoint_url"
HTTP_HEADERS_KEY = "trackrelay.http_headers"
MIN_INTERVAL_KEY = "trackrelay.min_interval_s"
DEBOUNCE_ENABLED_KEY = "trackrelay.debounce_enabled"
LAST_ACTION_AT_KEY = "trackrelay.last_action_at"


@dataclass(frozen=True)
class TrackingSettings:
    endpoint_url: str | None
    headers: Dict[str, str] | None = field(default=None, hash=False)
    enabled: bool | None = None
    min_interval_s: float = 0.0
    debounce_enabled: bool = True

    @property
    def armed(self) -> bool:
        return self.enabled is True and self.endpoint_url is not None and self.headers is not None


class TrackingConfig:
    """Durable tracker configuration plus the last accepted event time."""

    def __init__(self, store: KeyValueStore, pending: PendingEventStore) -> None:
        self._pending = pending
        self._enabled: StoredProperty[bool] = StoredProperty(store, ENABLED_KEY, decode=decode_bool)
        self._endpoint_url: StoredProperty[str] = StoredProperty(store, ENDPOINT_URL_KEY, decode=decode_str)
        self._headers: StoredProperty[Dict[str, str]] = StoredProperty(
            store, HTTP_HEADERS_KEY, decode=decode_str_map
        )
        self._min_interval_s: StoredProperty[float] = StoredProperty(
            store, MIN_INTERVAL_KEY, decode=decode_float
        )
        self._debounce_enabled: StoredProperty[bool] = StoredProperty(
            store, DEBOUNCE_ENABLED_KEY, decode=decode_bool
        )
        self._last_action_at: StoredProperty[datetime] = StoredProperty(
            store,
            LAST_ACTION_AT_KEY,
            decode=decode_datetime,
            encode=encode_datetime,
        )

    def configure(
        self,
        endpoint_url: str,
        headers: Mapping[str, str],
        min_interval_s: float,
        *,
        debounce_enabled: bool = True,
    ) -> None:
        self._endpoint_url.set(endpoint_url)
        self._headers.set(dict(headers))
        self._min_interval_s.set(max(0.0, float(min_interval_s)))
        self._debounce_enabled.set(bool(debounce_enabled))
        # Written last so a crash mid-configure leaves the tracker disarmed
        # on a fresh install.
        self._enabled.set(True)

    def clear(self) -> None:
        self._endpoint_url.set(None)
        self._headers.set(None)
        self._pending.clear()
        self._enabled.set(False)

    def is_armed(self) -> bool:
        return self.snapshot().armed

    def snapshot(self) -> TrackingSettings:
        headers = self._headers.get()
        return TrackingSettings(
            endpoint_url=self._endpoint_url.get(),
            headers=dict(headers) if headers is not None else None,
            enabled=self._enabled.get(),
            min_interval_s=self._min_interval_s.get() or 0.0,
            debounce_enabled=self._debounce_enabled.get() is not False,
        )

    @property
    def last_action_at(self) -> datetime | None:
        return self._last_action_at.get()

    @last_action_at.setter
    def last_action_at(self, value: datetime | None) -> None:
        self._last_action_at.set(value)

    def invalidate(self) -> None:
        for prop in (
            self._enabled,
            self._endpoint_url,
            self._headers,
            self._min_interval_s,
            self._debounce_enabled,
            self._last_action_at,
        ):
            prop.invalidate()
