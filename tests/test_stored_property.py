from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

import pytest

from trackrelay.exceptions import StoreReadError, StoredValueDecodeError
from trackrelay.store import MemoryKeyValueStore, SqliteKeyValueStore
from trackrelay.stored_property import (
    StoredProperty,
    decode_bool,
    decode_datetime,
    decode_float,
    decode_str_map,
    encode_datetime,
)


class _CountingStore(MemoryKeyValueStore):
    def __init__(self) -> None:
        super().__init__()
        self.reads = 0

    def get(self, key: str) -> str | None:
        self.reads += 1
        return super().get(key)


def test_get_memoizes_the_first_read() -> None:
    store = _CountingStore()
    store.set("flag", "true")
    prop: StoredProperty[bool] = StoredProperty(store, "flag", decode=decode_bool)

    assert prop.get() is True
    assert prop.get() is True
    assert store.reads == 1


def test_set_writes_through_before_returning(tmp_path: Path) -> None:
    path = str(tmp_path / "state.sqlite")
    prop: StoredProperty[dict[str, str]] = StoredProperty(
        SqliteKeyValueStore(path), "headers", decode=decode_str_map
    )
    assert prop.set({"Auth": "t"}) is True

    # A second property over a fresh connection sees the value immediately.
    reader: StoredProperty[dict[str, str]] = StoredProperty(
        SqliteKeyValueStore(path), "headers", decode=decode_str_map
    )
    assert reader.get() == {"Auth": "t"}


def test_set_none_deletes_the_stored_value() -> None:
    store = MemoryKeyValueStore()
    prop: StoredProperty[float] = StoredProperty(store, "interval", decode=decode_float)
    prop.set(5.0)
    assert store.get("interval") == "5.0"

    prop.set(None)
    assert prop.get() is None
    assert store.get("interval") is None


def test_corrupt_value_is_treated_as_absent(caplog: pytest.LogCaptureFixture) -> None:
    store = MemoryKeyValueStore()
    store.set("flag", '"yes"')
    prop: StoredProperty[bool] = StoredProperty(store, "flag", decode=decode_bool)

    with pytest.raises(StoredValueDecodeError) as excinfo:
        prop.load()
    assert excinfo.value.key == "flag"

    with caplog.at_level(logging.WARNING, logger="trackrelay.stored_property"):
        assert prop.get() is None
    assert "corrupt" in caplog.text


def test_invalid_json_is_a_decode_error() -> None:
    store = MemoryKeyValueStore()
    store.set("flag", "{not json")
    prop: StoredProperty[bool] = StoredProperty(store, "flag", decode=decode_bool)

    with pytest.raises(StoredValueDecodeError):
        prop.load()
    assert prop.get() is None


def test_invalidate_forces_a_fresh_read() -> None:
    store = MemoryKeyValueStore()
    prop: StoredProperty[bool] = StoredProperty(store, "flag", decode=decode_bool)
    assert prop.get() is None

    store.set("flag", "true")
    assert prop.get() is None
    prop.invalidate()
    assert prop.get() is True


def test_datetime_roundtrip_assumes_utc_for_naive_values() -> None:
    store = MemoryKeyValueStore()
    prop: StoredProperty[datetime] = StoredProperty(
        store, "last", decode=decode_datetime, encode=encode_datetime
    )
    when = datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)
    prop.set(when)
    prop.invalidate()
    assert prop.get() == when

    assert decode_datetime("2026-03-01T12:30:00") == when


@pytest.mark.parametrize("value", [True, "1.5", None, [1]])
def test_decode_float_rejects_non_numbers(value: object) -> None:
    with pytest.raises(TypeError):
        decode_float(value)


def test_decode_str_map_rejects_non_string_values() -> None:
    with pytest.raises(TypeError):
        decode_str_map({"Auth": 1})


class _LockedOnceStore(MemoryKeyValueStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail_reads = 1

    def get(self, key: str) -> str | None:
        if self.fail_reads > 0:
            self.fail_reads -= 1
            raise StoreReadError(key, "database is locked")
        return super().get(key)


def test_failed_read_is_not_memoized() -> None:
    store = _LockedOnceStore()
    store.set("flag", "true")
    prop: StoredProperty[bool] = StoredProperty(store, "flag", decode=decode_bool)

    with pytest.raises(StoreReadError):
        prop.get()
    assert prop.get() is True
