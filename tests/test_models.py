from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from trackrelay.models import EventRecord, Occurrence, format_coordinate, format_timestamp


def test_coordinates_use_shortest_roundtrip_text() -> None:
    assert format_coordinate(37.4083) == "37.4083"
    assert format_coordinate(-102) == "-102.0"
    assert format_coordinate(0.1 + 0.2) == "0.30000000000000004"


def test_timestamp_is_normalized_to_utc() -> None:
    local = datetime(2026, 3, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
    assert format_timestamp(local) == "2026-03-01T12:00:00+00:00"
    assert format_timestamp(datetime(2026, 3, 1, 12, 0)) == "2026-03-01T12:00:00+00:00"


def test_from_occurrence_ignores_observed_at() -> None:
    occurrence = Occurrence(latitude=1.5, longitude=2.5, observed_at=datetime(2020, 1, 1, tzinfo=timezone.utc))
    record = EventRecord.from_occurrence(occurrence, processed_at=datetime(2026, 1, 1, tzinfo=timezone.utc))
    assert record.timestamp == "2026-01-01T00:00:00+00:00"
    assert record.to_wire() == {"lat": "1.5", "long": "2.5", "timestamp": "2026-01-01T00:00:00+00:00"}


def test_from_wire_requires_string_fields() -> None:
    assert EventRecord.from_wire({"lat": "1", "long": "2", "timestamp": "t"}) == EventRecord("1", "2", "t")
    with pytest.raises(ValueError):
        EventRecord.from_wire({"lat": 1.0, "long": "2", "timestamp": "t"})
    with pytest.raises(ValueError):
        EventRecord.from_wire({"lat": "1", "long": "2"})
