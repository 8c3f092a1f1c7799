from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping


@dataclass(frozen=True)
class Occurrence:
    """One location fix reported by a sensor provider."""

    latitude: float
    longitude: float
    observed_at: datetime


@dataclass(frozen=True)
class EventRecord:
    """Textual snapshot of an accepted occurrence.

    Coordinates are kept as strings so the request body does not depend on
    float formatting at send time.
    """

    latitude: str
    longitude: str
    timestamp: str

    @classmethod
    def from_occurrence(cls, occurrence: Occurrence, *, processed_at: datetime) -> EventRecord:
        # The timestamp is the processing time, not occurrence.observed_at.
        return cls(
            latitude=format_coordinate(occurrence.latitude),
            longitude=format_coordinate(occurrence.longitude),
            timestamp=format_timestamp(processed_at),
        )

    def to_wire(self) -> Dict[str, str]:
        return {"lat": self.latitude, "long": self.longitude, "timestamp": self.timestamp}

    @classmethod
    def from_wire(cls, obj: Mapping[str, Any]) -> EventRecord:
        values = []
        for key in ("lat", "long", "timestamp"):
            v = obj.get(key)
            if not isinstance(v, str):
                raise ValueError(f"'{key}' must be a string")
            values.append(v)
        return cls(latitude=values[0], longitude=values[1], timestamp=values[2])


def format_coordinate(value: float) -> str:
    return repr(float(value))


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()
