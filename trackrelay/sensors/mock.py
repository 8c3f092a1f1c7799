from __future__ import annotations

import hashlib
import math
import random
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, List

from trackrelay.models import Occurrence
from trackrelay.sensors.base import OccurrenceListener


SPRINGFIELD_CO_CENTER_LAT = 37.4083
SPRINGFIELD_CO_CENTER_LON = -102.6144
SPRINGFIELD_CO_RADIUS_MI = 50.0
EARTH_RADIUS_MI = 3958.7613


def _rng_for(device_id: str) -> random.Random:
    seed_bytes = hashlib.sha256(device_id.encode("utf-8")).digest()[:8]
    return random.Random(int.from_bytes(seed_bytes, "big", signed=False))


def _normalize_lon(lon_deg: float) -> float:
    return ((lon_deg + 180.0) % 360.0) - 180.0


def destination_point(lat_deg: float, lon_deg: float, *, distance_mi: float, bearing_rad: float) -> tuple[float, float]:
    """Great-circle destination from a start point, distance and bearing."""

    lat1_rad = math.radians(lat_deg)
    lon1_rad = math.radians(lon_deg)
    angular_distance = distance_mi / EARTH_RADIUS_MI

    lat2_rad = math.asin(
        math.sin(lat1_rad) * math.cos(angular_distance)
        + math.cos(lat1_rad) * math.sin(angular_distance) * math.cos(bearing_rad)
    )
    lon2_rad = lon1_rad + math.atan2(
        math.sin(bearing_rad) * math.sin(angular_distance) * math.cos(lat1_rad),
        math.cos(angular_distance) - math.sin(lat1_rad) * math.sin(lat2_rad),
    )
    return round(math.degrees(lat2_rad), 6), round(_normalize_lon(math.degrees(lon2_rad)), 6)


def _start_location(device_id: str) -> tuple[float, float]:
    seed_bytes = hashlib.sha256(f"{device_id}:geo".encode("utf-8")).digest()
    # Deterministically place demo devices within a 50-mile radius of Springfield, CO.
    u = int.from_bytes(seed_bytes[:8], "big") / float((1 << 64) - 1)
    v = int.from_bytes(seed_bytes[8:16], "big") / float((1 << 64) - 1)
    return destination_point(
        SPRINGFIELD_CO_CENTER_LAT,
        SPRINGFIELD_CO_CENTER_LON,
        distance_mi=SPRINGFIELD_CO_RADIUS_MI * math.sqrt(u),
        bearing_rad=2.0 * math.pi * v,
    )


class MockLocationSource:
    """Deterministic random-walk location provider.

    Replace with a real integration (gpsd, a phone bridge, a serial NMEA
    receiver) that calls `listener.on_occurrences` the same way.
    """

    def __init__(
        self,
        device_id: str = "demo-tracker-001",
        *,
        step_mi: float = 0.5,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self.device_id = device_id
        self.step_mi = float(step_mi)
        self._now_fn = now_fn or (lambda: datetime.now(timezone.utc))
        self._rng = _rng_for(device_id)
        self._position = _start_location(device_id)
        self._listener: OccurrenceListener | None = None
        self._lock = threading.Lock()

    @property
    def subscribed(self) -> bool:
        return self._listener is not None

    def subscribe(self, listener: OccurrenceListener) -> None:
        with self._lock:
            self._listener = listener

    def unsubscribe(self) -> None:
        with self._lock:
            self._listener = None

    def next_fixes(self, count: int = 1) -> List[Occurrence]:
        now = self._now_fn()
        out: List[Occurrence] = []
        for idx in range(max(1, int(count))):
            lat, lon = destination_point(
                self._position[0],
                self._position[1],
                distance_mi=self.step_mi * self._rng.uniform(0.2, 1.0),
                bearing_rad=self._rng.uniform(0.0, 2.0 * math.pi),
            )
            self._position = (lat, lon)
            out.append(Occurrence(latitude=lat, longitude=lon, observed_at=now - timedelta(seconds=count - 1 - idx)))
        return out

    def emit(self, count: int = 1) -> List[Occurrence]:
        """Generate `count` fixes and deliver them as one notification."""

        fixes = self.next_fixes(count)
        with self._lock:
            listener = self._listener
        if listener is not None:
            listener.on_occurrences(fixes)
        return fixes
