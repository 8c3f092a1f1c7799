"""Delivery controller: debounce, durable buffering and batch delivery.

Every accepted occurrence is appended to the pending batch and followed by a
flush attempt. A flush POSTs the *whole* batch and drops it only after the
collector answers 2xx. Anything else leaves the batch in place so the next
trigger resends it (at-least-once delivery).

Locking
- `_lock` guards the store: append, snapshot-for-send and the post-send
  discard. The POST itself runs outside it so appends are never blocked by a
  slow collector.
- `_send_slot` allows one outstanding flush per controller. A second flush
  requested meanwhile returns IN_FLIGHT; the holder sends once more after a
  successful delivery if records were appended during the request.

A store read failure never rewrites the batch: the occurrence is dropped or
the flush returns STORE_UNAVAILABLE, and the next trigger tries again.
"""

from __future__ import annotations

import enum
import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Sequence
from urllib.parse import urlparse

from trackrelay.exceptions import (
    BatchEncodeError,
    ConfigurationError,
    SerializationOverflowError,
    StoreReadError,
)
from trackrelay.models import EventRecord, Occurrence
from trackrelay.pending import PendingEventStore
from trackrelay.sensors.base import OccurrenceSource
from trackrelay.store import KeyValueStore
from trackrelay.tracking_config import TrackingConfig, TrackingSettings
from trackrelay.transport import DeliveryResponse, Transport


logger = logging.getLogger("trackrelay.controller")

# ~1GB of unsent data is impossible in normal operation; treat it as corruption.
MAX_BATCH_BODY_BYTES = 1_000_000_000

NowFn = Callable[[], datetime]
BatchEncoder = Callable[[Sequence[EventRecord]], bytes]


class ControllerState(str, enum.Enum):
    DISARMED = "disarmed"
    ARMED = "armed"


class FlushOutcome(str, enum.Enum):
    SENT = "sent"
    EMPTY = "empty"
    NOT_CONFIGURED = "not_configured"
    IN_FLIGHT = "in_flight"
    OVERFLOW = "overflow"
    ENCODE_FAILED = "encode_failed"
    TRANSPORT_FAILED = "transport_failed"
    STORE_UNAVAILABLE = "store_unavailable"


@dataclass(frozen=True)
class FlushResult:
    outcome: FlushOutcome
    events: int = 0
    body_bytes: int = 0
    status_code: int | None = None
    error: str | None = None
    remaining: int = 0

    @property
    def sent(self) -> bool:
        return self.outcome is FlushOutcome.SENT


@dataclass
class DeliveryCounters:
    accepted_total: int = 0
    gated_total: int = 0
    sent_batches_total: int = 0
    sent_events_total: int = 0
    transport_failures_total: int = 0
    overflow_clears_total: int = 0
    encode_failures_total: int = 0
    store_errors_total: int = 0


def encode_batch(records: Sequence[EventRecord]) -> bytes:
    try:
        blob = json.dumps([r.to_wire() for r in records], indent=2, ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise BatchEncodeError(f"failed to encode {len(records)} records: {exc}") from exc
    return blob.encode("utf-8")


def build_request_headers(configured: Mapping[str, str]) -> Dict[str, str]:
    headers = dict(configured)
    headers["Content-Type"] = "application/json"
    return headers


def validate_endpoint_url(endpoint_url: str) -> str:
    raw = (endpoint_url or "").strip()
    parsed = urlparse(raw)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ConfigurationError(f"endpoint_url must be an absolute http(s) URL, got {endpoint_url!r}")
    return raw


def _validate_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    if not isinstance(headers, Mapping):
        raise ConfigurationError("headers must be a mapping")
    out: Dict[str, str] = {}
    for k, v in headers.items():
        if not isinstance(k, str) or not isinstance(v, str):
            raise ConfigurationError(f"header {k!r} must map a string to a string")
        out[k] = v
    return out


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _log_flush_failure(future: Future[FlushResult]) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("background flush failed: %r", exc, exc_info=exc)


class DeliveryController:
    def __init__(
        self,
        store: KeyValueStore,
        transport: Transport,
        *,
        source: OccurrenceSource | None = None,
        now_fn: NowFn | None = None,
        max_body_bytes: int = MAX_BATCH_BODY_BYTES,
        clear_on_encode_failure: bool = False,
        background_flush: bool = False,
        encoder: BatchEncoder = encode_batch,
    ) -> None:
        self.pending = PendingEventStore(store)
        self.config = TrackingConfig(store, self.pending)
        self.transport = transport
        self.source = source
        self.max_body_bytes = max(1, int(max_body_bytes))
        self.clear_on_encode_failure = bool(clear_on_encode_failure)
        self.counters = DeliveryCounters()

        self._now_fn = now_fn or _utcnow
        self._encode = encoder
        self._state = ControllerState.DISARMED
        self._lock = threading.RLock()
        self._send_slot = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None
        if background_flush:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="trackrelay-flush")

    @property
    def state(self) -> ControllerState:
        return self._state

    # -----------------------------
    # Lifecycle
    # -----------------------------

    def start(
        self,
        min_interval_s: float,
        endpoint_url: str,
        headers: Mapping[str, str],
        *,
        debounce_enabled: bool = True,
    ) -> None:
        url = validate_endpoint_url(endpoint_url)
        clean_headers = _validate_headers(headers)
        if min_interval_s < 0:
            raise ConfigurationError("min_interval_s must be >= 0")

        with self._lock:
            self.config.configure(url, clean_headers, min_interval_s, debounce_enabled=debounce_enabled)
            self._arm()
        logger.info(
            "tracking started endpoint=%s min_interval_s=%s debounce=%s",
            url,
            min_interval_s,
            debounce_enabled,
        )

    def resume(self) -> bool:
        """Re-arm after a process restart if tracking was left enabled."""

        with self._lock:
            try:
                settings = self.config.snapshot()
            except StoreReadError as exc:
                self.counters.store_errors_total += 1
                logger.warning("resume deferred: %s", exc)
                return False
            if not settings.armed:
                logger.debug("resume skipped: tracking not enabled or not configured")
                return False
            self._arm()
        logger.info("tracking resumed endpoint=%s", settings.endpoint_url)
        return True

    def stop(self) -> None:
        with self._lock:
            if self.source is not None:
                self.source.unsubscribe()
            self.config.clear()
            self._state = ControllerState.DISARMED
        logger.info("tracking stopped; configuration and pending events cleared")

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self) -> DeliveryController:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _arm(self) -> None:
        if self.source is not None:
            self.source.subscribe(self)
        self._state = ControllerState.ARMED

    def _now(self) -> datetime:
        now = self._now_fn()
        if now.tzinfo is None:
            # Naive clock readings are UTC, like naive stored timestamps.
            now = now.replace(tzinfo=timezone.utc)
        return now

    # -----------------------------
    # Occurrence handling
    # -----------------------------

    def on_occurrences(self, occurrences: Sequence[Occurrence]) -> None:
        # Only the newest fix of a notification is recorded.
        if not occurrences:
            return
        self.on_occurrence(occurrences[-1])

    def on_occurrence(self, occurrence: Occurrence) -> bool:
        """Record one occurrence and trigger a flush. Returns False if dropped."""

        with self._lock:
            if self._state is not ControllerState.ARMED:
                return False

            now = self._now()
            try:
                if self._gated(self.config.snapshot(), now):
                    self.counters.gated_total += 1
                    logger.debug("occurrence dropped by debounce gate")
                    return False

                record = EventRecord.from_occurrence(occurrence, processed_at=now)
                self.pending.append(record)
            except StoreReadError as exc:
                self.counters.store_errors_total += 1
                logger.error("occurrence dropped: %s; pending batch left untouched", exc)
                return False
            self.config.last_action_at = now
            self.counters.accepted_total += 1

        self._trigger_flush()
        return True

    def _gated(self, settings: TrackingSettings, now: datetime) -> bool:
        if not settings.debounce_enabled or settings.min_interval_s <= 0:
            return False
        last = self.config.last_action_at
        if last is None:
            return False
        return (now - last).total_seconds() < settings.min_interval_s

    def _trigger_flush(self) -> Future[FlushResult] | None:
        if self._executor is not None:
            future = self._executor.submit(self.flush)
            future.add_done_callback(_log_flush_failure)
            return future
        self.flush()
        return None

    # -----------------------------
    # Delivery
    # -----------------------------

    def flush(self) -> FlushResult:
        if not self._send_slot.acquire(blocking=False):
            return FlushResult(FlushOutcome.IN_FLIGHT)
        try:
            result = self._flush()
            if result.sent and result.remaining > 0:
                # Records appended while the request was in flight.
                self._flush()
            return result
        finally:
            self._send_slot.release()

    def _flush(self) -> FlushResult:
        with self._lock:
            try:
                settings = self.config.snapshot()
                if not settings.armed or settings.endpoint_url is None or settings.headers is None:
                    logger.debug("flush deferred: tracker not configured")
                    return FlushResult(FlushOutcome.NOT_CONFIGURED)
                batch = self.pending.snapshot()
            except StoreReadError as exc:
                self.counters.store_errors_total += 1
                logger.warning("flush deferred: %s", exc)
                return FlushResult(FlushOutcome.STORE_UNAVAILABLE, error=str(exc))

            if not batch:
                return FlushResult(FlushOutcome.EMPTY)

            try:
                body = self._encode(batch)
            except BatchEncodeError as exc:
                return self._handle_encode_failure(batch, exc)

            if len(body) > self.max_body_bytes:
                return self._handle_overflow(batch, len(body))

            url = settings.endpoint_url
            headers = build_request_headers(settings.headers)

        try:
            resp = self.transport.post(url, body, headers)
        except Exception as exc:
            resp = DeliveryResponse(status_code=None, error=f"{type(exc).__name__}: {exc}")

        if not resp.ok:
            self.counters.transport_failures_total += 1
            logger.warning(
                "delivery failed status=%s error=%s pending=%s; will resend on next trigger",
                resp.status_code,
                resp.error or resp.body_excerpt,
                len(batch),
            )
            return FlushResult(
                FlushOutcome.TRANSPORT_FAILED,
                events=len(batch),
                body_bytes=len(body),
                status_code=resp.status_code,
                error=resp.error,
                remaining=len(batch),
            )

        with self._lock:
            self.counters.sent_batches_total += 1
            self.counters.sent_events_total += len(batch)
            try:
                if not self.config.is_armed():
                    # stop() ran while the request was in flight.
                    logger.info("delivery confirmed after tracking stopped; nothing to clear")
                    removed = 0
                else:
                    removed = self.pending.discard_delivered(batch)
                remaining = self.pending.count()
            except StoreReadError as exc:
                self.counters.store_errors_total += 1
                logger.warning("delivered batch kept for resend: %s", exc)
                removed = 0
                remaining = 0

        logger.info(
            "delivered events=%s bytes=%s status=%s cleared=%s pending=%s",
            len(batch),
            len(body),
            resp.status_code,
            removed,
            remaining,
        )
        return FlushResult(
            FlushOutcome.SENT,
            events=len(batch),
            body_bytes=len(body),
            status_code=resp.status_code,
            remaining=remaining,
        )

    def _handle_overflow(self, batch: List[EventRecord], size_bytes: int) -> FlushResult:
        error = SerializationOverflowError(size_bytes, self.max_body_bytes)
        self.pending.clear()
        self.counters.overflow_clears_total += 1
        logger.error(
            "emergency cleanup: %s; dropped %s pending events",
            error,
            len(batch),
            extra={
                "fields": {
                    "dropped_events": len(batch),
                    "body_bytes": size_bytes,
                    "limit_bytes": self.max_body_bytes,
                }
            },
        )
        return FlushResult(FlushOutcome.OVERFLOW, events=len(batch), body_bytes=size_bytes, error=str(error))

    def _handle_encode_failure(self, batch: List[EventRecord], exc: BatchEncodeError) -> FlushResult:
        self.counters.encode_failures_total += 1
        if self.clear_on_encode_failure:
            self.pending.clear()
            logger.error("batch encode failed: %s; dropped %s pending events", exc, len(batch))
        else:
            logger.error("batch encode failed: %s; keeping %s pending events", exc, len(batch))
        return FlushResult(
            FlushOutcome.ENCODE_FAILED,
            events=len(batch),
            error=str(exc),
            remaining=0 if self.clear_on_encode_failure else len(batch),
        )

    def metrics(self) -> Dict[str, int]:
        c = self.counters
        return {
            "pending_events": int(self.pending.count()),
            "accepted_total": c.accepted_total,
            "gated_total": c.gated_total,
            "sent_batches_total": c.sent_batches_total,
            "sent_events_total": c.sent_events_total,
            "transport_failures_total": c.transport_failures_total,
            "overflow_clears_total": c.overflow_clears_total,
            "encode_failures_total": c.encode_failures_total,
            "store_errors_total": c.store_errors_total,
        }
