from __future__ import annotations

import argparse
import json
import time
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import requests
from dotenv import load_dotenv

from trackrelay.controller import DeliveryController, FlushOutcome
from trackrelay.models import Occurrence
from trackrelay.observability import configure_logging
from trackrelay.sensors.base import OccurrenceSource
from trackrelay.sensors.mock import MockLocationSource
from trackrelay.settings import Settings
from trackrelay.store import SqliteKeyValueStore
from trackrelay.transport import HttpTransport


def build_store(settings: Settings) -> SqliteKeyValueStore:
    return SqliteKeyValueStore(
        settings.state_db_path,
        journal_mode=settings.sqlite_journal_mode,
        synchronous=settings.sqlite_synchronous,
        recover_corruption=settings.recover_corruption,
    )


def build_controller(
    settings: Settings,
    *,
    source: OccurrenceSource | None = None,
    session: requests.Session | None = None,
) -> DeliveryController:
    return DeliveryController(
        build_store(settings),
        HttpTransport(session, timeout_s=settings.http_timeout_s),
        source=source,
        max_body_bytes=settings.max_body_bytes,
        clear_on_encode_failure=settings.clear_on_encode_failure,
    )


def _parse_headers(values: Sequence[str]) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for raw in values:
        name, sep, value = raw.partition("=")
        if not sep or not name.strip():
            raise SystemExit(f"--header must look like NAME=VALUE, got {raw!r}")
        headers[name.strip()] = value.strip()
    return headers


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trackrelay",
        description="Durable location event queue with HTTP batch delivery",
    )
    parser.add_argument("--state-db", default=None, help="Override TRACKRELAY_STATE_DB_PATH")
    sub = parser.add_subparsers(dest="command", required=True)

    p_start = sub.add_parser("start", help="Persist collector settings and arm tracking")
    p_start.add_argument("--endpoint", required=True, help="Collector URL that receives POSTed batches")
    p_start.add_argument(
        "--header",
        action="append",
        default=[],
        help="Extra request header NAME=VALUE (repeatable)",
    )
    p_start.add_argument("--min-interval-s", type=float, default=0.0, help="Minimum seconds between accepted events")
    p_start.add_argument("--no-debounce", action="store_true", help="Disable the minimum-interval gate")

    sub.add_parser("resume", help="Re-arm tracking if it was left enabled")
    sub.add_parser("stop", help="Disarm tracking and discard pending events")
    sub.add_parser("status", help="Print persisted configuration and queue depth")
    sub.add_parser("flush", help="Attempt to deliver pending events now")

    p_record = sub.add_parser("record", help="Feed one location fix to an armed tracker")
    p_record.add_argument("--lat", type=float, required=True)
    p_record.add_argument("--lon", type=float, required=True)

    p_sim = sub.add_parser("simulate", help="Drive an armed tracker with a mock location source")
    p_sim.add_argument("--device-id", default="demo-tracker-001")
    p_sim.add_argument("--events", type=int, default=10, help="Number of provider notifications")
    p_sim.add_argument("--interval-s", type=float, default=1.0, help="Seconds between notifications")
    p_sim.add_argument("--fixes-per-notification", type=int, default=1)
    return parser


def _status(controller: DeliveryController) -> Dict[str, object]:
    settings = controller.config.snapshot()
    last = controller.config.last_action_at
    return {
        "armed": settings.armed,
        "enabled": settings.enabled,
        "endpoint_url": settings.endpoint_url,
        "headers": sorted((settings.headers or {}).keys()),
        "min_interval_s": settings.min_interval_s,
        "debounce_enabled": settings.debounce_enabled,
        "last_action_at": last.isoformat() if last else None,
        "pending_events": controller.pending.count(),
    }


def main(argv: Optional[List[str]] = None) -> int:
    # Load repo-level .env (if present).
    load_dotenv()

    args = _build_parser().parse_args(argv)
    settings = Settings.from_env()
    if args.state_db:
        settings = replace(settings, state_db_path=args.state_db)
    configure_logging(level=settings.log_level_value, log_format=settings.log_format)

    source: MockLocationSource | None = None
    if args.command == "simulate":
        source = MockLocationSource(args.device_id)

    with build_controller(settings, source=source) as controller:
        if args.command == "start":
            controller.start(
                args.min_interval_s,
                args.endpoint,
                _parse_headers(args.header),
                debounce_enabled=not args.no_debounce,
            )
            print(f"[trackrelay] armed endpoint={args.endpoint} state={Path(settings.state_db_path)}")
            return 0

        if args.command == "stop":
            controller.stop()
            print("[trackrelay] stopped")
            return 0

        if args.command == "status":
            print(json.dumps(_status(controller), indent=2, sort_keys=True))
            return 0

        if args.command == "flush":
            result = controller.flush()
            print(f"[trackrelay] flush outcome={result.outcome.value} events={result.events} status={result.status_code}")
            return 0 if result.outcome in {FlushOutcome.SENT, FlushOutcome.EMPTY} else 1

        armed = controller.resume()
        if args.command == "resume":
            print(f"[trackrelay] resume armed={armed}")
            return 0 if armed else 1
        if not armed:
            print("[trackrelay] tracker is not armed; run `trackrelay start` first")
            return 1

        if args.command == "record":
            occurrence = Occurrence(latitude=args.lat, longitude=args.lon, observed_at=datetime.now(timezone.utc))
            accepted = controller.on_occurrence(occurrence)
            print(f"[trackrelay] record accepted={accepted} pending={controller.pending.count()}")
            return 0

        assert source is not None
        for idx in range(max(0, args.events)):
            source.emit(args.fixes_per_notification)
            print(f"[trackrelay] notification={idx + 1} metrics={json.dumps(controller.metrics(), sort_keys=True)}")
            if idx + 1 < args.events:
                time.sleep(max(0.0, args.interval_s))
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
