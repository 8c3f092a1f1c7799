from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Protocol, TypeVar

from trackrelay.exceptions import StoreReadError


logger = logging.getLogger("trackrelay.store")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS kv (
  key TEXT PRIMARY KEY,
  value_json TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
"""

_T = TypeVar("_T")

_READ_FAILED: Any = object()

_CORRUPTION_MARKERS = (
    "database disk image is malformed",
    "malformed database schema",
    "file is not a database",
    "not a database",
    "database corrupt",
)

_ALLOWED_JOURNAL_MODES = {"DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF"}
_ALLOWED_SYNCHRONOUS = {"OFF", "NORMAL", "FULL", "EXTRA"}


class KeyValueStore(Protocol):
    """Durable string-keyed store of JSON text values.

    `get` returns None only for a missing key and raises StoreReadError when
    the value could not be read.
    """

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value_json: str) -> bool: ...

    def delete(self, key: str) -> bool: ...


class MemoryKeyValueStore:
    """Process-local store. Values do not survive a restart."""

    def __init__(self) -> None:
        self._values: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._values.get(key)

    def set(self, key: str, value_json: str) -> bool:
        with self._lock:
            self._values[key] = value_json
        return True

    def delete(self, key: str) -> bool:
        with self._lock:
            self._values.pop(key, None)
        return True

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._values)


class SqliteKeyValueStore:
    """Key-value store backed by a single sqlite file.

    Every write is committed before the call returns, so a value written by
    `set` survives the process being killed right afterwards. With
    synchronous=FULL it also survives power loss.
    """

    def __init__(
        self,
        path: str,
        *,
        journal_mode: str = "WAL",
        synchronous: str = "FULL",
        recover_corruption: bool = True,
    ) -> None:
        self.path = Path(path)
        self.journal_mode = self._normalize_pragma(
            "journal_mode",
            journal_mode,
            allowed=_ALLOWED_JOURNAL_MODES,
            default="WAL",
        )
        self.synchronous = self._normalize_pragma(
            "synchronous",
            synchronous,
            allowed=_ALLOWED_SYNCHRONOUS,
            default="FULL",
        )
        self.recover_corruption = bool(recover_corruption)
        self.recoveries_total = 0

        self._init_db(allow_recovery=True)
        self._checkpoint_with_new_connection(truncate=True)

    @staticmethod
    def _normalize_pragma(name: str, value: str, *, allowed: set[str], default: str) -> str:
        candidate = (value or "").strip().upper()
        if candidate in allowed:
            return candidate
        logger.warning("invalid sqlite %s=%r; using %s", name, value, default)
        return default

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.path))
        self._apply_pragmas(conn)
        return conn

    def _apply_pragmas(self, conn: sqlite3.Connection) -> None:
        conn.execute(f"PRAGMA journal_mode={self.journal_mode}")
        conn.execute(f"PRAGMA synchronous={self.synchronous}")

    def _init_db(self, *, allow_recovery: bool) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

        try:
            with self._conn() as conn:
                conn.execute(SCHEMA_SQL)
                conn.commit()
        except sqlite3.DatabaseError as exc:
            if allow_recovery and self._is_corruption_error(exc) and self._recover_from_corruption():
                with self._conn() as conn:
                    conn.execute(SCHEMA_SQL)
                    conn.commit()
                return
            raise

    @staticmethod
    def _is_corruption_error(exc: BaseException) -> bool:
        text = str(exc).strip().lower()
        return any(marker in text for marker in _CORRUPTION_MARKERS)

    def _corrupt_backup_path(self, source: Path, *, stamp: str) -> Path:
        base = source.with_name(f"{source.name}.corrupt-{stamp}")
        if not base.exists():
            return base
        idx = 1
        while True:
            candidate = source.with_name(f"{source.name}.corrupt-{stamp}-{idx}")
            if not candidate.exists():
                return candidate
            idx += 1

    def _recover_from_corruption(self) -> bool:
        if not self.recover_corruption:
            return False

        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        moved: list[Path] = []
        candidates = [
            self.path,
            self.path.with_name(f"{self.path.name}-wal"),
            self.path.with_name(f"{self.path.name}-shm"),
        ]

        for source in candidates:
            if not source.exists():
                continue
            target = self._corrupt_backup_path(source, stamp=stamp)
            try:
                source.replace(target)
            except OSError as exc:
                logger.error("failed to move corrupt sqlite file %s: %r", source, exc)
                return False
            moved.append(target)

        if moved:
            logger.error(
                "detected sqlite corruption; moved files: %s",
                ", ".join(str(p) for p in moved),
            )

        try:
            self._init_db(allow_recovery=False)
        except sqlite3.Error as exc:
            logger.error("failed to reinitialize sqlite store after corruption: %r", exc)
            return False
        self.recoveries_total += 1
        return True

    def _run_db(self, fn: Callable[[sqlite3.Connection], _T], *, fallback: _T) -> _T:
        try:
            with self._conn() as conn:
                return fn(conn)
        except sqlite3.DatabaseError as exc:
            if self._is_corruption_error(exc) and self._recover_from_corruption():
                try:
                    with self._conn() as conn:
                        return fn(conn)
                except sqlite3.Error as retry_exc:
                    logger.error("sqlite operation failed after recovery: %r", retry_exc)
                    return fallback
            logger.error("sqlite database error: %r", exc)
            return fallback
        except sqlite3.Error as exc:
            logger.error("sqlite error: %r", exc)
            return fallback

    def _checkpoint_with_new_connection(self, *, truncate: bool) -> None:
        if self.journal_mode != "WAL":
            return
        mode = "TRUNCATE" if truncate else "PASSIVE"
        try:
            with self._conn() as conn:
                conn.execute(f"PRAGMA wal_checkpoint({mode})")
        except sqlite3.Error:
            return

    def get(self, key: str) -> str | None:
        def _op(conn: sqlite3.Connection) -> str | None:
            row = conn.execute("SELECT value_json FROM kv WHERE key = ?", (key,)).fetchone()
            if row is None:
                return None
            return str(row[0])

        value = self._run_db(_op, fallback=_READ_FAILED)
        if value is _READ_FAILED:
            raise StoreReadError(key, f"sqlite read failed ({self.path})")
        return value

    def set(self, key: str, value_json: str) -> bool:
        updated_at = datetime.now(timezone.utc).isoformat()

        def _op(conn: sqlite3.Connection) -> bool:
            conn.execute(
                "INSERT INTO kv(key, value_json, updated_at) VALUES(?,?,?) "
                "ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json, "
                "updated_at = excluded.updated_at",
                (key, value_json, updated_at),
            )
            conn.commit()
            return True

        return bool(self._run_db(_op, fallback=False))

    def delete(self, key: str) -> bool:
        def _op(conn: sqlite3.Connection) -> bool:
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            conn.commit()
            return True

        return bool(self._run_db(_op, fallback=False))

    def keys(self) -> List[str]:
        def _op(conn: sqlite3.Connection) -> List[str]:
            rows = conn.execute("SELECT key FROM kv ORDER BY key ASC").fetchall()
            return [str(k) for (k,) in rows]

        return self._run_db(_op, fallback=[])

