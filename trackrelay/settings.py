from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Literal

from trackrelay.controller import MAX_BATCH_BODY_BYTES


logger = logging.getLogger("trackrelay.settings")

LogFormat = Literal["text", "json"]


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "y", "on"}:
        return True
    if value in {"0", "false", "no", "n", "off"}:
        return False
    logger.warning("invalid %s=%r; using %s", name, raw, default)
    return default


def _get_positive_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        logger.warning("invalid %s=%r; using %s", name, raw, default)
        return default
    if value <= 0:
        logger.warning("invalid %s=%r; using %s", name, raw, default)
        return default
    return value


def _get_positive_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning("invalid %s=%r; using %s", name, raw, default)
        return default
    if value <= 0:
        logger.warning("invalid %s=%r; using %s", name, raw, default)
        return default
    return value


def _get_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip()
    return value or default


def _get_log_format(name: str, default: LogFormat) -> LogFormat:
    value = _get_str(name, default).lower()
    if value == "json":
        return "json"
    if value == "text":
        return "text"
    logger.warning("invalid %s=%r; using %s", name, value, default)
    return default


@dataclass(frozen=True)
class Settings:
    state_db_path: str
    sqlite_journal_mode: str
    sqlite_synchronous: str
    recover_corruption: bool

    http_timeout_s: float
    max_body_bytes: int
    clear_on_encode_failure: bool

    log_level: str
    log_format: LogFormat

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            state_db_path=_get_str("TRACKRELAY_STATE_DB_PATH", "./trackrelay_state.sqlite"),
            sqlite_journal_mode=_get_str("TRACKRELAY_SQLITE_JOURNAL_MODE", "WAL"),
            sqlite_synchronous=_get_str("TRACKRELAY_SQLITE_SYNCHRONOUS", "FULL"),
            recover_corruption=_get_bool("TRACKRELAY_RECOVER_CORRUPTION", True),
            http_timeout_s=_get_positive_float("TRACKRELAY_HTTP_TIMEOUT_S", 10.0),
            max_body_bytes=_get_positive_int("TRACKRELAY_MAX_BODY_BYTES", MAX_BATCH_BODY_BYTES),
            clear_on_encode_failure=_get_bool("TRACKRELAY_CLEAR_ON_ENCODE_FAILURE", False),
            log_level=_get_str("TRACKRELAY_LOG_LEVEL", "INFO").upper(),
            log_format=_get_log_format("TRACKRELAY_LOG_FORMAT", "text"),
        )

    @property
    def log_level_value(self) -> int:
        level = logging.getLevelName(self.log_level)
        return level if isinstance(level, int) else logging.INFO
