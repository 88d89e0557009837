from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


_TELEMETRY_PATH_ENV = "TELEMETRY_TABLE_PATH"
_LIVE_STATE_PATH_ENV = "LIVE_STATE_TABLE_PATH"
_TICK_INTERVAL_ENV = "WORKER_TICK_INTERVAL_MS"
_ROOM_CONCURRENCY_ENV = "WORKER_ROOM_CONCURRENCY"
_SAVE_ATTEMPTS_ENV = "WORKER_SAVE_ATTEMPTS"
_STOP_TIMEOUT_ENV = "WORKER_STOP_TIMEOUT_SECONDS"
_LOG_LEVEL_ENV = "LOG_LEVEL"


@dataclass(frozen=True)
class Settings:
    telemetry_table_path: Optional[str]
    live_state_table_path: Optional[str]
    tick_interval_ms: int
    room_concurrency: int
    save_attempts: int
    stop_timeout_seconds: float
    log_level: str

    @property
    def tick_interval_seconds(self) -> float:
        return self.tick_interval_ms / 1000.0


def _read_optional_env(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or None


def _read_positive_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = int(candidate)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_positive_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = float(candidate)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_log_level(default: str) -> str:
    value = os.getenv(_LOG_LEVEL_ENV)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    return candidate.upper()


@lru_cache
def get_settings() -> Settings:
    return Settings(
        telemetry_table_path=_read_optional_env(
            _TELEMETRY_PATH_ENV, "./tmp/room_telemetry.json"
        ),
        live_state_table_path=_read_optional_env(
            _LIVE_STATE_PATH_ENV, "./tmp/room_live_state.json"
        ),
        tick_interval_ms=_read_positive_int(_TICK_INTERVAL_ENV, 500),
        room_concurrency=_read_positive_int(_ROOM_CONCURRENCY_ENV, 1),
        save_attempts=_read_positive_int(_SAVE_ATTEMPTS_ENV, 3),
        stop_timeout_seconds=_read_positive_float(_STOP_TIMEOUT_ENV, 5.0),
        log_level=_read_log_level("INFO"),
    )
