from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from settings import get_settings


@dataclass(frozen=True)
class CLIConfig:
    telemetry_path: Optional[str]
    live_state_path: Optional[str]
    tick_interval: float
    stop_timeout: float
    room_concurrency: int
    save_attempts: int


def _read_path(override: Optional[str], default: Optional[str]) -> Optional[str]:
    if override is None:
        return default
    candidate = override.strip()
    # An explicit empty value selects an in-memory table.
    return candidate or None


def load_config(
    telemetry_path: Optional[str] = None,
    live_state_path: Optional[str] = None,
    tick_interval: Optional[float] = None,
) -> CLIConfig:
    settings = get_settings()
    interval = settings.tick_interval_seconds
    if tick_interval is not None and tick_interval > 0:
        interval = tick_interval
    return CLIConfig(
        telemetry_path=_read_path(telemetry_path, settings.telemetry_table_path),
        live_state_path=_read_path(live_state_path, settings.live_state_table_path),
        tick_interval=interval,
        stop_timeout=settings.stop_timeout_seconds,
        room_concurrency=settings.room_concurrency,
        save_attempts=settings.save_attempts,
    )
