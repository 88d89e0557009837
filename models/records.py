"""Domain records shared by the stores, the worker and the timer service."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

DEFAULT_COUNTDOWN_SECONDS = 3600


class RoomTelemetrySnapshot(BaseModel):
    """Latest raw sensor snapshot for a room, overwritten in place by devices."""

    room_id: str
    updated_at: datetime

    temperature: Optional[float] = None
    humidity: Optional[int] = None
    pressure: Optional[float] = None
    room_status: Optional[int] = Field(default=None, ge=0, le=1)

    flow_rate: int = Field(default=0, ge=0)
    volume: int = Field(default=0, ge=0, description="Room volume from room configuration.")
    trigger: int = Field(default=0, ge=0, le=1)

    oxygen: Optional[float] = None
    nitrous: Optional[float] = None
    air: Optional[float] = None
    vacuum: Optional[int] = None
    instrument: Optional[float] = None
    carbon: Optional[float] = None


class TelemetryReading(BaseModel):
    """A device write. Room volume is not part of it; it comes from provisioning."""

    temperature: Optional[float] = Field(default=None, ge=-50, le=100)
    humidity: Optional[int] = Field(default=None, ge=0, le=100)
    pressure: Optional[float] = Field(default=None, ge=0)
    room_status: Optional[int] = Field(default=None, ge=0, le=1)

    flow_rate: int = Field(default=0, ge=0)
    trigger: int = Field(default=0, ge=0, le=1)

    oxygen: Optional[float] = None
    nitrous: Optional[float] = None
    air: Optional[float] = None
    vacuum: Optional[int] = None
    instrument: Optional[float] = None
    carbon: Optional[float] = None


class RoomLiveState(BaseModel):
    """Derived per-room state: ACH metrics, mirrored readings and admin timers."""

    room_id: str

    ach_theoretical: float = Field(default=0.0, ge=0)
    ach_empirical: float = Field(default=0.0, ge=0)

    current_temperature: Optional[float] = None
    current_pressure: Optional[float] = None
    current_trigger: int = Field(default=0, ge=0, le=1)

    oxygen: Optional[float] = None
    nitrous: Optional[float] = None
    air: Optional[float] = None
    vacuum: Optional[int] = None
    instrument: Optional[float] = None
    carbon: Optional[float] = None

    op_start_time: Optional[datetime] = None
    op_accumulated_seconds: int = Field(default=0, ge=0)
    op_is_running: bool = False

    cd_target_time: Optional[datetime] = None
    cd_duration_seconds: int = Field(default=DEFAULT_COUNTDOWN_SECONDS, gt=0)
    cd_is_running: bool = False

    cycle_start_time: Optional[datetime] = Field(
        default=None, description="Set while an empirical ACH cycle is in progress."
    )
    last_processed_at: Optional[datetime] = Field(
        default=None, description="updated_at of the last snapshot folded into this state."
    )

    version: int = Field(default=0, ge=0, description="Optimistic concurrency stamp.")

    def needs_reconcile(self, snapshot: RoomTelemetrySnapshot) -> bool:
        return self.last_processed_at is None or snapshot.updated_at > self.last_processed_at
