"""Per-room transition from a raw telemetry snapshot to the next live state."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from models.records import RoomLiveState, RoomTelemetrySnapshot

SECONDS_PER_HOUR = 3600

_GAS_FIELDS = ("oxygen", "nitrous", "air", "vacuum", "instrument", "carbon")


@dataclass
class ReconciliationSummary:
    """Next live state plus what changed while computing it."""

    state: RoomLiveState
    cycle_started: bool = False
    cycle_duration_s: Optional[float] = None
    measurement_discarded: bool = False
    countdown_expired: bool = False


class Reconciler:
    """Pure reconciliation component that can be unit tested without a store.

    ``reconcile`` never mutates its arguments. The caller decides whether the
    snapshot is new (see :meth:`RoomLiveState.needs_reconcile`) and persists
    the returned state.
    """

    def reconcile(
        self,
        snapshot: RoomTelemetrySnapshot,
        state: RoomLiveState,
        now: datetime,
    ) -> ReconciliationSummary:
        summary = ReconciliationSummary(state=state.model_copy(deep=True))
        live = summary.state

        self.apply_theoretical_ach(snapshot, live)
        self.apply_empirical_ach(snapshot, summary)
        self.mirror_readings(snapshot, live)
        summary.countdown_expired = self.expire_countdown(live, now)
        live.last_processed_at = snapshot.updated_at

        return summary

    @staticmethod
    def apply_theoretical_ach(snapshot: RoomTelemetrySnapshot, live: RoomLiveState) -> None:
        # A zero reading freezes the last known value.
        if snapshot.flow_rate > 0 and snapshot.volume > 0:
            live.ach_theoretical = snapshot.flow_rate * SECONDS_PER_HOUR / snapshot.volume

    @staticmethod
    def apply_empirical_ach(
        snapshot: RoomTelemetrySnapshot, summary: ReconciliationSummary
    ) -> None:
        live = summary.state
        if live.current_trigger == 0 and snapshot.trigger == 1:
            live.cycle_start_time = snapshot.updated_at
            summary.cycle_started = True
            return

        if live.current_trigger == 1 and snapshot.trigger == 0:
            if live.cycle_start_time is None:
                return
            duration = (snapshot.updated_at - live.cycle_start_time).total_seconds()
            if duration > 0:
                live.ach_empirical = SECONDS_PER_HOUR / duration
                summary.cycle_duration_s = duration
            else:
                summary.measurement_discarded = True
            live.cycle_start_time = None

    @staticmethod
    def mirror_readings(snapshot: RoomTelemetrySnapshot, live: RoomLiveState) -> None:
        if snapshot.temperature is not None:
            live.current_temperature = snapshot.temperature
        if snapshot.pressure is not None:
            live.current_pressure = snapshot.pressure

        # Gas readings overwrite even when null.
        for name in _GAS_FIELDS:
            setattr(live, name, getattr(snapshot, name))

        live.current_trigger = snapshot.trigger

    @staticmethod
    def expire_countdown(live: RoomLiveState, now: datetime) -> bool:
        if live.cd_is_running and live.cd_target_time is not None and now >= live.cd_target_time:
            live.cd_is_running = False
            return True
        return False
