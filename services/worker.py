"""Background worker folding raw room telemetry into live state."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import lru_cache
from typing import Dict, Optional

from datastore.contracts import LiveStateRepository, TelemetryRepository
from datastore.errors import StaleLiveStateError
from datastore.tables import (
    Clock,
    build_default_live_state_table,
    build_default_telemetry_table,
    utcnow,
)
from models.records import RoomLiveState, RoomTelemetrySnapshot
from services.reconciler import Reconciler, ReconciliationSummary
from settings import get_settings

logger = logging.getLogger(__name__)


class RoomOutcome(str, Enum):
    reconciled = "reconciled"
    skipped = "skipped"
    failed = "failed"
    cancelled = "cancelled"


@dataclass
class TickReport:
    """Per-tick tally of room outcomes."""

    started_at: datetime
    outcomes: Dict[str, RoomOutcome] = field(default_factory=dict)

    def count(self, outcome: RoomOutcome) -> int:
        return sum(1 for value in self.outcomes.values() if value is outcome)

    @property
    def reconciled(self) -> int:
        return self.count(RoomOutcome.reconciled)

    @property
    def skipped(self) -> int:
        return self.count(RoomOutcome.skipped)

    @property
    def failed(self) -> int:
        return self.count(RoomOutcome.failed)

    @property
    def cancelled(self) -> int:
        return self.count(RoomOutcome.cancelled)


class TelemetryWorker:
    """Polls both stores on a fixed interval and reconciles changed rooms.

    Ticks never overlap: a single driver thread runs them back to back and a
    tick returns only after every room it dispatched has finished. Within a
    tick rooms may run on a thread pool, but each room appears at most once.
    """

    def __init__(
        self,
        telemetry: TelemetryRepository,
        live_states: LiveStateRepository,
        reconciler: Reconciler,
        tick_interval: float = 0.5,
        workers: int = 1,
        save_attempts: int = 3,
        clock: Clock = utcnow,
    ) -> None:
        self.telemetry = telemetry
        self.live_states = live_states
        self.reconciler = reconciler
        self.tick_interval = tick_interval
        self.save_attempts = max(1, save_attempts)
        self.clock = clock
        self.executor = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="room-reconcile"
        )
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._tick_lock = threading.Lock()
        self.ticks_completed = 0
        self.last_tick: Optional[TickReport] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Launch the tick driver thread if it is not already running.

        A driver still winding down after a timed-out :meth:`stop` is not
        replaced; call :meth:`stop` again to wait for it.
        """
        if self.is_running:
            if self._stop_event.is_set():
                logger.warning("Telemetry worker is still stopping, not restarting")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="telemetry-worker", daemon=True
        )
        self._thread.start()
        logger.info("Telemetry worker started - polling every %.0f ms", self.tick_interval * 1000)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop scheduling ticks and wait for the in-flight tick to wind down."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Telemetry worker did not stop within %.1fs", timeout or 0.0)
                return
            logger.info("Telemetry worker stopped")
        self._thread = None

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop the driver and release the room executor."""
        self.stop(timeout)
        self.executor.shutdown(wait=False, cancel_futures=True)

    def run_tick(self) -> TickReport:
        """Run one full pass over every room.

        Errors reading either full table propagate and abort the tick. Errors
        for a single room are logged and reported as ``failed``.
        """
        with self._tick_lock:
            report = TickReport(started_at=self.clock())
            snapshots = self.telemetry.list_all_room_telemetry()
            if snapshots:
                states = {state.room_id: state for state in self.live_states.list_all_live_states()}
                rooms = [(snapshot, states.get(snapshot.room_id)) for snapshot in snapshots]
                outcomes = self.executor.map(lambda pair: self._process_room(*pair), rooms)
                for (snapshot, _), outcome in zip(rooms, outcomes):
                    report.outcomes[snapshot.room_id] = outcome

            self.ticks_completed += 1
            self.last_tick = report
            if report.reconciled or report.failed:
                logger.debug(
                    "Tick finished",
                    extra={
                        "reconciled": report.reconciled,
                        "skipped": report.skipped,
                        "failed": report.failed,
                    },
                )
            return report

    def _run(self) -> None:
        while not self._stop_event.is_set():
            started = time.monotonic()
            try:
                self.run_tick()
            except Exception:  # noqa: BLE001 - next tick retries
                logger.exception("Tick aborted while reading room tables")
            elapsed = time.monotonic() - started
            self._stop_event.wait(max(0.0, self.tick_interval - elapsed))

    def _process_room(
        self, snapshot: RoomTelemetrySnapshot, state: Optional[RoomLiveState]
    ) -> RoomOutcome:
        room_id = snapshot.room_id
        if self._stop_event.is_set():
            return RoomOutcome.cancelled
        try:
            if state is None:
                logger.info("Provisioning missing live state", extra={"room_id": room_id})
                self.live_states.ensure_live_state_exists(room_id)
                state = self.live_states.get_live_state(room_id)
            return self._reconcile_room(snapshot, state)
        except Exception:  # noqa: BLE001 - isolate rooms from each other
            logger.exception("Failed to reconcile room", extra={"room_id": room_id})
            return RoomOutcome.failed

    def _reconcile_room(
        self, snapshot: RoomTelemetrySnapshot, state: RoomLiveState
    ) -> RoomOutcome:
        room_id = snapshot.room_id
        attempt = 1
        while state.needs_reconcile(snapshot):
            summary = self.reconciler.reconcile(snapshot, state, self.clock())
            try:
                self.live_states.save_live_state(summary.state)
            except StaleLiveStateError:
                if attempt >= self.save_attempts:
                    raise
                logger.info(
                    "Live state changed concurrently, retrying",
                    extra={"room_id": room_id, "attempt": attempt},
                )
                attempt += 1
                state = self.live_states.get_live_state(room_id)
                continue

            self._log_summary(snapshot, summary)
            return RoomOutcome.reconciled

        return RoomOutcome.skipped

    @staticmethod
    def _log_summary(snapshot: RoomTelemetrySnapshot, summary: ReconciliationSummary) -> None:
        room_id = snapshot.room_id
        live = summary.state
        if summary.cycle_started:
            logger.info(
                "ACH cycle started",
                extra={"room_id": room_id, "updated_at": snapshot.updated_at},
            )
        if summary.cycle_duration_s is not None:
            logger.info(
                "ACH cycle completed",
                extra={
                    "room_id": room_id,
                    "duration_s": summary.cycle_duration_s,
                    "ach_empirical": live.ach_empirical,
                },
            )
        if summary.measurement_discarded:
            logger.warning(
                "Discarding ACH cycle with non-positive duration",
                extra={"room_id": room_id, "updated_at": snapshot.updated_at},
            )
        if summary.countdown_expired:
            logger.info("Countdown timer expired", extra={"room_id": room_id})
        logger.debug(
            "Processed telemetry",
            extra={
                "room_id": room_id,
                "updated_at": snapshot.updated_at,
                "ach_theoretical": live.ach_theoretical,
            },
        )


@lru_cache
def build_default_worker() -> TelemetryWorker:
    """Factory that wires the worker with the default JSON tables."""
    settings = get_settings()
    return TelemetryWorker(
        telemetry=build_default_telemetry_table(),
        live_states=build_default_live_state_table(),
        reconciler=Reconciler(),
        tick_interval=settings.tick_interval_seconds,
        workers=settings.room_concurrency,
        save_attempts=settings.save_attempts,
    )
