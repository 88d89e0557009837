import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from datastore.errors import StaleLiveStateError
from datastore.tables import LiveStateTable, TelemetryTable
from models.records import RoomLiveState, TelemetryReading
from services.reconciler import Reconciler
from services.timers import TimerService
from services.worker import RoomOutcome, TelemetryWorker

T0 = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def telemetry(clock: FakeClock) -> TelemetryTable:
    return TelemetryTable(name="telemetry", clock=clock)


@pytest.fixture
def live_states() -> LiveStateTable:
    return LiveStateTable(name="live")


def _worker(telemetry, live_states, clock, **kwargs) -> TelemetryWorker:
    return TelemetryWorker(
        telemetry=telemetry,
        live_states=live_states,
        reconciler=Reconciler(),
        tick_interval=0.01,
        clock=clock,
        **kwargs,
    )


def test_missing_live_state_is_provisioned_and_reconciled(telemetry, live_states, clock) -> None:
    telemetry.provision_room_telemetry("OT-01", volume=100)
    worker = _worker(telemetry, live_states, clock)

    report = worker.run_tick()

    assert report.outcomes == {"OT-01": RoomOutcome.reconciled}
    state = live_states.get_live_state("OT-01")
    assert state.ach_theoretical == 0.0
    assert state.op_is_running is False
    assert state.cd_is_running is False
    assert state.last_processed_at == telemetry.get_room_telemetry("OT-01").updated_at


def test_second_tick_without_new_telemetry_is_a_no_op(telemetry, live_states, clock) -> None:
    telemetry.provision_room_telemetry("OT-01", volume=100)
    telemetry.record_room_telemetry("OT-01", TelemetryReading(flow_rate=500, trigger=1))
    worker = _worker(telemetry, live_states, clock)

    worker.run_tick()
    first = live_states.get_live_state("OT-01")
    clock.advance(30)
    report = worker.run_tick()
    second = live_states.get_live_state("OT-01")

    assert report.outcomes == {"OT-01": RoomOutcome.skipped}
    assert second == first
    assert second.ach_theoretical == pytest.approx(18000.0)


def test_trigger_cycle_across_ticks_yields_empirical_ach(telemetry, live_states, clock) -> None:
    telemetry.provision_room_telemetry("OT-01", volume=100)
    worker = _worker(telemetry, live_states, clock)
    worker.run_tick()

    clock.advance(100)
    telemetry.record_room_telemetry("OT-01", TelemetryReading(trigger=1))
    worker.run_tick()
    assert live_states.get_live_state("OT-01").cycle_start_time == clock.now

    clock.advance(60)
    telemetry.record_room_telemetry("OT-01", TelemetryReading(trigger=0))
    worker.run_tick()

    state = live_states.get_live_state("OT-01")
    assert state.ach_empirical == pytest.approx(60.0)
    assert state.cycle_start_time is None
    assert state.current_trigger == 0


def test_countdown_expiry_waits_for_a_telemetry_change(telemetry, live_states, clock) -> None:
    telemetry.provision_room_telemetry("OT-01", volume=100)
    worker = _worker(telemetry, live_states, clock)
    worker.run_tick()

    state = live_states.get_live_state("OT-01")
    state.cd_is_running = True
    state.cd_target_time = clock.now + timedelta(seconds=10)
    live_states.save_live_state(state)

    clock.advance(11)
    worker.run_tick()
    assert live_states.get_live_state("OT-01").cd_is_running is True

    telemetry.record_room_telemetry("OT-01", TelemetryReading(flow_rate=10))
    worker.run_tick()
    expired = live_states.get_live_state("OT-01")
    assert expired.cd_is_running is False
    assert expired.cd_target_time == T0 + timedelta(seconds=10)


def test_failing_room_does_not_block_other_rooms(telemetry, live_states, clock, caplog) -> None:
    class FlakyLiveStates(LiveStateTable):
        broken = {"OT-01"}

        def save_live_state(self, state: RoomLiveState) -> RoomLiveState:
            if state.room_id in self.broken:
                raise ConnectionError("database unavailable")
            return super().save_live_state(state)

    flaky = FlakyLiveStates(name="live")
    telemetry.provision_room_telemetry("OT-01", volume=100)
    telemetry.provision_room_telemetry("OT-02", volume=100)
    worker = _worker(telemetry, flaky, clock)

    with caplog.at_level(logging.ERROR, logger="services.worker"):
        report = worker.run_tick()

    assert report.outcomes == {"OT-01": RoomOutcome.failed, "OT-02": RoomOutcome.reconciled}
    assert flaky.get_live_state("OT-01").last_processed_at is None
    assert any(getattr(record, "room_id", None) == "OT-01" for record in caplog.records)

    flaky.broken = set()
    retry = worker.run_tick()
    assert retry.outcomes == {"OT-01": RoomOutcome.reconciled, "OT-02": RoomOutcome.skipped}


def test_concurrent_timer_write_is_not_lost(telemetry, live_states, clock) -> None:
    timers = TimerService(live_states, clock=clock)

    class RacingLiveStates:
        """Lets an admin start the countdown between the worker's read and save."""

        def __init__(self) -> None:
            self.raced = False
            self.save_calls = 0

        def __getattr__(self, name):
            return getattr(live_states, name)

        def save_live_state(self, state: RoomLiveState) -> RoomLiveState:
            self.save_calls += 1
            if not self.raced:
                self.raced = True
                timers.start_countdown(state.room_id, duration_minutes=30)
            return live_states.save_live_state(state)

    racing = RacingLiveStates()
    telemetry.provision_room_telemetry("OT-01", volume=100)
    live_states.ensure_live_state_exists("OT-01")
    telemetry.record_room_telemetry("OT-01", TelemetryReading(flow_rate=500))
    worker = _worker(telemetry, racing, clock)

    report = worker.run_tick()

    assert report.outcomes == {"OT-01": RoomOutcome.reconciled}
    assert racing.save_calls == 2
    state = live_states.get_live_state("OT-01")
    assert state.cd_is_running is True
    assert state.ach_theoretical == pytest.approx(18000.0)


def test_room_fails_when_save_conflicts_persist(telemetry, live_states, clock) -> None:
    class AlwaysStale(LiveStateTable):
        def save_live_state(self, state: RoomLiveState) -> RoomLiveState:
            raise StaleLiveStateError(
                state.room_id, expected=state.version, actual=state.version + 1
            )

    stale = AlwaysStale(name="live")
    telemetry.provision_room_telemetry("OT-01", volume=100)
    worker = _worker(telemetry, stale, clock, save_attempts=2)

    report = worker.run_tick()

    assert report.outcomes == {"OT-01": RoomOutcome.failed}


def test_list_failure_aborts_tick(live_states, clock) -> None:
    class BrokenTelemetry:
        def list_all_room_telemetry(self):
            raise ConnectionError("telemetry store unreachable")

    worker = _worker(BrokenTelemetry(), live_states, clock)

    with pytest.raises(ConnectionError):
        worker.run_tick()
    assert worker.ticks_completed == 0


def test_driver_survives_aborted_ticks(live_states, clock, caplog) -> None:
    calls: List[int] = []

    class BrokenTelemetry:
        def list_all_room_telemetry(self):
            calls.append(1)
            raise ConnectionError("telemetry store unreachable")

    worker = _worker(BrokenTelemetry(), live_states, clock)

    with caplog.at_level(logging.ERROR, logger="services.worker"):
        worker.start()
        deadline = time.monotonic() + 2.0
        while len(calls) < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
        worker.shutdown(timeout=2.0)

    assert len(calls) >= 2
    assert worker.is_running is False
    assert any("Tick aborted" in record.getMessage() for record in caplog.records)


def test_start_and_stop_background_driver(telemetry, live_states, clock) -> None:
    telemetry.provision_room_telemetry("OT-01", volume=100)
    worker = _worker(telemetry, live_states, clock)

    worker.start()
    try:
        assert worker.is_running is True
        deadline = time.monotonic() + 2.0
        while worker.ticks_completed == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        worker.shutdown(timeout=2.0)

    assert worker.ticks_completed > 0
    assert worker.is_running is False
    assert live_states.get_live_state("OT-01").last_processed_at is not None


def test_stop_signal_cancels_remaining_rooms(telemetry, live_states, clock) -> None:
    telemetry.provision_room_telemetry("OT-01", volume=100)
    worker = _worker(telemetry, live_states, clock)
    worker._stop_event.set()

    report = worker.run_tick()

    assert report.outcomes == {"OT-01": RoomOutcome.cancelled}
    assert live_states.list_all_live_states() == []


def test_parallel_rooms_are_each_reconciled_once(telemetry, live_states, clock) -> None:
    room_ids = [f"OT-{index:02d}" for index in range(12)]
    for room_id in room_ids:
        telemetry.provision_room_telemetry(room_id, volume=100)
        telemetry.record_room_telemetry(room_id, TelemetryReading(flow_rate=50))
    worker = _worker(telemetry, live_states, clock, workers=4)

    try:
        report = worker.run_tick()
    finally:
        worker.shutdown()

    assert report.reconciled == len(room_ids)
    for room_id in room_ids:
        state = live_states.get_live_state(room_id)
        assert state.version == 1
        assert state.ach_theoretical == pytest.approx(1800.0)


def test_cycle_events_are_logged_with_room_context(telemetry, live_states, clock, caplog) -> None:
    telemetry.provision_room_telemetry("OT-01", volume=100)
    worker = _worker(telemetry, live_states, clock)
    worker.run_tick()

    with caplog.at_level(logging.INFO, logger="services.worker"):
        clock.advance(10)
        telemetry.record_room_telemetry("OT-01", TelemetryReading(trigger=1))
        worker.run_tick()
        clock.advance(120)
        telemetry.record_room_telemetry("OT-01", TelemetryReading(trigger=0))
        worker.run_tick()

    messages = [record.getMessage() for record in caplog.records]
    assert "ACH cycle started" in messages
    completed = [
        record for record in caplog.records if record.getMessage() == "ACH cycle completed"
    ]
    assert completed
    assert completed[0].room_id == "OT-01"
    assert completed[0].duration_s == pytest.approx(120.0)
    assert completed[0].ach_empirical == pytest.approx(30.0)


def test_worker_sees_writes_from_other_table_handles(tmp_path, clock) -> None:
    telemetry_path = tmp_path / "telemetry.json"
    live_path = tmp_path / "live.json"
    device = TelemetryTable(name="telemetry", persistence_path=telemetry_path, clock=clock)
    admin = TimerService(LiveStateTable(name="live", persistence_path=live_path), clock=clock)
    worker = _worker(
        TelemetryTable(name="telemetry", persistence_path=telemetry_path, clock=clock),
        LiveStateTable(name="live", persistence_path=live_path),
        clock,
    )

    device.provision_room_telemetry("OT-01", volume=100)
    assert worker.run_tick().outcomes == {"OT-01": RoomOutcome.reconciled}

    clock.advance(5)
    device.record_room_telemetry("OT-01", TelemetryReading(flow_rate=500))
    admin.start_stopwatch("OT-01")

    assert worker.run_tick().outcomes == {"OT-01": RoomOutcome.reconciled}

    state = LiveStateTable(name="live", persistence_path=live_path).get_live_state("OT-01")
    assert state.ach_theoretical == pytest.approx(18000.0)
    assert state.op_is_running is True
    assert state.version == 3


def test_restart_waits_for_a_driver_that_has_not_stopped(live_states, clock) -> None:
    entered = threading.Event()
    release = threading.Event()

    class SlowTelemetry:
        def list_all_room_telemetry(self):
            entered.set()
            release.wait(2.0)
            return []

    worker = _worker(SlowTelemetry(), live_states, clock)
    worker.start()
    assert entered.wait(2.0)
    first_driver = worker._thread

    worker.stop(timeout=0.05)
    assert worker.is_running is True

    worker.start()
    assert worker._thread is first_driver

    release.set()
    worker.shutdown(timeout=2.0)
    assert worker.is_running is False
    assert worker._thread is None
