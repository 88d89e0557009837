from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn, Optional

import typer

from cli.config import CLIConfig, load_config
from cli.render import render_live_state, render_snapshot, render_tick
from datastore.errors import StoreError
from datastore.tables import LiveStateTable, TelemetryTable, utcnow
from logging_config import configure_logging
from models.records import TelemetryReading
from services.provisioning import provision_room, record_reading
from services.reconciler import Reconciler
from services.timers import TimerAction, TimerService
from services.worker import TelemetryWorker


@dataclass
class CLIState:
    config: CLIConfig
    telemetry: TelemetryTable
    live_states: LiveStateTable

    def build_worker(self) -> TelemetryWorker:
        return TelemetryWorker(
            telemetry=self.telemetry,
            live_states=self.live_states,
            reconciler=Reconciler(),
            tick_interval=self.config.tick_interval,
            workers=self.config.room_concurrency,
            save_attempts=self.config.save_attempts,
        )

    def build_timers(self) -> TimerService:
        return TimerService(self.live_states, save_attempts=self.config.save_attempts)


app = typer.Typer(
    help="Utilities for provisioning rooms and driving the telemetry worker locally.",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _get_state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        raise typer.Exit(code=1)
    return state


def _fail(message: str) -> NoReturn:
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


def _table_path(value: Optional[str]) -> Optional[Path]:
    return Path(value) if value else None


@app.callback()
def main(
    ctx: typer.Context,
    telemetry_path: Optional[str] = typer.Option(
        None,
        "--telemetry-path",
        help="Raw telemetry table file (defaults to TELEMETRY_TABLE_PATH; empty for in-memory).",
    ),
    live_state_path: Optional[str] = typer.Option(
        None,
        "--live-state-path",
        help="Live state table file (defaults to LIVE_STATE_TABLE_PATH; empty for in-memory).",
    ),
    tick_interval: Optional[float] = typer.Option(
        None,
        "--tick-interval",
        help="Seconds between worker ticks for the run command.",
    ),
) -> None:
    """Entry point for the CLI."""
    config = load_config(
        telemetry_path=telemetry_path,
        live_state_path=live_state_path,
        tick_interval=tick_interval,
    )
    ctx.obj = CLIState(
        config=config,
        telemetry=TelemetryTable(
            name="room_telemetry", persistence_path=_table_path(config.telemetry_path)
        ),
        live_states=LiveStateTable(
            name="room_live_state", persistence_path=_table_path(config.live_state_path)
        ),
    )


@app.command("provision")
def provision_command(
    ctx: typer.Context,
    room_id: str = typer.Argument(..., help="Room identifier."),
    volume: int = typer.Option(
        ..., "--volume", min=0, help="Room volume used for theoretical ACH."
    ),
) -> None:
    """Create the telemetry and live state rows for a room."""
    state = _get_state(ctx)
    try:
        snapshot = provision_room(state.telemetry, state.live_states, room_id, volume)
    except ValueError as exc:
        _fail(str(exc))
    typer.secho(f"Room {snapshot.room_id} provisioned.", fg=typer.colors.GREEN)


@app.command("push")
def push_command(
    ctx: typer.Context,
    room_id: str = typer.Argument(..., help="Room identifier."),
    flow_rate: int = typer.Option(0, "--flow-rate", help="Air handler flow rate."),
    trigger: int = typer.Option(0, "--trigger", help="Air handler logic flag (0 or 1)."),
    temperature: Optional[float] = typer.Option(None, "--temperature"),
    humidity: Optional[int] = typer.Option(None, "--humidity"),
    pressure: Optional[float] = typer.Option(None, "--pressure"),
    room_status: Optional[int] = typer.Option(None, "--room-status"),
    oxygen: Optional[float] = typer.Option(None, "--oxygen"),
    nitrous: Optional[float] = typer.Option(None, "--nitrous"),
    air: Optional[float] = typer.Option(None, "--air"),
    vacuum: Optional[int] = typer.Option(None, "--vacuum"),
    instrument: Optional[float] = typer.Option(None, "--instrument"),
    carbon: Optional[float] = typer.Option(None, "--carbon"),
) -> None:
    """Write a device reading into the raw telemetry table."""
    state = _get_state(ctx)
    try:
        reading = TelemetryReading(
            flow_rate=flow_rate,
            trigger=trigger,
            temperature=temperature,
            humidity=humidity,
            pressure=pressure,
            room_status=room_status,
            oxygen=oxygen,
            nitrous=nitrous,
            air=air,
            vacuum=vacuum,
            instrument=instrument,
            carbon=carbon,
        )
        snapshot = record_reading(state.telemetry, room_id, reading)
    except (ValueError, StoreError) as exc:
        _fail(f"Reading rejected: {exc}")
    render_snapshot(snapshot)


@app.command("tick")
def tick_command(ctx: typer.Context) -> None:
    """Run a single reconciliation pass over every room."""
    state = _get_state(ctx)
    worker = state.build_worker()
    try:
        report = worker.run_tick()
    finally:
        worker.shutdown()
    render_tick(report)


@app.command("run")
def run_command(
    ctx: typer.Context,
    duration: Optional[float] = typer.Option(
        None,
        "--duration",
        help="Stop after this many seconds (runs until interrupted by default).",
    ),
) -> None:
    """Run the worker in the foreground."""
    configure_logging()
    state = _get_state(ctx)
    worker = state.build_worker()
    deadline = time.monotonic() + duration if duration else None
    worker.start()
    try:
        while deadline is None or time.monotonic() < deadline:
            time.sleep(0.1)
    except KeyboardInterrupt:
        typer.echo("Interrupted, stopping worker ...")
    finally:
        worker.shutdown(timeout=state.config.stop_timeout)
    typer.echo(f"Worker stopped after {worker.ticks_completed} ticks.")


@app.command("show")
def show_command(
    ctx: typer.Context,
    room_id: str = typer.Argument(..., help="Room identifier."),
) -> None:
    """Display the live state of a room."""
    state = _get_state(ctx)
    try:
        live = state.live_states.get_live_state(room_id)
    except StoreError as exc:
        _fail(str(exc))
    render_live_state(live, utcnow())


@app.command("stopwatch")
def stopwatch_command(
    ctx: typer.Context,
    room_id: str = typer.Argument(..., help="Room identifier."),
    action: TimerAction = typer.Argument(..., help="start, stop or reset."),
    actor: Optional[str] = typer.Option(None, "--actor", help="Recorded in the audit log line."),
) -> None:
    """Control the operation stopwatch."""
    state = _get_state(ctx)
    timers = state.build_timers()
    try:
        timers.apply_stopwatch_action(room_id, action, actor=actor)
    except (ValueError, StoreError) as exc:
        _fail(str(exc))
    typer.secho(f"Stopwatch {action.value} for room {room_id}.", fg=typer.colors.GREEN)


@app.command("countdown")
def countdown_command(
    ctx: typer.Context,
    room_id: str = typer.Argument(..., help="Room identifier."),
    action: TimerAction = typer.Argument(..., help="start, stop or reset."),
    minutes: Optional[int] = typer.Option(
        None, "--minutes", help="Countdown duration for start (defaults to 60)."
    ),
    actor: Optional[str] = typer.Option(None, "--actor", help="Recorded in the audit log line."),
) -> None:
    """Control the countdown timer."""
    state = _get_state(ctx)
    timers = state.build_timers()
    try:
        timers.apply_countdown_action(room_id, action, duration_minutes=minutes, actor=actor)
    except (ValueError, StoreError) as exc:
        _fail(str(exc))
    typer.secho(f"Countdown {action.value} for room {room_id}.", fg=typer.colors.GREEN)


@app.command("adjust")
def adjust_command(
    ctx: typer.Context,
    room_id: str = typer.Argument(..., help="Room identifier."),
    minutes: int = typer.Option(
        ..., "--minutes", help="Signed minutes to add to the countdown, e.g. --minutes -1."
    ),
    actor: Optional[str] = typer.Option(None, "--actor", help="Recorded in the audit log line."),
) -> None:
    """Shift a running countdown."""
    state = _get_state(ctx)
    timers = state.build_timers()
    try:
        timers.adjust_countdown(room_id, minutes, actor=actor)
    except (ValueError, StoreError) as exc:
        _fail(str(exc))
    typer.secho(f"Countdown adjusted by {minutes:+d} minute(s).", fg=typer.colors.GREEN)
