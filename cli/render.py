from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

import typer

from models.records import RoomLiveState, RoomTelemetrySnapshot
from services.timers import elapsed_seconds, remaining_seconds
from services.worker import TickReport


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {'-' if value is None else value}")


def _clock(seconds: int) -> str:
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def render_live_state(state: RoomLiveState, now: datetime) -> None:
    echo_heading(f"Room {state.room_id}")
    echo_key_values(
        [
            ("ach_theoretical", f"{state.ach_theoretical:.2f}"),
            ("ach_empirical", f"{state.ach_empirical:.2f}"),
            ("temperature", state.current_temperature),
            ("pressure", state.current_pressure),
            ("trigger", state.current_trigger),
            ("cycle_started_at", state.cycle_start_time),
            ("last_processed_at", state.last_processed_at),
        ]
    )

    typer.echo()
    echo_heading("Medical gases")
    echo_key_values(
        [
            ("oxygen", state.oxygen),
            ("nitrous", state.nitrous),
            ("air", state.air),
            ("vacuum", state.vacuum),
            ("instrument", state.instrument),
            ("carbon", state.carbon),
        ]
    )

    typer.echo()
    echo_heading("Timers")
    stopwatch = "running" if state.op_is_running else "stopped"
    countdown = "running" if state.cd_is_running else "stopped"
    typer.echo(f"stopwatch: {_clock(elapsed_seconds(state, now))} ({stopwatch})")
    typer.echo(f"countdown: {_clock(remaining_seconds(state, now))} ({countdown})")


def render_snapshot(snapshot: RoomTelemetrySnapshot) -> None:
    echo_heading(f"Telemetry {snapshot.room_id}")
    echo_key_values(
        [
            ("updated_at", snapshot.updated_at.isoformat()),
            ("flow_rate", snapshot.flow_rate),
            ("volume", snapshot.volume),
            ("trigger", snapshot.trigger),
        ]
    )


def render_tick(report: TickReport) -> None:
    echo_heading("Tick")
    echo_key_values(
        [
            ("reconciled", report.reconciled),
            ("skipped", report.skipped),
            ("failed", report.failed),
        ]
    )
    for room_id, outcome in sorted(report.outcomes.items()):
        typer.echo(f"  - {room_id}: {outcome.value}")
