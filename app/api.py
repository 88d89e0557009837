"""HTTP route definitions for the process host."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from app.schemas import HealthResponse, LastTick, WorkerHealth
from services.worker import TelemetryWorker, build_default_worker

router = APIRouter()


def get_worker() -> TelemetryWorker:
    return build_default_worker()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check including telemetry worker status.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck(worker: TelemetryWorker = Depends(get_worker)) -> HealthResponse:
    report = worker.last_tick
    last_tick = None
    if report is not None:
        last_tick = LastTick(
            started_at=report.started_at,
            reconciled=report.reconciled,
            skipped=report.skipped,
            failed=report.failed,
            cancelled=report.cancelled,
        )
    return HealthResponse(
        status="ok" if worker.is_running else "degraded",
        worker=WorkerHealth(
            running=worker.is_running,
            tick_interval_ms=round(worker.tick_interval * 1000),
            ticks_completed=worker.ticks_completed,
            last_tick=last_tick,
        ),
    )


@router.get(
    "/",
    summary="Root endpoint mirrors health information.",
    status_code=status.HTTP_200_OK,
)
async def root() -> dict[str, str]:
    return {"status": "ok", "detail": "See /health for service status."}
