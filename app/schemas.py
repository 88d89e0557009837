"""Pydantic schemas for the HTTP host."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class LastTick(BaseModel):
    """Outcome counts of the most recent worker tick."""

    started_at: datetime
    reconciled: int = Field(..., ge=0)
    skipped: int = Field(..., ge=0)
    failed: int = Field(..., ge=0)
    cancelled: int = Field(..., ge=0)


class WorkerHealth(BaseModel):
    running: bool
    tick_interval_ms: int = Field(..., gt=0)
    ticks_completed: int = Field(..., ge=0)
    last_tick: Optional[LastTick] = None


class HealthResponse(BaseModel):
    status: str
    worker: WorkerHealth
