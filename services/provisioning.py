"""Room provisioning and device reading ingestion."""

from __future__ import annotations

import logging

from datastore.contracts import LiveStateRepository, TelemetryRepository
from models.records import RoomTelemetrySnapshot, TelemetryReading

logger = logging.getLogger(__name__)


def provision_room(
    telemetry: TelemetryRepository,
    live_states: LiveStateRepository,
    room_id: str,
    volume: int,
) -> RoomTelemetrySnapshot:
    """Create both rows for a room. Re-provisioning only updates the volume."""
    room_id = room_id.strip()
    if not room_id:
        raise ValueError("room_id must not be empty.")
    if volume < 0:
        raise ValueError("volume cannot be negative.")

    snapshot = telemetry.provision_room_telemetry(room_id, volume)
    live_states.ensure_live_state_exists(room_id)
    logger.info("Room provisioned (volume=%d)", volume, extra={"room_id": room_id})
    return snapshot


def record_reading(
    telemetry: TelemetryRepository,
    room_id: str,
    reading: TelemetryReading,
) -> RoomTelemetrySnapshot:
    """Store a device reading; the worker picks it up on its next tick."""
    snapshot = telemetry.record_room_telemetry(room_id, reading)
    logger.debug(
        "Telemetry recorded",
        extra={"room_id": room_id, "updated_at": snapshot.updated_at},
    )
    return snapshot
