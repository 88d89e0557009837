"""Exceptions raised by room telemetry and live-state stores."""

from __future__ import annotations


class StoreError(Exception):
    """Base exception for store failures."""


class TelemetryNotFoundError(StoreError, KeyError):
    """No raw telemetry row exists for the room."""

    def __init__(self, room_id: str) -> None:
        self.room_id = room_id
        super().__init__(f"Raw telemetry for room {room_id!r} not found.")

    def __str__(self) -> str:
        return self.args[0]


class LiveStateNotFoundError(StoreError, KeyError):
    """No live-state row exists for the room."""

    def __init__(self, room_id: str) -> None:
        self.room_id = room_id
        super().__init__(f"Live state for room {room_id!r} not found.")

    def __str__(self) -> str:
        return self.args[0]


class StaleLiveStateError(StoreError):
    """A live-state save was based on a version that is no longer current."""

    def __init__(self, room_id: str, expected: int, actual: int) -> None:
        self.room_id = room_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Live state for room {room_id!r} changed concurrently "
            f"(saved from version {expected}, store has {actual})."
        )
