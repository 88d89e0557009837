from __future__ import annotations

import fcntl
import json
import os
import tempfile
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Callable, Dict, Generic, Iterator, List, Optional, Type, TypeVar

from pydantic import BaseModel

from datastore.errors import (
    LiveStateNotFoundError,
    StaleLiveStateError,
    TelemetryNotFoundError,
)
from models.records import RoomLiveState, RoomTelemetrySnapshot, TelemetryReading
from settings import get_settings

RecordT = TypeVar("RecordT", bound=BaseModel)
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _JsonTable(Generic[RecordT]):
    """Room-keyed records held in memory and mirrored to a JSON file.

    When a persistence path is set the file is the source of truth: every
    operation takes an exclusive lock on a sibling ``.lock`` file and reloads
    the records before reading or writing, so several processes can share
    one table without overwriting each other's rows.
    """

    record_type: Type[RecordT]

    def __init__(self, name: str, persistence_path: Optional[Path] = None) -> None:
        self.name = name
        self._items: Dict[str, RecordT] = {}
        self.persistence_path = persistence_path
        self._lock = Lock()
        if persistence_path:
            persistence_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_from_disk()

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with self._lock:
            if not self.persistence_path:
                yield
                return
            lock_path = self.persistence_path.with_name(self.persistence_path.name + ".lock")
            with open(lock_path, "a") as lock_file:
                fcntl.flock(lock_file, fcntl.LOCK_EX)
                try:
                    self._load_from_disk()
                    yield
                finally:
                    fcntl.flock(lock_file, fcntl.LOCK_UN)

    def _scan(self) -> List[RecordT]:
        return [self._items[key].model_copy(deep=True) for key in sorted(self._items)]

    def _store(self, room_id: str, item: RecordT) -> RecordT:
        self._items[room_id] = item.model_copy(deep=True)
        self._persist()
        return item

    def _persist(self) -> None:
        if not self.persistence_path:
            return
        payload = {
            room_id: item.model_dump(mode="json") for room_id, item in self._items.items()
        }
        # Readers never see a half-written file.
        with tempfile.NamedTemporaryFile(
            "w",
            dir=self.persistence_path.parent,
            prefix=f".{self.persistence_path.name}.",
            suffix=".tmp",
            delete=False,
        ) as handle:
            handle.write(json.dumps(payload, indent=2, sort_keys=True))
        os.replace(handle.name, self.persistence_path)

    def _load_from_disk(self) -> None:
        if not self.persistence_path or not self.persistence_path.exists():
            return

        try:
            raw = self.persistence_path.read_text() or "{}"
            data = json.loads(raw)
        except (OSError, json.JSONDecodeError):
            data = {}

        self._items = {
            room_id: self.record_type.model_validate(payload) for room_id, payload in data.items()
        }


class TelemetryTable(_JsonTable[RoomTelemetrySnapshot]):
    """Raw telemetry store: one snapshot per room, stamped on every write."""

    record_type = RoomTelemetrySnapshot

    def __init__(
        self,
        name: str,
        persistence_path: Optional[Path] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._clock = clock
        super().__init__(name=name, persistence_path=persistence_path)

    def list_all_room_telemetry(self) -> List[RoomTelemetrySnapshot]:
        with self._locked():
            return self._scan()

    def get_room_telemetry(self, room_id: str) -> RoomTelemetrySnapshot:
        with self._locked():
            item = self._items.get(room_id)
            if item is None:
                raise TelemetryNotFoundError(room_id)
            return item.model_copy(deep=True)

    def provision_room_telemetry(self, room_id: str, volume: int) -> RoomTelemetrySnapshot:
        """Create the room's snapshot, or update its configured volume if it exists."""
        with self._locked():
            existing = self._items.get(room_id)
            stamp = self._next_timestamp(existing)
            if existing is None:
                snapshot = RoomTelemetrySnapshot(room_id=room_id, updated_at=stamp, volume=volume)
            else:
                snapshot = existing.model_copy(
                    deep=True, update={"volume": volume, "updated_at": stamp}
                )
            return self._store(room_id, snapshot)

    def record_room_telemetry(
        self, room_id: str, reading: TelemetryReading
    ) -> RoomTelemetrySnapshot:
        """Overwrite the room's sensor fields with a device reading."""
        with self._locked():
            existing = self._items.get(room_id)
            if existing is None:
                raise TelemetryNotFoundError(room_id)
            snapshot = RoomTelemetrySnapshot(
                room_id=room_id,
                updated_at=self._next_timestamp(existing),
                volume=existing.volume,
                **reading.model_dump(),
            )
            return self._store(room_id, snapshot)

    def _next_timestamp(self, existing: Optional[RoomTelemetrySnapshot]) -> datetime:
        now = self._clock()
        if existing is not None and now <= existing.updated_at:
            return existing.updated_at + timedelta(microseconds=1)
        return now


class LiveStateTable(_JsonTable[RoomLiveState]):
    """Derived live-state store with a version check on every save."""

    record_type = RoomLiveState

    def list_all_live_states(self) -> List[RoomLiveState]:
        with self._locked():
            return self._scan()

    def ensure_live_state_exists(self, room_id: str) -> None:
        with self._locked():
            if room_id in self._items:
                return
            self._store(room_id, RoomLiveState(room_id=room_id))

    def get_live_state(self, room_id: str) -> RoomLiveState:
        with self._locked():
            item = self._items.get(room_id)
            if item is None:
                raise LiveStateNotFoundError(room_id)
            return item.model_copy(deep=True)

    def save_live_state(self, state: RoomLiveState) -> RoomLiveState:
        """Upsert the full row if ``state.version`` is still current.

        Returns the stored copy carrying the incremented version. Raises
        :class:`StaleLiveStateError` when another writer saved in between.
        """
        with self._locked():
            current = self._items.get(state.room_id)
            actual = current.version if current is not None else 0
            if state.version != actual:
                raise StaleLiveStateError(state.room_id, expected=state.version, actual=actual)
            stored = state.model_copy(deep=True, update={"version": actual + 1})
            return self._store(state.room_id, stored)


@lru_cache
def build_default_telemetry_table(path: Optional[str] = None) -> TelemetryTable:
    settings = get_settings()
    table_path = settings.telemetry_table_path if path is None else path
    persistence = Path(table_path) if table_path else None
    return TelemetryTable(name="room_telemetry", persistence_path=persistence)


@lru_cache
def build_default_live_state_table(path: Optional[str] = None) -> LiveStateTable:
    settings = get_settings()
    table_path = settings.live_state_table_path if path is None else path
    persistence = Path(table_path) if table_path else None
    return LiveStateTable(name="room_live_state", persistence_path=persistence)
