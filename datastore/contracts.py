from typing import List, Protocol

from models.records import RoomLiveState, RoomTelemetrySnapshot, TelemetryReading


class TelemetryRepository(Protocol):
    def list_all_room_telemetry(self) -> List[RoomTelemetrySnapshot]: ...

    def get_room_telemetry(self, room_id: str) -> RoomTelemetrySnapshot: ...

    def provision_room_telemetry(self, room_id: str, volume: int) -> RoomTelemetrySnapshot: ...

    def record_room_telemetry(
        self, room_id: str, reading: TelemetryReading
    ) -> RoomTelemetrySnapshot: ...


class LiveStateRepository(Protocol):
    def list_all_live_states(self) -> List[RoomLiveState]: ...

    def ensure_live_state_exists(self, room_id: str) -> None: ...

    def get_live_state(self, room_id: str) -> RoomLiveState: ...

    def save_live_state(self, state: RoomLiveState) -> RoomLiveState: ...
