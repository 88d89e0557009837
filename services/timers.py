"""Admin-controlled operation stopwatch and countdown timer."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from datastore.contracts import LiveStateRepository
from datastore.errors import StaleLiveStateError
from datastore.tables import Clock, utcnow
from models.records import DEFAULT_COUNTDOWN_SECONDS, RoomLiveState

logger = logging.getLogger(__name__)

DEFAULT_COUNTDOWN_MINUTES = DEFAULT_COUNTDOWN_SECONDS // 60


class TimerStateError(ValueError):
    """The requested transition is not valid from the timer's current state."""


class TimerAction(str, Enum):
    start = "start"
    stop = "stop"
    reset = "reset"


Mutation = Callable[[RoomLiveState, datetime], None]


class TimerService:
    """Read-modify-write transitions on the timer fields of a live-state row.

    Saves go through the store's version check, so a concurrent worker save
    forces a re-read instead of overwriting the derived fields.
    """

    def __init__(
        self,
        live_states: LiveStateRepository,
        clock: Clock = utcnow,
        save_attempts: int = 3,
    ) -> None:
        self.live_states = live_states
        self.clock = clock
        self.save_attempts = max(1, save_attempts)

    def apply_stopwatch_action(
        self, room_id: str, action: TimerAction | str, actor: Optional[str] = None
    ) -> RoomLiveState:
        handlers = {
            TimerAction.start: self.start_stopwatch,
            TimerAction.stop: self.stop_stopwatch,
            TimerAction.reset: self.reset_stopwatch,
        }
        return handlers[_parse_action(action)](room_id, actor=actor)

    def apply_countdown_action(
        self,
        room_id: str,
        action: TimerAction | str,
        duration_minutes: Optional[int] = None,
        actor: Optional[str] = None,
    ) -> RoomLiveState:
        parsed = _parse_action(action)
        if parsed is TimerAction.start:
            return self.start_countdown(room_id, duration_minutes, actor=actor)
        if parsed is TimerAction.stop:
            return self.stop_countdown(room_id, actor=actor)
        return self.reset_countdown(room_id, actor=actor)

    def start_stopwatch(self, room_id: str, actor: Optional[str] = None) -> RoomLiveState:
        def mutate(state: RoomLiveState, now: datetime) -> None:
            if state.op_is_running:
                raise TimerStateError("timer is already running")
            state.op_start_time = now
            state.op_is_running = True

        return self._update(room_id, mutate, "stopwatch_start", actor)

    def stop_stopwatch(self, room_id: str, actor: Optional[str] = None) -> RoomLiveState:
        def mutate(state: RoomLiveState, now: datetime) -> None:
            if not state.op_is_running:
                raise TimerStateError("timer is not running")
            if state.op_start_time is not None:
                elapsed = int((now - state.op_start_time).total_seconds())
                state.op_accumulated_seconds += max(0, elapsed)
            state.op_start_time = None
            state.op_is_running = False

        return self._update(room_id, mutate, "stopwatch_stop", actor)

    def reset_stopwatch(self, room_id: str, actor: Optional[str] = None) -> RoomLiveState:
        def mutate(state: RoomLiveState, now: datetime) -> None:
            state.op_start_time = None
            state.op_accumulated_seconds = 0
            state.op_is_running = False

        return self._update(room_id, mutate, "stopwatch_reset", actor)

    def start_countdown(
        self,
        room_id: str,
        duration_minutes: Optional[int] = None,
        actor: Optional[str] = None,
    ) -> RoomLiveState:
        minutes = DEFAULT_COUNTDOWN_MINUTES
        if duration_minutes is not None and duration_minutes > 0:
            minutes = duration_minutes

        def mutate(state: RoomLiveState, now: datetime) -> None:
            if state.cd_is_running:
                raise TimerStateError("countdown timer is already running")
            state.cd_target_time = now + timedelta(minutes=minutes)
            state.cd_duration_seconds = minutes * 60
            state.cd_is_running = True

        return self._update(room_id, mutate, "countdown_start", actor)

    def stop_countdown(self, room_id: str, actor: Optional[str] = None) -> RoomLiveState:
        def mutate(state: RoomLiveState, now: datetime) -> None:
            if not state.cd_is_running:
                raise TimerStateError("countdown timer is not running")
            state.cd_is_running = False

        return self._update(room_id, mutate, "countdown_stop", actor)

    def reset_countdown(self, room_id: str, actor: Optional[str] = None) -> RoomLiveState:
        def mutate(state: RoomLiveState, now: datetime) -> None:
            state.cd_target_time = None
            state.cd_duration_seconds = DEFAULT_COUNTDOWN_SECONDS
            state.cd_is_running = False

        return self._update(room_id, mutate, "countdown_reset", actor)

    def adjust_countdown(
        self, room_id: str, minutes: int, actor: Optional[str] = None
    ) -> RoomLiveState:
        """Shift a running countdown by ``minutes``, never to a point in the past."""

        def mutate(state: RoomLiveState, now: datetime) -> None:
            if not state.cd_is_running:
                raise TimerStateError("countdown timer is not running")
            if state.cd_target_time is None:
                raise TimerStateError("countdown timer has no target time set")
            target = state.cd_target_time + timedelta(minutes=minutes)
            if target < now:
                target = now + timedelta(seconds=1)
            state.cd_target_time = target

        action = "countdown_increase" if minutes >= 0 else "countdown_decrease"
        return self._update(room_id, mutate, action, actor)

    def _update(
        self, room_id: str, mutate: Mutation, action: str, actor: Optional[str]
    ) -> RoomLiveState:
        attempt = 1
        while True:
            state = self.live_states.get_live_state(room_id)
            mutate(state, self.clock())
            try:
                saved = self.live_states.save_live_state(state)
            except StaleLiveStateError:
                if attempt >= self.save_attempts:
                    raise
                attempt += 1
                continue
            logger.info(
                "Timer updated",
                extra={"room_id": room_id, "action": action, "actor": actor},
            )
            return saved


def _parse_action(action: TimerAction | str) -> TimerAction:
    try:
        return TimerAction(action)
    except ValueError as exc:
        raise ValueError("invalid action: must be 'start', 'stop', or 'reset'") from exc


def elapsed_seconds(state: RoomLiveState, now: datetime) -> int:
    """Stopwatch total including the span since the current start."""
    total = state.op_accumulated_seconds
    if state.op_is_running and state.op_start_time is not None:
        total += max(0, int((now - state.op_start_time).total_seconds()))
    return total


def remaining_seconds(state: RoomLiveState, now: datetime) -> int:
    """Seconds left on a running countdown, zero once expired or idle."""
    if not state.cd_is_running or state.cd_target_time is None:
        return 0
    return max(0, int((state.cd_target_time - now).total_seconds()))
