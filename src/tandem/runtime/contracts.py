from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from tandem.utils.diagnostics import TandemDiagnostic


class WatcherState(str, Enum):
    """High-level states for polling watcher lifecycle and reload progression."""

    STOPPED = "stopped"
    WATCHING = "watching"
    CHANGE_DETECTED = "change_detected"
    DEBOUNCING = "debouncing"
    RELOADING = "reloading"


class WatcherEvent(str, Enum):
    """Events that drive watcher state transitions."""

    START = "start"
    FILE_CHANGE = "file_change"
    DEBOUNCE_WINDOW_OPEN = "debounce_window_open"
    DEBOUNCE_ELAPSED = "debounce_elapsed"
    RELOAD_SUCCESS = "reload_success"
    RELOAD_FAILURE = "reload_failure"
    STOP = "stop"


class SupervisorState(str, Enum):
    """States of one hot-reload cycle around the live listener."""

    IDLE = "idle"
    DRAINING = "draining"
    RELOADING = "reloading"
    STOPPED = "stopped"


class SupervisorEvent(str, Enum):
    """Events that drive hot-reload supervisor transitions."""

    START = "start"
    CHANGE = "change"
    DRAINED = "drained"
    LOAD_SUCCESS = "load_success"
    LOAD_FAILURE = "load_failure"
    STOP = "stop"


class ReloadStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class ReloadResult(BaseModel):
    """Outcome of one reload cycle, handed to host callbacks."""

    model_config = ConfigDict(extra="forbid")

    status: ReloadStatus
    changed_paths: List[str] = Field(default_factory=list)
    recovered: bool = False
    diagnostics: List[TandemDiagnostic] = Field(default_factory=list)


class ProblemState:
    """Tracks the most recent failure of one watch loop to gate "fixed now" notices."""

    def __init__(self) -> None:
        self.last_problem_at: Optional[datetime] = None

    @property
    def has_problem(self) -> bool:
        return self.last_problem_at is not None

    def record_failure(self) -> None:
        self.last_problem_at = datetime.now(timezone.utc)

    def record_success(self) -> bool:
        """Clear the marker; returns True only when a failure had been recorded."""
        recovered = self.last_problem_at is not None
        self.last_problem_at = None
        return recovered


def transition_watcher_state(current: WatcherState, event: WatcherEvent) -> WatcherState:
    """Compute the next watcher state for a given event.

    Invalid transitions raise ValueError.
    """

    if event == WatcherEvent.STOP:
        return WatcherState.STOPPED

    if current == WatcherState.STOPPED:
        if event == WatcherEvent.START:
            return WatcherState.WATCHING
        raise ValueError(f"Invalid watcher transition: {current} -> {event}")

    if current == WatcherState.WATCHING:
        if event == WatcherEvent.FILE_CHANGE:
            return WatcherState.CHANGE_DETECTED
        raise ValueError(f"Invalid watcher transition: {current} -> {event}")

    if current == WatcherState.CHANGE_DETECTED:
        if event == WatcherEvent.DEBOUNCE_WINDOW_OPEN:
            return WatcherState.DEBOUNCING
        raise ValueError(f"Invalid watcher transition: {current} -> {event}")

    if current == WatcherState.DEBOUNCING:
        if event == WatcherEvent.FILE_CHANGE:
            return WatcherState.CHANGE_DETECTED
        if event == WatcherEvent.DEBOUNCE_ELAPSED:
            return WatcherState.RELOADING
        raise ValueError(f"Invalid watcher transition: {current} -> {event}")

    if current == WatcherState.RELOADING:
        if event in {WatcherEvent.RELOAD_SUCCESS, WatcherEvent.RELOAD_FAILURE}:
            return WatcherState.WATCHING
        raise ValueError(f"Invalid watcher transition: {current} -> {event}")

    raise ValueError(f"Unknown watcher state: {current}")


def transition_supervisor_state(current: SupervisorState, event: SupervisorEvent) -> SupervisorState:
    """Compute the next supervisor state.

    Idle -> Draining -> Reloading -> Idle. A failed load also returns to Idle,
    but without a listener; the next change starts a fresh cycle.
    """

    if event == SupervisorEvent.STOP:
        return SupervisorState.STOPPED

    if current == SupervisorState.STOPPED:
        if event == SupervisorEvent.START:
            return SupervisorState.IDLE
        raise ValueError(f"Invalid supervisor transition: {current} -> {event}")

    if current == SupervisorState.IDLE:
        if event == SupervisorEvent.CHANGE:
            return SupervisorState.DRAINING
        raise ValueError(f"Invalid supervisor transition: {current} -> {event}")

    if current == SupervisorState.DRAINING:
        if event == SupervisorEvent.DRAINED:
            return SupervisorState.RELOADING
        raise ValueError(f"Invalid supervisor transition: {current} -> {event}")

    if current == SupervisorState.RELOADING:
        if event in {SupervisorEvent.LOAD_SUCCESS, SupervisorEvent.LOAD_FAILURE}:
            return SupervisorState.IDLE
        raise ValueError(f"Invalid supervisor transition: {current} -> {event}")

    raise ValueError(f"Unknown supervisor state: {current}")
