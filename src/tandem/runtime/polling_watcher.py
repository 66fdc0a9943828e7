from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from fnmatch import fnmatch
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from tandem.runtime.contracts import (
    WatcherEvent,
    WatcherState,
    transition_watcher_state,
)


@dataclass(frozen=True)
class WatcherPollResult:
    """Result from one watcher poll cycle."""

    should_reload: bool
    changed_paths: List[str]


class PollingWatcher:
    """Recursive mtime-snapshot watcher with include/exclude filters and debounce.

    Changes seen while a batch is being handled (state RELOADING) are not lost:
    they stay out of the snapshot until the next poll after `complete_reload`,
    so they are coalesced into the following batch.
    """

    def __init__(
        self,
        root_dir: Path,
        interval_ms: int = 250,
        debounce_ms: int = 150,
        include_patterns: Optional[List[str]] = None,
        exclude_patterns: Optional[List[str]] = None,
    ) -> None:
        self.root_dir = root_dir
        self.interval_ms = interval_ms
        self.debounce_ms = debounce_ms
        self.include_patterns = include_patterns or ["*"]
        self.exclude_patterns = exclude_patterns or []

        self.state: WatcherState = WatcherState.STOPPED
        self._snapshot: Dict[str, int] = {}
        self._pending_changes: Set[str] = set()
        self._last_change_at: Optional[float] = None

    def start(self) -> None:
        """Start watcher lifecycle and take the baseline snapshot."""
        self.state = transition_watcher_state(self.state, WatcherEvent.START)
        self._snapshot = self._build_snapshot()

    def stop(self) -> None:
        self.state = transition_watcher_state(self.state, WatcherEvent.STOP)

    def complete_reload(self, success: bool) -> None:
        """Finish handling a batch and resume watching."""
        if self.state != WatcherState.RELOADING:
            return
        event = WatcherEvent.RELOAD_SUCCESS if success else WatcherEvent.RELOAD_FAILURE
        self.state = transition_watcher_state(self.state, event)

    def poll(self, now: float) -> WatcherPollResult:
        """Execute one poll cycle and report whether a debounced batch is ready."""
        if self.state == WatcherState.STOPPED:
            raise RuntimeError("PollingWatcher is not started. Call start() before poll().")

        if self.state == WatcherState.RELOADING:
            return WatcherPollResult(should_reload=False, changed_paths=[])

        current_snapshot = self._build_snapshot()
        changed_paths = self._detect_changes(self._snapshot, current_snapshot)
        self._snapshot = current_snapshot

        if changed_paths:
            self._pending_changes.update(changed_paths)
            self._last_change_at = now
            self.state = transition_watcher_state(self.state, WatcherEvent.FILE_CHANGE)
            self.state = transition_watcher_state(self.state, WatcherEvent.DEBOUNCE_WINDOW_OPEN)
            return WatcherPollResult(should_reload=False, changed_paths=[])

        if self.state == WatcherState.DEBOUNCING and self._last_change_at is not None:
            if (now - self._last_change_at) >= self.debounce_ms / 1000.0:
                self.state = transition_watcher_state(self.state, WatcherEvent.DEBOUNCE_ELAPSED)
                paths = sorted(self._pending_changes)
                self._pending_changes.clear()
                self._last_change_at = None
                return WatcherPollResult(should_reload=True, changed_paths=paths)

        return WatcherPollResult(should_reload=False, changed_paths=[])

    def run(self, stop_event: threading.Event, on_batch: Callable[[List[str]], bool]) -> None:
        """Poll until `stop_event` is set, handing each batch to `on_batch`.

        `on_batch` returns True on success; batches are handled one at a time.
        """
        interval_seconds = max(self.interval_ms / 1000.0, 0.05)
        while not stop_event.is_set():
            result = self.poll(now=time.monotonic())
            if result.should_reload:
                success = False
                try:
                    success = on_batch(result.changed_paths)
                finally:
                    self.complete_reload(success=success)
            stop_event.wait(interval_seconds)

    def tracked_paths(self) -> Set[str]:
        """Return current tracked relative paths from the latest snapshot."""
        return set(self._snapshot.keys())

    def _build_snapshot(self) -> Dict[str, int]:
        snapshot: Dict[str, int] = {}
        if not self.root_dir.exists():
            return snapshot

        for path in self.root_dir.rglob("*"):
            relative = path.relative_to(self.root_dir).as_posix()
            if not self._is_tracked_path(relative, path.name):
                continue

            try:
                if not path.is_file():
                    continue
                snapshot[relative] = path.stat().st_mtime_ns
            except FileNotFoundError:
                # Deleted between listing and stat; the next poll reports it.
                continue

        return snapshot

    def _is_tracked_path(self, relative_path: str, filename: str) -> bool:
        included = any(
            fnmatch(relative_path, pattern) or fnmatch(filename, pattern)
            for pattern in self.include_patterns
        )
        if not included:
            return False

        excluded = any(
            fnmatch(relative_path, pattern) or fnmatch(filename, pattern)
            for pattern in self.exclude_patterns
        )
        return not excluded

    @staticmethod
    def _detect_changes(previous: Dict[str, int], current: Dict[str, int]) -> Set[str]:
        previous_paths = set(previous.keys())
        current_paths = set(current.keys())

        changes = (current_paths ^ previous_paths)
        changes.update(
            path for path in previous_paths & current_paths if previous[path] != current[path]
        )
        return changes
