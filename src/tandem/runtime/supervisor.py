from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional, Set

from tandem.cli.formatter import OutputFormatter
from tandem.core.models import BuildOptions
from tandem.runtime.contracts import (
    ProblemState,
    ReloadResult,
    ReloadStatus,
    SupervisorEvent,
    SupervisorState,
    transition_supervisor_state,
)
from tandem.runtime.loader import ServerHandle, guess_compiled_path, guess_server_path, load_server
from tandem.runtime.polling_watcher import PollingWatcher
from tandem.utils.diagnostics import TandemError

PUBLIC_PREFIX = "public/"


@dataclass
class ActiveServer:
    """The loaded server and the listener it is bound to."""

    handle: ServerHandle
    listener: Any

    def destroy(self) -> None:
        destroy = getattr(self.listener, "destroy", None) or getattr(self.listener, "close", None)
        if callable(destroy):
            destroy()


@dataclass(frozen=True)
class ReloadLifecycleEvent:
    """Host-facing reload lifecycle event payload."""

    result: ReloadResult


ReloadCallback = Callable[[ReloadLifecycleEvent], None]


class HotReloadSupervisor:
    """
    Owns the single live listener and swaps it whenever the server changes.

    One reload cycle: destroy the current listener (open connections too),
    load the server fresh, bind a new listener on the same port. A failed
    load leaves the server down until the next successful cycle, so stale
    code is never served next to new code.
    """

    def __init__(
        self,
        options: BuildOptions,
        loader: Callable[[BuildOptions], ServerHandle] = load_server,
        on_reload_success: Optional[ReloadCallback] = None,
        on_reload_failure: Optional[ReloadCallback] = None,
        on_recovered: Optional[ReloadCallback] = None,
    ) -> None:
        self.options = options
        self.loader = loader
        self.on_reload_success = on_reload_success
        self.on_reload_failure = on_reload_failure
        self.on_recovered = on_recovered

        self.state = SupervisorState.STOPPED
        self.active: Optional[ActiveServer] = None
        self.problem = ProblemState()
        self.reload_count = 0

        self.watch_root = self._watch_root()
        self.ignored_prefixes = self._ignored_prefixes()

        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._watcher: Optional[PollingWatcher] = None
        self._watch_thread: Optional[threading.Thread] = None

    @property
    def url(self) -> str:
        return f"http://localhost:{self.options.port}"

    def start(self, watch: Optional[bool] = None) -> ActiveServer:
        """
        Load the server and bring up the first listener.

        Errors propagate: a server that cannot load at startup ends the session.
        """
        self.state = transition_supervisor_state(self.state, SupervisorEvent.START)
        self.active = self._bind()
        if self.options.is_logging_enabled:
            OutputFormatter.running(self.url)

        if watch is None:
            watch = not self.options.is_production
        if watch:
            self.start_watching()
        return self.active

    def start_watching(self) -> None:
        if self._watch_thread is not None:
            return

        settings = self.options.watch
        self._watcher = PollingWatcher(
            root_dir=self.watch_root,
            interval_ms=settings.interval_ms,
            debounce_ms=settings.debounce_ms,
            include_patterns=settings.include_patterns,
            exclude_patterns=settings.exclude_patterns,
        )
        self._watcher.start()
        self._stop_event.clear()
        self._watch_thread = threading.Thread(
            target=self._watcher.run,
            args=(self._stop_event, self._handle_batch),
            name="tandem-reload-watch",
            daemon=True,
        )
        self._watch_thread.start()

    def stop(self) -> None:
        """Stop watching and take the listener down."""
        self._stop_event.set()
        if self._watch_thread is not None and self._watch_thread.is_alive():
            self._watch_thread.join(timeout=2)
        if self._watcher is not None:
            self._watcher.stop()

        self._watch_thread = None
        self._watcher = None

        with self._cycle_lock:
            self._drain()
            self.state = transition_supervisor_state(self.state, SupervisorEvent.STOP)

    def is_relevant(self, path: str) -> bool:
        """False for changes the client bundler writes itself (compiled public assets)."""
        normalized = path.replace("\\", "/")
        if normalized.startswith("./"):
            normalized = normalized[2:]
        return not any(
            normalized == prefix.rstrip("/") or normalized.startswith(prefix)
            for prefix in self.ignored_prefixes
        )

    def handle_change(self, paths: Iterable[str]) -> ReloadResult:
        """React to a batch of changed paths relative to the watched server directory."""
        relevant = [path for path in paths if self.is_relevant(path)]
        if not relevant:
            return ReloadResult(status=ReloadStatus.SKIPPED)

        with self._cycle_lock:
            if self.state == SupervisorState.STOPPED:
                return ReloadResult(status=ReloadStatus.SKIPPED, changed_paths=relevant)
            return self._run_reload_cycle(relevant)

    def _handle_batch(self, paths: List[str]) -> bool:
        return self.handle_change(paths).status != ReloadStatus.FAILURE

    def _run_reload_cycle(self, changed_paths: List[str]) -> ReloadResult:
        self.state = transition_supervisor_state(self.state, SupervisorEvent.CHANGE)
        self._drain()
        self.state = transition_supervisor_state(self.state, SupervisorEvent.DRAINED)

        self.reload_count += 1
        try:
            self.active = self._bind()
        except Exception as error:
            self.problem.record_failure()
            self.state = transition_supervisor_state(self.state, SupervisorEvent.LOAD_FAILURE)
            OutputFormatter.print_error(error)

            diagnostics = [error.to_diagnostic()] if isinstance(error, TandemError) else []
            result = ReloadResult(status=ReloadStatus.FAILURE, changed_paths=changed_paths, diagnostics=diagnostics)
            if self.on_reload_failure is not None:
                self.on_reload_failure(ReloadLifecycleEvent(result=result))
            return result

        recovered = self.problem.record_success()
        self.state = transition_supervisor_state(self.state, SupervisorEvent.LOAD_SUCCESS)
        if recovered and self.options.is_logging_enabled:
            OutputFormatter.resolved()
            OutputFormatter.running(self.url, again=True)

        result = ReloadResult(status=ReloadStatus.SUCCESS, changed_paths=changed_paths, recovered=recovered)
        event = ReloadLifecycleEvent(result=result)
        if self.on_reload_success is not None:
            self.on_reload_success(event)
        if recovered and self.on_recovered is not None:
            self.on_recovered(event)
        return result

    def _bind(self) -> ActiveServer:
        handle = self.loader(self.options)
        listener = handle.listen(self.options.port)
        return ActiveServer(handle=handle, listener=listener)

    def _drain(self) -> None:
        if self.active is None:
            return
        active, self.active = self.active, None
        active.destroy()

    def _watch_root(self) -> Path:
        server_path = guess_server_path(self.options)
        return server_path.parent if server_path.is_file() else server_path

    def _ignored_prefixes(self) -> Set[str]:
        prefixes = {PUBLIC_PREFIX}
        public_dir = guess_compiled_path(self.options) / "public"
        try:
            relative = public_dir.resolve().relative_to(self.watch_root.resolve())
        except ValueError:
            return prefixes
        prefixes.add(relative.as_posix().rstrip("/") + "/")
        return prefixes
