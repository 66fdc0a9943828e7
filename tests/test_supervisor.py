import threading
import time

import pytest

from tandem.cli.formatter import OutputFormatter
from tandem.core.models import WatchSettings
from tandem.runtime.contracts import ReloadStatus, SupervisorState
from tandem.runtime.loader import ServerHandle
from tandem.runtime.supervisor import HotReloadSupervisor
from tandem.utils.diagnostics import LoadError


class FakeListener:
    def __init__(self, port):
        self.port = port
        self.destroyed = False

    def destroy(self):
        self.destroyed = True


class FakeApp:
    def __init__(self, listeners):
        self.listeners = listeners

    def listen(self, port):
        listener = FakeListener(port)
        self.listeners.append(listener)
        return listener


class FakeLoader:
    """Stands in for load_server; fails while `failing` is set."""

    def __init__(self):
        self.listeners = []
        self.calls = 0
        self.failing = False

    def __call__(self, options):
        self.calls += 1
        if self.failing:
            raise LoadError("server failed to import", path="src/server")
        return ServerHandle(app=FakeApp(self.listeners), path=options.root_path / "src" / "server")


@pytest.fixture
def resolved_notices(monkeypatch):
    notices = []
    monkeypatch.setattr(OutputFormatter, "resolved", staticmethod(lambda: notices.append(True)))
    monkeypatch.setattr(OutputFormatter, "running", staticmethod(lambda url, again=False: None))
    monkeypatch.setattr(OutputFormatter, "print_error", staticmethod(lambda error: None))
    return notices


@pytest.fixture
def supervisor(make_options, root_dir, resolved_notices):
    (root_dir / "src" / "server").mkdir(parents=True)
    loader = FakeLoader()
    supervisor = HotReloadSupervisor(make_options(is_logging_enabled=True), loader=loader)
    supervisor.start(watch=False)
    yield supervisor, loader
    supervisor.stop()


def test_start_binds_one_listener_on_the_configured_port(supervisor):
    supervisor, loader = supervisor

    assert supervisor.state == SupervisorState.IDLE
    assert len(loader.listeners) == 1
    assert loader.listeners[0].port == 5000
    assert supervisor.active.listener is loader.listeners[0]


def test_public_bundle_changes_are_ignored(supervisor):
    supervisor, loader = supervisor

    result = supervisor.handle_change(["public/bundle.js"])

    assert result.status == ReloadStatus.SKIPPED
    assert supervisor.reload_count == 0
    assert loader.calls == 1
    assert loader.listeners[0].destroyed is False


def test_server_source_change_triggers_exactly_one_reload_and_swap(supervisor):
    supervisor, loader = supervisor

    result = supervisor.handle_change(["src/server/routes.js"])

    assert result.status == ReloadStatus.SUCCESS
    assert supervisor.reload_count == 1
    assert len(loader.listeners) == 2
    first, second = loader.listeners
    assert first.destroyed is True
    assert second.destroyed is False
    assert supervisor.active.listener is second


def test_mixed_batch_reloads_once(supervisor):
    supervisor, loader = supervisor

    supervisor.handle_change(["./public/bundle.js", "routes.py", "views/index.html.j2"])

    assert supervisor.reload_count == 1
    assert len(loader.listeners) == 2


def test_fail_then_succeed_emits_one_resolved_notice(supervisor, resolved_notices):
    supervisor, loader = supervisor

    loader.failing = True
    failed = supervisor.handle_change(["routes.py"])
    assert failed.status == ReloadStatus.FAILURE
    assert failed.diagnostics[0].error_code == "ERR_LOAD"
    assert supervisor.active is None
    assert loader.listeners[0].destroyed is True

    loader.failing = False
    recovered = supervisor.handle_change(["routes.py"])

    assert recovered.status == ReloadStatus.SUCCESS
    assert recovered.recovered is True
    assert resolved_notices == [True]
    assert supervisor.state == SupervisorState.IDLE


def test_fail_twice_emits_no_resolved_notice(supervisor, resolved_notices):
    supervisor, loader = supervisor

    loader.failing = True
    supervisor.handle_change(["routes.py"])
    supervisor.handle_change(["routes.py"])

    assert resolved_notices == []
    assert supervisor.active is None
    assert supervisor.problem.has_problem is True


def test_success_after_success_is_not_a_recovery(supervisor, resolved_notices):
    supervisor, loader = supervisor

    assert supervisor.handle_change(["routes.py"]).recovered is False
    assert resolved_notices == []


def test_lifecycle_callbacks(make_options, root_dir, resolved_notices):
    (root_dir / "src" / "server").mkdir(parents=True)
    loader = FakeLoader()
    events = []
    supervisor = HotReloadSupervisor(
        make_options(),
        loader=loader,
        on_reload_success=lambda event: events.append(("success", event.result.recovered)),
        on_reload_failure=lambda event: events.append(("failure", event.result.status)),
        on_recovered=lambda event: events.append(("recovered", event.result.status)),
    )
    supervisor.start(watch=False)

    loader.failing = True
    supervisor.handle_change(["routes.py"])
    loader.failing = False
    supervisor.handle_change(["routes.py"])
    supervisor.stop()

    assert events == [
        ("failure", ReloadStatus.FAILURE),
        ("success", True),
        ("recovered", ReloadStatus.SUCCESS),
    ]


def test_stop_destroys_listener_and_ignores_later_changes(supervisor):
    supervisor, loader = supervisor

    supervisor.stop()

    assert supervisor.state == SupervisorState.STOPPED
    assert loader.listeners[0].destroyed is True
    assert supervisor.handle_change(["routes.py"]).status == ReloadStatus.SKIPPED
    assert loader.calls == 1


def test_compiled_public_dir_inside_watch_root_is_ignored(make_options, root_dir, resolved_notices):
    (root_dir / "dist").mkdir()
    supervisor = HotReloadSupervisor(make_options(), loader=FakeLoader())

    # No server sources: the compiled output is watched and its public/ is skipped.
    assert supervisor.watch_root == root_dir / "dist"
    assert supervisor.is_relevant("public/index.html.j2") is False
    assert supervisor.is_relevant("server.py") is True


def test_watch_thread_reloads_on_file_change(make_options, root_dir, resolved_notices):
    server_dir = root_dir / "src" / "server"
    server_dir.mkdir(parents=True)
    loader = FakeLoader()
    options = make_options(watch=WatchSettings(interval_ms=50, debounce_ms=0))
    supervisor = HotReloadSupervisor(options, loader=loader)
    supervisor.start(watch=True)

    try:
        (server_dir / "routes.py").write_text("ROUTES = []\n")
        deadline = time.monotonic() + 5
        while supervisor.reload_count == 0 and time.monotonic() < deadline:
            time.sleep(0.05)
    finally:
        supervisor.stop()

    assert supervisor.reload_count == 1
    assert loader.listeners[-1].destroyed is True


class SlowLoader(FakeLoader):
    """Records how many loads overlap and whether two listeners were ever live together."""

    def __init__(self, delay=0.1):
        super().__init__()
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0
        self.overlapping_listeners = False
        self._lock = threading.Lock()

    def __call__(self, options):
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            time.sleep(self.delay)
            handle = super().__call__(options)
        finally:
            with self._lock:
                self.in_flight -= 1

        app = handle.app
        original_listen = app.listen

        def listen(port):
            if any(not listener.destroyed for listener in self.listeners):
                self.overlapping_listeners = True
            return original_listen(port)

        app.listen = listen
        return handle


def test_concurrent_changes_run_one_reload_cycle_at_a_time(make_options, root_dir, resolved_notices):
    (root_dir / "src" / "server").mkdir(parents=True)
    loader = SlowLoader()
    supervisor = HotReloadSupervisor(make_options(), loader=loader)
    supervisor.start(watch=False)

    results = []
    threads = [
        threading.Thread(target=lambda: results.append(supervisor.handle_change(["routes.py"])))
        for _ in range(3)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)
    supervisor.stop()

    assert [result.status for result in results] == [ReloadStatus.SUCCESS] * 3
    assert supervisor.reload_count == 3
    assert loader.max_in_flight == 1
    assert loader.overlapping_listeners is False
    assert len(loader.listeners) == 4
