import pytest

from tandem.runtime.contracts import (
    ProblemState,
    ReloadResult,
    ReloadStatus,
    SupervisorEvent,
    SupervisorState,
    WatcherEvent,
    WatcherState,
    transition_supervisor_state,
    transition_watcher_state,
)


def test_watcher_state_transitions_happy_path():
    state = WatcherState.STOPPED
    state = transition_watcher_state(state, WatcherEvent.START)
    assert state == WatcherState.WATCHING

    state = transition_watcher_state(state, WatcherEvent.FILE_CHANGE)
    assert state == WatcherState.CHANGE_DETECTED

    state = transition_watcher_state(state, WatcherEvent.DEBOUNCE_WINDOW_OPEN)
    assert state == WatcherState.DEBOUNCING

    state = transition_watcher_state(state, WatcherEvent.DEBOUNCE_ELAPSED)
    assert state == WatcherState.RELOADING

    state = transition_watcher_state(state, WatcherEvent.RELOAD_FAILURE)
    assert state == WatcherState.WATCHING


def test_watcher_state_rejects_invalid_transition():
    with pytest.raises(ValueError):
        transition_watcher_state(WatcherState.WATCHING, WatcherEvent.DEBOUNCE_ELAPSED)


def test_supervisor_cycle_returns_to_idle_after_success_and_failure():
    state = transition_supervisor_state(SupervisorState.STOPPED, SupervisorEvent.START)
    assert state == SupervisorState.IDLE

    for outcome in (SupervisorEvent.LOAD_SUCCESS, SupervisorEvent.LOAD_FAILURE):
        state = transition_supervisor_state(state, SupervisorEvent.CHANGE)
        assert state == SupervisorState.DRAINING
        state = transition_supervisor_state(state, SupervisorEvent.DRAINED)
        assert state == SupervisorState.RELOADING
        state = transition_supervisor_state(state, outcome)
        assert state == SupervisorState.IDLE


def test_supervisor_stop_is_accepted_from_any_state():
    for state in SupervisorState:
        assert transition_supervisor_state(state, SupervisorEvent.STOP) == SupervisorState.STOPPED


@pytest.mark.parametrize(
    "state,event",
    [
        (SupervisorState.STOPPED, SupervisorEvent.CHANGE),
        (SupervisorState.IDLE, SupervisorEvent.DRAINED),
        (SupervisorState.DRAINING, SupervisorEvent.LOAD_SUCCESS),
        (SupervisorState.RELOADING, SupervisorEvent.CHANGE),
    ],
)
def test_supervisor_rejects_out_of_order_events(state, event):
    with pytest.raises(ValueError):
        transition_supervisor_state(state, event)


def test_problem_state_reports_recovery_only_after_a_failure():
    problem = ProblemState()
    assert problem.has_problem is False
    assert problem.record_success() is False

    problem.record_failure()
    problem.record_failure()
    assert problem.has_problem is True

    assert problem.record_success() is True
    assert problem.record_success() is False


def test_reload_result_defaults():
    result = ReloadResult(status=ReloadStatus.SKIPPED)
    assert result.changed_paths == []
    assert result.recovered is False
    assert result.diagnostics == []
