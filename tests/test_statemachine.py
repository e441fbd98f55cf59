import pytest

from covtrace.statemachine import (
    NullStateData,
    RunError,
    StateData,
    StateMachineError,
    TestRuntimeError,
    TestState,
    TestStateKind,
    TracerAction,
    TracerActionKind,
    TracerConfig,
)


class FakeData(StateData):
    def __init__(self, start=None, wait=None, last=None, init=None, stop=None):
        self._start = start
        self._wait = wait
        self._last = last
        self._init = init
        self._stop = stop
        self.calls = []

    def start(self):
        self.calls.append("start")
        return self._start

    def init(self):
        self.calls.append("init")
        return self._init

    def wait(self):
        self.calls.append("wait")
        return self._wait

    def last_wait_attempt(self):
        self.calls.append("last")
        return self._last

    def stop(self):
        self.calls.append("stop")
        return self._stop


LONG = TracerConfig(test_timeout=1000.0)
NONE = TracerConfig(test_timeout=0.0)


def test_start_returns_data_state():
    data = FakeData(start=TestState.initialise())
    nxt = TestState.start_state().step(data, LONG)
    assert nxt.kind is TestStateKind.INITIALISE
    assert data.calls == ["start"]


def test_start_keeps_waiting_before_timeout():
    state = TestState.start_state()
    assert state.step(FakeData(), LONG) is state


def test_start_times_out():
    with pytest.raises(TestRuntimeError, match="starting test"):
        TestState.start_state().step(FakeData(), NONE)


def test_initialise_calls_init():
    data = FakeData(init=TestState.wait_state())
    assert TestState.initialise().step(data, LONG).kind is TestStateKind.WAITING
    assert data.calls == ["init"]


def test_waiting_without_event_stays():
    state = TestState.wait_state()
    assert state.step(FakeData(), LONG) is state


def test_waiting_timeout_uses_last_attempt():
    data = FakeData(last=TestState.end(4))
    nxt = TestState.wait_state().step(data, NONE)
    assert nxt == TestState.end(4)
    assert data.calls == ["wait", "last"]


def test_waiting_timeout_without_result_raises():
    with pytest.raises(TestRuntimeError, match="waiting for test response"):
        TestState.wait_state().step(FakeData(), NONE)


def test_stopped_calls_stop():
    data = FakeData(stop=TestState.end(0))
    assert TestState.stopped().step(data, LONG) == TestState.end(0)
    assert data.calls == ["stop"]


def test_end_is_terminal():
    data = FakeData()
    state = TestState.end(7)
    assert state.step(data, LONG) == state
    assert state.is_finished()
    assert data.calls == []


def test_only_end_is_finished():
    assert not TestState.wait_state().is_finished()
    assert not TestState.start_state().is_finished()
    assert not TestState.stopped().is_finished()


def test_wait_states_compare_equal():
    assert TestState.wait_state() == TestState.wait_state()
    assert TestState.end(1) != TestState.end(2)


@pytest.mark.parametrize(
    "kind",
    [
        TracerActionKind.CONTINUE,
        TracerActionKind.TRY_CONTINUE,
        TracerActionKind.STEP,
        TracerActionKind.DETACH,
    ],
)
def test_action_data(kind):
    assert TracerAction(kind, 42).get_data() == 42


def test_nothing_has_no_data():
    assert TracerAction(TracerActionKind.NOTHING, 42).get_data() is None


@pytest.mark.parametrize("method", ["start", "init", "wait", "last_wait_attempt", "stop"])
def test_null_state_data_fails(method):
    with pytest.raises(StateMachineError, match="No valid coverage collector"):
        getattr(NullStateData(), method)()


def test_null_state_data_through_step():
    with pytest.raises(RunError):
        TestState.start_state().step(NullStateData(), LONG)