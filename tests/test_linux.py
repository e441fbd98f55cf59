import errno
from pathlib import Path

import pytest

from covtrace.linux import LinuxData, create_state_machine
from covtrace.linux_types import (
    Breakpoint,
    BreakpointError,
    Exited,
    ProcessInfo,
    PtraceEvent,
    PtraceStop,
    Signal,
    Signaled,
    StillAlive,
    Stopped,
    TracerBackend,
)
from covtrace.statemachine import (
    TestRuntimeError,
    TestState,
    TestStateKind,
    TracerAction,
    TracerActionKind,
    TracerConfig,
)
from covtrace.traces import LineStat, Trace, TraceMap

OFFSET = 0x1000
PID = 100


class FakeBreakpoint(Breakpoint):
    def __init__(self, address):
        super().__init__(address)
        self.disabled = False
        self.killed = []

    def process(self, pid, reenable):
        return True, TracerAction(TracerActionKind.CONTINUE, ProcessInfo(pid))

    def jump_to(self, pid):
        pass

    def disable(self, pid):
        self.disabled = True

    def thread_killed(self, pid):
        self.killed.append(pid)


class FakeBackend(TracerBackend):
    def __init__(self, offset=OFFSET):
        self.statuses = []
        self.calls = []
        self.offset = offset
        self.pc = {}
        self.event_data = {}
        self.exe = {}
        self.clash_addresses = set()
        self.eio = False
        self.placed = {}

    def waitpid(self, pid):
        if not self.statuses:
            return StillAlive()
        status = self.statuses.pop(0)
        if isinstance(status, Exception):
            raise status
        return status

    def continue_exec(self, pid, signal):
        self.calls.append(("continue", pid, signal))

    def single_step(self, pid):
        self.calls.append(("step", pid))

    def detach_child(self, pid):
        self.calls.append(("detach", pid))

    def trace_children(self, pid):
        self.calls.append(("trace", pid))

    def get_event_data(self, pid):
        if pid not in self.event_data:
            raise OSError("no event data")
        return self.event_data[pid]

    def current_instruction_pointer(self, pid):
        if pid not in self.pc:
            raise OSError("no registers")
        return self.pc[pid]

    def address_offset(self, pid):
        return self.offset

    def thread_owner(self, pid, candidates):
        return None

    def executable(self, pid):
        return self.exe.get(pid)

    def new_breakpoint(self, pid, address):
        if self.eio:
            raise BreakpointError("io", errno.EIO)
        if address in self.clash_addresses:
            raise BreakpointError("clash")
        bp = FakeBreakpoint(address)
        self.placed[address] = bp
        return bp


def make_traces(addresses=(0x10,), file="src/lib.rs"):
    tm = TraceMap()
    tm.add_trace(file, Trace(line=3, address=set(addresses), length=1))
    return tm


def started(backend, traces, config=None, factory=None):
    state, data = create_state_machine(
        PID, traces, {}, config or TracerConfig(), backend, factory
    )
    backend.statuses.append(Stopped(PID, Signal.SIGTRAP))
    assert data.start() == TestState.initialise()
    assert data.init().kind is TestStateKind.WAITING
    backend.calls.clear()
    return data


def cycle(data, backend, status):
    backend.statuses.append(status)
    assert data.wait() == TestState.stopped()
    return data.stop()


def test_create_state_machine_starts_with_parent():
    state, data = create_state_machine(PID, TraceMap(), {}, TracerConfig(), FakeBackend())
    assert state.kind is TestStateKind.START
    assert data.parent == PID
    assert isinstance(data, LinuxData)


def test_start_still_alive_returns_none():
    _, data = create_state_machine(PID, TraceMap(), {}, TracerConfig(), FakeBackend())
    assert data.start() is None


def test_start_unexpected_status_raises():
    backend = FakeBackend()
    backend.statuses.append(Exited(PID, 0))
    _, data = create_state_machine(PID, TraceMap(), {}, TracerConfig(), backend)
    with pytest.raises(TestRuntimeError):
        data.start()


def test_start_wait_error_raises():
    backend = FakeBackend()
    backend.statuses.append(OSError("boom"))
    _, data = create_state_machine(PID, TraceMap(), {}, TracerConfig(), backend)
    with pytest.raises(TestRuntimeError, match="Error when starting test"):
        data.start()


def test_init_places_breakpoints_with_offset():
    backend = FakeBackend()
    data = started(backend, make_traces())
    process = data.processes[PID]
    assert process.is_test_proc
    assert set(process.breakpoints) == {0x10 + OFFSET}
    assert process.offset == OFFSET
    assert data.pid_map[PID] == PID


def test_init_no_pic_uses_zero_offset():
    backend = FakeBackend()
    data = started(backend, make_traces(), TracerConfig(no_pic=True))
    assert set(data.processes[PID].breakpoints) == {0x10}


def test_init_io_error_raises():
    backend = FakeBackend()
    backend.eio = True
    _, data = create_state_machine(PID, make_traces(), {}, TracerConfig(), backend)
    backend.statuses.append(Stopped(PID, Signal.SIGTRAP))
    data.start()
    with pytest.raises(TestRuntimeError):
        data.init()


def test_init_clash_disables_both_breakpoints():
    backend = FakeBackend()
    backend.clash_addresses = {0x12 + OFFSET}
    data = started(backend, make_traces((0x10, 0x12)))
    assert data.processes[PID].breakpoints == {}
    assert backend.placed[0x10 + OFFSET].disabled


def test_breakpoint_hit_increments_trace():
    backend = FakeBackend()
    traces = make_traces()
    data = started(backend, traces)
    backend.pc[PID] = 0x10 + OFFSET + 1
    state = cycle(data, backend, Stopped(PID, Signal.SIGTRAP))
    assert state.kind is TestStateKind.WAITING
    assert traces.get_trace(0x10).stats == LineStat(1)
    assert ("continue", PID, None) in backend.calls


def test_parent_exit_ends_test():
    backend = FakeBackend()
    data = started(backend, make_traces())
    state = cycle(data, backend, Exited(PID, 0))
    assert state == TestState.end(0)


def test_segfault_raises():
    backend = FakeBackend()
    data = started(backend, make_traces())
    backend.statuses.append(Stopped(PID, Signal.SIGSEGV))
    data.wait()
    with pytest.raises(TestRuntimeError, match="segfault"):
        data.stop()


def test_other_signal_forwarded_when_configured():
    backend = FakeBackend()
    data = started(backend, make_traces(), TracerConfig(forward_signals=True))
    cycle(data, backend, Stopped(PID, Signal.SIGUSR1))
    assert backend.calls == [("continue", PID, Signal.SIGUSR1)]


def test_other_signal_not_forwarded_by_default():
    backend = FakeBackend()
    data = started(backend, make_traces())
    cycle(data, backend, Stopped(PID, Signal.SIGUSR1))
    assert backend.calls == [("continue", PID, None)]


def test_clone_event_registers_thread():
    backend = FakeBackend()
    backend.event_data[PID] = 101
    data = started(backend, make_traces())
    cycle(data, backend, PtraceStop(PID, Signal.SIGTRAP, PtraceEvent.CLONE))
    assert data.pid_map[101] == PID
    assert data.processes[PID].thread_count == 1


def test_unknown_ptrace_event_raises():
    backend = FakeBackend()
    data = started(backend, make_traces())
    backend.statuses.append(PtraceStop(PID, Signal.SIGTRAP, 99))
    data.wait()
    with pytest.raises(TestRuntimeError, match="Unrecognised ptrace event 99"):
        data.stop()


def test_exec_without_follow_detaches():
    backend = FakeBackend()
    data = started(backend, make_traces())
    cycle(data, backend, PtraceStop(PID, Signal.SIGTRAP, PtraceEvent.EXEC))
    assert backend.calls == [("detach", PID)]


def test_followed_exec_traces_are_merged_on_exit(tmp_path):
    backend = FakeBackend()
    config = TracerConfig(follow_exec=True, target_dir=tmp_path / "target")
    child_exe = tmp_path / "target" / "debug" / "child"
    backend.exe[200] = child_exe
    seen = []

    def factory(exe, analysis, cfg):
        seen.append(exe)
        return make_traces((0x20,), file="src/main.rs")

    traces = make_traces()
    data = started(backend, traces, config, factory)
    cycle(data, backend, PtraceStop(200, Signal.SIGTRAP, PtraceEvent.EXEC))
    assert seen == [child_exe]
    assert 200 in data.processes

    backend.pc[200] = 0x20 + OFFSET + 1
    cycle(data, backend, Stopped(200, Signal.SIGTRAP))
    assert not traces.contains_file(Path("src/main.rs"))

    cycle(data, backend, Exited(200, 0))
    assert traces.get_trace(0x20).stats == LineStat(1)
    assert traces.get_trace(0x10).stats == LineStat(0)

    assert cycle(data, backend, Exited(PID, 0)) == TestState.end(0)


def test_exec_outside_target_dir_detaches(tmp_path):
    backend = FakeBackend()
    config = TracerConfig(follow_exec=True, target_dir=tmp_path / "target")
    backend.exe[PID] = Path("/usr/bin/ls")
    data = started(backend, make_traces(), config)
    cycle(data, backend, PtraceStop(PID, Signal.SIGTRAP, PtraceEvent.EXEC))
    assert backend.calls == [("detach", PID)]


def test_signaled_kill_detaches():
    backend = FakeBackend()
    data = started(backend, make_traces())
    cycle(data, backend, Signaled(PID, Signal.SIGKILL))
    assert backend.calls == [("detach", PID)]


def test_signaled_unexpected_raises():
    backend = FakeBackend()
    data = started(backend, make_traces())
    backend.statuses.append(Signaled(PID, Signal.SIGUSR1))
    data.wait()
    with pytest.raises(TestRuntimeError):
        data.stop()


def test_last_wait_attempt_uses_exit_code():
    backend = FakeBackend()
    data = started(backend, make_traces())
    assert data.last_wait_attempt() is None
    data.exit_code = 3
    assert data.last_wait_attempt() == TestState.end(3)


def test_wait_error_after_exit_finishes():
    backend = FakeBackend()
    data = started(backend, make_traces())
    data.exit_code = 2
    backend.statuses.append(OSError("no children"))
    assert data.wait() == TestState.end(2)


def test_wait_error_without_exit_raises():
    backend = FakeBackend()
    data = started(backend, make_traces())
    backend.statuses.append(OSError("no children"))
    with pytest.raises(TestRuntimeError):
        data.wait()


def test_stop_with_nothing_queued_continues_parent():
    backend = FakeBackend()
    data = started(backend, make_traces())
    state = data.stop()
    assert state.kind is TestStateKind.WAITING
    assert backend.calls == [("continue", PID, None)]


def test_wait_collects_queue_until_still_alive():
    backend = FakeBackend()
    data = started(backend, make_traces())
    backend.statuses.extend(
        [Stopped(PID, Signal.SIGSTOP), Stopped(PID, Signal.SIGCHLD)]
    )
    assert data.wait() == TestState.stopped()
    assert len(data.wait_queue) == 2
    data.stop()
    assert backend.calls == [("continue", PID, None)]
    assert data.wait_queue == []