"""Process-tracing coverage engine driven by ptrace-style wait results."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Mapping

from covtrace.instrumented import LineAnalysis
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
    TracedProcess,
    TracerBackend,
    WaitStatus,
    align_address,
)
from covtrace.statemachine import (
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
from covtrace.traces import TraceMap

logger = logging.getLogger(__name__)

TraceMapFactory = Callable[[Path, Mapping[Path, LineAnalysis], TracerConfig], TraceMap]
UpdateContext = tuple[TestState, TracerAction]


def _continue(pid: int, signal: Signal | None = None) -> TracerAction:
    return TracerAction(TracerActionKind.CONTINUE, ProcessInfo(pid, signal))


def _try_continue(pid: int, signal: Signal | None = None) -> TracerAction:
    return TracerAction(TracerActionKind.TRY_CONTINUE, ProcessInfo(pid, signal))


def _detach(pid: int) -> TracerAction:
    return TracerAction(TracerActionKind.DETACH, ProcessInfo(pid))


_NOTHING = TracerAction(TracerActionKind.NOTHING)


class _EndNow(Exception):
    """Ends handling of a stop immediately with the carried state."""

    def __init__(self, state: TestState) -> None:
        super().__init__(state)
        self.state = state


class LinuxData(StateData):
    """Traces a test process and its children, counting breakpoint hits."""

    def __init__(
        self,
        traces: TraceMap,
        analysis: Mapping[Path, LineAnalysis],
        config: TracerConfig,
        backend: TracerBackend,
        tracemap_factory: TraceMapFactory | None = None,
    ) -> None:
        self.wait_queue: list[WaitStatus] = []
        # Actions that can only be applied one cycle later.
        self.pending_actions: list[TracerAction] = []
        self.parent = 0
        self.current = 0
        self.traces = traces
        self.analysis = analysis
        self.config = config
        self.backend = backend
        self.tracemap_factory = tracemap_factory
        self.processes: dict[int, TracedProcess] = {}
        self.pid_map: dict[int, int] = {}
        self.exit_code: int | None = None

    # State handlers

    def start(self) -> TestState | None:
        try:
            status = self.backend.waitpid(self.current)
        except OSError as e:
            raise TestRuntimeError(f"Error when starting test: {e}") from e
        if isinstance(status, StillAlive):
            return None
        if isinstance(status, Stopped) and status.signal == Signal.SIGTRAP:
            self.current = status.pid
            logger.debug("Caught inferior transitioning to Initialise state")
            return TestState.initialise()
        raise TestRuntimeError("Unexpected signal when starting test")

    def init(self) -> TestState:
        traced = self._init_process(self.current, None)
        traced.is_test_proc = True
        try:
            self.backend.continue_exec(traced.parent, None)
        except OSError as e:
            raise TestRuntimeError("Test didn't launch correctly") from e
        logger.debug("Initialised inferior, transitioning to wait state")
        self.processes[self.current] = traced
        return TestState.wait_state()

    def last_wait_attempt(self) -> TestState | None:
        if self.exit_code is None:
            return None
        for pid, process in self.processes.items():
            if pid != self.parent and process.traces is not None:
                self.traces.merge(process.traces)
        return TestState.end(self.exit_code)

    def wait(self) -> TestState | None:
        result: TestState | None = None
        error: RunError | None = None
        while True:
            try:
                status = self.backend.waitpid(-1)
            except OSError as e:
                if self.exit_code is not None:
                    result = self.last_wait_attempt()
                else:
                    error = TestRuntimeError(
                        f"An error occurred while waiting for response from test: {e}"
                    )
                break
            if isinstance(status, StillAlive):
                break
            self.wait_queue.append(status)
            result = TestState.stopped()
            if isinstance(status, (Exited, PtraceStop)):
                break
        if self.wait_queue:
            logger.debug("Result queue is %r", self.wait_queue)
        else:
            self._apply_pending_actions(len(self.pending_actions))
        if error is not None:
            raise error
        return result

    def stop(self) -> TestState:
        actions: list[TracerAction] = []
        visited_pcs: dict[int, set[int]] = {}
        outcome: TestState | RunError = TestState.wait_state()
        pending = self.wait_queue
        self.wait_queue = []
        pending_count = len(self.pending_actions)

        for status in pending:
            try:
                state, action = self._handle_status(status, visited_pcs)
            except _EndNow as done:
                return done.state
            except RunError as e:
                outcome = e
                continue
            if state.kind is not TestStateKind.WAITING:
                outcome = state
            actions.append(action)

        continued = False
        actioned: set[int] = set()
        for action in actions:
            info = action.get_data()
            if info is not None and info.pid in actioned:
                logger.debug("Skipping action %r, pid already sent command", action)
                continue
            logger.debug("Action: %r", action)
            kind = action.kind
            if kind is TracerActionKind.NOTHING:
                continue
            continued = True
            actioned.add(info.pid)
            try:
                if kind is TracerActionKind.TRY_CONTINUE:
                    self._quietly(self.backend.continue_exec, info.pid, info.signal)
                elif kind is TracerActionKind.CONTINUE:
                    self.backend.continue_exec(info.pid, info.signal)
                elif kind is TracerActionKind.STEP:
                    self.backend.single_step(info.pid)
                elif kind is TracerActionKind.DETACH:
                    self._quietly(self.backend.detach_child, info.pid)
            except OSError as e:
                raise TestRuntimeError(str(e)) from e

        # Pending actions are fork parents stalled until their child returns,
        # so none refer to processes that stopped in this iteration.
        self._apply_pending_actions(pending_count)

        if not continued and self.exit_code is None:
            logger.debug("No action suggested to continue tracee. Attempting a continue")
            self._quietly(self.backend.continue_exec, self.parent, None)

        if isinstance(outcome, RunError):
            raise outcome
        return outcome

    # Helpers

    @staticmethod
    def _quietly(func: Callable[..., None], *args: object) -> None:
        try:
            func(*args)
        except OSError as e:
            logger.debug("Ignoring tracer error: %s", e)

    def _handle_status(
        self, status: WaitStatus, visited_pcs: dict[int, set[int]]
    ) -> UpdateContext:
        if isinstance(status, PtraceStop):
            try:
                return self._handle_ptrace_event(status.pid, status.signal, status.event)
            except RunError as e:
                raise TestRuntimeError(
                    f"Error occurred when handling ptrace event: {e}"
                ) from e
        if isinstance(status, Stopped):
            return self._handle_stopped(status, visited_pcs)
        if isinstance(status, Signaled):
            try:
                return self._handle_signaled(status.pid, status.signal, status.core_dumped)
            except RunError as e:
                raise TestRuntimeError(
                    "Attempting to handle the tracer being signaled"
                ) from e
        if isinstance(status, Exited):
            return self._handle_exited(status.pid, status.code)
        raise TestRuntimeError("An unexpected signal has been caught by the tracer!")

    def _handle_stopped(
        self, status: Stopped, visited_pcs: dict[int, set[int]]
    ) -> UpdateContext:
        child, signal = status.pid, status.signal
        if signal == Signal.SIGTRAP:
            self.current = child
            try:
                return self._collect_coverage_data(visited_pcs)
            except RunError as e:
                raise TestRuntimeError(f"Error when collecting coverage: {e}") from e
        if signal in (Signal.SIGSTOP, Signal.SIGCHLD):
            return TestState.wait_state(), _continue(child)
        if signal == Signal.SIGSEGV:
            raise TestRuntimeError("A segfault occurred while executing tests")
        if signal == Signal.SIGILL:
            try:
                pc = self.backend.current_instruction_pointer(child) - 1
            except OSError:
                pc = 0
            logger.debug("SIGILL raised. Child program counter is: %#x", pc)
            raise TestRuntimeError(f"Error running test - SIGILL raised in {child}")
        forwarded = signal if self.config.forward_signals else None
        return TestState.wait_state(), _try_continue(child, forwarded)

    def _handle_exited(self, child: int, code: int) -> UpdateContext:
        parent = 0
        process = self._get_traced_process(child)
        if process is not None:
            for breakpoint in process.breakpoints.values():
                breakpoint.thread_killed(child)
            parent = process.parent
        if parent == child:
            removed = self.processes.pop(parent, None)
            if removed is not None and parent != self.parent and removed.traces is not None:
                self.traces.merge(removed.traces)
        logger.debug("Exited %s parent %s", child, self.parent)
        if child == self.parent:
            if not self.processes or not self.config.follow_exec:
                return TestState.end(code), _NOTHING
            self.exit_code = code
            logger.info(
                "Test process exited, but spawned processes still running. Continuing tracing"
            )
            return TestState.wait_state(), _NOTHING
        if self.exit_code is not None and not self.processes:
            raise _EndNow(TestState.end(self.exit_code))
        # The process may already be gone; this is just in case.
        return TestState.wait_state(), _try_continue(self.parent)

    def _get_parent(self, pid: int) -> int | None:
        if pid in self.pid_map:
            return self.pid_map[pid]
        return self.backend.thread_owner(pid, list(self.processes))

    def _get_traced_process(self, pid: int) -> TracedProcess | None:
        parent = self._get_parent(pid)
        if parent is None:
            return None
        return self.processes.get(parent)

    def _get_active_trace_map(self, pid: int) -> TraceMap | None:
        process = self._get_traced_process(pid)
        if process is None:
            return None
        return process.traces if process.traces is not None else self.traces

    def _init_process(self, pid: int, trace_map: TraceMap | None) -> TracedProcess:
        traces = trace_map if trace_map is not None else self.traces
        try:
            self.backend.trace_children(pid)
        except OSError as e:
            raise TestRuntimeError(str(e)) from e
        offset = 0 if self.config.no_pic else self.backend.address_offset(pid)
        logger.debug("Initialising process: %s, address offset: %#x", pid, offset)

        breakpoints: dict[int, Breakpoint] = {}
        clashes: set[int] = set()
        for trace in traces.all_traces():
            for addr in sorted(trace.address):
                aligned = align_address(addr)
                if aligned in clashes:
                    logger.debug(
                        "Skipping %s as it clashes with previously disabled breakpoints", addr
                    )
                    continue
                try:
                    breakpoints[addr + offset] = self.backend.new_breakpoint(pid, addr + offset)
                except BreakpointError as e:
                    if e.is_io_error:
                        raise TestRuntimeError(
                            "Cannot find code addresses, check your linker settings."
                        ) from e
                    if not e.is_clash:
                        raise TestRuntimeError("Failed to instrument test executable") from e
                    logger.debug("Instrumentation address clash, ignoring %#x", addr)
                    # Remove the other breakpoint at this address to avoid false positives.
                    clashes.add(aligned)
                    for address in [
                        a for a in breakpoints if align_address(a - offset) == aligned
                    ]:
                        clashing = breakpoints.pop(address)
                        try:
                            clashing.disable(pid)
                        except (OSError, BreakpointError) as err:
                            logger.error("Unable to disable breakpoint: %s", err)

        # A process is its own parent.
        old = self.pid_map.get(pid)
        self.pid_map[pid] = pid
        if old is not None and old != pid:
            logger.debug("%s being promoted to parent. Old parent %s", pid, old)
        return TracedProcess(
            parent=pid,
            breakpoints=breakpoints,
            thread_count=0,
            offset=offset,
            traces=trace_map,
            is_test_proc=False,
        )

    def _handle_exec(self, pid: int) -> UpdateContext:
        logger.debug("Handling process exec")
        fallback = (TestState.wait_state(), _continue(pid))
        exe = self.backend.executable(pid)
        if exe is None or not exe.is_relative_to(self.config.target_dir):
            return TestState.wait_state(), _detach(pid)
        if self.tracemap_factory is None:
            return fallback
        try:
            trace_map = self.tracemap_factory(exe, self.analysis, self.config)
        except (OSError, ValueError) as e:
            logger.debug("Failed to create trace map for executable, continuing: %s", e)
            return fallback
        if trace_map.is_empty():
            logger.debug("Trace map for executable is empty, continuing")
            return fallback
        try:
            self.processes[pid] = self._init_process(pid, trace_map)
        except RunError as e:
            logger.error("Failed to init process (attempting continue): %s", e)
            return fallback
        return TestState.wait_state(), _continue(pid)

    def _handle_ptrace_event(self, child: int, signal: Signal, event: int) -> UpdateContext:
        if signal != Signal.SIGTRAP:
            logger.debug("Unexpected signal %r with ptrace event %s", signal, event)
            raise TestRuntimeError("Unexpected signal")

        if event == PtraceEvent.CLONE:
            try:
                thread = self.backend.get_event_data(child)
            except OSError as e:
                raise TestRuntimeError(
                    "Error occurred upon test executable thread creation"
                ) from e
            logger.debug("New thread spawned %s", thread)
            self._register_child(child, thread)
            return TestState.wait_state(), _continue(child)

        if event == PtraceEvent.FORK:
            try:
                fork_child = self.backend.get_event_data(child)
            except OSError:
                logger.debug("No event data for child")
            else:
                logger.debug("Caught fork event. Child %s", fork_child)
                self._register_child(child, fork_child)
            return TestState.wait_state(), _continue(child)

        if event == PtraceEvent.VFORK:
            # Spawning a command starts with a vfork, so treat it as an exec.
            try:
                fork_child = self.backend.get_event_data(child)
            except OSError:
                return TestState.wait_state(), _continue(child)
            if not self.config.follow_exec:
                return TestState.wait_state(), _continue(child)
            state, action = self._handle_exec(fork_child)
            if self.config.forward_signals:
                self.pending_actions.append(_continue(child))
            return state, action

        if event == PtraceEvent.EXEC:
            if self.config.follow_exec:
                return self._handle_exec(child)
            return TestState.wait_state(), _detach(child)

        if event == PtraceEvent.EXIT:
            logger.debug("Child exiting")
            is_parent = False
            process = self._get_traced_process(child)
            if process is not None:
                process.thread_count -= 1
                is_parent = process.parent == child
            if not is_parent:
                self.pid_map.pop(child, None)
            return TestState.wait_state(), _try_continue(child)

        raise TestRuntimeError(f"Unrecognised ptrace event {event}")

    def _register_child(self, pid: int, new_pid: int) -> None:
        process = self._get_traced_process(pid)
        if process is None:
            logger.warning("Couldn't find parent for %s", pid)
            return
        process.thread_count += 1
        self.pid_map[new_pid] = process.parent

    def _collect_coverage_data(self, visited_pcs: dict[int, set[int]]) -> UpdateContext:
        action: TracerAction | None = None
        current = self.current
        hits: set[int] = set()
        process = self._get_traced_process(current)
        if process is not None:
            visited = visited_pcs.setdefault(process.parent, set())
            try:
                pc: int | None = self.backend.current_instruction_pointer(current) - 1
            except OSError:
                pc = None
            if pc is not None:
                logger.debug("Hit address %#x", pc)
                breakpoint = process.breakpoints.get(pc)
                if breakpoint is not None:
                    if pc in visited:
                        try:
                            breakpoint.jump_to(current)
                        except (OSError, BreakpointError):
                            pass
                        counted, next_action = True, _continue(current)
                    else:
                        try:
                            counted, next_action = breakpoint.process(
                                current, self.config.count
                            )
                        except (OSError, BreakpointError):
                            # Keep going rather than stall the tracee.
                            counted, next_action = False, _continue(current)
                    if counted:
                        hits.add(pc - process.offset)
                    action = next_action
        else:
            logger.warning("Failed to find process for pid: %s", current)

        traces = self._get_active_trace_map(current)
        if traces is not None:
            for address in hits:
                traces.increment_hit(address)
        else:
            logger.warning("Failed to find traces for pid: %s", current)
        return TestState.wait_state(), action or _continue(current)

    def _handle_signaled(self, pid: int, signal: Signal, flag: bool) -> UpdateContext:
        parent = self._get_parent(pid)
        if parent is not None:
            process = self.processes.get(parent)
            if process is not None and not process.is_test_proc:
                return TestState.wait_state(), _try_continue(pid, signal)
        if signal == Signal.SIGKILL:
            return TestState.wait_state(), _detach(pid)
        if signal == Signal.SIGTRAP and flag:
            return TestState.wait_state(), _continue(pid)
        if signal == Signal.SIGCHLD:
            return TestState.wait_state(), _continue(pid)
        if signal == Signal.SIGTERM:
            return TestState.wait_state(), _try_continue(pid, Signal.SIGTERM)
        raise StateMachineError("Unexpected stop")

    def _apply_pending_actions(self, count: int) -> None:
        applied = self.pending_actions[:count]
        del self.pending_actions[:count]
        for action in applied:
            if action.kind in (TracerActionKind.CONTINUE, TracerActionKind.TRY_CONTINUE):
                info = action.get_data()
                self._quietly(self.backend.continue_exec, info.pid, info.signal)
            else:
                logger.error("Pending actions should only be continues: %r", action)


def create_state_machine(
    pid: int,
    traces: TraceMap,
    analysis: Mapping[Path, LineAnalysis],
    config: TracerConfig,
    backend: TracerBackend,
    tracemap_factory: TraceMapFactory | None = None,
) -> tuple[TestState, LinuxData]:
    """Initial state and handler for tracing the test process with the given pid."""
    data = LinuxData(traces, analysis, config, backend, tracemap_factory)
    data.parent = pid
    return TestState.start_state(), data