"""The tracing state machine shared by every coverage collection engine."""

from __future__ import annotations

import abc
import enum
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RunError(Exception):
    """Base class for errors raised while running and tracing a test."""


class TestRuntimeError(RunError):
    """The test misbehaved or could not be traced while running."""


class StateMachineError(RunError):
    """The state machine was driven into a state it cannot handle."""


class TestFailedError(RunError):
    """The test executable reported failure."""

    def __init__(self, message: str = "Test failed during run") -> None:
        super().__init__(message)


class TestCoverageError(RunError):
    """Coverage data could not be gathered or mapped to source."""


class TraceEngine(enum.Enum):
    """How coverage is collected."""

    PTRACE = "ptrace"
    LLVM = "llvm"


@dataclass
class TracerConfig:
    """Settings that the state machines consult while tracing."""

    engine: TraceEngine = TraceEngine.PTRACE
    test_timeout: float = 60.0
    post_test_delay: float | None = None
    follow_exec: bool = False
    forward_signals: bool = False
    count: bool = False
    target_dir: Path = field(default_factory=lambda: Path("target"))
    profraw_dir: Path | None = None
    no_pic: bool = False


class TestStateKind(enum.Enum):
    START = "start"
    INITIALISE = "initialise"
    WAITING = "waiting"
    STOPPED = "stopped"
    END = "end"


@dataclass(frozen=True)
class TestState:
    """A state of the tracer; start and wait states carry when they began."""

    kind: TestStateKind
    start_time: float | None = field(default=None, compare=False)
    exit_code: int | None = None

    @classmethod
    def start_state(cls) -> TestState:
        """Wait for the test to appear, timing it for the timeout."""
        return cls(TestStateKind.START, start_time=time.monotonic())

    @classmethod
    def wait_state(cls) -> TestState:
        """Wait for a breakpoint to be hit or the test to end."""
        return cls(TestStateKind.WAITING, start_time=time.monotonic())

    @classmethod
    def initialise(cls) -> TestState:
        return cls(TestStateKind.INITIALISE)

    @classmethod
    def stopped(cls) -> TestState:
        return cls(TestStateKind.STOPPED)

    @classmethod
    def end(cls, code: int) -> TestState:
        """The test exited with the given code."""
        return cls(TestStateKind.END, exit_code=code)

    def is_finished(self) -> bool:
        return self.kind is TestStateKind.END

    def _timed_out(self, config: TracerConfig) -> bool:
        started = self.start_time if self.start_time is not None else time.monotonic()
        return time.monotonic() - started >= config.test_timeout

    def step(self, data: StateData, config: TracerConfig) -> TestState:
        """Advance the machine by one state."""
        if self.kind is TestStateKind.START:
            nxt = data.start()
            if nxt is not None:
                return nxt
            if self._timed_out(config):
                raise TestRuntimeError("Error: Timed out when starting test")
            return self
        if self.kind is TestStateKind.INITIALISE:
            return data.init()
        if self.kind is TestStateKind.WAITING:
            nxt = data.wait()
            if nxt is not None:
                return nxt
            if self._timed_out(config):
                last = data.last_wait_attempt()
                if last is not None:
                    return last
                raise TestRuntimeError("Error: Timed out waiting for test response")
            return self
        if self.kind is TestStateKind.STOPPED:
            return data.stop()
        return self


class TracerActionKind(enum.Enum):
    TRY_CONTINUE = "try_continue"
    CONTINUE = "continue"
    STEP = "step"
    DETACH = "detach"
    NOTHING = "nothing"


@dataclass(frozen=True)
class TracerAction(Generic[T]):
    """An action for the tracing backend, with the process it applies to."""

    kind: TracerActionKind
    data: Any = None

    def get_data(self) -> Any:
        """The process information, or None for NOTHING."""
        if self.kind is TracerActionKind.NOTHING:
            return None
        return self.data


class StateData(abc.ABC):
    """Engine-specific handling of each state of the machine."""

    @abc.abstractmethod
    def start(self) -> TestState | None:
        """Start tracing; None while still waiting for the test."""

    @abc.abstractmethod
    def init(self) -> TestState:
        """Prepare the test for tracing and give the next state."""

    @abc.abstractmethod
    def wait(self) -> TestState | None:
        """Poll the test; None when there is nothing to do yet."""

    @abc.abstractmethod
    def last_wait_attempt(self) -> TestState | None:
        """Before timing out, see whether the run actually finished."""

    @abc.abstractmethod
    def stop(self) -> TestState:
        """Handle a stop in the test, collecting coverage."""


class NullStateData(StateData):
    """Used when no engine is available; every step fails."""

    _MESSAGE = "No valid coverage collector"

    def start(self) -> TestState | None:
        raise StateMachineError(self._MESSAGE)

    def init(self) -> TestState:
        raise StateMachineError(self._MESSAGE)

    def wait(self) -> TestState | None:
        raise StateMachineError(self._MESSAGE)

    def last_wait_attempt(self) -> TestState | None:
        raise StateMachineError(self._MESSAGE)

    def stop(self) -> TestState:
        raise StateMachineError(self._MESSAGE)