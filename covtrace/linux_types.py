"""Types shared by the process tracing engine: signals, wait results and backends."""

from __future__ import annotations

import abc
import enum
import errno as _errno
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Union

from covtrace.statemachine import TracerAction
from covtrace.traces import TraceMap


class Signal(enum.IntEnum):
    """Linux signal numbers the tracer reacts to."""

    SIGHUP = 1
    SIGINT = 2
    SIGQUIT = 3
    SIGILL = 4
    SIGTRAP = 5
    SIGABRT = 6
    SIGBUS = 7
    SIGFPE = 8
    SIGKILL = 9
    SIGUSR1 = 10
    SIGSEGV = 11
    SIGUSR2 = 12
    SIGPIPE = 13
    SIGALRM = 14
    SIGTERM = 15
    SIGCHLD = 17
    SIGCONT = 18
    SIGSTOP = 19


class PtraceEvent(enum.IntEnum):
    """Events reported by a ptrace stop."""

    FORK = 1
    VFORK = 2
    CLONE = 3
    EXEC = 4
    VFORK_DONE = 5
    EXIT = 6
    SECCOMP = 7
    STOP = 128


@dataclass(frozen=True)
class ProcessInfo:
    """A process or thread id and the signal to deliver when resuming it."""

    pid: int
    signal: Signal | None = None


@dataclass(frozen=True)
class StillAlive:
    """No child has changed state."""

    @property
    def pid(self) -> None:
        return None


@dataclass(frozen=True)
class Exited:
    """A child exited normally with a status code."""

    pid: int
    code: int


@dataclass(frozen=True)
class Signaled:
    """A child was terminated by a signal."""

    pid: int
    signal: Signal
    core_dumped: bool = False


@dataclass(frozen=True)
class Stopped:
    """A child was stopped by a signal."""

    pid: int
    signal: Signal


@dataclass(frozen=True)
class PtraceStop:
    """A child stopped at a ptrace event."""

    pid: int
    signal: Signal
    event: int


WaitStatus = Union[StillAlive, Exited, Signaled, Stopped, PtraceStop]


def align_address(address: int) -> int:
    """The address rounded down to an 8-byte boundary."""
    return address & ~0x7


class BreakpointError(Exception):
    """A breakpoint could not be placed or updated.

    ``errno`` is None when the failure has no known cause, which happens
    when two instrumentation points clash at one address.
    """

    def __init__(self, message: str, errno: int | None = None) -> None:
        super().__init__(message)
        self.errno = errno

    @property
    def is_clash(self) -> bool:
        return self.errno is None

    @property
    def is_io_error(self) -> bool:
        return self.errno == _errno.EIO


class Breakpoint(abc.ABC):
    """A software breakpoint placed in a traced process."""

    def __init__(self, address: int) -> None:
        self.address = address

    @abc.abstractmethod
    def process(self, pid: int, reenable: bool) -> tuple[bool, TracerAction]:
        """Handle a hit; give whether it counts and the action to take next."""

    @abc.abstractmethod
    def jump_to(self, pid: int) -> None:
        """Move the thread past the breakpoint without counting it."""

    @abc.abstractmethod
    def disable(self, pid: int) -> None:
        """Restore the original instruction."""

    @abc.abstractmethod
    def thread_killed(self, pid: int) -> None:
        """Forget any state kept for a thread that has gone."""


class TracerBackend(abc.ABC):
    """Operating-system access needed to trace a test process.

    The process-control calls are left to a concrete backend; information
    read from the proc filesystem is provided here.
    """

    proc_root: Path = Path("/proc")

    @abc.abstractmethod
    def waitpid(self, pid: int) -> WaitStatus:
        """Poll without blocking; pid -1 means any child. Raises OSError."""

    @abc.abstractmethod
    def continue_exec(self, pid: int, signal: Signal | None) -> None:
        """Resume the process, delivering the signal if one is given."""

    @abc.abstractmethod
    def single_step(self, pid: int) -> None:
        """Execute one instruction of the process."""

    @abc.abstractmethod
    def detach_child(self, pid: int) -> None:
        """Stop tracing the process."""

    @abc.abstractmethod
    def trace_children(self, pid: int) -> None:
        """Ask to be told about forks, clones, execs and exits of the process."""

    @abc.abstractmethod
    def get_event_data(self, pid: int) -> int:
        """The message attached to the last ptrace event, such as a new pid."""

    @abc.abstractmethod
    def current_instruction_pointer(self, pid: int) -> int:
        """The program counter of the stopped thread."""

    @abc.abstractmethod
    def new_breakpoint(self, pid: int, address: int) -> Breakpoint:
        """Place a breakpoint; raises BreakpointError on failure."""

    def executable(self, pid: int) -> Path | None:
        """Path of the program the process runs, or None if unknown."""
        try:
            return Path(os.readlink(self.proc_root / str(pid) / "exe"))
        except OSError:
            return None

    def address_offset(self, pid: int) -> int:
        """Load address of the process's executable, or 0 if not found."""
        exe = self.executable(pid)
        try:
            text = (self.proc_root / str(pid) / "maps").read_text()
        except OSError:
            return 0
        for line in text.splitlines():
            parts = line.split(maxsplit=5)
            if len(parts) < 6 or not parts[5].startswith("/"):
                continue
            if exe is None or Path(parts[5]) == exe:
                start = parts[0].split("-", 1)[0]
                try:
                    return int(start, 16)
                except ValueError:
                    return 0
        return 0

    def thread_owner(self, pid: int, candidates: Iterable[int]) -> int | None:
        """The candidate process that has pid among its threads, if any."""
        for candidate in candidates:
            task_dir = self.proc_root / str(candidate) / "task"
            try:
                tasks = {entry.name for entry in task_dir.iterdir()}
            except OSError:
                continue
            if str(pid) in tasks:
                return candidate
        return None


@dataclass
class TracedProcess:
    """A process being traced, with its breakpoints and own trace map."""

    parent: int
    breakpoints: dict[int, Breakpoint] = field(default_factory=dict)
    thread_count: int = 0
    offset: int = 0
    traces: TraceMap | None = None
    is_test_proc: bool = False