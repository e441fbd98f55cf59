"""Coverage traces: per-line statistics mapped to source files."""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Iterable, Iterator, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, "os.PathLike[str]"]


@dataclass(frozen=True)
class LogicState:
    """Tracks whether a logical condition has been seen true and false."""

    been_true: bool = False
    been_false: bool = False

    def __add__(self, other: LogicState) -> LogicState:
        if not isinstance(other, LogicState):
            return NotImplemented
        return LogicState(
            been_true=self.been_true or other.been_true,
            been_false=self.been_false or other.been_false,
        )


@dataclass(frozen=True)
class LineStat:
    """Line coverage: how many times the line was hit."""

    hits: int = 0

    def __add__(self, other: CoverageStat) -> CoverageStat:
        if isinstance(other, LineStat):
            return LineStat(self.hits + other.hits)
        return self

    def __str__(self) -> str:
        return f"hits: {self.hits}"


@dataclass(frozen=True)
class BranchStat:
    """Branch coverage: whether the branch went both ways."""

    state: LogicState = field(default_factory=LogicState)

    def __add__(self, other: CoverageStat) -> CoverageStat:
        if isinstance(other, BranchStat):
            return BranchStat(self.state + other.state)
        return self

    def __str__(self) -> str:
        return ""


@dataclass(frozen=True)
class ConditionStat:
    """Condition coverage: each boolean subcondition true and false."""

    states: tuple[LogicState, ...] = ()

    def __add__(self, other: CoverageStat) -> CoverageStat:
        return self

    def __str__(self) -> str:
        return ""


CoverageStat = Union[LineStat, BranchStat, ConditionStat]


@dataclass
class Trace:
    """A coverable point in a source file."""

    line: int
    address: set[int] = field(default_factory=set)
    length: int = 0
    stats: CoverageStat = field(default_factory=LineStat)
    fn_name: str | None = None

    @classmethod
    def new_stub(cls, line: int) -> Trace:
        """A trace with no addresses and zero hits."""
        return cls(line=line)

    def __lt__(self, other: Trace) -> bool:
        if not isinstance(other, Trace):
            return NotImplemented
        return self.line < other.line

    def _copy(self) -> Trace:
        return replace(self, address=set(self.address))


@dataclass(frozen=True, order=True)
class Location:
    """A source file and line."""

    file: Path
    line: int


def amount_coverable(traces: Iterable[Trace]) -> int:
    """Number of coverable points in the traces."""
    total = 0
    for t in traces:
        if isinstance(t.stats, BranchStat):
            total += 2
        elif isinstance(t.stats, ConditionStat):
            total += len(t.stats.states) * 2
        else:
            total += 1
    return total


def amount_covered(traces: Iterable[Trace]) -> int:
    """Number of covered points in the traces."""
    total = 0
    for t in traces:
        stats = t.stats
        if isinstance(stats, BranchStat):
            total += int(stats.state.been_true) + int(stats.state.been_false)
        elif isinstance(stats, ConditionStat):
            total += sum(int(s.been_true) + int(s.been_false) for s in stats.states)
        else:
            total += int(stats.hits > 0)
    return total


def coverage_percentage(traces: Iterable[Trace]) -> float:
    """Covered fraction from 0.0 to 1.0; NaN when nothing is coverable."""
    collected = list(traces)
    coverable = amount_coverable(collected)
    covered = amount_covered(collected)
    if coverable == 0:
        return math.nan
    return covered / coverable


class TraceMap:
    """Traces grouped by source file, kept sorted by line."""

    def __init__(self) -> None:
        self._traces: dict[Path, list[Trace]] = {}

    def is_empty(self) -> bool:
        return not self._traces

    def items(self) -> Iterator[tuple[Path, list[Trace]]]:
        """Files and their traces, ordered by path."""
        for key in sorted(self._traces):
            yield key, self._traces[key]

    def merge(self, other: TraceMap) -> None:
        """Add missing records from other and sum stats of matching ones."""
        for key, values in other.items():
            existing = self._traces.get(key)
            if existing is None:
                self._traces[key] = [v._copy() for v in values]
                continue
            for v in values:
                match = next(
                    (t for t in existing if t.line == v.line and t.address == v.address),
                    None,
                )
                if match is not None:
                    match.stats = match.stats + v.stats
                else:
                    existing.append(v._copy())
                    existing.sort()

    def dedup(self) -> None:
        """Collapse traces sharing a line into one, combining their stats.

        Addresses of the removed duplicates are lost.
        """
        for values in self._traces.values():
            lines: dict[int, CoverageStat] = {}
            dirty: dict[int, None] = {}
            for v in values:
                if v.line in lines:
                    dirty[v.line] = None
                    lines[v.line] = lines[v.line] + v.stats
                else:
                    lines[v.line] = v.stats
            for line in dirty:
                seen = False
                kept: list[Trace] = []
                for t in values:
                    if t.line != line:
                        kept.append(t)
                    elif not seen:
                        seen = True
                        kept.append(t)
                values[:] = kept
                new_stat = lines.pop(line)
                first = next((t for t in values if t.line == line), None)
                if first is not None:
                    first.stats = new_stat

    def add_trace(self, file: PathLike, trace: Trace) -> None:
        key = Path(file)
        existing = self._traces.get(key)
        if existing is None:
            self._traces[key] = [trace]
        else:
            existing.append(trace)
            existing.sort()

    def add_file(self, file: PathLike) -> None:
        self._traces.setdefault(Path(file), [])

    def get_trace(self, address: int) -> Trace | None:
        """The first trace at the address, or None."""
        return next((t for t in self.all_traces() if address in t.address), None)

    def increment_hit(self, address: int) -> None:
        """Add one hit to every line trace at the address."""
        for trace in self.all_traces():
            if address in trace.address and isinstance(trace.stats, LineStat):
                logger.debug("Incrementing hit count for trace")
                trace.stats = LineStat(trace.stats.hits + 1)

    def get_location(self, address: int) -> Location | None:
        """Location of the trace whose 8-byte aligned address matches."""
        for key, values in self.items():
            for t in values:
                if any((a & ~0x7) == address for a in t.address):
                    return Location(file=key, line=t.line)
        return None

    def contains_location(self, file: PathLike, line: int) -> bool:
        traces = self._traces.get(Path(file))
        return traces is not None and any(t.line == line for t in traces)

    def contains_file(self, file: PathLike) -> bool:
        return Path(file) in self._traces

    def get_child_traces(self, root: PathLike) -> Iterator[Trace]:
        """All traces in files at or below root."""
        root_path = Path(root)
        for key, values in self.items():
            if key.is_relative_to(root_path):
                yield from values

    def get_traces(self, root: PathLike) -> Iterator[Trace]:
        """Traces for a file, or for files directly inside a folder."""
        root_path = Path(root)
        if root_path.is_file():
            yield from self.get_child_traces(root_path)
            return
        for key, values in self.items():
            if key != key.parent and key.parent == root_path:
                yield from values

    def file_traces(self, file: PathLike) -> list[Trace] | None:
        """The mutable list of traces for a file, or None."""
        return self._traces.get(Path(file))

    def all_traces(self) -> Iterator[Trace]:
        for _, values in self.items():
            yield from values

    def files(self) -> list[Path]:
        return sorted(self._traces)

    def coverable_in_path(self, path: PathLike) -> int:
        return amount_coverable(self.get_child_traces(path))

    def covered_in_path(self, path: PathLike) -> int:
        return amount_covered(self.get_child_traces(path))

    def total_coverable(self) -> int:
        return amount_coverable(self.all_traces())

    def total_covered(self) -> int:
        return amount_covered(self.all_traces())

    def coverage_percentage(self) -> float:
        """Coverage fraction from 0.0 to 1.0."""
        return coverage_percentage(self.all_traces())