"""State machine for binaries that write their own coverage profiles."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Sequence

from covtrace.statemachine import (
    StateData,
    StateMachineError,
    TestCoverageError,
    TestFailedError,
    TestRuntimeError,
    TestState,
    TracerConfig,
)
from covtrace.traces import LineStat, Trace, TraceMap

logger = logging.getLogger(__name__)


@dataclass
class LineAnalysis:
    """Lines of a source file to ignore and lines known to be coverable."""

    ignore: set[int] = field(default_factory=set)
    cover: set[int] = field(default_factory=set)

    def should_ignore(self, line: int) -> bool:
        return line in self.ignore


@dataclass
class FileReport:
    """Hit counts for regions of one file, keyed by (first line, last line)."""

    hits: dict[tuple[int, int], int] = field(default_factory=dict)

    def hits_for_line(self, line: int) -> int | None:
        """Highest hit count of the regions covering the line, or None."""
        counts = [h for (start, end), h in self.hits.items() if start <= line <= end]
        return max(counts) if counts else None


@dataclass
class CoverageReport:
    """Coverage results mapped to source files."""

    files: dict[Path, FileReport] = field(default_factory=dict)


@dataclass
class InstrumentedProcess:
    """A launched instrumented test binary."""

    child: Any
    path: Path
    should_panic: bool = False
    existing_profraws: set[Path] = field(default_factory=set)
    extra_binaries: list[Path] = field(default_factory=list)


ReportLoader = Callable[[Sequence[Path], Sequence[Path]], "CoverageReport | None"]


def apply_report(
    traces: TraceMap,
    report: CoverageReport,
    analysis: Mapping[Path, LineAnalysis],
    source_files: Iterable[Path] | None = None,
) -> None:
    """Fill an empty trace map from the report, or update hits in a filled one."""
    if traces.is_empty():
        if source_files is None:
            source_files = sorted(set(report.files) | set(analysis))
        for source in source_files:
            file = Path(source)
            file_analysis = analysis.get(file)
            result = report.files.get(file)
            if result is not None:
                for (start, end), hits in result.hits.items():
                    for line in range(start, end + 1):
                        if file_analysis is None or not file_analysis.should_ignore(line):
                            trace = Trace.new_stub(line)
                            trace.stats = LineStat(hits)
                            traces.add_trace(file, trace)
            if file_analysis is not None:
                for line in sorted(file_analysis.cover):
                    if not traces.contains_location(file, line):
                        traces.add_trace(file, Trace.new_stub(line))
        return

    traces.dedup()
    for file, result in report.files.items():
        file_traces = traces.file_traces(file)
        if file_traces is None:
            logger.warning("Couldn't find %s in %s", file, traces.files())
            continue
        for trace in file_traces:
            hits = result.hits_for_line(trace.line)
            if hits is not None and isinstance(trace.stats, LineStat):
                trace.stats = LineStat(hits)


def _exit_code(returncode: int | None) -> int:
    if returncode is None or returncode < 0:
        return 1
    return returncode


class LlvmInstrumentedData(StateData):
    """Waits for an instrumented binary and maps its profiles to traces."""

    def __init__(
        self,
        process: InstrumentedProcess | None,
        traces: TraceMap,
        analysis: Mapping[Path, LineAnalysis],
        config: TracerConfig,
        report_loader: ReportLoader,
        source_files: Iterable[Path] | None = None,
    ) -> None:
        self.process = process
        self.traces = traces
        self.analysis = analysis
        self.config = config
        self.report_loader = report_loader
        self.source_files = source_files

    def start(self) -> TestState | None:
        # The binary runs like any other process; nothing to prepare.
        return TestState.wait_state()

    def init(self) -> TestState:
        raise StateMachineError("Instrumented binaries have no initialise state")

    def last_wait_attempt(self) -> TestState | None:
        raise StateMachineError("Instrumented binaries have no last wait attempt")

    def stop(self) -> TestState:
        raise StateMachineError("Instrumented binaries have no stopped state")

    def _new_profraws(self, process: InstrumentedProcess) -> list[Path]:
        folder = self.config.profraw_dir
        if folder is None or not folder.is_dir():
            return []
        return [
            p
            for p in sorted(folder.rglob("*.profraw"))
            if p not in process.existing_profraws
        ]

    def wait(self) -> TestState | None:
        process = self.process
        if process is None:
            raise TestCoverageError("Test was not launched")
        try:
            returncode = process.child.wait()
        except OSError as e:
            raise TestRuntimeError(str(e)) from e
        if returncode != 0 and not process.should_panic:
            raise TestFailedError()
        if self.config.post_test_delay:
            time.sleep(self.config.post_test_delay)

        profraws = self._new_profraws(process)
        logger.info("For binary: %s", process.path)
        for prof in profraws:
            logger.info("Generated: %s", prof)

        binaries = []
        for extra in process.extra_binaries:
            if Path(extra).exists():
                binaries.append(Path(extra))
            else:
                logger.info(
                    "Skipping additional object '%s' since the file does not exist", extra
                )
        binaries.append(process.path)

        logger.info("Merging coverage reports")
        try:
            report = self.report_loader(profraws, binaries)
        except (OSError, ValueError) as e:
            logger.error("Failed to get coverage: %s", e)
            raise TestCoverageError(str(e)) from e

        code = _exit_code(returncode)
        self.process = None
        if report is None:
            logger.warning(
                "profraw file has no records after merging. A panic or signal in a test "
                "may have prevented the instrumentation runtime from writing results"
            )
            return TestState.end(code)

        logger.info("Mapping coverage data to source")
        apply_report(self.traces, report, self.analysis, self.source_files)
        return TestState.end(code)


def create_state_machine(
    process: InstrumentedProcess | None,
    traces: TraceMap,
    analysis: Mapping[Path, LineAnalysis],
    config: TracerConfig,
    report_loader: ReportLoader,
    source_files: Iterable[Path] | None = None,
) -> tuple[TestState, LlvmInstrumentedData]:
    """Initial state and handler for an instrumented test process."""
    data = LlvmInstrumentedData(process, traces, analysis, config, report_loader, source_files)
    if process is None:
        logger.error("The instrumented state machine requires a launched process")
        return TestState.end(1), data
    return TestState.start_state(), data