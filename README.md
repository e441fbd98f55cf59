# covtrace

`covtrace` keeps track of line coverage data collected from a test executable.
It also has the state machines that drive a test process while that data is
gathered. It has no dependencies outside the standard library.

## Trace maps (`covtrace.traces`)

A `TraceMap` maps source files to lists of `Trace` records. Each list is kept
sorted by line. A trace holds the following:

- the line it sits on;
- the instruction addresses that belong to it;
- an optional function name;
- a coverage statistic.

The coverage statistic is one of these:

- `LineStat`: a hit count.
- `BranchStat`: a `LogicState` that records whether the branch was seen true and whether it was seen false.
- `ConditionStat`: a tuple of `LogicState`, one for each sub-condition.

Adding two `LineStat` values sums their hits. Adding two `BranchStat` values
combines their logic states. Any other combination keeps the left-hand value.

```python
from covtrace.traces import LineStat, Trace, TraceMap

traces = TraceMap()
traces.add_trace("src/lib.rs", Trace(line=1, address={0, 128}, stats=LineStat(1)))

traces.total_coverable()      # 1
traces.total_covered()        # 1
traces.coverage_percentage()  # 1.0
```

Counting rules:

- A line counts as one coverable point.
- A branch counts as two coverable points.
- A condition counts as two coverable points for each sub-condition.
- `coverage_percentage` gives NaN when nothing is coverable.

Trace maps from several runs can be combined:

- `merge(other)` adds the records that are missing. Where a record has the same line and the same addresses, it adds the statistics together.
- `dedup()` collapses the traces that share a line into the first of them, with the statistics added together. The addresses of the removed traces are lost.

Other queries:

- `get_trace(address)` gives the first trace holding an address.
- `increment_hit(address)` adds one hit to every line trace at an address.
- `get_location(address)` finds the first trace with an address that matches once rounded down to 8 bytes, and gives its file and line as a `Location`.
- `get_child_traces(path)` gives every trace in files at or below a path.
- `get_traces(path)` gives the traces of a file, or of the files directly inside a folder.
- `coverable_in_path(path)` and `covered_in_path(path)` count the coverable and covered points under a path.
- `files()`, `items()`, `all_traces()` and `file_traces(file)` give access to the contents.

The module-level functions `amount_coverable`, `amount_covered` and
`coverage_percentage` work on any iterable of traces.

## State machines (`covtrace.statemachine`)

A run is driven by stepping a `TestState` until it is finished:

```python
state = TestState.start_state()
while not state.is_finished():
    state = state.step(data, config)
exit_code = state.exit_code
```

In this loop:

- `data` is a `StateData` implementation.
- `config` is a `TracerConfig`. It holds the timeout in seconds, an optional post-test delay, `follow_exec`, `forward_signals`, `count`, `target_dir`, `profraw_dir` and `no_pic`.
- If the start or wait state makes no progress within `test_timeout` seconds, `step` raises an error.

Failures are raised as subclasses of `RunError`:

- `TestRuntimeError`: the test timed out, received an unexpected signal, or could not be traced.
- `TestFailedError`: an instrumented test exited with a failure when it was not expected to panic.
- `TestCoverageError`: coverage could not be collected or mapped, or the test was never launched.
- `StateMachineError`: a state was reached that the data cannot handle. `NullStateData`, which stands in when no collector is available, raises it from every step.

### Instrumented binaries (`covtrace.instrumented`)

`create_state_machine(process, traces, analysis, config, report_loader)` returns
an initial state and an `LlvmInstrumentedData`. If `process` is `None`, the
initial state is an end state with exit code 1.

When the `InstrumentedProcess` has exited, `wait` does the following:

1. If the process failed and `should_panic` is not set, it raises `TestFailedError`.
2. It sleeps for the post-test delay, if one is set.
3. It collects the new `*.profraw` files under `config.profraw_dir`.
4. It calls your `report_loader(profraws, binaries)`. The binaries are the extra binaries that exist, followed by the test binary.
5. If the loader returns a `CoverageReport`, it is folded into the trace map with `apply_report`.

`apply_report` works in one of two ways:

- If the trace map is empty, it fills the map from the report's regions. Lines that the file's `LineAnalysis` ignores are skipped. Each line in the analysis's `cover` set that is still missing is added as a zero-hit trace.
- Otherwise it de-duplicates the map. It then sets each line trace's hits from `FileReport.hits_for_line`, which gives the highest count among the regions that cover the line.

### Process tracing (`covtrace.linux`, `covtrace.linux_types`)

`create_state_machine(pid, traces, analysis, config, backend)` returns an
initial state and a `LinuxData` that traces the test process through a
`TracerBackend`. The tracer does the following:

- It places a `Breakpoint` at each trace address, adjusted by the load offset.
- It drops breakpoints whose addresses clash.
- It follows clones and forks.
- If `follow_exec` is set, it follows execs and vforks of binaries inside `target_dir`, building their trace maps with an optional `tracemap_factory`.
- It counts breakpoint hits with `increment_hit`.
- It merges the trace maps of child processes into the main map when those processes exit.

Wait results are given to it as `StillAlive`, `Exited`, `Signaled`, `Stopped`
and `PtraceStop` values. Signal numbers come from `Signal` and event numbers
from `PtraceEvent`.

## What this package does not do

- `TracerBackend` reads the executable path, load offset and thread ownership from `/proc`. It leaves the process-control calls and `Breakpoint` behaviour abstract, so a concrete ptrace backend has to be supplied.
- It does not read debug information or profile files itself. Trace maps for executables and coverage reports come from the `tracemap_factory` and `report_loader` callables you pass in.
- It does not build or launch test programs.
- It writes no coverage reports.
- It has no command-line interface.

## Tests

```
pip install -e ".[test]"
pytest
```