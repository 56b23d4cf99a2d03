"""
Result assembly.

Turns the raw step outcomes into the single immutable
:class:`ExecutionResult` handed back to callers.  Everything here is pure.
"""

from __future__ import annotations

import signal
from dataclasses import dataclass
from typing import Optional, Sequence

from ..errors import Condition
from .executor import StepOutcome

TRUNCATION_MARKER = "\n\n... (output truncated)"

# Failed fork()/clone() as reported by common runtimes and shells.
PROCESS_LIMIT_MARKERS = (
    "fork: retry: Resource temporarily unavailable",
    "fork: Resource temporarily unavailable",
    "BlockingIOError: [Errno 11]",
    "unable to create new native thread",
)

# Without a marker, a crash by one of these signals with a peak this close
# to the ceiling is a failed allocation under RLIMIT_AS.
MEMORY_CRASH_SIGNALS = frozenset({signal.SIGSEGV, signal.SIGBUS, signal.SIGABRT, signal.SIGKILL})
MEMORY_CRASH_RATIO = 0.8


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one execution request."""

    success: bool
    stdout: str
    stderr: str
    exit_code: Optional[int]
    timed_out: bool
    truncated: bool
    wall_time_ms: int
    memory_bytes: Optional[int]
    condition: Condition
    error: Optional[str] = None
    execution_id: Optional[str] = None


def _decode(data: bytes, truncated: bool) -> str:
    text = data.decode("utf-8", errors="replace")
    return text + TRUNCATION_MARKER if truncated else text


def classify(
    step: StepOutcome,
    oom_markers: Sequence[str] = (),
    memory_limit: Optional[int] = None,
) -> Condition:
    """Name the condition a finished step ended in."""
    if step.killed_by is not None:
        return step.killed_by
    if step.term_signal == signal.SIGXCPU:
        return Condition.TIMEOUT_EXCEEDED
    if step.exit_code == 0:
        return Condition.OK
    stderr = step.stderr.decode("utf-8", errors="replace")
    if any(marker in stderr for marker in oom_markers):
        return Condition.MEMORY_LIMIT_EXCEEDED
    if (
        memory_limit is not None
        and step.term_signal in MEMORY_CRASH_SIGNALS
        and step.peak_memory_bytes >= memory_limit * MEMORY_CRASH_RATIO
    ):
        return Condition.MEMORY_LIMIT_EXCEEDED
    if any(marker in stderr for marker in PROCESS_LIMIT_MARKERS):
        return Condition.PROCESS_LIMIT_EXCEEDED
    return Condition.RUNTIME_FAILURE


def _error_message(condition: Condition, stderr: str, step: Optional[StepOutcome], limit_ms: Optional[int]) -> Optional[str]:
    if condition is Condition.OK:
        return stderr or None
    if condition is Condition.TIMEOUT_EXCEEDED and limit_ms is not None and step is not None:
        notice = f"Execution timed out after {limit_ms} ms."
        if step.term_signal == signal.SIGXCPU:
            notice = "CPU time limit exceeded."
        return f"{stderr}\n{notice}" if stderr else notice
    if condition in (Condition.RUNTIME_FAILURE, Condition.COMPILE_FAILURE):
        if stderr:
            return stderr
        if step is not None and step.exit_code is not None:
            return f"{condition.description} (exit code {step.exit_code})"
    if stderr:
        return f"{stderr}\n{condition.description}"
    return condition.description


def assemble(
    compile_step: Optional[StepOutcome],
    run_step: Optional[StepOutcome],
    elapsed_ms: int,
    peak_memory_bytes: Optional[int] = None,
    oom_markers: Sequence[str] = (),
    wall_clock_ms: Optional[int] = None,
    memory_limit: Optional[int] = None,
) -> ExecutionResult:
    """Build the result from the compile step (if any) and the run step.

    ``run_step`` is ``None`` when the compile step did not succeed.
    """
    if compile_step is not None and (run_step is None or not compile_step.ok):
        condition = classify(compile_step, oom_markers, memory_limit)
        if condition in (Condition.OK, Condition.RUNTIME_FAILURE):
            condition = Condition.COMPILE_FAILURE
        # Some compilers report diagnostics on stdout.
        diagnostics = compile_step.stderr or compile_step.stdout
        stderr = _decode(diagnostics, compile_step.truncated)
        return ExecutionResult(
            success=False,
            stdout="",
            stderr=stderr,
            exit_code=compile_step.exit_code,
            timed_out=condition is Condition.TIMEOUT_EXCEEDED,
            truncated=compile_step.truncated,
            wall_time_ms=elapsed_ms,
            memory_bytes=peak_memory_bytes,
            condition=condition,
            error=_error_message(condition, stderr, compile_step, wall_clock_ms),
        )

    if run_step is None:
        raise ValueError("assemble() needs a run step when there is no failed compile step")

    condition = classify(run_step, oom_markers, memory_limit)
    stdout = _decode(run_step.stdout, run_step.stdout_truncated)
    stderr = _decode(run_step.stderr, run_step.stderr_truncated)
    return ExecutionResult(
        success=condition is Condition.OK,
        stdout=stdout,
        stderr=stderr,
        exit_code=run_step.exit_code,
        timed_out=condition is Condition.TIMEOUT_EXCEEDED,
        truncated=run_step.truncated,
        wall_time_ms=elapsed_ms,
        memory_bytes=peak_memory_bytes,
        condition=condition,
        error=_error_message(condition, stderr, run_step, wall_clock_ms),
    )


def rejected(condition: Condition, message: str, elapsed_ms: int = 0) -> ExecutionResult:
    """Result for an execution that ended before any step ran."""
    return ExecutionResult(
        success=False,
        stdout="",
        stderr="",
        exit_code=None,
        timed_out=False,
        truncated=False,
        wall_time_ms=elapsed_ms,
        memory_bytes=None,
        condition=condition,
        error=message,
    )
