"""
Process executor.

Runs one step (compile or run) of an execution as a child process inside a
sandbox.  The child gets its own session and process group so that the
wall-clock timer, the governor and cancellation can all kill the whole tree
with a single ``killpg``.  Output is read incrementally by one thread per
stream and kept only up to the configured byte ceiling; the rest is
drained and discarded so the child never blocks on a full pipe.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import IO, List, Optional, Sequence, Tuple

from ..errors import Condition, ProvisionFailure
from .governor import ResourceGovernor
from .registry import ResourceLimits
from .sandbox import ProcessGroup, SandboxHandle

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
# Stragglers holding a pipe open are killed with the group, so readers
# finish quickly once the root process is reaped.
READER_JOIN_TIMEOUT = 2.0


@dataclass(frozen=True)
class StepOutcome:
    """What happened to one child process.

    Attributes
    ----------
    exit_code: int or None
        Exit status of the process.  Negative values are ``-signal``.
        ``None`` when the step never started.
    stdout, stderr: bytes
        Captured output, at most ``max_output_bytes`` each.
    timed_out: bool
        The wall-clock timer fired before the process exited.
    killed_by: Condition or None
        Why the engine killed the process group, if it did.
    duration_ms: int
        Wall-clock time from spawn to reap.
    peak_memory_bytes: int
        Highest resident memory observed for the tree.
    wrapped: bool
        The program ran under a wrapper (bwrap) that reports a fatal
        signal as exit status ``128 + signum``.
    """

    exit_code: Optional[int]
    stdout: bytes
    stderr: bytes
    timed_out: bool = False
    killed_by: Optional[Condition] = None
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    duration_ms: int = 0
    peak_memory_bytes: int = 0
    wrapped: bool = False

    @property
    def truncated(self) -> bool:
        return self.stdout_truncated or self.stderr_truncated

    @property
    def term_signal(self) -> Optional[int]:
        if self.exit_code is None:
            return None
        if self.exit_code < 0:
            return -self.exit_code
        if self.wrapped and 128 < self.exit_code < 128 + signal.NSIG:
            return self.exit_code - 128
        return None

    @property
    def ok(self) -> bool:
        return self.killed_by is None and self.exit_code == 0


class OutputCapture:
    """Read a pipe to EOF, keeping at most ``limit`` bytes."""

    def __init__(self, stream: IO[bytes], limit: int, name: str) -> None:
        self.stream = stream
        self.limit = limit
        self.truncated = False
        self._buffer = bytearray()
        self._lock = threading.Lock()
        self._thread = threading.Thread(target=self._read, name=name, daemon=True)

    def start(self) -> None:
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> None:
        self._thread.join(timeout)

    def value(self) -> bytes:
        with self._lock:
            return bytes(self._buffer)

    def _read(self) -> None:
        try:
            while True:
                chunk = self.stream.read1(CHUNK_SIZE)
                if not chunk:
                    break
                with self._lock:
                    room = self.limit - len(self._buffer)
                    if room > 0:
                        self._buffer += chunk[:room]
                    if len(chunk) > room:
                        self.truncated = True
        except (OSError, ValueError):
            pass
        finally:
            try:
                self.stream.close()
            except OSError:
                pass


def _feed_stdin(stream: IO[bytes], data: bytes) -> None:
    try:
        if data:
            stream.write(data)
            stream.flush()
    except (BrokenPipeError, OSError):
        # The program stopped reading; that is its business.
        pass
    finally:
        try:
            stream.close()
        except OSError:
            pass


class ProcessExecutor:
    """Spawn steps under the governor and collect their outcome."""

    def __init__(self, governor: Optional[ResourceGovernor] = None) -> None:
        self.governor = governor or ResourceGovernor()

    def run_step(
        self,
        handle: SandboxHandle,
        argv: Sequence[str],
        stdin: str,
        limits: ResourceLimits,
        limit_address_space: bool = True,
    ) -> StepOutcome:
        if handle.cancelled:
            return StepOutcome(exit_code=None, stdout=b"", stderr=b"", killed_by=Condition.CANCELLED)

        stdin_data = stdin.encode("utf-8") if stdin else b""
        preexec = self.governor.preexec(limits, limit_address_space)
        start_time = time.perf_counter()
        try:
            process = subprocess.Popen(
                list(argv),
                cwd=str(handle.work_dir),
                env=handle.env,
                stdin=subprocess.PIPE if stdin_data else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
                preexec_fn=preexec,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise ProvisionFailure(f"Unable to start {argv[len(handle.prefix)]}: {exc}") from exc
        group = ProcessGroup(process.pid)
        handle.attach(group)
        logger.debug("Spawned pid %s in sandbox %s: %s", process.pid, handle.id, argv[len(handle.prefix)])

        threads: List[threading.Thread] = []
        if stdin_data:
            feeder = threading.Thread(target=_feed_stdin, args=(process.stdin, stdin_data), daemon=True)
            feeder.start()
            threads.append(feeder)
        stdout = OutputCapture(process.stdout, limits.max_output_bytes, f"stdout-{process.pid}")
        stderr = OutputCapture(process.stderr, limits.max_output_bytes, f"stderr-{process.pid}")
        stdout.start()
        stderr.start()

        # Start timer thread to enforce wall clock timeout
        timer = threading.Timer(limits.wall_clock_ms / 1000, group.kill, args=(Condition.TIMEOUT_EXCEEDED,))
        timer.daemon = True
        timer.start()
        watchdog = self.governor.attach(process.pid, limits, group.kill)

        try:
            # The unreaped leader keeps the pgid reserved while whatever it
            # left behind in its group is killed.
            os.waitid(os.P_PID, process.pid, os.WEXITED | os.WNOWAIT)
            duration_ms = int((time.perf_counter() - start_time) * 1000)
            timer.cancel()
            watchdog.stop()
            group.kill_remaining()
            exit_code, maxrss = _reap(process)
        finally:
            timer.cancel()
            watchdog.stop()
            if process.returncode is None:
                group.kill_remaining()
                process.wait()
            handle.detach(group)

        stdout.join(READER_JOIN_TIMEOUT)
        stderr.join(READER_JOIN_TIMEOUT)
        for thread in threads:
            thread.join(READER_JOIN_TIMEOUT)

        killed_by = group.killed_by
        outcome = StepOutcome(
            exit_code=exit_code,
            stdout=stdout.value(),
            stderr=stderr.value(),
            timed_out=killed_by is Condition.TIMEOUT_EXCEEDED,
            killed_by=killed_by,
            stdout_truncated=stdout.truncated,
            stderr_truncated=stderr.truncated,
            duration_ms=duration_ms,
            peak_memory_bytes=max(watchdog.peak_rss, maxrss),
            wrapped=bool(handle.prefix),
        )
        logger.debug(
            "Step finished in sandbox %s: exit_code=%s killed_by=%s duration_ms=%s",
            handle.id,
            exit_code,
            killed_by.value if killed_by else None,
            duration_ms,
        )
        return outcome


def _reap(process: subprocess.Popen) -> Tuple[int, int]:
    """Wait for ``process`` and return ``(exit_code, max_rss_bytes)``.

    ``os.wait4`` is used instead of ``Popen.wait`` to get the child's own
    resource usage; the return code is stored back on the ``Popen`` object.
    """
    _, status, usage = os.wait4(process.pid, 0)
    process.returncode = os.waitstatus_to_exitcode(status)
    # ru_maxrss is in kilobytes on Linux.
    return process.returncode, usage.ru_maxrss * 1024
