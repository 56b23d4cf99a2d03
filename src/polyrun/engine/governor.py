"""
Resource governor.

Limits are applied in two layers:

* kernel rlimits installed in the child between ``fork`` and ``exec``
  (CPU seconds, address space, file size, process count, no core dumps),
  so the host enforces them from the first instruction;
* a :class:`Watchdog` thread that samples the resident memory and the
  process count of the whole tree with ``psutil``.  It records the peak
  RSS for reporting and kills the process group when the tree exceeds the
  memory or process ceiling, which covers runtimes that cannot live under
  ``RLIMIT_AS`` and hosts where ``RLIMIT_NPROC`` does not apply (root).
"""

from __future__ import annotations

import logging
import math
import os
import resource
import threading
from typing import Callable, Optional

import psutil

from ..errors import Condition
from .registry import ResourceLimits

logger = logging.getLogger(__name__)

ViolationCallback = Callable[[Condition], None]


def uid_task_count(uid: Optional[int] = None) -> int:
    """Number of tasks (threads included) owned by ``uid``.

    ``RLIMIT_NPROC`` is counted per user, so the ceiling installed in a
    child has to sit on top of what the user already runs.
    """
    uid = os.getuid() if uid is None else uid
    count = 0
    for proc in psutil.process_iter(["uids", "num_threads"]):
        uids = proc.info.get("uids")
        if uids is not None and uids.real == uid:
            count += proc.info.get("num_threads") or 1
    return count


class ResourceGovernor:
    """Install rlimits at spawn time and watch the running tree."""

    def __init__(self, sample_interval: float = 0.01) -> None:
        self.sample_interval = sample_interval

    def preexec(self, limits: ResourceLimits, limit_address_space: bool = True) -> Callable[[], None]:
        """Build the ``preexec_fn`` for a step running under ``limits``.

        Everything that needs the parent's view of the system is computed
        here; the returned function only calls ``setrlimit``.
        """
        cpu_secs = max(1, math.ceil(limits.cpu_ms / 1000))
        nproc: Optional[int] = None
        if os.geteuid() != 0:
            nproc = uid_task_count() + limits.max_processes

        def apply_limits() -> None:
            resource.setrlimit(resource.RLIMIT_CPU, (cpu_secs, cpu_secs + 1))
            resource.setrlimit(resource.RLIMIT_CORE, (0, 0))
            resource.setrlimit(resource.RLIMIT_FSIZE, (limits.memory_bytes, limits.memory_bytes))
            if limit_address_space:
                resource.setrlimit(resource.RLIMIT_AS, (limits.memory_bytes, limits.memory_bytes))
            if nproc is not None:
                resource.setrlimit(resource.RLIMIT_NPROC, (nproc, nproc))

        return apply_limits

    def attach(self, pid: int, limits: ResourceLimits, on_violation: ViolationCallback) -> "Watchdog":
        watchdog = Watchdog(pid, limits, on_violation, self.sample_interval)
        watchdog.start()
        return watchdog


class Watchdog:
    """Sample a process tree until stopped.

    The tree is the root process plus its live descendants.  RSS is summed
    across the tree; the peak is what gets reported.
    """

    def __init__(
        self,
        pid: int,
        limits: ResourceLimits,
        on_violation: ViolationCallback,
        sample_interval: float,
    ) -> None:
        self.pid = pid
        self.limits = limits
        self.on_violation = on_violation
        self.sample_interval = sample_interval
        self.peak_rss = 0
        self.violation: Optional[Condition] = None
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._monitor_loop, name=f"watchdog-{pid}", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        self._thread.join(timeout=1.0)

    def _monitor_loop(self) -> None:
        try:
            root = psutil.Process(self.pid)
        except psutil.NoSuchProcess:
            return
        while not self._stop.is_set():
            try:
                tree = [root, *root.children(recursive=True)]
            except psutil.NoSuchProcess:
                break
            rss = 0
            for proc in tree:
                try:
                    rss += proc.memory_info().rss
                except psutil.Error:
                    continue
            self.peak_rss = max(self.peak_rss, rss)

            if rss > self.limits.memory_bytes:
                self._violate(Condition.MEMORY_LIMIT_EXCEEDED, "rss=%d bytes" % rss)
                break
            if len(tree) > self.limits.max_processes:
                self._violate(Condition.PROCESS_LIMIT_EXCEEDED, "processes=%d" % len(tree))
                break
            self._stop.wait(self.sample_interval)

    def _violate(self, condition: Condition, detail: str) -> None:
        self.violation = condition
        logger.warning("Process tree %s exceeded limits (%s): %s", self.pid, condition.value, detail)
        self.on_violation(condition)
