"""
Execution coordinator.

The only entry point the outside world uses.  An accepted request is run
by one worker of a fixed-size pool and moves through::

    RECEIVED -> SANITIZING -> PROVISIONED -> [COMPILING] -> RUNNING
             -> COLLECTING -> TORN_DOWN

Any state may jump straight to ``TORN_DOWN``; the sandbox is torn down on
every path and the worker always produces an :class:`ExecutionResult`.
Nothing is retried here.

Admission is explicit.  ``max_workers`` executions run at once.  Under the
``queue`` policy further requests wait in FIFO order, up to ``max_queue``
of them when that is non-zero; under ``reject`` they fail with
:class:`~polyrun.errors.Busy` as soon as every worker is taken.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Dict, Mapping, Optional

from ..config import Config
from ..errors import Busy, Condition, ForbiddenConstruct, ProvisionFailure
from .assembler import ExecutionResult, assemble, rejected
from .executor import ProcessExecutor
from .governor import ResourceGovernor
from .registry import LanguageRegistry, ResourceLimits, ToolchainDescriptor
from .sandbox import SandboxHandle, SandboxProvisioner
from .sanitizer import SourceSanitizer

logger = logging.getLogger(__name__)


class ExecutionState(str, Enum):
    RECEIVED = "received"
    SANITIZING = "sanitizing"
    PROVISIONED = "provisioned"
    COMPILING = "compiling"
    RUNNING = "running"
    COLLECTING = "collecting"
    TORN_DOWN = "torn_down"


@dataclass(frozen=True)
class ExecutionRequest:
    """One submission.  ``limits`` holds optional tightening overrides
    keyed by :class:`ResourceLimits` field name."""

    language: str
    source: str
    stdin: str = ""
    limits: Mapping[str, Optional[int]] = field(default_factory=lambda: MappingProxyType({}))
    execution_id: Optional[str] = None


class Execution:
    """Mutable bookkeeping for one in-flight request, owned by its worker."""

    def __init__(
        self,
        execution_id: str,
        request: ExecutionRequest,
        toolchain: ToolchainDescriptor,
        limits: ResourceLimits,
    ) -> None:
        self.id = execution_id
        self.request = request
        self.toolchain = toolchain
        self.limits = limits
        self.state = ExecutionState.RECEIVED
        self.handle: Optional[SandboxHandle] = None
        self.cancelled = threading.Event()
        self.received_at = time.perf_counter()
        self.started_at: Optional[float] = None
        self._lock = threading.Lock()

    def transition(self, state: ExecutionState) -> None:
        logger.debug("Execution %s: %s -> %s", self.id, self.state.value, state.value)
        self.state = state

    def bind(self, handle: SandboxHandle) -> None:
        with self._lock:
            self.handle = handle
        if self.cancelled.is_set():
            handle.kill(Condition.CANCELLED)

    def cancel(self) -> None:
        self.cancelled.set()
        with self._lock:
            handle = self.handle
        if handle is not None:
            handle.kill(Condition.CANCELLED)

    def start(self) -> None:
        """Mark the moment a worker picked the execution up."""
        self.started_at = time.perf_counter()

    def elapsed_ms(self) -> int:
        """Time spent since a worker picked the execution up; queue wait is excluded."""
        started = self.started_at if self.started_at is not None else time.perf_counter()
        return int((time.perf_counter() - started) * 1000)


class ExecutionCoordinator:
    """Sequence sanitize, provision, compile, run, collect and teardown."""

    def __init__(
        self,
        registry: LanguageRegistry,
        provisioner: SandboxProvisioner,
        executor: Optional[ProcessExecutor] = None,
        sanitizer: Optional[SourceSanitizer] = None,
        max_workers: int = 4,
        admission: str = "queue",
        max_queue: int = 0,
    ) -> None:
        if admission not in ("queue", "reject"):
            raise ValueError(f"Unknown admission policy: {admission}")
        self.registry = registry
        self.provisioner = provisioner
        self.executor = executor or ProcessExecutor()
        self.sanitizer = sanitizer or SourceSanitizer()
        self.max_workers = max_workers
        self.admission = admission
        self.max_queue = max_queue
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="polyrun-worker")
        self._executions: Dict[str, Execution] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Config) -> "ExecutionCoordinator":
        return cls(
            registry=LanguageRegistry.from_config(config),
            provisioner=SandboxProvisioner(config.workspace_root, config.isolation),
            executor=ProcessExecutor(ResourceGovernor(config.sample_interval_ms / 1000)),
            max_workers=config.max_workers,
            admission=config.admission,
            max_queue=config.max_queue,
        )

    @property
    def capacity(self) -> Optional[int]:
        """How many executions may be admitted at once; ``None`` if unbounded."""
        if self.admission == "reject":
            return self.max_workers
        if self.max_queue:
            return self.max_workers + self.max_queue
        return None

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._executions)

    def submit(self, request: ExecutionRequest) -> "Future[ExecutionResult]":
        """Admit ``request`` and schedule it on the worker pool.

        Raises :class:`~polyrun.errors.UnsupportedLanguage` for unknown
        languages, :class:`~polyrun.errors.Busy` when admission is refused
        and ``ValueError`` for invalid limits, source or stdin that is not
        valid UTF-8 text, or a duplicate execution id.
        The returned future always resolves to an :class:`ExecutionResult`.
        """
        toolchain = self.registry.resolve(request.language)
        _check_text("source", request.source)
        _check_text("stdin", request.stdin)
        limits = toolchain.default_limits.tightened(**dict(request.limits))
        execution_id = request.execution_id or uuid.uuid4().hex

        with self._lock:
            if execution_id in self._executions:
                raise ValueError(f"Execution id already in use: {execution_id}")
            capacity = self.capacity
            if capacity is not None and len(self._executions) >= capacity:
                logger.warning("Rejecting %s execution: %d in flight", toolchain.id, len(self._executions))
                raise Busy(self.max_workers)
            execution = Execution(execution_id, request, toolchain, limits)
            self._executions[execution_id] = execution

        logger.info("Accepted execution %s (%s)", execution_id, toolchain.id)
        try:
            return self._pool.submit(self._run, execution)
        except RuntimeError:
            self._forget(execution)
            raise

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Submit ``request`` and block until its result is available."""
        return self.submit(request).result()

    def cancel(self, execution_id: str) -> bool:
        """Cancel a queued or running execution.

        Returns ``False`` if no such execution is in flight.  Never waits
        for the program to exit.
        """
        with self._lock:
            execution = self._executions.get(execution_id)
        if execution is None:
            return False
        logger.info("Cancelling execution %s in state %s", execution_id, execution.state.value)
        execution.cancel()
        return True

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            executions = list(self._executions.values())
        for execution in executions:
            execution.cancel()
        self._pool.shutdown(wait=wait)

    def _run(self, execution: Execution) -> ExecutionResult:
        execution.start()
        try:
            result = self._execute(execution)
        except Exception:
            logger.exception("Unexpected engine failure in execution %s", execution.id)
            result = rejected(Condition.ENGINE_FAILURE, Condition.ENGINE_FAILURE.description, execution.elapsed_ms())
        finally:
            execution.transition(ExecutionState.TORN_DOWN)
            self._forget(execution)

        logger.info(
            "Execution %s finished: condition=%s exit_code=%s wall_time_ms=%s truncated=%s",
            execution.id,
            result.condition.value,
            result.exit_code,
            result.wall_time_ms,
            result.truncated,
        )
        return replace(result, execution_id=execution.id)

    def _execute(self, execution: Execution) -> ExecutionResult:
        toolchain = execution.toolchain
        request = execution.request
        if execution.cancelled.is_set():
            return rejected(Condition.CANCELLED, Condition.CANCELLED.description, execution.elapsed_ms())

        execution.transition(ExecutionState.SANITIZING)
        try:
            self.sanitizer.screen(toolchain, request.source)
        except ForbiddenConstruct as exc:
            return rejected(Condition.FORBIDDEN_CONSTRUCT, exc.message, execution.elapsed_ms())

        try:
            with self.provisioner.sandbox(toolchain, request.source, execution.limits) as handle:
                execution.bind(handle)
                execution.transition(ExecutionState.PROVISIONED)
                return self._steps(execution, handle)
        except ProvisionFailure as exc:
            logger.warning("Provisioning failed for execution %s: %s", execution.id, exc.message)
            return rejected(Condition.PROVISION_FAILURE, exc.message, execution.elapsed_ms())

    def _steps(self, execution: Execution, handle: SandboxHandle) -> ExecutionResult:
        toolchain = execution.toolchain
        compile_step = None
        if toolchain.compile_command is not None:
            execution.transition(ExecutionState.COMPILING)
            compile_limits = toolchain.limits_for_compile()
            compile_step = self.executor.run_step(
                handle,
                self.provisioner.command(handle, toolchain.compile_command, compile_limits),
                "",
                compile_limits,
                limit_address_space=False,
            )
            if not compile_step.ok:
                execution.transition(ExecutionState.COLLECTING)
                return assemble(
                    compile_step,
                    None,
                    execution.elapsed_ms(),
                    oom_markers=toolchain.oom_markers,
                    wall_clock_ms=compile_limits.wall_clock_ms,
                    memory_limit=compile_limits.memory_bytes,
                )

        execution.transition(ExecutionState.RUNNING)
        run_step = self.executor.run_step(
            handle,
            self.provisioner.command(handle, toolchain.run_command, execution.limits),
            execution.request.stdin,
            execution.limits,
            limit_address_space=toolchain.limit_address_space,
        )
        execution.transition(ExecutionState.COLLECTING)
        return assemble(
            compile_step,
            run_step,
            execution.elapsed_ms(),
            peak_memory_bytes=run_step.peak_memory_bytes or None,
            oom_markers=toolchain.oom_markers,
            wall_clock_ms=execution.limits.wall_clock_ms,
            memory_limit=execution.limits.memory_bytes,
        )

    def _forget(self, execution: Execution) -> None:
        with self._lock:
            if self._executions.get(execution.id) is execution:
                del self._executions[execution.id]


def _check_text(name: str, value: str) -> None:
    # Lone surrogates survive JSON decoding but cannot be written to a file or pipe.
    try:
        value.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise ValueError(f"{name} is not valid UTF-8 text: {exc.reason}") from None
