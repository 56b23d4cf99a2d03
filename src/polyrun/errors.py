"""Outcome conditions and engine exceptions.

Every way an execution can end is named by a :class:`Condition`.  The
coordinator maps failures below its contract into the ``condition`` field
of :class:`~polyrun.engine.assembler.ExecutionResult`; only the exceptions
raised before any work is accepted (:class:`UnsupportedLanguage` and
:class:`Busy`) are allowed to reach the caller.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class Condition(str, Enum):
    """Terminal outcome of an execution."""

    OK = "ok"
    COMPILE_FAILURE = "compile_failure"
    RUNTIME_FAILURE = "runtime_failure"
    TIMEOUT_EXCEEDED = "timeout_exceeded"
    MEMORY_LIMIT_EXCEEDED = "memory_limit_exceeded"
    PROCESS_LIMIT_EXCEEDED = "process_limit_exceeded"
    FORBIDDEN_CONSTRUCT = "forbidden_construct"
    PROVISION_FAILURE = "provision_failure"
    CANCELLED = "cancelled"
    ENGINE_FAILURE = "engine_failure"

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]


_DESCRIPTIONS = {
    Condition.OK: "Execution completed successfully",
    Condition.COMPILE_FAILURE: "Compilation failed",
    Condition.RUNTIME_FAILURE: "Program exited with a non-zero status",
    Condition.TIMEOUT_EXCEEDED: "Execution timed out",
    Condition.MEMORY_LIMIT_EXCEEDED: "Memory limit exceeded",
    Condition.PROCESS_LIMIT_EXCEEDED: "Process limit exceeded",
    Condition.FORBIDDEN_CONSTRUCT: "Source contains a forbidden construct",
    Condition.PROVISION_FAILURE: "Sandbox could not be provisioned",
    Condition.CANCELLED: "Execution was cancelled",
    Condition.ENGINE_FAILURE: "Internal execution error",
}


class EngineError(Exception):
    """Base class for engine errors."""

    condition = Condition.ENGINE_FAILURE

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class UnsupportedLanguage(EngineError):
    """The language id is not in the registry."""

    def __init__(self, language: str) -> None:
        self.language = language
        super().__init__(f"Unsupported language: {language}")


class ForbiddenConstruct(EngineError):
    condition = Condition.FORBIDDEN_CONSTRUCT

    def __init__(self, language: str, pattern: str, line: Optional[int] = None) -> None:
        self.language = language
        self.pattern = pattern
        self.line = line
        where = f" on line {line}" if line is not None else ""
        super().__init__(f"Forbidden construct '{pattern}'{where} is not allowed in {language} submissions")


class ProvisionFailure(EngineError):
    """The sandbox could not be created (host-side problem)."""

    condition = Condition.PROVISION_FAILURE


class Busy(EngineError):
    """Admission was refused because the worker pool is saturated."""

    def __init__(self, capacity: int) -> None:
        self.capacity = capacity
        super().__init__(f"Execution capacity exhausted ({capacity} workers busy)")
