"""
Execution engine.

The coordinator is the public entry point; the other modules are the
pieces it sequences for every request:

* ``registry`` – static toolchain descriptors per language.
* ``sanitizer`` – deny-list screening for flagged languages.
* ``sandbox`` – per-execution workspace, environment and teardown.
* ``governor`` – rlimits at spawn time and a process-tree watchdog.
* ``executor`` – spawns a step, captures bounded output, enforces timeouts.
* ``assembler`` – maps step outcomes to an ``ExecutionResult``.
"""

from .assembler import ExecutionResult, TRUNCATION_MARKER
from .coordinator import ExecutionCoordinator, ExecutionRequest, ExecutionState
from .registry import LanguageRegistry, ResourceLimits, ToolchainDescriptor

__all__ = [
    "ExecutionCoordinator",
    "ExecutionRequest",
    "ExecutionResult",
    "ExecutionState",
    "LanguageRegistry",
    "ResourceLimits",
    "ToolchainDescriptor",
    "TRUNCATION_MARKER",
]
