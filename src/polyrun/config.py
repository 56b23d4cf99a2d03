"""Configuration loader.

The execution service reads its configuration from environment variables so
the same image can run under docker-compose, a plain VM or a CI runner.
Reasonable defaults are provided so that local development works out of
the box.

Environment variables:

``POLYRUN_API_KEY``
    The shared secret used to authenticate incoming requests.  Clients must
    include this value in the ``x-api-key`` header.  Empty disables the check.

``POLYRUN_ALLOWED_LANGS``
    Comma-separated list of language ids to enable.  Defaults to every
    built-in toolchain.

``POLYRUN_SCREENED_LANGS``
    Comma-separated list of languages whose source is screened against a
    deny-list before execution.  Defaults to ``javascript``.

``POLYRUN_WORKSPACE_ROOT``
    Parent directory under which per-execution workspaces are created.
    Defaults to ``<tmp>/polyrun``.

``POLYRUN_MAX_WORKERS``
    Number of executions allowed to run at the same time.  Default is 4.

``POLYRUN_ADMISSION``
    What happens when every worker is busy: ``queue`` (wait in FIFO order)
    or ``reject`` (fail fast with ``Busy``).  Defaults to ``queue``.

``POLYRUN_MAX_QUEUE``
    Maximum number of waiting executions under the ``queue`` policy.
    ``0`` means unbounded.

``POLYRUN_MAX_EXECUTION_MS`` / ``POLYRUN_MAX_CPU_MS`` / ``POLYRUN_MAX_MEMORY_MB`` /
``POLYRUN_MAX_OUTPUT_BYTES`` / ``POLYRUN_MAX_PROCESSES``
    Host-wide ceilings.  Per-language defaults are clamped to these.

``POLYRUN_ISOLATION``
    ``auto``, ``bwrap`` or ``none``.  ``bwrap`` runs every step under
    bubblewrap with a private filesystem view and no network.  ``auto`` uses
    it when the host allows unprivileged namespaces and falls back to
    ``none``, where sandboxes share the host filesystem and network.

``POLYRUN_SAMPLE_INTERVAL_MS``
    How often the resource governor samples the process tree.  Default 10.

``POLYRUN_LOG_LEVEL``
    Log level for the ``polyrun`` logger.  Defaults to ``INFO``.

``PORT``
    The port on which the API server listens.  Defaults to 8080.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from typing import List, Optional

ADMISSION_POLICIES = {"queue", "reject"}
ISOLATION_MODES = {"auto", "bwrap", "none"}


def _parse_list(value: str | None) -> Optional[List[str]]:
    if value is None:
        return None
    return [item.strip().lower() for item in value.split(",") if item.strip()]


def _int_var(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        raise ValueError(f"Invalid integer for {name}: {val}")


@dataclass
class Config:
    """Centralised configuration object."""

    api_key: str = ""
    allowed_langs: Optional[List[str]] = None
    screened_langs: List[str] = field(default_factory=lambda: ["javascript"])
    workspace_root: str = os.path.join(tempfile.gettempdir(), "polyrun")
    max_workers: int = 4
    admission: str = "queue"
    max_queue: int = 0
    max_execution_ms: int = 30_000
    max_cpu_ms: int = 30_000
    max_memory_mb: int = 1024
    max_output_bytes: int = 1024 * 1024
    max_processes: int = 64
    isolation: str = "auto"
    sample_interval_ms: int = 10
    log_level: str = "INFO"
    port: int = 8080

    def __post_init__(self) -> None:
        if self.admission not in ADMISSION_POLICIES:
            raise ValueError(f"Invalid POLYRUN_ADMISSION: {self.admission}. Use 'queue' or 'reject'.")
        if self.isolation not in ISOLATION_MODES:
            raise ValueError(
                f"Invalid POLYRUN_ISOLATION: {self.isolation}. Use 'auto', 'bwrap' or 'none'."
            )
        if self.max_workers < 1:
            raise ValueError("POLYRUN_MAX_WORKERS must be at least 1")
        if self.max_queue < 0:
            raise ValueError("POLYRUN_MAX_QUEUE must not be negative")

    @classmethod
    def load(cls) -> "Config":
        # API key may be empty in local development but should be set in production.
        api_key = os.getenv("POLYRUN_API_KEY", "")
        allowed_langs = _parse_list(os.getenv("POLYRUN_ALLOWED_LANGS"))
        screened_langs = _parse_list(os.getenv("POLYRUN_SCREENED_LANGS"))
        if screened_langs is None:
            screened_langs = ["javascript"]

        return cls(
            api_key=api_key,
            allowed_langs=allowed_langs,
            screened_langs=screened_langs,
            workspace_root=os.getenv(
                "POLYRUN_WORKSPACE_ROOT", os.path.join(tempfile.gettempdir(), "polyrun")
            ),
            max_workers=_int_var("POLYRUN_MAX_WORKERS", 4),
            admission=os.getenv("POLYRUN_ADMISSION", "queue").lower(),
            max_queue=_int_var("POLYRUN_MAX_QUEUE", 0),
            max_execution_ms=_int_var("POLYRUN_MAX_EXECUTION_MS", 30_000),
            max_cpu_ms=_int_var("POLYRUN_MAX_CPU_MS", 30_000),
            max_memory_mb=_int_var("POLYRUN_MAX_MEMORY_MB", 1024),
            max_output_bytes=_int_var("POLYRUN_MAX_OUTPUT_BYTES", 1024 * 1024),
            max_processes=_int_var("POLYRUN_MAX_PROCESSES", 64),
            isolation=os.getenv("POLYRUN_ISOLATION", "auto").lower(),
            sample_interval_ms=_int_var("POLYRUN_SAMPLE_INTERVAL_MS", 10),
            log_level=os.getenv("POLYRUN_LOG_LEVEL", "INFO").upper(),
            port=_int_var("PORT", 8080),
        )

    @classmethod
    def from_env(cls) -> "Config":
        """
        Alternate constructor used by the API to load configuration.

        This wrapper calls :meth:`load` to construct the configuration.
        It exists to provide a more intuitive name when consumed in
        application code.
        """
        return cls.load()
