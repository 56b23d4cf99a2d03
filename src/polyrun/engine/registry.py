"""
Language registry.

Each supported language is described by a :class:`ToolchainDescriptor`:
the name the source file is written under, the optional compile command,
the run command and the default resource limits.  Descriptors are plain
frozen dataclasses built from the static table at the bottom of this
module; the registry is read-only once constructed and is shared by every
concurrent execution.

Commands are argv templates.  The following placeholders are expanded when
a step is launched:

``{source}``
    File name of the submitted source inside the workspace.
``{workdir}``
    Absolute path of the workspace.
``{memory_mb}``
    The effective memory ceiling in megabytes.
"""

from __future__ import annotations

import dataclasses
import os
import sys
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from ..config import Config
from ..errors import UnsupportedLanguage

MB = 1024 * 1024


@dataclass(frozen=True)
class ResourceLimits:
    """Ceilings applied to one step of an execution."""

    wall_clock_ms: int = 10_000
    cpu_ms: int = 10_000
    memory_bytes: int = 256 * MB
    max_output_bytes: int = 10_000
    max_processes: int = 32

    def tightened(self, **overrides: Optional[int]) -> "ResourceLimits":
        """Return a copy where each given value replaces ours only if it is lower.

        ``None`` and unknown-to-us keys are ignored so that partially filled
        request bodies can be passed straight through.  Values below 1 are
        rejected rather than silently clamped.
        """
        changes: Dict[str, int] = {}
        for name, value in overrides.items():
            if value is None or not hasattr(self, name):
                continue
            if value < 1:
                raise ValueError(f"{name} must be positive")
            changes[name] = min(getattr(self, name), value)
        return dataclasses.replace(self, **changes)

    def clamped_to(self, ceiling: "ResourceLimits") -> "ResourceLimits":
        return self.tightened(**dataclasses.asdict(ceiling))

    @property
    def memory_mb(self) -> int:
        return max(1, self.memory_bytes // MB)


@dataclass(frozen=True)
class ToolchainDescriptor:
    """Static description of how to build and run one language."""

    id: str
    source_name: str
    run_command: Tuple[str, ...]
    compile_command: Optional[Tuple[str, ...]] = None
    default_limits: ResourceLimits = field(default_factory=ResourceLimits)
    compile_limits: Optional[ResourceLimits] = None
    env: Mapping[str, str] = field(default_factory=dict)
    # Runtimes that reserve large virtual mappings up front (JVM, Go, V8)
    # cannot live under RLIMIT_AS; the governor's RSS watchdog covers them.
    limit_address_space: bool = True
    oom_markers: Tuple[str, ...] = ()
    screened: bool = False

    @property
    def file_extension(self) -> str:
        return os.path.splitext(self.source_name)[1]

    @property
    def compiled(self) -> bool:
        return self.compile_command is not None

    def limits_for_compile(self) -> ResourceLimits:
        return self.compile_limits or self.default_limits


class LanguageRegistry:
    """Read-only mapping of language id to :class:`ToolchainDescriptor`."""

    def __init__(
        self,
        toolchains: Iterable[ToolchainDescriptor],
        aliases: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._toolchains = MappingProxyType({t.id: t for t in toolchains})
        self._aliases = MappingProxyType(
            {k: v for k, v in (aliases or {}).items() if v in self._toolchains}
        )

    @classmethod
    def from_config(cls, config: Config) -> "LanguageRegistry":
        """Build the registry of built-in toolchains allowed by ``config``.

        Default limits are clamped to the host-wide ceilings and the
        ``screened`` flag is set for the configured languages.
        """
        ceiling = ResourceLimits(
            wall_clock_ms=config.max_execution_ms,
            cpu_ms=config.max_cpu_ms,
            memory_bytes=config.max_memory_mb * MB,
            max_output_bytes=config.max_output_bytes,
            max_processes=config.max_processes,
        )
        allowed = set(config.allowed_langs) if config.allowed_langs is not None else None
        screened = set(config.screened_langs)
        toolchains: List[ToolchainDescriptor] = []
        for toolchain in BUILTIN_TOOLCHAINS:
            if allowed is not None and toolchain.id not in allowed:
                continue
            compile_limits = toolchain.compile_limits
            if compile_limits is not None:
                compile_limits = compile_limits.clamped_to(ceiling)
            toolchains.append(
                dataclasses.replace(
                    toolchain,
                    default_limits=toolchain.default_limits.clamped_to(ceiling),
                    compile_limits=compile_limits,
                    screened=toolchain.id in screened,
                )
            )
        return cls(toolchains, LANGUAGE_ALIASES)

    def resolve(self, language: str) -> ToolchainDescriptor:
        key = (language or "").strip().lower()
        key = self._aliases.get(key, key)
        try:
            return self._toolchains[key]
        except KeyError:
            raise UnsupportedLanguage(language) from None

    def ids(self) -> List[str]:
        return sorted(self._toolchains)

    def __contains__(self, language: object) -> bool:
        if not isinstance(language, str):
            return False
        try:
            self.resolve(language)
        except UnsupportedLanguage:
            return False
        return True

    def __iter__(self) -> Iterator[ToolchainDescriptor]:
        return iter(self._toolchains[key] for key in self.ids())

    def __len__(self) -> int:
        return len(self._toolchains)


_COMPILE_LIMITS = ResourceLimits(
    wall_clock_ms=30_000,
    cpu_ms=30_000,
    memory_bytes=1024 * MB,
    max_output_bytes=64_000,
    max_processes=64,
)

_C_OOM = ("Cannot allocate memory",)

BUILTIN_TOOLCHAINS: Tuple[ToolchainDescriptor, ...] = (
    ToolchainDescriptor(
        id="python",
        source_name="main.py",
        # -I: ignore PYTHON* variables and the user site directory
        run_command=(sys.executable or "python3", "-I", "{source}"),
        oom_markers=("MemoryError",),
    ),
    ToolchainDescriptor(
        id="javascript",
        source_name="main.js",
        run_command=("node", "--max-old-space-size={memory_mb}", "{source}"),
        default_limits=ResourceLimits(memory_bytes=512 * MB, max_processes=64),
        limit_address_space=False,
        oom_markers=("JavaScript heap out of memory",),
    ),
    ToolchainDescriptor(
        id="java",
        source_name="Main.java",
        compile_command=("javac", "-J-Xmx512m", "-encoding", "UTF-8", "{source}"),
        run_command=("java", "-Xmx{memory_mb}m", "-Xss64m", "-XX:+UseSerialGC", "-cp", ".", "Main"),
        default_limits=ResourceLimits(memory_bytes=512 * MB, max_processes=128),
        compile_limits=dataclasses.replace(_COMPILE_LIMITS, max_processes=128),
        limit_address_space=False,
        oom_markers=("java.lang.OutOfMemoryError",),
    ),
    ToolchainDescriptor(
        id="c",
        source_name="main.c",
        compile_command=("gcc", "-O2", "-std=c17", "-o", "main", "{source}", "-lm"),
        run_command=("./main",),
        compile_limits=_COMPILE_LIMITS,
        oom_markers=_C_OOM,
    ),
    ToolchainDescriptor(
        id="cpp",
        source_name="main.cpp",
        compile_command=("g++", "-O2", "-std=c++17", "-o", "main", "{source}"),
        run_command=("./main",),
        compile_limits=_COMPILE_LIMITS,
        oom_markers=("std::bad_alloc",) + _C_OOM,
    ),
    ToolchainDescriptor(
        id="go",
        source_name="main.go",
        compile_command=("go", "build", "-o", "main", "{source}"),
        run_command=("./main",),
        compile_limits=dataclasses.replace(_COMPILE_LIMITS, wall_clock_ms=60_000, cpu_ms=60_000),
        env={
            "GOCACHE": "{workdir}/.cache/go-build",
            "GOPATH": "{workdir}/.go",
            "GOTOOLCHAIN": "local",
            "CGO_ENABLED": "0",
        },
        limit_address_space=False,
        oom_markers=("out of memory",),
    ),
    ToolchainDescriptor(
        id="rust",
        source_name="main.rs",
        compile_command=("rustc", "-O", "-o", "main", "{source}"),
        run_command=("./main",),
        compile_limits=dataclasses.replace(_COMPILE_LIMITS, wall_clock_ms=60_000, cpu_ms=60_000),
        oom_markers=("memory allocation of",),
    ),
    ToolchainDescriptor(
        id="php",
        source_name="main.php",
        run_command=("php", "-d", "memory_limit=-1", "{source}"),
        oom_markers=("Out of memory", "Allowed memory size"),
    ),
    ToolchainDescriptor(
        id="ruby",
        source_name="main.rb",
        run_command=("ruby", "{source}"),
        oom_markers=("NoMemoryError", "failed to allocate memory"),
    ),
    ToolchainDescriptor(
        id="bash",
        source_name="main.sh",
        run_command=("bash", "{source}"),
        oom_markers=("cannot allocate",) + _C_OOM,
    ),
)

LANGUAGE_ALIASES: Mapping[str, str] = MappingProxyType(
    {
        "py": "python",
        "python3": "python",
        "js": "javascript",
        "node": "javascript",
        "c++": "cpp",
        "golang": "go",
        "rs": "rust",
        "rb": "ruby",
        "sh": "bash",
    }
)
