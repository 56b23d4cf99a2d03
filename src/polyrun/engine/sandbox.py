"""
Per-execution sandboxes.

A sandbox is a fresh private directory holding the submitted source and a
minimal environment.  When bubblewrap can create namespaces on the host,
every step runs inside ``bwrap`` with a read-only view of the system
directories, the workspace bound at ``/workspace`` as the only writable
path, a private ``/tmp`` and no network, so one execution can neither see
nor touch another's workspace.  Each sandbox belongs to exactly one
execution and is destroyed by :meth:`SandboxProvisioner.teardown`, which
kills whatever is still running in it and removes the directory.
"""

from __future__ import annotations

import functools
import logging
import os
import shutil
import signal
import subprocess
import tempfile
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import psutil

from ..errors import Condition, ProvisionFailure
from .registry import ResourceLimits, ToolchainDescriptor

logger = logging.getLogger(__name__)

BASE_PATH = "/usr/local/bin:/usr/bin:/bin"
INNER_WORKDIR = "/workspace"

# Read-only inside the sandbox.  Missing entries are skipped.
SYSTEM_BINDS: Tuple[str, ...] = (
    "/usr",
    "/lib",
    "/lib64",
    "/lib32",
    "/bin",
    "/sbin",
    "/etc/alternatives",
    "/etc/ld.so.cache",
    "/etc/ld.so.conf",
    "/etc/ld.so.conf.d",
)


def _system_bind_args() -> List[str]:
    args: List[str] = []
    for path in SYSTEM_BINDS:
        args += ["--ro-bind-try", path, path]
    return args


@functools.lru_cache(maxsize=None)
def bwrap_available() -> bool:
    """Check once whether bubblewrap can create its namespaces here."""
    binary = shutil.which("bwrap")
    if binary is None:
        return False
    try:
        result = subprocess.run(
            [binary, *_system_bind_args(), "--unshare-all", "--die-with-parent", "true"],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    return result.returncode == 0


def _install_prefixes(binaries: Iterable[str]) -> List[str]:
    """Install trees of toolchain binaries living outside the system binds.

    ``/opt/jdk/bin/java`` needs ``/opt/jdk``; a virtualenv interpreter needs
    both the venv and the tree its symlink points into.
    """
    prefixes: List[str] = []
    for binary in binaries:
        for candidate in (binary, os.path.realpath(binary)):
            if any(candidate == path or candidate.startswith(path + os.sep) for path in SYSTEM_BINDS):
                continue
            prefix = os.path.dirname(os.path.dirname(candidate))
            if prefix and prefix != os.sep and prefix not in prefixes:
                prefixes.append(prefix)
    return prefixes


class ProcessGroup:
    """The process group of one running step.

    ``kill`` may be called from any thread (timer, governor, cancellation);
    the first reason recorded wins and later calls only re-send SIGKILL.
    """

    def __init__(self, pgid: int) -> None:
        self.pgid = pgid
        self.killed_by: Optional[Condition] = None
        self._lock = threading.Lock()

    def kill(self, reason: Condition) -> None:
        with self._lock:
            first = self.killed_by is None
            if first:
                self.killed_by = reason
        if first:
            logger.info("Killing process group %s: %s", self.pgid, reason.value)
        self.kill_remaining()

    def kill_remaining(self) -> None:
        """SIGKILL the group without recording a reason."""
        try:
            os.killpg(self.pgid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass


@dataclass
class SandboxHandle:
    """One ephemeral execution scope.

    ``work_dir`` is the host path of the workspace; ``inner_dir`` is the
    path the program sees, which differs when the sandbox remaps it.
    """

    id: str
    work_dir: Path
    source_path: Path
    env: Dict[str, str]
    limits: ResourceLimits
    inner_dir: Optional[Path] = None
    prefix: Tuple[str, ...] = ()
    created_at: float = field(default_factory=time.time)
    cancelled: bool = False
    torn_down: bool = False
    _group: Optional[ProcessGroup] = field(default=None, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __post_init__(self) -> None:
        if self.inner_dir is None:
            self.inner_dir = self.work_dir

    @property
    def group(self) -> Optional[ProcessGroup]:
        return self._group

    def attach(self, group: ProcessGroup) -> None:
        """Register the group of the step that was just spawned."""
        with self._lock:
            self._group = group
            cancelled = self.cancelled
        if cancelled:
            group.kill(Condition.CANCELLED)

    def detach(self, group: ProcessGroup) -> None:
        with self._lock:
            if self._group is group:
                self._group = None

    def kill(self, reason: Condition = Condition.CANCELLED) -> None:
        """Kill the running step without waiting for it to exit."""
        with self._lock:
            if reason is Condition.CANCELLED:
                self.cancelled = True
            group = self._group
        if group is not None:
            group.kill(reason)


class SandboxProvisioner:
    """Create and destroy sandboxes under a common workspace root."""

    def __init__(self, workspace_root: str | Path, isolation: str = "auto") -> None:
        self.workspace_root = Path(workspace_root)
        if isolation == "auto":
            isolation = "bwrap" if bwrap_available() else "none"
            if isolation == "none":
                logger.warning(
                    "bubblewrap unavailable; sandboxes will share the host network and filesystem"
                )
        elif isolation == "bwrap" and not bwrap_available():
            raise RuntimeError("POLYRUN_ISOLATION=bwrap but bubblewrap cannot create namespaces here")
        self.isolation = isolation
        self._bwrap = (shutil.which("bwrap") or "bwrap") if isolation == "bwrap" else None

    def provision(
        self,
        toolchain: ToolchainDescriptor,
        source: str,
        limits: ResourceLimits,
    ) -> SandboxHandle:
        binaries = self._resolve_binaries(toolchain)
        try:
            data = source.encode("utf-8")
        except UnicodeEncodeError as exc:
            raise ProvisionFailure(f"Source is not valid UTF-8 text: {exc.reason}") from exc
        try:
            self.workspace_root.mkdir(parents=True, exist_ok=True)
            work_dir = Path(tempfile.mkdtemp(prefix="run-", dir=str(self.workspace_root)))
        except OSError as exc:
            raise ProvisionFailure(f"Unable to create workspace: {exc.strerror or exc}") from exc

        inner_dir = Path(INNER_WORKDIR) if self._bwrap else work_dir
        handle = SandboxHandle(
            id=uuid.uuid4().hex[:12],
            work_dir=work_dir,
            inner_dir=inner_dir,
            source_path=work_dir / toolchain.source_name,
            env={},
            limits=limits,
        )
        # From here on every failure must remove the workspace again.
        try:
            handle.env = self._environment(toolchain, inner_dir, binaries)
            handle.prefix = self._isolation_prefix(work_dir, handle.env, binaries)
            handle.source_path.write_bytes(data)
            handle.source_path.chmod(0o600)
        except OSError as exc:
            self.teardown(handle)
            raise ProvisionFailure(f"Unable to write source file: {exc.strerror or exc}") from exc
        except BaseException:
            self.teardown(handle)
            raise

        logger.info("Provisioned sandbox %s for %s in %s", handle.id, toolchain.id, work_dir)
        return handle

    def command(
        self,
        handle: SandboxHandle,
        template: Sequence[str],
        limits: Optional[ResourceLimits] = None,
    ) -> List[str]:
        """Expand an argv template for ``handle`` and add the isolation prefix."""
        limits = limits or handle.limits
        argv = [_expand(part, handle, limits) for part in template]
        if "/" not in argv[0]:
            argv[0] = shutil.which(argv[0]) or argv[0]
        return [*handle.prefix, *argv]

    def teardown(self, handle: SandboxHandle) -> None:
        """Kill everything left in the sandbox and remove its directory.

        Safe to call any number of times and from any thread.
        """
        handle.kill(Condition.CANCELLED)
        self._sweep(handle.work_dir)
        if handle.work_dir.exists():
            _make_removable(handle.work_dir)
            try:
                shutil.rmtree(handle.work_dir)
            except OSError as exc:
                logger.warning("Failed to remove sandbox %s (%s): %s", handle.id, handle.work_dir, exc)
                return
        if not handle.torn_down:
            handle.torn_down = True
            logger.info(
                "Tore down sandbox %s after %.0f ms",
                handle.id,
                (time.time() - handle.created_at) * 1000,
            )

    @contextmanager
    def sandbox(
        self,
        toolchain: ToolchainDescriptor,
        source: str,
        limits: ResourceLimits,
    ) -> Iterator[SandboxHandle]:
        handle = self.provision(toolchain, source, limits)
        try:
            yield handle
        finally:
            self.teardown(handle)

    def _resolve_binaries(self, toolchain: ToolchainDescriptor) -> List[str]:
        commands = [toolchain.run_command]
        if toolchain.compile_command:
            commands.insert(0, toolchain.compile_command)
        resolved = []
        for argv in commands:
            binary = argv[0]
            if "/" in binary and not os.path.isabs(binary):
                # Produced by the compile step inside the workspace.
                continue
            path = shutil.which(binary)
            if path is None:
                raise ProvisionFailure(f"Toolchain binary '{binary}' for {toolchain.id} is not installed")
            resolved.append(path)
        return resolved

    def _isolation_prefix(
        self,
        work_dir: Path,
        env: Mapping[str, str],
        binaries: Sequence[str],
    ) -> Tuple[str, ...]:
        if self._bwrap is None:
            return ()
        args = [self._bwrap, *_system_bind_args()]
        for prefix in _install_prefixes(binaries):
            args += ["--ro-bind", prefix, prefix]
        args += [
            # Workspace (writable)
            "--bind", str(work_dir), INNER_WORKDIR,
            "--chdir", INNER_WORKDIR,
            "--tmpfs", "/tmp",
            "--proc", "/proc",
            "--dev", "/dev",
            "--unshare-all",
            # Killing bwrap takes the whole sandbox with it.
            "--die-with-parent",
            "--new-session",
            "--cap-drop", "ALL",
            "--clearenv",
        ]
        for key, value in env.items():
            args += ["--setenv", key, value]
        return tuple(args)

    def _environment(
        self,
        toolchain: ToolchainDescriptor,
        inner_dir: Path,
        binaries: Sequence[str],
    ) -> Dict[str, str]:
        search_path = []
        for binary in binaries:
            directory = os.path.dirname(binary)
            if directory and directory not in search_path and directory not in BASE_PATH.split(":"):
                search_path.append(directory)
        search_path.append(BASE_PATH)
        env = {
            "PATH": ":".join(search_path),
            "HOME": str(inner_dir),
            "TMPDIR": str(inner_dir),
            "LANG": "C.UTF-8",
            "LC_ALL": "C.UTF-8",
        }
        for key, value in toolchain.env.items():
            env[key] = value.format(workdir=inner_dir)
        return env

    def _sweep(self, work_dir: Path) -> None:
        """Kill stray processes still running inside ``work_dir``.

        Processes that left the step's process group (``setsid``, daemons)
        are found by their working directory.
        """
        root = str(work_dir)
        for proc in psutil.process_iter(["pid", "cwd"]):
            cwd = proc.info.get("cwd")
            if not cwd or not (cwd == root or cwd.startswith(root + os.sep)):
                continue
            logger.warning("Killing stray process %s left in %s", proc.pid, root)
            try:
                proc.kill()
            except psutil.Error:
                pass


def _expand(part: str, handle: SandboxHandle, limits: ResourceLimits) -> str:
    return part.format(
        source=handle.source_path.name,
        workdir=handle.inner_dir,
        memory_mb=limits.memory_mb,
    )


def _make_removable(path: Path) -> None:
    # Programs may drop write permission on directories they created.
    for root, dirs, _files in os.walk(path):
        for name in dirs:
            try:
                os.chmod(os.path.join(root, name), 0o700)
            except OSError:
                pass
