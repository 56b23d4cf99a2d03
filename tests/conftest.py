"""Shared fixtures.

The API module reads its configuration at import time, so the environment
is pinned here before any test module imports it.
"""

from __future__ import annotations

import os
import tempfile

import pytest

os.environ.setdefault("POLYRUN_ISOLATION", "none")
os.environ.setdefault("POLYRUN_API_KEY", "")
os.environ.setdefault("POLYRUN_WORKSPACE_ROOT", os.path.join(tempfile.gettempdir(), "polyrun-tests"))

from polyrun.engine import LanguageRegistry  # noqa: E402
from polyrun.engine.coordinator import ExecutionCoordinator  # noqa: E402
from polyrun.engine.executor import ProcessExecutor  # noqa: E402
from polyrun.engine.governor import ResourceGovernor  # noqa: E402
from polyrun.engine.sandbox import SandboxProvisioner  # noqa: E402

from toolchains import COMPILED_PYTHON, MISSING_TOOLCHAIN, PYTHON, SCREENED_JAVASCRIPT  # noqa: E402


@pytest.fixture
def registry() -> LanguageRegistry:
    return LanguageRegistry(
        [PYTHON, COMPILED_PYTHON, SCREENED_JAVASCRIPT, MISSING_TOOLCHAIN],
        {"py": "python"},
    )


@pytest.fixture
def workspace_root(tmp_path):
    return tmp_path / "workspaces"


@pytest.fixture
def provisioner(workspace_root) -> SandboxProvisioner:
    return SandboxProvisioner(workspace_root, isolation="none")


@pytest.fixture
def executor() -> ProcessExecutor:
    return ProcessExecutor(ResourceGovernor(sample_interval=0.005))


@pytest.fixture
def make_coordinator(registry, provisioner, executor):
    created = []

    def factory(**kwargs) -> ExecutionCoordinator:
        coordinator = ExecutionCoordinator(
            registry=kwargs.pop("registry", registry),
            provisioner=kwargs.pop("provisioner", provisioner),
            executor=kwargs.pop("executor", executor),
            **kwargs,
        )
        created.append(coordinator)
        return coordinator

    yield factory
    for coordinator in created:
        coordinator.shutdown(wait=True)


@pytest.fixture
def coordinator(make_coordinator) -> ExecutionCoordinator:
    return make_coordinator()
