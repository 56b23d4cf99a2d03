from __future__ import annotations

import shutil
import textwrap
import time

import pytest

from polyrun.config import Config
from polyrun.engine import ExecutionRequest, ExecutionState, LanguageRegistry
from polyrun.engine.coordinator import ExecutionCoordinator
from polyrun.engine.executor import ProcessExecutor
from polyrun.engine.registry import BUILTIN_TOOLCHAINS
from polyrun.engine.sandbox import SandboxProvisioner, bwrap_available
from polyrun.errors import Busy, Condition, UnsupportedLanguage

SLEEPER = "import time; time.sleep(30)"


def _request(source: str, language: str = "python", **kwargs) -> ExecutionRequest:
    return ExecutionRequest(language=language, source=textwrap.dedent(source), **kwargs)


def _wait_for_state(coordinator, execution_id, state, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        execution = coordinator._executions.get(execution_id)
        if execution is not None and execution.state is state:
            return execution
        time.sleep(0.01)
    raise AssertionError(f"execution {execution_id} never reached {state.value}")


def _leftovers(workspace_root):
    return list(workspace_root.iterdir()) if workspace_root.exists() else []


def test_simple_program(coordinator, workspace_root):
    result = coordinator.execute(_request("print(1+1)"))
    assert result.success
    assert result.condition is Condition.OK
    assert result.stdout == "2\n"
    assert result.exit_code == 0
    assert not result.timed_out
    assert not result.truncated
    assert result.execution_id
    assert result.wall_time_ms >= 0
    assert _leftovers(workspace_root) == []


def test_caller_supplied_execution_id(coordinator):
    result = coordinator.execute(_request("print('x')", execution_id="job-1"))
    assert result.execution_id == "job-1"


def test_alias_resolution(coordinator):
    assert coordinator.execute(_request("print('alias')", language="PY")).stdout == "alias\n"


def test_unsupported_language_is_rejected_before_provisioning(coordinator, workspace_root):
    with pytest.raises(UnsupportedLanguage):
        coordinator.submit(_request("PROGRAM-ID. HELLO.", language="cobol"))
    assert not workspace_root.exists()
    assert coordinator.in_flight == 0


def test_invalid_limit_override(coordinator):
    with pytest.raises(ValueError):
        coordinator.submit(_request("print(1)", limits={"wall_clock_ms": 0}))


def test_forbidden_construct_never_runs(coordinator, workspace_root):
    result = coordinator.execute(_request("const fs = require('fs')", language="javascript"))
    assert not result.success
    assert result.condition is Condition.FORBIDDEN_CONSTRUCT
    assert "require(" in result.error
    assert result.stdout == ""
    assert result.exit_code is None
    assert not workspace_root.exists()


def test_clean_screened_program_runs(coordinator):
    result = coordinator.execute(_request("console.log('hi')", language="javascript"))
    assert result.success
    assert result.stdout == "ran\n"


class CountingExecutor(ProcessExecutor):
    def __init__(self, governor=None):
        super().__init__(governor)
        self.steps = []

    def run_step(self, handle, argv, stdin, limits, limit_address_space=True):
        self.steps.append(list(argv))
        return super().run_step(handle, argv, stdin, limits, limit_address_space)


def test_compile_failure_skips_run(make_coordinator, workspace_root):
    executor = CountingExecutor()
    coordinator = make_coordinator(executor=executor)
    result = coordinator.execute(_request("def broken(:\n    pass\n", language="pyc"))

    assert not result.success
    assert result.condition is Condition.COMPILE_FAILURE
    assert "SyntaxError" in result.stderr
    assert result.stdout == ""
    assert len(executor.steps) == 1
    assert "py_compile" in executor.steps[0]
    assert _leftovers(workspace_root) == []


def test_compile_then_run(make_coordinator):
    executor = CountingExecutor()
    coordinator = make_coordinator(executor=executor)
    result = coordinator.execute(_request("print('compiled')", language="pyc"))
    assert result.success
    assert result.stdout == "compiled\n"
    assert len(executor.steps) == 2


def test_runtime_failure_keeps_partial_output(coordinator):
    result = coordinator.execute(_request("print('before')\nraise SystemExit(4)\n"))
    assert result.condition is Condition.RUNTIME_FAILURE
    assert result.exit_code == 4
    assert result.stdout == "before\n"


def test_missing_toolchain_is_a_provision_failure(coordinator, workspace_root):
    result = coordinator.execute(_request("anything", language="ghost"))
    assert result.condition is Condition.PROVISION_FAILURE
    assert "polyrun-no-such-binary" in result.error
    assert _leftovers(workspace_root) == []


def test_timeout_override(coordinator, workspace_root):
    result = coordinator.execute(_request("while True:\n    pass\n", limits={"wall_clock_ms": 500}))
    assert result.condition is Condition.TIMEOUT_EXCEEDED
    assert result.timed_out
    assert not result.success
    assert "timed out after 500 ms" in result.error
    assert _leftovers(workspace_root) == []


def test_limit_overrides_cannot_loosen(coordinator):
    source = "import resource; print(resource.getrlimit(resource.RLIMIT_CPU)[0])"
    result = coordinator.execute(_request(source, limits={"cpu_ms": 10**9}))
    assert result.stdout == "10\n"


def test_concurrent_executions_are_isolated(make_coordinator, workspace_root):
    coordinator = make_coordinator(max_workers=4)
    source = """
        import os, sys, time
        token = sys.stdin.read()
        with open("token.txt", "w") as handle:
            handle.write(token)
        time.sleep(0.3)
        print(sorted(os.listdir(".")), open("token.txt").read())
    """
    futures = [
        coordinator.submit(_request(source, stdin=f"token-{index}", execution_id=f"iso-{index}"))
        for index in range(4)
    ]
    results = [future.result(timeout=30) for future in futures]

    for index, result in enumerate(results):
        assert result.success, result.error
        assert result.execution_id == f"iso-{index}"
        assert result.stdout == f"['main.py', 'token.txt'] token-{index}\n"
    assert _leftovers(workspace_root) == []


def test_duplicate_execution_id_is_refused(coordinator):
    future = coordinator.submit(_request(SLEEPER, execution_id="dup"))
    try:
        with pytest.raises(ValueError):
            coordinator.submit(_request("print(1)", execution_id="dup"))
    finally:
        coordinator.cancel("dup")
        future.result(timeout=10)


def test_reject_policy_refuses_when_workers_are_busy(make_coordinator):
    coordinator = make_coordinator(max_workers=1, admission="reject")
    future = coordinator.submit(_request(SLEEPER, execution_id="busy"))
    try:
        with pytest.raises(Busy):
            coordinator.submit(_request("print(1)"))
    finally:
        coordinator.cancel("busy")
    assert future.result(timeout=10).condition is Condition.CANCELLED
    assert coordinator.execute(_request("print(1)")).success


def test_queue_policy_is_bounded(make_coordinator):
    coordinator = make_coordinator(max_workers=1, admission="queue", max_queue=1)
    running = coordinator.submit(_request(SLEEPER, execution_id="first"))
    queued = coordinator.submit(_request("print('queued')", execution_id="second"))
    try:
        with pytest.raises(Busy):
            coordinator.submit(_request("print('third')"))
    finally:
        coordinator.cancel("first")
    assert running.result(timeout=10).condition is Condition.CANCELLED
    assert queued.result(timeout=10).stdout == "queued\n"


def test_queued_requests_run_in_submission_order(make_coordinator):
    coordinator = make_coordinator(max_workers=1)
    futures = [coordinator.submit(_request(f"print({index})")) for index in range(5)]
    finished = [future.result(timeout=30) for future in futures]
    assert [result.stdout for result in finished] == [f"{index}\n" for index in range(5)]


def test_cancel_running_execution(coordinator, workspace_root):
    future = coordinator.submit(_request(SLEEPER, execution_id="victim"))
    _wait_for_state(coordinator, "victim", ExecutionState.RUNNING)
    time.sleep(0.1)

    start = time.monotonic()
    assert coordinator.cancel("victim")
    result = future.result(timeout=10)
    assert time.monotonic() - start < 5
    assert result.condition is Condition.CANCELLED
    assert not result.success
    assert not result.timed_out
    assert _leftovers(workspace_root) == []
    assert not coordinator.cancel("victim")


def test_cancel_queued_execution(make_coordinator):
    coordinator = make_coordinator(max_workers=1)
    running = coordinator.submit(_request(SLEEPER, execution_id="blocker"))
    queued = coordinator.submit(_request("print('never')", execution_id="waiting"))
    assert coordinator.cancel("waiting")
    coordinator.cancel("blocker")

    assert queued.result(timeout=10).condition is Condition.CANCELLED
    assert queued.result().stdout == ""
    assert running.result(timeout=10).condition is Condition.CANCELLED


def test_cancel_unknown_execution(coordinator):
    assert coordinator.cancel("no-such-execution") is False


def test_engine_failure_is_reported_as_a_result(make_coordinator, workspace_root):
    class BrokenExecutor(ProcessExecutor):
        def run_step(self, *args, **kwargs):
            raise RuntimeError("executor exploded")

    coordinator = make_coordinator(executor=BrokenExecutor())
    result = coordinator.execute(_request("print(1)"))
    assert result.condition is Condition.ENGINE_FAILURE
    assert not result.success
    assert _leftovers(workspace_root) == []
    assert coordinator.in_flight == 0


def test_from_config(tmp_path):
    config = Config(
        allowed_langs=["python"],
        workspace_root=str(tmp_path / "root"),
        isolation="none",
        max_workers=2,
        admission="reject",
    )
    coordinator = ExecutionCoordinator.from_config(config)
    try:
        assert coordinator.registry.ids() == ["python"]
        assert coordinator.capacity == 2
    finally:
        coordinator.shutdown()


def test_source_that_is_not_utf8_is_refused(coordinator, workspace_root):
    with pytest.raises(ValueError, match="UTF-8"):
        coordinator.submit(_request("print('\ud800')"))
    with pytest.raises(ValueError, match="stdin"):
        coordinator.submit(_request("print(input())", stdin="\udfff"))
    assert not workspace_root.exists()
    assert coordinator.in_flight == 0


def test_wall_time_excludes_time_spent_queued(make_coordinator):
    coordinator = make_coordinator(max_workers=1)
    blocker = coordinator.submit(_request("import time; time.sleep(1.5)"))
    queued = coordinator.submit(_request("print(1)"))
    first, second = blocker.result(timeout=30), queued.result(timeout=30)
    assert first.success and second.success
    assert first.wall_time_ms >= 1500
    assert second.wall_time_ms < 1000


@pytest.mark.skipif(shutil.which("gcc") is None, reason="gcc is not installed")
def test_compiled_program_over_memory_limit(tmp_path):
    source = textwrap.dedent(
        """\
        #include <stdio.h>
        #include <stdlib.h>
        #include <string.h>
        int main(void) {
            long total = 0;
            for (int i = 0; i < 1024; i++) {
                char *block = malloc(1 << 20);
                memset(block, i, 1 << 20);
                total += block[i];
            }
            printf("%ld\\n", total);
            return 0;
        }
        """
    )
    config = Config(allowed_langs=["c"], workspace_root=str(tmp_path), isolation="none")
    coordinator = ExecutionCoordinator(
        registry=LanguageRegistry.from_config(config),
        provisioner=SandboxProvisioner(tmp_path, isolation="none"),
    )
    try:
        result = coordinator.execute(
            ExecutionRequest(language="c", source=source, limits={"memory_bytes": 64 * 1024 * 1024})
        )
    finally:
        coordinator.shutdown()
    assert result.condition is Condition.MEMORY_LIMIT_EXCEEDED, (result.exit_code, result.stderr)
    assert not result.success


@pytest.mark.skipif(not bwrap_available(), reason="bubblewrap cannot create namespaces here")
def test_sibling_workspaces_are_invisible(make_coordinator, workspace_root):
    coordinator = make_coordinator(
        provisioner=SandboxProvisioner(workspace_root, isolation="bwrap"),
        max_workers=2,
    )
    holder = coordinator.submit(
        _request("open('secret.txt', 'w').write('mine')\nimport time; time.sleep(30)", execution_id="holder")
    )
    _wait_for_state(coordinator, "holder", ExecutionState.RUNNING)
    deadline = time.monotonic() + 10
    while not list(workspace_root.glob("run-*/secret.txt")) and time.monotonic() < deadline:
        time.sleep(0.01)
    secret = list(workspace_root.glob("run-*/secret.txt"))[0]

    intruder = f"""
        import glob
        found = sorted(glob.glob("../run-*") + glob.glob("{workspace_root}/run-*"))
        for path in found:
            try:
                open(path + "/secret.txt", "w").write("stolen")
            except OSError:
                pass
        print(found)
    """
    try:
        result = coordinator.execute(_request(intruder))
    finally:
        coordinator.cancel("holder")
    assert result.success, result.error
    assert result.stdout == "[]\n"
    assert secret.read_text() == "mine"
    assert holder.result(timeout=10).condition is Condition.CANCELLED


def _hello_world_cases():
    programs = {
        "python": 'print("Hello, World!")\n',
        "javascript": 'console.log("Hello, World!");\n',
        "java": textwrap.dedent(
            """\
            public class Main {
                public static void main(String[] args) {
                    System.out.println("Hello, World!");
                }
            }
            """
        ),
        "c": '#include <stdio.h>\nint main(void) { printf("Hello, World!\\n"); return 0; }\n',
        "cpp": '#include <iostream>\nint main() { std::cout << "Hello, World!" << std::endl; }\n',
        "go": 'package main\n\nimport "fmt"\n\nfunc main() { fmt.Println("Hello, World!") }\n',
        "rust": 'fn main() { println!("Hello, World!"); }\n',
        "php": '<?php echo "Hello, World!\\n";\n',
        "ruby": 'puts "Hello, World!"\n',
        "bash": 'echo "Hello, World!"\n',
    }
    for toolchain in BUILTIN_TOOLCHAINS:
        yield pytest.param(toolchain, programs[toolchain.id], id=toolchain.id)


@pytest.mark.parametrize("toolchain, source", list(_hello_world_cases()))
def test_builtin_toolchains_hello_world(tmp_path, toolchain, source):
    for command in (toolchain.compile_command, toolchain.run_command):
        if command and "/" not in command[0] and shutil.which(command[0]) is None:
            pytest.skip(f"{command[0]} is not installed")

    config = Config(allowed_langs=[toolchain.id], workspace_root=str(tmp_path), isolation="none")
    coordinator = ExecutionCoordinator(
        registry=LanguageRegistry.from_config(config),
        provisioner=SandboxProvisioner(tmp_path, isolation="none"),
    )
    try:
        result = coordinator.execute(ExecutionRequest(language=toolchain.id, source=source))
    finally:
        coordinator.shutdown()
    assert result.success, result.error
    assert result.stdout == "Hello, World!\n"
