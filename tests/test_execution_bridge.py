from __future__ import annotations

import io
import subprocess
import threading

import pytest

from toolbridge.bridge.command import Invocation
from toolbridge.bridge.execution import BridgeExecution, OutputChunk
from toolbridge.errors import ExitCode, ToolBridgeError
from toolbridge.models import ShellEnvironment


class _ChunkedPipe:
    def __init__(self, chunks: list[bytes]) -> None:
        self._chunks = list(chunks)
        self.closed = False

    def read1(self, size: int) -> bytes:
        return self._chunks.pop(0) if self._chunks else b""

    def close(self) -> None:
        self.closed = True


class _FakeProcess:
    def __init__(self, stdout: object, stderr: object, returncode: int = 0, pid: int = 4242) -> None:
        self.stdout = stdout
        self.stderr = stderr
        self.pid = pid
        self._final = returncode
        self.returncode: int | None = None
        self.killed = False

    def poll(self) -> int | None:
        return self.returncode

    def wait(self, timeout: float | None = None) -> int:
        if self.returncode is None:
            self.returncode = self._final
        return self.returncode

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9

    def terminate(self) -> None:
        self.kill()


class _FakePopen:
    def __init__(self, process: _FakeProcess) -> None:
        self.process = process
        self.calls: list[tuple[list[str], dict[str, object]]] = []

    def __call__(self, argv: list[str], **kwargs: object) -> _FakeProcess:
        self.calls.append((argv, kwargs))
        return self.process


def _invocation(environment: ShellEnvironment = ShellEnvironment.NATIVE, **kwargs: object) -> Invocation:
    return Invocation(program="/usr/bin/claude", args=("chat",), environment=environment, **kwargs)


def test_execution_streams_both_pipes_and_returns_exit_code() -> None:
    process = _FakeProcess(io.BytesIO(b"hello\nworld\n"), io.BytesIO(b"warn\n"), returncode=3)
    execution = BridgeExecution(_invocation(), popen=_FakePopen(process), windows=False).start()

    chunks = list(execution)

    assert "".join(chunk.text for chunk in chunks if chunk.stream == "stdout") == "hello\nworld\n"
    assert [chunk for chunk in chunks if chunk.stream == "stderr"] == [OutputChunk("stderr", "warn\n")]
    assert execution.wait() == 3
    assert execution.returncode == 3


def test_execution_decodes_utf8_split_across_reads() -> None:
    stdout = _ChunkedPipe([b"caf", b"\xc3", b"\xa9!"])
    process = _FakeProcess(stdout, io.BytesIO(b""))
    execution = BridgeExecution(_invocation(), popen=_FakePopen(process), windows=False).start()

    text = "".join(chunk.text for chunk in execution.stream())

    assert text == "café!"
    assert stdout.closed


def test_execution_spawns_in_own_session_with_invocation_context() -> None:
    popen = _FakePopen(_FakeProcess(io.BytesIO(b""), io.BytesIO(b"")))
    invocation = _invocation(cwd="/work", env={"PATH": "/nvm/bin:/usr/bin"})

    BridgeExecution(invocation, popen=popen, windows=False).start().wait()

    argv, kwargs = popen.calls[0]
    assert argv == ["/usr/bin/claude", "chat"]
    assert kwargs["cwd"] == "/work"
    assert kwargs["env"] == {"PATH": "/nvm/bin:/usr/bin"}
    assert kwargs["start_new_session"] is True
    assert kwargs["stdin"] == subprocess.DEVNULL
    assert kwargs["stdout"] == subprocess.PIPE


def test_execution_on_windows_uses_process_group_flags() -> None:
    popen = _FakePopen(_FakeProcess(io.BytesIO(b""), io.BytesIO(b"")))
    BridgeExecution(_invocation(), popen=popen, windows=True).start().wait()
    _, kwargs = popen.calls[0]
    assert "start_new_session" not in kwargs
    assert kwargs["creationflags"] != 0


@pytest.mark.parametrize(
    ("environment", "error", "code"),
    [
        (ShellEnvironment.NATIVE, FileNotFoundError("claude"), ExitCode.NOT_FOUND),
        (ShellEnvironment.GITBASH, FileNotFoundError("bash.exe"), ExitCode.NOT_FOUND),
        (ShellEnvironment.WSL, FileNotFoundError("wsl.exe"), ExitCode.SPAWN_FAILURE),
        (ShellEnvironment.NATIVE, PermissionError("denied"), ExitCode.PERMISSION_DENIED),
        (ShellEnvironment.NATIVE, OSError("exec format error"), ExitCode.SPAWN_FAILURE),
    ],
)
def test_spawn_errors_map_to_exit_codes(environment: ShellEnvironment, error: OSError, code: ExitCode) -> None:
    def popen(*args: object, **kwargs: object) -> _FakeProcess:
        raise error

    with pytest.raises(ToolBridgeError) as exc_info:
        BridgeExecution(_invocation(environment), popen=popen, windows=False).start()
    assert exc_info.value.code == code


def test_execution_cannot_start_twice() -> None:
    execution = BridgeExecution(
        _invocation(),
        popen=_FakePopen(_FakeProcess(io.BytesIO(b""), io.BytesIO(b""))),
        windows=False,
    ).start()
    with pytest.raises(ToolBridgeError) as exc_info:
        execution.start()
    assert exc_info.value.code == ExitCode.VALIDATION_ERROR


def test_cancel_kills_local_tree_and_runs_bridged_cleanup() -> None:
    process = _FakeProcess(io.BytesIO(b""), io.BytesIO(b""))
    calls: list[list[str]] = []

    def runner(command: list[str], **kwargs: object) -> subprocess.CompletedProcess:
        calls.append(command)
        return subprocess.CompletedProcess(args=command, returncode=0)

    cancel_argv = ("wsl.exe", "-d", "Ubuntu", "--", "bash", "-c", "kill it")
    execution = BridgeExecution(
        _invocation(ShellEnvironment.WSL, cancel_argv=cancel_argv),
        popen=_FakePopen(process),
        runner=runner,
        windows=True,
    ).start()

    execution.cancel()
    execution.cancel()

    assert calls[0][:3] == ["taskkill", "/PID", "4242"]
    assert calls[1] == list(cancel_argv)
    assert len(calls) == 2
    assert execution.cancelled
    assert process.killed


def test_cancel_tolerates_failing_bridged_cleanup() -> None:
    process = _FakeProcess(io.BytesIO(b""), io.BytesIO(b""))

    def runner(command: list[str], **kwargs: object) -> subprocess.CompletedProcess:
        if command[0] == "wsl.exe":
            raise subprocess.TimeoutExpired(cmd=command, timeout=kwargs["timeout"])
        return subprocess.CompletedProcess(args=command, returncode=0)

    execution = BridgeExecution(
        _invocation(ShellEnvironment.WSL, cancel_argv=("wsl.exe", "-d", "Ubuntu")),
        popen=_FakePopen(process),
        runner=runner,
        windows=True,
    ).start()

    execution.cancel()

    assert execution.wait() == -9


def test_cancel_before_start_is_noop() -> None:
    execution = BridgeExecution(_invocation())
    execution.cancel()
    assert not execution.cancelled
    assert execution.pid is None
    assert execution.returncode is None


def test_context_manager_cancels_running_execution() -> None:
    process = _FakeProcess(io.BytesIO(b""), io.BytesIO(b""))
    runner_calls: list[list[str]] = []

    def runner(command: list[str], **kwargs: object) -> subprocess.CompletedProcess:
        runner_calls.append(command)
        return subprocess.CompletedProcess(args=command, returncode=0)

    with BridgeExecution(_invocation(), popen=_FakePopen(process), runner=runner, windows=True) as execution:
        assert execution.pid == 4242

    assert execution.cancelled
    assert runner_calls and runner_calls[0][0] == "taskkill"


def test_iterating_a_drained_execution_returns_immediately() -> None:
    process = _FakeProcess(io.BytesIO(b"once\n"), io.BytesIO(b""))
    execution = BridgeExecution(_invocation(), popen=_FakePopen(process), windows=False).start()

    assert "".join(chunk.text for chunk in execution) == "once\n"
    assert execution.wait() == 0

    second: list[OutputChunk] = []
    done = threading.Event()

    def _drain() -> None:
        second.extend(execution)
        done.set()

    threading.Thread(target=_drain, daemon=True).start()
    assert done.wait(timeout=3)
    assert second == []


def test_wait_starts_execution_when_needed() -> None:
    popen = _FakePopen(_FakeProcess(io.BytesIO(b""), io.BytesIO(b""), returncode=5))
    execution = BridgeExecution(_invocation(), popen=popen, windows=False)

    assert execution.wait() == 5
    assert len(popen.calls) == 1
