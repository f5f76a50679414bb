from __future__ import annotations

import subprocess
import sys
import threading
import time
from pathlib import Path

import pytest

from toolbridge.bridge.command import Invocation
from toolbridge.bridge.execution import BridgeExecution
from toolbridge.discovery.versions import probe_version
from toolbridge.models import Candidate, InstallSource, ShellEnvironment
from toolbridge.process import run_bounded

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups")

_SPAWN_GRANDCHILD = (
    "import subprocess, sys, time\n"
    "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'])\n"
    "print('spawned', flush=True)\n"
    "time.sleep(60)\n"
)


def _python(code: str) -> Invocation:
    return Invocation(program=sys.executable, args=("-c", code), environment=ShellEnvironment.NATIVE)


def test_run_bounded_captures_output() -> None:
    completed = run_bounded([sys.executable, "-c", "import sys; print('1.2.3'); sys.exit(0)"], timeout=30)
    assert completed.returncode == 0
    assert completed.stdout.strip() == "1.2.3"


@pytest.mark.critical_regression
def test_run_bounded_timeout_is_bounded_even_when_grandchild_holds_pipes() -> None:
    started = time.monotonic()
    with pytest.raises(subprocess.TimeoutExpired):
        run_bounded([sys.executable, "-c", _SPAWN_GRANDCHILD], timeout=0.5)
    assert time.monotonic() - started < 10


def test_run_bounded_honours_cancellation() -> None:
    flag = threading.Event()
    threading.Timer(0.3, flag.set).start()
    started = time.monotonic()
    with pytest.raises(subprocess.TimeoutExpired):
        run_bounded([sys.executable, "-c", "import time; time.sleep(60)"], timeout=60, cancelled=flag.is_set)
    assert time.monotonic() - started < 10


def test_execution_streams_output_before_exit() -> None:
    code = "import sys, time\nprint('ready', flush=True)\ntime.sleep(60)\n"
    execution = BridgeExecution(_python(code)).start()
    try:
        first = next(iter(execution))
        assert first.stream == "stdout"
        assert first.text.startswith("ready")
        assert execution.returncode is None
    finally:
        execution.cancel()
    assert execution.wait(timeout=10) != 0


def test_execution_propagates_exit_code_and_stderr() -> None:
    code = "import sys\nprint('out')\nprint('err', file=sys.stderr)\nsys.exit(7)\n"
    execution = BridgeExecution(_python(code)).start()

    chunks = list(execution)

    assert execution.wait(timeout=30) == 7
    assert "".join(chunk.text for chunk in chunks if chunk.stream == "stdout") == "out\n"
    assert "".join(chunk.text for chunk in chunks if chunk.stream == "stderr") == "err\n"


@pytest.mark.critical_regression
def test_cancel_terminates_whole_process_tree() -> None:
    execution = BridgeExecution(_python(_SPAWN_GRANDCHILD)).start()
    stream = iter(execution)
    assert next(stream).text.startswith("spawned")

    execution.cancel()

    # The grandchild inherited stdout; EOF only arrives once it is gone too.
    drained = threading.Event()

    def _drain() -> None:
        for _ in stream:
            pass
        drained.set()

    threading.Thread(target=_drain, daemon=True).start()
    assert drained.wait(timeout=10)
    assert execution.wait(timeout=10) != 0
    assert execution.cancelled


@pytest.mark.critical_regression
def test_version_probe_stays_within_bound_when_candidate_ignores_sigterm(tmp_path: Path) -> None:
    binary = tmp_path / "claude"
    binary.write_text("#!/bin/sh\ntrap '' TERM\nsleep 30\n", encoding="utf-8")
    binary.chmod(0o755)

    started = time.monotonic()
    version = probe_version(Candidate(str(binary), InstallSource.USER_LOCAL), timeout_seconds=0.5)
    elapsed = time.monotonic() - started

    assert version is None
    assert elapsed < 1.2
