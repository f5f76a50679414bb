from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shebang scripts")


def _env_with_pythonpath(**overrides: str) -> dict[str, str]:
    env = dict(os.environ)
    existing = env.get("PYTHONPATH", "")
    src_path = str(Path("src").resolve())
    env["PYTHONPATH"] = f"{src_path}{os.pathsep}{existing}" if existing else src_path
    env.pop("TOOLBRIDGE_CUSTOM_PATH", None)
    env.update(overrides)
    return env


def _fake_tool(path: Path, body: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"#!{sys.executable}\nimport sys\n{body}\n", encoding="utf-8")
    path.chmod(0o755)
    return path


def test_cli_module_reports_invalid_args_via_exit_code(tmp_path: Path) -> None:
    completed = subprocess.run(
        [sys.executable, "-m", "toolbridge", "--log-file", str(tmp_path / "tb.log"), "--log-level", "loud", "list"],
        capture_output=True,
        text=True,
        check=False,
        env=_env_with_pythonpath(),
    )

    assert completed.returncode == 2
    assert "--log-level must be one of" in completed.stderr


def test_cli_module_lists_installation_as_json(tmp_path: Path) -> None:
    home = tmp_path / "home"
    tool = _fake_tool(home / ".local" / "bin" / "claude", 'print("99.0.1 (fake)")')

    completed = subprocess.run(
        [
            sys.executable,
            "-m",
            "toolbridge",
            "--log-file",
            str(tmp_path / "tb.log"),
            "--config",
            str(tmp_path / "config.toml"),
            "list",
            "--json",
        ],
        capture_output=True,
        text=True,
        check=False,
        env=_env_with_pythonpath(HOME=str(home), PATH=""),
        timeout=60,
    )

    assert completed.returncode == 0, completed.stderr
    payload = json.loads(completed.stdout)
    assert payload[0] == {
        "path": str(tool),
        "version": "99.0.1",
        "source": "user-local",
        "installation_type": "System",
    }


def test_cli_module_runs_tool_and_propagates_exit_code(tmp_path: Path) -> None:
    tool = _fake_tool(
        tmp_path / "bin" / "claude",
        'print("args=" + "|".join(sys.argv[1:]), flush=True)\nprint("oops", file=sys.stderr)\nsys.exit(4)',
    )

    completed = subprocess.run(
        [
            sys.executable,
            "-m",
            "toolbridge",
            "--log-file",
            str(tmp_path / "tb.log"),
            "--config",
            str(tmp_path / "config.toml"),
            "run",
            "--path",
            str(tool),
            "--",
            "chat",
            "two words",
        ],
        capture_output=True,
        text=True,
        check=False,
        env=_env_with_pythonpath(),
        timeout=60,
    )

    assert completed.returncode == 4
    assert "args=chat|two words" in completed.stdout
    assert "oops" in completed.stderr


def test_cli_module_reports_missing_binary(tmp_path: Path) -> None:
    completed = subprocess.run(
        [
            sys.executable,
            "-m",
            "toolbridge",
            "--log-file",
            str(tmp_path / "tb.log"),
            "--config",
            str(tmp_path / "config.toml"),
            "run",
            "--path",
            str(tmp_path / "missing" / "claude"),
        ],
        capture_output=True,
        text=True,
        check=False,
        env=_env_with_pythonpath(),
        timeout=60,
    )

    assert completed.returncode == 5
    assert "Next step" in completed.stderr
