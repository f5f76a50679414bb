"""Shell environment inventory and in-distribution binary detection."""

from __future__ import annotations

import logging as py_logging
import re
import shlex
import shutil
import subprocess
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor, wait
from pathlib import Path

from toolbridge.errors import ExitCode, ToolBridgeError
from toolbridge.host import HostPlatform, PosixPlatform
from toolbridge.models import AvailableShells, Candidate, InstallSource, WslDistribution
from toolbridge.process import run_bounded
from toolbridge.retry import RecoverableError, RetryPolicy, is_transient_message, run_with_retry
from toolbridge.runtime.wsl_discovery import build_wsl_command, list_distribution_names, list_distributions

logger = py_logging.getLogger(__name__)

DEFAULT_DETECT_TIMEOUT_SECONDS = 15.0
LISTING_RETRY_POLICY = RetryPolicy(max_attempts=3, initial_backoff_seconds=0.5, multiplier=2.0)

_HOME_BIN = re.compile(r"^(?:/home/[^/]+|/root)/bin/[^/]+$")
_GIT_BASH_LOCATIONS = (
    "%ProgramFiles%\\Git\\bin\\bash.exe",
    "%ProgramFiles(x86)%\\Git\\bin\\bash.exe",
    "%LOCALAPPDATA%\\Programs\\Git\\bin\\bash.exe",
    "C:\\Program Files\\Git\\bin\\bash.exe",
    "C:\\Program Files (x86)\\Git\\bin\\bash.exe",
)


class _TransientListingError(RecoverableError):
    def __init__(self, error: ToolBridgeError) -> None:
        super().__init__(str(error))
        self.error = error


def _list_with_retry(
    runner: Callable[..., subprocess.CompletedProcess],
    sleep: Callable[[float], None] | None,
) -> list[WslDistribution]:
    def _attempt() -> list[WslDistribution]:
        try:
            return list_distributions(runner)
        except ToolBridgeError as exc:
            if exc.code == ExitCode.TIMEOUT or is_transient_message(exc.hint):
                raise _TransientListingError(exc) from exc
            raise

    try:
        return run_with_retry(_attempt, policy=LISTING_RETRY_POLICY, sleep=sleep or time.sleep)
    except _TransientListingError as exc:
        raise exc.error from exc


def detect_wsl_distributions(
    runner: Callable[..., subprocess.CompletedProcess] = run_bounded,
    *,
    sleep: Callable[[float], None] | None = None,
) -> list[WslDistribution]:
    """Enumerate distributions; failures yield an empty inventory, never raise."""
    try:
        return _list_with_retry(runner, sleep)
    except ToolBridgeError as exc:
        if exc.code == ExitCode.SPAWN_FAILURE:
            logger.debug("WSL is not available: %s", exc.message)
            return []
        logger.warning("Verbose WSL listing failed, falling back to names only: %s", exc)

    try:
        names = list_distribution_names(runner)
    except ToolBridgeError as exc:
        logger.warning("WSL distributions could not be listed: %s", exc)
        return []
    return [WslDistribution(name=name) for name in names]


def detect_git_bash(
    host: HostPlatform,
    env: Mapping[str, str],
    *,
    which: Callable[[str], str | None] = shutil.which,
) -> str | None:
    if not host.is_windows:
        return None
    for location in _GIT_BASH_LOCATIONS:
        segments: list[str] = []
        for segment in host.split(location):
            value = host.expand_segment(segment, env)
            if value is None:
                break
            segments.append(value)
        else:
            candidate = Path(*segments)
            try:
                if candidate.is_file():
                    logger.info("Found Git Bash at: %s", candidate)
                    return str(candidate)
            except OSError:
                continue

    on_path = which("bash.exe")
    if on_path and "git" in on_path.lower():
        logger.info("Found Git Bash in PATH: %s", on_path)
        return on_path
    return None


def detect_available_shells(
    host: HostPlatform,
    env: Mapping[str, str],
    *,
    runner: Callable[..., subprocess.CompletedProcess] = run_bounded,
    which: Callable[[str], str | None] = shutil.which,
    sleep: Callable[[float], None] | None = None,
) -> AvailableShells:
    if not host.is_windows:
        # Only the native shell is meaningful outside Windows.
        return AvailableShells()
    logger.info("Detecting available shell environments")
    return AvailableShells(
        wsl_distributions=tuple(detect_wsl_distributions(runner, sleep=sleep)),
        git_bash_path=detect_git_bash(host, env, which=which),
    )


def _shell_word(segment: str) -> str:
    if segment == "~":
        return '"$HOME"'
    if segment.startswith("$"):
        return f'"{segment}"'
    if segment == "*":
        return "*"
    return shlex.quote(segment)


def wsl_search_script(tool: str) -> str:
    """Login-shell script printing the first executable ``tool`` inside a distribution."""
    words: list[str] = []
    for location in PosixPlatform().default_locations(tool):
        parts = list(location.segments)
        prefix = ""
        if parts and parts[0] == "/":
            prefix = "/"
            parts = parts[1:]
        words.append(prefix + "/".join(_shell_word(part) for part in parts) + "/" + shlex.quote(tool))
    quoted_tool = shlex.quote(tool)
    return "\n".join(
        [
            f"found=\"$(command -v {quoted_tool} 2>/dev/null)\"",
            'if [ -n "$found" ] && [ -f "$found" ] && [ -x "$found" ]; then printf \'%s\\n\' "$found"; exit 0; fi',
            f"for candidate in {' '.join(words)}; do",
            '  if [ -f "$candidate" ] && [ -x "$candidate" ]; then printf \'%s\\n\' "$candidate"; exit 0; fi',
            "done",
            "exit 1",
        ]
    )


def _last_absolute_line(output: str) -> str | None:
    for line in reversed(output.splitlines()):
        value = line.strip()
        if value.startswith("/"):
            return value
    return None


def auto_detect_wsl_claude(
    distribution: str,
    *,
    tool: str = "claude",
    runner: Callable[..., subprocess.CompletedProcess] = run_bounded,
    timeout_seconds: float = DEFAULT_DETECT_TIMEOUT_SECONDS,
    cancelled: Callable[[], bool] | None = None,
) -> str | None:
    """Search for ``tool`` inside ``distribution``; ``None`` means not found."""
    if not distribution.strip():
        return None
    command = build_wsl_command(distribution.strip(), ["bash", "-lc", wsl_search_script(tool)])
    logger.debug("Searching for %s in WSL distribution %s", tool, distribution)
    try:
        result = runner(command, timeout=timeout_seconds, cancelled=cancelled)
    except subprocess.TimeoutExpired:
        logger.warning("Search for %s in WSL %s timed out after %ss", tool, distribution, timeout_seconds)
        return None
    except OSError as exc:
        logger.warning("Failed to search for %s in WSL %s: %s", tool, distribution, exc)
        return None

    if result.returncode != 0:
        logger.debug("No %s found in WSL %s (exit=%s)", tool, distribution, result.returncode)
        return None
    path = _last_absolute_line(result.stdout or "")
    if path:
        logger.info("Found %s in WSL %s: %s", tool, distribution, path)
    return path


def classify_distribution_path(path: str, tool: str) -> InstallSource:
    if any(marker in path for marker in ("/.nvm/", "/fnm/", "/.volta/")):
        return InstallSource.VERSION_MANAGER
    if any(marker in path for marker in (f"/.{tool}/local/", "/.local/bin/")) or _HOME_BIN.match(path):
        return InstallSource.USER_LOCAL
    if any(marker in path for marker in ("/.npm-global/", "/.yarn/", "/.bun/", "/node_modules/")):
        return InstallSource.PACKAGE_MANAGER
    return InstallSource.SYSTEM_PATH


def find_wsl_candidates(
    distributions: Sequence[WslDistribution],
    *,
    tool: str = "claude",
    runner: Callable[..., subprocess.CompletedProcess] = run_bounded,
    timeout_seconds: float = DEFAULT_DETECT_TIMEOUT_SECONDS,
    max_workers: int = 4,
    cancelled: Callable[[], bool] | None = None,
) -> list[Candidate]:
    """Detect ``tool`` in every distribution; results keep distribution order."""
    if not distributions:
        return []
    found: dict[str, str | None] = {}
    lock = threading.Lock()

    def _detect(name: str) -> None:
        path = auto_detect_wsl_claude(
            name,
            tool=tool,
            runner=runner,
            timeout_seconds=timeout_seconds,
            cancelled=cancelled,
        )
        with lock:
            found[name] = path

    workers = max(1, min(max_workers, len(distributions)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="toolbridge-wsl") as pool:
        wait([pool.submit(_detect, item.name) for item in distributions])

    candidates: list[Candidate] = []
    for distribution in distributions:
        path = found.get(distribution.name)
        if path:
            candidates.append(
                Candidate(
                    path=path,
                    source=classify_distribution_path(path, tool),
                    wsl_distro=distribution.name,
                )
            )
    return candidates
