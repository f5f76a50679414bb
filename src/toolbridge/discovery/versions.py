"""Version probing with bounded parallelism and timeouts."""

from __future__ import annotations

import logging as py_logging
import re
import shlex
import subprocess
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, wait
from functools import partial

from toolbridge.models import Candidate, Installation, InstallationType, InstallSource
from toolbridge.process import run_bounded
from toolbridge.runtime.wsl_discovery import build_wsl_command
from toolbridge.security import command_for_log, sanitize_output_text

logger = py_logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 3.0
DEFAULT_MAX_WORKERS = 4
VERSION_FLAG = "--version"

_VERSION_PATTERN = re.compile(r"(\d+\.\d+\.\d+(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?)")


def extract_version(output: str) -> str | None:
    """Return the first ``MAJOR.MINOR.PATCH[-pre][+build]`` token in ``output``."""
    match = _VERSION_PATTERN.search(output or "")
    if match is None:
        return None
    return match.group(1)


def version_command(candidate: Candidate) -> list[str]:
    if candidate.wsl_distro:
        script = f"{shlex.quote(candidate.path)} {VERSION_FLAG}"
        return build_wsl_command(candidate.wsl_distro, ["bash", "-lc", script])
    return [candidate.path, VERSION_FLAG]


def probe_version(
    candidate: Candidate,
    *,
    runner: Callable[..., subprocess.CompletedProcess] = run_bounded,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    cancelled: Callable[[], bool] | None = None,
) -> str | None:
    """Probe a single candidate; any failure yields ``None`` instead of raising."""
    if cancelled and cancelled():
        return None
    command = version_command(candidate)
    try:
        completed = runner(command, timeout=timeout_seconds, cancelled=cancelled)
    except subprocess.TimeoutExpired:
        logger.warning("Version probe timed out after %ss: %s", timeout_seconds, candidate.path)
        return None
    except OSError as exc:
        logger.warning("Version probe could not start %s: %s", candidate.path, exc)
        return None

    if completed.returncode != 0:
        logger.debug(
            "Version probe exited with %s command=%s stderr=%s",
            completed.returncode,
            command_for_log(command),
            sanitize_output_text(completed.stderr or ""),
        )
        return None
    version = extract_version(f"{completed.stdout or ''}\n{completed.stderr or ''}")
    if version is None:
        logger.debug("No version token in output of %s", candidate.path)
    return version


def resolve_versions(
    candidates: Sequence[Candidate],
    *,
    runner: Callable[..., subprocess.CompletedProcess] = run_bounded,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    max_workers: int = DEFAULT_MAX_WORKERS,
    cancelled: Callable[[], bool] | None = None,
) -> list[Installation]:
    """Probe every candidate and return the settled snapshot in candidate order.

    Candidates whose probe fails are kept with ``version=None``.
    """
    if not candidates:
        return []

    versions: dict[int, str | None] = {}
    lock = threading.Lock()
    probe = partial(probe_version, runner=runner, timeout_seconds=timeout_seconds, cancelled=cancelled)

    def _work(index: int, candidate: Candidate) -> None:
        try:
            version = probe(candidate)
        except Exception:
            logger.exception("Unexpected failure probing %s", candidate.path)
            version = None
        with lock:
            versions[index] = version

    workers = max(1, min(max_workers, len(candidates)))
    logger.debug("Probing %s candidate(s) with %s worker(s)", len(candidates), workers)
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="toolbridge-probe") as pool:
        futures = [pool.submit(_work, index, candidate) for index, candidate in enumerate(candidates)]
        # Settle barrier: the snapshot is only read once every probe finished.
        wait(futures)

    return [
        Installation(
            path=candidate.path,
            source=candidate.source,
            version=versions.get(index),
            installation_type=(
                InstallationType.CUSTOM if candidate.source == InstallSource.CUSTOM else InstallationType.SYSTEM
            ),
            wsl_distro=candidate.wsl_distro,
        )
        for index, candidate in enumerate(candidates)
    ]
