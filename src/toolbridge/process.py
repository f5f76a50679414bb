"""Bounded subprocess helpers shared by probes and the execution bridge."""

from __future__ import annotations

import logging as py_logging
import os
import signal
import subprocess
import time
from collections.abc import Callable, Sequence
from contextlib import suppress

from toolbridge.security import command_for_log

logger = py_logging.getLogger(__name__)

IS_WINDOWS = os.name == "nt"
CREATE_NO_WINDOW = getattr(subprocess, "CREATE_NO_WINDOW", 0x08000000)
CREATE_NEW_PROCESS_GROUP = getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0x00000200)
_POLL_INTERVAL_SECONDS = 0.1
_DRAIN_TIMEOUT_SECONDS = 0.2

Runner = Callable[..., subprocess.CompletedProcess]


def decode_process_output(value: bytes | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if not value:
        return ""

    # wsl.exe may emit UTF-16LE in Windows consoles.
    if b"\x00" in value:
        for encoding in ("utf-16le", "utf-16"):
            try:
                return value.decode(encoding).replace("\ufeff", "").replace("\x00", "")
            except UnicodeDecodeError:
                continue

    for encoding in ("utf-8", "cp1252"):
        try:
            return value.decode(encoding)
        except UnicodeDecodeError:
            continue
    return value.decode("utf-8", errors="replace")


def process_group_kwargs(*, windows: bool = IS_WINDOWS) -> dict[str, object]:
    """Popen kwargs placing the child in its own group, without a console window."""
    if windows:
        return {"creationflags": CREATE_NO_WINDOW | CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def terminate_process_tree(
    process: subprocess.Popen,
    *,
    windows: bool = IS_WINDOWS,
    grace_seconds: float = 2.0,
    force: bool = False,
    runner: Runner = subprocess.run,
) -> None:
    """Terminate ``process`` and every descendant it spawned.

    ``force`` skips the SIGTERM grace period and kills the group outright.
    """
    if process.poll() is not None:
        return
    pid = process.pid
    logger.debug("Terminating process tree pid=%s", pid)
    if windows:
        try:
            runner(
                ["taskkill", "/PID", str(pid), "/T", "/F"],
                capture_output=True,
                check=False,
                timeout=grace_seconds + 5.0,
                creationflags=CREATE_NO_WINDOW,
            )
        except (OSError, subprocess.TimeoutExpired):
            logger.warning("taskkill failed for pid=%s; killing wrapper only", pid)
        if process.poll() is None:
            with suppress(OSError):
                process.kill()
        with suppress(subprocess.TimeoutExpired):
            process.wait(timeout=grace_seconds)
        return

    if force:
        _kill_group(pid, process)
        with suppress(subprocess.TimeoutExpired):
            process.wait(timeout=grace_seconds)
        return

    try:
        os.killpg(pid, signal.SIGTERM)
    except (ProcessLookupError, PermissionError, OSError):
        with suppress(OSError):
            process.terminate()
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        logger.warning("Process group pid=%s ignored SIGTERM; sending SIGKILL", pid)
        _kill_group(pid, process)
        with suppress(subprocess.TimeoutExpired):
            process.wait(timeout=grace_seconds)
    else:
        # The leader is gone; make sure no straggler in its group survives.
        with suppress(ProcessLookupError, PermissionError, OSError):
            os.killpg(pid, signal.SIGKILL)


def _kill_group(pid: int, process: subprocess.Popen) -> None:
    try:
        os.killpg(pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError, OSError):
        with suppress(OSError):
            process.kill()


def run_bounded(
    command: Sequence[str],
    *,
    timeout: float,
    cancelled: Callable[[], bool] | None = None,
    windows: bool = IS_WINDOWS,
    popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    **_: object,
) -> subprocess.CompletedProcess[str]:
    """Run ``command`` capturing output, never blocking past ``timeout``.

    Unlike ``subprocess.run``, the whole process tree is killed on timeout, so
    a grandchild holding the pipes open cannot stall the caller. Raises
    ``subprocess.TimeoutExpired`` on timeout or cancellation.
    """
    argv = list(command)
    process = popen(
        argv,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        **process_group_kwargs(windows=windows),
    )
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        try:
            stdout, stderr = process.communicate(timeout=max(0.0, min(_POLL_INTERVAL_SECONDS, remaining)))
        except subprocess.TimeoutExpired:
            expired = time.monotonic() >= deadline
            if not expired and not (cancelled and cancelled()):
                continue
            logger.debug(
                "Bounded command %s command=%s",
                "timed out" if expired else "cancelled",
                command_for_log(argv),
            )
            terminate_process_tree(process, windows=windows, grace_seconds=_DRAIN_TIMEOUT_SECONDS, force=True)
            with suppress(subprocess.TimeoutExpired, ValueError, OSError):
                process.communicate(timeout=_DRAIN_TIMEOUT_SECONDS)
            for pipe in (process.stdout, process.stderr):
                if pipe is not None:
                    with suppress(OSError):
                        pipe.close()
            raise subprocess.TimeoutExpired(argv, timeout) from None
        return subprocess.CompletedProcess(
            args=argv,
            returncode=process.returncode,
            stdout=decode_process_output(stdout),
            stderr=decode_process_output(stderr),
        )
