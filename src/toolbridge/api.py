"""Public operations: list installations, inspect shells, build and execute."""

from __future__ import annotations

import logging as py_logging
import os
import shutil
import subprocess
from collections.abc import Callable, Mapping, Sequence
from functools import partial
from pathlib import Path

from toolbridge.bridge.command import ArgumentDenylist, build_invocation
from toolbridge.bridge.execution import BridgeExecution
from toolbridge.config import AppConfig, ShellConfig, shell_config_from_settings
from toolbridge.discovery import probe_installations, rank_installations, resolve_versions
from toolbridge.host import HostPlatform, detect_host_platform
from toolbridge.models import AvailableShells, Candidate, Installation, InstallSource, ShellEnvironment
from toolbridge.process import run_bounded
from toolbridge.runtime import shells as shell_runtime

logger = py_logging.getLogger(__name__)

Runner = Callable[..., subprocess.CompletedProcess]


def _custom_candidate(host: HostPlatform, path: str) -> Candidate | None:
    value = path.strip()
    if not value:
        return None
    try:
        usable = host.is_executable(Path(value))
    except OSError as exc:
        logger.warning("Custom binary %s is not accessible: %s", value, exc)
        return None
    if not usable:
        logger.warning("Custom binary %s does not exist or is not executable", value)
        return None
    return Candidate(path=value, source=InstallSource.CUSTOM)


def list_installations(
    *,
    host: HostPlatform | None = None,
    env: Mapping[str, str] | None = None,
    config: AppConfig | None = None,
    runner: Runner = run_bounded,
    include_wsl: bool = True,
    cancelled: Callable[[], bool] | None = None,
) -> list[Installation]:
    """Discover, version and rank every installation of the configured tool."""
    host = host or detect_host_platform()
    env = os.environ if env is None else env
    config = config or AppConfig()

    candidates: list[Candidate] = []
    custom = _custom_candidate(host, config.custom_binary_path)
    if custom is not None:
        candidates.append(custom)
    candidates.extend(probe_installations(host, config.tool_name, env))

    if include_wsl and host.is_windows:
        distributions = shell_runtime.detect_wsl_distributions(runner)
        candidates.extend(
            shell_runtime.find_wsl_candidates(
                distributions,
                tool=config.tool_name,
                runner=runner,
                timeout_seconds=config.wsl_detect_timeout_seconds,
                max_workers=config.probe_workers,
                cancelled=cancelled,
            )
        )

    installations = resolve_versions(
        candidates,
        runner=runner,
        timeout_seconds=config.version_timeout_seconds,
        max_workers=config.probe_workers,
        cancelled=cancelled,
    )
    ranked = rank_installations(installations)
    logger.info("Discovered %s installation(s) of %s", len(ranked), config.tool_name)
    return ranked


def get_available_shells(
    *,
    host: HostPlatform | None = None,
    env: Mapping[str, str] | None = None,
    runner: Runner = run_bounded,
    which: Callable[[str], str | None] = shutil.which,
) -> AvailableShells:
    host = host or detect_host_platform()
    env = os.environ if env is None else env
    return shell_runtime.detect_available_shells(host, env, runner=runner, which=which)


def auto_detect_wsl_claude(
    distribution: str,
    *,
    host: HostPlatform | None = None,
    tool: str = "claude",
    runner: Runner = run_bounded,
    timeout_seconds: float = shell_runtime.DEFAULT_DETECT_TIMEOUT_SECONDS,
    cancelled: Callable[[], bool] | None = None,
) -> str | None:
    """Path of ``tool`` inside ``distribution``, or ``None`` when not found."""
    host = host or detect_host_platform()
    if not host.is_windows:
        return None
    return shell_runtime.auto_detect_wsl_claude(
        distribution,
        tool=tool,
        runner=runner,
        timeout_seconds=timeout_seconds,
        cancelled=cancelled,
    )


def _coerce_shell_config(shell_config: ShellConfig | Mapping[str, object]) -> ShellConfig:
    if isinstance(shell_config, ShellConfig):
        return shell_config
    return shell_config_from_settings(shell_config)


def build_and_execute(
    installation: Installation,
    shell_config: ShellConfig | Mapping[str, object],
    args: Sequence[str],
    *,
    host: HostPlatform | None = None,
    env: Mapping[str, str] | None = None,
    config: AppConfig | None = None,
    shells: AvailableShells | None = None,
    denylist: ArgumentDenylist | None = None,
    cwd: str | None = None,
    runner: Runner = run_bounded,
    popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    session_id: str | None = None,
) -> BridgeExecution:
    """Build the invocation for ``installation`` and start it.

    Iterate the returned execution for output chunks; ``wait()`` gives the
    child's exit code and ``cancel()`` stops the whole process tree.
    """
    host = host or detect_host_platform()
    env = os.environ if env is None else env
    config = config or AppConfig()
    resolved = _coerce_shell_config(shell_config)
    needs_wsl = resolved.environment == ShellEnvironment.WSL or installation.wsl_distro is not None
    needs_inventory = needs_wsl or resolved.environment == ShellEnvironment.GITBASH
    if shells is None and needs_inventory:
        shells = get_available_shells(host=host, env=env, runner=runner)
    if denylist is None:
        denylist = ArgumentDenylist.from_config(config.argument_denylist)

    detect = partial(
        shell_runtime.auto_detect_wsl_claude,
        tool=config.tool_name,
        runner=runner,
        timeout_seconds=config.wsl_detect_timeout_seconds,
    )
    invocation = build_invocation(
        installation,
        resolved,
        args,
        host=host,
        shells=shells,
        denylist=denylist,
        cwd=cwd,
        env=env,
        detect=detect,
        session_id=session_id,
    )
    return BridgeExecution(invocation, popen=popen, windows=host.is_windows).start()
