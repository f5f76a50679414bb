"""Command builder: turn an installation + shell config into one invocation."""

from __future__ import annotations

import logging as py_logging
import os
import shlex
import shutil
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from typing_extensions import assert_never

from toolbridge.config import ShellConfig
from toolbridge.errors import ExitCode, ToolBridgeError
from toolbridge.host import HostPlatform
from toolbridge.models import AvailableShells, Installation, ShellEnvironment
from toolbridge.runtime.wsl_discovery import (
    build_wsl_command,
    distribution_unreachable_message,
    windows_to_msys_path,
    windows_to_wsl_path,
)
from toolbridge.security import command_for_log

logger = py_logging.getLogger(__name__)

WSL_PID_DIR = "/tmp"


@dataclass(frozen=True)
class ArgumentRule:
    flag: str
    takes_value: bool = False

    @classmethod
    def parse(cls, text: str) -> ArgumentRule:
        """``--flag=`` denotes a flag followed by a value token."""
        value = text.strip()
        if value.endswith("="):
            return cls(flag=value[:-1], takes_value=True)
        return cls(flag=value)


@dataclass(frozen=True)
class ArgumentDenylist:
    common: tuple[ArgumentRule, ...] = ()
    per_environment: Mapping[ShellEnvironment, tuple[ArgumentRule, ...]] = field(default_factory=dict)

    @classmethod
    def from_config(cls, raw: Mapping[str, Sequence[str]]) -> ArgumentDenylist:
        common = tuple(ArgumentRule.parse(item) for item in raw.get("all", ()))
        per_environment = {
            environment: tuple(ArgumentRule.parse(item) for item in raw.get(environment.value, ()))
            for environment in ShellEnvironment
            if raw.get(environment.value)
        }
        return cls(common=common, per_environment=per_environment)

    def rules_for(self, environment: ShellEnvironment) -> tuple[ArgumentRule, ...]:
        return (*self.common, *self.per_environment.get(environment, ()))


def filter_arguments(args: Sequence[str], rules: Sequence[ArgumentRule]) -> list[str]:
    """Drop denylisted flags together with their value token.

    Tokens after a bare ``--`` are positional and never filtered.
    """
    by_flag = {rule.flag: rule for rule in rules}
    filtered: list[str] = []
    index = 0
    while index < len(args):
        token = args[index]
        if token == "--":
            filtered.extend(args[index:])
            break
        rule = by_flag.get(token)
        if rule is not None:
            logger.debug("Removing incompatible argument %s", token)
            index += 2 if rule.takes_value else 1
            continue
        flag, sep, _ = token.partition("=")
        if sep and flag in by_flag:
            logger.debug("Removing incompatible argument %s", flag)
            index += 1
            continue
        filtered.append(token)
        index += 1
    return filtered


@dataclass(frozen=True)
class Invocation:
    """Bridge-agnostic process descriptor consumed by the execution bridge."""

    program: str
    args: tuple[str, ...]
    environment: ShellEnvironment
    cwd: str | None = None
    env: Mapping[str, str] | None = None
    cancel_argv: tuple[str, ...] = ()

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args]


def _posix_word(path: str) -> str:
    if path == "~":
        return '"$HOME"'
    if path.startswith("~/"):
        return '"$HOME"/' + shlex.quote(path[2:])
    return shlex.quote(path)


def build_wsl_script(binary: str, args: Sequence[str], *, cwd: str | None, pid_file: str) -> str:
    lines = [f'printf \'%s\' "$$" > {shlex.quote(pid_file)}']
    if cwd:
        lines.append(f"cd {shlex.quote(cwd)} || exit 1")
    command = " ".join([_posix_word(binary), *(shlex.quote(arg) for arg in args)])
    lines.append(f"exec {command}")
    return "\n".join(lines)


def build_wsl_cancel_script(pid_file: str) -> str:
    quoted = shlex.quote(pid_file)
    return "\n".join(
        [
            f'pid="$(cat {quoted} 2>/dev/null)"',
            'if [ -n "$pid" ]; then',
            '  pkill -TERM -P "$pid" 2>/dev/null || true',
            '  kill -TERM "$pid" 2>/dev/null || true',
            "fi",
            f"rm -f {quoted}",
        ]
    )


def build_native_environment(program: str, env: Mapping[str, str], host: HostPlatform) -> dict[str, str]:
    """Copy ``env``, prepending nvm/Homebrew bin directories to ``PATH`` when the binary lives there."""
    inherited = dict(env)
    normalized = program.replace("\\", "/")
    if not any(marker in normalized for marker in ("/.nvm/versions/node/", "/homebrew/")):
        return inherited
    bin_dir = host.parent(program)
    current = inherited.get("PATH", "")
    if bin_dir in current.split(host.path_separator):
        return inherited
    inherited["PATH"] = f"{bin_dir}{host.path_separator}{current}" if current else bin_dir
    logger.debug("Adding %s to PATH for %s", bin_dir, program)
    return inherited


def _resolve_native_binary(path: str, host: HostPlatform, env: Mapping[str, str]) -> str:
    if "/" not in path and "\\" not in path:
        resolved = shutil.which(path, path=env.get("PATH"))
        if resolved is None:
            raise ToolBridgeError(
                f"Binary '{path}' was not found on PATH.",
                code=ExitCode.NOT_FOUND,
                hint="Select an installation with a full path or fix PATH.",
            )
        return resolved

    candidate = Path(path)
    try:
        exists = candidate.is_file()
        executable = exists and host.is_executable(candidate)
    except OSError as exc:
        raise ToolBridgeError(
            f"Binary '{path}' could not be accessed.",
            code=ExitCode.PERMISSION_DENIED,
            hint=str(exc),
        ) from exc
    if not exists:
        raise ToolBridgeError(
            f"Binary '{path}' no longer exists.",
            code=ExitCode.NOT_FOUND,
            hint="Refresh the installation list and select another binary.",
        )
    if not executable:
        raise ToolBridgeError(
            f"Binary '{path}' is not executable.",
            code=ExitCode.PERMISSION_DENIED,
            hint="Check the file permissions of the selected binary.",
        )
    return path


def _build_native(
    installation: Installation,
    args: list[str],
    *,
    host: HostPlatform,
    env: Mapping[str, str],
    cwd: str | None,
) -> Invocation:
    program = _resolve_native_binary(installation.path, host, env)
    return Invocation(
        program=program,
        args=tuple(args),
        environment=ShellEnvironment.NATIVE,
        cwd=cwd,
        env=build_native_environment(program, env, host),
    )


def _build_wsl(
    installation: Installation,
    distribution: str,
    args: list[str],
    *,
    shell_config: ShellConfig,
    shells: AvailableShells,
    cwd: str | None,
    detect: Callable[[str], str | None] | None,
    session_id: str | None,
) -> Invocation:
    if shells.find_distribution(distribution) is None:
        raise ToolBridgeError(
            f"WSL distribution '{distribution}' was not found.",
            code=ExitCode.DISTRIBUTION_NOT_FOUND,
            hint=distribution_unreachable_message(distribution),
        )

    binary = shell_config.wsl_claude_path if shell_config.environment == ShellEnvironment.WSL else None
    if not binary and installation.wsl_distro == distribution:
        binary = installation.path
    if not binary and detect is not None:
        binary = detect(distribution)
    if not binary:
        raise ToolBridgeError(
            f"No binary was found inside WSL distribution '{distribution}'.",
            code=ExitCode.NOT_FOUND,
            hint="Install the tool inside the distribution or set the WSL binary path.",
        )

    token = session_id or uuid.uuid4().hex[:12]
    pid_file = f"{WSL_PID_DIR}/toolbridge-{token}.pid"
    script = build_wsl_script(
        binary,
        args,
        cwd=windows_to_wsl_path(cwd) if cwd else None,
        pid_file=pid_file,
    )
    argv = build_wsl_command(distribution, ["bash", "-lc", script])
    cancel_argv = build_wsl_command(distribution, ["bash", "-c", build_wsl_cancel_script(pid_file)])
    return Invocation(
        program=argv[0],
        args=tuple(argv[1:]),
        environment=ShellEnvironment.WSL,
        cancel_argv=tuple(cancel_argv),
    )


def _build_gitbash(
    installation: Installation,
    args: list[str],
    *,
    shell_config: ShellConfig,
    shells: AvailableShells,
    cwd: str | None,
) -> Invocation:
    if installation.wsl_distro:
        raise ToolBridgeError(
            "A WSL installation cannot run through Git Bash.",
            code=ExitCode.VALIDATION_ERROR,
            hint="Select the WSL shell environment for this installation.",
        )
    bash = shell_config.git_bash_path or shells.git_bash_path
    if not bash:
        raise ToolBridgeError(
            "Git Bash was not found.",
            code=ExitCode.NOT_FOUND,
            hint="Install Git for Windows or set the Git Bash path.",
        )
    command = shlex.join([windows_to_msys_path(installation.path), *args])
    return Invocation(
        program=bash,
        args=("-lc", f"exec {command}"),
        environment=ShellEnvironment.GITBASH,
        cwd=cwd,
    )


def build_invocation(
    installation: Installation,
    shell_config: ShellConfig,
    args: Sequence[str],
    *,
    host: HostPlatform,
    shells: AvailableShells | None = None,
    denylist: ArgumentDenylist | None = None,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    detect: Callable[[str], str | None] | None = None,
    session_id: str | None = None,
) -> Invocation:
    """Build the exact child-process invocation for ``installation``.

    An installation living inside a distribution always runs through WSL;
    with a native shell config its own distribution is used.
    """
    environment = shell_config.environment
    inventory = shells or AvailableShells()
    host_env = os.environ if env is None else env
    distribution = shell_config.wsl_distro or ""
    if environment == ShellEnvironment.NATIVE and installation.wsl_distro:
        environment = ShellEnvironment.WSL
        distribution = installation.wsl_distro

    rules = (denylist or ArgumentDenylist()).rules_for(environment)
    filtered = filter_arguments(list(args), rules)

    if environment == ShellEnvironment.NATIVE:
        invocation = _build_native(installation, filtered, host=host, env=host_env, cwd=cwd)
    elif environment == ShellEnvironment.WSL:
        invocation = _build_wsl(
            installation,
            distribution,
            filtered,
            shell_config=shell_config,
            shells=inventory,
            cwd=cwd,
            detect=detect,
            session_id=session_id,
        )
    elif environment == ShellEnvironment.GITBASH:
        invocation = _build_gitbash(
            installation,
            filtered,
            shell_config=shell_config,
            shells=inventory,
            cwd=cwd,
        )
    else:
        assert_never(environment)

    logger.debug("Built %s invocation: %s", environment.value, command_for_log(invocation.argv))
    return invocation
