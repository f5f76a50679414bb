"""Public CLI contract and entrypoint."""

from __future__ import annotations

import argparse
import json
import logging as py_logging
import sys
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import TextIO

from . import api
from .config import AppConfig, ShellConfig, load_config, shell_config_from_settings, shell_config_to_settings
from .errors import ExitCode, ToolBridgeError, user_facing_error
from .host import HostPlatform
from .logging import configure_logging, default_log_path
from .models import Installation, InstallationType, InstallSource
from .process import run_bounded

_VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARN", "ERROR")
_VALID_SHELLS = ("native", "wsl", "gitbash")


def _log_level_type(value: str) -> str:
    normalized = value.upper()
    if normalized == "WARNING":
        normalized = "WARN"
    if normalized not in _VALID_LOG_LEVELS:
        accepted = ", ".join(_VALID_LOG_LEVELS)
        raise argparse.ArgumentTypeError(f"--log-level must be one of: {accepted}")
    return normalized


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="toolbridge")
    parser.add_argument("--log-level", type=_log_level_type, default="WARN")
    parser.add_argument("--log-file", type=Path, default=None)
    parser.add_argument("--config", type=Path, default=None, help="Path to config.toml")
    commands = parser.add_subparsers(dest="command", required=True)

    list_parser = commands.add_parser("list", help="List ranked installations")
    list_parser.add_argument("--json", action="store_true", dest="as_json")

    shells_parser = commands.add_parser("shells", help="Show available shell environments")
    shells_parser.add_argument("--json", action="store_true", dest="as_json")

    detect_parser = commands.add_parser("detect-wsl", help="Find the tool inside a WSL distribution")
    detect_parser.add_argument("distribution")

    run_parser = commands.add_parser("run", help="Run the best installation; tool arguments follow --")
    run_parser.add_argument("--cwd", default=None)
    run_parser.add_argument("--path", default=None, help="Run this binary instead of the best installation")
    run_parser.add_argument("--shell", choices=_VALID_SHELLS, default=None)
    run_parser.add_argument("--distro", default=None)
    return parser


def split_tool_arguments(argv: Sequence[str]) -> tuple[list[str], list[str]]:
    """Everything after the first ``--`` belongs to the launched tool."""
    items = list(argv)
    if "--" not in items:
        return items, []
    index = items.index("--")
    return items[:index], items[index + 1 :]


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    own, tool_args = split_tool_arguments(sys.argv[1:] if argv is None else argv)
    namespace = build_parser().parse_args(own)
    namespace.tool_args = tool_args
    return namespace


def _format_installation(index: int, installation: Installation) -> str:
    version = installation.version or "unknown"
    line = f"{index}. {installation.path} ({version}) [{installation.source.value}]"
    if installation.is_custom:
        line += " custom"
    if installation.wsl_distro:
        line += f" wsl:{installation.wsl_distro}"
    return line


def _shell_config(namespace: argparse.Namespace, config: AppConfig) -> ShellConfig:
    if namespace.shell is None and namespace.distro is None:
        return config.shell
    settings: dict[str, object] = dict(shell_config_to_settings(config.shell))
    if namespace.shell is not None:
        settings["shell_environment"] = namespace.shell
    if namespace.distro is not None:
        settings["wsl_distro"] = namespace.distro
    return shell_config_from_settings(settings)


def _select_installation(
    namespace: argparse.Namespace,
    config: AppConfig,
    *,
    host: HostPlatform | None,
    env: Mapping[str, str] | None,
    runner: Callable[..., object],
) -> Installation:
    if namespace.path:
        return Installation(
            path=namespace.path,
            source=InstallSource.CUSTOM,
            installation_type=InstallationType.CUSTOM,
        )
    installations = api.list_installations(host=host, env=env, config=config, runner=runner)
    if not installations:
        raise ToolBridgeError(
            f"No installation of '{config.tool_name}' was found.",
            code=ExitCode.NOT_FOUND,
            hint="Install the tool or pass --path.",
        )
    return installations[0]


def run_cli_flow(
    namespace: argparse.Namespace,
    *,
    stdout: TextIO,
    stderr: TextIO,
    host: HostPlatform | None = None,
    env: Mapping[str, str] | None = None,
    runner: Callable[..., object] = run_bounded,
    popen: Callable[..., object] | None = None,
) -> int:
    config = load_config(namespace.config)
    logger = py_logging.getLogger("toolbridge.cli")

    if namespace.command == "list":
        installations = api.list_installations(host=host, env=env, config=config, runner=runner)
        if namespace.as_json:
            print(json.dumps([item.to_dict() for item in installations], indent=2), file=stdout)
            return int(ExitCode.SUCCESS)
        if not installations:
            raise ToolBridgeError(
                f"No installation of '{config.tool_name}' was found.",
                code=ExitCode.NOT_FOUND,
                hint="Install the tool or set custom_binary_path in the config.",
            )
        for index, installation in enumerate(installations, start=1):
            print(_format_installation(index, installation), file=stdout)
        return int(ExitCode.SUCCESS)

    if namespace.command == "shells":
        shells = api.get_available_shells(host=host, env=env, runner=runner)
        if namespace.as_json:
            print(json.dumps(shells.to_dict(), indent=2), file=stdout)
            return int(ExitCode.SUCCESS)
        print("native", file=stdout)
        for distribution in shells.wsl_distributions:
            marker = " (default)" if distribution.is_default else ""
            print(f"wsl:{distribution.name}{marker}", file=stdout)
        if shells.git_bash_path:
            print(f"gitbash:{shells.git_bash_path}", file=stdout)
        return int(ExitCode.SUCCESS)

    if namespace.command == "detect-wsl":
        path = api.auto_detect_wsl_claude(
            namespace.distribution,
            host=host,
            tool=config.tool_name,
            runner=runner,
            timeout_seconds=config.wsl_detect_timeout_seconds,
        )
        if path is None:
            raise ToolBridgeError(
                f"'{config.tool_name}' was not found in WSL distribution '{namespace.distribution}'.",
                code=ExitCode.NOT_FOUND,
                hint="Install the tool inside the distribution or set wsl_claude_path.",
            )
        print(path, file=stdout)
        return int(ExitCode.SUCCESS)

    installation = _select_installation(namespace, config, host=host, env=env, runner=runner)
    shell_config = _shell_config(namespace, config)
    logger.debug("Running %s through %s", installation.path, shell_config.environment.value)
    extra: dict[str, object] = {"popen": popen} if popen is not None else {}
    execution = api.build_and_execute(
        installation,
        shell_config,
        namespace.tool_args,
        host=host,
        env=env,
        config=config,
        cwd=namespace.cwd,
        runner=runner,
        **extra,
    )
    try:
        for chunk in execution:
            target = stdout if chunk.stream == "stdout" else stderr
            target.write(chunk.text)
            target.flush()
        return execution.wait()
    except KeyboardInterrupt:
        logger.info("Interrupted; cancelling execution")
        execution.cancel()
        return execution.wait()


def main(
    argv: Sequence[str] | None = None,
    *,
    stdout: TextIO | None = None,
    host: HostPlatform | None = None,
    env: Mapping[str, str] | None = None,
    runner: Callable[..., object] = run_bounded,
    popen: Callable[..., object] | None = None,
) -> int:
    log_path = default_log_path()
    logger = configure_logging(level="WARN", log_file=log_path)
    try:
        namespace = parse_args(argv)
    except SystemExit as exc:
        if exc.code not in (None, 0):
            logger.warning("Argument parsing failed with exit code %s", exc.code)
        return int(exc.code or 0)

    if namespace.log_file is not None:
        log_path = namespace.log_file.expanduser()
    logger = configure_logging(level=namespace.log_level, log_file=log_path)

    try:
        logger.debug("Starting CLI command %s", namespace.command)
        return run_cli_flow(
            namespace,
            stdout=stdout or sys.stdout,
            stderr=sys.stderr,
            host=host,
            env=env,
            runner=runner,
            popen=popen,
        )
    except ToolBridgeError as exc:
        logger.error(
            "Handled ToolBridgeError (code=%s): %s",
            int(exc.code),
            exc.message,
            exc_info=logger.isEnabledFor(py_logging.DEBUG),
        )
        print(user_facing_error(exc.message, hint=exc.hint), file=sys.stderr)
        return int(exc.code)
    except Exception:
        logger.exception("Unhandled exception in CLI entrypoint")
        print(user_facing_error("Unexpected runtime failure", hint=f"Inspect logs: {log_path}"), file=sys.stderr)
        return int(ExitCode.RUNTIME_ERROR)


def run(argv: Sequence[str] | None = None) -> int:
    return main(argv)
