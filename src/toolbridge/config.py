"""XDG config loading and shell configuration validation."""

from __future__ import annotations

import os
import sys
from collections.abc import Mapping
from contextlib import suppress
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

if sys.version_info >= (3, 11):
    import tomllib
else:  # pragma: no cover
    import tomli as tomllib

from toolbridge.errors import ExitCode, ToolBridgeError
from toolbridge.models import ShellEnvironment

DEFAULT_CONFIG_PATH = Path("~/.config/toolbridge/config.toml").expanduser()
DEFAULT_TOOL_NAME = "claude"
DEFAULT_VERSION_TIMEOUT_SECONDS = 3.0
DEFAULT_PROBE_WORKERS = 4
DEFAULT_WSL_DETECT_TIMEOUT_SECONDS = 15.0
CUSTOM_PATH_ENV = "TOOLBRIDGE_CUSTOM_PATH"

DENYLIST_SCOPES = ("all", "native", "wsl", "gitbash")

_ENVIRONMENT_ALIASES = {
    "native": ShellEnvironment.NATIVE,
    "powershell": ShellEnvironment.NATIVE,
    "cmd": ShellEnvironment.NATIVE,
    "wsl": ShellEnvironment.WSL,
    "wsl2": ShellEnvironment.WSL,
    "gitbash": ShellEnvironment.GITBASH,
    "git-bash": ShellEnvironment.GITBASH,
    "git_bash": ShellEnvironment.GITBASH,
    "bash": ShellEnvironment.GITBASH,
}

# Keys used by the settings store that persists shell configuration.
SETTINGS_KEYS = ("shell_environment", "wsl_distro", "wsl_claude_path", "git_bash_path")


def parse_shell_environment(value: object) -> ShellEnvironment:
    if isinstance(value, ShellEnvironment):
        return value
    if isinstance(value, str):
        resolved = _ENVIRONMENT_ALIASES.get(value.strip().lower())
        if resolved is not None:
            return resolved
    raise ValueError(f"Unknown shell environment: {value!r}")


def _optional_text(value: object) -> object:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return value


class ShellConfig(BaseModel):
    model_config = ConfigDict(validate_assignment=True, frozen=False)

    environment: ShellEnvironment = ShellEnvironment.NATIVE
    wsl_distro: str | None = None
    wsl_claude_path: str | None = None
    git_bash_path: str | None = None

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: object) -> ShellEnvironment:
        return parse_shell_environment(value)

    @field_validator("wsl_distro", "wsl_claude_path", "git_bash_path", mode="before")
    @classmethod
    def _strip_optional(cls, value: object) -> object:
        return _optional_text(value)

    @model_validator(mode="after")
    def _require_distribution(self) -> ShellConfig:
        if self.environment == ShellEnvironment.WSL and not self.wsl_distro:
            raise ValueError("wsl_distro is required when environment is 'wsl'")
        return self


class AppConfig(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    tool_name: str = DEFAULT_TOOL_NAME
    custom_binary_path: str = ""
    version_timeout_seconds: float = Field(default=DEFAULT_VERSION_TIMEOUT_SECONDS, ge=0.1, le=60.0)
    probe_workers: int = Field(default=DEFAULT_PROBE_WORKERS, ge=1, le=32)
    wsl_detect_timeout_seconds: float = Field(default=DEFAULT_WSL_DETECT_TIMEOUT_SECONDS, ge=1.0, le=120.0)
    shell: ShellConfig = Field(default_factory=ShellConfig)
    argument_denylist: dict[str, list[str]] = Field(default_factory=dict)

    @field_validator("tool_name")
    @classmethod
    def _validate_tool_name(cls, value: str) -> str:
        name = value.strip()
        if not name or any(sep in name for sep in ("/", "\\")):
            raise ValueError(f"Invalid tool name: {value}")
        return name

    @field_validator("argument_denylist")
    @classmethod
    def _validate_denylist(cls, value: dict[str, list[str]]) -> dict[str, list[str]]:
        for scope in value:
            if scope not in DENYLIST_SCOPES:
                raise ValueError(f"Invalid denylist scope: {scope}")
        return value


def get_config_path(path: str | Path | None = None) -> Path:
    if path is None:
        return DEFAULT_CONFIG_PATH
    return Path(path).expanduser()


def shell_config_from_settings(settings: Mapping[str, object]) -> ShellConfig:
    """Validate the opaque key-value shell settings into a ``ShellConfig``."""
    environment = settings.get("shell_environment", settings.get("environment", ShellEnvironment.NATIVE.value))
    try:
        return ShellConfig(
            environment=environment,
            wsl_distro=settings.get("wsl_distro"),
            wsl_claude_path=settings.get("wsl_claude_path"),
            git_bash_path=settings.get("git_bash_path"),
        )
    except ValidationError as exc:
        details = "; ".join(error["msg"] for error in exc.errors())
        raise ToolBridgeError(
            "Invalid shell configuration.",
            code=ExitCode.CONFIG_ERROR,
            hint=details or "Check shell environment settings.",
        ) from exc


def shell_config_to_settings(config: ShellConfig) -> dict[str, str]:
    settings = {"shell_environment": config.environment.value}
    for key in ("wsl_distro", "wsl_claude_path", "git_bash_path"):
        value = getattr(config, key)
        if value:
            settings[key] = value
    return settings

def _normalize_denylist(value: object) -> dict[str, list[str]]:
    if not isinstance(value, dict):
        return {}
    normalized: dict[str, list[str]] = {}
    for scope, flags in value.items():
        if scope not in DENYLIST_SCOPES or not isinstance(flags, list):
            continue
        entries: list[str] = []
        for flag in flags:
            if not isinstance(flag, str):
                continue
            item = flag.strip()
            if item.startswith("-") and item not in entries:
                entries.append(item)
        normalized[scope] = entries
    return normalized


def _sanitize_shell(raw: object) -> ShellConfig:
    if not isinstance(raw, dict):
        return ShellConfig()
    try:
        return shell_config_from_settings(raw)
    except ToolBridgeError:
        return ShellConfig()


def _sanitize(raw: dict[str, object]) -> AppConfig:
    cfg = AppConfig()

    tool_name = raw.get("tool_name", cfg.tool_name)
    if isinstance(tool_name, str):
        with suppress(ValidationError):
            cfg.tool_name = tool_name

    custom_binary_path = raw.get("custom_binary_path", cfg.custom_binary_path)
    if isinstance(custom_binary_path, str):
        cfg.custom_binary_path = custom_binary_path.strip()

    version_timeout = raw.get("version_timeout_seconds", cfg.version_timeout_seconds)
    if isinstance(version_timeout, (int, float)) and not isinstance(version_timeout, bool):
        with suppress(ValidationError):
            cfg.version_timeout_seconds = float(version_timeout)

    probe_workers = raw.get("probe_workers", cfg.probe_workers)
    if isinstance(probe_workers, int) and not isinstance(probe_workers, bool):
        with suppress(ValidationError):
            cfg.probe_workers = probe_workers

    detect_timeout = raw.get("wsl_detect_timeout_seconds", cfg.wsl_detect_timeout_seconds)
    if isinstance(detect_timeout, (int, float)) and not isinstance(detect_timeout, bool):
        with suppress(ValidationError):
            cfg.wsl_detect_timeout_seconds = float(detect_timeout)

    cfg.shell = _sanitize_shell(raw.get("shell", {}))
    cfg.argument_denylist = _normalize_denylist(raw.get("argument_denylist", {}))
    return cfg


def _apply_env_overrides(cfg: AppConfig) -> AppConfig:
    env_path = os.getenv(CUSTOM_PATH_ENV, "").strip()
    if env_path:
        cfg.custom_binary_path = env_path
    return cfg


def _read_raw(resolved: Path) -> dict[str, object]:
    if not resolved.exists():
        return {}
    try:
        with resolved.open("rb") as handle:
            raw = tomllib.load(handle)
    except (tomllib.TOMLDecodeError, OSError):
        return {}
    return raw if isinstance(raw, dict) else {}


def load_config(path: str | Path | None = None) -> AppConfig:
    """Load the config file; a missing or unreadable file yields defaults."""
    return _apply_env_overrides(_sanitize(_read_raw(get_config_path(path))))
