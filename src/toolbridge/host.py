"""Host platform capability: path conventions and executable rules.

Two variants exist, ``PosixPlatform`` and ``WindowsPlatform``. Both describe
install locations as tuples of path segments so that one traversal algorithm
(see ``toolbridge.discovery.prober``) serves either host. Segments may be
``~`` (home directory), an environment reference (``$NAME`` on POSIX,
``%NAME%`` on Windows), a ``*`` wildcard, or a literal name.
"""

from __future__ import annotations

import os
import platform
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path, PurePath, PurePosixPath, PureWindowsPath

from toolbridge.models import InstallSource

_POSIX_VAR = re.compile(r"^\$\{?(?P<name>[A-Za-z_][A-Za-z0-9_]*)\}?$")
_WINDOWS_VAR = re.compile(r"^%(?P<name>[^%]+)%$")
_DEFAULT_PATHEXT = ".COM;.EXE;.BAT;.CMD"
_WINDOWS_LAUNCHABLE = (".exe", ".cmd", ".bat", ".com")


@dataclass(frozen=True)
class SearchLocation:
    segments: tuple[str, ...]
    source: InstallSource

    def describe(self) -> str:
        return "/".join(self.segments)


class HostPlatform(ABC):
    name = ""
    is_windows = False
    path_separator = os.pathsep
    home_variable = "HOME"
    pure_path: type[PurePath] = PurePosixPath

    @abstractmethod
    def executable_names(self, tool: str, env: Mapping[str, str]) -> tuple[str, ...]: ...

    @abstractmethod
    def is_executable(self, path: Path) -> bool: ...

    def normalize(self, path: str) -> str:
        return path

    def parent(self, path: str) -> str:
        return str(self.pure_path(path).parent)

    @abstractmethod
    def split(self, location: str) -> tuple[str, ...]: ...

    @abstractmethod
    def default_locations(self, tool: str) -> list[SearchLocation]: ...

    @abstractmethod
    def _variable_name(self, segment: str) -> str | None: ...

    def home(self, env: Mapping[str, str]) -> str | None:
        value = env.get(self.home_variable, "").strip()
        return value or None

    def expand_segment(self, segment: str, env: Mapping[str, str]) -> str | None:
        """Resolve ``~`` and variable segments; ``None`` when a variable is unset."""
        if segment == "~":
            return self.home(env)
        name = self._variable_name(segment)
        if name is None:
            return segment
        value = env.get(name, "").strip()
        return value or None

    def path_directories(self, env: Mapping[str, str]) -> list[str]:
        raw = env.get("PATH", "") or env.get("Path", "")
        return [item.strip().strip('"') for item in raw.split(self.path_separator) if item.strip()]

    def location(self, text: str, source: InstallSource) -> SearchLocation:
        return SearchLocation(segments=self.split(text), source=source)


class PosixPlatform(HostPlatform):
    name = "posix"
    is_windows = False
    path_separator = ":"
    home_variable = "HOME"

    def executable_names(self, tool: str, env: Mapping[str, str]) -> tuple[str, ...]:
        del env
        return (tool,)

    def is_executable(self, path: Path) -> bool:
        return path.is_file() and os.access(path, os.X_OK)

    def split(self, location: str) -> tuple[str, ...]:
        parts = [part for part in location.split("/") if part]
        if location.startswith("/"):
            return ("/", *parts)
        return tuple(parts)

    def _variable_name(self, segment: str) -> str | None:
        match = _POSIX_VAR.match(segment)
        return match.group("name") if match else None

    def default_locations(self, tool: str) -> list[SearchLocation]:
        vm = InstallSource.VERSION_MANAGER
        user = InstallSource.USER_LOCAL
        pkg = InstallSource.PACKAGE_MANAGER
        system = InstallSource.SYSTEM_PATH
        templates = [
            ("$NVM_BIN", vm),
            ("~/.nvm/versions/node/*/bin", vm),
            ("~/.local/share/fnm/node-versions/*/installation/bin", vm),
            ("~/.volta/bin", vm),
            (f"~/.{tool}/local", user),
            ("~/.local/bin", user),
            ("~/bin", user),
            ("~/.npm-global/bin", pkg),
            ("~/.yarn/bin", pkg),
            ("~/.config/yarn/global/node_modules/.bin", pkg),
            ("~/.bun/bin", pkg),
            ("~/node_modules/.bin", pkg),
            ("/usr/local/bin", system),
            ("/opt/homebrew/bin", system),
            ("/usr/bin", system),
            ("/bin", system),
        ]
        return [self.location(text, source) for text, source in templates]


class WindowsPlatform(HostPlatform):
    name = "windows"
    is_windows = True
    path_separator = ";"
    home_variable = "USERPROFILE"
    pure_path = PureWindowsPath

    def home(self, env: Mapping[str, str]) -> str | None:
        profile = env.get("USERPROFILE", "").strip()
        if profile:
            return profile
        drive = env.get("HOMEDRIVE", "").strip()
        rest = env.get("HOMEPATH", "").strip()
        if drive and rest:
            return f"{drive}{rest}"
        return None

    def executable_names(self, tool: str, env: Mapping[str, str]) -> tuple[str, ...]:
        names: list[str] = []
        for suffix in self._suffixes(env):
            name = f"{tool}{suffix}"
            if name not in names:
                names.append(name)
        return tuple(names)

    def is_executable(self, path: Path) -> bool:
        return path.is_file() and path.suffix.lower() in _WINDOWS_LAUNCHABLE

    def normalize(self, path: str) -> str:
        return path.replace("/", "\\").lower()

    def split(self, location: str) -> tuple[str, ...]:
        parts = [part for part in re.split(r"[\\/]+", location) if part]
        if parts and re.fullmatch(r"[A-Za-z]:", parts[0]):
            parts[0] = parts[0] + "\\"
        elif location.startswith(("/", "\\")):
            parts.insert(0, location[0])
        return tuple(parts)

    def _variable_name(self, segment: str) -> str | None:
        match = _WINDOWS_VAR.match(segment)
        return match.group("name") if match else None

    def _suffixes(self, env: Mapping[str, str]) -> list[str]:
        raw = env.get("PATHEXT", "") or _DEFAULT_PATHEXT
        suffixes = [item.strip().lower() for item in raw.split(";") if item.strip()]
        launchable = [item for item in suffixes if item in _WINDOWS_LAUNCHABLE]
        return launchable or [".exe", ".cmd"]

    def default_locations(self, tool: str) -> list[SearchLocation]:
        vm = InstallSource.VERSION_MANAGER
        user = InstallSource.USER_LOCAL
        pkg = InstallSource.PACKAGE_MANAGER
        templates = [
            ("%NVM_SYMLINK%", vm),
            ("%NVM_HOME%\\*", vm),
            (f"~\\.{tool}\\local", user),
            ("~\\.local\\bin", user),
            ("%APPDATA%\\npm", pkg),
            ("~\\.yarn\\bin", pkg),
            ("~\\.bun\\bin", pkg),
        ]
        return [self.location(text, source) for text, source in templates]


def detect_host_platform(system_name: str | None = None) -> HostPlatform:
    system = system_name or platform.system()
    if system == "Windows":
        return WindowsPlatform()
    return PosixPlatform()
