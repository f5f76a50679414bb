"""Discovery and shell environment domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class InstallationType(str, Enum):
    SYSTEM = "System"
    CUSTOM = "Custom"


class InstallSource(str, Enum):
    VERSION_MANAGER = "version-manager"
    USER_LOCAL = "user-local"
    PACKAGE_MANAGER = "package-manager"
    SYSTEM_PATH = "system-path"
    CUSTOM = "custom"


class ShellEnvironment(str, Enum):
    NATIVE = "native"
    WSL = "wsl"
    GITBASH = "gitbash"


@dataclass(frozen=True)
class Candidate:
    path: str
    source: InstallSource
    wsl_distro: str | None = None


@dataclass(frozen=True)
class Installation:
    path: str
    source: InstallSource
    version: str | None = None
    installation_type: InstallationType = InstallationType.SYSTEM
    wsl_distro: str | None = None

    @property
    def is_custom(self) -> bool:
        return self.installation_type == InstallationType.CUSTOM

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "path": self.path,
            "version": self.version,
            "source": self.source.value,
            "installation_type": self.installation_type.value,
        }
        if self.wsl_distro is not None:
            payload["wsl_distro"] = self.wsl_distro
        return payload


@dataclass(frozen=True)
class WslDistribution:
    name: str
    version: int | None = None
    is_default: bool = False

    def to_dict(self) -> dict[str, object]:
        return {"name": self.name, "version": self.version, "is_default": self.is_default}


@dataclass(frozen=True)
class AvailableShells:
    wsl_distributions: tuple[WslDistribution, ...] = ()
    git_bash_path: str | None = None
    native: bool = field(default=True)

    @property
    def default_distribution(self) -> WslDistribution | None:
        for distribution in self.wsl_distributions:
            if distribution.is_default:
                return distribution
        return None

    def find_distribution(self, name: str) -> WslDistribution | None:
        for distribution in self.wsl_distributions:
            if distribution.name == name:
                return distribution
        return None

    def to_dict(self) -> dict[str, object]:
        return {
            "native": self.native,
            "wsl_distributions": [item.to_dict() for item in self.wsl_distributions],
            "git_bash_path": self.git_bash_path,
        }
