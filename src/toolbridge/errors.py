"""Deterministic error model and exit code contract."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum


class ExitCode(IntEnum):
    SUCCESS = 0
    INVALID_ARGS = 2
    CONFIG_ERROR = 3
    RUNTIME_ERROR = 4
    NOT_FOUND = 5
    TIMEOUT = 6
    SPAWN_FAILURE = 7
    PERMISSION_DENIED = 8
    UNSUPPORTED_ARGUMENT = 9
    DISTRIBUTION_NOT_FOUND = 10
    VALIDATION_ERROR = 11


@dataclass
class ToolBridgeError(Exception):
    message: str
    code: ExitCode = ExitCode.RUNTIME_ERROR
    hint: str = ""

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message} Hint: {self.hint}"
        return self.message


def user_facing_error(message: str, *, hint: str = "") -> str:
    if hint:
        return f"Error: {message}. Next step: {hint}"
    return f"Error: {message}."
