"""Log sanitization and credential masking for spawned commands."""

from __future__ import annotations

import re
import shlex

DEFAULT_LOG_TRUNCATE_LIMIT = 700
OUTPUT_LOG_TRUNCATE_LIMIT = 320

AUTH_BEARER_PATTERN = re.compile(r"(Authorization:\s*Bearer)\s+\S+", re.IGNORECASE)
URL_CREDENTIAL_PATTERN = re.compile(r"(https?://)([^/\s:@]+):([^@\s]+)@")
API_KEY_PATTERN = re.compile(r"\bsk-(?:ant-)?[A-Za-z0-9_-]{16,}\b")
SECRET_ASSIGNMENT_PATTERN = re.compile(
    r"\b([A-Z][A-Z0-9_]*(?:API_KEY|TOKEN|SECRET))=(\S+)",
)


def truncate_log(value: str, limit: int = DEFAULT_LOG_TRUNCATE_LIMIT) -> str:
    """Truncate log text to the specified limit with ellipsis."""
    value = value.strip()
    if len(value) <= limit:
        return value
    return value[: max(0, limit - 3)] + "..."


def sanitize_log_text(value: str, limit: int = DEFAULT_LOG_TRUNCATE_LIMIT) -> str:
    """Mask sensitive values and return a bounded-length log string."""
    if not value:
        return ""

    sanitized = AUTH_BEARER_PATTERN.sub(r"\1 ***", value)
    sanitized = URL_CREDENTIAL_PATTERN.sub(r"\1***:***@", sanitized)
    sanitized = SECRET_ASSIGNMENT_PATTERN.sub(r"\1=***", sanitized)
    sanitized = API_KEY_PATTERN.sub("***", sanitized)
    return truncate_log(sanitized, limit)


def sanitize_output_text(value: str) -> str:
    """Sanitize child output using the shorter output truncation limit."""
    return sanitize_log_text(value, limit=OUTPUT_LOG_TRUNCATE_LIMIT)


def command_for_log(args: list[str] | tuple[str, ...]) -> str:
    """Return a masked, shell-quoted command string bounded for logging."""
    if not args:
        return ""
    return sanitize_log_text(" ".join(shlex.quote(part) for part in args))
