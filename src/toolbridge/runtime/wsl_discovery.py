"""WSL distribution discovery, path translation and command builders."""

from __future__ import annotations

import logging as py_logging
import re
import subprocess
from collections.abc import Callable, Sequence

from toolbridge.errors import ExitCode, ToolBridgeError
from toolbridge.models import WslDistribution
from toolbridge.process import decode_process_output, run_bounded

logger = py_logging.getLogger(__name__)

WSL_LAUNCHER = "wsl.exe"
DEFAULT_LIST_TIMEOUT_SECONDS = 10.0

_WINDOWS_DRIVE_PATH = re.compile(r"^(?P<drive>[A-Za-z]):(?:[\\/](?P<rest>.*))?$")
_WSL_UNC_PREFIXES = ("//wsl.localhost/", "//wsl$/")


def _run_listing(
    args: list[str],
    runner: Callable[..., subprocess.CompletedProcess],
    timeout_seconds: float,
) -> tuple[str, str]:
    command = [WSL_LAUNCHER, *args]
    try:
        result = runner(command, capture_output=True, text=False, check=False, timeout=timeout_seconds)
    except subprocess.TimeoutExpired as exc:
        logger.error("WSL listing timed out command=%s", command)
        raise ToolBridgeError(
            "Listing WSL distributions timed out.",
            code=ExitCode.TIMEOUT,
            hint="The WSL service may be starting; retry in a moment.",
        ) from exc
    except OSError as exc:
        logger.debug("wsl.exe is not available: %s", exc)
        raise ToolBridgeError(
            "wsl.exe could not be started.",
            code=ExitCode.SPAWN_FAILURE,
            hint="Install WSL and ensure wsl.exe is available in PATH.",
        ) from exc

    stdout = decode_process_output(result.stdout)
    stderr = decode_process_output(result.stderr)
    if result.returncode != 0:
        logger.error("WSL distribution listing failed: %s", stderr.strip() or stdout.strip())
        raise ToolBridgeError(
            "Failed to list WSL distributions.",
            code=ExitCode.RUNTIME_ERROR,
            hint=(stderr or stdout or "Check WSL installation.").strip(),
        )
    return stdout, stderr


def parse_verbose_listing(output: str) -> list[WslDistribution]:
    """Parse ``wsl --list --verbose``: a header row then ``[*] NAME STATE VERSION``."""
    distributions: list[WslDistribution] = []
    header_skipped = False
    for raw_line in output.splitlines():
        line = raw_line.replace("\x00", "").strip()
        if not line:
            continue
        if not header_skipped:
            header_skipped = True
            if not line.startswith("*"):
                continue
        is_default = line.startswith("*")
        parts = line.lstrip("*").split()
        if not parts or parts[0].upper() == "NAME":
            continue
        version = int(parts[-1]) if len(parts) >= 3 and parts[-1].isdigit() else None
        distributions.append(WslDistribution(name=parts[0], version=version, is_default=is_default))

    defaults = [item for item in distributions if item.is_default]
    if len(defaults) > 1:
        logger.warning("Multiple default WSL distributions reported; ignoring default markers")
        distributions = [WslDistribution(item.name, item.version, False) for item in distributions]
    return distributions


def list_distributions(
    runner: Callable[..., subprocess.CompletedProcess] = run_bounded,
    *,
    timeout_seconds: float = DEFAULT_LIST_TIMEOUT_SECONDS,
) -> list[WslDistribution]:
    logger.debug("Listing WSL distributions using wsl.exe --list --verbose")
    stdout, _ = _run_listing(["--list", "--verbose"], runner, timeout_seconds)
    distributions = parse_verbose_listing(stdout)
    logger.debug("Discovered %s WSL distributions", len(distributions))
    return distributions


def list_distribution_names(
    runner: Callable[..., subprocess.CompletedProcess] = run_bounded,
    *,
    timeout_seconds: float = DEFAULT_LIST_TIMEOUT_SECONDS,
) -> list[str]:
    logger.debug("Listing WSL distributions using wsl.exe -l -q")
    stdout, _ = _run_listing(["-l", "-q"], runner, timeout_seconds)
    return sorted({line.replace("\x00", "").strip() for line in stdout.splitlines() if line.strip("\x00 \t\r")})


def build_wsl_command(distribution: str, command: Sequence[str]) -> list[str]:
    # The distribution selector is always explicit, even for the host default.
    if not distribution:
        logger.error("WSL command requested without distribution")
        raise ToolBridgeError(
            "WSL distribution is required.",
            code=ExitCode.VALIDATION_ERROR,
            hint="Select a distribution in the shell settings.",
        )
    if not command:
        logger.error("WSL command requested with empty payload")
        raise ToolBridgeError(
            "Runtime command is empty.",
            code=ExitCode.VALIDATION_ERROR,
            hint="Provide a command to execute in WSL.",
        )
    return [WSL_LAUNCHER, "-d", distribution, "--", *command]


def windows_to_wsl_path(host_path: str) -> str:
    """Translate a Windows path into the path a WSL distribution sees."""
    path = host_path.replace("\\", "/")
    for prefix in _WSL_UNC_PREFIXES:
        if path.lower().startswith(prefix):
            rest = path[len(prefix) :]
            slash = rest.find("/")
            return rest[slash:] if slash >= 0 else "/"
    if path.startswith("//"):
        return f"/mnt/{path[2:]}"
    match = _WINDOWS_DRIVE_PATH.match(path)
    if match:
        drive = match.group("drive").lower()
        rest = (match.group("rest") or "").strip("/")
        return f"/mnt/{drive}/{rest}" if rest else f"/mnt/{drive}"
    return path


def windows_to_msys_path(host_path: str) -> str:
    """Translate a Windows path into Git Bash (MSYS) form, e.g. ``/c/Users``."""
    path = host_path.replace("\\", "/")
    match = _WINDOWS_DRIVE_PATH.match(path)
    if match:
        drive = match.group("drive").lower()
        rest = (match.group("rest") or "").strip("/")
        return f"/{drive}/{rest}" if rest else f"/{drive}"
    return path


def distribution_unreachable_message(distribution: str) -> str:
    return (
        f"Configured WSL distribution '{distribution}' is not installed. "
        "Choose another distribution in the shell settings and retry."
    )
