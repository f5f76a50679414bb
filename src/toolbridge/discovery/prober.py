"""Platform-aware scan of conventional install locations."""

from __future__ import annotations

import logging as py_logging
from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path

from toolbridge.host import HostPlatform, SearchLocation
from toolbridge.models import Candidate, InstallSource

logger = py_logging.getLogger(__name__)


def default_search_locations(
    host: HostPlatform,
    tool: str,
    env: Mapping[str, str],
) -> list[SearchLocation]:
    """Conventional locations for ``tool`` followed by every ``PATH`` directory."""
    locations = host.default_locations(tool)
    for directory in host.path_directories(env):
        locations.append(host.location(directory, InstallSource.SYSTEM_PATH))
    return locations


def _expand_location(
    host: HostPlatform,
    location: SearchLocation,
    env: Mapping[str, str],
) -> Iterator[Path]:
    resolved: list[str] = []
    for segment in location.segments:
        value = host.expand_segment(segment, env)
        if value is None:
            logger.debug("Skipping location with unset variable: %s", location.describe())
            return
        resolved.append(value)
    if not resolved:
        return

    wildcard = next((index for index, part in enumerate(resolved) if any(ch in part for ch in "*?[")), None)
    if wildcard is None:
        yield Path(*resolved)
        return

    base = Path(*resolved[:wildcard]) if wildcard else Path(".")
    pattern = "/".join(resolved[wildcard:])
    try:
        matches = sorted(match for match in base.glob(pattern) if match.is_dir())
    except OSError as exc:
        logger.debug("Cannot expand %s: %s", location.describe(), exc)
        return
    yield from matches


def probe_locations(
    host: HostPlatform,
    tool: str,
    locations: Iterable[SearchLocation],
    env: Mapping[str, str],
) -> list[Candidate]:
    """Return the distinct existing, executable candidates found in ``locations``.

    Missing directories, unset variables and per-candidate ``OSError`` are
    swallowed: the candidate is simply omitted.
    """
    names = host.executable_names(tool, env)
    seen: set[str] = set()
    found: list[Candidate] = []
    for location in locations:
        for directory in _expand_location(host, location, env):
            for name in names:
                path = directory / name
                try:
                    if not host.is_executable(path):
                        continue
                except OSError as exc:
                    logger.debug("Skipping unreadable candidate %s: %s", path, exc)
                    continue
                key = host.normalize(str(path))
                if key in seen:
                    continue
                seen.add(key)
                logger.debug("Found candidate %s (%s)", path, location.source.value)
                found.append(Candidate(path=str(path), source=location.source))
    return found


def probe_installations(
    host: HostPlatform,
    tool: str,
    env: Mapping[str, str],
    *,
    extra_locations: Iterable[SearchLocation] = (),
) -> list[Candidate]:
    locations = [*default_search_locations(host, tool, env), *extra_locations]
    candidates = probe_locations(host, tool, locations, env)
    logger.info("Path probe found %s candidate(s) for %s", len(candidates), tool)
    return candidates
