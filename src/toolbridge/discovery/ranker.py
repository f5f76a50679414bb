"""Deterministic ordering of a settled installation snapshot."""

from __future__ import annotations

import re
from collections.abc import Iterable
from functools import cmp_to_key

from toolbridge.models import Installation, InstallSource

SOURCE_PRIORITY: tuple[InstallSource, ...] = (
    InstallSource.VERSION_MANAGER,
    InstallSource.USER_LOCAL,
    InstallSource.SYSTEM_PATH,
)

_CORE = re.compile(r"^\s*v?(?P<core>\d+(?:\.\d+)*)(?:-(?P<pre>[0-9A-Za-z.-]+))?(?:\+[0-9A-Za-z.-]+)?\s*$")


def source_rank(source: InstallSource) -> int:
    try:
        return SOURCE_PRIORITY.index(source)
    except ValueError:
        return len(SOURCE_PRIORITY)


def _parse(version: str) -> tuple[list[int], list[str]] | None:
    match = _CORE.match(version)
    if match is None:
        return None
    core = [int(part) for part in match.group("core").split(".")]
    pre = match.group("pre")
    return core, (pre.split(".") if pre else [])


def _compare_prerelease(left: list[str], right: list[str]) -> int:
    # A release (no identifiers) outranks any pre-release of the same core.
    if not left or not right:
        return (not left) - (not right)
    for a, b in zip(left, right):
        if a == b:
            continue
        if a.isdigit() and b.isdigit():
            return (int(a) > int(b)) - (int(a) < int(b))
        if a.isdigit() != b.isdigit():
            return -1 if a.isdigit() else 1
        return (a > b) - (a < b)
    return (len(left) > len(right)) - (len(left) < len(right))


def compare_versions(left: str, right: str) -> int:
    """Three-way semantic comparison; unparsable versions compare lowest."""
    parsed_left = _parse(left)
    parsed_right = _parse(right)
    if parsed_left is None or parsed_right is None:
        return (parsed_left is not None) - (parsed_right is not None)
    core_left, pre_left = parsed_left
    core_right, pre_right = parsed_right
    width = max(len(core_left), len(core_right))
    core_left = core_left + [0] * (width - len(core_left))
    core_right = core_right + [0] * (width - len(core_right))
    if core_left != core_right:
        return (core_left > core_right) - (core_left < core_right)
    return _compare_prerelease(pre_left, pre_right)


def _compare(left: Installation, right: Installation) -> int:
    if left.is_custom != right.is_custom:
        return -1 if left.is_custom else 1
    if (left.version is None) != (right.version is None):
        return 1 if left.version is None else -1
    if left.version is not None and right.version is not None:
        by_version = compare_versions(right.version, left.version)
        if by_version:
            return by_version
    by_source = source_rank(left.source) - source_rank(right.source)
    if by_source:
        return by_source
    if left.path != right.path:
        return -1 if left.path < right.path else 1
    # Remaining fields only matter for duplicate paths; keep the order total.
    left_rest = (left.source.value, left.version or "", left.wsl_distro or "")
    right_rest = (right.source.value, right.version or "", right.wsl_distro or "")
    return (left_rest > right_rest) - (left_rest < right_rest)


def rank_installations(installations: Iterable[Installation]) -> list[Installation]:
    """Order a settled snapshot; a pure function of its input set.

    Custom first, then higher version, then source priority, then path;
    unknown versions trail all versioned entries. Duplicate paths within one
    distribution collapse to their best-ranked entry.
    """
    ordered = sorted(installations, key=cmp_to_key(_compare))
    seen: set[tuple[str, str | None]] = set()
    unique: list[Installation] = []
    for installation in ordered:
        key = (installation.path, installation.wsl_distro)
        if key in seen:
            continue
        seen.add(key)
        unique.append(installation)
    return unique


def select_best_installation(installations: Iterable[Installation]) -> Installation | None:
    ranked = rank_installations(installations)
    return ranked[0] if ranked else None
