"""Installation discovery: probe, version, rank."""

from .prober import default_search_locations, probe_installations, probe_locations
from .ranker import compare_versions, rank_installations, select_best_installation
from .versions import extract_version, probe_version, resolve_versions

__all__ = [
    "compare_versions",
    "default_search_locations",
    "extract_version",
    "probe_installations",
    "probe_locations",
    "probe_version",
    "rank_installations",
    "resolve_versions",
    "select_best_installation",
]
