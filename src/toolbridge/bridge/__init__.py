"""Invocation building and process execution across shell bridges."""

from .command import (
    ArgumentDenylist,
    ArgumentRule,
    Invocation,
    build_invocation,
    filter_arguments,
)
from .execution import BridgeExecution, OutputChunk

__all__ = [
    "ArgumentDenylist",
    "ArgumentRule",
    "BridgeExecution",
    "Invocation",
    "OutputChunk",
    "build_invocation",
    "filter_arguments",
]
