"""State management helpers for wpid."""
from __future__ import annotations

from .registry import (
    GLOBAL_CONFIG_FILE,
    INSTANCES_FILE,
    StateRegistry,
    StateRegistryError,
    resolve_storage_dir,
)

__all__ = [
    "GLOBAL_CONFIG_FILE",
    "INSTANCES_FILE",
    "StateRegistry",
    "StateRegistryError",
    "resolve_storage_dir",
]
