"""Provider interfaces for wpid."""
from __future__ import annotations

from .compose import ComposeError, ComposeProvider

__all__ = ["ComposeError", "ComposeProvider"]
