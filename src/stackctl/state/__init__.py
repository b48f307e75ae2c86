"""State registry helpers."""
from __future__ import annotations

from .registry import ProjectRegistry, RegistryError, TargetInstance

__all__ = ["ProjectRegistry", "RegistryError", "TargetInstance"]
