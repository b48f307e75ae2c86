"""Shared types for backup component adapters.

Each adapter owns one subdirectory of a backup working directory and knows
how to produce it from a live target, how to put it back, and how to check it
without touching the target. Problems inside one component are reported as a
:class:`ComponentResult` so the pipelines can keep going with the others.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from ..errors import StackctlError
from ..state import TargetInstance

LOGGER = logging.getLogger(__name__)

EMPTY_MARKER = ".empty"


class Outcome(str, Enum):
    """Result category for a component operation."""

    SUCCESS = "success"
    EMPTY = "empty"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def ok(self) -> bool:
        """Return ``True`` for every outcome except a failure."""
        return self is not Outcome.FAILED


@dataclass(frozen=True, slots=True)
class ComponentResult:
    """Outcome of one adapter call."""

    component: str
    outcome: Outcome
    message: str
    details: Mapping[str, object] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """Return ``True`` unless the component failed."""
        return self.outcome.ok

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "component": self.component,
            "outcome": self.outcome.value,
            "message": self.message,
            "details": dict(self.details),
        }


class ComponentAdapter(Protocol):
    """Interface implemented by every component adapter."""

    name: str

    def backup(self, target: TargetInstance, output_dir: Path) -> ComponentResult:
        """Write this component's files under ``output_dir/<name>``."""

    def restore(self, target: TargetInstance, input_dir: Path, *, dry_run: bool) -> ComponentResult:
        """Apply (or, with *dry_run*, only check) ``input_dir/<name>``."""


def guarded(
    component: str,
    action: str,
    func: Callable[[], ComponentResult],
) -> ComponentResult:
    """Run *func*, turning a stackctl failure into a ``FAILED`` result."""
    try:
        return func()
    except (StackctlError, OSError) as exc:
        LOGGER.warning("%s %s failed: %s", component, action, exc)
        return ComponentResult(component, Outcome.FAILED, f"{action} failed: {exc}")


def component_dir(root: Path, name: str) -> Path | None:
    """Return ``root/name`` when it exists, else ``None``."""
    path = root / name
    return path if path.is_dir() else None


def skipped(component: str) -> ComponentResult:
    """Result for a backup that does not contain *component*."""
    return ComponentResult(component, Outcome.SKIPPED, "Not present in backup.")


def empty(component: str, message: str) -> ComponentResult:
    """Result for a component captured as an empty marker."""
    return ComponentResult(component, Outcome.EMPTY, message)


def write_empty_marker(directory: Path, message: str) -> Path:
    """Create *directory* with an ``.empty`` marker explaining why it has no data."""
    directory.mkdir(parents=True, exist_ok=True)
    marker = directory / EMPTY_MARKER
    marker.write_text(message + "\n", encoding="utf-8")
    return marker


__all__ = [
    "EMPTY_MARKER",
    "ComponentAdapter",
    "ComponentResult",
    "Outcome",
    "component_dir",
    "empty",
    "guarded",
    "skipped",
    "write_empty_marker",
]
