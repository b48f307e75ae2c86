"""Component adapters used by the backup and restore pipelines."""
from __future__ import annotations

from collections.abc import Sequence

from ..errors import PolicyError
from ..providers.compose import ComposeProvider
from ..providers.postgres import PostgresProvider
from .base import ComponentAdapter, ComponentResult, Outcome
from .config import ConfigAdapter
from .database import DatabaseAdapter
from .directories import DirectoryAdapter, functions_adapter, storage_adapter
from .volumes import VolumesAdapter

# Canonical order used for backups of type ``full``.
COMPONENT_ORDER: tuple[str, ...] = ("database", "storage", "functions", "config", "volumes")

# Live restores lay down configuration and volumes before the database comes up.
RESTORE_ORDER: tuple[str, ...] = ("config", "volumes", "database", "storage", "functions")

BACKUP_TYPES: dict[str, tuple[str, ...]] = {
    "full": COMPONENT_ORDER,
    "database": ("database",),
    "storage": ("storage",),
    "functions": ("functions",),
    "config": ("config",),
    "volumes": ("volumes",),
}

# Backup types whose capture needs the database service running.
DATABASE_TYPES = frozenset({"full", "database"})


def validate_backup_type(backup_type: str) -> str:
    """Return *backup_type* or raise :class:`PolicyError` when it is unknown."""
    if backup_type not in BACKUP_TYPES:
        allowed = ", ".join(sorted(BACKUP_TYPES))
        raise PolicyError(f"Unknown backup type '{backup_type}'. Allowed: {allowed}.")
    return backup_type


def build_adapters(
    compose: ComposeProvider,
    postgres: PostgresProvider,
) -> dict[str, ComponentAdapter]:
    """Return one adapter instance per component name."""
    return {
        "database": DatabaseAdapter(postgres),
        "storage": storage_adapter(),
        "functions": functions_adapter(),
        "config": ConfigAdapter(),
        "volumes": VolumesAdapter(compose),
    }


def adapters_for(
    backup_type: str,
    adapters: dict[str, ComponentAdapter],
) -> list[ComponentAdapter]:
    """Return the adapters implied by *backup_type* in canonical order."""
    return [adapters[name] for name in BACKUP_TYPES[validate_backup_type(backup_type)]]


def restore_order(adapters: Sequence[ComponentAdapter]) -> list[ComponentAdapter]:
    """Sort *adapters* into live-restore order."""
    return sorted(adapters, key=lambda adapter: RESTORE_ORDER.index(adapter.name))


__all__ = [
    "BACKUP_TYPES",
    "COMPONENT_ORDER",
    "DATABASE_TYPES",
    "RESTORE_ORDER",
    "ComponentAdapter",
    "ComponentResult",
    "ConfigAdapter",
    "DatabaseAdapter",
    "DirectoryAdapter",
    "Outcome",
    "VolumesAdapter",
    "adapters_for",
    "build_adapters",
    "restore_order",
    "validate_backup_type",
]
