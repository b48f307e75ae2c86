"""Database component: binary and plain-text dumps of the primary database."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from ..errors import ExternalToolError, NotFoundError
from ..providers.postgres import PostgresProvider
from ..state import TargetInstance
from .base import ComponentResult, Outcome, component_dir, guarded, skipped

LOGGER = logging.getLogger(__name__)

DUMP_FILE = "database.dump"
SQL_FILE = "database.sql"
SCHEMA_FILE = "schema_only.sql"


@dataclass(slots=True)
class DatabaseAdapter:
    """Back up and restore the primary database through :class:`PostgresProvider`."""

    postgres: PostgresProvider
    name: str = "database"

    def backup(self, target: TargetInstance, output_dir: Path) -> ComponentResult:
        """Dump the database in custom format (required) and as plain SQL."""
        return guarded(self.name, "backup", lambda: self._backup(target, output_dir))

    def _backup(self, target: TargetInstance, output_dir: Path) -> ComponentResult:
        self._require_running(target)
        directory = output_dir / self.name
        directory.mkdir(parents=True, exist_ok=True)
        dump_path = self.postgres.dump(target, directory / DUMP_FILE, fmt="custom")
        if not dump_path.is_file():
            raise NotFoundError(f"Database dump {dump_path.name} was not produced.")

        warnings: list[str] = []
        for filename, fmt in ((SQL_FILE, "plain"), (SCHEMA_FILE, "schema")):
            try:
                self.postgres.dump(target, directory / filename, fmt=fmt)
            except ExternalToolError as exc:
                LOGGER.warning("Optional %s dump failed for %s: %s", fmt, target.id, exc)
                warnings.append(f"{filename}: {exc}")

        size = dump_path.stat().st_size
        return ComponentResult(
            self.name,
            Outcome.SUCCESS,
            f"Database dumped ({size} bytes).",
            {"dump_size": size, "warnings": warnings},
        )

    def restore(self, target: TargetInstance, input_dir: Path, *, dry_run: bool) -> ComponentResult:
        """Recreate the database from the dump, or trial-load it when *dry_run*."""
        directory = component_dir(input_dir, self.name)
        if directory is None:
            return skipped(self.name)
        action = "dry-run" if dry_run else "restore"
        if dry_run:
            return guarded(self.name, action, lambda: self._dry_run(target, directory))
        return guarded(self.name, action, lambda: self._restore(target, directory))

    def _dry_run(self, target: TargetInstance, directory: Path) -> ComponentResult:
        dump_path = self._dump_path(directory)
        self._require_running(target)
        scratch_db = f"stackctl_restore_test_{os.getpid()}"
        self.postgres.create_database(target, scratch_db)
        try:
            warning = self.postgres.restore(target, dump_path, database=scratch_db)
            tables = self.postgres.count_tables(target, database=scratch_db)
        finally:
            self.postgres.drop_database(target, scratch_db)
        return ComponentResult(
            self.name,
            Outcome.SUCCESS,
            f"Dump restorable ({tables} tables).",
            {"tables": tables, "warnings": [warning] if warning else []},
        )

    def _restore(self, target: TargetInstance, directory: Path) -> ComponentResult:
        dump_path = self._dump_path(directory)
        self._require_running(target)
        database = self.postgres.database
        self.postgres.drop_database(target, database, force=True)
        self.postgres.create_database(target, database)
        warning = self.postgres.restore(target, dump_path, database=database)
        return ComponentResult(
            self.name,
            Outcome.SUCCESS,
            "Database restored.",
            {"warnings": [warning] if warning else []},
        )

    def _dump_path(self, directory: Path) -> Path:
        dump_path = directory / DUMP_FILE
        if not dump_path.is_file():
            raise NotFoundError(f"Database dump file not found: {self.name}/{DUMP_FILE}")
        return dump_path

    def _require_running(self, target: TargetInstance) -> None:
        if not self.postgres.primary_running(target):
            raise NotFoundError(f"Database container for '{target.id}' is not running.")


__all__ = ["DatabaseAdapter"]
