"""Bind-mounted directory components: object storage and function code."""
from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from ..archive import create_archive, extract_archive, list_members
from ..state import TargetInstance
from .base import (
    EMPTY_MARKER,
    ComponentResult,
    Outcome,
    component_dir,
    empty,
    guarded,
    skipped,
    write_empty_marker,
)

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class DirectoryAdapter:
    """Archive ``<volumes>/<subdir>`` as ``<name>/<name>.tar.gz``."""

    name: str
    subdir: str
    label: str

    @property
    def archive_name(self) -> str:
        """Return the archive filename inside the component directory."""
        return f"{self.name}.tar.gz"

    def source_dir(self, target: TargetInstance) -> Path:
        """Return the live directory captured by this adapter."""
        return target.volumes_dir / self.subdir

    def backup(self, target: TargetInstance, output_dir: Path) -> ComponentResult:
        """Archive the live directory or write an empty marker when it is absent."""
        return guarded(self.name, "backup", lambda: self._backup(target, output_dir))

    def _backup(self, target: TargetInstance, output_dir: Path) -> ComponentResult:
        source = self.source_dir(target)
        directory = output_dir / self.name
        if not source.is_dir():
            message = f"No {self.label} data found"
            write_empty_marker(directory, message)
            return empty(self.name, message)
        directory.mkdir(parents=True, exist_ok=True)
        archive_path = create_archive(source, directory / self.archive_name)
        size = archive_path.stat().st_size
        return ComponentResult(
            self.name,
            Outcome.SUCCESS,
            f"{self.label.capitalize()} archived ({size} bytes).",
            {"archive_size": size},
        )

    def restore(self, target: TargetInstance, input_dir: Path, *, dry_run: bool) -> ComponentResult:
        """Replace the live directory, or check the archive when *dry_run*."""
        directory = component_dir(input_dir, self.name)
        if directory is None:
            return skipped(self.name)
        if (directory / EMPTY_MARKER).exists():
            return empty(self.name, f"{self.label.capitalize()} backup is empty.")
        archive_path = directory / self.archive_name
        if not archive_path.is_file():
            return ComponentResult(
                self.name, Outcome.FAILED, f"{self.name}/{self.archive_name} is missing."
            )
        if dry_run:
            return guarded(self.name, "dry-run", lambda: self._check(archive_path))
        return guarded(self.name, "restore", lambda: self._replace(target, archive_path))

    def _check(self, archive_path: Path) -> ComponentResult:
        members = list_members(archive_path)
        return ComponentResult(
            self.name,
            Outcome.SUCCESS,
            f"{self.label.capitalize()} archive is valid ({len(members)} entries).",
            {"entries": len(members)},
        )

    def _replace(self, target: TargetInstance, archive_path: Path) -> ComponentResult:
        live = self.source_dir(target)
        staging = live.with_name(f".{live.name}.restore")
        shutil.rmtree(staging, ignore_errors=True)
        try:
            extract_archive(archive_path, staging)
        except Exception:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        if live.exists():
            shutil.rmtree(live)
        staging.rename(live)
        LOGGER.info("Restored %s for %s", self.label, target.id)
        return ComponentResult(self.name, Outcome.SUCCESS, f"{self.label.capitalize()} restored.")


def storage_adapter() -> DirectoryAdapter:
    """Adapter for object storage blobs."""
    return DirectoryAdapter(name="storage", subdir="storage", label="storage")


def functions_adapter() -> DirectoryAdapter:
    """Adapter for function source code."""
    return DirectoryAdapter(name="functions", subdir="functions", label="functions")


__all__ = ["DirectoryAdapter", "functions_adapter", "storage_adapter"]
