"""Volumes component: the bind-mounted volume root plus named runtime volumes."""
from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from ..archive import create_archive, extract_archive, list_members
from ..providers.compose import ComposeProvider
from ..state import TargetInstance
from .base import ComponentResult, Outcome, component_dir, guarded, skipped

LOGGER = logging.getLogger(__name__)

BIND_ARCHIVE = "volumes.tar.gz"
NAMED_PREFIX = "volume_"
NAMED_SUFFIX = ".tar.gz"


def named_archive(volume: str) -> str:
    """Return the archive filename for the declared volume *volume*."""
    return f"{NAMED_PREFIX}{volume}{NAMED_SUFFIX}"


def volume_from_archive(filename: str) -> str:
    """Invert :func:`named_archive`."""
    return filename[len(NAMED_PREFIX) : -len(NAMED_SUFFIX)]


@dataclass(slots=True)
class VolumesAdapter:
    """Archive bind volumes and ``<target>_<volume>`` named volumes."""

    compose: ComposeProvider
    name: str = "volumes"

    def backup(self, target: TargetInstance, output_dir: Path) -> ComponentResult:
        """Archive the bind volume root and every existing declared named volume."""
        return guarded(self.name, "backup", lambda: self._backup(target, output_dir))

    def _backup(self, target: TargetInstance, output_dir: Path) -> ComponentResult:
        directory = output_dir / self.name
        directory.mkdir(parents=True, exist_ok=True)
        archives: list[str] = []
        if target.volumes_dir.is_dir():
            create_archive(target.volumes_dir, directory / BIND_ARCHIVE)
            archives.append(BIND_ARCHIVE)
        for volume in self.compose.config_volumes(target):
            full_name = f"{target.id}_{volume}"
            if not self.compose.volume_exists(full_name):
                continue
            filename = named_archive(volume)
            self.compose.volume_export(full_name, directory, filename)
            archives.append(filename)
        if not archives:
            return ComponentResult(self.name, Outcome.EMPTY, "No volumes found.")
        return ComponentResult(
            self.name,
            Outcome.SUCCESS,
            f"Archived {len(archives)} volume archive(s).",
            {"archives": archives},
        )

    def restore(self, target: TargetInstance, input_dir: Path, *, dry_run: bool) -> ComponentResult:
        """Replace bind and named volumes, or verify every archive when *dry_run*."""
        directory = component_dir(input_dir, self.name)
        if directory is None:
            return skipped(self.name)
        if dry_run:
            return guarded(self.name, "dry-run", lambda: self._check(directory))
        return guarded(self.name, "restore", lambda: self._restore(target, directory))

    def _archives(self, directory: Path) -> list[Path]:
        bind = directory / BIND_ARCHIVE
        named = sorted(directory.glob(f"{NAMED_PREFIX}*{NAMED_SUFFIX}"))
        return ([bind] if bind.is_file() else []) + named

    def _check(self, directory: Path) -> ComponentResult:
        checked: dict[str, int] = {}
        for archive_path in self._archives(directory):
            checked[archive_path.name] = len(list_members(archive_path))
        if not checked:
            return ComponentResult(self.name, Outcome.EMPTY, "No volume archives found.")
        return ComponentResult(
            self.name,
            Outcome.SUCCESS,
            f"Volumes backup validated ({len(checked)} archives).",
            {"archives": checked},
        )

    def _restore(self, target: TargetInstance, directory: Path) -> ComponentResult:
        restored: list[str] = []
        bind = directory / BIND_ARCHIVE
        if bind.is_file():
            live = target.volumes_dir
            staging = live.with_name(f".{live.name}.restore")
            shutil.rmtree(staging, ignore_errors=True)
            try:
                extract_archive(bind, staging)
            except Exception:
                shutil.rmtree(staging, ignore_errors=True)
                raise
            if live.exists():
                shutil.rmtree(live)
            staging.rename(live)
            restored.append(BIND_ARCHIVE)
        for archive_path in sorted(directory.glob(f"{NAMED_PREFIX}*{NAMED_SUFFIX}")):
            volume = volume_from_archive(archive_path.name)
            self.compose.replace_volume(f"{target.id}_{volume}", directory, archive_path.name)
            restored.append(archive_path.name)
        LOGGER.info("Restored %d volume archive(s) for %s", len(restored), target.id)
        return ComponentResult(
            self.name,
            Outcome.SUCCESS,
            f"Restored {len(restored)} volume archive(s).",
            {"archives": restored},
        )


__all__ = ["VolumesAdapter", "named_archive", "volume_from_archive"]
