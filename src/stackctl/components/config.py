"""Configuration component: compose descriptor, environment file and CLI config."""
from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path

from ..state import TargetInstance
from .base import ComponentResult, Outcome, component_dir, guarded, skipped


def _config_files(target: TargetInstance) -> dict[str, Path]:
    return {
        target.compose_file.name: target.compose_file,
        target.env_file.name: target.env_file,
        target.cli_config.name: target.cli_config,
    }


@dataclass(slots=True)
class ConfigAdapter:
    """Copy the target's configuration files in and out of ``config/``."""

    name: str = "config"

    def backup(self, target: TargetInstance, output_dir: Path) -> ComponentResult:
        """Copy whichever configuration files exist."""
        return guarded(self.name, "backup", lambda: self._backup(target, output_dir))

    def _backup(self, target: TargetInstance, output_dir: Path) -> ComponentResult:
        directory = output_dir / self.name
        directory.mkdir(parents=True, exist_ok=True)
        copied: list[str] = []
        missing: list[str] = []
        for filename, source in _config_files(target).items():
            if source.is_file():
                shutil.copy2(source, directory / filename)
                copied.append(filename)
            else:
                missing.append(filename)
        return ComponentResult(
            self.name,
            Outcome.SUCCESS,
            f"Copied {len(copied)} configuration file(s).",
            {"files": copied, "missing": missing},
        )

    def restore(self, target: TargetInstance, input_dir: Path, *, dry_run: bool) -> ComponentResult:
        """Overwrite the live configuration files, or list them when *dry_run*."""
        directory = component_dir(input_dir, self.name)
        if directory is None:
            return skipped(self.name)
        present = [name for name in _config_files(target) if (directory / name).is_file()]
        if dry_run:
            message = (
                f"Configuration backup validated ({len(present)} files)."
                if present
                else "No configuration files found in backup."
            )
            return ComponentResult(self.name, Outcome.SUCCESS, message, {"files": present})
        return guarded(self.name, "restore", lambda: self._restore(target, directory, present))

    def _restore(
        self,
        target: TargetInstance,
        directory: Path,
        present: list[str],
    ) -> ComponentResult:
        destinations = _config_files(target)
        for filename in present:
            destination = destinations[filename]
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(directory / filename, destination)
        return ComponentResult(
            self.name,
            Outcome.SUCCESS,
            f"Restored {len(present)} configuration file(s).",
            {"files": present},
        )


__all__ = ["ConfigAdapter"]
