"""Gzip tar helpers shared by snapshots, component adapters and backups."""
from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path

from .errors import NotFoundError, StackIOError

ARCHIVE_EXTENSION = "tar.gz"


def _tar_bin() -> str:
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise StackIOError("The 'tar' command is required to handle archives.")
    return tar_bin


def _run_tar(args: list[str], failure: str) -> str:
    result = subprocess.run(  # noqa: S603 - controlled command execution
        [_tar_bin(), *args],
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "tar command failed"
        raise StackIOError(f"{failure}: {message}")
    return result.stdout


def create_archive(source_dir: Path, archive_path: Path) -> Path:
    """Pack the *contents* of *source_dir* into a gzip tar at *archive_path*."""
    if not source_dir.is_dir():
        raise NotFoundError(f"Archive source {source_dir} does not exist.")
    archive_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        _run_tar(
            ["-czf", str(archive_path), "-C", str(source_dir), "."],
            f"Failed to create archive {archive_path.name}",
        )
    except StackIOError:
        archive_path.unlink(missing_ok=True)
        raise
    try:
        os.chmod(archive_path, 0o640)
    except OSError:
        pass
    return archive_path


def extract_archive(archive_path: Path, destination: Path) -> Path:
    """Extract *archive_path* into *destination* (created when missing)."""
    if not archive_path.is_file():
        raise NotFoundError(f"Archive {archive_path} does not exist.")
    destination.mkdir(parents=True, exist_ok=True)
    _run_tar(
        ["-xzf", str(archive_path), "-C", str(destination)],
        f"Failed to extract archive {archive_path.name}",
    )
    return destination


def list_members(archive_path: Path) -> list[str]:
    """Return the member names of *archive_path*; unreadable archives raise."""
    if not archive_path.is_file():
        raise NotFoundError(f"Archive {archive_path} does not exist.")
    output = _run_tar(
        ["-tzf", str(archive_path)],
        f"Archive {archive_path.name} is not readable",
    )
    return [line for line in output.splitlines() if line.strip()]


__all__ = ["ARCHIVE_EXTENSION", "create_archive", "extract_archive", "list_members"]
