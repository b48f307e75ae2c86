"""Backup manifest: per-file checksums plus backup metadata.

``manifest.json`` sits at the root of every backup working directory and lists
every other file with its SHA-256 checksum and size. Validation re-hashes the
extracted tree and reports every problem it finds instead of stopping at the
first one.
"""
from __future__ import annotations

import json
import logging
import socket
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from . import __version__
from .codec import compute_checksum
from .errors import StackIOError, ValidationError

LOGGER = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
MANIFEST_VERSION = "1"
TOOL_VERSION = __version__


@dataclass(frozen=True, slots=True)
class FileEntry:
    """Checksum record for one file in a backup."""

    path: str
    checksum: str
    size: int


@dataclass(slots=True)
class Manifest:
    """Metadata describing a backup archive's contents."""

    project_id: str
    backup_type: str
    created_at: str
    hostname: str
    encrypted: bool
    files: list[FileEntry] = field(default_factory=list)
    total_size: int = 0
    project_ports: dict[str, int] | None = None
    manifest_version: str = MANIFEST_VERSION
    tool_version: str = TOOL_VERSION

    def to_dict(self) -> dict[str, object]:
        """Return the JSON document stored as ``manifest.json``."""
        payload: dict[str, object] = {
            "manifest_version": self.manifest_version,
            "tool_version": self.tool_version,
            "project_id": self.project_id,
            "backup_type": self.backup_type,
            "created_at": self.created_at,
            "hostname": self.hostname,
            "encrypted": self.encrypted,
            "total_size": self.total_size,
        }
        if self.project_ports is not None:
            payload["project_ports"] = dict(self.project_ports)
        payload["files"] = [asdict(entry) for entry in self.files]
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Manifest:
        """Build a manifest from its parsed JSON document."""
        try:
            files_raw = data.get("files") or []
            if not isinstance(files_raw, list):
                raise TypeError("'files' must be a list")
            files = [
                FileEntry(
                    path=str(item["path"]),
                    checksum=str(item["checksum"]),
                    size=int(item.get("size", 0)),
                )
                for item in files_raw
            ]
            ports_raw = data.get("project_ports")
            ports = (
                {str(key): int(value) for key, value in ports_raw.items()}
                if isinstance(ports_raw, Mapping)
                else None
            )
            return cls(
                project_id=str(data["project_id"]),
                backup_type=str(data["backup_type"]),
                created_at=str(data.get("created_at", "")),
                hostname=str(data.get("hostname", "")),
                encrypted=bool(data.get("encrypted", False)),
                files=files,
                total_size=int(data.get("total_size", sum(entry.size for entry in files))),
                project_ports=ports,
                manifest_version=str(data.get("manifest_version", "")),
                tool_version=str(data.get("tool_version", "")),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise ValidationError(f"Malformed manifest: {exc}", errors=[str(exc)]) from exc


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    """A single manifest validation failure."""

    path: str
    kind: str  # missing | mismatch | manifest

    def describe(self) -> str:
        """Return a human-readable description of the issue."""
        if self.kind == "missing":
            return f"Missing file: {self.path}"
        if self.kind == "mismatch":
            return f"Checksum mismatch: {self.path}"
        return f"Manifest problem: {self.path}"


@dataclass(slots=True)
class ValidationResult:
    """Outcome of validating an extracted backup against its manifest."""

    issues: list[ValidationIssue] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    checked: int = 0
    manifest: Manifest | None = None

    @property
    def ok(self) -> bool:
        """Return ``True`` when no errors were found."""
        return not self.issues

    @property
    def errors(self) -> list[str]:
        """Return the issue descriptions."""
        return [issue.describe() for issue in self.issues]


def build_manifest(
    directory: Path,
    *,
    project_id: str,
    backup_type: str,
    encrypted: bool,
    project_ports: Mapping[str, int] | None = None,
    created_at: datetime | None = None,
) -> Manifest:
    """Hash every file below *directory* and return the resulting manifest."""
    timestamp = created_at or datetime.now(tz=UTC)
    files: list[FileEntry] = []
    for path in sorted(directory.rglob("*")):
        if not path.is_file():
            continue
        relative = path.relative_to(directory).as_posix()
        if relative == MANIFEST_NAME:
            continue
        files.append(
            FileEntry(path=relative, checksum=compute_checksum(path), size=path.stat().st_size)
        )
    return Manifest(
        project_id=project_id,
        backup_type=backup_type,
        created_at=timestamp.isoformat(timespec="seconds").replace("+00:00", "Z"),
        hostname=socket.gethostname(),
        encrypted=encrypted,
        files=files,
        total_size=sum(entry.size for entry in files),
        project_ports=dict(project_ports) if project_ports else None,
    )


def write_manifest(directory: Path, manifest: Manifest) -> Path:
    """Persist *manifest* as ``manifest.json`` inside *directory*."""
    path = directory / MANIFEST_NAME
    try:
        path.write_text(json.dumps(manifest.to_dict(), indent=2) + "\n", encoding="utf-8")
    except OSError as exc:
        raise StackIOError(f"Unable to write manifest {path}: {exc}") from exc
    return path


def read_manifest(directory: Path) -> Manifest:
    """Return the manifest stored in *directory*."""
    path = directory / MANIFEST_NAME
    if not path.is_file():
        raise ValidationError(
            f"Backup is missing {MANIFEST_NAME}.", errors=[f"Missing file: {MANIFEST_NAME}"]
        )
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ValidationError(f"Unreadable manifest: {exc}", errors=[str(exc)]) from exc
    if not isinstance(data, Mapping):
        raise ValidationError("Manifest must be a JSON object.")
    return Manifest.from_dict(data)


def validate_manifest(directory: Path) -> ValidationResult:
    """Verify every file listed in the manifest of *directory*."""
    result = ValidationResult()
    try:
        manifest = read_manifest(directory)
    except ValidationError as exc:
        result.issues.append(ValidationIssue(path=MANIFEST_NAME, kind="manifest"))
        result.warnings.extend(exc.errors)
        return result

    result.manifest = manifest
    if manifest.manifest_version != MANIFEST_VERSION:
        result.warnings.append(
            f"Manifest version {manifest.manifest_version or 'unknown'} differs from "
            f"supported version {MANIFEST_VERSION}."
        )

    for entry in manifest.files:
        result.checked += 1
        candidate = directory / entry.path
        if not candidate.is_file():
            result.issues.append(ValidationIssue(path=entry.path, kind="missing"))
            continue
        if compute_checksum(candidate) != entry.checksum:
            result.issues.append(ValidationIssue(path=entry.path, kind="mismatch"))

    if result.issues:
        LOGGER.warning(
            "Manifest validation found %d problem(s) in %s", len(result.issues), directory
        )
    return result


__all__ = [
    "MANIFEST_NAME",
    "MANIFEST_VERSION",
    "FileEntry",
    "Manifest",
    "ValidationIssue",
    "ValidationResult",
    "build_manifest",
    "read_manifest",
    "validate_manifest",
    "write_manifest",
]
