"""Backup pipeline: component capture, manifest, archive, encryption, storage.

Archives are named ``<target>_<type>_<YYYYMMDD_HHMMSS>.stackctl.tar.gz`` with
an extra ``.enc`` suffix when encrypted, and are stored locally under
``<backups.root>/<target>/backups`` unless another destination is given.
"""
from __future__ import annotations

import logging
import re
import shutil
import tempfile
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .archive import ARCHIVE_EXTENSION, create_archive
from .codec import DEFAULT_ITERATIONS, ENCRYPTED_SUFFIX, compute_checksum, encrypt_file
from .components import DATABASE_TYPES, ComponentAdapter, ComponentResult, adapters_for
from .errors import CryptoError, ExternalToolError, PolicyError
from .manifest import build_manifest, write_manifest
from .providers.blobstore import BlobInfo, BlobStore, open_destination
from .providers.compose import ComposeProvider
from .state import TargetInstance

LOGGER = logging.getLogger(__name__)

ARCHIVE_SUFFIX = f".stackctl.{ARCHIVE_EXTENSION}"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

_TIMESTAMP_RE = re.compile(r"_(?P<stamp>\d{8}_\d{6})\.stackctl\.tar\.gz(?:\.enc)?$")


def build_archive_name(target_id: str, backup_type: str, when: datetime) -> str:
    """Return the archive filename for a backup taken at *when*."""
    return f"{target_id}_{backup_type}_{when.strftime(TIMESTAMP_FORMAT)}{ARCHIVE_SUFFIX}"


def filename_timestamp(name: str) -> datetime | None:
    """Return the timestamp encoded in an archive *name*, or ``None``."""
    match = _TIMESTAMP_RE.search(name)
    if match is None:
        return None
    try:
        return datetime.strptime(match.group("stamp"), TIMESTAMP_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        return None


def is_archive_for(name: str, target_id: str, backup_type: str | None = None) -> bool:
    """Return ``True`` when *name* is an archive of *target_id* (and *backup_type*)."""
    if filename_timestamp(name) is None:
        return False
    stem = _TIMESTAMP_RE.sub("", name)
    if backup_type is not None:
        return stem == f"{target_id}_{backup_type}"
    prefix, _, kind = stem.rpartition("_")
    return prefix == target_id and bool(kind)


def default_archive_root(backups_root: Path, target_id: str) -> Path:
    """Return the local archive directory for *target_id*."""
    return Path(backups_root).expanduser() / target_id / "backups"


def _newest_first(entries: list[BlobInfo]) -> list[BlobInfo]:
    epoch = datetime.min.replace(tzinfo=UTC)
    return sorted(
        entries,
        key=lambda entry: (filename_timestamp(entry.name) or epoch, entry.name),
        reverse=True,
    )


def list_archives(
    store: BlobStore,
    target_id: str,
    backup_type: str | None = None,
) -> list[BlobInfo]:
    """Return the archives of *target_id* held by *store*, newest first."""
    entries = [
        entry
        for entry in store.list(f"{target_id}_")
        if is_archive_for(entry.name, target_id, backup_type)
    ]
    return _newest_first(entries)


def apply_retention(
    store: BlobStore,
    target_id: str,
    backup_type: str,
    retention: int | None,
) -> list[str]:
    """Keep the newest *retention* archives of one target and type; return deleted names.

    ``None`` and ``0`` keep every archive.
    """
    if retention is None or retention == 0:
        return []
    if retention < 0:
        raise PolicyError(f"Retention must be zero or greater (got {retention}).")
    removed: list[str] = []
    for entry in list_archives(store, target_id, backup_type)[retention:]:
        store.delete(entry.name)
        removed.append(entry.name)
        LOGGER.info("Retention removed %s from %s", entry.name, store.describe())
    return removed


@dataclass(slots=True)
class BackupArchive:
    """A stored backup archive."""

    name: str
    location: str
    target_id: str
    backup_type: str
    created_at: str
    encrypted: bool
    size_bytes: int
    checksum: str
    errors: list[str] = field(default_factory=list)
    components: list[ComponentResult] = field(default_factory=list)
    pruned: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """Return ``True`` when every component succeeded."""
        return not self.errors

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "location": self.location,
            "target": self.target_id,
            "type": self.backup_type,
            "created_at": self.created_at,
            "encrypted": self.encrypted,
            "size_bytes": self.size_bytes,
            "checksum": self.checksum,
            "errors": list(self.errors),
            "components": [result.to_dict() for result in self.components],
            "pruned": list(self.pruned),
        }


class BackupPipeline:
    """Produce one archive for one target."""

    def __init__(
        self,
        compose: ComposeProvider,
        adapters: dict[str, ComponentAdapter],
        *,
        backups_root: Path,
        temp_dir: Path | None = None,
        db_service: str = "db",
        iterations: int = DEFAULT_ITERATIONS,
        s3_client: Any | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Store collaborators and storage settings."""
        self.compose = compose
        self.adapters = adapters
        self.backups_root = Path(backups_root).expanduser()
        self.temp_dir = temp_dir
        self.db_service = db_service
        self.iterations = iterations
        self.s3_client = s3_client
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    def open_store(self, target_id: str, destination: str | None) -> BlobStore:
        """Return the blob store for *destination* (local default per target)."""
        return open_destination(
            destination,
            default_archive_root(self.backups_root, target_id),
            s3_client=self.s3_client,
        )

    def run(
        self,
        target: TargetInstance,
        backup_type: str = "full",
        *,
        destination: str | None = None,
        encrypt: bool = False,
        password: str | None = None,
        retention: int | None = None,
    ) -> BackupArchive:
        """Back up *target* and return the stored archive."""
        adapters = adapters_for(backup_type, self.adapters)
        if retention is not None and retention < 0:
            raise PolicyError(f"Retention must be zero or greater (got {retention}).")
        if encrypt and not password:
            raise CryptoError("Encryption requires a password.")
        store = self.open_store(target.id, destination)

        if self.temp_dir is not None:
            self.temp_dir.mkdir(parents=True, exist_ok=True)
        scratch = Path(
            tempfile.mkdtemp(
                prefix=f"stackctl-backup-{target.id}-",
                dir=str(self.temp_dir) if self.temp_dir else None,
            )
        )
        try:
            return self._run(
                target,
                backup_type,
                adapters,
                scratch,
                store=store,
                encrypt=encrypt,
                password=password,
                retention=retention,
            )
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    def _is_running(self, target: TargetInstance) -> bool:
        try:
            return self.compose.is_running(target)
        except ExternalToolError as exc:
            # Treated as stopped; the database adapter reports its own failure.
            LOGGER.warning("Could not query containers of %s: %s", target.id, exc)
            return False

    def _run(
        self,
        target: TargetInstance,
        backup_type: str,
        adapters: list[ComponentAdapter],
        scratch: Path,
        *,
        store: BlobStore,
        encrypt: bool,
        password: str | None,
        retention: int | None,
    ) -> BackupArchive:
        moment = self._clock()
        work_dir = scratch / "backup"
        work_dir.mkdir()

        restart_all = False
        results: list[ComponentResult] = []
        try:
            if backup_type in DATABASE_TYPES and self._is_running(target):
                # Cycle the database service so the dump starts from a quiesced state.
                LOGGER.info("Cycling %s service of %s before dump", self.db_service, target.id)
                restart_all = True
                self.compose.stop(target, [self.db_service])
                self.compose.start(target, [self.db_service])
            for adapter in adapters:
                result = adapter.backup(target, work_dir)
                LOGGER.info("%s: %s (%s)", adapter.name, result.outcome.value, result.message)
                results.append(result)
        finally:
            if restart_all:
                self.compose.up(target)
        errors = [f"{result.component}: {result.message}" for result in results if not result.ok]
        if errors:
            LOGGER.error("Backup of %s completed with %d error(s)", target.id, len(errors))

        manifest = build_manifest(
            work_dir,
            project_id=target.id,
            backup_type=backup_type,
            encrypted=encrypt,
            project_ports=target.ports,
            created_at=moment,
        )
        write_manifest(work_dir, manifest)

        name = build_archive_name(target.id, backup_type, moment)
        final_path = create_archive(work_dir, scratch / name)
        if encrypt:
            assert password is not None
            encrypted_path = scratch / (name + ENCRYPTED_SUFFIX)
            encrypt_file(final_path, encrypted_path, password, iterations=self.iterations)
            final_path.unlink()
            final_path = encrypted_path
            name = encrypted_path.name

        size = final_path.stat().st_size
        checksum = compute_checksum(final_path)
        location = store.put(final_path, name)
        LOGGER.info("Stored backup %s (%d bytes) at %s", name, size, location)

        pruned = apply_retention(store, target.id, backup_type, retention)
        return BackupArchive(
            name=name,
            location=location,
            target_id=target.id,
            backup_type=backup_type,
            created_at=manifest.created_at,
            encrypted=encrypt,
            size_bytes=size,
            checksum=checksum,
            errors=errors,
            components=results,
            pruned=pruned,
        )


__all__ = [
    "ARCHIVE_SUFFIX",
    "BackupArchive",
    "BackupPipeline",
    "apply_retention",
    "build_archive_name",
    "default_archive_root",
    "filename_timestamp",
    "is_archive_for",
    "list_archives",
]
