"""Restore pipeline: fetch, decrypt, extract, validate, then apply or dry-run."""
from __future__ import annotations

import logging
import shutil
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .archive import extract_archive
from .codec import ENCRYPTED_SUFFIX, decrypt_file, is_encrypted_name
from .components import ComponentAdapter, ComponentResult, adapters_for, restore_order
from .errors import CryptoError, ValidationError
from .manifest import Manifest, ValidationResult, validate_manifest
from .providers.blobstore import open_source
from .providers.compose import ComposeProvider
from .state import TargetInstance

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class InspectionResult:
    """Manifest and integrity status of an archive."""

    name: str
    encrypted: bool
    archive_size: int
    validation: ValidationResult

    @property
    def manifest(self) -> Manifest | None:
        """Return the parsed manifest, when readable."""
        return self.validation.manifest

    @property
    def ok(self) -> bool:
        """Return ``True`` when every listed file is present and intact."""
        return self.validation.ok

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "encrypted": self.encrypted,
            "archive_size": self.archive_size,
            "valid": self.ok,
            "checked": self.validation.checked,
            "errors": self.validation.errors,
            "warnings": list(self.validation.warnings),
            "manifest": self.manifest.to_dict() if self.manifest else None,
        }


@dataclass(slots=True)
class RestoreResult:
    """Outcome of a restore or restore dry-run."""

    backup_type: str
    manifest: Manifest
    dry_run: bool
    results: list[ComponentResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """Return ``True`` when no component failed."""
        return all(result.ok for result in self.results)

    @property
    def failures(self) -> list[ComponentResult]:
        """Return the failed component results."""
        return [result for result in self.results if not result.ok]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "type": self.backup_type,
            "dry_run": self.dry_run,
            "ok": self.ok,
            "manifest": self.manifest.to_dict(),
            "components": [result.to_dict() for result in self.results],
            "warnings": list(self.warnings),
        }


class RestorePipeline:
    """Apply a backup archive to a target."""

    def __init__(
        self,
        compose: ComposeProvider,
        adapters: dict[str, ComponentAdapter],
        *,
        temp_dir: Path | None = None,
        db_service: str = "db",
        db_settle_seconds: float = 10.0,
        s3_client: Any | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Store collaborators and scratch settings."""
        self.compose = compose
        self.adapters = adapters
        self.temp_dir = temp_dir
        self.db_service = db_service
        self.db_settle_seconds = db_settle_seconds
        self.s3_client = s3_client
        self._sleep = sleep

    @contextmanager
    def _prepared(
        self, source: str, password: str | None
    ) -> Iterator[tuple[Path, InspectionResult]]:
        store, name = open_source(source, s3_client=self.s3_client)
        encrypted = is_encrypted_name(name)
        if encrypted and not password:
            raise CryptoError("This backup is encrypted; a password is required.")
        if self.temp_dir is not None:
            self.temp_dir.mkdir(parents=True, exist_ok=True)
        scratch = Path(
            tempfile.mkdtemp(
                prefix="stackctl-restore-",
                dir=str(self.temp_dir) if self.temp_dir else None,
            )
        )
        try:
            fetched = store.get(name, scratch / name)
            size = fetched.stat().st_size
            archive = fetched
            if encrypted:
                assert password is not None
                archive = decrypt_file(
                    fetched, scratch / name[: -len(ENCRYPTED_SUFFIX)], password
                )
                fetched.unlink()
            extracted = extract_archive(archive, scratch / "extracted")
            archive.unlink()
            validation = validate_manifest(extracted)
            yield extracted, InspectionResult(
                name=name, encrypted=encrypted, archive_size=size, validation=validation
            )
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    def inspect(self, source: str, *, password: str | None = None) -> InspectionResult:
        """Fetch, decrypt, extract and validate *source* without restoring it."""
        with self._prepared(source, password) as (_, inspection):
            return inspection

    def run(
        self,
        target: TargetInstance,
        source: str,
        *,
        dry_run: bool = False,
        password: str | None = None,
    ) -> RestoreResult:
        """Restore *source* into *target*; with *dry_run* nothing on the target changes."""
        with self._prepared(source, password) as (extracted, inspection):
            validation = inspection.validation
            if not validation.ok or validation.manifest is None:
                raise ValidationError(
                    f"Backup {inspection.name} failed validation.", errors=validation.errors
                )
            manifest = validation.manifest
            adapters = restore_order(adapters_for(manifest.backup_type, self.adapters))
            result = RestoreResult(
                backup_type=manifest.backup_type,
                manifest=manifest,
                dry_run=dry_run,
                warnings=list(validation.warnings),
            )
            if manifest.project_id != target.id:
                result.warnings.append(
                    f"Backup was taken from '{manifest.project_id}', restoring into '{target.id}'."
                )
            if dry_run:
                for adapter in adapters:
                    result.results.append(adapter.restore(target, extracted, dry_run=True))
            else:
                self._apply(target, extracted, adapters, result)
        for item in result.results:
            LOGGER.info("%s: %s (%s)", item.component, item.outcome.value, item.message)
        return result

    def _apply(
        self,
        target: TargetInstance,
        extracted: Path,
        adapters: list[ComponentAdapter],
        result: RestoreResult,
    ) -> None:
        LOGGER.info("Stopping %s for restore", target.id)
        self.compose.down(target, remove_orphans=False)
        try:
            for adapter in adapters:
                if adapter.name == "database":
                    self.compose.up(target, [self.db_service])
                    if self.db_settle_seconds > 0:
                        self._sleep(self.db_settle_seconds)
                result.results.append(adapter.restore(target, extracted, dry_run=False))
        finally:
            self.compose.up(target)


__all__ = ["InspectionResult", "RestorePipeline", "RestoreResult"]
