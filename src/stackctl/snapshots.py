"""Point-in-time copies of a target used for update rollback.

Snapshots live under the backup root::

    <root>/<target>/snapshots/<YYYYMMDD_HHMMSS>_pre_update/
    <root>/<target>/versions/<label>_<YYYYMMDD_HHMMSS>/

Each directory holds the compose descriptor, its environment file,
``versions.json``, ``volumes.tar.gz`` for the bind-mounted volume root, one
``volume_<name>.tar.gz`` per named volume, ``images.txt`` and
``metadata.json``.
"""
from __future__ import annotations

import json
import logging
import shutil
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from .archive import create_archive, extract_archive
from .errors import ExternalToolError, NotFoundError, StackIOError
from .providers.compose import ComposeProvider
from .state import TargetInstance
from .versions import ServiceVersionMap, read_compose_versions

LOGGER = logging.getLogger(__name__)

PRE_UPDATE = "pre_update"
POST_UPDATE = "post_update"
SNAPSHOT_KINDS = (PRE_UPDATE, POST_UPDATE)

BIND_ARCHIVE = "volumes.tar.gz"
VOLUME_PREFIX = "volume_"
VOLUME_SUFFIX = ".tar.gz"
METADATA_FILE = "metadata.json"
VERSIONS_FILE = "versions.json"
IMAGES_FILE = "images.txt"


def _timestamp(now: datetime) -> str:
    return now.strftime("%Y%m%d_%H%M%S")


@dataclass(slots=True)
class Snapshot:
    """A captured snapshot directory."""

    path: Path
    target_id: str
    kind: str
    created_at: str
    versions: ServiceVersionMap = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "path": str(self.path),
            "target_id": self.target_id,
            "kind": self.kind,
            "created_at": self.created_at,
            "versions": dict(self.versions),
        }


class SnapshotManager:
    """Capture, restore, list and discard snapshots for targets."""

    def __init__(self, root: Path, compose: ComposeProvider) -> None:
        """Store the backup root and the container runtime capability."""
        self.root = Path(root).expanduser()
        self.compose = compose

    def target_root(self, target_id: str) -> Path:
        """Return the per-target directory under the backup root."""
        return self.root / target_id

    def _parent_for(self, target_id: str, kind: str) -> Path:
        sub = "snapshots" if kind == PRE_UPDATE else "versions"
        return self.target_root(target_id) / sub

    def _allocate(self, parent: Path, name: str) -> Path:
        parent.mkdir(parents=True, exist_ok=True)
        candidate = parent / name
        suffix = 1
        while True:
            try:
                candidate.mkdir()
                return candidate
            except FileExistsError:
                suffix += 1
                candidate = parent / f"{name}_{suffix}"

    def capture(
        self,
        target: TargetInstance,
        kind: str = PRE_UPDATE,
        *,
        label: str | None = None,
        now: datetime | None = None,
    ) -> Snapshot:
        """Capture *target* into a new snapshot directory.

        The target's services are stopped for a consistent volume copy and are
        left stopped; restarting is the caller's decision.
        """
        if kind not in SNAPSHOT_KINDS:
            raise ValueError(f"Unknown snapshot kind: {kind}")
        if not target.compose_file.is_file():
            raise NotFoundError(f"Compose descriptor not found for '{target.id}'.")
        moment = now or datetime.now(tz=UTC)
        stamp = _timestamp(moment)
        name = f"{stamp}_{PRE_UPDATE}" if kind == PRE_UPDATE else f"{label or 'update'}_{stamp}"
        path = self._allocate(self._parent_for(target.id, kind), name)
        LOGGER.info("Capturing %s snapshot of %s at %s", kind, target.id, path)

        try:
            shutil.copy2(target.compose_file, path / target.compose_file.name)
            if target.env_file.is_file():
                shutil.copy2(target.env_file, path / target.env_file.name)
            versions = read_compose_versions(target.compose_file)
            (path / VERSIONS_FILE).write_text(json.dumps(versions, indent=2), encoding="utf-8")

            self.compose.stop(target)

            if target.volumes_dir.is_dir():
                create_archive(target.volumes_dir, path / BIND_ARCHIVE)
            for volume in self.compose.volume_list(f"{target.id}_"):
                self.compose.volume_export(volume, path, f"{VOLUME_PREFIX}{volume}{VOLUME_SUFFIX}")

            try:
                images = self.compose.config_images(target)
            except ExternalToolError as exc:
                LOGGER.warning("Could not record images for %s: %s", target.id, exc)
                images = []
            (path / IMAGES_FILE).write_text("\n".join(images) + "\n", encoding="utf-8")

            snapshot = Snapshot(
                path=path,
                target_id=target.id,
                kind=kind,
                created_at=moment.isoformat(timespec="seconds"),
                versions=versions,
            )
            metadata = {
                "project_id": target.id,
                "timestamp": stamp,
                "type": kind,
                "created_at": snapshot.created_at,
            }
            if label:
                metadata["version"] = label
            (path / METADATA_FILE).write_text(json.dumps(metadata, indent=2), encoding="utf-8")
        except OSError as exc:
            shutil.rmtree(path, ignore_errors=True)
            raise StackIOError(f"Failed to capture snapshot for '{target.id}': {exc}") from exc
        except Exception:
            shutil.rmtree(path, ignore_errors=True)
            raise
        return snapshot

    def restore(self, target: TargetInstance, snapshot: Snapshot) -> None:
        """Return *target* to the state recorded in *snapshot* and start it.

        Restoring the same snapshot twice yields the same state.
        """
        path = snapshot.path
        if not path.is_dir():
            raise NotFoundError(f"Snapshot not found at {path}.")
        LOGGER.info("Restoring %s from snapshot %s", target.id, path)

        self.compose.down(target, remove_orphans=True)

        compose_copy = path / target.compose_file.name
        if compose_copy.is_file():
            shutil.copy2(compose_copy, target.compose_file)
        env_copy = path / target.env_file.name
        if env_copy.is_file():
            shutil.copy2(env_copy, target.env_file)

        bind_archive = path / BIND_ARCHIVE
        if bind_archive.is_file():
            staging = target.volumes_dir.with_name(f".{target.volumes_dir.name}.rollback")
            shutil.rmtree(staging, ignore_errors=True)
            extract_archive(bind_archive, staging)
            if target.volumes_dir.exists():
                shutil.rmtree(target.volumes_dir)
            staging.rename(target.volumes_dir)

        for archive_path in sorted(path.glob(f"{VOLUME_PREFIX}*{VOLUME_SUFFIX}")):
            volume = archive_path.name[len(VOLUME_PREFIX) : -len(VOLUME_SUFFIX)]
            self.compose.replace_volume(volume, path, archive_path.name)

        self.compose.pull(target)
        self.compose.up(target)

    def discard(self, snapshot: Snapshot) -> None:
        """Delete *snapshot* from disk."""
        shutil.rmtree(snapshot.path, ignore_errors=True)

    def load(self, path: Path) -> Snapshot:
        """Rebuild a :class:`Snapshot` from its directory."""
        metadata_path = path / METADATA_FILE
        if not metadata_path.is_file():
            raise NotFoundError(f"Snapshot metadata missing at {path}.")
        try:
            metadata = json.loads(metadata_path.read_text(encoding="utf-8"))
            versions_path = path / VERSIONS_FILE
            versions = (
                json.loads(versions_path.read_text(encoding="utf-8"))
                if versions_path.is_file()
                else {}
            )
        except (OSError, json.JSONDecodeError) as exc:
            raise StackIOError(f"Unreadable snapshot at {path}: {exc}") from exc
        return Snapshot(
            path=path,
            target_id=str(metadata.get("project_id", "")),
            kind=str(metadata.get("type", "")),
            created_at=str(metadata.get("created_at", "")),
            versions={str(key): str(value) for key, value in dict(versions).items()},
        )

    def list_snapshots(self, target_id: str) -> list[Snapshot]:
        """Return every snapshot of *target_id*, newest first."""
        snapshots: list[Snapshot] = []
        for kind in SNAPSHOT_KINDS:
            parent = self._parent_for(target_id, kind)
            if not parent.is_dir():
                continue
            for path in parent.iterdir():
                if path.is_dir() and (path / METADATA_FILE).is_file():
                    snapshots.append(self.load(path))
        return sorted(snapshots, key=lambda snap: snap.created_at, reverse=True)


__all__ = ["POST_UPDATE", "PRE_UPDATE", "Snapshot", "SnapshotManager"]
