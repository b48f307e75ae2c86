"""Tests for update snapshots."""
from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import pytest

from fakes import CURRENT_VERSIONS, FakeCompose, compose_text, make_target
from stackctl.errors import ExternalToolError, NotFoundError
from stackctl.snapshots import POST_UPDATE, PRE_UPDATE, SnapshotManager

WHEN = datetime(2025, 1, 2, 3, 4, 5, tzinfo=UTC)


def _manager(tmp_path: Path, compose: FakeCompose | None = None) -> SnapshotManager:
    return SnapshotManager(tmp_path / "backups", compose or FakeCompose())  # type: ignore[arg-type]


def test_capture_writes_expected_layout(tmp_path: Path) -> None:
    """A pre-update snapshot holds config, versions, volumes and metadata."""
    target = make_target(tmp_path)
    compose = FakeCompose(volumes={"alpha_db-config": {"a": b"1"}, "beta_db": {"b": b"2"}})
    manager = _manager(tmp_path, compose)

    snapshot = manager.capture(target, PRE_UPDATE, now=WHEN)

    expected = tmp_path / "backups" / "alpha" / "snapshots" / "20250102_030405_pre_update"
    assert snapshot.path == expected
    names = sorted(path.name for path in snapshot.path.iterdir())
    assert names == [
        ".env",
        "docker-compose.yml",
        "images.txt",
        "metadata.json",
        "versions.json",
        "volume_alpha_db-config.tar.gz",
        "volumes.tar.gz",
    ]
    assert snapshot.versions == CURRENT_VERSIONS
    metadata = json.loads((snapshot.path / "metadata.json").read_text(encoding="utf-8"))
    assert metadata["project_id"] == "alpha"
    assert metadata["type"] == PRE_UPDATE
    assert ("stop", "alpha") in compose.calls


def test_post_update_snapshot_uses_versions_directory(tmp_path: Path) -> None:
    """Post-update snapshots are labelled and live under ``versions/``."""
    target = make_target(tmp_path)

    snapshot = _manager(tmp_path).capture(target, POST_UPDATE, label="v2", now=WHEN)

    assert snapshot.path.parent.name == "versions"
    assert snapshot.path.name == "v2_20250102_030405"
    metadata = json.loads((snapshot.path / "metadata.json").read_text(encoding="utf-8"))
    assert metadata["version"] == "v2"


def test_capture_allocates_unique_directories(tmp_path: Path) -> None:
    """Two captures in the same second do not collide."""
    target = make_target(tmp_path)
    manager = _manager(tmp_path)

    first = manager.capture(target, now=WHEN)
    second = manager.capture(target, now=WHEN)

    assert first.path != second.path
    assert second.path.name == "20250102_030405_pre_update_2"


def test_capture_requires_descriptor(tmp_path: Path) -> None:
    """Targets without a compose descriptor cannot be snapshotted."""
    target = make_target(tmp_path)
    target.compose_file.unlink()

    with pytest.raises(NotFoundError):
        _manager(tmp_path).capture(target)


def test_failed_capture_leaves_no_directory(tmp_path: Path) -> None:
    """A capture that fails part-way removes its partial directory."""
    target = make_target(tmp_path)
    compose = FakeCompose()
    compose.volume_list = lambda prefix: ["alpha_data"]  # type: ignore[method-assign]
    manager = _manager(tmp_path, compose)

    with pytest.raises(ExternalToolError, match="no such volume"):
        manager.capture(target, now=WHEN)

    assert list((tmp_path / "backups" / "alpha" / "snapshots").iterdir()) == []


def test_restore_returns_target_to_snapshot(tmp_path: Path) -> None:
    """Restoring brings back descriptor, env file, bind and named volumes."""
    target = make_target(tmp_path)
    compose = FakeCompose(volumes={"alpha_db-config": {"pg.conf": b"old"}})
    manager = _manager(tmp_path, compose)
    snapshot = manager.capture(target, now=WHEN)

    target.compose_file.write_text(
        compose_text({**CURRENT_VERSIONS, "auth": "v9"}), encoding="utf-8"
    )
    target.env_file.write_text("POSTGRES_PASSWORD=other\n", encoding="utf-8")
    (target.volumes_dir / "storage" / "junk.txt").write_text("junk", encoding="utf-8")
    compose.volumes["alpha_db-config"] = {"pg.conf": b"new"}
    compose.calls.clear()

    manager.restore(target, snapshot)
    manager.restore(target, snapshot)

    assert target.compose_file.read_text(encoding="utf-8") == compose_text(CURRENT_VERSIONS)
    assert target.env_file.read_text(encoding="utf-8").startswith("POSTGRES_PASSWORD=secret")
    assert not (target.volumes_dir / "storage" / "junk.txt").exists()
    assert (target.volumes_dir / "storage" / "stub" / "bucket" / "object.txt").is_file()
    assert compose.volumes["alpha_db-config"] == {"pg.conf": b"old"}
    assert compose.commands()[0] == "down"
    assert compose.commands()[-2:] == ["pull", "up"]


def test_list_snapshots_newest_first(tmp_path: Path) -> None:
    """Listing loads every snapshot and orders them by creation time."""
    target = make_target(tmp_path)
    manager = _manager(tmp_path)
    older = manager.capture(target, now=WHEN)
    newer = manager.capture(target, POST_UPDATE, now=datetime(2025, 2, 1, tzinfo=UTC))

    listed = manager.list_snapshots("alpha")

    assert [snap.path for snap in listed] == [newer.path, older.path]
    assert listed[1].versions == CURRENT_VERSIONS

    manager.discard(older)
    assert [snap.path for snap in manager.list_snapshots("alpha")] == [newer.path]


def test_restore_missing_snapshot_raises(tmp_path: Path) -> None:
    """Restoring a deleted snapshot is an error."""
    target = make_target(tmp_path)
    manager = _manager(tmp_path)
    snapshot = manager.capture(target, now=WHEN)
    manager.discard(snapshot)

    with pytest.raises(NotFoundError):
        manager.restore(target, snapshot)
