"""Tests for local and S3 archive destinations."""
from __future__ import annotations

import errno
import os
from pathlib import Path

import pytest

from fakes import FakeS3Client
from stackctl.errors import NotFoundError, StackIOError
from stackctl.providers import blobstore
from stackctl.providers.blobstore import (
    LocalBlobStore,
    S3BlobStore,
    open_destination,
    open_source,
)


def test_local_store_put_list_get_delete(tmp_path: Path) -> None:
    """The local store moves archives in and copies them back out."""
    store = LocalBlobStore(tmp_path / "archives")
    source = tmp_path / "a.tar.gz"
    source.write_bytes(b"archive")

    location = store.put(source, "alpha_full_20250101_000000.stackctl.tar.gz")

    assert location == str(tmp_path / "archives" / "alpha_full_20250101_000000.stackctl.tar.gz")
    assert not source.exists()
    assert [entry.name for entry in store.list("alpha_")] == [
        "alpha_full_20250101_000000.stackctl.tar.gz"
    ]
    assert store.list("beta_") == []

    fetched = store.get("alpha_full_20250101_000000.stackctl.tar.gz", tmp_path / "copy")
    assert fetched.read_bytes() == b"archive"

    store.delete("alpha_full_20250101_000000.stackctl.tar.gz")
    assert store.list() == []


def test_local_store_missing_object(tmp_path: Path) -> None:
    """Fetching an absent archive raises NotFoundError."""
    with pytest.raises(NotFoundError):
        LocalBlobStore(tmp_path).get("missing.tar.gz", tmp_path / "x")


def test_s3_store_uses_prefix(tmp_path: Path) -> None:
    """Objects are keyed under the configured prefix and the local copy is removed."""
    client = FakeS3Client()
    store = S3BlobStore("bucket", "backups/alpha/", client=client)
    source = tmp_path / "a.tar.gz"
    source.write_bytes(b"archive")

    location = store.put(source, "a.tar.gz")

    assert location == "s3://bucket/backups/alpha/a.tar.gz"
    assert ("bucket", "backups/alpha/a.tar.gz") in client.objects
    assert not source.exists()
    assert [entry.name for entry in store.list()] == ["a.tar.gz"]
    assert store.describe() == "s3://bucket/backups/alpha"

    store.get("a.tar.gz", tmp_path / "back.tar.gz")
    assert (tmp_path / "back.tar.gz").read_bytes() == b"archive"

    store.delete("a.tar.gz")
    assert client.objects == {}


def test_s3_missing_object_is_not_found(tmp_path: Path) -> None:
    """A 404 from S3 maps to NotFoundError."""
    store = S3BlobStore("bucket", client=FakeS3Client())

    with pytest.raises(NotFoundError, match="does not exist"):
        store.get("missing.tar.gz", tmp_path / "x")


def test_open_destination_variants(tmp_path: Path) -> None:
    """Destinations resolve to the right store kind."""
    default = open_destination(None, tmp_path / "default")
    assert isinstance(default, LocalBlobStore) and default.root == tmp_path / "default"
    assert isinstance(open_destination("local", tmp_path), LocalBlobStore)

    explicit = open_destination(f"local://{tmp_path}/other", tmp_path)
    assert isinstance(explicit, LocalBlobStore) and explicit.root == tmp_path / "other"

    s3 = open_destination("s3://bucket/some/prefix", tmp_path, s3_client=FakeS3Client())
    assert isinstance(s3, S3BlobStore)
    assert s3.key_for("x") == "some/prefix/x"


def test_open_source_splits_location(tmp_path: Path) -> None:
    """Sources split into a store plus object name."""
    store, name = open_source(str(tmp_path / "dir" / "a.tar.gz"))
    assert isinstance(store, LocalBlobStore)
    assert store.root == tmp_path / "dir"
    assert name == "a.tar.gz"

    s3, key = open_source("s3://bucket/pre/fix/a.tar.gz.enc", s3_client=FakeS3Client())
    assert isinstance(s3, S3BlobStore)
    assert s3.key_for(key) == "pre/fix/a.tar.gz.enc"

    with pytest.raises(NotFoundError):
        open_source("s3://bucket/prefix/")


def _cross_device(monkeypatch: pytest.MonkeyPatch, source: Path) -> None:
    """Make renames of *source* fail as they do across filesystems."""
    real_replace = os.replace

    def replace(src: os.PathLike[str] | str, dst: os.PathLike[str] | str) -> None:
        if Path(src) == source:
            raise OSError(errno.EXDEV, "Invalid cross-device link")
        real_replace(src, dst)

    monkeypatch.setattr(blobstore.os, "replace", replace)


def test_local_store_copies_across_filesystems(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A cross-device put copies the archive and removes the source."""
    store = LocalBlobStore(tmp_path / "archives")
    source = tmp_path / "a.tar.gz"
    source.write_bytes(b"archive")
    _cross_device(monkeypatch, source)

    location = store.put(source, "alpha_full_20250101_000000.stackctl.tar.gz")

    assert Path(location).read_bytes() == b"archive"
    assert not source.exists()
    assert sorted(path.name for path in (tmp_path / "archives").iterdir()) == [
        "alpha_full_20250101_000000.stackctl.tar.gz"
    ]


def test_local_store_failed_copy_leaves_nothing(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A copy that runs out of space leaves no partial archive behind."""
    store = LocalBlobStore(tmp_path / "archives")
    source = tmp_path / "a.tar.gz"
    source.write_bytes(b"archive")
    _cross_device(monkeypatch, source)

    def short_copy(src: Path, dst: Path) -> None:
        Path(dst).write_bytes(b"arc")
        raise OSError(errno.ENOSPC, "No space left on device")

    monkeypatch.setattr(blobstore.shutil, "copy2", short_copy)

    with pytest.raises(StackIOError, match="No space left"):
        store.put(source, "alpha_full_20250101_000000.stackctl.tar.gz")

    assert list((tmp_path / "archives").iterdir()) == []
    assert store.list() == []
    assert source.read_bytes() == b"archive"
