"""Tests for the gzip tar helpers."""
from __future__ import annotations

from pathlib import Path

import pytest

from stackctl.archive import create_archive, extract_archive, list_members
from stackctl.errors import NotFoundError, StackIOError


def test_archive_preserves_tree(tmp_path: Path) -> None:
    """Extracting an archive reproduces the source directory contents."""
    source = tmp_path / "src"
    (source / "nested").mkdir(parents=True)
    (source / "a.txt").write_text("alpha", encoding="utf-8")
    (source / "nested" / "b.txt").write_text("beta", encoding="utf-8")

    archive = create_archive(source, tmp_path / "out" / "tree.tar.gz")
    members = list_members(archive)
    restored = extract_archive(archive, tmp_path / "restored")

    assert any(member.endswith("nested/b.txt") for member in members)
    assert (restored / "a.txt").read_text(encoding="utf-8") == "alpha"
    assert (restored / "nested" / "b.txt").read_text(encoding="utf-8") == "beta"


def test_missing_source_raises(tmp_path: Path) -> None:
    """Archiving a missing directory raises NotFoundError."""
    with pytest.raises(NotFoundError):
        create_archive(tmp_path / "missing", tmp_path / "x.tar.gz")


def test_corrupt_archive_is_unreadable(tmp_path: Path) -> None:
    """Garbage input surfaces as a StackIOError."""
    bogus = tmp_path / "bogus.tar.gz"
    bogus.write_bytes(b"definitely not gzip")

    with pytest.raises(StackIOError):
        list_members(bogus)
    with pytest.raises(StackIOError):
        extract_archive(bogus, tmp_path / "dest")
