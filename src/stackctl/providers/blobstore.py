"""Archive destinations: a local directory or an S3 bucket prefix.

Destinations are written as ``local``, ``local:///path``, a plain filesystem
path, or ``s3://bucket/prefix``. Both stores expose the same four verbs so the
backup and restore pipelines never branch on the destination kind.
"""
from __future__ import annotations

import errno
import logging
import os
import shutil
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import NotFoundError, StackIOError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BlobInfo:
    """An object stored at a destination."""

    name: str
    size: int
    modified: datetime | None = None


class BlobStore(Protocol):
    """Capability interface for archive destinations."""

    def put(self, source: Path, name: str) -> str:
        """Store *source* under *name* and return its location."""

    def get(self, name: str, destination: Path) -> Path:
        """Fetch *name* into *destination*."""

    def list(self, prefix: str = "") -> list[BlobInfo]:
        """Return stored objects whose name starts with *prefix*."""

    def delete(self, name: str) -> None:
        """Remove *name*."""

    def describe(self) -> str:
        """Return a human-readable location."""


@dataclass(slots=True)
class LocalBlobStore:
    """Store archives in a directory on the local filesystem."""

    root: Path

    def put(self, source: Path, name: str) -> str:
        """Move *source* into the store and return its final path.

        Across filesystems the copy lands in a hidden ``.part`` file first, so a
        failed write never leaves a truncated archive under *name*.
        """
        destination = self.root / name
        partial = self.root / f".{name}.part"
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            try:
                os.replace(source, destination)
            except OSError as exc:
                if exc.errno != errno.EXDEV:
                    raise
                shutil.copy2(source, partial)
                os.replace(partial, destination)
                source.unlink()
        except OSError as exc:
            partial.unlink(missing_ok=True)
            raise StackIOError(f"Failed to store {name} in {self.root}: {exc}") from exc
        return str(destination)

    def get(self, name: str, destination: Path) -> Path:
        """Copy *name* into *destination*."""
        source = self.root / name
        if not source.is_file():
            raise NotFoundError(f"Archive {source} does not exist.")
        try:
            shutil.copy2(source, destination)
        except OSError as exc:
            raise StackIOError(f"Failed to copy {source}: {exc}") from exc
        return destination

    def list(self, prefix: str = "") -> list[BlobInfo]:
        """Return archives in the directory whose name starts with *prefix*."""
        if not self.root.is_dir():
            return []
        entries: list[BlobInfo] = []
        for path in sorted(self.root.iterdir()):
            hidden = path.name.startswith(".")
            if hidden or not path.is_file() or not path.name.startswith(prefix):
                continue
            stat = path.stat()
            entries.append(
                BlobInfo(
                    name=path.name,
                    size=stat.st_size,
                    modified=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
                )
            )
        return entries

    def delete(self, name: str) -> None:
        """Delete *name* if present."""
        try:
            (self.root / name).unlink(missing_ok=True)
        except OSError as exc:
            raise StackIOError(f"Failed to delete {name}: {exc}") from exc

    def describe(self) -> str:
        """Return the directory path."""
        return str(self.root)


class S3BlobStore:
    """Store archives under an S3 bucket prefix."""

    def __init__(self, bucket: str, prefix: str = "", *, client: Any | None = None) -> None:
        """Bind the store to *bucket*/*prefix*; *client* defaults to a boto3 S3 client."""
        if not bucket:
            raise StackIOError("S3 destinations require a bucket name.")
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self._client = client

    @property
    def client(self) -> Any:
        """Return the (lazily created) boto3 client."""
        if self._client is None:
            self._client = boto3.client("s3")
        return self._client

    def key_for(self, name: str) -> str:
        """Return the object key for *name*."""
        return f"{self.prefix}/{name}" if self.prefix else name

    def put(self, source: Path, name: str) -> str:
        """Upload *source* and remove the local copy."""
        key = self.key_for(name)
        try:
            self.client.upload_file(str(source), self.bucket, key)
        except (BotoCoreError, ClientError) as exc:
            raise StackIOError(f"Failed to upload {name} to s3://{self.bucket}: {exc}") from exc
        source.unlink(missing_ok=True)
        LOGGER.info("Uploaded %s to s3://%s/%s", name, self.bucket, key)
        return f"s3://{self.bucket}/{key}"

    def get(self, name: str, destination: Path) -> Path:
        """Download *name* to *destination*."""
        key = self.key_for(name)
        try:
            self.client.download_file(self.bucket, key, str(destination))
        except ClientError as exc:
            destination.unlink(missing_ok=True)
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in {"404", "NoSuchKey", "NotFound"}:
                raise NotFoundError(f"s3://{self.bucket}/{key} does not exist.") from exc
            raise StackIOError(f"Failed to download s3://{self.bucket}/{key}: {exc}") from exc
        except BotoCoreError as exc:
            destination.unlink(missing_ok=True)
            raise StackIOError(f"Failed to download s3://{self.bucket}/{key}: {exc}") from exc
        return destination

    def list(self, prefix: str = "") -> list[BlobInfo]:
        """Return objects under the store prefix whose name starts with *prefix*."""
        entries: list[BlobInfo] = []
        base = f"{self.prefix}/" if self.prefix else ""
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=base + prefix):
                for item in page.get("Contents", []):
                    name = str(item["Key"])[len(base) :]
                    if not name or "/" in name:
                        continue
                    entries.append(
                        BlobInfo(
                            name=name,
                            size=int(item.get("Size", 0)),
                            modified=item.get("LastModified"),
                        )
                    )
        except (BotoCoreError, ClientError) as exc:
            raise StackIOError(f"Failed to list s3://{self.bucket}/{base}: {exc}") from exc
        return sorted(entries, key=lambda entry: entry.name)

    def delete(self, name: str) -> None:
        """Delete *name* from the bucket."""
        try:
            self.client.delete_object(Bucket=self.bucket, Key=self.key_for(name))
        except (BotoCoreError, ClientError) as exc:
            raise StackIOError(f"Failed to delete s3://{self.bucket}/{name}: {exc}") from exc

    def describe(self) -> str:
        """Return the ``s3://`` URL of the store."""
        return f"s3://{self.bucket}/{self.prefix}".rstrip("/")


def _parse_s3_url(url: str) -> tuple[str, str]:
    remainder = url[len("s3://") :]
    bucket, _, key = remainder.partition("/")
    return bucket, key


def open_destination(
    destination: str | None,
    default_root: Path,
    *,
    s3_client: Any | None = None,
) -> BlobStore:
    """Return the store named by *destination* (``None`` means the local default)."""
    if destination is None or destination in {"", "local"}:
        return LocalBlobStore(default_root)
    if destination.startswith("s3://"):
        bucket, prefix = _parse_s3_url(destination)
        return S3BlobStore(bucket, prefix, client=s3_client)
    if destination.startswith("local://"):
        return LocalBlobStore(Path(destination[len("local://") :]).expanduser())
    return LocalBlobStore(Path(destination).expanduser())


def open_source(source: str, *, s3_client: Any | None = None) -> tuple[BlobStore, str]:
    """Split an archive location into its store and object name."""
    if source.startswith("s3://"):
        bucket, key = _parse_s3_url(source)
        prefix, _, name = key.rpartition("/")
        if not name:
            raise NotFoundError(f"{source} does not name an archive.")
        return S3BlobStore(bucket, prefix, client=s3_client), name
    path = Path(source).expanduser()
    return LocalBlobStore(path.parent), path.name


__all__ = [
    "BlobInfo",
    "BlobStore",
    "LocalBlobStore",
    "S3BlobStore",
    "open_destination",
    "open_source",
]
