"""Capability providers for the container runtime, database and archive storage."""
from __future__ import annotations

from .blobstore import (
    BlobInfo,
    BlobStore,
    LocalBlobStore,
    S3BlobStore,
    open_destination,
    open_source,
)
from .compose import ComposeProvider, ContainerStatus
from .postgres import PostgresProvider, read_env_file

__all__ = [
    "BlobInfo",
    "BlobStore",
    "ComposeProvider",
    "ContainerStatus",
    "LocalBlobStore",
    "PostgresProvider",
    "S3BlobStore",
    "open_destination",
    "open_source",
    "read_env_file",
]
