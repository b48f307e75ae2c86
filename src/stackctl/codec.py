"""Checksums and password-based file encryption for backup archives.

Encrypted files use this layout::

    b"STKENC2\\n" | iterations (4 bytes, big endian) | salt (16 bytes) | frames

Each frame is a 4 byte length followed by a Fernet token whose plaintext is a
64-bit frame index, a last-frame flag and up to 4 MiB of data. The key is
derived with PBKDF2-HMAC-SHA256. Fernet authenticates every frame and the
index and flag pin their order and count, so a wrong password, a tampered
file and a truncated file all fail the same way.
"""
from __future__ import annotations

import base64
import hashlib
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import CryptoError, StackIOError

LOGGER = logging.getLogger(__name__)

MAGIC = b"STKENC2\n"
SALT_SIZE = 16
DEFAULT_ITERATIONS = 100_000
ENCRYPTED_SUFFIX = ".enc"
_CHUNK_SIZE = 1024 * 1024
FRAME_SIZE = 4 * 1024 * 1024
_MORE_FRAMES = b"\x00"
_LAST_FRAME = b"\x01"
_CORRUPT = "Decryption failed: wrong password or corrupted input."


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    try:
        with path.open("rb") as handle:
            for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
                digest.update(chunk)
    except OSError as exc:
        raise StackIOError(f"Unable to read {path} for checksum: {exc}") from exc
    return digest.hexdigest()


def derive_key(password: str, salt: bytes, iterations: int = DEFAULT_ITERATIONS) -> bytes:
    """Derive a urlsafe base64 Fernet key from *password* and *salt*."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return base64.urlsafe_b64encode(kdf.derive(password.encode("utf-8")))


def is_encrypted_name(path: Path | str) -> bool:
    """Return ``True`` when *path* carries the encrypted archive suffix."""
    return str(path).endswith(ENCRYPTED_SUFFIX)


def encrypt_file(
    source: Path,
    destination: Path,
    password: str,
    *,
    iterations: int = DEFAULT_ITERATIONS,
) -> Path:
    """Encrypt *source* into *destination* using *password*.

    The file is processed in :data:`FRAME_SIZE` chunks, so memory use does not
    grow with the archive size.
    """
    if not password:
        raise CryptoError("A password is required to encrypt a backup.")
    salt = os.urandom(SALT_SIZE)
    try:
        fernet = Fernet(derive_key(password, salt, iterations))
    except (ValueError, TypeError) as exc:
        raise CryptoError(f"Encryption failed: {exc}") from exc

    try:
        with source.open("rb") as reader:
            with _cleanup_on_error(destination) as writer:
                writer.write(MAGIC + iterations.to_bytes(4, "big") + salt)
                index = 0
                chunk = reader.read(FRAME_SIZE)
                while True:
                    following = reader.read(FRAME_SIZE)
                    flag = _LAST_FRAME if not following else _MORE_FRAMES
                    token = fernet.encrypt(index.to_bytes(8, "big") + flag + chunk)
                    writer.write(len(token).to_bytes(4, "big") + token)
                    if not following:
                        break
                    chunk = following
                    index += 1
    except OSError as exc:
        raise StackIOError(f"Unable to encrypt {source} into {destination}: {exc}") from exc
    LOGGER.info("Encrypted %s -> %s", source.name, destination.name)
    return destination


def decrypt_file(source: Path, destination: Path, password: str) -> Path:
    """Decrypt *source* into *destination*; any mismatch raises :class:`CryptoError`."""
    if not password:
        raise CryptoError("This backup is encrypted; a password is required.")
    try:
        with source.open("rb") as reader:
            header = reader.read(len(MAGIC) + 4 + SALT_SIZE)
            if len(header) < len(MAGIC) + 4 + SALT_SIZE or not header.startswith(MAGIC):
                raise CryptoError(_CORRUPT)
            offset = len(MAGIC)
            iterations = int.from_bytes(header[offset : offset + 4], "big")
            if iterations <= 0:
                raise CryptoError(_CORRUPT)
            fernet = Fernet(derive_key(password, header[offset + 4 :], iterations))
            with _cleanup_on_error(destination) as writer:
                _decrypt_frames(fernet, reader, writer)
    except OSError as exc:
        raise StackIOError(f"Unable to decrypt {source} into {destination}: {exc}") from exc
    return destination


def _decrypt_frames(fernet: Fernet, reader: BinaryIO, writer: BinaryIO) -> None:
    expected = 0
    while True:
        size_bytes = reader.read(4)
        if len(size_bytes) < 4:
            # Ran out of frames before the one flagged as last.
            raise CryptoError(_CORRUPT)
        token = reader.read(int.from_bytes(size_bytes, "big"))
        try:
            frame = fernet.decrypt(token)
        except InvalidToken as exc:
            raise CryptoError(_CORRUPT) from exc
        if len(frame) < 9 or int.from_bytes(frame[:8], "big") != expected:
            raise CryptoError(_CORRUPT)
        writer.write(frame[9:])
        if frame[8:9] == _LAST_FRAME:
            if reader.read(1):
                raise CryptoError(_CORRUPT)
            return
        expected += 1


@contextmanager
def _cleanup_on_error(destination: Path) -> Iterator[BinaryIO]:
    destination.parent.mkdir(parents=True, exist_ok=True)
    try:
        with destination.open("wb") as writer:
            yield writer
    except BaseException:
        destination.unlink(missing_ok=True)
        raise


__all__ = [
    "DEFAULT_ITERATIONS",
    "ENCRYPTED_SUFFIX",
    "compute_checksum",
    "decrypt_file",
    "derive_key",
    "encrypt_file",
    "is_encrypted_name",
]
