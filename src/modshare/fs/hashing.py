"""
Content hashing for mod packages and installed mod folders.

Digests are SHA-1 (160-bit), rendered as uppercase hex, matching the digests
the relay uses as content addresses. Directory digests are computed over a
sorted manifest of `<relative path>|<size>|<file digest>` lines so that the
result does not depend on file system enumeration order or timestamps.
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
from typing import BinaryIO, Optional

from ..cancellation import CancellationToken, check_cancelled


# Hash algorithm to use
HASH_ALGORITHM = "sha1"

# Length of the digest prefix used for disambiguated folder names
DIGEST_PREFIX_LENGTH = 8

# Buffer size for streaming hash computation
BUFFER_SIZE = 1024 * 1024  # 1 MB


def normalize_digest(digest: Optional[str]) -> str:
    """Canonical form for comparisons and cache keys: stripped, uppercase."""
    return (digest or "").strip().upper()


def compute_file_hash(
    file_path: Path | str,
    *,
    cancel: Optional[CancellationToken] = None,
) -> str:
    """
    Compute the SHA-1 digest of a file's raw bytes.

    Args:
        file_path: Path to the file.
        cancel: Optional token checked between chunks.

    Returns:
        Uppercase hexadecimal digest string.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        OperationCancelled: If `cancel` is set while reading.
    """
    path = Path(file_path)
    hasher = hashlib.new(HASH_ALGORITHM)

    with open(path, "rb") as f:
        _update_hash_from_stream(hasher, f, cancel)

    return hasher.hexdigest().upper()


def compute_bytes_hash(data: bytes) -> str:
    """Compute the SHA-1 digest of in-memory bytes (uppercase hex)."""
    return hashlib.new(HASH_ALGORITHM, data).hexdigest().upper()


def _update_hash_from_stream(hasher, stream: BinaryIO, cancel: Optional[CancellationToken]) -> None:
    """Update a hash object from a stream in chunks."""
    while True:
        check_cancelled(cancel)
        chunk = stream.read(BUFFER_SIZE)
        if not chunk:
            break
        hasher.update(chunk)


def list_tree_files(root: Path) -> list[tuple[str, Path]]:
    """
    List every regular file under `root` as (relative posix path, absolute path),
    sorted by ordinal value of the relative path.
    """
    files: list[tuple[str, Path]] = []
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            full = Path(dirpath) / name
            if not full.is_file():
                continue
            rel = full.relative_to(root).as_posix()
            files.append((rel, full))
    files.sort(key=lambda item: item[0])
    return files


def compute_directory_hash(
    root: Path | str,
    *,
    cancel: Optional[CancellationToken] = None,
) -> str:
    """
    Compute an order-independent digest for a directory tree.

    Each file contributes the line `<rel path>|<byte length>|<file digest>\\n`
    in ordinal path order to a single running SHA-1.

    Raises:
        NotADirectoryError: If `root` is not a directory.
        OperationCancelled: If `cancel` is set between files or chunks.
    """
    root_path = Path(root)
    if not root_path.is_dir():
        raise NotADirectoryError(str(root_path))

    hasher = hashlib.new(HASH_ALGORITHM)
    for rel, full in list_tree_files(root_path):
        check_cancelled(cancel)
        try:
            length = full.stat().st_size
        except OSError:
            length = 0
        file_digest = compute_file_hash(full, cancel=cancel)
        hasher.update(f"{rel}|{length}|{file_digest}\n".encode("utf-8"))

    return hasher.hexdigest().upper()


def digest_prefix(digest: str, length: int = DIGEST_PREFIX_LENGTH) -> str:
    """
    First `length` characters of a digest.

    Raises:
        ValueError: If the digest is shorter than `length`.
    """
    if len(digest) < length:
        raise ValueError(f"Digest must be at least {length} characters, got {len(digest)}")
    return digest[:length]


class StreamHasher:
    """
    A write-through hasher that computes the digest while data is written.

    Usage:
        hasher = StreamHasher()
        with open('package.pmp.part', 'wb') as f:
            for chunk in response_chunks:
                f.write(chunk)
                hasher.update(chunk)
        digest = hasher.hexdigest()
    """

    def __init__(self):
        self._hasher = hashlib.new(HASH_ALGORITHM)
        self._size = 0

    def update(self, data: bytes) -> None:
        self._hasher.update(data)
        self._size += len(data)

    def hexdigest(self) -> str:
        return self._hasher.hexdigest().upper()

    @property
    def size(self) -> int:
        """Total number of bytes hashed so far."""
        return self._size
