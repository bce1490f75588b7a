"""Content hashing with XXH64.

The hash identifies file content for change detection and is the object
key in storage; it is not a security primitive.
"""

from pathlib import Path

import xxhash

_CHUNK_SIZE = 1024 * 1024


def hash_bytes(data: bytes) -> str:
    """Return the lower-case hex XXH64 digest of *data*."""
    return xxhash.xxh64(data).hexdigest()


def hash_file(path: Path) -> str:
    """Stream *path* through XXH64 and return the hex digest.

    Raises:
        OSError: If the file cannot be opened or a read fails mid-stream.
    """
    hasher = xxhash.xxh64()
    with open(path, "rb") as fh:
        while chunk := fh.read(_CHUNK_SIZE):
            hasher.update(chunk)
    return hasher.hexdigest()
