"""Zstandard compression for stored objects.

Objects are compressed on upload when enabled.  Downloads check for the
zstd frame magic number instead of trusting configuration, so objects
uploaded uncompressed stay readable.  Content that itself starts with the
magic number is always compressed so it survives that check unchanged.
"""

from pathlib import Path

import zstandard

ZSTD_MAGIC = bytes.fromhex("28b52ffd")


def compress_file(source: Path, dest: Path, level: int = 3) -> int:
    """Compress *source* into *dest* as a single zstd frame.

    Returns:
        Size of the compressed file in bytes.
    """
    compressor = zstandard.ZstdCompressor(level=level)
    with open(source, "rb") as src, open(dest, "wb") as dst:
        compressor.copy_stream(src, dst, size=source.stat().st_size)
    return dest.stat().st_size


def decompress_file(source: Path, dest: Path) -> int:
    """Decompress zstd *source* into *dest*.

    Returns:
        Size of the decompressed file in bytes.

    Raises:
        zstandard.ZstdError: If *source* is not valid zstd data.
    """
    decompressor = zstandard.ZstdDecompressor()
    with open(source, "rb") as src, open(dest, "wb") as dst:
        decompressor.copy_stream(src, dst)
    return dest.stat().st_size


def is_compressed(path: Path) -> bool:
    """Return ``True`` if *path* starts with the zstd magic number."""
    with open(path, "rb") as fh:
        return fh.read(len(ZSTD_MAGIC)) == ZSTD_MAGIC


def compress_bytes(data: bytes, level: int = 3) -> bytes:
    return zstandard.ZstdCompressor(level=level).compress(data)


def decompress_bytes(data: bytes) -> bytes:
    # Streaming reader copes with frames that omit the content size.
    decompressor = zstandard.ZstdDecompressor()
    with decompressor.stream_reader(data) as reader:
        return reader.read()
