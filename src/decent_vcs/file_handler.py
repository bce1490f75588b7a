"""File handler module: encoding-aware read/write and binary detection.

Provides the file I/O used when merging text files and when writing
downloaded objects into the working tree.
"""

import os
import shutil
import tempfile
from pathlib import Path

from charset_normalizer import from_bytes

# Bytes sniffed when deciding whether a file is binary.
_SNIFF_SIZE = 8000

# =============================================================================
# Binary Detection
# =============================================================================


def is_binary_bytes(chunk: bytes) -> bool:
    """Return ``True`` if *chunk* does not look like text.

    A NUL byte is a definite binary marker; otherwise charset-normalizer
    must be able to find a plausible text encoding.
    """
    if not chunk:
        return False
    if b"\x00" in chunk:
        return True
    return from_bytes(chunk).best() is None


def is_binary_file(path: Path) -> bool:
    """Sniff the head of *path* and decide whether it is binary.

    Args:
        path: Path to an existing file.

    Returns:
        ``True`` for binary content, ``False`` for text (including empty files).
    """
    with open(path, "rb") as fh:
        chunk = fh.read(_SNIFF_SIZE)
    return is_binary_bytes(chunk)


# =============================================================================
# Text and atomic writes
# =============================================================================


def read_file_with_encoding(path: Path) -> tuple[str, str]:
    """Decode *path* for merging, returning ``(text, encoding)``.

    The encoding is whatever charset-normalizer settles on.  Empty or
    undetectable content is treated as UTF-8 (undecodable bytes become
    U+FFFD), and ASCII is reported as UTF-8 so a merge that introduces
    non-ASCII lines can still be written back.
    """
    raw = path.read_bytes()
    if not raw:
        return "", "utf-8"

    best = from_bytes(raw).best()
    if best is None:
        return raw.decode("utf-8", errors="replace"), "utf-8"
    encoding = "utf-8" if best.encoding == "ascii" else best.encoding
    return str(best), encoding


def _replace_atomically(dest: Path, fill) -> None:
    """Create a temp file beside *dest*, let *fill(tmp_path)* populate it,
    then swap it over *dest*.  The temp file never outlives a failure."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(dest.parent), suffix=".tmp")
    os.close(fd)
    try:
        fill(tmp_name)
        os.replace(tmp_name, dest)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def write_file(path: Path, content: str, encoding: str = "utf-8") -> int:
    """Atomically write merged text to *path*; returns the byte count."""
    data = content.encode(encoding)
    _replace_atomically(path, lambda tmp: Path(tmp).write_bytes(data))
    return len(data)


def move_into_place(source: Path, dest: Path) -> None:
    """Move a downloaded or scratch file over *dest*.

    A plain rename is used when possible; across filesystems the file is
    copied next to *dest* first so the working tree never holds a
    partially written object.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    try:
        os.replace(source, dest)
        return
    except OSError:
        pass
    _replace_atomically(dest, lambda tmp: shutil.copyfile(source, tmp))
    source.unlink()
