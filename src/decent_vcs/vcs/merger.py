"""Branch merge classification and union merging.

Uses the ``merge3`` library for three-way merge regions and ``difflib``
to refine conflicting regions.

Key design choices:

* The common ancestor is always empty, so every line on either side is
  an insertion.  A plain three-way merge would report the whole file as
  one conflict.
* Conflicts are resolved the *union* way: lines both sides share are
  kept once, lines unique to either side are all kept, local first.  No
  conflict markers are ever written.
* Binary collisions are never merged; the incoming copy replaces the
  local one.
"""

from __future__ import annotations

import difflib
import logging
from pathlib import Path
from typing import Callable

from merge3 import Merge3

from ..file_handler import is_binary_file, read_file_with_encoding, write_file
from ..models import HashMap, MergePlan
from .scanner import from_key

logger = logging.getLogger(__name__)


def classify(
    root: Path,
    local: HashMap,
    incoming: HashMap,
    is_binary: Callable[[Path], bool] = is_binary_file,
) -> MergePlan:
    """Sort the incoming HashMap into movable and mergeable files.

    Args:
        root: Working tree root, used to inspect local content.
        local: HashMap of the working tree.
        incoming: HashMap of the branch being merged in.
        is_binary: Content-type check for local files.

    Returns:
        A ``MergePlan``.  Paths whose hashes already match are omitted.
    """
    movable: HashMap = {}
    mergeable: HashMap = {}
    overrides: list[str] = []

    for path, digest in sorted(incoming.items()):
        local_digest = local.get(path)
        if local_digest is None:
            movable[path] = digest
        elif local_digest != digest:
            if is_binary(from_key(root, path)):
                movable[path] = digest
                overrides.append(path)
            else:
                mergeable[path] = digest

    return MergePlan(movable=movable, mergeable=mergeable, overrides=overrides)


def _refine_conflict(local: list[str], remote: list[str]) -> list[str]:
    """Union of two conflicting line runs; shared lines appear once."""
    out: list[str] = []
    matcher = difflib.SequenceMatcher(a=local, b=remote, autojunk=False)
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            out.extend(local[i1:i2])
        else:
            out.extend(local[i1:i2])
            out.extend(remote[j1:j2])
    return out


def _join_lines(lines: list[str]) -> str:
    # A final line without newline may end up mid-file after the union.
    fixed = [
        line if line.endswith(("\n", "\r")) else line + "\n"
        for line in lines[:-1]
    ]
    if lines:
        fixed.append(lines[-1])
    return "".join(fixed)


def union_merge(
    local_content: str, remote_content: str, base_content: str = ""
) -> str:
    """Merge two texts, keeping every line unique to either side.

    Args:
        local_content: The working-tree version.
        remote_content: The incoming version.
        base_content: Common ancestor; empty unless one is known.

    Returns:
        The merged text.  Never contains conflict markers.
    """
    base = base_content.splitlines(True)
    local = local_content.splitlines(True)
    remote = remote_content.splitlines(True)

    merged: list[str] = []
    for region in Merge3(base, local, remote).merge_regions():
        kind = region[0]
        if kind == "unchanged":
            merged.extend(base[region[1] : region[2]])
        elif kind in ("a", "same"):
            merged.extend(local[region[1] : region[2]])
        elif kind == "b":
            merged.extend(remote[region[1] : region[2]])
        elif kind == "conflict":
            _z1, _z2, a1, a2, b1, b2 = region[1:]
            merged.extend(_refine_conflict(local[a1:a2], remote[b1:b2]))
        else:
            raise ValueError(f"Unknown merge region {kind!r}")

    return _join_lines(merged)


def merge_file(local_path: Path, remote_path: Path) -> int:
    """Union-merge *remote_path* into *local_path* in place.

    The local file's detected encoding is preserved.

    Returns:
        Number of bytes written.

    Raises:
        OSError: If either file cannot be read or the result written.
        UnicodeError: If the merged text cannot be re-encoded.
    """
    local_text, encoding = read_file_with_encoding(local_path)
    remote_text, _ = read_file_with_encoding(remote_path)
    merged = union_merge(local_text, remote_text)
    logger.debug("Merged %s (%s)", local_path, encoding)
    return write_file(local_path, merged, encoding=encoding)
