"""Working-tree scanning and change detection.

``scan`` walks the project directory and hashes every tracked file into
a HashMap; ``detect_changes`` diffs that HashMap against a baseline
(usually the current commit's snapshot) and classifies each path.

Paths are always project-relative with forward slashes.  Project files
(``.decent``) and paths matched by the ignore file are invisible here.
Any failure aborts the whole scan; a partial HashMap is never returned.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from ..exceptions import ScanError
from ..models import FileChangeSet, HashMap
from .hashing import hash_file
from .ignore import IgnoreMatcher
from .state import PROJECT_FILE_NAME

logger = logging.getLogger(__name__)


def to_key(root: Path, path: Path) -> str:
    """Convert an absolute path under *root* to a HashMap key."""
    return path.relative_to(root).as_posix()


def from_key(root: Path, key: str) -> Path:
    """Convert a HashMap key back to an absolute path under *root*."""
    return root.joinpath(*key.split("/"))


def _walk_error(exc: OSError) -> None:
    raise ScanError(f"Could not read directory {exc.filename}: {exc}") from exc


def iter_files(root: Path, matcher: IgnoreMatcher | None = None):
    """Yield ``(key, absolute_path)`` for every tracked file under *root*.

    Raises:
        ScanError: On unreadable directories and on symlinks that are not
            ignored.
    """
    matcher = matcher or IgnoreMatcher()
    for dirpath, dirnames, filenames in os.walk(
        root, onerror=_walk_error, followlinks=False
    ):
        base = Path(dirpath)
        dirnames.sort()
        for name in list(dirnames):
            full = base / name
            if full.is_symlink():
                key = to_key(root, full)
                if matcher.matches(key):
                    dirnames.remove(name)
                    continue
                raise ScanError(f"Symbolic links are not supported: {key}")

        for name in sorted(filenames):
            if name == PROJECT_FILE_NAME:
                continue
            full = base / name
            key = to_key(root, full)
            if matcher.matches(key):
                continue
            if full.is_symlink():
                raise ScanError(f"Symbolic links are not supported: {key}")
            yield key, full


def scan(root: Path, matcher: IgnoreMatcher | None = None) -> HashMap:
    """Hash every tracked file under *root*.

    Args:
        root: Project root directory.
        matcher: Ignore matcher; defaults to the one loaded for *root*.

    Returns:
        HashMap of project-relative path to XXH64 hex digest.

    Raises:
        ScanError: If any file cannot be hashed.
    """
    if matcher is None:
        matcher = IgnoreMatcher.load(root)

    hash_map: HashMap = {}
    for key, full in iter_files(root, matcher):
        try:
            hash_map[key] = hash_file(full)
        except OSError as exc:
            raise ScanError(f"Could not hash file {key}: {exc}") from exc

    logger.debug("Scanned %d file(s) under %s", len(hash_map), root)
    return hash_map


def diff_hash_maps(baseline: HashMap, current: HashMap) -> FileChangeSet:
    """Classify every path of *current* and *baseline*.

    Created: only in *current*.  Modified: in both with different hashes.
    Deleted: only in *baseline*.  Lists are sorted for stable output.
    """
    created: list[str] = []
    modified: list[str] = []
    for path, digest in current.items():
        old = baseline.get(path)
        if old is None:
            created.append(path)
        elif old != digest:
            modified.append(path)

    deleted = [path for path in baseline if path not in current]

    return FileChangeSet(
        created=sorted(created),
        modified=sorted(modified),
        deleted=sorted(deleted),
        hash_map=dict(current),
    )


def detect_changes(
    root: Path,
    baseline: HashMap,
    matcher: IgnoreMatcher | None = None,
) -> FileChangeSet:
    """Scan *root* and diff the result against *baseline*.

    Baseline entries for paths that are now ignored are not reported as
    deleted; ignored paths are invisible to change detection.
    """
    if matcher is None:
        matcher = IgnoreMatcher.load(root)

    current = scan(root, matcher)
    visible = {
        path: digest
        for path, digest in baseline.items()
        if not matcher.matches(path)
    }
    return diff_hash_maps(visible, current)
