"""Path exclusion from the ``.decentignore`` file.

Each non-empty, non-comment line of the ignore file is a regular
expression.  A path is ignored when any pattern is found anywhere in it
(``re.search``, unanchored), matched against the project-relative path
with the platform's separators.  This is deliberately simpler than
gitignore globbing.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path

from ..exceptions import ScanError

logger = logging.getLogger(__name__)

IGNORE_FILE_NAME = ".decentignore"


def find_ignore_file(start: Path) -> Path | None:
    """Search *start* and its parents for the nearest ignore file."""
    current = start.resolve()
    for directory in (current, *current.parents):
        candidate = directory / IGNORE_FILE_NAME
        if candidate.is_file():
            return candidate
    return None


def parse_patterns(lines: list[str], source: str = "<patterns>") -> list[re.Pattern]:
    """Compile ignore lines, skipping blanks and ``#`` comments.

    Raises:
        ScanError: If a line is not a valid regular expression.
    """
    patterns: list[re.Pattern] = []
    for lineno, line in enumerate(lines, start=1):
        text = line.strip()
        if not text or text.startswith("#"):
            continue
        try:
            patterns.append(re.compile(text))
        except re.error as exc:
            raise ScanError(
                f"Invalid ignore pattern {text!r} at {source}:{lineno}: {exc}"
            ) from exc
    return patterns


class IgnoreMatcher:
    """Decide whether a project-relative path is excluded from tracking.

    Args:
        patterns: Compiled regular expressions; an empty list ignores nothing.
    """

    def __init__(self, patterns: list[re.Pattern] | None = None) -> None:
        self.patterns = list(patterns or [])

    @classmethod
    def load(cls, root: Path) -> IgnoreMatcher:
        """Build a matcher from the nearest ignore file above *root*.

        A missing ignore file is not an error and yields an empty matcher.
        """
        ignore_file = find_ignore_file(root)
        if ignore_file is None:
            return cls()

        logger.debug("Loading ignore patterns from %s", ignore_file)
        try:
            lines = ignore_file.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            raise ScanError(
                f"Could not read ignore file {ignore_file}: {exc}"
            ) from exc
        return cls(parse_patterns(lines, source=str(ignore_file)))

    def matches(self, rel_path: str) -> bool:
        """Return ``True`` if any pattern is found in *rel_path*.

        Forward slashes are converted to the platform separator first, so
        callers may pass HashMap keys directly.
        """
        native = rel_path.replace("/", os.sep)
        return any(p.search(native) for p in self.patterns)

    def __bool__(self) -> bool:
        return bool(self.patterns)

    def __len__(self) -> int:
        return len(self.patterns)
