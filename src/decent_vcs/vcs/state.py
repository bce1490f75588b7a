"""Local project state persistence.

The ``.decent`` file at the root of a working tree records which project,
branch and commit the tree is on.  It is small YAML so users can inspect
it, and it is rewritten atomically on every update.

Key design choices:

* **Upward search** -- commands run from any subdirectory find the
  nearest ``.decent`` above them, and that directory is the project root.
* **Merge on save** -- only non-empty new values replace stored ones, so
  updating the commit index never loses the branch ID.
* **Atomic writes** -- temp file plus ``os.replace()``.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

import yaml
from pydantic import ValidationError

from ..exceptions import InternalError, NotAProjectError
from ..models import ProjectConfig

logger = logging.getLogger(__name__)

PROJECT_FILE_NAME = ".decent"


def find_project_root(start: Path) -> Path | None:
    """Return the nearest directory at or above *start* holding ``.decent``."""
    current = start.resolve()
    for directory in (current, *current.parents):
        if (directory / PROJECT_FILE_NAME).is_file():
            return directory
    return None


def merge_project_configs(
    existing: ProjectConfig, new: ProjectConfig
) -> ProjectConfig:
    """Overlay the set fields of *new* on *existing*.

    Empty IDs and a ``None`` commit index count as unset; commit index 0
    (an empty branch) is a real value.
    """
    return ProjectConfig(
        project_id=new.project_id or existing.project_id,
        branch_id=new.branch_id or existing.branch_id,
        commit_index=(
            new.commit_index
            if new.commit_index is not None
            else existing.commit_index
        ),
    )


def _with_index(config: ProjectConfig) -> ProjectConfig:
    if config.commit_index is None:
        return config.model_copy(update={"commit_index": 0})
    return config


class ProjectState:
    """Read and write the ``.decent`` file of one working tree.

    Args:
        root: Project root directory (the directory containing ``.decent``).
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    @classmethod
    def discover(cls, start: Path | None = None) -> ProjectState:
        """Locate the project containing *start* (default: CWD).

        Raises:
            NotAProjectError: If no ``.decent`` file exists above *start*.
        """
        root = find_project_root(start or Path.cwd())
        if root is None:
            raise NotAProjectError()
        return cls(root)

    @property
    def path(self) -> Path:
        return self.root / PROJECT_FILE_NAME

    def exists(self) -> bool:
        return self.path.is_file()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> ProjectConfig:
        """Read the project file.

        Raises:
            NotAProjectError: If the file is missing.
            InternalError: If the file is not a valid project record.
        """
        if not self.exists():
            raise NotAProjectError()

        with open(self.path, encoding="utf-8") as fh:
            try:
                data = yaml.safe_load(fh)
            except yaml.YAMLError as exc:
                logger.debug("Malformed project file %s: %s", self.path, exc)
                raise InternalError(str(exc)) from exc

        try:
            config = ProjectConfig.model_validate(data or {})
        except ValidationError as exc:
            logger.debug("Invalid project file %s: %s", self.path, exc)
            raise InternalError(str(exc)) from exc
        return _with_index(config)

    def save(self, config: ProjectConfig) -> ProjectConfig:
        """Merge *config* into the stored record and write it atomically.

        Returns:
            The merged record that was written.
        """
        if self.exists():
            config = merge_project_configs(self.load(), config)
        config = _with_index(config)

        self.root.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.root), prefix=".decent-", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                yaml.safe_dump(
                    config.model_dump(by_alias=True),
                    fh,
                    default_flow_style=False,
                    sort_keys=False,
                )
            os.replace(tmp_path, self.path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

        logger.debug(
            "Saved project state: branch=%s commit=%d",
            config.branch_id,
            config.commit_index,
        )
        return config
