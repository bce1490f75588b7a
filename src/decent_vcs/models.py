"""Pydantic models for the sync engine.

Defines the data contracts shared by the client, content store and
engine:

- Remote records: ``Project``, ``Branch``, ``Commit``.
- One request model per remote call (``CreateCommitRequest``,
  ``PresignRequest``, ...), so no request body is an ad hoc dict.
- Local state: ``ProjectConfig`` (the ``.decent`` file).
- Computed values: ``FileChangeSet``, ``SyncPlan``, ``MergePlan``.
- Operation results: ``PushResult``, ``SyncResult``, ``ResetResult``,
  ``MergeResult``, ``StatusReport``.

All models are frozen (immutable).  HashMaps are plain ``dict[str, str]``
keyed by project-relative, forward-slash paths.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

HashMap = dict[str, str]

_REMOTE_CONFIG = {"frozen": True, "populate_by_name": True}


# ---------------------------------------------------------------------------
# Remote records
# ---------------------------------------------------------------------------


class Commit(BaseModel):
    """Immutable, indexed snapshot of a branch.

    Attributes:
        id: Server-side identifier.
        index: 1-based position on its branch.
        hash_map: Full snapshot (path -> content hash), not a delta.
        created_files: Paths first introduced by this commit.
        modified_files: Paths whose content changed in this commit.
        deleted_files: Paths removed by this commit.
    """

    id: str = Field(default="", alias="_id")
    index: int = 0
    message: str = ""
    project_id: str = ""
    branch_id: str = ""
    created_files: list[str] = []
    modified_files: list[str] = []
    deleted_files: list[str] = []
    hash_map: HashMap = {}
    author_id: str = ""
    created_at: datetime | None = None

    model_config = _REMOTE_CONFIG


class Branch(BaseModel):
    """Named pointer to the latest commit in a line of history.

    ``commit`` is only populated when the branch was fetched with its
    latest commit joined in.
    """

    id: str = Field(default="", alias="_id")
    name: str = ""
    project_id: str = ""
    commit_id: str = ""
    commit: Commit | None = None
    locks: dict[str, str] = {}
    created_at: datetime | None = None

    model_config = _REMOTE_CONFIG

    @property
    def commit_index(self) -> int:
        """Index of the joined commit, or 0 for an empty branch."""
        return self.commit.index if self.commit else 0


class Project(BaseModel):
    id: str = Field(default="", alias="_id")
    name: str = ""
    team_id: str = ""
    default_branch_id: str = ""
    branches: list[Branch] = []
    created_at: datetime | None = None

    model_config = _REMOTE_CONFIG


# ---------------------------------------------------------------------------
# Request and response bodies
# ---------------------------------------------------------------------------


class CreateProjectRequest(BaseModel):
    name: str

    model_config = {"frozen": True}


class UpdateProjectRequest(BaseModel):
    default_branch_id: str

    model_config = {"frozen": True}


class CreateBranchRequest(BaseModel):
    name: str
    commit_index: int

    model_config = {"frozen": True}


class RenameBranchRequest(BaseModel):
    name: str

    model_config = {"frozen": True}


class CreateCommitRequest(BaseModel):
    """Body of ``POST .../branches/{branch}/commit``."""

    message: str
    created_files: list[str]
    modified_files: list[str]
    deleted_files: list[str]
    hash_map: HashMap

    model_config = {"frozen": True}


class PresignRequest(BaseModel):
    """Presign one object key for a single GET or PUT.

    For multipart uploads ``size`` decides how many part URLs are issued.
    """

    method: Literal["GET", "PUT"]
    key: str
    content_type: str = "application/octet-stream"
    multipart: bool = False
    size: int = 0

    model_config = {"frozen": True}


class PresignResponse(BaseModel):
    """Presigned URLs for one object.

    Attributes:
        key: Object key (the content hash).
        urls: One URL, or one per part for multipart uploads.
        upload_id: Multipart upload ID (empty for single uploads).
        exists: True when a PUT was requested for an object that is
            already stored; the upload can be skipped.
    """

    key: str = ""
    urls: list[str] = []
    upload_id: str = ""
    exists: bool = False

    model_config = {"frozen": True}


class MultipartPart(BaseModel):
    part_number: int
    etag: str

    model_config = {"frozen": True}


class CompleteMultipartRequest(BaseModel):
    upload_id: str
    key: str
    parts: list[MultipartPart]

    model_config = {"frozen": True}


class AbortMultipartRequest(BaseModel):
    upload_id: str
    key: str

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Local project state
# ---------------------------------------------------------------------------


class ProjectConfig(BaseModel):
    """Contents of the ``.decent`` project file.

    Serialized with the short keys ``project``, ``branch`` and ``commit``.
    A ``None`` commit index means "not set" in an update; records read
    from or written to disk always carry an index (0 for an empty branch).
    """

    project_id: str = Field(default="", alias="project")
    branch_id: str = Field(default="", alias="branch")
    commit_index: int | None = Field(default=None, alias="commit")

    model_config = {"frozen": True, "populate_by_name": True}


# ---------------------------------------------------------------------------
# Computed values
# ---------------------------------------------------------------------------


class FileChangeSet(BaseModel):
    """Local changes relative to a baseline HashMap.

    Attributes:
        created: Paths present locally but absent from the baseline.
        modified: Paths present in both with different hashes.
        deleted: Paths present in the baseline but absent locally.
        hash_map: The freshly computed local HashMap.
    """

    created: list[str] = []
    modified: list[str] = []
    deleted: list[str] = []
    hash_map: HashMap = {}

    model_config = {"frozen": True}

    @property
    def is_empty(self) -> bool:
        return not (self.created or self.modified or self.deleted)

    @property
    def count(self) -> int:
        return len(self.created) + len(self.modified) + len(self.deleted)

    def upload_map(self) -> HashMap:
        """HashMap restricted to created and modified paths."""
        return {
            path: self.hash_map[path]
            for path in [*self.created, *self.modified]
        }


class SyncPlan(BaseModel):
    """What syncing from one commit to another will do to the tree.

    Attributes:
        current_index: Commit the working tree is on.
        target_index: Commit being synced to.
        downloads: Paths (and hashes) to fetch from storage.
        overridden: Downloads that will replace an untracked local file.
        deletions: Paths removed upstream whose local copy is unmodified.
        preserved: Paths removed upstream that were edited locally and
            are therefore kept.
    """

    current_index: int
    target_index: int
    downloads: HashMap = {}
    overridden: list[str] = []
    deletions: list[str] = []
    preserved: list[str] = []

    model_config = {"frozen": True}

    @property
    def is_noop(self) -> bool:
        return self.current_index == self.target_index

    @property
    def touches_tree(self) -> bool:
        return bool(self.downloads or self.deletions)


class MergePlan(BaseModel):
    """Classification of an incoming HashMap against the local tree.

    Attributes:
        movable: Incoming files to materialize as-is (no local copy, or a
            binary collision).
        mergeable: Text collisions to combine with a union merge.
        overrides: Binary collisions (subset of ``movable``) that replace
            the local copy wholesale.
    """

    movable: HashMap = {}
    mergeable: HashMap = {}
    overrides: list[str] = []

    model_config = {"frozen": True}

    @property
    def combined(self) -> HashMap:
        return {**self.movable, **self.mergeable}

    @property
    def is_empty(self) -> bool:
        return not self.movable and not self.mergeable


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


class PushResult(BaseModel):
    branch_name: str
    changes: FileChangeSet | None = None
    commit_index: int | None = None
    pushed: bool = False
    aborted: bool = False
    forced: bool = False

    model_config = {"frozen": True}


class ResetResult(BaseModel):
    commit_index: int
    changes: FileChangeSet
    applied: bool = False
    aborted: bool = False

    model_config = {"frozen": True}


class SyncResult(BaseModel):
    """Outcome of a sync, branch switch or revert.

    ``reset`` is set when local changes were discarded first.
    """

    plan: SyncPlan
    applied: bool = False
    aborted: bool = False
    reset: ResetResult | None = None

    model_config = {"frozen": True}


class MergeResult(BaseModel):
    """Outcome of merging a branch into the working tree.

    ``failures`` maps a path to the reason its merge failed; sibling
    paths are still merged.
    """

    branch_name: str
    plan: MergePlan
    moved: list[str] = []
    merged: list[str] = []
    failures: dict[str, str] = {}
    aborted: bool = False
    push: PushResult | None = None

    model_config = {"frozen": True}

    @property
    def ok(self) -> bool:
        return not self.failures


class StatusReport(BaseModel):
    project: Project
    branch: Branch
    commit: Commit
    changes: FileChangeSet

    model_config = {"frozen": True}
