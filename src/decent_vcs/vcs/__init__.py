"""Client-side version-control engine.

Keeps a local working tree consistent with a remote commit history whose
file contents live in a content-addressed object store.

Modules:

- ``engine``      -- ``SyncEngine``: push, sync, reset, revert, merge, branches.
- ``scanner``     -- tree walking and change detection.
- ``ignore``      -- ``.decentignore`` regex matching.
- ``hashing``     -- XXH64 content hashes.
- ``storage``     -- ``ContentStore``: batched, parallel object transfer.
- ``compression`` -- zstd object compression.
- ``merger``      -- merge classification and union merge via ``merge3``.
- ``state``       -- ``ProjectState``: the ``.decent`` file.
- ``reporter``    -- human-readable result formatting.

The Pydantic data contracts live in ``decent_vcs.models`` and are
re-exported here.
"""

from ..models import (
    Branch,
    Commit,
    FileChangeSet,
    MergePlan,
    MergeResult,
    Project,
    ProjectConfig,
    PushResult,
    ResetResult,
    StatusReport,
    SyncPlan,
    SyncResult,
)
from .engine import SyncEngine
from .ignore import IgnoreMatcher
from .scanner import detect_changes, scan
from .state import ProjectState
from .storage import ContentStore

__all__ = [
    "Branch",
    "Commit",
    "ContentStore",
    "FileChangeSet",
    "IgnoreMatcher",
    "MergePlan",
    "MergeResult",
    "Project",
    "ProjectConfig",
    "ProjectState",
    "PushResult",
    "ResetResult",
    "StatusReport",
    "SyncEngine",
    "SyncPlan",
    "SyncResult",
    "detect_changes",
    "scan",
]
