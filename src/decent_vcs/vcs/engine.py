"""Sync engine that orchestrates every version-control operation.

The ``SyncEngine`` ties together project state, the scanner, the merge
resolver, the content store and the metadata client.  Each operation
follows the same shape:

1. Load ``.decent`` and resolve the remote branch or commit.
2. Detect local changes against a baseline HashMap.
3. Ask for confirmation (a declined prompt returns before any mutation).
4. Transfer objects.
5. Update the remote commit graph and then the local commit pointer.

Ordering guarantees: objects are uploaded before the commit that
references them is created, and downloads and deletions finish before
the local commit index moves.  A crash therefore leaves ``.decent``
pointing at either the old or the fully-synced new commit.

Errors are raised as ``DecentError`` subclasses; nothing here exits the
process or prints.  Results are returned as frozen models and formatted
by ``decent_vcs.vcs.reporter``.
"""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path
from typing import Callable

from ..config import Config
from ..core.client import ApiClient
from ..exceptions import (
    InvalidBranchNameError,
    InvalidCommitIndexError,
    PreconditionError,
    ProjectExistsError,
    ScanError,
    SyncConflictError,
)
from ..file_handler import move_into_place
from ..models import (
    Branch,
    Commit,
    CreateCommitRequest,
    HashMap,
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
from ..validators import (
    validate_branch_name,
    validate_commit_index,
    validate_project_name,
)
from .hashing import hash_file
from .ignore import IgnoreMatcher
from .merger import classify, merge_file
from .scanner import detect_changes, from_key, scan
from .state import PROJECT_FILE_NAME, ProjectState
from .storage import ContentStore

logger = logging.getLogger(__name__)

ConfirmFn = Callable[[str], bool]

DEFAULT_PUSH_MESSAGE = "No message"


def _always_yes(_prompt: str) -> bool:
    return True


def _local_hash(path: Path) -> str | None:
    """Hash *path* if it exists, ``None`` if it does not."""
    if not path.is_file():
        return None
    try:
        return hash_file(path)
    except OSError as exc:
        raise ScanError(f"Could not hash file {path}: {exc}") from exc


def _remove(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        raise ScanError(
            f"Could not delete {path}: {exc}",
            remedy="Check the file's permissions and retry.",
        ) from exc


def plan_sync(root: Path, current: Commit, target: Commit) -> SyncPlan:
    """Compute the downloads and deletions that move *root* to *target*.

    A path removed upstream is only deleted when the local copy still
    matches the old remote hash; local edits to it are preserved.
    """
    downloads: HashMap = {}
    overridden: list[str] = []
    for path, digest in sorted(target.hash_map.items()):
        previous = current.hash_map.get(path)
        if previous is None:
            downloads[path] = digest
            local = _local_hash(from_key(root, path))
            if local is not None and local != digest:
                overridden.append(path)
        elif previous != digest:
            downloads[path] = digest

    deletions: list[str] = []
    preserved: list[str] = []
    for path, digest in sorted(current.hash_map.items()):
        if path in target.hash_map:
            continue
        local = _local_hash(from_key(root, path))
        if local is None:
            continue
        if local == digest:
            deletions.append(path)
        else:
            preserved.append(path)

    return SyncPlan(
        current_index=current.index,
        target_index=target.index,
        downloads=downloads,
        overridden=overridden,
        deletions=deletions,
        preserved=preserved,
    )


def _format_paths(paths: list[str], limit: int = 20) -> str:
    lines = [f"  {p}" for p in paths[:limit]]
    if len(paths) > limit:
        lines.append(f"  ... and {len(paths) - limit} more")
    return "\n".join(lines)


class SyncEngine:
    """Run version-control operations against one working tree.

    Args:
        config: Explicit runtime configuration.
        root: Directory to operate in.  Project operations search upward
            from here for ``.decent``; ``init``/``clone`` use it as the
            default destination.  Defaults to the current directory.
        client: Metadata service client (built from *config* if omitted).
        store: Content store (built from *config* if omitted).
        confirm: Called with a prompt; returns ``True`` to proceed.
            Defaults to always proceeding.
    """

    def __init__(
        self,
        config: Config,
        root: Path | None = None,
        client: ApiClient | None = None,
        store: ContentStore | None = None,
        confirm: ConfirmFn | None = None,
    ) -> None:
        self.config = config
        self.cwd = (root or Path.cwd()).resolve()
        self.client = client or ApiClient(config)
        self.store = store or ContentStore(config, self.client)
        self.confirm = confirm or _always_yes
        self._state: ProjectState | None = None

    # ------------------------------------------------------------------
    # Project state helpers
    # ------------------------------------------------------------------

    @property
    def state(self) -> ProjectState:
        if self._state is None:
            self._state = ProjectState.discover(self.cwd)
        return self._state

    @property
    def root(self) -> Path:
        return self.state.root

    def _load(self) -> ProjectConfig:
        return self.state.load()

    def _matcher(self) -> IgnoreMatcher:
        return IgnoreMatcher.load(self.root)

    def _ask(self, prompt: str, enabled: bool = True) -> bool:
        if not enabled:
            return True
        approved = self.confirm(prompt)
        if not approved:
            logger.info("Aborted")
        return approved

    def _branch(
        self, pc: ProjectConfig, name_or_id: str | None = None
    ) -> Branch:
        return self.client.get_branch(
            pc.project_id, name_or_id or pc.branch_id, join_commit=True
        )

    def _commit_at(
        self, pc: ProjectConfig, index: int, branch_id: str | None = None
    ) -> Commit:
        """Fetch commit *index* of the current (or given) branch.

        Index 0 stands for a branch with no commits and yields an empty
        snapshot without a request.
        """
        branch_id = branch_id or pc.branch_id
        if index == 0:
            return Commit(index=0, branch_id=branch_id)
        return self.client.get_commit(pc.project_id, branch_id, index)

    @staticmethod
    def _latest(branch: Branch) -> Commit:
        return branch.commit or Commit(index=0, branch_id=branch.id)

    # ------------------------------------------------------------------
    # Project creation
    # ------------------------------------------------------------------

    def init(self, name: str, path: Path | None = None) -> ProjectConfig:
        """Create a remote project and make *path* its working tree."""
        valid, reason = validate_project_name(name)
        if not valid:
            raise PreconditionError(reason)

        dest = (path or self.cwd).resolve()
        if (dest / PROJECT_FILE_NAME).exists():
            raise ProjectExistsError(
                f"A project already exists in {dest}"
            )

        project = self.client.create_project(name)
        branch = self._default_branch(project)
        logger.info("Created project %s", project.name or name)

        state = ProjectState(dest)
        self._state = state
        return state.save(
            ProjectConfig(
                project_id=project.id or name,
                branch_id=branch.id,
                commit_index=branch.commit_index,
            )
        )

    def _default_branch(self, project: Project) -> Branch:
        # New projects come back with their default branch and initial
        # commit embedded.
        if project.branches and project.branches[0].commit is not None:
            return project.branches[0]
        return self.client.get_default_branch(project.id or project.name)

    def clone(
        self,
        project_id: str,
        path: Path | None = None,
        branch: str | None = None,
    ) -> ProjectConfig:
        """Materialize a branch (default branch if omitted) into *path*."""
        dest = (path or self.cwd).resolve()
        if (dest / PROJECT_FILE_NAME).exists():
            raise ProjectExistsError(
                f"A project already exists in {dest}"
            )

        project = self.client.get_project(project_id)
        if branch:
            remote = self.client.get_branch(project.id, branch, join_commit=True)
        else:
            remote = self.client.get_default_branch(project.id)
        commit = self._latest(remote)

        logger.info(
            "Cloning project %s (branch %s, commit #%d) into %s",
            project.name or project_id,
            remote.name,
            commit.index,
            dest,
        )

        dest.mkdir(parents=True, exist_ok=True)
        self.store.download_many(project.id, dest, commit.hash_map)

        state = ProjectState(dest)
        self._state = state
        return state.save(
            ProjectConfig(
                project_id=project.id,
                branch_id=remote.id,
                commit_index=commit.index,
            )
        )

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def push(
        self,
        message: str | None = None,
        force: bool = False,
        confirm: bool = True,
    ) -> PushResult:
        """Upload local changes and create a new commit on the branch.

        Raises:
            SyncConflictError: If the branch has moved past the local
                commit and *force* is not set.
        """
        pc = self._load()
        branch = self._branch(pc)
        remote_index = branch.commit_index

        if remote_index != pc.commit_index:
            if not force:
                raise SyncConflictError(
                    f"You are on commit #{pc.commit_index}, but branch "
                    f"\"{branch.name}\" points to commit #{remote_index}.",
                    remedy="Run `decent sync` first, or discard the remote "
                    "commits with `decent push --force`.",
                )

            logger.warning(
                "Force push will permanently delete commits #%d-#%d on "
                "branch \"%s\"",
                pc.commit_index + 1,
                remote_index,
                branch.name,
            )
            prompt = (
                f"This will permanently delete all commits ahead of your "
                f"current commit (#{pc.commit_index}) on branch "
                f"\"{branch.name}\". Continue?"
            )
            # Force pushes always ask, even with confirmation disabled.
            if not self._ask(prompt):
                return PushResult(
                    branch_name=branch.name, aborted=True, forced=True
                )

            self.client.delete_commits_after(
                pc.project_id, branch.id, pc.commit_index
            )
            self.client.delete_unused_objects(pc.project_id)
            baseline = self._commit_at(pc, pc.commit_index, branch.id)
        else:
            baseline = self._latest(branch)

        changes = detect_changes(self.root, baseline.hash_map, self._matcher())
        if changes.is_empty:
            logger.info("No changes detected")
            return PushResult(
                branch_name=branch.name, changes=changes, forced=force
            )

        if not self._ask(
            f"Push {changes.count} change(s) to branch \"{branch.name}\"?",
            enabled=confirm,
        ):
            return PushResult(
                branch_name=branch.name,
                changes=changes,
                aborted=True,
                forced=force,
            )

        to_upload = changes.upload_map()
        if to_upload:
            self.store.upload_many(pc.project_id, self.root, to_upload)

        commit = self.client.create_commit(
            pc.project_id,
            branch.id,
            CreateCommitRequest(
                message=message or DEFAULT_PUSH_MESSAGE,
                created_files=changes.created,
                modified_files=changes.modified,
                deleted_files=changes.deleted,
                hash_map=changes.hash_map,
            ),
        )
        self.state.save(ProjectConfig(commit_index=commit.index))
        logger.info("Commit #%d pushed", commit.index)

        return PushResult(
            branch_name=branch.name,
            changes=changes,
            commit_index=commit.index,
            pushed=True,
            forced=force,
        )

    # ------------------------------------------------------------------
    # Sync, reset, revert
    # ------------------------------------------------------------------

    def sync_to_commit(
        self, target_index: int | None = None, confirm: bool = True
    ) -> SyncResult:
        """Move the working tree to *target_index* (latest if ``None``)."""
        if target_index is not None:
            valid, reason = validate_commit_index(target_index)
            if not valid:
                raise InvalidCommitIndexError(reason)

        pc = self._load()
        if target_index is not None and target_index == pc.commit_index:
            logger.info("Already on commit #%d", target_index)
            return SyncResult(
                plan=SyncPlan(
                    current_index=pc.commit_index, target_index=target_index
                )
            )

        if target_index is None:
            target = self._latest(self._branch(pc))
        else:
            target = self._commit_at(pc, target_index)

        if target.index == pc.commit_index:
            logger.info("Already on commit #%d", target.index)
            return SyncResult(
                plan=SyncPlan(
                    current_index=pc.commit_index, target_index=target.index
                )
            )

        current = self._commit_at(pc, pc.commit_index)
        plan = plan_sync(self.root, current, target)
        if not self._confirm_sync(plan, confirm):
            return SyncResult(plan=plan, aborted=True)

        self._apply_sync(pc, plan)
        self.state.save(ProjectConfig(commit_index=target.index))
        return SyncResult(plan=plan, applied=True)

    def _confirm_sync(self, plan: SyncPlan, confirm: bool) -> bool:
        if plan.overridden:
            logger.warning(
                "%d local file(s) will be overridden by remote changes",
                len(plan.overridden),
            )
        if plan.preserved:
            logger.warning(
                "%d file(s) deleted upstream were edited locally and will "
                "be kept",
                len(plan.preserved),
            )
        prompt = f"Sync to commit #{plan.target_index}?"
        if plan.overridden:
            prompt = (
                "The following files will be overridden by remote changes:\n"
                f"{_format_paths(plan.overridden)}\n{prompt}"
            )
        return self._ask(prompt, enabled=confirm)

    def _apply_sync(self, pc: ProjectConfig, plan: SyncPlan) -> None:
        if plan.downloads:
            self.store.download_many(pc.project_id, self.root, plan.downloads)
        for path in plan.deletions:
            _remove(from_key(self.root, path))
        logger.info(
            "Synced to commit #%d: %d downloaded, %d deleted",
            plan.target_index,
            len(plan.downloads),
            len(plan.deletions),
        )

    def reset(self, confirm: bool = True) -> ResetResult:
        """Discard local changes, restoring the current commit's snapshot."""
        pc = self._load()
        return self._reset_to(pc, self._commit_at(pc, pc.commit_index), confirm)

    def _reset_to(
        self, pc: ProjectConfig, commit: Commit, confirm: bool
    ) -> ResetResult:
        changes = detect_changes(self.root, commit.hash_map, self._matcher())
        if changes.is_empty:
            logger.info("No local changes to reset")
            return ResetResult(commit_index=commit.index, changes=changes)

        if not self._ask(
            f"Discard {changes.count} local change(s)?", enabled=confirm
        ):
            return ResetResult(
                commit_index=commit.index, changes=changes, aborted=True
            )

        restore = {
            path: commit.hash_map[path]
            for path in [*changes.modified, *changes.deleted]
        }
        if restore:
            self.store.download_many(pc.project_id, self.root, restore)
        for path in changes.created:
            _remove(from_key(self.root, path))

        logger.info("Reset %d file(s)", changes.count)
        return ResetResult(
            commit_index=commit.index, changes=changes, applied=True
        )

    def revert(self, confirm: bool = True) -> SyncResult:
        """Reset local changes, then sync to the previous commit."""
        pc = self._load()
        target_index = pc.commit_index - 1
        valid, _reason = validate_commit_index(target_index)
        if not valid:
            raise InvalidCommitIndexError(
                f"Cannot revert commit #{pc.commit_index}: there is no "
                "earlier commit"
            )

        if not self._ask(
            f"Revert to commit #{target_index}? Local changes will be lost.",
            enabled=confirm,
        ):
            return SyncResult(
                plan=SyncPlan(
                    current_index=pc.commit_index, target_index=target_index
                ),
                aborted=True,
            )

        current = self._commit_at(pc, pc.commit_index)
        reset = self._reset_to(pc, current, confirm=False)

        target = self._commit_at(pc, target_index)
        plan = plan_sync(self.root, current, target)
        self._apply_sync(pc, plan)
        self.state.save(ProjectConfig(commit_index=target.index))
        return SyncResult(plan=plan, applied=True, reset=reset)

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def merge(
        self, branch_name: str, push: bool = False, confirm: bool = True
    ) -> MergeResult:
        """Merge another branch's latest commit into the working tree.

        Per-file failures are collected in ``MergeResult.failures`` and do
        not stop sibling files from merging; a requested push is skipped
        when anything failed.
        """
        pc = self._load()
        current = self.client.get_branch(pc.project_id, pc.branch_id)
        incoming = self._branch(pc, branch_name)
        if incoming.id == current.id:
            raise PreconditionError(
                f"Cannot merge branch \"{current.name}\" into itself"
            )

        root = self.root
        local = scan(root, self._matcher())
        plan = classify(root, local, self._latest(incoming).hash_map)
        if plan.is_empty:
            logger.warning(
                "Local changes and branch \"%s\" are equivalent, nothing "
                "to merge",
                incoming.name,
            )
            return MergeResult(branch_name=incoming.name, plan=plan)

        with tempfile.TemporaryDirectory(prefix="decent-merge-") as scratch:
            scratch_root = Path(scratch)
            self.store.download_many(pc.project_id, scratch_root, plan.combined)

            if not self._ask(
                f"Merge \"{incoming.name}\" into \"{current.name}\" "
                f"(current)?",
                enabled=confirm,
            ):
                return MergeResult(
                    branch_name=incoming.name, plan=plan, aborted=True
                )

            moved, merged, failures = self._apply_merge(
                root, scratch_root, plan
            )

        result_kwargs: dict = {
            "branch_name": incoming.name,
            "plan": plan,
            "moved": moved,
            "merged": merged,
            "failures": failures,
        }
        if failures:
            for path, reason in failures.items():
                logger.error("Failed to merge %s: %s", path, reason)
            if push:
                logger.warning("Skipping push because some files failed to merge")
            return MergeResult(**result_kwargs)

        if push:
            result_kwargs["push"] = self.push(
                message=f"Merged {incoming.name} into {current.name}",
                confirm=False,
            )
        return MergeResult(**result_kwargs)

    def _apply_merge(
        self, root: Path, scratch_root: Path, plan: MergePlan
    ) -> tuple[list[str], list[str], dict[str, str]]:
        moved: list[str] = []
        merged: list[str] = []
        failures: dict[str, str] = {}

        for path in plan.movable:
            try:
                move_into_place(
                    from_key(scratch_root, path), from_key(root, path)
                )
            except OSError as exc:
                failures[path] = str(exc)
            else:
                moved.append(path)

        for path in plan.mergeable:
            try:
                merge_file(from_key(root, path), from_key(scratch_root, path))
            except (OSError, UnicodeError, ValueError) as exc:
                failures[path] = str(exc)
            else:
                merged.append(path)

        logger.info("Moved %d file(s), merged %d", len(moved), len(merged))
        return moved, merged, failures

    # ------------------------------------------------------------------
    # Status and history
    # ------------------------------------------------------------------

    def status(self) -> StatusReport:
        pc = self._load()
        project = self.client.get_project(pc.project_id)
        branch = self.client.get_branch(pc.project_id, pc.branch_id)
        commit = self._commit_at(pc, pc.commit_index)
        changes = detect_changes(self.root, commit.hash_map, self._matcher())
        return StatusReport(
            project=project, branch=branch, commit=commit, changes=changes
        )

    def history(self, limit: int = 10) -> list[Commit]:
        """Latest commits of the project, newest first."""
        pc = self._load()
        commits = self.client.list_commits(pc.project_id, limit=limit)
        return sorted(commits, key=lambda c: c.index, reverse=True)

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def list_branches(self) -> list[Branch]:
        pc = self._load()
        return self.client.list_branches(pc.project_id)

    def current_branch_id(self) -> str:
        return self._load().branch_id

    def new_branch(self, name: str) -> Branch:
        """Create *name* at the current commit and switch to it."""
        self._check_branch_name(name)
        pc = self._load()
        branch = self.client.create_branch(
            pc.project_id, name, pc.commit_index
        )
        self.state.save(ProjectConfig(branch_id=branch.id))
        logger.info("Created branch %s at commit #%d", name, pc.commit_index)
        return branch

    def use_branch(self, name: str, confirm: bool = True) -> SyncResult:
        """Switch to branch *name*, discarding local changes.

        The branch ID and commit index are persisted together once the
        tree matches the branch's latest commit.
        """
        pc = self._load()
        branch = self._branch(pc, name)
        target = self._latest(branch)
        current = self._commit_at(pc, pc.commit_index)

        if branch.id == pc.branch_id and target.index == pc.commit_index:
            logger.info("Already on branch %s", branch.name)
            return SyncResult(
                plan=SyncPlan(
                    current_index=pc.commit_index, target_index=target.index
                )
            )

        plan = plan_sync(self.root, current, target)
        if not self._ask(
            f"Switch to branch \"{branch.name}\"? Local changes will be lost.",
            enabled=confirm,
        ):
            return SyncResult(plan=plan, aborted=True)

        reset = self._reset_to(pc, current, confirm=False)
        # Reset may have changed what is on disk.
        plan = plan_sync(self.root, current, target)
        if plan.touches_tree:
            self._apply_sync(pc, plan)

        self.state.save(
            ProjectConfig(branch_id=branch.id, commit_index=target.index)
        )
        logger.info("Switched to branch %s", branch.name)
        return SyncResult(plan=plan, applied=True, reset=reset)

    def delete_branch(self, name: str) -> None:
        pc = self._load()
        branch = self.client.get_branch(pc.project_id, name)
        if branch.id == pc.branch_id:
            raise PreconditionError(
                "Cannot delete the current branch",
                remedy="Switch with `decent branch use <name>` first.",
            )
        self.client.delete_branch(pc.project_id, branch.id)
        logger.info("Deleted branch %s", name)

    def rename_branch(self, old_name: str, new_name: str) -> Branch:
        self._check_branch_name(new_name)
        pc = self._load()
        branch = self.client.rename_branch(pc.project_id, old_name, new_name)
        logger.info("Renamed branch %s to %s", old_name, new_name)
        return branch

    def set_default_branch(self, name: str) -> Branch:
        pc = self._load()
        branch = self.client.get_branch(pc.project_id, name)
        self.client.set_default_branch(pc.project_id, branch.id)
        logger.info("Default branch set to %s", name)
        return branch

    @staticmethod
    def _check_branch_name(name: str) -> None:
        valid, reason = validate_branch_name(name)
        if not valid:
            raise InvalidBranchNameError(reason)
