"""Tests for the SyncEngine operations.

Covers:
- push: conflict rejection, force push, ignore rules, confirmation
- sync_to_commit: no-op, forward/backward sync, preserved local edits,
  overridden files
- reset and revert
- merge: move/override/union merge, push after merge, per-file failures
- branch management, init, clone, status and history
"""

from __future__ import annotations

from pathlib import Path

import pytest

from decent_vcs.exceptions import (
    InvalidBranchNameError,
    InvalidCommitIndexError,
    NotAProjectError,
    NotFoundError,
    PreconditionError,
    ProjectExistsError,
    ScanError,
    SyncConflictError,
)
from decent_vcs.vcs.engine import plan_sync
from decent_vcs.vcs.state import ProjectState

from conftest import MAIN_ID, PROJECT_ID, read_tree, snapshot, write_tree

FEATURE_ID = "branch-feature"


def _state(root):
    return ProjectState(root).load()


# ---------------------------------------------------------------------------
# push
# ---------------------------------------------------------------------------


class TestPush:
    def test_push_rejected_when_branch_moved(self, remote, workdir, make_engine):
        """A stale local commit refuses to push and mutates nothing."""
        remote.commit({"a.txt": "one"})
        remote.commit({"a.txt": "two"})
        remote.checkout(workdir, {"a.txt": "local"}, index=1)
        before = (workdir / ".decent").read_bytes()

        with pytest.raises(SyncConflictError) as excinfo:
            make_engine().push(message="stale")

        assert "decent sync" in str(excinfo.value)
        assert remote.store.uploads == []
        assert remote.client.method_calls("create_commit") == []
        assert len(remote.client.commits[MAIN_ID]) == 2
        assert (workdir / ".decent").read_bytes() == before

    def test_push_creates_commit(self, remote, workdir, make_engine, prompter):
        remote.commit({"a.txt": "a", "b.txt": "b"})
        remote.checkout(workdir, {"a.txt": "a2", "c.txt": "c"}, index=1)

        result = make_engine().push(message="Update a")

        assert result.pushed
        assert result.commit_index == 2
        assert result.changes.created == ["c.txt"]
        assert result.changes.modified == ["a.txt"]
        assert result.changes.deleted == ["b.txt"]
        assert len(prompter.prompts) == 1
        assert "3 change(s)" in prompter.prompts[0]

        # Deleted paths are never uploaded.
        assert remote.store.uploads == [snapshot({"a.txt": "a2", "c.txt": "c"})]
        latest = remote.client.commits[MAIN_ID][-1]
        assert latest.message == "Update a"
        assert latest.hash_map == snapshot({"a.txt": "a2", "c.txt": "c"})
        assert _state(workdir).commit_index == 2

    def test_push_default_message(self, remote, workdir, make_engine):
        remote.commit({})
        remote.checkout(workdir, {"a.txt": "a"}, index=1)

        make_engine().push(confirm=False)

        assert remote.client.commits[MAIN_ID][-1].message == "No message"

    def test_push_without_changes_is_noop(self, remote, workdir, make_engine):
        remote.commit({"a.txt": "a"})
        remote.checkout(workdir, {"a.txt": "a"}, index=1)

        result = make_engine().push()

        assert not result.pushed
        assert result.changes.is_empty
        assert remote.client.method_calls("create_commit") == []
        assert remote.store.uploads == []

    def test_push_declined(self, remote, workdir, make_engine, prompter):
        prompter.answer = False
        remote.commit({"a.txt": "a"})
        remote.checkout(workdir, {"a.txt": "changed"}, index=1)

        result = make_engine().push()

        assert result.aborted
        assert not result.pushed
        assert remote.store.uploads == []
        assert _state(workdir).commit_index == 1

    def test_push_ignores_matching_paths(self, remote, workdir, make_engine):
        ignore = "\\.log$\nbuild/\n"
        remote.commit({".decentignore": ignore, "a.txt": "a"})
        remote.checkout(
            workdir,
            {
                ".decentignore": ignore,
                "a.txt": "a",
                "debug.log": "noise",
                "build/out.bin": b"\x00\x01",
            },
            index=1,
        )

        result = make_engine().push()

        assert not result.pushed
        assert result.changes.is_empty

    def test_force_push_discards_remote_commits(
        self, remote, workdir, make_engine, prompter
    ):
        """Local #3 against remote #5: commits #4-#5 are deleted first."""
        for i in range(1, 6):
            remote.commit({"a.txt": f"v{i}"})
        remote.checkout(workdir, {"a.txt": "v3", "new.txt": "x"}, index=3)

        result = make_engine().push(message="redo", force=True, confirm=False)

        assert result.pushed
        assert result.forced
        assert result.commit_index == 4
        # Force pushes always ask, even with confirmation disabled.
        assert len(prompter.prompts) == 1
        assert "permanently delete" in prompter.prompts[0]
        assert remote.client.method_calls("delete_commits_after") == [
            (PROJECT_ID, MAIN_ID, 3)
        ]
        assert remote.client.method_calls("delete_unused_objects") == [
            (PROJECT_ID,)
        ]

        commits = remote.client.commits[MAIN_ID]
        assert [c.index for c in commits] == [1, 2, 3, 4]
        assert commits[-1].created_files == ["new.txt"]
        assert commits[-1].hash_map == snapshot({"a.txt": "v3", "new.txt": "x"})
        assert _state(workdir).commit_index == 4

    def test_force_push_declined(self, remote, workdir, make_engine, prompter):
        prompter.answer = False
        for i in range(1, 6):
            remote.commit({"a.txt": f"v{i}"})
        remote.checkout(workdir, {"a.txt": "v3"}, index=3)

        result = make_engine().push(force=True)

        assert result.aborted
        assert result.forced
        assert remote.client.method_calls("delete_commits_after") == []
        assert len(remote.client.commits[MAIN_ID]) == 5
        assert _state(workdir).commit_index == 3


# ---------------------------------------------------------------------------
# sync
# ---------------------------------------------------------------------------


class TestSync:
    def test_sync_when_up_to_date_transfers_nothing(
        self, remote, workdir, make_engine
    ):
        remote.commit({"a.txt": "1"})
        remote.commit({"a.txt": "2"})
        remote.checkout(workdir, {"a.txt": "2"}, index=2)
        before = (workdir / ".decent").read_bytes()

        result = make_engine().sync_to_commit()

        assert not result.applied
        assert result.plan.is_noop
        assert remote.store.downloads == []
        assert (workdir / ".decent").read_bytes() == before

    def test_sync_to_current_index_makes_no_requests(
        self, remote, workdir, make_engine
    ):
        remote.commit({"a.txt": "1"})
        remote.commit({"a.txt": "2"})
        remote.checkout(workdir, {"a.txt": "2"}, index=2)

        result = make_engine().sync_to_commit(2)

        assert not result.applied
        assert remote.client.calls == []
        assert remote.store.downloads == []

    def test_sync_to_latest(self, remote, workdir, make_engine, prompter):
        files_1 = {"a.txt": "1", "b.txt": "b"}
        remote.commit(files_1)
        remote.commit({"a.txt": "2", "c.txt": "c"})
        remote.checkout(workdir, files_1, index=1)

        result = make_engine().sync_to_commit()

        assert result.applied
        assert result.plan.deletions == ["b.txt"]
        assert sorted(result.plan.downloads) == ["a.txt", "c.txt"]
        assert prompter.prompts == ["Sync to commit #2?"]
        assert read_tree(workdir) == {"a.txt": b"2", "c.txt": b"c"}
        assert _state(workdir).commit_index == 2

    def test_sync_backwards(self, remote, workdir, make_engine):
        remote.commit({"a.txt": "1", "b.txt": "b"})
        files_2 = {"a.txt": "2", "c.txt": "c"}
        remote.commit(files_2)
        remote.checkout(workdir, files_2, index=2)

        make_engine().sync_to_commit(1, confirm=False)

        assert read_tree(workdir) == {"a.txt": b"1", "b.txt": b"b"}
        assert _state(workdir).commit_index == 1

    def test_sync_keeps_locally_edited_file_deleted_upstream(
        self, remote, workdir, make_engine
    ):
        remote.commit({"a.txt": "1", "b.txt": "b"})
        remote.commit({"a.txt": "1"})
        remote.checkout(workdir, {"a.txt": "1", "b.txt": "edited"}, index=1)

        result = make_engine().sync_to_commit(confirm=False)

        assert result.plan.deletions == []
        assert result.plan.preserved == ["b.txt"]
        assert read_tree(workdir)["b.txt"] == b"edited"
        assert _state(workdir).commit_index == 2

    def test_sync_declined_with_overridden_file(
        self, remote, workdir, make_engine, prompter
    ):
        prompter.answer = False
        remote.commit({"a.txt": "1"})
        remote.commit({"a.txt": "1", "c.txt": "remote"})
        remote.checkout(workdir, {"a.txt": "1", "c.txt": "mine"}, index=1)

        result = make_engine().sync_to_commit()

        assert result.aborted
        assert result.plan.overridden == ["c.txt"]
        assert "c.txt" in prompter.prompts[0]
        assert read_tree(workdir)["c.txt"] == b"mine"
        assert remote.store.downloads == []
        assert _state(workdir).commit_index == 1

    @pytest.mark.parametrize("index", [0, -3])
    def test_sync_rejects_invalid_index(self, remote, workdir, make_engine, index):
        remote.commit({"a.txt": "1"})
        remote.checkout(workdir, {"a.txt": "1"}, index=1)

        with pytest.raises(InvalidCommitIndexError):
            make_engine().sync_to_commit(index)

    def test_sync_to_unknown_commit(self, remote, workdir, make_engine):
        remote.commit({"a.txt": "1"})
        remote.checkout(workdir, {"a.txt": "1"}, index=1)

        with pytest.raises(NotFoundError):
            make_engine().sync_to_commit(9)

    def test_sync_outside_project(self, make_engine):
        with pytest.raises(NotAProjectError):
            make_engine().sync_to_commit()


class TestPlanSync:
    def test_untracked_identical_file_is_not_overridden(self, remote, workdir):
        current = remote.commit({"a.txt": "1"})
        target = remote.commit({"a.txt": "1", "b.txt": "same"})
        write_tree(workdir, {"a.txt": "1", "b.txt": "same"})

        plan = plan_sync(workdir, current, target)

        assert plan.downloads == snapshot({"b.txt": "same"})
        assert plan.overridden == []

    def test_already_deleted_file_is_skipped(self, remote, workdir):
        current = remote.commit({"a.txt": "1", "gone.txt": "g"})
        target = remote.commit({"a.txt": "1"})
        write_tree(workdir, {"a.txt": "1"})

        plan = plan_sync(workdir, current, target)

        assert plan.deletions == []
        assert plan.preserved == []
        assert not plan.touches_tree


# ---------------------------------------------------------------------------
# reset / revert
# ---------------------------------------------------------------------------


class TestReset:
    def test_reset_restores_snapshot(self, remote, workdir, make_engine):
        files = {"a.txt": "a", "b.txt": "b"}
        remote.commit(files)
        remote.checkout(workdir, files, index=1)
        write_tree(workdir, {"a.txt": "changed", "x.txt": "new"})
        (workdir / "b.txt").unlink()

        result = make_engine().reset(confirm=False)

        assert result.applied
        assert result.changes.count == 3
        assert read_tree(workdir) == {"a.txt": b"a", "b.txt": b"b"}

    def test_reset_declined_keeps_changes(
        self, remote, workdir, make_engine, prompter
    ):
        prompter.answer = False
        remote.commit({"a.txt": "a"})
        remote.checkout(workdir, {"a.txt": "a", "x.txt": "new"}, index=1)

        result = make_engine().reset()

        assert result.aborted
        assert (workdir / "x.txt").exists()

    def test_reset_without_changes(self, remote, workdir, make_engine, prompter):
        remote.commit({"a.txt": "a"})
        remote.checkout(workdir, {"a.txt": "a"}, index=1)

        result = make_engine().reset()

        assert not result.applied
        assert prompter.prompts == []

    def test_reset_undeletable_file(
        self, remote, workdir, make_engine, monkeypatch
    ):
        remote.commit({"a.txt": "a"})
        remote.checkout(workdir, {"a.txt": "a", "locked.txt": "new"}, index=1)
        real_unlink = Path.unlink

        def _unlink(self, missing_ok=False):
            if self.name == "locked.txt":
                raise PermissionError(13, "Permission denied", str(self))
            return real_unlink(self, missing_ok=missing_ok)

        monkeypatch.setattr(Path, "unlink", _unlink)

        with pytest.raises(ScanError, match="locked.txt"):
            make_engine().reset(confirm=False)


class TestRevert:
    def test_revert_goes_back_one_commit(self, remote, workdir, make_engine):
        remote.commit({"a.txt": "a1"})
        remote.commit({"a.txt": "a2", "n.txt": "n"})
        remote.checkout(workdir, {"a.txt": "dirty", "n.txt": "n"}, index=2)

        result = make_engine().revert(confirm=False)

        assert result.applied
        assert result.reset.applied
        assert result.plan.target_index == 1
        assert read_tree(workdir) == {"a.txt": b"a1"}
        assert _state(workdir).commit_index == 1

    def test_revert_on_first_commit(self, remote, workdir, make_engine):
        remote.commit({"a.txt": "a1"})
        remote.checkout(workdir, {"a.txt": "a1"}, index=1)

        with pytest.raises(InvalidCommitIndexError):
            make_engine().revert()

    def test_revert_declined(self, remote, workdir, make_engine, prompter):
        prompter.answer = False
        remote.commit({"a.txt": "a1"})
        remote.commit({"a.txt": "a2"})
        remote.checkout(workdir, {"a.txt": "a2"}, index=2)

        result = make_engine().revert()

        assert result.aborted
        assert read_tree(workdir) == {"a.txt": b"a2"}
        assert _state(workdir).commit_index == 2


# ---------------------------------------------------------------------------
# merge
# ---------------------------------------------------------------------------


@pytest.fixture
def merge_setup(remote, workdir):
    """Main at #1 with a local text edit; feature diverges from it."""
    remote.commit({"shared.txt": "line1\n", "c.bin": b"\x00\x01"})
    remote.client.add_branch(FEATURE_ID, "feature")
    remote.commit(
        {
            "shared.txt": "line1\nfeature\n",
            "c.bin": b"\x00\x02",
            "new.txt": "fresh\n",
        },
        branch_id=FEATURE_ID,
    )
    remote.checkout(
        workdir,
        {"shared.txt": "line1\nlocal\n", "c.bin": b"\x00\x01"},
        index=1,
    )


class TestMerge:
    def test_merge_moves_overrides_and_merges(
        self, merge_setup, remote, workdir, make_engine
    ):
        result = make_engine().merge("feature", confirm=False)

        assert result.ok
        assert result.moved == ["c.bin", "new.txt"]
        assert result.merged == ["shared.txt"]
        assert result.plan.overrides == ["c.bin"]
        assert result.push is None

        tree = read_tree(workdir)
        assert tree["c.bin"] == b"\x00\x02"
        assert tree["new.txt"] == b"fresh\n"
        assert tree["shared.txt"] == b"line1\nlocal\nfeature\n"
        assert _state(workdir).commit_index == 1

    def test_merge_and_push(self, merge_setup, remote, workdir, make_engine):
        result = make_engine().merge("feature", push=True, confirm=False)

        assert result.push is not None
        assert result.push.pushed
        latest = remote.client.commits[MAIN_ID][-1]
        assert latest.message == "Merged feature into main"
        assert _state(workdir).commit_index == 2

    def test_merge_failure_skips_push(
        self, merge_setup, remote, workdir, make_engine, monkeypatch
    ):
        def _fail(local_path, remote_path):
            raise OSError("disk full")

        monkeypatch.setattr("decent_vcs.vcs.engine.merge_file", _fail)

        result = make_engine().merge("feature", push=True, confirm=False)

        assert not result.ok
        assert result.failures == {"shared.txt": "disk full"}
        assert "new.txt" in result.moved
        assert result.push is None
        assert remote.client.method_calls("create_commit") == []

    def test_merge_declined(
        self, merge_setup, remote, workdir, make_engine, prompter
    ):
        prompter.answer = False

        result = make_engine().merge("feature")

        assert result.aborted
        assert not (workdir / "new.txt").exists()
        assert read_tree(workdir)["shared.txt"] == b"line1\nlocal\n"

    def test_merge_into_itself(self, merge_setup, make_engine):
        with pytest.raises(PreconditionError):
            make_engine().merge("main")

    def test_merge_equivalent_branches(self, remote, workdir, make_engine):
        files = {"a.txt": "same"}
        remote.commit(files)
        remote.client.add_branch(FEATURE_ID, "feature")
        remote.commit(files, branch_id=FEATURE_ID)
        remote.checkout(workdir, files, index=1)

        result = make_engine().merge("feature")

        assert result.plan.is_empty
        assert remote.store.downloads == []

    def test_merge_unknown_branch(self, merge_setup, make_engine):
        with pytest.raises(NotFoundError):
            make_engine().merge("nope")


# ---------------------------------------------------------------------------
# branches
# ---------------------------------------------------------------------------


class TestBranches:
    def test_new_branch_switches_to_it(self, remote, workdir, make_engine):
        remote.commit({"a.txt": "a"})
        remote.checkout(workdir, {"a.txt": "a"}, index=1)

        branch = make_engine().new_branch("feature")

        assert branch.name == "feature"
        assert remote.client.method_calls("create_branch") == [
            (PROJECT_ID, "feature", 1)
        ]
        state = _state(workdir)
        assert state.branch_id == branch.id
        assert state.commit_index == 1

    def test_new_branch_rejects_invalid_name(self, remote, workdir, make_engine):
        remote.commit({"a.txt": "a"})
        remote.checkout(workdir, {"a.txt": "a"}, index=1)

        with pytest.raises(InvalidBranchNameError):
            make_engine().new_branch("bad name")
        assert remote.client.method_calls("create_branch") == []

    def test_use_branch_discards_changes(self, remote, workdir, make_engine):
        remote.commit({"a.txt": "a"})
        remote.client.add_branch(
            FEATURE_ID, "feature", list(remote.client.commits[MAIN_ID])
        )
        remote.commit({"a.txt": "a", "f.txt": "f"}, branch_id=FEATURE_ID)
        remote.checkout(workdir, {"a.txt": "dirty"}, index=1)

        result = make_engine().use_branch("feature", confirm=False)

        assert result.applied
        assert result.reset.applied
        assert read_tree(workdir) == {"a.txt": b"a", "f.txt": b"f"}
        state = _state(workdir)
        assert state.branch_id == FEATURE_ID
        assert state.commit_index == 2

    def test_use_empty_branch_records_index_zero(
        self, remote, workdir, make_engine
    ):
        remote.commit({"a.txt": "a"})
        remote.client.add_branch(FEATURE_ID, "feature")
        remote.checkout(workdir, {"a.txt": "a"}, index=1)

        result = make_engine().use_branch("feature", confirm=False)

        assert result.applied
        assert read_tree(workdir) == {}
        state = _state(workdir)
        assert state.branch_id == FEATURE_ID
        assert state.commit_index == 0

    def test_use_current_branch_at_head(self, remote, workdir, make_engine):
        remote.commit({"a.txt": "a"})
        remote.checkout(workdir, {"a.txt": "a"}, index=1)

        result = make_engine().use_branch("main")

        assert not result.applied
        assert remote.store.downloads == []

    def test_delete_current_branch_refused(self, remote, workdir, make_engine):
        remote.commit({"a.txt": "a"})
        remote.checkout(workdir, {"a.txt": "a"}, index=1)

        with pytest.raises(PreconditionError) as excinfo:
            make_engine().delete_branch("main")
        assert "branch use" in str(excinfo.value)

    def test_delete_other_branch(self, remote, workdir, make_engine):
        remote.commit({"a.txt": "a"})
        remote.client.add_branch(FEATURE_ID, "feature")
        remote.checkout(workdir, {"a.txt": "a"}, index=1)

        make_engine().delete_branch("feature")

        assert FEATURE_ID not in remote.client.names

    def test_rename_branch(self, remote, workdir, make_engine):
        remote.commit({"a.txt": "a"})
        remote.client.add_branch(FEATURE_ID, "feature")
        remote.checkout(workdir, {"a.txt": "a"}, index=1)
        engine = make_engine()

        engine.rename_branch("feature", "feature-2")
        assert remote.client.names[FEATURE_ID] == "feature-2"

        with pytest.raises(InvalidBranchNameError):
            engine.rename_branch("feature-2", "no/slashes")

    def test_set_default_branch(self, remote, workdir, make_engine):
        remote.commit({"a.txt": "a"})
        remote.client.add_branch(FEATURE_ID, "feature")
        remote.checkout(workdir, {"a.txt": "a"}, index=1)

        make_engine().set_default_branch("feature")

        assert remote.client.project.default_branch_id == FEATURE_ID

    def test_list_branches(self, remote, workdir, make_engine):
        remote.commit({"a.txt": "a"})
        remote.client.add_branch(FEATURE_ID, "feature")
        remote.checkout(workdir, {"a.txt": "a"}, index=1)
        engine = make_engine()

        names = sorted(b.name for b in engine.list_branches())

        assert names == ["feature", "main"]
        assert engine.current_branch_id() == MAIN_ID


# ---------------------------------------------------------------------------
# init / clone / status / history
# ---------------------------------------------------------------------------


class TestProjectLifecycle:
    def test_init_writes_project_file(self, remote, workdir, make_engine):
        state = make_engine().init("team/game")

        assert state.project_id == PROJECT_ID
        assert state.branch_id == MAIN_ID
        assert state.commit_index == 1
        assert _state(workdir) == state

    def test_init_twice(self, remote, workdir, make_engine):
        make_engine().init("team/game")

        with pytest.raises(ProjectExistsError):
            make_engine().init("team/game")

    def test_init_rejects_bad_name(self, make_engine):
        with pytest.raises(PreconditionError):
            make_engine().init("a/b/c")

    def test_clone(self, remote, tmp_path, make_engine):
        files = {"a.txt": "a", "dir/b.txt": "b"}
        remote.commit(files)
        dest = tmp_path / "clone"

        state = make_engine(tmp_path).clone(PROJECT_ID, dest)

        assert state.commit_index == 1
        assert read_tree(dest) == {"a.txt": b"a", "dir/b.txt": b"b"}
        assert _state(dest).branch_id == MAIN_ID

    def test_clone_into_existing_project(self, remote, workdir, make_engine):
        remote.commit({"a.txt": "a"})
        remote.checkout(workdir, {"a.txt": "a"}, index=1)

        with pytest.raises(ProjectExistsError):
            make_engine().clone(PROJECT_ID, workdir)

    def test_status(self, remote, workdir, make_engine):
        remote.commit({"a.txt": "a"})
        remote.checkout(workdir, {"a.txt": "changed"}, index=1)

        report = make_engine().status()

        assert report.project.name == "team/game"
        assert report.branch.name == "main"
        assert report.commit.index == 1
        assert report.changes.modified == ["a.txt"]

    def test_status_from_subdirectory(self, remote, workdir, make_engine):
        remote.commit({"sub/a.txt": "a"})
        remote.checkout(workdir, {"sub/a.txt": "a"}, index=1)

        report = make_engine(workdir / "sub").status()

        assert report.changes.is_empty

    def test_history_newest_first(self, remote, workdir, make_engine):
        for i in range(3):
            remote.commit({"a.txt": str(i)}, message=f"c{i}")
        remote.checkout(workdir, {"a.txt": "2"}, index=3)

        commits = make_engine().history(limit=10)

        assert [c.index for c in commits] == [3, 2, 1]
