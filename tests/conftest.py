"""Shared pytest fixtures for decent_vcs tests.

The engine tests run against ``FakeApiClient`` (an in-memory metadata
service) and ``FakeContentStore`` (an in-memory object store), so no
test touches the network.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from decent_vcs.config import Config
from decent_vcs.exceptions import NotFoundError, ObjectNotFoundError
from decent_vcs.models import (
    Branch,
    Commit,
    CreateCommitRequest,
    HashMap,
    Project,
    ProjectConfig,
)
from decent_vcs.vcs.engine import SyncEngine
from decent_vcs.vcs.hashing import hash_bytes
from decent_vcs.vcs.scanner import from_key
from decent_vcs.vcs.state import PROJECT_FILE_NAME, ProjectState

PROJECT_ID = "proj-1"
MAIN_ID = "branch-main"


# ---------------------------------------------------------------------------
# Tree helpers
# ---------------------------------------------------------------------------


def _as_bytes(content: str | bytes) -> bytes:
    return content.encode("utf-8") if isinstance(content, str) else content


def write_tree(root: Path, files: dict) -> None:
    """Write ``{relative_key: content}`` under *root*."""
    for key, content in files.items():
        path = from_key(root, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(_as_bytes(content))


def read_tree(root: Path) -> dict[str, bytes]:
    """Every file under *root* except the project file."""
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file() and p.name != PROJECT_FILE_NAME
    }


def snapshot(files: dict) -> HashMap:
    return {key: hash_bytes(_as_bytes(content)) for key, content in files.items()}


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeApiClient:
    """Minimal ApiClient replacement.

    Each branch holds its full list of commits; ``calls`` records every
    method invoked as ``(name, args)``.
    """

    def __init__(self) -> None:
        self.project = Project(
            id=PROJECT_ID, name="team/game", default_branch_id=MAIN_ID
        )
        self.names: dict[str, str] = {}
        self.commits: dict[str, list[Commit]] = {}
        self.calls: list[tuple] = []
        self.add_branch(MAIN_ID, "main")

    # -- test setup ------------------------------------------------------

    def add_branch(
        self, branch_id: str, name: str, commits: list[Commit] | None = None
    ) -> None:
        self.names[branch_id] = name
        self.commits[branch_id] = list(commits or [])

    def add_commit(
        self, branch_id: str, hash_map: HashMap, message: str = "", **files
    ) -> Commit:
        commits = self.commits[branch_id]
        commit = Commit(
            id=f"{branch_id}-{len(commits) + 1}",
            index=len(commits) + 1,
            project_id=PROJECT_ID,
            branch_id=branch_id,
            message=message,
            hash_map=hash_map,
            **files,
        )
        commits.append(commit)
        return commit

    def method_calls(self, name: str) -> list[tuple]:
        return [args for called, args in self.calls if called == name]

    # -- helpers ---------------------------------------------------------

    def _resolve(self, branch: str) -> str:
        if branch in self.names:
            return branch
        for branch_id, name in self.names.items():
            if name == branch:
                return branch_id
        raise NotFoundError(
            f"Failed to get branch \"{branch}\": resource not found"
        )

    def _as_branch(self, branch_id: str, join_commit: bool = True) -> Branch:
        commits = self.commits[branch_id]
        latest = commits[-1] if commits and join_commit else None
        return Branch(
            id=branch_id,
            name=self.names[branch_id],
            project_id=PROJECT_ID,
            commit=latest,
        )

    # -- ApiClient surface -------------------------------------------------

    def get_project(self, project_id: str) -> Project:
        self.calls.append(("get_project", (project_id,)))
        if project_id not in (PROJECT_ID, self.project.name):
            raise NotFoundError("Failed to get project: resource not found")
        return self.project

    def create_project(self, name: str) -> Project:
        self.calls.append(("create_project", (name,)))
        if not self.commits[MAIN_ID]:
            self.add_commit(MAIN_ID, {}, "Initial commit")
        self.project = self.project.model_copy(update={"name": name})
        return self.project.model_copy(
            update={"branches": [self._as_branch(MAIN_ID)]}
        )

    def set_default_branch(self, project_id: str, branch_id: str) -> Project:
        self.calls.append(("set_default_branch", (project_id, branch_id)))
        self.project = self.project.model_copy(
            update={"default_branch_id": branch_id}
        )
        return self.project

    def get_branch(
        self, project_id: str, branch: str, join_commit: bool = False
    ) -> Branch:
        self.calls.append(("get_branch", (project_id, branch, join_commit)))
        return self._as_branch(self._resolve(branch), join_commit)

    def get_default_branch(self, project_id: str) -> Branch:
        self.calls.append(("get_default_branch", (project_id,)))
        return self._as_branch(self.project.default_branch_id)

    def list_branches(self, project_id: str) -> list[Branch]:
        self.calls.append(("list_branches", (project_id,)))
        return [self._as_branch(branch_id) for branch_id in self.names]

    def create_branch(
        self, project_id: str, name: str, commit_index: int
    ) -> Branch:
        self.calls.append(("create_branch", (project_id, name, commit_index)))
        branch_id = f"branch-{name}"
        source = self.commits[self.project.default_branch_id][:commit_index]
        self.add_branch(branch_id, name, source)
        return self._as_branch(branch_id)

    def rename_branch(
        self, project_id: str, branch: str, new_name: str
    ) -> Branch:
        self.calls.append(("rename_branch", (project_id, branch, new_name)))
        branch_id = self._resolve(branch)
        self.names[branch_id] = new_name
        return self._as_branch(branch_id)

    def delete_branch(self, project_id: str, branch: str) -> None:
        self.calls.append(("delete_branch", (project_id, branch)))
        branch_id = self._resolve(branch)
        del self.names[branch_id]
        del self.commits[branch_id]

    def get_commit(self, project_id: str, branch_id: str, index: int) -> Commit:
        self.calls.append(("get_commit", (project_id, branch_id, index)))
        commits = self.commits[self._resolve(branch_id)]
        if not 1 <= index <= len(commits):
            raise NotFoundError(
                f"Failed to get commit #{index}: resource not found"
            )
        return commits[index - 1]

    def list_commits(self, project_id: str, limit: int = 10) -> list[Commit]:
        self.calls.append(("list_commits", (project_id, limit)))
        every = [c for commits in self.commits.values() for c in commits]
        return every[:limit]

    def create_commit(
        self, project_id: str, branch_id: str, request: CreateCommitRequest
    ) -> Commit:
        self.calls.append(("create_commit", (project_id, branch_id, request)))
        return self.add_commit(
            branch_id,
            dict(request.hash_map),
            request.message,
            created_files=request.created_files,
            modified_files=request.modified_files,
            deleted_files=request.deleted_files,
        )

    def delete_commits_after(
        self, project_id: str, branch_id: str, index: int
    ) -> None:
        self.calls.append(("delete_commits_after", (project_id, branch_id, index)))
        del self.commits[branch_id][index:]

    def delete_unused_objects(self, project_id: str) -> None:
        self.calls.append(("delete_unused_objects", (project_id,)))


class FakeContentStore:
    """In-memory ContentStore keyed by content hash."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.uploads: list[HashMap] = []
        self.downloads: list[HashMap] = []

    def put(self, content: str | bytes) -> str:
        data = _as_bytes(content)
        key = hash_bytes(data)
        self.objects[key] = data
        return key

    def upload_many(
        self, project_id: str, root: Path, path_to_hash: HashMap
    ) -> list[str]:
        self.uploads.append(dict(path_to_hash))
        uploaded = []
        for path, key in sorted(path_to_hash.items()):
            if key not in self.objects:
                self.objects[key] = from_key(root, path).read_bytes()
                uploaded.append(key)
        return uploaded

    def download_many(
        self,
        project_id: str,
        dest_root: Path,
        path_to_hash: HashMap,
        allow_missing: bool = False,
    ) -> list[str]:
        self.downloads.append(dict(path_to_hash))
        missing = []
        for path, key in sorted(path_to_hash.items()):
            if key not in self.objects:
                if not allow_missing:
                    raise ObjectNotFoundError(key, path=path)
                missing.append(path)
                continue
            target = from_key(dest_root, path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(self.objects[key])
        return missing


class Prompter:
    """Confirmation callback that records prompts and answers *answer*."""

    def __init__(self, answer: bool = True) -> None:
        self.answer = answer
        self.prompts: list[str] = []

    def __call__(self, prompt: str) -> bool:
        self.prompts.append(prompt)
        return self.answer


class Remote:
    """A fake server plus object store, with helpers to stage history."""

    def __init__(self) -> None:
        self.client = FakeApiClient()
        self.store = FakeContentStore()

    def commit(self, files: dict, branch_id: str = MAIN_ID, message: str = "") -> Commit:
        """Store *files* and add a commit whose snapshot is exactly *files*."""
        for content in files.values():
            self.store.put(content)
        return self.client.add_commit(branch_id, snapshot(files), message)

    def checkout(
        self,
        root: Path,
        files: dict,
        index: int,
        branch_id: str = MAIN_ID,
    ) -> None:
        """Materialize *files* in *root* and point ``.decent`` at *index*."""
        root.mkdir(parents=True, exist_ok=True)
        write_tree(root, files)
        ProjectState(root).save(
            ProjectConfig(
                project_id=PROJECT_ID, branch_id=branch_id, commit_index=index
            )
        )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config():
    """Config with small transfer sizes and no progress bars."""
    return Config(
        server_host="https://decent.example.com",
        access_token="test-token",
        show_progress=False,
        part_size=64,
        multipart_threshold=64,
        batch_size=2,
        upload_pool_size=4,
        download_pool_size=4,
        compression=True,
    )


@pytest.fixture
def remote():
    return Remote()


@pytest.fixture
def workdir(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def prompter():
    return Prompter()


@pytest.fixture
def make_engine(config, remote, workdir, prompter):
    """Factory fixture building a SyncEngine over the fakes."""

    def _make(root: Path | None = None) -> SyncEngine:
        return SyncEngine(
            config,
            root=root or workdir,
            client=remote.client,
            store=remote.store,
            confirm=prompter,
        )

    return _make
