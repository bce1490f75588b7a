"""HTTP client for the Decent metadata service.

Every remote call goes through ``ApiClient._request`` so transport
failures and HTTP status codes are translated into the
``decent_vcs.exceptions`` taxonomy in exactly one place.  Callers only
ever see ``DecentError`` subclasses and parsed Pydantic models.
"""

import logging
import threading
from typing import Any, TypeVar

import requests
from pydantic import BaseModel, ValidationError

from ..config import Config
from ..exceptions import (
    InternalError,
    NotAuthenticatedError,
    NotFoundError,
    SyncConflictError,
    TransferError,
)
from ..models import (
    AbortMultipartRequest,
    Branch,
    Commit,
    CompleteMultipartRequest,
    CreateBranchRequest,
    CreateCommitRequest,
    CreateProjectRequest,
    PresignRequest,
    PresignResponse,
    Project,
    RenameBranchRequest,
    UpdateProjectRequest,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def check_response(response: requests.Response, action: str) -> None:
    """Raise the matching ``DecentError`` for a failed response.

    Args:
        response: Response from the metadata service.
        action: Short description used in the error message
            (e.g. ``"get commit #3"``).
    """
    status = response.status_code
    if status < 300:
        return

    match status:
        case 401 | 403:
            raise NotAuthenticatedError(
                f"Failed to {action}: unauthorized"
            )
        case 404:
            raise NotFoundError(f"Failed to {action}: resource not found")
        case 409:
            raise SyncConflictError(
                f"Failed to {action}: resource conflict",
                remedy="Run `decent sync` to pull the latest commit first.",
            )
        case 408:
            raise TransferError(f"Failed to {action}: request timed out")
        case 400:
            raise TransferError(f"Failed to {action}: bad request")
        case _:
            raise TransferError(
                f"Failed to {action}: received HTTP status {status}"
            )


class ApiClient:
    def __init__(self, config: Config):
        self.config = config
        self._thread_local = threading.local()
        self.base_url = config.server_host.rstrip("/")

    @property
    def session(self) -> requests.Session:
        """Current thread's authenticated session."""
        return self._get_session()

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = self._create_session()
        return self._thread_local.session

    def _create_session(self) -> requests.Session:
        if not self.config.access_token:
            raise NotAuthenticatedError()
        session = requests.Session()
        session.headers["Authorization"] = (
            f"Bearer {self.config.access_token}"
        )
        session.headers["Accept"] = "application/json"
        return session

    def _request(
        self,
        method: str,
        path: str,
        action: str,
        body: BaseModel | list | None = None,
        params: dict | None = None,
    ) -> Any:
        """
        Send a request to the metadata service and return decoded JSON.
        """
        url = f"{self.base_url}/{path.lstrip('/')}"
        if isinstance(body, BaseModel):
            payload = body.model_dump(mode="json")
        elif isinstance(body, list):
            payload = [
                item.model_dump(mode="json")
                if isinstance(item, BaseModel)
                else item
                for item in body
            ]
        else:
            payload = None

        logger.debug("%s %s", method, url)
        session = self._get_session()
        try:
            response = session.request(
                method,
                url,
                json=payload,
                params=params,
                timeout=(10, self.config.timeout),
            )
        except requests.RequestException as exc:
            raise TransferError(f"Failed to {action}: {exc}") from exc

        check_response(response, action)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            logger.debug("Undecodable response for %s: %r", action, exc)
            raise InternalError(f"{action}: {exc}") from exc

    def _parse(self, model: type[M], data: Any) -> M:
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            logger.debug("Invalid %s payload: %s", model.__name__, exc)
            raise InternalError(str(exc)) from exc

    def _parse_list(self, model: type[M], data: Any) -> list[M]:
        if not isinstance(data, list):
            raise InternalError(
                f"Expected a list of {model.__name__}, got {type(data).__name__}"
            )
        return [self._parse(model, item) for item in data]

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def get_project(self, project_id: str) -> Project:
        data = self._request(
            "GET", f"projects/{project_id}", "get project"
        )
        return self._parse(Project, data)

    def create_project(self, name: str) -> Project:
        """
        Create a project; the server also creates its default branch
        and an initial empty commit.
        """
        data = self._request(
            "POST",
            "projects",
            "create project",
            body=CreateProjectRequest(name=name),
        )
        return self._parse(Project, data)

    def set_default_branch(self, project_id: str, branch_id: str) -> Project:
        data = self._request(
            "POST",
            f"projects/{project_id}",
            "set default branch",
            body=UpdateProjectRequest(default_branch_id=branch_id),
        )
        return self._parse(Project, data)

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def get_branch(
        self, project_id: str, branch: str, join_commit: bool = False
    ) -> Branch:
        """
        Get a branch by ID or name, optionally joined with its latest commit.
        """
        params = {"join_commit": "true"} if join_commit else None
        data = self._request(
            "GET",
            f"projects/{project_id}/branches/{branch}",
            f"get branch \"{branch}\"",
            params=params,
        )
        return self._parse(Branch, data)

    def get_default_branch(self, project_id: str) -> Branch:
        data = self._request(
            "GET",
            f"projects/{project_id}/branches/default",
            "get default branch",
            params={"join_commit": "true"},
        )
        return self._parse(Branch, data)

    def list_branches(self, project_id: str) -> list[Branch]:
        data = self._request(
            "GET",
            f"projects/{project_id}/branches",
            "list branches",
            params={"join_commit": "true"},
        )
        return self._parse_list(Branch, data)

    def create_branch(
        self, project_id: str, name: str, commit_index: int
    ) -> Branch:
        data = self._request(
            "POST",
            f"projects/{project_id}/branches",
            f"create branch \"{name}\"",
            body=CreateBranchRequest(name=name, commit_index=commit_index),
        )
        return self._parse(Branch, data)

    def rename_branch(
        self, project_id: str, branch: str, new_name: str
    ) -> Branch:
        data = self._request(
            "POST",
            f"projects/{project_id}/branches/{branch}",
            f"rename branch \"{branch}\"",
            body=RenameBranchRequest(name=new_name),
        )
        return self._parse(Branch, data)

    def delete_branch(self, project_id: str, branch: str) -> None:
        self._request(
            "DELETE",
            f"projects/{project_id}/branches/{branch}",
            f"delete branch \"{branch}\"",
        )

    # ------------------------------------------------------------------
    # Commits
    # ------------------------------------------------------------------

    def get_commit(
        self, project_id: str, branch_id: str, index: int
    ) -> Commit:
        data = self._request(
            "GET",
            f"projects/{project_id}/branches/{branch_id}/commits/index/{index}",
            f"get commit #{index}",
        )
        return self._parse(Commit, data)

    def list_commits(self, project_id: str, limit: int = 10) -> list[Commit]:
        data = self._request(
            "GET",
            f"projects/{project_id}/commits",
            "list commits",
            params={"limit": limit},
        )
        return self._parse_list(Commit, data)

    def create_commit(
        self,
        project_id: str,
        branch_id: str,
        request: CreateCommitRequest,
    ) -> Commit:
        data = self._request(
            "POST",
            f"projects/{project_id}/branches/{branch_id}/commit",
            "create commit",
            body=request,
        )
        return self._parse(Commit, data)

    def delete_commits_after(
        self, project_id: str, branch_id: str, index: int
    ) -> None:
        """
        Delete every commit on the branch with an index greater than ``index``.
        """
        self._request(
            "DELETE",
            f"projects/{project_id}/branches/{branch_id}/commits",
            f"delete commits after #{index}",
            params={"after": index},
        )

    def delete_unused_objects(self, project_id: str) -> None:
        """
        Ask the server to reclaim objects no commit references any more.
        """
        self._request(
            "DELETE",
            f"projects/{project_id}/storage/unused",
            "delete unused objects",
        )

    # ------------------------------------------------------------------
    # Storage presigning
    # ------------------------------------------------------------------

    def presign_many(
        self, project_id: str, requests_: list[PresignRequest]
    ) -> list[PresignResponse]:
        data = self._request(
            "POST",
            f"projects/{project_id}/storage/presign/many",
            "presign objects",
            body=list(requests_),
        )
        return self._parse_list(PresignResponse, data)

    def complete_multipart_upload(
        self, project_id: str, request: CompleteMultipartRequest
    ) -> None:
        self._request(
            "POST",
            f"projects/{project_id}/storage/multipart/complete",
            f"complete multipart upload for {request.key}",
            body=request,
        )

    def abort_multipart_upload(
        self, project_id: str, request: AbortMultipartRequest
    ) -> None:
        self._request(
            "POST",
            f"projects/{project_id}/storage/multipart/abort",
            f"abort multipart upload for {request.key}",
            body=request,
        )
