"""Exceptions for decent_vcs.

Every failure that reaches the command layer is a ``DecentError``.  The
subclasses follow the error taxonomy used throughout the engine:

- ``PreconditionError`` -- not a project, not logged in, bad commit index.
- ``SyncConflictError`` -- the remote branch moved past the local commit.
- ``TransferError`` -- network or object-storage failure.
- ``ScanError`` -- the working tree could not be walked or hashed.
- ``MergeError`` -- one or more files failed to merge.
- ``InternalError`` -- a remote payload could not be decoded.
"""

from __future__ import annotations


class DecentError(Exception):
    """Base class for all errors surfaced to the command layer.

    Args:
        message: Human-readable description of the failure.
        remedy: Optional hint naming the command that fixes the problem.
    """

    def __init__(self, message: str, remedy: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.remedy = remedy

    def __str__(self) -> str:
        if self.remedy:
            return f"{self.message}\n{self.remedy}"
        return self.message


# ---------------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------------


class PreconditionError(DecentError):
    """An operation cannot start in the current local or remote state."""


class NotAProjectError(PreconditionError):
    """No project file was found in the working directory or its parents."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(
            message or "No project found in current directory.",
            remedy="You can use `decent init` to create one.",
        )


class NotAuthenticatedError(PreconditionError):
    """No access token is configured, or the server rejected it."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(
            message or "Not logged in.",
            remedy="Set DECENT_ACCESS_TOKEN or `auth.access_token` in "
            "~/.decent/config.yml.",
        )


class InvalidCommitIndexError(PreconditionError):
    """A commit index is not a positive integer or does not exist."""


class NotFoundError(PreconditionError):
    """A remote resource (project, branch, commit) does not exist."""


class ProjectExistsError(PreconditionError):
    """A project file already exists at the target path."""


class InvalidBranchNameError(PreconditionError):
    """A branch name contains characters the server does not accept."""


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


class SyncConflictError(DecentError):
    """Raised when pushing from a commit that is no longer the branch head.

    Pull the latest commit with ``decent sync`` and retry, or discard the
    remote commits ahead of the local one with ``decent push --force``.
    """


# ---------------------------------------------------------------------------
# Transfers
# ---------------------------------------------------------------------------


class TransferError(DecentError):
    """A network or object-storage request failed."""


class ObjectNotFoundError(TransferError):
    """A content-addressed object is missing from storage."""

    def __init__(self, key: str, path: str | None = None) -> None:
        target = f" for file \"{path}\"" if path else ""
        super().__init__(f"Object {key} not found in storage{target}")
        self.key = key
        self.path = path


class MultipartUploadError(TransferError):
    """A multipart upload failed and was aborted."""


# ---------------------------------------------------------------------------
# Local filesystem and merge failures
# ---------------------------------------------------------------------------


class ScanError(DecentError):
    """The working tree could not be walked or a file could not be hashed."""


class MergeError(DecentError):
    """One or more files could not be merged.

    Args:
        failures: Mapping of project-relative path to failure reason.
    """

    def __init__(self, failures: dict[str, str]) -> None:
        paths = ", ".join(sorted(failures))
        super().__init__(f"Failed to merge {len(failures)} file(s): {paths}")
        self.failures = dict(failures)


class InternalError(DecentError):
    """An unexpected decode or serialization failure."""

    def __init__(self, detail: str = "") -> None:
        super().__init__(
            "An internal error occurred. If the issue persists, "
            "please contact us."
        )
        self.detail = detail
