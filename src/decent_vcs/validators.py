"""
Input validation functions for the decent client.

Provides validation for branch names, commit indices and project names
so bad input is rejected before any request reaches the server.
"""

import re

_BRANCH_NAME_PATTERN = re.compile(r"^[\w\-.]+$")


# ---------------------------------------------------------------------------
# Error message formatting helpers
# ---------------------------------------------------------------------------


def format_validation_error(field_name: str, reason: str) -> str:
    """
    Generate consistent error message for validation failures.

    Args:
        field_name: Human-readable field name (e.g., "Branch name")
        reason: Description of validation failure (e.g., "cannot be empty")

    Returns:
        Formatted error message string
    """
    return f"{field_name} {reason}"


def validate_branch_name(name: str) -> tuple[bool, str]:
    """
    Validate a branch name.

    Returns:
        Tuple of (is_valid, error_message).
        Returns (True, "") if valid, (False, reason) if invalid.

    Validation rules:
        - Cannot be empty or whitespace-only
        - Only word characters, dashes and periods
    """
    if not name or not name.strip():
        return (
            False,
            format_validation_error("Branch name", "cannot be empty"),
        )

    if not _BRANCH_NAME_PATTERN.match(name):
        return (
            False,
            format_validation_error(
                "Branch name",
                "must be alphanumeric, and can contain dashes or periods",
            ),
        )

    return (True, "")


def validate_commit_index(index: int | None) -> tuple[bool, str]:
    """
    Validate a commit index supplied by the user or read from disk.

    Commit indices are 1-based; ``None`` is rejected as well so callers
    that mean "latest" must handle that case before validating.
    """
    if index is None or isinstance(index, bool):
        return (
            False,
            format_validation_error("Commit index", "is required"),
        )

    if index <= 0:
        return (
            False,
            format_validation_error(
                "Commit index", "must be a positive integer"
            ),
        )

    return (True, "")


def validate_project_name(name: str) -> tuple[bool, str]:
    """
    Validate a project name (``team/project`` or a bare project name).
    """
    if not name or not name.strip():
        return (
            False,
            format_validation_error("Project name", "cannot be empty"),
        )

    if ".." in name or name.startswith("/") or name.endswith("/"):
        return (
            False,
            format_validation_error(
                "Project name", "must look like 'team/project'"
            ),
        )

    if name.count("/") > 1:
        return (
            False,
            format_validation_error(
                "Project name", "can contain at most one '/'"
            ),
        )

    return (True, "")
