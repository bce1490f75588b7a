"""
YAML config file discovery and merging for the ``decent`` client.

Config files live in the user's home directory (never in the working
tree, which is synced).  Every discovered file is read, string values
get ``${VAR}`` / ``${VAR:-default}`` substitution from the environment,
and top-level sections from higher-precedence files replace those from
lower ones.

Usage:
    from decent_vcs.config_loader import load_hierarchical_config

    raw = load_hierarchical_config()
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "DECENT_CONFIG"

# ${VAR} or ${VAR:-default}
_ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+?)(?::-(.*?))?\}")


# ---------------------------------------------------------------------------
# Env var substitution
# ---------------------------------------------------------------------------


def interpolate_env_vars(value: str) -> str:
    """Substitute environment variables referenced in *value*.

    An unset or empty variable becomes its ``:-`` default, or the empty
    string when no default is given.  Text such as ``${`` without a
    closing brace is kept verbatim.
    """

    def _lookup(match: re.Match) -> str:
        name, default = match.group(1), match.group(2)
        found = os.environ.get(name)
        if found:
            return found
        return default if default is not None else ""

    return _ENV_VAR_PATTERN.sub(_lookup, value)


def interpolate_tree(node: Any) -> Any:
    """Apply ``interpolate_env_vars`` to every string inside *node*."""
    if isinstance(node, dict):
        return {key: interpolate_tree(value) for key, value in node.items()}
    if isinstance(node, list):
        return [interpolate_tree(item) for item in node]
    if isinstance(node, str):
        return interpolate_env_vars(node)
    return node


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def candidate_config_files() -> list[Path]:
    """All places a config file may live, highest precedence first.

    1. The path in ``DECENT_CONFIG``
    2. ``~/.config/decent/config.yml``
    3. ``~/.decent/config.yml`` (next to the multipart journal)
    """
    candidates: list[Path] = []
    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        candidates.append(Path(explicit).expanduser().resolve())

    home = Path.home()
    candidates.append(home / ".config" / "decent" / "config.yml")
    candidates.append(home / ".decent" / "config.yml")
    return candidates


def discover_config_files() -> list[Path]:
    """Existing config files, highest precedence first."""
    return [path for path in candidate_config_files() if path.is_file()]


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def read_config_file(path: Path) -> dict[str, Any]:
    """Parse one YAML config file.

    A file whose root is not a mapping is skipped with a warning.

    Raises:
        ValueError: If the file cannot be read or is not valid YAML.
    """
    try:
        with open(path, encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError) as exc:
        raise ValueError(f"Cannot load config file {path}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning(
            "Ignoring config file %s: expected a mapping, got %s",
            path,
            type(data).__name__,
        )
        return {}
    return data


def load_hierarchical_config() -> dict[str, Any]:
    """Read and merge every discovered config file.

    Files are applied from lowest to highest precedence; a top-level
    section in a later file replaces the whole section from earlier
    ones.  Returns ``{}`` when there is no config file at all.

    Raises:
        ValueError: If any discovered file is unreadable or malformed.
    """
    paths = discover_config_files()
    if not paths:
        logger.debug("No config files found, using defaults")
        return {}

    merged: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        merged.update(read_config_file(path))

    return interpolate_tree(merged)
