"""Runtime configuration for the decent client.

Reads server, credential and storage-transfer settings from CLI args,
environment variables, .env files, and YAML config file fallbacks.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    DECENT_SERVER_HOST: Metadata service URL (default: http://localhost:8080)
    DECENT_ACCESS_TOKEN: Bearer token for the metadata service
    DECENT_VERBOSE: Enable verbose output (optional, default: false)
    DECENT_PART_SIZE: Multipart upload part size in bytes (default: 5 MiB)
    DECENT_UPLOAD_POOL_SIZE: Parallel uploads per batch (default: 128)
    DECENT_DOWNLOAD_POOL_SIZE: Parallel downloads per batch (default: 32)
    DECENT_BATCH_SIZE: Objects presigned and transferred per batch (default: 8)
    DECENT_COMPRESSION: Compress objects with zstd on upload (default: true)
"""

import logging
import os
from dataclasses import dataclass
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

DEFAULT_SERVER_HOST = "http://localhost:8080"
DEFAULT_PART_SIZE = 5 * 1024 * 1024


@dataclass
class Config:
    server_host: str = DEFAULT_SERVER_HOST
    access_token: str = ""
    verbose: bool = False
    part_size: int = DEFAULT_PART_SIZE
    multipart_threshold: int = DEFAULT_PART_SIZE
    upload_pool_size: int = 128
    download_pool_size: int = 32
    batch_size: int = 8
    compression: bool = True
    compression_level: int = 3
    show_progress: bool = True
    timeout: float = 60.0


# (env var, field name, minimum, maximum)
_NUMERIC_SETTINGS: list[tuple[str, str, int, int]] = [
    ("DECENT_PART_SIZE", "part_size", 5 * 1024 * 1024, 5 * 1024**3),
    ("DECENT_UPLOAD_POOL_SIZE", "upload_pool_size", 1, 1024),
    ("DECENT_DOWNLOAD_POOL_SIZE", "download_pool_size", 1, 1024),
    ("DECENT_BATCH_SIZE", "batch_size", 1, 1000),
    ("DECENT_COMPRESSION_LEVEL", "compression_level", 1, 22),
]


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    The access token is not checked here; a missing token only fails
    once a command actually talks to the server.

    Args:
        config: Config instance to validate.

    Raises:
        ValueError: If the server URL is malformed or a size is out of range.
    """
    config.server_host = config.server_host.strip()

    if not config.server_host.startswith(("http://", "https://")):
        raise ValueError(
            f"Invalid server host '{config.server_host}': must start with http:// or https://"
        )

    parsed = urlparse(config.server_host)
    if not parsed.hostname:
        raise ValueError(
            f"Invalid server host '{config.server_host}': URL must include a hostname"
        )

    config.server_host = config.server_host.removesuffix("/")

    for _env, name, low, high in _NUMERIC_SETTINGS:
        value = getattr(config, name)
        if not (low <= value <= high):
            raise ValueError(
                f"Invalid {name} {value}: must be between {low} and {high}"
            )

    if config.multipart_threshold < config.part_size:
        raise ValueError(
            "multipart_threshold cannot be smaller than part_size"
        )


def _get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def load_config(
    server_host: str | None = None,
    access_token: str | None = None,
    verbose: bool = False,
    show_progress: bool | None = None,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        server_host: Override server URL (CLI flag).
        access_token: Override access token.
        verbose: Enable verbose logging (CLI flag).
        show_progress: Override progress bar display.
        yaml_fallbacks: Flat dict of values from the YAML config file,
            keyed by ``Config`` field name.

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If a value from any source is invalid.
    """
    fb = yaml_fallbacks or {}

    final_host = (
        server_host
        or os.getenv("DECENT_SERVER_HOST")
        or fb.get("server_host")
        or DEFAULT_SERVER_HOST
    )
    final_token = (
        access_token
        or os.getenv("DECENT_ACCESS_TOKEN")
        or fb.get("access_token")
        or ""
    )

    if verbose:
        final_verbose = True
    else:
        env_verbose = _get_bool_env("DECENT_VERBOSE")
        if env_verbose is not None:
            final_verbose = env_verbose
        else:
            final_verbose = bool(fb.get("verbose", False))

    env_compression = _get_bool_env("DECENT_COMPRESSION")
    if env_compression is not None:
        final_compression = env_compression
    else:
        final_compression = bool(fb.get("compression", True))

    if show_progress is not None:
        final_progress = show_progress
    else:
        final_progress = bool(fb.get("show_progress", True))

    numeric: dict[str, int] = {}
    for env_name, field_name, low, high in _NUMERIC_SETTINGS:
        raw = os.getenv(env_name)
        if raw is not None:
            try:
                numeric[field_name] = int(raw)
            except ValueError:
                raise ValueError(
                    f"Invalid {env_name} '{raw}': must be a number between {low} and {high}"
                ) from None
        elif field_name in fb:
            numeric[field_name] = int(fb[field_name])

    part_size = numeric.get("part_size", DEFAULT_PART_SIZE)
    threshold = int(fb.get("multipart_threshold", part_size))

    config = Config(
        server_host=final_host,
        access_token=final_token.strip(),
        verbose=final_verbose,
        multipart_threshold=max(threshold, part_size),
        compression=final_compression,
        show_progress=final_progress,
        timeout=float(fb.get("timeout", 60.0)),
        **numeric,
    )

    validate_config(config)

    return config
