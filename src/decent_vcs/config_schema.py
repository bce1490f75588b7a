"""Unified configuration schema for decent_vcs.

Defines Pydantic models for the YAML config structure with dedicated
sections for the metadata server, object-storage transfers and logging.
Includes an adapter that flattens the sections into the fallback dict
consumed by ``load_config()``.

Usage:
    from decent_vcs.config_schema import build_config, to_fallbacks

    raw = load_hierarchical_config()
    unified = build_config(raw)
    config = load_config(yaml_fallbacks=to_fallbacks(unified))
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class ServerConfig(BaseModel):
    """Metadata server connection settings.

    All fields are optional so env vars and CLI args can supply them.
    """

    host: str | None = Field(
        default=None, description="Metadata server URL"
    )
    timeout: float = Field(
        default=60.0, gt=0, description="HTTP timeout in seconds"
    )

    model_config = {"frozen": True}


class AuthConfig(BaseModel):
    """Credentials issued by the external login flow."""

    access_token: str | None = Field(
        default=None, description="Bearer token for the metadata server"
    )

    model_config = {"frozen": True}


class StorageConfig(BaseModel):
    """Object-storage transfer tuning."""

    part_size: int = Field(
        default=5 * 1024 * 1024,
        ge=5 * 1024 * 1024,
        description="Multipart upload part size in bytes",
    )
    multipart_threshold: int | None = Field(
        default=None,
        description="Size above which uploads use multipart (default: part_size)",
    )
    upload_pool_size: int = Field(
        default=128,
        ge=1,
        le=1024,
        description="Worker pool size for parallel uploads",
    )
    download_pool_size: int = Field(
        default=32,
        ge=1,
        le=1024,
        description="Worker pool size for parallel downloads",
    )
    batch_size: int = Field(
        default=8,
        ge=1,
        le=1000,
        description="Objects presigned and transferred per batch",
    )
    compression: bool = Field(
        default=True, description="Compress objects with zstd on upload"
    )
    compression_level: int = Field(default=3, ge=1, le=22)
    show_progress: bool = Field(
        default=True, description="Render transfer progress bars"
    )

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
        format: ``text`` or ``json``.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")
    format: str = Field(default="text", pattern="^(text|json)$")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Every section has sensible defaults, so ``UnifiedConfig()``
    (zero-config) is always valid.
    """

    server: ServerConfig = Field(default_factory=ServerConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Handles missing sections gracefully; anything absent gets defaults.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)


def to_fallbacks(unified: UnifiedConfig) -> dict:
    """Flatten a ``UnifiedConfig`` into ``load_config()`` fallbacks.

    Only values actually present in the YAML sections are emitted for
    the optional string fields, so env vars still win over defaults.
    """
    storage = unified.storage
    fallbacks: dict = {
        "timeout": unified.server.timeout,
        "part_size": storage.part_size,
        "multipart_threshold": storage.multipart_threshold
        or storage.part_size,
        "upload_pool_size": storage.upload_pool_size,
        "download_pool_size": storage.download_pool_size,
        "batch_size": storage.batch_size,
        "compression": storage.compression,
        "compression_level": storage.compression_level,
        "show_progress": storage.show_progress,
        "verbose": unified.logging.level.upper() == "DEBUG",
    }
    if unified.server.host:
        fallbacks["server_host"] = unified.server.host
    if unified.auth.access_token:
        fallbacks["access_token"] = unified.auth.access_token
    return fallbacks
