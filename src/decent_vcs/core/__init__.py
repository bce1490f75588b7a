"""Core remote-service client for decent_vcs."""

from .client import ApiClient

__all__ = ["ApiClient"]
