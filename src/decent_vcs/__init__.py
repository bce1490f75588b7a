"""Client-side synchronization engine for the Decent version-control service."""

__version__ = "0.4.0"
