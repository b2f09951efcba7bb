"""Core utilities for the edge application."""

from edge.app.core.config import settings
from edge.app.core.logging import get_logger, setup_logging

__all__ = [
    "settings",
    "get_logger",
    "setup_logging",
]
