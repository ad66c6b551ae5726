"""Shared modules for platform-deploy.

Logging setup and filesystem layout used by every phase.
"""

from .logging import configure_logging, get_logger
from .paths import DeployPaths, write_restricted

__all__ = [
    # Paths
    "DeployPaths",
    "write_restricted",
    # Logging
    "configure_logging",
    "get_logger",
]
