"""CLI commands."""

from .deploy import credentials, deploy, list_phases

__all__ = ["credentials", "deploy", "list_phases"]
