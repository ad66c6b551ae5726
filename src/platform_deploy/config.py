"""Deployment tool configuration.

Handles the tool-level settings stored in platform-deploy.yaml at the repository
root. Platform values (domain, passwords, feature flags) are not configured here;
they belong to the credential store (see credentials.py).

Supports environment variable overrides and tracks where each value came from.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .errors import FatalError

CONFIG_FILE_NAME = "platform-deploy.yaml"
ENV_PREFIX = "PLATFORM_DEPLOY_"


@dataclass
class DeployConfig:
    """Tool configuration."""

    root: str = "."
    vault_namespace: str = "vault"
    vault_replicas: int = 3
    key_shares: int = 5
    key_threshold: int = 3
    vault_chart_version: str = "0.32.0"
    cert_manager_version: str = "v1.19.3"
    cnpg_chart_version: str = "0.27.1"
    harbor_chart_version: str = "1.18.2"
    kps_chart_version: str = "72.6.2"
    cluster_active_timeout: int = 1800
    log_level: str = "info"

    # Track where each value came from
    _sources: dict[str, str] = field(default_factory=dict)

    def get_source(self, key: str) -> str:
        """Get the source of a config value."""
        return self._sources.get(key, "default")

    def validate(self) -> None:
        """Reject settings that can never produce a working store."""
        if self.vault_replicas < 1:
            raise FatalError(
                f"vault_replicas must be at least 1, got {self.vault_replicas}",
                f"Fix vault_replicas in {CONFIG_FILE_NAME}",
            )
        if not 1 <= self.key_threshold <= self.key_shares:
            raise FatalError(
                f"key_threshold ({self.key_threshold}) must be between 1 and "
                f"key_shares ({self.key_shares})",
                f"Fix key_shares/key_threshold in {CONFIG_FILE_NAME}",
            )


def _config_keys() -> list[tuple[str, type]]:
    return [(f.name, f.type) for f in fields(DeployConfig) if not f.name.startswith("_")]


def _coerce(key: str, raw: Any, kind: Any) -> Any:
    if kind in (int, "int"):
        try:
            return int(raw)
        except (TypeError, ValueError):
            raise FatalError(f"Config value '{key}' must be an integer, got {raw!r}")
    return str(raw)


def load_config(config_path: str | Path | None = None) -> DeployConfig:
    """Load tool configuration.

    Precedence (highest to lowest):
    1. Environment variables (PLATFORM_DEPLOY_<KEY>)
    2. Config file (explicit path, else ./platform-deploy.yaml)
    3. Defaults

    Args:
        config_path: Optional explicit config file. A missing explicit file is fatal;
            a missing default file is not.

    Returns:
        DeployConfig with values and sources
    """
    config = DeployConfig()
    sources: dict[str, str] = {key: "default" for key, _ in _config_keys()}

    path = Path(config_path) if config_path else Path.cwd() / CONFIG_FILE_NAME
    if config_path and not path.exists():
        raise FatalError(f"Config file not found: {path}")

    if path.exists():
        try:
            with open(path) as f:
                file_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise FatalError(f"Invalid YAML in {path}: {e}")
        if not isinstance(file_config, dict):
            raise FatalError(f"{path} must contain a mapping of settings")

        for key, kind in _config_keys():
            if key in file_config:
                setattr(config, key, _coerce(key, file_config[key], kind))
                sources[key] = "config file"

    for key, kind in _config_keys():
        env_name = f"{ENV_PREFIX}{key.upper()}"
        if os.environ.get(env_name):
            setattr(config, key, _coerce(key, os.environ[env_name], kind))
            sources[key] = "environment"

    config._sources = sources
    config.validate()
    return config
