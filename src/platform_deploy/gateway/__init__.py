"""Collaborator gateway: one class per external tool or service API."""

from .helm import PackageDeployer
from .kubectl import ClusterAPI
from .process import CommandResult, CommandRunner
from .rest import (
    ApiResponse,
    BearerTokenClient,
    ClusterManagerClient,
    IdentityProviderClient,
    RegistryClient,
    SourceControlClient,
)
from .terraform import ProvisioningTool
from .vault import ReplicaStatus, SecretStoreCLI

__all__ = [
    "ApiResponse",
    "BearerTokenClient",
    "ClusterAPI",
    "ClusterManagerClient",
    "CommandResult",
    "CommandRunner",
    "IdentityProviderClient",
    "PackageDeployer",
    "ProvisioningTool",
    "RegistryClient",
    "ReplicaStatus",
    "SecretStoreCLI",
    "SourceControlClient",
]
