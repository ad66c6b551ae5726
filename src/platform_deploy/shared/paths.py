"""Path management for platform-deploy.

Every file the deployment reads or writes lives under the repository root:

    <root>/cluster/    provisioning inputs, generated kubeconfig, key material, root CA
    <root>/services/   manifests and chart values applied by the phases
    <root>/scripts/    the persisted credential store (.env)
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

# Name of the generated cluster-access credential (written by phase 0)
KUBECONFIG_NAME = "kubeconfig-rke2.yaml"

# Secret-store key material (shares, threshold, root token)
KEY_MATERIAL_NAME = "vault-init.json"

# Offline root of trust
ROOT_CA_CERT_NAME = "root-ca.pem"
ROOT_CA_KEY_NAME = "root-ca-key.pem"


@dataclass(frozen=True)
class DeployPaths:
    """Resolved filesystem layout for one repository checkout."""

    root: Path

    @classmethod
    def from_root(cls, root: str | Path) -> DeployPaths:
        return cls(root=Path(root).expanduser().resolve())

    @property
    def cluster_dir(self) -> Path:
        return self.root / "cluster"

    @property
    def services_dir(self) -> Path:
        return self.root / "services"

    @property
    def scripts_dir(self) -> Path:
        return self.root / "scripts"

    @property
    def env_file(self) -> Path:
        return self.scripts_dir / ".env"

    @property
    def kubeconfig(self) -> Path:
        return self.cluster_dir / KUBECONFIG_NAME

    @property
    def tfvars(self) -> Path:
        return self.cluster_dir / "terraform.tfvars"

    @property
    def key_material(self) -> Path:
        return self.cluster_dir / KEY_MATERIAL_NAME

    @property
    def root_ca_cert(self) -> Path:
        return self.cluster_dir / ROOT_CA_CERT_NAME

    @property
    def root_ca_key(self) -> Path:
        return self.cluster_dir / ROOT_CA_KEY_NAME

    @property
    def log_file(self) -> Path:
        return self.cluster_dir / "deploy.log"

    def service(self, *parts: str) -> Path:
        """Path to a file under services/ (e.g. service("vault", "vault-values.yaml"))."""
        return self.services_dir.joinpath(*parts)

    def ensure_dirs(self) -> None:
        """Create the writable directories if missing.

        cluster/ holds key material and the root key, so it is owner-only (0o700).
        """
        self.cluster_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        self.scripts_dir.mkdir(parents=True, exist_ok=True)


def write_restricted(path: Path, content: str | bytes, mode: int = 0o600) -> None:
    """Write a file and restrict its permissions.

    Args:
        path: Destination file
        content: Text or bytes to write
        mode: Permission bits applied after writing (default owner read/write)
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    # Restrict before writing so secrets are never briefly world-readable
    path.touch(mode=0o600, exist_ok=True)
    path.chmod(0o600)
    if isinstance(content, bytes):
        path.write_bytes(content)
    else:
        path.write_text(content)
    path.chmod(mode)
