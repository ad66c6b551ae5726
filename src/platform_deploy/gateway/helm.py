"""Package deployment through helm.

install_or_upgrade() keyed by release name makes every service-install step
idempotent without an existence check at each call site.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

from ..shared.logging import get_logger
from .process import CommandRunner

logger = get_logger(__name__)


class PackageDeployer:
    """Run helm against one cluster."""

    def __init__(
        self,
        kubeconfig: str | Path | None = None,
        runner: CommandRunner | None = None,
        airgapped: bool = False,
        overrides: Mapping[str, str] | None = None,
    ):
        """Initialize deployer.

        Args:
            kubeconfig: Path to kubeconfig file
            runner: Command runner (injectable for tests)
            airgapped: Resolve charts to OCI overrides and skip repo management
            overrides: OCI chart references by credential key (HELM_OCI_*),
                normally the resolved CredentialSet
        """
        self.kubeconfig = str(kubeconfig) if kubeconfig else None
        self.runner = runner or CommandRunner()
        self.airgapped = airgapped
        self.overrides = overrides if overrides is not None else {}

    def _helm_cmd(self) -> list[str]:
        """Build base helm command."""
        cmd = ["helm"]
        if self.kubeconfig:
            cmd.extend(["--kubeconfig", self.kubeconfig])
        return cmd

    def repo_add(self, name: str, url: str) -> tuple[bool, str]:
        """Add (or refresh) a chart repository. No-op when air-gapped."""
        if self.airgapped:
            return True, f"Air-gapped: skipping helm repo add '{name}'"
        result = self.runner.run(self._helm_cmd() + ["repo", "add", name, url, "--force-update"])
        if not result.ok:
            return False, f"Failed to add helm repo {name}: {result.message}"
        self.runner.run(self._helm_cmd() + ["repo", "update", name])
        return True, f"Helm repo '{name}' ready"

    def resolve_chart(self, online_chart: str, override_key: str) -> str:
        """Chart reference to install: OCI override when air-gapped, else the repo chart.

        Raises:
            KeyError: Air-gapped and the override is unset.
        """
        if not self.airgapped:
            return online_chart
        oci_url = self.overrides.get(override_key, "")
        if not oci_url:
            raise KeyError(override_key)
        return oci_url

    def status(self, release: str, namespace: str) -> str | None:
        """Release status (e.g. "deployed"), None when the release does not exist."""
        result = self.runner.run(
            self._helm_cmd() + ["status", release, "-n", namespace, "-o", "json"], timeout=60
        )
        if not result.ok:
            return None
        data = result.json() or {}
        return data.get("info", {}).get("status", "unknown")

    def install(self, release: str, chart: str, namespace: str, *args: str,
                timeout: float = 900) -> tuple[bool, str]:
        result = self.runner.run(
            self._helm_cmd()
            + ["install", release, chart, "-n", namespace, "--create-namespace"]
            + list(args),
            timeout=timeout,
        )
        if not result.ok:
            return False, f"Failed to install {release}: {result.message}"
        return True, f"Installed {release}"

    def upgrade(self, release: str, chart: str, namespace: str, *args: str,
                timeout: float = 900) -> tuple[bool, str]:
        result = self.runner.run(
            self._helm_cmd() + ["upgrade", release, chart, "-n", namespace] + list(args),
            timeout=timeout,
        )
        if not result.ok:
            return False, f"Failed to upgrade {release}: {result.message}"
        return True, f"Upgraded {release}"

    def install_or_upgrade(self, release: str, chart: str, namespace: str, *args: str,
                           timeout: float = 900) -> tuple[bool, str]:
        """Upgrade in place if the named release exists, otherwise install.

        Args:
            release: Release name
            chart: Chart reference (repo/chart, OCI URL or local path)
            namespace: Target namespace (created on install)
            *args: Extra helm flags (--version, -f values.yaml, --set ...)
        """
        if self.status(release, namespace) is not None:
            logger.info("helm upgrade", release=release, namespace=namespace)
            return self.upgrade(release, chart, namespace, *args, timeout=timeout)
        logger.info("helm install", release=release, namespace=namespace, chart=chart)
        return self.install(release, chart, namespace, *args, timeout=timeout)
