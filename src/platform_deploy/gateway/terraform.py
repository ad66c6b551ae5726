"""Provisioning tool access (terraform).

Covers apply/output plus the durable-state sync used to preserve generated
artifacts (key material, root CA, kubeconfigs) across rebuilds of the workstation.
The cluster directory may ship a wrapper script (terraform.sh) that owns the
backend and secret sync; when present every call goes through it.
"""

from __future__ import annotations

import re
from pathlib import Path

from ..shared.logging import get_logger
from .process import CommandResult, CommandRunner

logger = get_logger(__name__)

WRAPPER_SCRIPT = "terraform.sh"


class ProvisioningTool:
    """Run terraform in the cluster directory."""

    def __init__(self, cluster_dir: Path, runner: CommandRunner | None = None):
        """Initialize provisioning tool.

        Args:
            cluster_dir: Directory holding the terraform configuration
            runner: Command runner (injectable for tests)
        """
        self.cluster_dir = cluster_dir
        self.runner = runner or CommandRunner(cwd=cluster_dir)

    @property
    def wrapper(self) -> Path:
        return self.cluster_dir / WRAPPER_SCRIPT

    def _run(self, *args: str, timeout: float = 3600) -> CommandResult:
        if self.wrapper.exists():
            cmd = [str(self.wrapper), *args]
        else:
            cmd = ["terraform", *args]
        return self.runner.run(cmd, timeout=timeout, cwd=self.cluster_dir)

    def apply(self) -> tuple[bool, str]:
        """Create or converge the infrastructure."""
        if self.wrapper.exists():
            result = self._run("apply")
        else:
            init = self._run("init", "-input=false")
            if not init.ok:
                return False, f"terraform init failed: {init.message}"
            result = self._run("apply", "-auto-approve", "-input=false")
        if not result.ok:
            return False, f"terraform apply failed: {result.message}"
        return True, "Infrastructure applied"

    def output(self, name: str) -> str | None:
        """Read one output value by name; None if missing."""
        result = self.runner.run(
            ["terraform", "output", "-raw", name], timeout=120, cwd=self.cluster_dir
        )
        if not result.ok:
            return None
        return result.stdout.strip() or None

    def push_secrets(self) -> tuple[bool, str]:
        """Copy local generated artifacts to the durable state store."""
        if not self.wrapper.exists():
            return False, f"{WRAPPER_SCRIPT} not found; durable state sync unavailable"
        result = self._run("push-secrets", timeout=300)
        return result.ok, result.message or "Secrets pushed"

    def pull_secrets(self) -> tuple[bool, str]:
        """Restore generated artifacts from the durable state store."""
        if not self.wrapper.exists():
            return False, f"{WRAPPER_SCRIPT} not found; durable state sync unavailable"
        result = self._run("pull-secrets", timeout=300)
        return result.ok, result.message or "Secrets pulled"

    def missing_tfvars(self, required: list[str]) -> list[str]:
        """Names in required that terraform.tfvars does not set (all of them if absent)."""
        return [name for name in required if not self.tfvar(name)]

    def tfvar(self, name: str, tfvars: Path | None = None) -> str | None:
        """Read a simple `name = "value"` assignment from terraform.tfvars."""
        path = tfvars or self.cluster_dir / "terraform.tfvars"
        if not path.exists():
            return None
        pattern = re.compile(rf'^\s*{re.escape(name)}\s*=\s*"?([^"\n]*)"?\s*$')
        for line in path.read_text().splitlines():
            match = pattern.match(line)
            if match:
                return match.group(1).strip()
        return None
