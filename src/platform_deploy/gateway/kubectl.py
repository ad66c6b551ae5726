"""Cluster API access through kubectl.

Thin wrapper over kubectl for create/patch/delete/wait/exec/render. Reads return
None for not-found; mutations return (success, message) tuples.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from ..shared.logging import get_logger
from .process import CommandResult, CommandRunner

logger = get_logger(__name__)


class ClusterAPI:
    """Run kubectl against one cluster."""

    def __init__(self, kubeconfig: str | Path | None = None, runner: CommandRunner | None = None):
        """Initialize cluster API client.

        Args:
            kubeconfig: Path to kubeconfig file (None uses kubectl's default)
            runner: Command runner (injectable for tests)
        """
        self.kubeconfig = str(kubeconfig) if kubeconfig else None
        self.runner = runner or CommandRunner()

    def _kubectl_cmd(self) -> list[str]:
        """Build base kubectl command."""
        cmd = ["kubectl"]
        if self.kubeconfig:
            cmd.extend(["--kubeconfig", self.kubeconfig])
        return cmd

    def kubectl(self, *args: str, input: str | None = None, timeout: float | None = 600) -> CommandResult:
        """Run an arbitrary kubectl command."""
        return self.runner.run(self._kubectl_cmd() + list(args), input=input, timeout=timeout)

    # -------------------------------------------------------------------------
    # Apply / render
    # -------------------------------------------------------------------------

    def apply_file(self, path: Path) -> tuple[bool, str]:
        """Apply one manifest file or a directory of manifests."""
        logger.info("apply", path=str(path))
        result = self.kubectl("apply", "-f", str(path))
        if not result.ok:
            return False, f"Failed to apply {path.name}: {result.message}"
        return True, result.stdout.strip()

    def apply_text(self, manifest: str, description: str = "manifest") -> tuple[bool, str]:
        """Apply manifest text via stdin."""
        logger.info("apply", manifest=description)
        result = self.kubectl("apply", "-f", "-", input=manifest)
        if not result.ok:
            return False, f"Failed to apply {description}: {result.message}"
        return True, result.stdout.strip()

    def render_kustomize(self, directory: Path) -> str | None:
        """Render a kustomization directory; None on failure."""
        result = self.kubectl("kustomize", str(directory))
        return result.stdout if result.ok else None

    def apply_kustomize(self, directory: Path, transform=None) -> tuple[bool, str]:
        """Render a kustomization, optionally transform the text, then apply it.

        Args:
            directory: Directory containing kustomization.yaml
            transform: Optional callable applied to the rendered text (placeholder
                substitution)
        """
        rendered = self.render_kustomize(directory)
        if rendered is None:
            return False, f"Failed to render {directory}"
        if transform is not None:
            rendered = transform(rendered)
        return self.apply_text(rendered, str(directory))

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    def get_json(self, kind: str, name: str | None = None, namespace: str | None = None,
                 selector: str | None = None) -> dict[str, Any] | None:
        """Get a resource (or list) as parsed JSON. None if absent or unreadable."""
        args = ["get", kind]
        if name:
            args.append(name)
        if namespace:
            args.extend(["-n", namespace])
        if selector:
            args.extend(["-l", selector])
        args.extend(["-o", "json"])
        result = self.kubectl(*args, timeout=60)
        if not result.ok:
            return None
        return result.json()

    def exists(self, kind: str, name: str, namespace: str | None = None) -> bool:
        args = ["get", kind, name]
        if namespace:
            args.extend(["-n", namespace])
        return self.kubectl(*args, timeout=60).ok

    def list_pods(self, namespace: str, selector: str | None = None) -> list[dict[str, Any]]:
        """List pods with their name, phase and readiness."""
        data = self.get_json("pods", namespace=namespace, selector=selector) or {}
        pods = []
        for item in data.get("items", []):
            conditions = item.get("status", {}).get("conditions", [])
            ready = any(c.get("type") == "Ready" and c.get("status") == "True" for c in conditions)
            pods.append(
                {
                    "name": item.get("metadata", {}).get("name", ""),
                    "phase": item.get("status", {}).get("phase", "Unknown"),
                    "ready": ready,
                }
            )
        return pods

    def list_nodes(self) -> list[dict[str, Any]]:
        """List nodes with their name and readiness."""
        data = self.get_json("nodes") or {}
        nodes = []
        for item in data.get("items", []):
            conditions = item.get("status", {}).get("conditions", [])
            nodes.append(
                {
                    "name": item.get("metadata", {}).get("name", ""),
                    "ready": any(
                        c.get("type") == "Ready" and c.get("status") == "True" for c in conditions
                    ),
                }
            )
        return nodes

    def count_pods(self, namespace: str, selector: str | None = None, phase: str = "Running") -> int:
        return sum(1 for p in self.list_pods(namespace, selector) if p["phase"] == phase)

    def condition_status(self, kind: str, name: str, condition: str = "Ready",
                         namespace: str | None = None) -> str | None:
        """Status ("True"/"False"/"Unknown") of one status condition, None if absent."""
        data = self.get_json(kind, name, namespace)
        if not data:
            return None
        for c in data.get("status", {}).get("conditions", []):
            if c.get("type") == condition:
                return c.get("status")
        return None

    # -------------------------------------------------------------------------
    # Mutate
    # -------------------------------------------------------------------------

    def create_namespace(self, namespace: str) -> tuple[bool, str]:
        """Create a namespace if it does not exist."""
        if self.exists("namespace", namespace):
            return True, f"Namespace '{namespace}' already exists"
        result = self.kubectl("create", "namespace", namespace)
        if not result.ok:
            return False, f"Failed to create namespace: {result.message}"
        return True, f"Namespace '{namespace}' created"

    def patch(self, kind: str, name: str, patch: dict[str, Any], namespace: str | None = None,
              patch_type: str = "merge") -> tuple[bool, str]:
        args = ["patch", kind, name, f"--type={patch_type}", "-p", json.dumps(patch)]
        if namespace:
            args.extend(["-n", namespace])
        result = self.kubectl(*args)
        if not result.ok:
            return False, f"Failed to patch {kind}/{name}: {result.message}"
        return True, result.stdout.strip()

    def delete(self, kind: str, name: str, namespace: str | None = None,
               wait: bool = True) -> tuple[bool, str]:
        """Delete a resource; absent resources count as success."""
        args = ["delete", kind, name, "--ignore-not-found"]
        if namespace:
            args.extend(["-n", namespace])
        if not wait:
            args.append("--wait=false")
        result = self.kubectl(*args)
        if not result.ok:
            return False, f"Failed to delete {kind}/{name}: {result.message}"
        return True, f"{kind}/{name} deleted"

    def label_node(self, node: str, label: str) -> tuple[bool, str]:
        result = self.kubectl("label", "node", node, label, "--overwrite")
        return result.ok, result.message

    def rollout_restart(self, kind: str, name: str, namespace: str,
                        timeout_seconds: int = 120) -> tuple[bool, str]:
        result = self.kubectl("rollout", "restart", f"{kind}/{name}", "-n", namespace)
        if not result.ok:
            return False, result.message
        status = self.kubectl(
            "rollout", "status", f"{kind}/{name}", "-n", namespace,
            f"--timeout={timeout_seconds}s",
            timeout=timeout_seconds + 30,
        )
        return status.ok, status.message

    def wait(self, resource: str, condition: str, namespace: str | None = None,
             timeout_seconds: int = 300, selector: str | None = None) -> tuple[bool, str]:
        """kubectl wait --for=<condition> (e.g. condition=available)."""
        args = ["wait", f"--for={condition}", resource, f"--timeout={timeout_seconds}s"]
        if namespace:
            args.extend(["-n", namespace])
        if selector:
            args.extend(["-l", selector])
        result = self.kubectl(*args, timeout=timeout_seconds + 30)
        if not result.ok:
            return False, f"{resource} not {condition}: {result.message}"
        return True, result.stdout.strip()

    def exec(self, namespace: str, pod: str, command: list[str], input: str | None = None,
             env: dict[str, str] | None = None, timeout: float | None = 120) -> CommandResult:
        """Run a command inside a pod. env is injected with `env K=V` inside the pod."""
        args = ["exec"]
        if input is not None:
            args.append("-i")
        args.extend(["-n", namespace, pod, "--"])
        if env:
            args.append("env")
            args.extend(f"{k}={v}" for k, v in env.items())
        args.extend(command)
        return self.kubectl(*args, input=input, timeout=timeout)

    def create_token(self, service_account: str, namespace: str, duration: str = "8760h") -> str | None:
        """Create a service account token; None if the API refuses."""
        result = self.kubectl("create", "token", service_account, "-n", namespace,
                              f"--duration={duration}")
        token = result.stdout.strip()
        return token if result.ok and token else None

    def create_secret_from_literals(self, name: str, namespace: str,
                                    literals: dict[str, str]) -> tuple[bool, str]:
        """Create or update a generic secret (dry-run render piped to apply)."""
        args = ["create", "secret", "generic", name, "-n", namespace, "--dry-run=client", "-o", "yaml"]
        args.extend(f"--from-literal={k}={v}" for k, v in literals.items())
        rendered = self.kubectl(*args)
        if not rendered.ok:
            return False, rendered.message
        return self.apply_text(rendered.stdout, f"secret/{name}")

    def create_configmap_from_literals(self, name: str, namespace: str,
                                       literals: dict[str, str]) -> tuple[bool, str]:
        """Create or update a configmap (dry-run render piped to apply)."""
        args = ["create", "configmap", name, "-n", namespace, "--dry-run=client", "-o", "yaml"]
        args.extend(f"--from-literal={k}={v}" for k, v in literals.items())
        rendered = self.kubectl(*args)
        if not rendered.ok:
            return False, rendered.message
        return self.apply_text(rendered.stdout, f"configmap/{name}")
