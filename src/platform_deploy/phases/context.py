"""Run state threaded through every phase step."""

from __future__ import annotations

import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import click

from ..config import DeployConfig
from ..credentials import CredentialSet
from ..errors import AdvisoryLog, FatalError
from ..gateway.helm import PackageDeployer
from ..gateway.kubectl import ClusterAPI
from ..gateway.process import CommandRunner
from ..gateway.rest import (
    ClusterManagerClient,
    IdentityProviderClient,
    RegistryClient,
    SourceControlClient,
)
from ..gateway.terraform import ProvisioningTool
from ..gateway.vault import SecretStoreCLI
from ..poller import CLUSTER_INTERVAL, SLOW_INTERVAL, ConditionPoller, WaitResult, WaitSpec
from ..secrets.bootstrap import BootstrapSettings, SecretBootstrap
from ..secrets.keys import KeyMaterial
from ..secrets.pki import RootCertificateAuthority
from ..shared.logging import get_logger
from ..shared.paths import DeployPaths
from ..substitution import Substitutor

logger = get_logger(__name__)


@dataclass
class DeploymentRun:
    """One invocation: requested range, flags and per-phase timings."""

    start_phase: int = 0
    stop_phase: int | None = None
    skip_provisioning: bool = False
    started_at: datetime = field(default_factory=datetime.now)
    kubeconfig: Path | None = None
    timings: dict[int, float] = field(default_factory=dict)
    _clock_start: float = field(default_factory=time.monotonic)

    @property
    def resuming(self) -> bool:
        return self.start_phase > 0 or self.skip_provisioning

    def includes(self, ordinal: int) -> bool:
        """Whether a phase falls inside the requested range."""
        if ordinal == 0 and self.skip_provisioning:
            return False
        if ordinal < self.start_phase:
            return False
        return self.stop_phase is None or ordinal <= self.stop_phase

    def elapsed(self) -> float:
        return time.monotonic() - self._clock_start


def expect(result: tuple[bool, str], what: str) -> str:
    """Unwrap a (success, message) gateway result, raising FatalError on failure."""
    ok, message = result
    if not ok:
        raise FatalError(f"{what}: {message}")
    return message


@dataclass(frozen=True)
class RunContext:
    """Everything a step needs. Built once at startup.

    Only `credentials` changes during a run, and only by learning new values.
    """

    config: DeployConfig
    paths: DeployPaths
    credentials: CredentialSet
    substitutor: Substitutor
    poller: ConditionPoller
    advisories: AdvisoryLog
    terraform: ProvisioningTool
    cluster: ClusterAPI
    helm: PackageDeployer
    store: SecretStoreCLI
    echo: Callable[[str], None] = click.echo

    @classmethod
    def build(
        cls,
        config: DeployConfig,
        paths: DeployPaths,
        credentials: CredentialSet,
        runner: CommandRunner | None = None,
    ) -> RunContext:
        """Wire real gateways for a repository checkout."""
        runner = runner or CommandRunner()
        cluster = ClusterAPI(paths.kubeconfig, runner=runner)
        return cls(
            config=config,
            paths=paths,
            credentials=credentials,
            substitutor=Substitutor(credentials),
            poller=ConditionPoller(),
            advisories=AdvisoryLog(),
            terraform=ProvisioningTool(paths.cluster_dir, runner=runner),
            cluster=cluster,
            helm=PackageDeployer(paths.kubeconfig, runner=runner,
                                 airgapped=credentials.airgapped, overrides=credentials),
            store=SecretStoreCLI(cluster, namespace=config.vault_namespace),
        )

    # -------------------------------------------------------------------------
    # Secret store
    # -------------------------------------------------------------------------

    def root_ca(self) -> RootCertificateAuthority:
        return RootCertificateAuthority(self.paths.root_ca_cert, self.paths.root_ca_key)

    def bootstrap_settings(self) -> BootstrapSettings:
        return BootstrapSettings(
            domain=self.credentials.domain,
            org_name=self.credentials["ORG_NAME"],
            namespace=self.config.vault_namespace,
            replicas=self.config.vault_replicas,
            key_shares=self.config.key_shares,
            key_threshold=self.config.key_threshold,
        )

    def secret_bootstrap(self) -> SecretBootstrap:
        return SecretBootstrap(
            store=self.store,
            cluster=self.cluster,
            provisioning=self.terraform,
            root_ca=self.root_ca(),
            key_path=self.paths.key_material,
            settings=self.bootstrap_settings(),
            poller=self.poller,
            advisories=self.advisories,
        )

    def authenticate_store(self) -> None:
        """Load key material and authenticate the store client (later phases)."""
        material = KeyMaterial.load(self.paths.key_material)
        if material is None:
            raise FatalError(
                f"{self.paths.key_material} not found",
                "Run phase 2 first (platform-deploy deploy --from 2)",
            )
        self.store.token = material.root_token

    # -------------------------------------------------------------------------
    # REST clients
    # -------------------------------------------------------------------------

    def cluster_manager(self) -> ClusterManagerClient:
        url = self.terraform.tfvar("rancher_url")
        token = self.terraform.tfvar("rancher_token")
        if not url or not token:
            raise FatalError(
                "rancher_url and rancher_token must be set in terraform.tfvars",
                f"Edit {self.paths.tfvars}",
            )
        return ClusterManagerClient(url, token=token, insecure=True)

    def identity_provider(self) -> IdentityProviderClient:
        return IdentityProviderClient(f"https://keycloak.{self.credentials.domain}", insecure=True)

    def registry(self) -> RegistryClient:
        return RegistryClient(
            f"https://harbor.{self.credentials.domain}",
            auth=("admin", self.credentials["HARBOR_ADMIN_PASSWORD"]),
            insecure=True,
        )

    def source_control(self) -> SourceControlClient:
        return SourceControlClient(
            f"https://gitlab.{self.credentials.domain}",
            token=self.credentials.get("GITLAB_API_TOKEN"),
            insecure=True,
        )

    # -------------------------------------------------------------------------
    # Manifests
    # -------------------------------------------------------------------------

    def apply(self, *relative: str) -> None:
        """Apply service manifests as-is."""
        for rel in relative:
            expect(self.cluster.apply_file(self.paths.service(rel)), f"apply {rel}")

    def apply_substituted(self, *relative: str) -> None:
        """Apply service manifests after placeholder substitution."""
        for rel in relative:
            path = self.paths.service(rel)
            if not path.exists():
                raise FatalError(f"Manifest not found: {path}")
            text = self.substitutor.apply(path.read_text())
            expect(self.cluster.apply_text(text, rel), f"apply {rel}")

    def apply_kustomization(self, relative: str) -> None:
        """Render a kustomization, substitute placeholders, apply."""
        directory = self.paths.service(relative)
        expect(self.cluster.apply_kustomize(directory, transform=self.substitutor.apply),
               f"apply kustomization {relative}")

    @contextmanager
    def values_file(self, relative: str) -> Iterator[Path]:
        """Chart values with placeholders substituted, in a temporary 0600 file."""
        source = self.paths.service(relative)
        if not source.exists():
            raise FatalError(f"Values file not found: {source}")
        with tempfile.NamedTemporaryFile("w", suffix=".yaml", prefix="values-") as tmp:
            tmp.write(self.substitutor.apply_file(source))
            tmp.flush()
            yield Path(tmp.name)

    def install_chart(self, release: str, chart: str, oci_var: str, namespace: str,
                      *args: str, timeout: float = 900) -> None:
        """Install or upgrade a chart, resolving the OCI override when air-gapped."""
        try:
            reference = self.helm.resolve_chart(chart, oci_var)
        except KeyError:
            raise FatalError(
                f"AIRGAPPED=true but {oci_var} is not set",
                "Set the chart's OCI URL in the credential store",
            ) from None
        expect(self.helm.install_or_upgrade(release, reference, namespace, *args, timeout=timeout),
               f"helm {release}")

    # -------------------------------------------------------------------------
    # Waits
    # -------------------------------------------------------------------------

    def wait(self, predicate: Callable[[], object], description: str, timeout: float = 300,
             interval: float = 5.0) -> WaitResult:
        return self.poller.wait(predicate, WaitSpec(description, timeout, interval))

    def wait_pods_running(self, namespace: str, count: int, selector: str | None = None,
                          timeout: float = 300) -> WaitResult:
        return self.wait(
            lambda: self.cluster.count_pods(namespace, selector) >= count,
            f"{count} pod(s) running in {namespace}",
            timeout,
        )

    def wait_pods_ready(self, namespace: str, selector: str, timeout: float = 300) -> WaitResult:
        def ready():
            pods = self.cluster.list_pods(namespace, selector)
            return bool(pods) and all(p["ready"] for p in pods)

        return self.wait(ready, f"pods {selector} ready in {namespace}", timeout)

    def wait_deployment(self, namespace: str, name: str, timeout: float = 300) -> WaitResult:
        return self.wait(
            lambda: self.cluster.condition_status("deployment", name, "Available", namespace) == "True",
            f"deployment/{name} available in {namespace}",
            timeout,
        )

    def wait_cluster_issuer(self, name: str, timeout: float = 120) -> WaitResult:
        return self.wait(
            lambda: self.cluster.condition_status("clusterissuer", name) == "True",
            f"ClusterIssuer/{name} Ready",
            timeout,
        )

    def wait_cnpg_primary(self, namespace: str, cluster_name: str,
                          timeout: float = 600) -> WaitResult:
        def primary_ready():
            data = self.cluster.get_json("cluster", cluster_name, namespace) or {}
            if data.get("status", {}).get("phase") == "Cluster in healthy state":
                return True
            selector = f"cnpg.io/cluster={cluster_name},cnpg.io/instanceRole=primary"
            return self.cluster.count_pods(namespace, selector) >= 1

        return self.wait(primary_ready, f"CNPG {cluster_name} primary", timeout, SLOW_INTERVAL)

    def wait_release_deployed(self, release: str, namespace: str,
                              timeout: float = 300) -> WaitResult:
        return self.wait(
            lambda: self.helm.status(release, namespace) == "deployed",
            f"helm release {release} deployed",
            timeout,
        )

    def wait_tls_secret(self, namespace: str, name: str, timeout: float = 120) -> WaitResult:
        """Advisory wait: certificates may still be issuing."""
        result = self.wait(lambda: self.cluster.exists("secret", name, namespace),
                           f"TLS secret {namespace}/{name}", timeout)
        if not result.satisfied:
            self.advisories.add(f"TLS secret {namespace}/{name} not issued after {timeout:.0f}s")
        return result

    def wait_cluster_active(self, client: ClusterManagerClient, name: str) -> WaitResult:
        return self.wait(
            lambda: client.cluster_ready(name),
            f"cluster '{name}' Active",
            self.config.cluster_active_timeout,
            CLUSTER_INTERVAL,
        )
