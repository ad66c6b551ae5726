"""Secret-store bootstrap state machine.

Drives a raft-backed secret store from freshly installed to serving as the
cluster's certificate authority:

    UNPROVISIONED -> INITIALIZED -> UNSEALING -> STANDALONE_UNSEALED
      -> RAFT_JOINING -> RAFT_FORMED -> ROOT_CA_ESTABLISHED
      -> INTERMEDIATE_CA_ESTABLISHED -> AUTH_BACKEND_CONFIGURED

Nothing about progress is persisted. probe() derives the current stage from the
store itself, and every transition in run() checks before it acts, so the whole
sequence can be re-entered at any point after an interruption.
"""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path

from ..errors import AdvisoryLog, FatalError
from ..gateway.kubectl import ClusterAPI
from ..gateway.terraform import ProvisioningTool
from ..gateway.vault import SecretStoreCLI
from ..poller import ConditionPoller, WaitSpec
from ..shared.logging import get_logger
from ..shared.paths import write_restricted
from .keys import KeyMaterial
from .pki import PKIChain, RootCertificateAuthority, build_chain

logger = get_logger(__name__)

KUBERNETES_ISSUER = "https://kubernetes.default.svc.cluster.local"
STORE_SERVICE_URL = "http://vault.vault.svc.cluster.local:8200"
POD_SELECTOR = "app.kubernetes.io/name=vault"


class BootstrapStage(IntEnum):
    """Bootstrap progress, in order."""

    UNPROVISIONED = 0
    INITIALIZED = 1
    UNSEALING = 2
    STANDALONE_UNSEALED = 3
    RAFT_JOINING = 4
    RAFT_FORMED = 5
    ROOT_CA_ESTABLISHED = 6
    INTERMEDIATE_CA_ESTABLISHED = 7
    AUTH_BACKEND_CONFIGURED = 8


@dataclass
class BootstrapSettings:
    """Parameters for one store installation."""

    domain: str
    org_name: str
    namespace: str = "vault"
    replicas: int = 3
    key_shares: int = 5
    key_threshold: int = 3
    mount: str = "pki_int"
    service_account: str = "vault"
    issuer_role: str = "cert-manager-issuer"
    issuer_service_account: str = "vault-issuer"
    issuer_namespace: str = "cert-manager"

    @property
    def signing_role(self) -> str:
        """PKI role name: the domain with dots spelled out (example-dot-com)."""
        return self.domain.replace(".", "-dot-")


ISSUER_POLICY_NAME = "cert-manager"

ISSUER_POLICY = """\
path "{mount}/sign/{role}" {{
  capabilities = ["create", "update"]
}}
path "{mount}/issue/{role}" {{
  capabilities = ["create", "update"]
}}
path "{mount}/cert/ca" {{
  capabilities = ["read"]
}}
"""


class SecretBootstrap:
    """Initialize, unseal, cluster and configure the secret store."""

    def __init__(
        self,
        store: SecretStoreCLI,
        cluster: ClusterAPI,
        provisioning: ProvisioningTool,
        root_ca: RootCertificateAuthority,
        key_path: Path,
        settings: BootstrapSettings,
        poller: ConditionPoller | None = None,
        advisories: AdvisoryLog | None = None,
    ):
        self.store = store
        self.cluster = cluster
        self.provisioning = provisioning
        self.root_ca = root_ca
        self.key_path = key_path
        self.settings = settings
        self.poller = poller or ConditionPoller()
        self.advisories = advisories if advisories is not None else AdvisoryLog()

    # -------------------------------------------------------------------------
    # Stage detection
    # -------------------------------------------------------------------------

    def probe(self) -> BootstrapStage:
        """Derive the current stage from the store's reported state."""
        primary = self.store.status(0)
        if not primary.reachable or not primary.initialized:
            return BootstrapStage.UNPROVISIONED
        if primary.sealed:
            return BootstrapStage.UNSEALING if primary.progress else BootstrapStage.INITIALIZED

        followers = [self.store.status(i) for i in range(1, self.settings.replicas)]
        if followers and not any(s.initialized for s in followers):
            return BootstrapStage.STANDALONE_UNSEALED
        if not all(s.unsealed for s in followers):
            return BootstrapStage.RAFT_JOINING

        material = KeyMaterial.load(self.key_path)
        if material is None or not self.root_ca.exists():
            return BootstrapStage.RAFT_FORMED
        self.store.token = material.root_token

        if not self.intermediate_configured():
            return BootstrapStage.ROOT_CA_ESTABLISHED
        if not self.auth_configured():
            return BootstrapStage.INTERMEDIATE_CA_ESTABLISHED
        return BootstrapStage.AUTH_BACKEND_CONFIGURED

    def _intermediate_imported(self) -> bool:
        data = self.store.read(f"{self.settings.mount}/cert/ca") or {}
        return "BEGIN CERTIFICATE" in (data.get("certificate") or "")

    def intermediate_configured(self) -> bool:
        """Mount present, signed intermediate imported and signing role readable."""
        s = self.settings
        engines = self.store.list_secrets_engines()
        if engines is None:
            raise FatalError("Cannot list secrets engines on the primary replica")
        return (
            f"{s.mount}/" in engines
            and self._intermediate_imported()
            and self.store.read(f"{s.mount}/roles/{s.signing_role}") is not None
        )

    def auth_configured(self) -> bool:
        """Kubernetes auth mounted and its config, issuer policy and issuer role all present."""
        s = self.settings
        methods = self.store.list_auth_methods()
        if methods is None:
            raise FatalError("Cannot list auth methods on the primary replica")
        return (
            "kubernetes/" in methods
            and bool(self.store.read("auth/kubernetes/config"))
            and self.store.read_policy(ISSUER_POLICY_NAME) is not None
            and self.store.read(f"auth/kubernetes/role/{s.issuer_role}") is not None
        )

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run(self) -> BootstrapStage:
        """Drive every transition up to AUTH_BACKEND_CONFIGURED.

        Raises:
            FatalError: the store cannot be initialized, unsealed or clustered,
                or the trust chain cannot be installed
        """
        self.wait_for_replicas()
        material = self.ensure_initialized()
        self.unseal_replica(0, material)
        self.join_and_unseal_followers(material)
        self.verify_consensus()

        outcome = self.root_ca.ensure(self.settings.org_name, pull=self.provisioning.pull_secrets)
        logger.info("root CA", outcome=outcome)

        if self.intermediate_configured():
            logger.info("intermediate CA already configured", mount=self.settings.mount)
        else:
            self.configure_intermediate()

        if self.auth_configured():
            logger.info("kubernetes auth already configured")
        else:
            self.configure_auth()

        ok, message = self.provisioning.push_secrets()
        if not ok:
            self.advisories.add(f"Key material not pushed to durable state: {message}",
                                step="push key material")

        return self.probe()

    def wait_for_replicas(self) -> None:
        """Replica pods Running (not Ready: sealed replicas fail readiness)."""
        replicas = self.settings.replicas
        self.poller.wait(
            lambda: self.cluster.count_pods(self.settings.namespace, POD_SELECTOR) >= replicas,
            WaitSpec(f"{replicas} secret store pod(s) running", timeout=300),
        ).raise_if_unsatisfied("Check the store's StatefulSet events and storage claims")

    def load_key_material(self) -> KeyMaterial:
        """Key material from disk, pulled from durable state if missing.

        Raises:
            FatalError: still missing after the pull
        """
        material = KeyMaterial.load(self.key_path)
        if material is None:
            logger.info("key material not found locally, pulling from durable state")
            self.provisioning.pull_secrets()
            material = KeyMaterial.load(self.key_path)
        if material is None:
            raise FatalError(
                f"Secret store is initialized but {self.key_path.name} was not found",
                f"Restore {self.key_path} from backup; the store cannot be unsealed without it",
            )
        self.store.token = material.root_token
        return material

    def ensure_initialized(self) -> KeyMaterial:
        """Initialize exactly once; otherwise load the existing key material."""
        result = self.poller.wait(
            lambda: self.store.status(0).reachable,
            WaitSpec("primary secret store replica reachable", timeout=120),
        )
        result.raise_if_unsatisfied(f"Check pod {self.store.replica(0)} logs")

        status = self.store.status(0)
        if status.initialized:
            logger.info("secret store already initialized")
            return self.load_key_material()

        data, message = self.store.initialize(self.settings.key_shares, self.settings.key_threshold)
        if data is None:
            raise FatalError(message, f"Inspect pod {self.store.replica(0)} logs")
        # The response as returned goes to disk before validation: the store is
        # initialized now and these keys exist nowhere else
        write_restricted(self.key_path, json.dumps(data, indent=2) + "\n")
        material = KeyMaterial.from_init_response(
            data, self.settings.key_shares, self.settings.key_threshold
        )
        material.save(self.key_path)
        logger.info("key material saved", path=str(self.key_path))
        self.store.token = material.root_token
        return material

    def unseal_replica(self, index: int, material: KeyMaterial) -> None:
        """Unseal one replica with at most `threshold` shares."""
        status = self.store.status(index)
        if status.unsealed:
            logger.info("replica already unsealed", replica=self.store.replica(index))
            return

        for key in material.unseal_keys():
            status = self.store.unseal(index, key)
            if not status.sealed:
                break

        if status.sealed:
            raise FatalError(
                f"{self.store.replica(index)} is still sealed after "
                f"{material.threshold} key share(s)",
                "Verify the key material matches this store",
            )
        logger.info("replica unsealed", replica=self.store.replica(index))

    def join_and_unseal_followers(self, material: KeyMaterial) -> None:
        for index in range(1, self.settings.replicas):
            status = self.store.status(index)
            if not status.initialized:
                ok, message = self.store.raft_join(index)
                logger.info("raft join", replica=self.store.replica(index), ok=ok, detail=message)
                self.poller.wait(
                    lambda i=index: self.store.status(i).initialized,
                    WaitSpec(f"{self.store.replica(index)} joined", timeout=30, interval=3),
                )
            self.unseal_replica(index, material)

    def verify_consensus(self) -> None:
        """All replicas unsealed and the peer list readable, else consensus never formed."""
        replicas = range(self.settings.replicas)
        result = self.poller.wait(
            lambda: all(self.store.status(i).unsealed for i in replicas),
            WaitSpec("all secret store replicas unsealed", timeout=120),
        )
        result.raise_if_unsatisfied("The raft cluster did not form; inspect follower pod logs")

        peers = self.store.list_peers()
        if peers is None:
            raise FatalError(
                "Cannot read the raft peer list; the consensus cluster did not form",
                "Inspect follower pod logs",
            )
        logger.info("raft cluster formed", peers=len(peers))

    def configure_intermediate(self) -> None:
        """Create the store-resident intermediate CA, signed locally by the root.

        Resumes a partial configuration: the CSR is generated and signed only
        while no intermediate has been imported, and the URL and role writes
        are repeated every time since both overwrite in place.
        """
        s = self.settings
        if not self.root_ca.exists():
            raise FatalError("Root CA files are missing; cannot configure the intermediate CA")
        if not self.store.status(0).unsealed:
            raise FatalError("Primary replica is sealed; cannot configure the intermediate CA")

        logger.info("configuring intermediate CA", mount=s.mount)
        ok, message = self.store.enable_secrets_engine("pki", path=s.mount)
        if not ok and "already in use" not in message:
            raise FatalError(f"Cannot enable {s.mount}: {message}")
        self.store.tune(s.mount, max_lease_ttl="87600h")

        if self._intermediate_imported():
            logger.info("signed intermediate already imported", mount=s.mount)
        else:
            self._import_signed_intermediate()

        ok, message = self.store.write(
            f"{s.mount}/config/urls",
            issuing_certificates=f"{STORE_SERVICE_URL}/v1/{s.mount}/ca",
            crl_distribution_points=f"{STORE_SERVICE_URL}/v1/{s.mount}/crl",
        )
        if not ok:
            raise FatalError(f"Configuring issuing URLs failed: {message}")

        ok, message = self.store.write(
            f"{s.mount}/roles/{s.signing_role}",
            allowed_domains=s.domain,
            allow_subdomains="true",
            max_ttl="720h",
            no_store="false",
            require_cn="false",
        )
        if not ok:
            raise FatalError(f"Creating signing role {s.signing_role} failed: {message}")
        logger.info("intermediate CA configured", role=s.signing_role)

    def _import_signed_intermediate(self) -> None:
        s = self.settings
        csr = self.store.generate_intermediate_csr(f"{s.org_name} Intermediate CA", mount=s.mount)
        if csr is None:
            raise FatalError("Secret store did not return an intermediate CSR")
        signed = self.root_ca.sign_intermediate_csr(csr)
        chain = build_chain(signed, self.root_ca.certificate_pem())

        ok, message = self.store.set_signed_intermediate(chain, mount=s.mount)
        if not ok:
            raise FatalError(f"Importing the signed intermediate failed: {message}")

    def _service_account_token(self) -> str:
        token = self.cluster.create_token(self.settings.service_account, self.settings.namespace,
                                          duration="8760h")
        if token:
            return token

        # Clusters older than 1.24 auto-create token secrets instead
        secrets = self.cluster.get_json("secrets", namespace=self.settings.namespace) or {}
        for item in secrets.get("items", []):
            if item.get("metadata", {}).get("name", "").startswith(
                f"{self.settings.service_account}-token"
            ):
                data = item.get("data", {}).get("token")
                if data:
                    return base64.b64decode(data).decode()
        raise FatalError(
            f"Cannot obtain a token for service account {self.settings.service_account}",
            "Check that the store's service account exists in its namespace",
        )

    def configure_auth(self) -> None:
        """Let cert-manager authenticate with its service account and sign via the role."""
        s = self.settings
        logger.info("configuring kubernetes auth")

        svc = self.cluster.get_json("svc", "kubernetes", namespace="default") or {}
        cluster_ip = svc.get("spec", {}).get("clusterIP")
        if not cluster_ip:
            raise FatalError("Cannot read the kubernetes API service address")

        reviewer_jwt = self._service_account_token()

        ca_map = self.cluster.get_json("configmap", "kube-root-ca.crt", namespace=s.namespace) or {}
        cluster_ca = ca_map.get("data", {}).get("ca.crt")
        if not cluster_ca:
            raise FatalError(f"Cannot read kube-root-ca.crt in namespace {s.namespace}")

        ok, message = self.store.enable_auth("kubernetes")
        if not ok and "already in use" not in message:
            raise FatalError(f"Cannot enable kubernetes auth: {message}")

        ok, message = self.store.write_stdin(
            "auth/kubernetes/config",
            "kubernetes_ca_cert",
            cluster_ca,
            kubernetes_host=f"https://{cluster_ip}:443",
            issuer=KUBERNETES_ISSUER,
            token_reviewer_jwt=reviewer_jwt,
        )
        if not ok:
            raise FatalError(f"Writing kubernetes auth config failed: {message}")

        ok, message = self.store.write_policy(
            ISSUER_POLICY_NAME, ISSUER_POLICY.format(mount=s.mount, role=s.signing_role)
        )
        if not ok:
            raise FatalError(f"Writing cert-manager policy failed: {message}")

        ok, message = self.store.write(
            f"auth/kubernetes/role/{s.issuer_role}",
            bound_service_account_names=s.issuer_service_account,
            bound_service_account_namespaces=s.issuer_namespace,
            policies=ISSUER_POLICY_NAME,
            ttl="1h",
        )
        if not ok:
            raise FatalError(f"Creating auth role {s.issuer_role} failed: {message}")
        logger.info("kubernetes auth configured", role=s.issuer_role)

    def trust_chain(self) -> PKIChain:
        """Locations of the chain parts, with the intermediate read back from the store."""
        s = self.settings
        data = self.store.read(f"{s.mount}/cert/ca") or {}
        return PKIChain(
            root_cert_path=self.root_ca.cert_path,
            root_key_path=self.root_ca.key_path,
            mount=s.mount,
            role=s.signing_role,
            intermediate_pem=data.get("certificate", ""),
        )
