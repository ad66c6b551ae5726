"""In-memory collaborators for tests.

One double per collaborator category, each exposing the same methods as the
gateway class it stands in for:

- FakeClock: sleep/clock pair for ConditionPoller
- FakeSecretStore: SecretStoreCLI (raft replicas, threshold unseal, PKI)
- FakeCluster: ClusterAPI
- FakeProvisioning: ProvisioningTool (durable state push/pull)
- FakeHelm: PackageDeployer
"""

from __future__ import annotations

import secrets as token_source
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from platform_deploy.gateway.process import CommandResult
from platform_deploy.gateway.vault import ReplicaStatus


class FakeClock:
    """Monotonic clock advanced only by sleep()."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def clock(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# =============================================================================
# Secret store
# =============================================================================


@dataclass
class FakeReplica:
    initialized: bool = False
    sealed: bool = True
    submitted: set[str] = field(default_factory=set)
    reachable: bool = True


class FakeSecretStore:
    """A raft-backed store: threshold unseal, engines, auth, and a working PKI."""

    def __init__(self, replicas: int = 3, release: str = "vault") -> None:
        self.release = release
        self.namespace = "vault"
        self.token: str | None = None
        self.replicas = [FakeReplica() for _ in range(replicas)]
        self.shares: list[str] = []
        self.threshold = 0
        self.root_token: str | None = None
        self.engines: dict[str, dict[str, Any]] = {"cubbyhole/": {}, "sys/": {}}
        self.auth_methods: dict[str, dict[str, Any]] = {"token/": {}}
        self.policies: dict[str, str] = {}
        self.writes: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.init_count = 0
        self.unseal_count = 0
        self.csr_count = 0
        self.init_shares_override: int | None = None
        self._intermediate_key: rsa.RSAPrivateKey | None = None
        self.intermediate_pem = ""
        self.chain_pems: list[str] = []

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))

    def _authorized(self) -> bool:
        return self.root_token is not None and self.token == self.root_token and self.primary_unsealed

    @property
    def primary_unsealed(self) -> bool:
        primary = self.replicas[0]
        return primary.initialized and not primary.sealed

    def replica(self, index: int) -> str:
        return f"{self.release}-{index}"

    @property
    def leader_address(self) -> str:
        return f"http://{self.release}-0.{self.release}-internal:8200"

    # Seal / consensus

    def status(self, index: int = 0) -> ReplicaStatus:
        self._record("status", index)
        r = self.replicas[index]
        if not r.reachable:
            return ReplicaStatus(index, reachable=False)
        return ReplicaStatus(index, True, r.initialized, r.sealed, len(r.submitted), self.threshold)

    def initialize(self, shares: int, threshold: int) -> tuple[dict[str, Any] | None, str]:
        self._record("initialize", shares, threshold)
        primary = self.replicas[0]
        if primary.initialized:
            return None, "Vault is already initialized"
        self.init_count += 1
        self.shares = [token_source.token_hex(32) for _ in range(shares)]
        self.threshold = threshold
        self.root_token = "hvs." + token_source.token_urlsafe(18)
        primary.initialized = True
        returned = self.shares[: self.init_shares_override or shares]
        return {
            "unseal_keys_hex": returned,
            "unseal_keys_b64": returned,
            "unseal_shares": shares,
            "unseal_threshold": threshold,
            "root_token": self.root_token,
        }, "Secret store initialized"

    def unseal(self, index: int, key: str) -> ReplicaStatus:
        self._record("unseal", index, key)
        self.unseal_count += 1
        r = self.replicas[index]
        if r.initialized and r.sealed and key in self.shares:
            r.submitted.add(key)
            if len(r.submitted) >= self.threshold:
                r.sealed = False
                r.submitted.clear()
        return self.status(index)

    def raft_join(self, index: int, leader_address: str | None = None) -> tuple[bool, str]:
        self._record("raft_join", index, leader_address)
        if not self.primary_unsealed:
            return False, "leader is sealed"
        self.replicas[index].initialized = True
        return True, f"{self.replica(index)} joined"

    def list_peers(self) -> list[dict[str, Any]] | None:
        self._record("list_peers")
        if not self._authorized():
            return None
        return [
            {"node_id": self.replica(i), "voter": True}
            for i, r in enumerate(self.replicas)
            if r.initialized and not r.sealed
        ]

    # Engines, auth, policies

    def list_secrets_engines(self) -> dict[str, Any] | None:
        self._record("list_secrets_engines")
        return dict(self.engines) if self._authorized() else None

    def enable_secrets_engine(self, engine: str, path: str | None = None) -> tuple[bool, str]:
        self._record("enable_secrets_engine", engine, path)
        key = f"{path or engine}/"
        if key in self.engines:
            return False, f"path is already in use at {key}"
        self.engines[key] = {"type": engine}
        return True, f"Enabled {engine} at {key}"

    def tune(self, path: str, **options: Any) -> tuple[bool, str]:
        self._record("tune", path, options)
        self.engines[f"{path}/"].update(options)
        return True, "tuned"

    def list_auth_methods(self) -> dict[str, Any] | None:
        self._record("list_auth_methods")
        return dict(self.auth_methods) if self._authorized() else None

    def enable_auth(self, method: str, path: str | None = None) -> tuple[bool, str]:
        self._record("enable_auth", method, path)
        key = f"{path or method}/"
        if key in self.auth_methods:
            return False, f"path is already in use at {key}"
        self.auth_methods[key] = {"type": method}
        return True, f"Enabled {method} auth"

    def write_policy(self, name: str, policy: str) -> tuple[bool, str]:
        self._record("write_policy", name, policy)
        self.policies[name] = policy
        return True, f"Uploaded policy: {name}"

    def read_policy(self, name: str) -> str | None:
        self._record("read_policy", name)
        return self.policies.get(name)

    def write(self, path: str, **fields: Any) -> tuple[bool, str]:
        self._record("write", path, fields)
        self.writes[path] = dict(fields)
        return True, f"Success! Data written to: {path}"

    def write_stdin(self, path: str, stdin_field: str, content: str,
                    **fields: Any) -> tuple[bool, str]:
        self._record("write_stdin", path, stdin_field, content, fields)
        self.writes[path] = {stdin_field: content, **fields}
        return True, f"Success! Data written to: {path}"

    def write_json(self, path: str, payload: dict[str, Any]) -> tuple[bool, str]:
        self._record("write_json", path, payload)
        self.writes[path] = dict(payload)
        return True, f"Success! Data written to: {path}"

    def read(self, path: str) -> dict[str, Any] | None:
        self._record("read", path)
        if path.endswith("/cert/ca") and self.intermediate_pem:
            return {"certificate": self.intermediate_pem}
        return self.writes.get(path)

    # PKI

    def generate_intermediate_csr(self, common_name: str, mount: str = "pki_int",
                                  key_bits: int = 4096, ttl: str = "87600h") -> str | None:
        self._record("generate_intermediate_csr", common_name, mount)
        self.csr_count += 1
        self._intermediate_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        csr = (
            x509.CertificateSigningRequestBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
            .sign(self._intermediate_key, hashes.SHA256())
        )
        return csr.public_bytes(serialization.Encoding.PEM).decode()

    def set_signed_intermediate(self, chain_pem: str, mount: str = "pki_int") -> tuple[bool, str]:
        self._record("set_signed_intermediate", chain_pem, mount)
        certs = x509.load_pem_x509_certificates(chain_pem.encode())
        self.chain_pems = [
            c.public_bytes(serialization.Encoding.PEM).decode() for c in certs
        ]
        self.intermediate_pem = self.chain_pems[0]
        return True, "imported"

    def issue_certificate(self, role: str, common_name: str, ttl: str = "1h",
                          mount: str = "pki_int") -> dict[str, Any] | None:
        self._record("issue_certificate", role, common_name, mount)
        if f"{mount}/roles/{role}" not in self.writes or self._intermediate_key is None:
            return None
        issuer = x509.load_pem_x509_certificate(self.intermediate_pem.encode())
        leaf_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        now = datetime.now(timezone.utc)
        leaf = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
            .issuer_name(issuer.subject)
            .public_key(leaf_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + timedelta(hours=1))
            .sign(self._intermediate_key, hashes.SHA256())
        )
        return {
            "certificate": leaf.public_bytes(serialization.Encoding.PEM).decode(),
            "issuing_ca": self.intermediate_pem,
            "ca_chain": list(self.chain_pems),
            "serial_number": format(leaf.serial_number, "x"),
        }

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]


# =============================================================================
# Cluster
# =============================================================================


class FakeCluster:
    """Pods, nodes and a handful of objects the bootstrap and phases read."""

    def __init__(self, store_replicas: int = 3) -> None:
        self.pods: dict[str, list[dict[str, Any]]] = {
            "vault": [
                {"name": f"vault-{i}", "phase": "Running", "ready": False}
                for i in range(store_replicas)
            ]
        }
        self.nodes: list[dict[str, Any]] = []
        self.objects: dict[tuple[str, str | None, str], dict[str, Any]] = {
            ("svc", "default", "kubernetes"): {"spec": {"clusterIP": "10.43.0.1"}},
            ("configmap", "vault", "kube-root-ca.crt"): {
                "data": {"ca.crt": "-----BEGIN CERTIFICATE-----\nCLUSTERCA\n-----END CERTIFICATE-----\n"}
            },
        }
        self.token: str | None = "reviewer-jwt"
        self.applied: list[str] = []
        self.namespaces: set[str] = {"default", "kube-system"}
        self.labels: list[tuple[str, str]] = []
        self.configmaps: dict[tuple[str, str], dict[str, str]] = {}
        self.commands: list[list[str]] = []
        self.exec_stdout = "200"

    def list_pods(self, namespace: str, selector: str | None = None) -> list[dict[str, Any]]:
        return list(self.pods.get(namespace, []))

    def count_pods(self, namespace: str, selector: str | None = None, phase: str = "Running") -> int:
        return sum(1 for p in self.list_pods(namespace, selector) if p["phase"] == phase)

    def list_nodes(self) -> list[dict[str, Any]]:
        return list(self.nodes)

    def get_json(self, kind: str, name: str | None = None, namespace: str | None = None,
                 selector: str | None = None) -> dict[str, Any] | None:
        if name is None:
            items = [obj for (k, ns, _), obj in self.objects.items() if k == kind and ns == namespace]
            return {"items": items}
        return self.objects.get((kind, namespace, name))

    def exists(self, kind: str, name: str, namespace: str | None = None) -> bool:
        if kind == "namespace":
            return name in self.namespaces
        return (kind, namespace, name) in self.objects

    def condition_status(self, kind: str, name: str, condition: str = "Ready",
                         namespace: str | None = None) -> str | None:
        data = self.objects.get((kind, namespace, name)) or {}
        for c in data.get("status", {}).get("conditions", []):
            if c.get("type") == condition:
                return c.get("status")
        return None

    def create_token(self, service_account: str, namespace: str, duration: str = "8760h") -> str | None:
        return self.token

    def create_namespace(self, namespace: str) -> tuple[bool, str]:
        self.namespaces.add(namespace)
        return True, f"Namespace '{namespace}' created"

    def create_configmap_from_literals(self, name: str, namespace: str,
                                       literals: dict[str, str]) -> tuple[bool, str]:
        self.configmaps[(namespace, name)] = dict(literals)
        return True, f"configmap/{name} configured"

    def label_node(self, node: str, label: str) -> tuple[bool, str]:
        self.labels.append((node, label))
        return True, f"node/{node} labeled"

    def apply_text(self, manifest: str, description: str = "manifest") -> tuple[bool, str]:
        self.applied.append(manifest)
        return True, f"{description} configured"

    def apply_file(self, path: Path) -> tuple[bool, str]:
        self.applied.append(path.read_text())
        return True, f"{path.name} configured"

    def rollout_restart(self, kind: str, name: str, namespace: str,
                        timeout_seconds: int = 120) -> tuple[bool, str]:
        return True, f"{kind}/{name} restarted"

    def kubectl(self, *args: str, input: str | None = None,
                timeout: float | None = 600) -> CommandResult:
        """Only `kubectl run <pod> -n <ns> ...` changes state; it starts a Running pod."""
        self.commands.append(list(args))
        if args[:1] == ("run",):
            namespace = args[args.index("-n") + 1]
            self.objects[("pod", namespace, args[1])] = {
                "metadata": {"name": args[1]},
                "status": {"phase": "Running"},
            }
            return CommandResult(["kubectl", *args], 0, stdout=f"pod/{args[1]} created")
        return CommandResult(["kubectl", *args], 0)

    def delete(self, kind: str, name: str, namespace: str | None = None,
               wait: bool = True) -> tuple[bool, str]:
        self.objects.pop((kind, namespace, name), None)
        return True, f"{kind}/{name} deleted"

    def wait(self, resource: str, condition: str, namespace: str | None = None,
             timeout_seconds: int = 300, selector: str | None = None) -> tuple[bool, str]:
        kind, _, name = resource.partition("/")
        if (kind, namespace, name) in self.objects:
            return True, f"{resource} condition met"
        return False, f"{resource} not found"

    def exec(self, namespace: str, pod: str, command: list[str], input: str | None = None,
             env: dict[str, str] | None = None, timeout: float | None = 120) -> CommandResult:
        self.commands.append(["exec", pod, *command])
        if ("pod", namespace, pod) not in self.objects:
            return CommandResult(command, 1, stderr=f'pods "{pod}" not found')
        return CommandResult(command, 0, stdout=self.exec_stdout)


# =============================================================================
# Provisioning tool
# =============================================================================


class FakeProvisioning:
    """Durable state holding copies of selected local files."""

    def __init__(self, synced: list[Path], tfvars: dict[str, str] | None = None,
                 wrapper: bool = True) -> None:
        self.synced = synced
        self.durable: dict[Path, bytes] = {}
        self.tfvars = tfvars or {}
        self.wrapper = wrapper
        self.applies = 0
        self.pushes = 0
        self.pulls = 0

    def apply(self) -> tuple[bool, str]:
        self.applies += 1
        return True, "Infrastructure applied"

    def push_secrets(self) -> tuple[bool, str]:
        if not self.wrapper:
            return False, "terraform.sh not found; durable state sync unavailable"
        self.pushes += 1
        for path in self.synced:
            if path.exists():
                self.durable[path] = path.read_bytes()
        return True, "Secrets pushed"

    def pull_secrets(self) -> tuple[bool, str]:
        if not self.wrapper:
            return False, "terraform.sh not found; durable state sync unavailable"
        self.pulls += 1
        for path, content in self.durable.items():
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
        return True, "Secrets pulled"

    def tfvar(self, name: str, tfvars: Path | None = None) -> str | None:
        return self.tfvars.get(name)

    def missing_tfvars(self, required: list[str]) -> list[str]:
        return [name for name in required if not self.tfvars.get(name)]


# =============================================================================
# Package deployer
# =============================================================================


class FakeHelm:
    """Records installs; every release reports deployed once installed."""

    def __init__(self, airgapped: bool = False, oci: dict[str, str] | None = None) -> None:
        self.airgapped = airgapped
        self.oci = oci or {}
        self.repos: dict[str, str] = {}
        self.releases: dict[tuple[str, str], tuple[str, tuple[str, ...]]] = {}

    def repo_add(self, name: str, url: str) -> tuple[bool, str]:
        self.repos[name] = url
        return True, f"Helm repo '{name}' ready"

    def resolve_chart(self, online_chart: str, override_key: str) -> str:
        if not self.airgapped:
            return online_chart
        return self.oci[override_key]

    def status(self, release: str, namespace: str) -> str | None:
        return "deployed" if (release, namespace) in self.releases else None

    def install_or_upgrade(self, release: str, chart: str, namespace: str, *args: str,
                           timeout: float = 900) -> tuple[bool, str]:
        self.releases[(release, namespace)] = (chart, args)
        return True, f"Release '{release}' deployed"
