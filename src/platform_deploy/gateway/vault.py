"""Secret-store administration through the vault CLI inside a replica pod.

Every command runs as `kubectl exec <replica> -- env VAULT_ADDR=... vault ...`.
Certificate chains and policies travel on stdin (`field=-`); nothing on the
workstation filesystem is ever referenced by path from inside the store.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from ..shared.logging import get_logger
from .kubectl import ClusterAPI
from .process import CommandResult

logger = get_logger(__name__)

LOCAL_ADDR = "http://127.0.0.1:8200"


@dataclass
class ReplicaStatus:
    """Seal/initialization state reported by one replica."""

    index: int
    reachable: bool
    initialized: bool = False
    sealed: bool = True
    progress: int = 0
    threshold: int = 0

    @property
    def unsealed(self) -> bool:
        return self.reachable and self.initialized and not self.sealed


class SecretStoreCLI:
    """Drive a raft-backed vault StatefulSet through kubectl exec."""

    def __init__(self, cluster: ClusterAPI, namespace: str = "vault", release: str = "vault",
                 token: str | None = None):
        """Initialize store client.

        Args:
            cluster: Cluster API used for exec
            namespace: Namespace of the StatefulSet
            release: StatefulSet name; replicas are <release>-0..N-1
            token: Privileged token, set once key material is known
        """
        self.cluster = cluster
        self.namespace = namespace
        self.release = release
        self.token = token

    def replica(self, index: int) -> str:
        return f"{self.release}-{index}"

    @property
    def leader_address(self) -> str:
        """Internal address of replica 0, used as the raft join target."""
        return f"http://{self.release}-0.{self.release}-internal:8200"

    def _vault(self, *args: str, replica: int = 0, input: str | None = None,
               authenticated: bool = True, timeout: float = 120) -> CommandResult:
        env = {"VAULT_ADDR": LOCAL_ADDR}
        if authenticated and self.token:
            env["VAULT_TOKEN"] = self.token
        return self.cluster.exec(
            self.namespace, self.replica(replica), ["vault", *args],
            input=input, env=env, timeout=timeout,
        )

    @staticmethod
    def _fields(fields: dict[str, Any]) -> list[str]:
        return [f"{k}={v}" for k, v in fields.items()]

    # -------------------------------------------------------------------------
    # Seal / consensus
    # -------------------------------------------------------------------------

    def status(self, index: int = 0) -> ReplicaStatus:
        """Status of one replica.

        `vault status` exits 2 while sealed, so stdout is parsed regardless of
        the exit code.
        """
        result = self._vault("status", "-format=json", replica=index, authenticated=False,
                             timeout=30)
        data = result.json()
        if not isinstance(data, dict):
            return ReplicaStatus(index, reachable=False)
        return _parse_status(index, data)

    def initialize(self, shares: int, threshold: int) -> tuple[dict[str, Any] | None, str]:
        """Initialize the store. Returns (init response, message)."""
        logger.info("initializing secret store", shares=shares, threshold=threshold)
        result = self._vault(
            "operator", "init", f"-key-shares={shares}", f"-key-threshold={threshold}",
            "-format=json", authenticated=False,
        )
        data = result.json()
        if not result.ok or not isinstance(data, dict):
            return None, f"vault operator init failed: {result.message}"
        return data, "Secret store initialized"

    def unseal(self, index: int, key: str) -> ReplicaStatus:
        """Submit one key share to a replica; returns the resulting status."""
        result = self._vault("operator", "unseal", "-format=json", key, replica=index,
                             authenticated=False, timeout=60)
        data = result.json()
        if not isinstance(data, dict):
            return ReplicaStatus(index, reachable=result.returncode not in (124, 127))
        return _parse_status(index, data)

    def raft_join(self, index: int, leader_address: str | None = None) -> tuple[bool, str]:
        address = leader_address or self.leader_address
        result = self._vault("operator", "raft", "join", address, replica=index,
                             authenticated=False, timeout=60)
        if not result.ok:
            return False, f"{self.replica(index)} failed to join {address}: {result.message}"
        return True, f"{self.replica(index)} joined {address}"

    def list_peers(self) -> list[dict[str, Any]] | None:
        """Raft peer list from the primary, None if unreadable."""
        result = self._vault("operator", "raft", "list-peers", "-format=json", timeout=30)
        data = result.json()
        if not result.ok or not isinstance(data, dict):
            return None
        return data.get("data", {}).get("config", {}).get("servers", [])

    # -------------------------------------------------------------------------
    # Engines, auth and policies
    # -------------------------------------------------------------------------

    def list_secrets_engines(self) -> dict[str, Any] | None:
        """Mounted secrets engines keyed by path (with trailing slash)."""
        result = self._vault("secrets", "list", "-format=json", timeout=30)
        return result.json() if result.ok else None

    def enable_secrets_engine(self, engine: str, path: str | None = None) -> tuple[bool, str]:
        args = ["secrets", "enable"]
        if path:
            args.append(f"-path={path}")
        args.append(engine)
        result = self._vault(*args)
        return result.ok, result.message

    def tune(self, path: str, **options: Any) -> tuple[bool, str]:
        """Tune a mount, e.g. tune("pki_int", max_lease_ttl="87600h")."""
        flags = [f"-{k.replace('_', '-')}={v}" for k, v in options.items()]
        result = self._vault("secrets", "tune", *flags, path)
        return result.ok, result.message

    def list_auth_methods(self) -> dict[str, Any] | None:
        result = self._vault("auth", "list", "-format=json", timeout=30)
        return result.json() if result.ok else None

    def enable_auth(self, method: str, path: str | None = None) -> tuple[bool, str]:
        args = ["auth", "enable"]
        if path:
            args.append(f"-path={path}")
        args.append(method)
        result = self._vault(*args)
        return result.ok, result.message

    def write_policy(self, name: str, policy: str) -> tuple[bool, str]:
        result = self._vault("policy", "write", name, "-", input=policy)
        return result.ok, result.message

    def read_policy(self, name: str) -> str | None:
        """Policy text, None if the policy does not exist."""
        result = self._vault("policy", "read", name, timeout=30)
        text = result.stdout.strip()
        return text if result.ok and text else None

    # -------------------------------------------------------------------------
    # Generic read/write
    # -------------------------------------------------------------------------

    def write(self, path: str, **fields: Any) -> tuple[bool, str]:
        result = self._vault("write", path, *self._fields(fields))
        return result.ok, result.message

    def write_stdin(self, path: str, stdin_field: str, content: str,
                    **fields: Any) -> tuple[bool, str]:
        """Write with one field's value read from stdin (`field=-`)."""
        result = self._vault("write", path, f"{stdin_field}=-", *self._fields(fields),
                             input=content)
        return result.ok, result.message

    def write_json(self, path: str, payload: dict[str, Any]) -> tuple[bool, str]:
        """Write a whole JSON request body read from stdin (`vault write path -`)."""
        result = self._vault("write", path, "-", input=json.dumps(payload))
        return result.ok, result.message

    def read(self, path: str) -> dict[str, Any] | None:
        """Read a path; returns its data section, None if absent."""
        result = self._vault("read", "-format=json", path, timeout=30)
        data = result.json()
        if not result.ok or not isinstance(data, dict):
            return None
        return data.get("data") or {}

    # -------------------------------------------------------------------------
    # PKI
    # -------------------------------------------------------------------------

    def generate_intermediate_csr(self, common_name: str, mount: str = "pki_int",
                                  key_bits: int = 4096, ttl: str = "87600h") -> str | None:
        """Generate a key inside the store and return its CSR (PEM)."""
        result = self._vault(
            "write", "-field=csr", f"{mount}/intermediate/generate/internal",
            f"common_name={common_name}", f"ttl={ttl}", f"key_bits={key_bits}",
        )
        csr = result.stdout.strip()
        if not result.ok or "CERTIFICATE REQUEST" not in csr:
            return None
        return csr + "\n"

    def set_signed_intermediate(self, chain_pem: str, mount: str = "pki_int") -> tuple[bool, str]:
        """Import the signed intermediate followed by its issuer chain."""
        return self.write_stdin(f"{mount}/intermediate/set-signed", "certificate", chain_pem)

    def issue_certificate(self, role: str, common_name: str, ttl: str = "1h",
                          mount: str = "pki_int") -> dict[str, Any] | None:
        """Issue a leaf certificate; returns certificate, issuing_ca, ca_chain, private_key."""
        result = self._vault(
            "write", "-format=json", f"{mount}/issue/{role}",
            f"common_name={common_name}", f"ttl={ttl}",
        )
        data = result.json()
        if not result.ok or not isinstance(data, dict):
            return None
        return data.get("data")


def _parse_status(index: int, data: dict[str, Any]) -> ReplicaStatus:
    return ReplicaStatus(
        index=index,
        reachable=True,
        initialized=bool(data.get("initialized", False)),
        sealed=bool(data.get("sealed", True)),
        progress=int(data.get("progress") or 0),
        threshold=int(data.get("t") or 0),
    )
