"""Credential engine.

Resolves every named credential and setting the deployment needs, in order:
persisted store (scripts/.env) > process environment > generated/default value.
Existing values are never changed; the store is rewritten with mode 0600 so gaps
filled on this run are kept for the next one.
"""

from __future__ import annotations

import os
import re
import secrets
import string
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from .errors import FatalError
from .shared.logging import get_logger
from .shared.paths import write_restricted

logger = get_logger(__name__)

DEFAULT_DOMAIN = "example.com"
DEFAULT_TRAEFIK_LB_IP = "198.51.100.2"
DEFAULT_GIT_REPO_URL = "git@github.com:OWNER/rke2-cluster.git"

_ALPHABET = string.ascii_letters + string.digits


@dataclass(frozen=True)
class CredentialDef:
    """One catalogue entry. length > 0 means a generated secret."""

    name: str
    length: int = 0
    default: str = ""


def _secret(name: str, length: int = 32) -> CredentialDef:
    return CredentialDef(name, length=length)


def _setting(name: str, default: str = "") -> CredentialDef:
    return CredentialDef(name, default=default)


HELM_OCI_VARS = [
    "HELM_OCI_CERT_MANAGER",
    "HELM_OCI_CNPG",
    "HELM_OCI_CLUSTER_AUTOSCALER",
    "HELM_OCI_REDIS_OPERATOR",
    "HELM_OCI_VAULT",
    "HELM_OCI_HARBOR",
    "HELM_OCI_ARGOCD",
    "HELM_OCI_ARGO_ROLLOUTS",
    "HELM_OCI_KASM",
    "HELM_OCI_KPS",
]

CATALOGUE: list[CredentialDef] = [
    # Feature flags
    _setting("DEPLOY_UPTIME_KUMA", "true"),
    _setting("DEPLOY_LIBRENMS", "false"),
    # Air-gapped mode
    _setting("AIRGAPPED", "false"),
    _setting("UPSTREAM_PROXY_REGISTRY"),
    _setting("BOOTSTRAP_REGISTRY"),
    _setting("BOOTSTRAP_REGISTRY_CA_PEM"),
    _setting("BOOTSTRAP_REGISTRY_USERNAME"),
    _setting("BOOTSTRAP_REGISTRY_PASSWORD"),
    # Download locations (point at a mirror when air-gapped)
    _setting(
        "ARGO_ROLLOUTS_PLUGIN_URL",
        "https://github.com/argoproj-labs/rollouts-plugin-trafficrouter-gatewayapi"
        "/releases/download/v0.5.0/gateway-api-plugin-linux-amd64",
    ),
    _setting(
        "BINARY_URL_ARGOCD_CLI",
        "https://github.com/argoproj/argo-cd/releases/latest/download/argocd-linux-amd64",
    ),
    _setting(
        "BINARY_URL_KUSTOMIZE",
        "https://github.com/kubernetes-sigs/kustomize/releases/download/kustomize/v5.6.0"
        "/kustomize_v5.6.0_linux_amd64.tar.gz",
    ),
    _setting(
        "BINARY_URL_KUBECONFORM",
        "https://github.com/yannh/kubeconform/releases/download/v0.6.7"
        "/kubeconform-linux-amd64.tar.gz",
    ),
    _setting("CRD_SCHEMA_BASE_URL", "https://raw.githubusercontent.com/datreeio/CRDs-catalog/main"),
    _setting(
        "GATEWAY_API_CRD_URL",
        "https://github.com/kubernetes-sigs/gateway-api/releases/download/v1.3.0"
        "/standard-install.yaml",
    ),
    *[_setting(name) for name in HELM_OCI_VARS],
    _setting("HELM_OCI_MARIADB_OPERATOR"),
    _setting("HELM_OCI_GITLAB_RUNNER"),
    # Service credentials
    _secret("KEYCLOAK_BOOTSTRAP_CLIENT_SECRET"),
    _secret("KEYCLOAK_DB_PASSWORD"),
    _secret("MATTERMOST_DB_PASSWORD"),
    _setting("MATTERMOST_MINIO_ROOT_USER", "mattermost-minio-admin"),
    _secret("MATTERMOST_MINIO_ROOT_PASSWORD"),
    _secret("HARBOR_REDIS_PASSWORD"),
    _secret("HARBOR_ADMIN_PASSWORD"),
    _secret("HARBOR_MINIO_SECRET_KEY"),
    _secret("HARBOR_DB_PASSWORD"),
    _secret("KASM_PG_SUPERUSER_PASSWORD"),
    _secret("KASM_PG_APP_PASSWORD", 30),
    _secret("KC_ADMIN_PASSWORD", 24),
    _secret("GRAFANA_ADMIN_PASSWORD", 24),
    _secret("LIBRENMS_DB_PASSWORD"),
    _secret("LIBRENMS_VALKEY_PASSWORD"),
    _secret("GITLAB_ROOT_PASSWORD"),
    _secret("GITLAB_PRAEFECT_DB_PASSWORD"),
    _secret("GITLAB_REDIS_PASSWORD"),
    _secret("GITLAB_GITALY_TOKEN"),
    _secret("GITLAB_PRAEFECT_TOKEN"),
    _setting("GITLAB_API_TOKEN"),
    # Learned at runtime
    _setting("GITLAB_RUNNER_SHARED_TOKEN"),
    _setting("GITLAB_RUNNER_GROUP_TOKEN"),
    _secret("IDENTITY_PORTAL_OIDC_SECRET"),
    _secret("OAUTH2_PROXY_REDIS_PASSWORD"),
    # Platform identity
    _setting("DOMAIN", DEFAULT_DOMAIN),
    _setting("TRAEFIK_LB_IP"),
    _setting("RANCHER_FQDN"),
    _setting("ORG_NAME"),
    _setting("KC_REALM"),
    _setting("GIT_REPO_URL"),
    _setting("GIT_BASE_URL"),
    _setting("HARVESTER_CONTEXT", "harvester"),
]

# Always recomputed from DOMAIN, never persisted
COMPUTED = ("DOMAIN_DASHED", "DOMAIN_DOT")

_LINE_RE = re.compile(r'^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)=(.*)$')


def generate_password(length: int = 32) -> str:
    """Random alphanumeric string."""
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def org_name_from_domain(domain: str) -> str:
    """"example.com" -> "Example", "my-lab.net" -> "My Lab", "tigerNet.io" -> "Tiger Net"."""
    base = domain.split(".", 1)[0]
    base = re.sub(r"([a-z])([A-Z])", r"\1 \2", base)
    words = re.split(r"[-_\s]+", base)
    return " ".join(w[:1].upper() + w[1:].lower() for w in words if w)


def parse_env_file(text: str) -> dict[str, str]:
    """Parse KEY="value" lines; comments and blank lines are ignored."""
    values: dict[str, str] = {}
    for line in text.splitlines():
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        match = _LINE_RE.match(line)
        if not match:
            continue
        key, raw = match.group(1), match.group(2).strip()
        if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in "\"'":
            quote, raw = raw[0], raw[1:-1]
            if quote == '"':
                raw = re.sub(r'\\(["\\$`])', r"\1", raw)
        values[key] = raw
    return values


def _quote(value: str) -> str:
    return '"' + re.sub(r'(["\\$`])', r"\\\1", value) + '"'


class CredentialSet(Mapping[str, str]):
    """Resolved credentials and settings.

    Read-only apart from learn(), which adds values discovered at runtime
    (e.g. runner registration tokens) and never overwrites a non-empty value.
    """

    def __init__(self, values: Mapping[str, str],
                 on_learn: Callable[[CredentialSet], None] | None = None):
        self._values = dict(values)
        self._on_learn = on_learn

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    @property
    def domain(self) -> str:
        return self._values.get("DOMAIN", DEFAULT_DOMAIN)

    @property
    def airgapped(self) -> bool:
        return self._values.get("AIRGAPPED", "false").lower() == "true"

    def flag(self, name: str) -> bool:
        return self._values.get(name, "false").lower() == "true"

    def learn(self, name: str, value: str) -> None:
        """Record a value learned at runtime.

        Raises:
            ValueError: name already holds a different non-empty value
        """
        current = self._values.get(name, "")
        if current and current != value:
            raise ValueError(f"{name} is already set; credentials are never overwritten")
        self._values[name] = value
        os.environ[name] = value
        logger.info("credential learned", name=name)
        if self._on_learn:
            self._on_learn(self)

    def export(self, environ: dict[str, str] | None = None) -> None:
        """Export every value to the process environment for child tools."""
        target = os.environ if environ is None else environ
        for key, value in self._values.items():
            target[key] = value


class CredentialEngine:
    """Load, fill and persist the credential store."""

    def __init__(
        self,
        store_path: Path,
        environ: Mapping[str, str] | None = None,
        tfvar: Callable[[str], str | None] | None = None,
        git_remote: Callable[[], str | None] | None = None,
    ):
        """Initialize engine.

        Args:
            store_path: Path of the persisted KEY="value" store
            environ: Environment overrides (defaults to os.environ)
            tfvar: Lookup into terraform.tfvars (for traefik_lb_ip)
            git_remote: Returns the repository's origin URL
        """
        self.store_path = store_path
        self.environ = os.environ if environ is None else environ
        self._tfvar = tfvar
        self._git_remote = git_remote

    def load(self) -> dict[str, str]:
        if not self.store_path.exists():
            return {}
        return parse_env_file(self.store_path.read_text())

    def resolve(self, export: bool = True) -> CredentialSet:
        """Resolve every catalogue entry and persist the result.

        Returns:
            CredentialSet, also exported to os.environ unless export is False
        """
        stored = self.load()
        if stored:
            logger.info("loading credentials", path=str(self.store_path))
        else:
            logger.info("no credential store found, generating", path=str(self.store_path))

        values: dict[str, str] = dict(stored)
        generated = []
        for entry in CATALOGUE:
            if entry.name in values:
                continue
            if entry.name in self.environ:
                values[entry.name] = self.environ[entry.name]
            elif entry.length:
                values[entry.name] = generate_password(entry.length)
                generated.append(entry.name)
            else:
                values[entry.name] = entry.default

        self._derive(values)

        if generated:
            logger.info("generated credentials", count=len(generated))
        if values["DOMAIN"] == DEFAULT_DOMAIN:
            logger.warning(
                "DOMAIN is the default 'example.com'; set DOMAIN in the credential store "
                "if this is not your domain (FQDNs, certificates and the realm derive from it)"
            )

        credentials = CredentialSet(values, on_learn=self.save)
        self.save(credentials)
        if export:
            credentials.export()
        if credentials.airgapped:
            validate_airgapped(credentials)
        return credentials

    def _derive(self, values: dict[str, str]) -> None:
        domain = values.get("DOMAIN") or DEFAULT_DOMAIN
        values["DOMAIN"] = domain
        values["DOMAIN_DASHED"] = domain.replace(".", "-")
        values["DOMAIN_DOT"] = domain.replace(".", "-dot-")
        first_label = domain.split(".", 1)[0]

        if not values.get("TRAEFIK_LB_IP"):
            values["TRAEFIK_LB_IP"] = (
                self._tfvar("traefik_lb_ip") if self._tfvar else None
            ) or DEFAULT_TRAEFIK_LB_IP
        if not values.get("RANCHER_FQDN"):
            values["RANCHER_FQDN"] = f"rancher.{domain}"
        if not values.get("ORG_NAME"):
            values["ORG_NAME"] = org_name_from_domain(domain)
        if not values.get("KC_REALM"):
            values["KC_REALM"] = first_label
        if not values.get("GIT_REPO_URL"):
            values["GIT_REPO_URL"] = (
                self._git_remote() if self._git_remote else None
            ) or DEFAULT_GIT_REPO_URL
        if not values.get("GIT_BASE_URL"):
            values["GIT_BASE_URL"] = values["GIT_REPO_URL"].rsplit("/", 1)[0]

    def save(self, credentials: Mapping[str, str]) -> None:
        """Rewrite the store (mode 0600). Catalogue order first, then any extra keys."""
        known = {entry.name for entry in CATALOGUE}
        created = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        lines = [
            "# Generated credentials for platform deployment",
            f"# Updated: {created}",
            "# WARNING: contains secrets; do not commit",
            "",
        ]
        for entry in CATALOGUE:
            if entry.name in credentials:
                lines.append(f"{entry.name}={_quote(credentials[entry.name])}")
        extras = sorted(k for k in credentials if k not in known and k not in COMPUTED)
        if extras:
            lines.extend(["", "# Additional values"])
            lines.extend(f"{k}={_quote(credentials[k])}" for k in extras)
        write_restricted(self.store_path, "\n".join(lines) + "\n")
        logger.debug("credentials saved", path=str(self.store_path))


def validate_airgapped(credentials: Mapping[str, str]) -> None:
    """Fail fast when air-gapped mode lacks registries, chart overrides or mirrors.

    Raises:
        FatalError: listing every missing or invalid value
    """
    problems = []
    for name in ("BOOTSTRAP_REGISTRY", "UPSTREAM_PROXY_REGISTRY", "GIT_BASE_URL"):
        if not credentials.get(name):
            problems.append(f"{name} is not set")
    required_oci = list(HELM_OCI_VARS)
    if credentials.get("DEPLOY_LIBRENMS", "false").lower() == "true":
        required_oci.append("HELM_OCI_MARIADB_OPERATOR")
    for name in required_oci:
        if not credentials.get(name):
            problems.append(f"{name} is not set")
    if "github.com" in credentials.get("ARGO_ROLLOUTS_PLUGIN_URL", ""):
        problems.append("ARGO_ROLLOUTS_PLUGIN_URL still points to github.com")

    if problems:
        for problem in problems:
            logger.error("air-gapped prerequisite missing", problem=problem)
        raise FatalError(
            "AIRGAPPED=true but prerequisites are missing: " + "; ".join(problems),
            "Set the listed values in the credential store (scripts/.env) and re-run",
        )
