"""Placeholder substitution for manifests and chart values.

Replaces a fixed catalogue of CHANGEME_* tokens and legacy domain spellings with
resolved credential values. The replacement is a single left-to-right scan with
longer tokens tried first, so CHANGEME_DOMAIN_DASHED never degrades into
CHANGEME_DOMAIN + "_DASHED" and no inserted value is scanned again.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from pathlib import Path

from .shared.logging import get_logger

logger = get_logger(__name__)

CATALOGUE_VERSION = 3

Resolver = Callable[[Mapping[str, str]], str]


def _key(name: str, fallback: str = "") -> Resolver:
    return lambda values: values.get(name) or fallback


# token -> value resolver; order is irrelevant, matching is longest-first
TOKENS: dict[str, Resolver] = {
    "CHANGEME_BOOTSTRAP_CLIENT_SECRET": _key("KEYCLOAK_BOOTSTRAP_CLIENT_SECRET"),
    "CHANGEME_KEYCLOAK_DB_PASSWORD": _key("KEYCLOAK_DB_PASSWORD"),
    "CHANGEME_MATTERMOST_DB_PASSWORD": _key("MATTERMOST_DB_PASSWORD"),
    "CHANGEME_MINIO_ROOT_USER": _key("MATTERMOST_MINIO_ROOT_USER"),
    "CHANGEME_MINIO_ROOT_PASSWORD": _key("MATTERMOST_MINIO_ROOT_PASSWORD"),
    "CHANGEME_HARBOR_REDIS_PASSWORD": _key("HARBOR_REDIS_PASSWORD"),
    "CHANGEME_GRAFANA_ADMIN_PASSWORD": _key("GRAFANA_ADMIN_PASSWORD"),
    "CHANGEME_LIBRENMS_DB_PASSWORD": _key("LIBRENMS_DB_PASSWORD"),
    "CHANGEME_LIBRENMS_VALKEY_PASSWORD": _key("LIBRENMS_VALKEY_PASSWORD"),
    "CHANGEME_HARBOR_ADMIN_PASSWORD": _key("HARBOR_ADMIN_PASSWORD"),
    "CHANGEME_HARBOR_MINIO_SECRET_KEY": _key("HARBOR_MINIO_SECRET_KEY"),
    "CHANGEME_GITLAB_REDIS_PASSWORD": _key("GITLAB_REDIS_PASSWORD"),
    "CHANGEME_HARBOR_DB_PASSWORD": _key("HARBOR_DB_PASSWORD"),
    "CHANGEME_KASM_PG_SUPERUSER_PASSWORD": _key("KASM_PG_SUPERUSER_PASSWORD"),
    "CHANGEME_KASM_PG_APP_PASSWORD": _key("KASM_PG_APP_PASSWORD"),
    "CHANGEME_KC_ADMIN_PASSWORD": _key("KC_ADMIN_PASSWORD"),
    "CHANGEME_IDENTITY_PORTAL_OIDC_SECRET": _key("IDENTITY_PORTAL_OIDC_SECRET", "changeme"),
    "CHANGEME_OAUTH2_PROXY_REDIS_PASSWORD": _key("OAUTH2_PROXY_REDIS_PASSWORD"),
    "CHANGEME_TRAEFIK_LB_IP": _key("TRAEFIK_LB_IP"),
    "CHANGEME_GIT_REPO_URL": _key("GIT_REPO_URL"),
    "CHANGEME_ARGO_ROLLOUTS_PLUGIN_URL": _key("ARGO_ROLLOUTS_PLUGIN_URL"),
    "CHANGEME_BINARY_URL_ARGOCD_CLI": _key("BINARY_URL_ARGOCD_CLI"),
    "CHANGEME_BINARY_URL_KUSTOMIZE": _key("BINARY_URL_KUSTOMIZE"),
    "CHANGEME_BINARY_URL_KUBECONFORM": _key("BINARY_URL_KUBECONFORM"),
    "CHANGEME_CRD_SCHEMA_BASE_URL": _key("CRD_SCHEMA_BASE_URL"),
    "CHANGEME_GATEWAY_API_CRD_URL": _key("GATEWAY_API_CRD_URL"),
    "CHANGEME_GIT_BASE_URL": _key("GIT_BASE_URL"),
    "CHANGEME_TRAEFIK_FQDN": lambda v: f"traefik.{v.get('DOMAIN', '')}",
    "CHANGEME_TRAEFIK_TLS_SECRET": lambda v: f"traefik-{v.get('DOMAIN_DASHED', '')}-tls",
    "CHANGEME_KC_REALM": _key("KC_REALM"),
    "CHANGEME_RANCHER_FQDN": lambda v: v.get("RANCHER_FQDN") or f"rancher.{v.get('DOMAIN', '')}",
    "CHANGEME_DOMAIN_DASHED": _key("DOMAIN_DASHED"),
    "CHANGEME_DOMAIN": _key("DOMAIN"),
    # Legacy spellings of the default domain
    "example-dot-com": _key("DOMAIN_DOT"),
    "example-com": _key("DOMAIN_DASHED"),
    "example.ch": _key("DOMAIN"),
}


def _alternative(token: str) -> str:
    # A CHANGEME token must not be the prefix of a longer, unknown one
    suffix = r"(?![A-Za-z0-9_])" if token.startswith("CHANGEME") else ""
    return re.escape(token) + suffix


_PATTERN = re.compile(
    "|".join(_alternative(token) for token in sorted(TOKENS, key=len, reverse=True))
)
_CHANGEME_RE = re.compile(r"CHANGEME[A-Za-z0-9_]*")


class Substitutor:
    """Apply the token catalogue using values from a credential set."""

    version = CATALOGUE_VERSION

    def __init__(self, values: Mapping[str, str]):
        self.values = values

    def apply(self, text: str) -> str:
        """Replace every catalogue token in text; other text is left untouched."""
        return _PATTERN.sub(lambda m: TOKENS[m.group(0)](self.values), text)

    __call__ = apply

    def apply_file(self, path: Path) -> str:
        return self.apply(path.read_text())


def remaining_tokens(text: str) -> list[str]:
    """CHANGEME_* catalogue tokens still present in text.

    Legacy domain spellings are not reported: they legitimately reappear when
    the configured domain is example.com itself.
    """
    found = {m.group(0) for m in _PATTERN.finditer(text)}
    return sorted(t for t in found if t.startswith("CHANGEME_"))


def find_unreplaced(directory: Path) -> list[tuple[Path, int, str]]:
    """Find CHANGEME placeholders in YAML files that no catalogue entry covers.

    Comment lines are ignored. These need a manual value before deploying.

    Returns:
        (file, line number, placeholder) for each occurrence
    """
    findings = []
    if not directory.exists():
        return findings
    for path in sorted(p for p in directory.rglob("*") if p.suffix in (".yaml", ".yml")):
        try:
            lines = path.read_text().splitlines()
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("cannot read manifest", path=str(path), error=str(e))
            continue
        for lineno, line in enumerate(lines, start=1):
            if line.lstrip().startswith("#"):
                continue
            for match in _CHANGEME_RE.finditer(line):
                if match.group(0) not in TOKENS:
                    findings.append((path, lineno, match.group(0)))
    return findings
