"""SSH certificate authority inside the secret store.

Signs short-lived user certificates for node access. Three signing roles with
decreasing reach (admin, infra, developer) plus the policies the identity
portal and self-service users are granted.
"""

from __future__ import annotations

from ..errors import FatalError
from ..gateway.vault import SecretStoreCLI
from ..shared.logging import get_logger

logger = get_logger(__name__)

SSH_MOUNT = "ssh-client-signer"

_FULL_EXTENSIONS = {
    "permit-pty": "",
    "permit-port-forwarding": "",
    "permit-agent-forwarding": "",
    "permit-X11-forwarding": "",
    "permit-user-rc": "",
}

SSH_ROLES = {
    "admin-role": {
        "allowed_users": "*",
        "default_extensions": _FULL_EXTENSIONS,
        "ttl": "24h",
        "max_ttl": "72h",
    },
    "infra-role": {
        "allowed_users": "rocky,infra,ansible",
        "default_extensions": {
            "permit-pty": "",
            "permit-port-forwarding": "",
            "permit-agent-forwarding": "",
        },
        "ttl": "8h",
        "max_ttl": "24h",
    },
    "developer-role": {
        "allowed_users": "rocky,developer",
        "default_extensions": {"permit-pty": ""},
        "ttl": "4h",
        "max_ttl": "8h",
    },
}


def _path(path: str, *capabilities: str) -> str:
    caps = ", ".join(f'"{c}"' for c in capabilities)
    return f'path "{path}" {{\n  capabilities = [{caps}]\n}}\n'


SSH_POLICIES = {
    "ssh-sign-admin": (
        _path(f"{SSH_MOUNT}/sign/*", "create", "update")
        + _path(f"{SSH_MOUNT}/config/ca", "read")
    ),
    "ssh-sign-self": (
        _path(f"{SSH_MOUNT}/sign/developer-role", "create", "update")
        + _path(f"{SSH_MOUNT}/config/ca", "read")
    ),
    "ssh-admin": _path(f"{SSH_MOUNT}/*", "create", "read", "update", "delete", "list"),
    "identity-portal": (
        _path(f"{SSH_MOUNT}/sign/*", "create", "update")
        + _path(f"{SSH_MOUNT}/config/ca", "read")
        + _path(f"{SSH_MOUNT}/roles/*", "read", "list", "create", "update", "delete")
        + _path("sys/policies/acl/*", "read", "list", "create", "update", "delete")
        + _path("sys/policies/acl", "list")
        + _path("pki_int/cert/ca_chain", "read")
    ),
}


def configure_ssh_ca(store: SecretStoreCLI) -> None:
    """Enable the SSH signer, its roles and policies. Safe to repeat.

    Raises:
        FatalError: a role or policy could not be written
    """
    engines = store.list_secrets_engines() or {}
    if f"{SSH_MOUNT}/" not in engines:
        ok, message = store.enable_secrets_engine("ssh", path=SSH_MOUNT)
        if not ok:
            raise FatalError(f"Cannot enable {SSH_MOUNT}: {message}")
        ok, message = store.write(f"{SSH_MOUNT}/config/ca", generate_signing_key="true")
        if not ok:
            raise FatalError(f"Cannot generate the SSH CA signing key: {message}")
        logger.info("SSH CA signing key generated")

    for name, role in SSH_ROLES.items():
        payload = {"key_type": "ca", "allow_user_certificates": True, **role}
        ok, message = store.write_json(f"{SSH_MOUNT}/roles/{name}", payload)
        if not ok:
            raise FatalError(f"Cannot write SSH role {name}: {message}")

    for name, policy in SSH_POLICIES.items():
        ok, message = store.write_policy(name, policy)
        if not ok:
            raise FatalError(f"Cannot write policy {name}: {message}")

    ok, message = store.write(
        "auth/kubernetes/role/identity-portal",
        bound_service_account_names="identity-portal",
        bound_service_account_namespaces="identity-portal",
        policies="identity-portal",
        ttl="1h",
    )
    if not ok:
        raise FatalError(f"Cannot create auth role identity-portal: {message}")
    logger.info("SSH certificate authority configured", roles=len(SSH_ROLES))
