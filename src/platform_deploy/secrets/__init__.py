"""Secret-store bootstrap: key material, offline root CA and the state machine."""

from .bootstrap import BootstrapSettings, BootstrapStage, SecretBootstrap
from .keys import KeyMaterial
from .pki import PKIChain, RootCertificateAuthority, build_chain, verify_issued_chain
from .ssh import configure_ssh_ca

__all__ = [
    "BootstrapSettings",
    "BootstrapStage",
    "KeyMaterial",
    "PKIChain",
    "RootCertificateAuthority",
    "SecretBootstrap",
    "build_chain",
    "configure_ssh_ca",
    "verify_issued_chain",
]
