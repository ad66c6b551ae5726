"""Offline root CA and local signing of the store's intermediate CSR.

The root private key lives only on the workstation (and its durable-state
backup). The store generates the intermediate key internally; only the CSR
comes out and only the signed certificate chain goes back in.
"""

from __future__ import annotations

import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from ..errors import FatalError
from ..shared.logging import get_logger
from ..shared.paths import write_restricted

logger = get_logger(__name__)

ROOT_KEY_BITS = 4096
ROOT_VALIDITY_DAYS = 5475  # 15 years
INTERMEDIATE_VALIDITY_DAYS = 3650  # 10 years


@dataclass
class PKIChain:
    """Where each part of the trust chain lives.

    The intermediate key has no local counterpart: it is generated and kept
    inside the store under `mount`.
    """

    root_cert_path: Path
    root_key_path: Path
    mount: str = "pki_int"
    role: str = ""
    intermediate_pem: str = ""


class RootCertificateAuthority:
    """The offline root of trust held as two local PEM files."""

    def __init__(self, cert_path: Path, key_path: Path):
        self.cert_path = cert_path
        self.key_path = key_path

    def exists(self) -> bool:
        return self.cert_path.exists() and self.key_path.exists()

    def ensure(self, org_name: str,
               pull: Callable[[], tuple[bool, str]] | None = None) -> str:
        """Make sure the root CA files exist: reuse, else pull from durable state, else generate.

        Returns:
            "reused", "pulled" or "generated"
        """
        if self.exists():
            logger.info("root CA present", cert=str(self.cert_path))
            return "reused"
        if pull is not None:
            ok, message = pull()
            if ok and self.exists():
                logger.info("root CA restored from durable state")
                return "pulled"
            logger.info("root CA not in durable state", detail=message)
        self.generate(org_name)
        return "generated"

    def generate(self, org_name: str) -> None:
        """Create a self-signed RSA-4096 root valid for 15 years."""
        logger.info("generating root CA", org=org_name)
        key = rsa.generate_private_key(public_exponent=65537, key_size=ROOT_KEY_BITS)
        name = x509.Name(
            [
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, org_name),
                x509.NameAttribute(NameOID.COMMON_NAME, f"{org_name} Root CA"),
            ]
        )
        now = datetime.now(timezone.utc)
        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(_serial())
            .not_valid_before(now - timedelta(minutes=5))
            .not_valid_after(now + timedelta(days=ROOT_VALIDITY_DAYS))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(_ca_key_usage(), critical=True)
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()),
                           critical=False)
            .sign(key, hashes.SHA256())
        )
        key_pem = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
        write_restricted(self.key_path, key_pem, mode=0o600)
        write_restricted(self.cert_path, cert.public_bytes(serialization.Encoding.PEM), mode=0o644)

    def certificate(self) -> x509.Certificate:
        return x509.load_pem_x509_certificate(self.cert_path.read_bytes())

    def certificate_pem(self) -> str:
        return self.cert_path.read_text()

    def _private_key(self) -> rsa.RSAPrivateKey:
        key = serialization.load_pem_private_key(self.key_path.read_bytes(), password=None)
        if not isinstance(key, rsa.RSAPrivateKey):
            raise FatalError(f"{self.key_path} does not hold an RSA private key")
        return key

    def sign_intermediate_csr(self, csr_pem: str,
                              days: int = INTERMEDIATE_VALIDITY_DAYS) -> str:
        """Sign an intermediate CA request with the root key.

        The result may issue end-entity certificates only (pathlen 0).

        Raises:
            FatalError: root files missing or the CSR is malformed
        """
        if not self.exists():
            raise FatalError(
                "Root CA files are missing; cannot sign the intermediate",
                "Restore cluster/root-ca.pem and cluster/root-ca-key.pem or re-run phase 2",
            )
        try:
            csr = x509.load_pem_x509_csr(csr_pem.encode())
        except ValueError as e:
            raise FatalError(f"Intermediate CSR is not valid PEM: {e}") from e
        if not csr.is_signature_valid:
            raise FatalError("Intermediate CSR signature does not verify")

        root_cert = self.certificate()
        root_key = self._private_key()
        now = datetime.now(timezone.utc)
        cert = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(root_cert.subject)
            .public_key(csr.public_key())
            .serial_number(_serial())
            .not_valid_before(now - timedelta(minutes=5))
            .not_valid_after(now + timedelta(days=days))
            .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
            .add_extension(_ca_key_usage(), critical=True)
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(csr.public_key()),
                           critical=False)
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(root_key.public_key()),
                critical=False,
            )
            .sign(root_key, hashes.SHA256())
        )
        logger.info("intermediate CA signed", subject=csr.subject.rfc4514_string(), days=days)
        return cert.public_bytes(serialization.Encoding.PEM).decode()


def build_chain(intermediate_pem: str, root_pem: str) -> str:
    """Intermediate followed by root, as the store expects for set-signed."""
    return intermediate_pem.strip() + "\n" + root_pem.strip() + "\n"


def _ca_key_usage() -> x509.KeyUsage:
    return x509.KeyUsage(
        digital_signature=True,
        content_commitment=False,
        key_encipherment=False,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=True,
        crl_sign=True,
        encipher_only=False,
        decipher_only=False,
    )


def _serial() -> int:
    return int.from_bytes(secrets.token_bytes(16), "big") >> 1


def verify_issued_chain(ca_chain: list[str], root_pem: str) -> list[str]:
    """Check an issued certificate's CA chain against the local root.

    Expected shape is [intermediate, root]: the intermediate signed by the root,
    and the root byte-identical (after PEM normalization) to the local file.

    Returns:
        List of problems; empty when the chain is sound
    """
    if len(ca_chain) != 2:
        return [f"expected 2 certificates in the CA chain, got {len(ca_chain)}"]
    problems = []
    intermediate_pem, chain_root_pem = (pem.strip() for pem in ca_chain)
    if chain_root_pem != root_pem.strip():
        problems.append("chain root differs from the local root certificate")
    root = x509.load_pem_x509_certificate(root_pem.encode())
    intermediate = x509.load_pem_x509_certificate(intermediate_pem.encode())
    try:
        intermediate.verify_directly_issued_by(root)
    except (ValueError, TypeError, InvalidSignature) as e:
        problems.append(f"intermediate is not signed by the root: {str(e) or type(e).__name__}")
    return problems
