"""Unit tests for the offline root CA."""

from __future__ import annotations

import stat

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from platform_deploy.errors import FatalError
from platform_deploy.secrets.pki import (
    RootCertificateAuthority,
    build_chain,
    verify_issued_chain,
)


def _csr(common_name: str = "Example Intermediate CA") -> str:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
        .sign(key, hashes.SHA256())
    )
    return csr.public_bytes(serialization.Encoding.PEM).decode()


@pytest.fixture
def root_ca(tmp_path):
    ca = RootCertificateAuthority(tmp_path / "root-ca.pem", tmp_path / "root-ca-key.pem")
    ca.generate("Example")
    return ca


class TestRootCertificateAuthority:
    """Tests for root CA generation and reuse."""

    def test_generate(self, root_ca):
        """Test the root is a self-signed CA with a restricted key file."""
        cert = root_ca.certificate()

        assert cert.subject == cert.issuer
        assert cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == (
            "Example Root CA"
        )
        constraints = cert.extensions.get_extension_for_class(x509.BasicConstraints).value
        assert constraints.ca
        assert stat.S_IMODE(root_ca.key_path.stat().st_mode) == 0o600

    def test_ensure_reuses(self, root_ca):
        """Test existing files are never regenerated."""
        before = root_ca.cert_path.read_bytes()

        assert root_ca.ensure("Example") == "reused"
        assert root_ca.cert_path.read_bytes() == before

    def test_ensure_pulls_before_generating(self, tmp_path, root_ca):
        """Test the durable-state pull is tried before generating."""
        saved = (root_ca.cert_path.read_bytes(), root_ca.key_path.read_bytes())
        root_ca.cert_path.unlink()
        root_ca.key_path.unlink()

        def pull():
            root_ca.cert_path.write_bytes(saved[0])
            root_ca.key_path.write_bytes(saved[1])
            return True, "pulled"

        assert root_ca.ensure("Example", pull=pull) == "pulled"
        assert root_ca.cert_path.read_bytes() == saved[0]

    def test_ensure_generates_when_pull_empty(self, tmp_path):
        """Test a root is generated when durable state has none."""
        ca = RootCertificateAuthority(tmp_path / "root-ca.pem", tmp_path / "root-ca-key.pem")

        assert ca.ensure("Example", pull=lambda: (False, "no state")) == "generated"
        assert ca.exists()


class TestSignIntermediate:
    """Tests for local signing of the intermediate CSR."""

    def test_signed_intermediate(self, root_ca):
        """Test the intermediate is a pathlen-0 CA issued by the root."""
        pem = root_ca.sign_intermediate_csr(_csr())
        cert = x509.load_pem_x509_certificate(pem.encode())

        cert.verify_directly_issued_by(root_ca.certificate())
        constraints = cert.extensions.get_extension_for_class(x509.BasicConstraints).value
        assert constraints.ca
        assert constraints.path_length == 0

    def test_malformed_csr(self, root_ca):
        """Test a malformed CSR is fatal."""
        with pytest.raises(FatalError, match="not valid PEM"):
            root_ca.sign_intermediate_csr("garbage")

    def test_missing_root(self, tmp_path):
        """Test signing without root files is fatal."""
        ca = RootCertificateAuthority(tmp_path / "a.pem", tmp_path / "b.pem")

        with pytest.raises(FatalError, match="Root CA files are missing"):
            ca.sign_intermediate_csr(_csr())

    def test_build_chain(self):
        """Test the chain is intermediate then root, newline-terminated."""
        assert build_chain("INT\n", "ROOT") == "INT\nROOT\n"


class TestVerifyIssuedChain:
    """Tests for verify_issued_chain."""

    def test_sound_chain(self, root_ca):
        """Test [intermediate, root] signed by the local root has no problems."""
        intermediate = root_ca.sign_intermediate_csr(_csr())

        assert verify_issued_chain([intermediate, root_ca.certificate_pem()],
                                   root_ca.certificate_pem()) == []

    def test_wrong_length(self, root_ca):
        """Test a chain without the root is reported."""
        intermediate = root_ca.sign_intermediate_csr(_csr())

        problems = verify_issued_chain([intermediate], root_ca.certificate_pem())

        assert problems == ["expected 2 certificates in the CA chain, got 1"]

    def test_foreign_root(self, root_ca, tmp_path):
        """Test an intermediate from another root is reported twice over."""
        other = RootCertificateAuthority(tmp_path / "o.pem", tmp_path / "o-key.pem")
        other.generate("Other")
        intermediate = other.sign_intermediate_csr(_csr())

        problems = verify_issued_chain([intermediate, other.certificate_pem()],
                                       root_ca.certificate_pem())

        assert len(problems) == 2
        assert problems[0] == "chain root differs from the local root certificate"
        assert problems[1].startswith("intermediate is not signed by the root")
