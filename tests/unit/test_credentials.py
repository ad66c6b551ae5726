"""Unit tests for the credential engine."""

from __future__ import annotations

import stat

import pytest

from platform_deploy.credentials import (
    CATALOGUE,
    DEFAULT_DOMAIN,
    HELM_OCI_VARS,
    CredentialEngine,
    CredentialSet,
    generate_password,
    org_name_from_domain,
    parse_env_file,
    validate_airgapped,
)
from platform_deploy.errors import FatalError


class TestHelpers:
    """Tests for module-level helpers."""

    def test_generate_password(self):
        """Test passwords are alphanumeric and of the requested length."""
        password = generate_password(24)
        assert len(password) == 24
        assert password.isalnum()
        assert generate_password() != generate_password()

    @pytest.mark.parametrize(
        "domain,expected",
        [
            ("example.com", "Example"),
            ("my-lab.net", "My Lab"),
            ("tigerNet.io", "Tiger Net"),
        ],
    )
    def test_org_name_from_domain(self, domain, expected):
        """Test the organization name derives from the first label."""
        assert org_name_from_domain(domain) == expected

    def test_parse_env_file(self):
        """Test quoting, export prefixes and comments."""
        text = (
            "# comment\n"
            "\n"
            'DOMAIN="example.org"\n'
            "export AIRGAPPED=true\n"
            "SINGLE='a b'\n"
            'ESCAPED="p\\"w\\$d"\n'
            "not a line\n"
        )
        assert parse_env_file(text) == {
            "DOMAIN": "example.org",
            "AIRGAPPED": "true",
            "SINGLE": "a b",
            "ESCAPED": 'p"w$d',
        }


class TestCredentialEngine:
    """Tests for CredentialEngine.resolve."""

    def test_first_run_generates_and_persists(self, tmp_path):
        """Test a missing store is generated and written with mode 0600."""
        store = tmp_path / "scripts" / ".env"
        engine = CredentialEngine(store, environ={"DOMAIN": "example.org"})

        credentials = engine.resolve(export=False)

        assert store.exists()
        assert stat.S_IMODE(store.stat().st_mode) == 0o600
        for entry in CATALOGUE:
            assert entry.name in credentials
            if entry.length:
                assert len(credentials[entry.name]) == entry.length
        assert credentials["DOMAIN"] == "example.org"
        assert credentials["DOMAIN_DASHED"] == "example-org"
        assert credentials["DOMAIN_DOT"] == "example-dot-org"
        assert credentials["ORG_NAME"] == "Example"
        assert credentials["KC_REALM"] == "example"
        assert credentials["RANCHER_FQDN"] == "rancher.example.org"

    def test_existing_values_never_change(self, tmp_path):
        """Test a second resolve reproduces every stored value."""
        store = tmp_path / ".env"
        first = CredentialEngine(store, environ={}).resolve(export=False)

        second = CredentialEngine(store, environ={"KC_ADMIN_PASSWORD": "override"}).resolve(
            export=False
        )

        assert dict(second) == dict(first)

    def test_store_beats_environment_beats_default(self, tmp_path):
        """Test resolution order: store > environment > default."""
        store = tmp_path / ".env"
        store.write_text('DOMAIN="stored.org"\n')
        environ = {"DOMAIN": "env.org", "DEPLOY_LIBRENMS": "true"}

        credentials = CredentialEngine(store, environ=environ).resolve(export=False)

        assert credentials["DOMAIN"] == "stored.org"
        assert credentials["DEPLOY_LIBRENMS"] == "true"
        assert credentials["DEPLOY_UPTIME_KUMA"] == "true"

    def test_derived_values_from_collaborators(self, tmp_path):
        """Test the load balancer IP and git remote come from the lookups."""
        engine = CredentialEngine(
            tmp_path / ".env",
            environ={},
            tfvar=lambda name: "192.0.2.10" if name == "traefik_lb_ip" else None,
            git_remote=lambda: "git@gitlab.example.org:infra/platform.git",
        )

        credentials = engine.resolve(export=False)

        assert credentials["TRAEFIK_LB_IP"] == "192.0.2.10"
        assert credentials["GIT_REPO_URL"] == "git@gitlab.example.org:infra/platform.git"
        assert credentials["GIT_BASE_URL"] == "git@gitlab.example.org:infra"

    def test_default_domain(self, tmp_path):
        """Test the default domain is used when none is configured."""
        credentials = CredentialEngine(tmp_path / ".env", environ={}).resolve(export=False)
        assert credentials.domain == DEFAULT_DOMAIN

    def test_computed_values_not_persisted(self, tmp_path):
        """Test DOMAIN_DASHED and DOMAIN_DOT are recomputed, not stored."""
        store = tmp_path / ".env"
        CredentialEngine(store, environ={"DOMAIN": "example.org"}).resolve(export=False)

        text = store.read_text()
        assert "DOMAIN_DASHED" not in text
        assert "DOMAIN_DOT" not in text

    def test_export(self, tmp_path):
        """Test resolved values can be exported to an environment mapping."""
        credentials = CredentialEngine(tmp_path / ".env", environ={"DOMAIN": "lab.example"}).resolve(
            export=False
        )
        environ: dict[str, str] = {}

        credentials.export(environ)

        assert environ["DOMAIN"] == "lab.example"
        assert environ["KC_REALM"] == "lab"
        assert environ["DOMAIN_DASHED"] == "lab-example"

    def test_airgapped_requires_prerequisites(self, tmp_path):
        """Test air-gapped mode without mirrors is fatal."""
        engine = CredentialEngine(tmp_path / ".env", environ={"AIRGAPPED": "true"})

        with pytest.raises(FatalError) as exc_info:
            engine.resolve(export=False)

        assert "BOOTSTRAP_REGISTRY is not set" in exc_info.value.message
        assert "ARGO_ROLLOUTS_PLUGIN_URL still points to github.com" in exc_info.value.message


class TestCredentialSet:
    """Tests for CredentialSet."""

    def test_learn_persists(self, tmp_path):
        """Test a learned value is saved to the store."""
        store = tmp_path / ".env"
        credentials = CredentialEngine(store, environ={}).resolve(export=False)

        credentials.learn("GITLAB_RUNNER_SHARED_TOKEN", "glrt-123")

        assert 'GITLAB_RUNNER_SHARED_TOKEN="glrt-123"' in store.read_text()
        reloaded = CredentialEngine(store, environ={}).resolve(export=False)
        assert reloaded["GITLAB_RUNNER_SHARED_TOKEN"] == "glrt-123"

    def test_learn_never_overwrites(self):
        """Test learning a different value for a set name is refused."""
        credentials = CredentialSet({"GITLAB_RUNNER_SHARED_TOKEN": "old"})

        with pytest.raises(ValueError):
            credentials.learn("GITLAB_RUNNER_SHARED_TOKEN", "new")

    def test_flags(self):
        """Test boolean flags and the air-gapped property."""
        credentials = CredentialSet({"AIRGAPPED": "TRUE", "DEPLOY_LIBRENMS": "false"})
        assert credentials.airgapped
        assert not credentials.flag("DEPLOY_LIBRENMS")
        assert not credentials.flag("UNKNOWN")

    def test_extra_keys_kept(self, tmp_path):
        """Test values outside the catalogue survive a rewrite."""
        store = tmp_path / ".env"
        store.write_text('CUSTOM_VALUE="kept"\n')

        CredentialEngine(store, environ={}).resolve(export=False)

        assert 'CUSTOM_VALUE="kept"' in store.read_text()


class TestValidateAirgapped:
    """Tests for air-gapped validation."""

    def _complete(self) -> dict[str, str]:
        values = {name: f"oci://mirror/{name.lower()}" for name in HELM_OCI_VARS}
        values.update(
            BOOTSTRAP_REGISTRY="registry.lab:5000",
            UPSTREAM_PROXY_REGISTRY="proxy.lab",
            GIT_BASE_URL="git@gitlab.lab:infra",
            ARGO_ROLLOUTS_PLUGIN_URL="https://mirror.lab/plugin",
        )
        return values

    def test_complete(self):
        """Test complete prerequisites pass."""
        validate_airgapped(self._complete())

    def test_librenms_needs_mariadb_operator(self):
        """Test the MariaDB operator override is required only with LibreNMS."""
        values = self._complete()
        values["DEPLOY_LIBRENMS"] = "true"

        with pytest.raises(FatalError, match="HELM_OCI_MARIADB_OPERATOR"):
            validate_airgapped(values)
