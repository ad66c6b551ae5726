"""Shared test fixtures for platform-deploy tests.

Fixtures wire the in-memory collaborators from tests/fakes.py into the real
engine objects:
- paths: a DeployPaths rooted in tmp_path
- poller: a ConditionPoller on a fake clock (waits never sleep)
- store / cluster / provisioning / helm: collaborator doubles
- bootstrap: a SecretBootstrap over those doubles
- run_context: a RunContext over those doubles, echo captured in `echoed`
"""

from __future__ import annotations

import pytest

from platform_deploy.config import DeployConfig
from platform_deploy.credentials import CredentialEngine
from platform_deploy.errors import AdvisoryLog
from platform_deploy.phases.context import RunContext
from platform_deploy.poller import ConditionPoller
from platform_deploy.secrets import pki
from platform_deploy.secrets.bootstrap import BootstrapSettings, SecretBootstrap
from platform_deploy.secrets.pki import RootCertificateAuthority
from platform_deploy.shared.paths import DeployPaths
from platform_deploy.substitution import Substitutor

from .fakes import FakeClock, FakeCluster, FakeHelm, FakeProvisioning, FakeSecretStore


@pytest.fixture(autouse=True)
def fast_root_keys(monkeypatch):
    """Generate 2048-bit roots in tests; 4096-bit generation is slow."""
    monkeypatch.setattr(pki, "ROOT_KEY_BITS", 2048)


@pytest.fixture(autouse=True)
def isolated_environ(monkeypatch):
    """Keep credentials exported by one test out of the next."""
    for name in ("DOMAIN", "AIRGAPPED", "KUBECONFIG", "GITLAB_RUNNER_SHARED_TOKEN"):
        # setenv first so teardown also removes values a test exports
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def poller(fake_clock):
    return ConditionPoller(sleep=fake_clock.sleep, clock=fake_clock.clock)


@pytest.fixture
def paths(tmp_path):
    paths = DeployPaths.from_root(tmp_path)
    paths.ensure_dirs()
    return paths


@pytest.fixture
def store():
    return FakeSecretStore(replicas=3)


@pytest.fixture
def cluster():
    return FakeCluster(store_replicas=3)


@pytest.fixture
def provisioning(paths):
    return FakeProvisioning(
        synced=[paths.key_material, paths.root_ca_cert, paths.root_ca_key],
        tfvars={"cluster_name": "platform", "traefik_lb_ip": "192.0.2.10"},
    )


@pytest.fixture
def helm():
    return FakeHelm()


@pytest.fixture
def settings():
    return BootstrapSettings(domain="example.org", org_name="Example", key_shares=5,
                             key_threshold=3)


@pytest.fixture
def make_bootstrap(store, cluster, provisioning, paths, settings, poller):
    def factory(**overrides) -> SecretBootstrap:
        kwargs = dict(
            store=store,
            cluster=cluster,
            provisioning=provisioning,
            root_ca=RootCertificateAuthority(paths.root_ca_cert, paths.root_ca_key),
            key_path=paths.key_material,
            settings=settings,
            poller=poller,
            advisories=AdvisoryLog(),
        )
        kwargs.update(overrides)
        return SecretBootstrap(**kwargs)

    return factory


@pytest.fixture
def bootstrap(make_bootstrap):
    return make_bootstrap()


@pytest.fixture
def credentials(paths):
    engine = CredentialEngine(paths.env_file, environ={"DOMAIN": "example.org"})
    return engine.resolve(export=False)


@pytest.fixture
def echoed():
    return []


@pytest.fixture
def run_context(paths, credentials, poller, provisioning, cluster, helm, store, echoed):
    return RunContext(
        config=DeployConfig(root=str(paths.root)),
        paths=paths,
        credentials=credentials,
        substitutor=Substitutor(credentials),
        poller=poller,
        advisories=AdvisoryLog(),
        terraform=provisioning,
        cluster=cluster,
        helm=helm,
        store=store,
        echo=echoed.append,
    )
