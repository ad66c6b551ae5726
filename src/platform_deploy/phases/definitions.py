"""The static phase catalogue.

Every step is a plain function of the RunContext. Steps check live state before they act:
charts are installed-or-upgraded, manifests are applied declaratively, and the
secret bootstrap derives its own progress, so any phase can start a run.
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping

from ..errors import FatalError
from ..gateway.rest import ClusterManagerClient
from ..poller import SLOW_INTERVAL
from ..secrets.bootstrap import BootstrapStage
from ..secrets.pki import verify_issued_chain
from ..secrets.ssh import configure_ssh_ca
from ..shared.logging import get_logger
from ..shared.paths import write_restricted
from .context import RunContext, expect
from .runner import Phase, Step, StepPolicy

logger = get_logger(__name__)

FATAL = StepPolicy.FATAL
ADVISORY = StepPolicy.ADVISORY

REQUIRED_TFVARS = [
    "rancher_url",
    "rancher_token",
    "harvester_kubeconfig_path",
    "harvester_cluster_id",
    "vm_namespace",
    "harvester_network_name",
    "harvester_network_namespace",
    "harvester_cloud_credential_name",
    "harvester_cloud_provider_kubeconfig_path",
    "cluster_name",
    "domain",
    "keycloak_realm",
    "ssh_authorized_keys",
]

PLACEHOLDER_MARKERS = ("example.com", "xxxxx")

# Node name fragment -> workload pool
NODE_POOLS = {
    "-general-": "general",
    "-compute-": "compute",
    "-database-": "database",
}

CHART_REPOS = {
    "jetstack": "https://charts.jetstack.io",
    "cnpg": "https://cloudnative-pg.github.io/charts",
    "ot-helm": "https://ot-container-kit.github.io/helm-charts/",
    "hashicorp": "https://helm.releases.hashicorp.com",
    "prometheus-community": "https://prometheus-community.github.io/helm-charts",
    "goharbor": "https://helm.goharbor.io",
    "argo": "https://argoproj.github.io/argo-helm",
    "kasmtech": "https://helm.kasmweb.com/",
}

GATEWAY_API_CRDS = "crds/gateway-api-v1.3.0-standard-install.yaml"

# Namespaces whose workloads must trust the platform root CA
ROOT_CA_NAMESPACES = [
    "kube-system",
    "monitoring",
    "argocd",
    "argo-rollouts",
    "harbor",
    "mattermost",
    "gitlab",
    "keycloak",
    "identity-portal",
    "gitlab-runners",
]

REGISTRY_PROJECTS = [
    ("library", True),
    ("platform", False),
    ("charts", False),
]

# Hostname prefixes served through the ingress load balancer
SERVICE_HOSTS = [
    "vault",
    "grafana",
    "prometheus",
    "alertmanager",
    "hubble",
    "harbor",
    "argo",
    "rollouts",
    "keycloak",
    "mattermost",
    "kasm",
    "identity",
]

DNS_ONLY_HOSTS = ["traefik", "gitlab"]

CURL_POD = "curl-check"
CURL_IMAGE = "curlimages/curl"


def _repo(ctx: RunContext, name: str) -> None:
    expect(ctx.helm.repo_add(name, CHART_REPOS[name]), f"helm repo {name}")


def _cluster_name(ctx: RunContext) -> str:
    name = ctx.terraform.tfvar("cluster_name")
    if not name:
        raise FatalError("cluster_name is not set in terraform.tfvars", f"Edit {ctx.paths.tfvars}")
    return name


def optional_hosts(credentials: Mapping[str, str]) -> list[str]:
    hosts = []
    if credentials.get("DEPLOY_UPTIME_KUMA", "false").lower() == "true":
        hosts.append("status")
    if credentials.get("DEPLOY_LIBRENMS", "false").lower() == "true":
        hosts.append("librenms")
    return hosts


# =============================================================================
# Phase 0: provisioning
# =============================================================================


def check_tfvars(ctx: RunContext) -> None:
    """Fail early on a missing or placeholder terraform.tfvars."""
    if not ctx.paths.tfvars.exists():
        raise FatalError(
            f"{ctx.paths.tfvars} not found",
            "Copy terraform.tfvars.example to terraform.tfvars and fill in every value",
        )
    missing = ctx.terraform.missing_tfvars(REQUIRED_TFVARS)
    if missing:
        raise FatalError(
            f"terraform.tfvars does not set: {', '.join(missing)}",
            f"Edit {ctx.paths.tfvars}",
        )
    placeholders = [
        name for name in REQUIRED_TFVARS
        if any(marker in (ctx.terraform.tfvar(name) or "") for marker in PLACEHOLDER_MARKERS)
    ]
    if placeholders:
        raise FatalError(
            f"terraform.tfvars still holds placeholder values: {', '.join(placeholders)}",
            f"Replace the example values in {ctx.paths.tfvars}",
        )
    ctx.echo("✓ terraform.tfvars complete")


def sync_state(ctx: RunContext) -> None:
    expect(ctx.terraform.push_secrets(), "push secrets to durable state")
    ctx.echo("✓ Local secrets synced to durable state")


def provision(ctx: RunContext) -> None:
    ctx.echo("Applying infrastructure (this can take a while)...")
    ctx.echo(f"✓ {expect(ctx.terraform.apply(), 'provisioning')}")


def wait_cluster_active(ctx: RunContext) -> None:
    name = _cluster_name(ctx)
    with ctx.cluster_manager() as client:
        ctx.wait_cluster_active(client, name).raise_if_unsatisfied(
            "Check machine provisioning in the cluster manager UI"
        )
    ctx.echo(f"✓ Cluster '{name}' is Active")


def generate_cluster_credential(ctx: RunContext) -> None:
    """Write the cluster kubeconfig; its existence marks provisioning as complete."""
    name = _cluster_name(ctx)
    with ctx.cluster_manager() as client:
        config = _kubeconfig_for(client, name)
    write_restricted(ctx.paths.kubeconfig, config)
    os.environ["KUBECONFIG"] = str(ctx.paths.kubeconfig)
    ctx.echo(f"✓ Kubeconfig written to {ctx.paths.kubeconfig}")


def _kubeconfig_for(client: ClusterManagerClient, name: str) -> str:
    cluster_id = client.cluster_id(name)
    if not cluster_id:
        raise FatalError(f"Cluster '{name}' not found in the cluster manager")
    config = client.generate_kubeconfig(cluster_id)
    if not config:
        raise FatalError(
            f"The cluster manager returned an empty kubeconfig for '{name}'",
            "Check the API token's permissions on the cluster",
        )
    return config


def verify_nodes(ctx: RunContext) -> None:
    def all_ready():
        nodes = ctx.cluster.list_nodes()
        return bool(nodes) and all(n["ready"] for n in nodes)

    ctx.wait(all_ready, "all nodes Ready", timeout=600, interval=SLOW_INTERVAL).raise_if_unsatisfied()
    ctx.echo(f"✓ {len(ctx.cluster.list_nodes())} node(s) Ready")


# =============================================================================
# Phase 1: foundation
# =============================================================================


def wait_webhook(ctx: RunContext) -> None:
    def has_endpoints():
        data = ctx.cluster.get_json("endpoints", "rancher-webhook", "cattle-system") or {}
        return any(subset.get("addresses") for subset in data.get("subsets") or [])

    ctx.wait(has_endpoints, "rancher-webhook endpoints", timeout=300,
             interval=SLOW_INTERVAL).raise_if_unsatisfied()
    ctx.echo("✓ Admission webhook serving")


def label_nodes(ctx: RunContext) -> None:
    """Label nodes by pool so workloads can select their pool."""
    failures = []
    labelled = 0
    for node in ctx.cluster.list_nodes():
        pool = next((p for fragment, p in NODE_POOLS.items() if fragment in node["name"]), None)
        if pool is None:
            continue
        for label in (f"workload-type={pool}", f"node-role.kubernetes.io/{pool}="):
            ok, message = ctx.cluster.label_node(node["name"], label)
            if not ok:
                failures.append(f"{node['name']}: {message}")
        labelled += 1
    if failures:
        raise FatalError("Node labelling failed: " + "; ".join(failures))
    ctx.echo(f"✓ {labelled} node(s) labelled")


def ingress_controller(ctx: RunContext) -> None:
    """The bundled ingress controller must exist before anything routes to it."""
    ctx.wait(lambda: ctx.cluster.exists("helmchart", "rke2-traefik", "kube-system"),
             "helmchart rke2-traefik in kube-system", timeout=300).raise_if_unsatisfied(
        "Check that the cluster was provisioned with the bundled Traefik chart"
    )
    # Mounted by the ingress controller; filled with the real root in phase 2
    if not ctx.cluster.exists("configmap", "vault-root-ca", "kube-system"):
        expect(ctx.cluster.create_configmap_from_literals("vault-root-ca", "kube-system",
                                                          {"ca.crt": ""}),
               "placeholder root CA configmap")
    ctx.echo("✓ Ingress controller present")


def ensure_check_pod(ctx: RunContext) -> None:
    """Run the in-cluster curl pod on the general pool, reusing a running one."""
    pod = ctx.cluster.get_json("pod", CURL_POD, "default") or {}
    if pod.get("status", {}).get("phase") == "Running":
        return

    expect(ctx.cluster.delete("pod", CURL_POD, "default"), f"remove stale {CURL_POD} pod")
    overrides = {"spec": {"nodeSelector": {"workload-type": "general"}}}
    result = ctx.cluster.kubectl(
        "run", CURL_POD, "-n", "default", "--restart=Never", f"--image={CURL_IMAGE}",
        f"--overrides={json.dumps(overrides)}", "--", "sleep", "7200",
    )
    if not result.ok:
        raise FatalError(f"Cannot start {CURL_POD} pod: {result.message}")
    expect(ctx.cluster.wait(f"pod/{CURL_POD}", "condition=ready", "default", timeout_seconds=120),
           f"{CURL_POD} pod")


def check_pod(ctx: RunContext) -> None:
    ensure_check_pod(ctx)
    ctx.echo(f"✓ {CURL_POD} pod ready for HTTPS checks")


def gateway_crds(ctx: RunContext) -> None:
    local = ctx.paths.service(GATEWAY_API_CRDS)
    if local.exists():
        result = ctx.cluster.kubectl("apply", "--server-side", "-f", str(local))
    else:
        result = ctx.cluster.kubectl("apply", "--server-side", "-f",
                                     ctx.credentials["GATEWAY_API_CRD_URL"])
    if not result.ok:
        raise FatalError(f"Gateway API CRDs: {result.message}")
    ctx.echo("✓ Gateway API CRDs installed")


def cert_manager(ctx: RunContext) -> None:
    _repo(ctx, "jetstack")
    ctx.install_chart(
        "cert-manager", "jetstack/cert-manager", "HELM_OCI_CERT_MANAGER", "cert-manager",
        "--version", ctx.config.cert_manager_version,
        "--set", "crds.enabled=true",
        "--set", "config.apiVersion=controller.config.cert-manager.io/v1alpha1",
        "--set", "config.kind=ControllerConfiguration",
        "--set", "config.enableGatewayAPI=true",
    )
    for name in ("cert-manager", "cert-manager-webhook"):
        ctx.wait_deployment("cert-manager", name).raise_if_unsatisfied()
    ctx.echo("✓ cert-manager ready")


def cnpg_operator(ctx: RunContext) -> None:
    _repo(ctx, "cnpg")
    ctx.install_chart("cnpg", "cnpg/cloudnative-pg", "HELM_OCI_CNPG", "cnpg-system",
                      "--version", ctx.config.cnpg_chart_version)
    ctx.wait_deployment("cnpg-system", "cnpg-cloudnative-pg").raise_if_unsatisfied()
    ctx.echo("✓ CloudNativePG operator ready")


def redis_operator(ctx: RunContext) -> None:
    _repo(ctx, "ot-helm")
    ctx.install_chart("redis-operator", "ot-helm/redis-operator", "HELM_OCI_REDIS_OPERATOR",
                      "redis-operator-system")
    ctx.wait_release_deployed("redis-operator", "redis-operator-system").raise_if_unsatisfied()
    ctx.echo("✓ Redis operator ready")


# =============================================================================
# Phase 2: secrets
# =============================================================================


def store_chart(ctx: RunContext) -> None:
    _repo(ctx, "hashicorp")
    ctx.install_chart(
        "vault", "hashicorp/vault", "HELM_OCI_VAULT", ctx.config.vault_namespace,
        "--version", ctx.config.vault_chart_version,
        "-f", str(ctx.paths.service("vault", "vault-values.yaml")),
    )
    ctx.echo("✓ Secret store chart installed")


def secret_bootstrap(ctx: RunContext) -> None:
    stage = ctx.secret_bootstrap().run()
    if stage < BootstrapStage.AUTH_BACKEND_CONFIGURED:
        raise FatalError(
            f"Secret store bootstrap stopped at {stage.name}",
            "Re-run with: platform-deploy deploy --from 2",
        )
    ctx.echo("✓ Secret store initialized, unsealed and issuing certificates")


def cluster_issuer(ctx: RunContext) -> None:
    ctx.apply("cert-manager/rbac.yaml")
    ctx.apply_substituted("cert-manager/cluster-issuer.yaml")
    ctx.wait_cluster_issuer("vault-issuer").raise_if_unsatisfied(
        "kubectl describe clusterissuer vault-issuer"
    )
    ctx.apply_substituted("vault/gateway.yaml", "vault/httproute.yaml")
    ctx.wait_tls_secret("vault", f"vault-{ctx.credentials['DOMAIN_DASHED']}-tls")
    ctx.echo("✓ ClusterIssuer vault-issuer Ready")


def distribute_root_ca(ctx: RunContext) -> None:
    """Publish the root certificate to every namespace that talks TLS internally."""
    root_pem = ctx.root_ca().certificate_pem()
    failures = []
    for namespace in ROOT_CA_NAMESPACES:
        ok, message = ctx.cluster.create_namespace(namespace)
        if ok:
            ok, message = ctx.cluster.create_configmap_from_literals(
                "vault-root-ca", namespace, {"ca.crt": root_pem}
            )
        if not ok:
            failures.append(f"{namespace}: {message}")

    # The ingress controller reads the CA at startup
    ok, message = ctx.cluster.rollout_restart("daemonset", "rke2-traefik", "kube-system")
    if not ok:
        failures.append(f"rke2-traefik restart: {message}")
    if failures:
        raise FatalError("Root CA distribution incomplete: " + "; ".join(failures))
    ctx.echo(f"✓ Root CA distributed to {len(ROOT_CA_NAMESPACES)} namespaces")


def ssh_ca(ctx: RunContext) -> None:
    ctx.authenticate_store()
    configure_ssh_ca(ctx.store)
    ctx.echo("✓ SSH certificate authority configured")


# =============================================================================
# Phase 3: monitoring
# =============================================================================


def monitoring_stack(ctx: RunContext) -> None:
    ctx.apply_kustomization("monitoring-stack")
    _repo(ctx, "prometheus-community")
    with ctx.values_file("monitoring-stack/kube-prometheus-stack/values.yaml") as values:
        ctx.install_chart(
            "kube-prometheus-stack", "prometheus-community/kube-prometheus-stack",
            "HELM_OCI_KPS", "monitoring",
            "--version", ctx.config.kps_chart_version, "-f", str(values),
        )
    ctx.apply_kustomization("monitoring-stack/prometheus-rules")
    ctx.apply_kustomization("monitoring-stack/service-monitors")
    ctx.wait_deployment("monitoring", "grafana").raise_if_unsatisfied()

    dashed = ctx.credentials["DOMAIN_DASHED"]
    for host in ("grafana", "prometheus", "alertmanager"):
        ctx.wait_tls_secret("monitoring", f"{host}-{dashed}-tls")
    ctx.echo("✓ Monitoring stack deployed")


# =============================================================================
# Phase 4: registry
# =============================================================================


def registry_chart(ctx: RunContext) -> None:
    ctx.apply("harbor/namespace.yaml")
    ctx.apply_kustomization("harbor/minio")
    ctx.cluster.create_namespace("database")
    ctx.apply_substituted("harbor/postgres/secret.yaml")
    ctx.apply("harbor/postgres/harbor-pg-cluster.yaml")
    ctx.wait_cnpg_primary("database", "harbor-pg").raise_if_unsatisfied()

    _repo(ctx, "goharbor")
    with ctx.values_file("harbor/harbor-values.yaml") as values:
        ctx.install_chart("harbor", "goharbor/harbor", "HELM_OCI_HARBOR", "harbor",
                          "--version", ctx.config.harbor_chart_version, "-f", str(values))
    ctx.wait_deployment("harbor", "harbor-core", timeout=600).raise_if_unsatisfied()
    ctx.apply_substituted("harbor/gateway.yaml", "harbor/httproute.yaml")
    ctx.wait_tls_secret("harbor", f"harbor-{ctx.credentials['DOMAIN_DASHED']}-tls")
    ctx.echo("✓ Registry deployed")


def registry_projects(ctx: RunContext) -> None:
    failures = []
    with ctx.registry() as client:
        for name, public in REGISTRY_PROJECTS:
            response = client.create_project(name, public=public)
            if not response.ok:
                failures.append(f"{name}: {response.error}")
    if failures:
        raise FatalError("Registry projects not created: " + "; ".join(failures))
    ctx.echo(f"✓ Registry projects: {', '.join(n for n, _ in REGISTRY_PROJECTS)}")


# =============================================================================
# Phase 5: identity
# =============================================================================


def identity_db(ctx: RunContext) -> None:
    ctx.cluster.create_namespace("database")
    ctx.apply_substituted("keycloak/postgres/secret.yaml")
    ctx.apply("keycloak/postgres/keycloak-pg-cluster.yaml")
    ctx.wait_cnpg_primary("database", "keycloak-pg").raise_if_unsatisfied()
    ctx.echo("✓ Identity database ready")


def identity_provider(ctx: RunContext) -> None:
    ctx.apply_kustomization("keycloak")
    ctx.wait_deployment("keycloak", "keycloak", timeout=600).raise_if_unsatisfied(
        "kubectl -n keycloak describe deployment keycloak"
    )
    ctx.wait_tls_secret("keycloak", f"keycloak-{ctx.credentials['DOMAIN_DASHED']}-tls")
    ctx.echo("✓ Identity provider ready")


def realm_check(ctx: RunContext) -> None:
    realm = ctx.credentials["KC_REALM"]
    with ctx.identity_provider() as client:
        login = client.login("admin", ctx.credentials["KC_ADMIN_PASSWORD"])
        if not login.ok:
            raise FatalError(f"Identity provider admin login failed: {login.error}")
        if not client.realm_exists(realm):
            raise FatalError(f"Realm '{realm}' does not exist",
                             "Create the realm before onboarding users")
    ctx.echo(f"✓ Realm '{realm}' present")


# =============================================================================
# Phase 6: delivery
# =============================================================================


def gitops_controller(ctx: RunContext) -> None:
    with ctx.values_file("argo/argocd-values.yaml") as values:
        ctx.install_chart("argocd", "oci://ghcr.io/argoproj/argo-helm/argo-cd",
                          "HELM_OCI_ARGOCD", "argocd", "-f", str(values))
    ctx.wait_deployment("argocd", "argocd-server").raise_if_unsatisfied()
    ctx.apply_substituted("argo/argocd-gateway.yaml")
    ctx.wait_tls_secret("argocd", f"argo-{ctx.credentials['DOMAIN_DASHED']}-tls")
    ctx.echo("✓ GitOps controller deployed")


def rollouts(ctx: RunContext) -> None:
    _repo(ctx, "argo")
    with ctx.values_file("argo/rollouts-values.yaml") as values:
        ctx.install_chart("argo-rollouts", "argo/argo-rollouts", "HELM_OCI_ARGO_ROLLOUTS",
                          "argo-rollouts", "-f", str(values))
    ctx.wait_deployment("argo-rollouts", "argo-rollouts").raise_if_unsatisfied()
    ctx.echo("✓ Progressive delivery controller deployed")


# =============================================================================
# Phase 7: services
# =============================================================================


def _database(ctx: RunContext, service: str, cluster_name: str) -> None:
    ctx.cluster.create_namespace("database")
    ctx.apply_substituted(f"{service}/postgres/secret.yaml")
    ctx.apply(f"{service}/postgres/{cluster_name}-cluster.yaml")
    ctx.wait_cnpg_primary("database", cluster_name).raise_if_unsatisfied()


def mattermost(ctx: RunContext) -> None:
    _database(ctx, "mattermost", "mattermost-pg")
    ctx.apply_kustomization("mattermost")
    ctx.wait_pods_ready("mattermost", "app=mattermost-minio").raise_if_unsatisfied()
    ctx.wait_deployment("mattermost", "mattermost").raise_if_unsatisfied()
    ctx.wait_tls_secret("mattermost", f"mattermost-{ctx.credentials['DOMAIN_DASHED']}-tls")
    ctx.echo("✓ Mattermost deployed")


def kasm(ctx: RunContext) -> None:
    ctx.apply("kasm/namespace.yaml")
    _database(ctx, "kasm", "kasm-pg")
    _repo(ctx, "kasmtech")
    with ctx.values_file("kasm/kasm-values.yaml") as values:
        ctx.install_chart("kasm", "kasmtech/kasm", "HELM_OCI_KASM", "kasm",
                          "--version", "1.1181.0", "-f", str(values), timeout=600)
    ctx.wait_deployment("kasm", "kasm-api-deployment").raise_if_unsatisfied()
    ctx.apply_substituted("kasm/certificate.yaml", "kasm/ingressroute.yaml")
    ctx.echo("✓ Kasm deployed")


def uptime_kuma(ctx: RunContext) -> None:
    if not ctx.credentials.flag("DEPLOY_UPTIME_KUMA"):
        ctx.echo("Skipping Uptime Kuma (DEPLOY_UPTIME_KUMA=false)")
        return
    ctx.apply_kustomization("uptime-kuma")
    ctx.wait_deployment("uptime-kuma", "uptime-kuma").raise_if_unsatisfied()
    ctx.wait_tls_secret("uptime-kuma", f"status-{ctx.credentials['DOMAIN_DASHED']}-tls")
    ctx.echo("✓ Uptime Kuma deployed")


def librenms(ctx: RunContext) -> None:
    if not ctx.credentials.flag("DEPLOY_LIBRENMS"):
        ctx.echo("Skipping LibreNMS (DEPLOY_LIBRENMS=false)")
        return
    ctx.apply_kustomization("librenms")
    ctx.wait_pods_ready("librenms", "app.kubernetes.io/name=librenms-mariadb",
                        timeout=600).raise_if_unsatisfied()
    ctx.wait_deployment("librenms", "librenms").raise_if_unsatisfied()
    ctx.wait_tls_secret("librenms", f"librenms-{ctx.credentials['DOMAIN_DASHED']}-tls")
    ctx.echo("✓ LibreNMS deployed")


def register_ci_runner(ctx: RunContext) -> None:
    """Register the shared CI runner once and keep its token in the credential store."""
    if ctx.credentials.get("GITLAB_RUNNER_SHARED_TOKEN"):
        ctx.echo("✓ Shared CI runner already registered")
        return
    if not ctx.credentials.get("GITLAB_API_TOKEN"):
        ctx.advisories.add("GITLAB_API_TOKEN is not set; shared CI runner not registered")
        return
    with ctx.source_control() as client:
        token = client.create_runner(f"{ctx.credentials.domain} shared runner")
    if not token:
        raise FatalError("Source control did not return a runner token")
    ctx.credentials.learn("GITLAB_RUNNER_SHARED_TOKEN", token)
    ctx.echo("✓ Shared CI runner registered")


# =============================================================================
# Phase 8: dns
# =============================================================================


def dns_records(credentials: Mapping[str, str]) -> list[str]:
    """FQDNs that need an A record pointing at the ingress load balancer."""
    domain = credentials.get("DOMAIN", "")
    hosts = SERVICE_HOSTS + DNS_ONLY_HOSTS + optional_hosts(credentials)
    return [f"{host}.{domain}" for host in hosts]


def report_dns(ctx: RunContext) -> None:
    lb_ip = ctx.terraform.tfvar("traefik_lb_ip") or ctx.credentials["TRAEFIK_LB_IP"]
    ctx.echo(f"Create the following A records pointing to {lb_ip}:")
    ctx.echo("")
    for fqdn in dns_records(ctx.credentials):
        ctx.echo(f"  {fqdn}  →  {lb_ip}")
    ctx.echo("")


# =============================================================================
# Phase 9: validation
# =============================================================================


def cluster_health(ctx: RunContext) -> None:
    """Record an advisory for every unhealthy core component."""
    not_ready = [n["name"] for n in ctx.cluster.list_nodes() if not n["ready"]]
    if not_ready:
        ctx.advisories.add(f"Nodes not Ready: {', '.join(not_ready)}")

    sealed = [
        ctx.store.replica(i) for i in range(ctx.config.vault_replicas)
        if not ctx.store.status(i).unsealed
    ]
    if sealed:
        ctx.advisories.add(f"Secret store replicas not unsealed: {', '.join(sealed)}")

    if ctx.cluster.condition_status("clusterissuer", "vault-issuer") != "True":
        ctx.advisories.add("ClusterIssuer vault-issuer is not Ready")
    ctx.echo("✓ Cluster health checked")


def https_status(ctx: RunContext, fqdn: str) -> int | None:
    """HTTP status seen from inside the cluster, routed through the load balancer."""
    lb_ip = ctx.credentials["TRAEFIK_LB_IP"]
    result = ctx.cluster.exec(
        "default", CURL_POD,
        ["curl", "-sk", "--max-time", "15", "--resolve", f"{fqdn}:443:{lb_ip}",
         "-o", "/dev/null", "-w", "%{http_code}", f"https://{fqdn}/"],
        timeout=30,
    )
    code = result.stdout.strip()
    return int(code) if code.isdigit() else None


def https_checks(ctx: RunContext) -> None:
    # The pod from phase 1 exits after two hours; long runs need a fresh one
    try:
        ensure_check_pod(ctx)
    except FatalError as e:
        raise FatalError(f"HTTPS checks skipped: {e.message}") from e
    domain = ctx.credentials.domain
    passed = 0
    for host in SERVICE_HOSTS + optional_hosts(ctx.credentials):
        fqdn = f"{host}.{domain}"
        code = https_status(ctx, fqdn)
        if code is not None and 200 <= code < 500:
            passed += 1
        else:
            ctx.advisories.add(f"https://{fqdn}/ unreachable (status {code or 'none'})")
    ctx.echo(f"✓ HTTPS: {passed} service(s) reachable")


def leaf_issuance(ctx: RunContext) -> None:
    """Issue a short-lived leaf and check it chains to the local root."""
    ctx.authenticate_store()
    chain = ctx.secret_bootstrap().trust_chain()
    fqdn = f"validation.{ctx.credentials.domain}"
    issued = ctx.store.issue_certificate(chain.role, fqdn, mount=chain.mount)
    if not issued:
        raise FatalError(f"Secret store refused to issue a certificate for {fqdn}")
    problems = verify_issued_chain(issued.get("ca_chain") or [],
                                   chain.root_cert_path.read_text())
    if problems:
        raise FatalError("Issued certificate chain invalid: " + "; ".join(problems))
    ctx.echo(f"✓ Leaf certificate for {fqdn} chains to the local root CA")


# =============================================================================
# Catalogue
# =============================================================================


PHASES: list[Phase] = [
    Phase(0, "provisioning", "INFRASTRUCTURE PROVISIONING", (
        Step("check tfvars", check_tfvars, FATAL),
        Step("sync state", sync_state, ADVISORY),
        Step("apply", provision, FATAL),
        Step("wait cluster Active", wait_cluster_active, FATAL),
        Step("generate cluster credential", generate_cluster_credential, FATAL),
        Step("verify nodes", verify_nodes, ADVISORY),
    )),
    Phase(1, "foundation", "CLUSTER FOUNDATION", (
        Step("wait webhook", wait_webhook, ADVISORY),
        Step("label nodes", label_nodes, ADVISORY),
        Step("check pod", check_pod, ADVISORY),
        Step("ingress controller", ingress_controller, FATAL),
        Step("gateway CRDs", gateway_crds, FATAL),
        Step("cert-manager", cert_manager, FATAL),
        Step("CNPG operator", cnpg_operator, ADVISORY),
        Step("Redis operator", redis_operator, ADVISORY),
    )),
    Phase(2, "secrets", "SECRET STORE + PKI", (
        Step("store chart", store_chart, FATAL),
        Step("secret bootstrap", secret_bootstrap, FATAL),
        Step("cluster issuer", cluster_issuer, FATAL),
        Step("distribute root CA", distribute_root_ca, ADVISORY),
        Step("SSH CA", ssh_ca, ADVISORY),
    )),
    Phase(3, "monitoring", "MONITORING", (
        Step("monitoring stack", monitoring_stack, ADVISORY),
    )),
    Phase(4, "registry", "CONTAINER REGISTRY", (
        Step("registry chart", registry_chart, FATAL),
        Step("registry projects", registry_projects, ADVISORY),
    )),
    Phase(5, "identity", "IDENTITY PROVIDER", (
        Step("identity DB", identity_db, ADVISORY),
        Step("identity provider", identity_provider, FATAL),
        Step("realm check", realm_check, ADVISORY),
    )),
    Phase(6, "delivery", "GITOPS + PROGRESSIVE DELIVERY", (
        Step("GitOps controller", gitops_controller, ADVISORY),
        Step("rollouts", rollouts, ADVISORY),
    )),
    Phase(7, "services", "REMAINING SERVICES", (
        Step("mattermost", mattermost, ADVISORY),
        Step("kasm", kasm, ADVISORY),
        Step("uptime kuma", uptime_kuma, ADVISORY),
        Step("librenms", librenms, ADVISORY),
        Step("register CI runner", register_ci_runner, ADVISORY),
    )),
    Phase(8, "dns", "DNS RECORDS", (
        Step("report DNS records", report_dns, ADVISORY),
    )),
    Phase(9, "validation", "VALIDATION", (
        Step("cluster health", cluster_health, ADVISORY),
        Step("HTTPS checks", https_checks, ADVISORY),
        Step("leaf issuance", leaf_issuance, ADVISORY),
    )),
]
