"""REST clients for platform services (cluster manager, identity, registry, SCM).

All clients return ApiResponse; connection failures and HTTP error codes are
outcomes the caller inspects, not exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from ..shared.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ApiResponse:
    """Outcome of one REST call."""

    ok: bool
    status_code: int | None = None
    data: Any = None
    error: str | None = None


class BearerTokenClient:
    """Synchronous JSON-over-HTTPS client with bearer authentication."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 30.0,
        insecure: bool = False,
        auth: tuple[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize client.

        Args:
            base_url: Service URL (e.g., https://rancher.example.com)
            token: Bearer token
            timeout: Request timeout in seconds
            insecure: Skip TLS verification (services fronted by a not-yet-trusted CA)
            auth: Basic auth credentials, used instead of a bearer token
            transport: httpx transport override (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            headers=headers,
            verify=not insecure,
            auth=auth,
            transport=transport,
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def set_token(self, token: str) -> None:
        self._client.headers["Authorization"] = f"Bearer {token}"

    def request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> ApiResponse:
        """Make an HTTP request.

        Args:
            method: HTTP method
            path: API path relative to base_url
            json: JSON body
            params: Query parameters
            data: Form body

        Returns:
            ApiResponse; ok is True for 2xx
        """
        try:
            response = self._client.request(method, path, json=json, params=params, data=data)
        except httpx.ConnectError:
            return ApiResponse(False, error=f"Cannot connect to {self.base_url}")
        except httpx.TimeoutException:
            return ApiResponse(False, error=f"Request timed out after {self.timeout}s")
        except httpx.HTTPError as e:
            return ApiResponse(False, error=str(e))

        try:
            body = response.json() if response.content else None
        except ValueError:
            body = response.text

        if response.is_success:
            return ApiResponse(True, response.status_code, body)

        message = body.get("message") if isinstance(body, dict) else None
        logger.debug("api error", url=str(response.url), status=response.status_code)
        return ApiResponse(
            False, response.status_code, body,
            error=message or f"HTTP {response.status_code} from {method} {path}",
        )

    def get(self, path: str, **kwargs: Any) -> ApiResponse:
        return self.request("GET", path, **kwargs)

    def post(self, path: str, **kwargs: Any) -> ApiResponse:
        return self.request("POST", path, **kwargs)

    def put(self, path: str, **kwargs: Any) -> ApiResponse:
        return self.request("PUT", path, **kwargs)


# -------------------------------------------------------------------------
# Cluster manager (Rancher v3 API)
# -------------------------------------------------------------------------


class ClusterManagerClient(BearerTokenClient):
    """Look up a downstream cluster and generate its kubeconfig."""

    def cluster_id(self, name: str) -> str | None:
        response = self.get("/v3/clusters", params={"name": name})
        if not response.ok or not isinstance(response.data, dict):
            return None
        clusters = response.data.get("data") or []
        return clusters[0].get("id") if clusters else None

    def cluster_state(self, cluster_id: str) -> str | None:
        response = self.get(f"/v3/clusters/{cluster_id}")
        if not response.ok or not isinstance(response.data, dict):
            return None
        return response.data.get("state")

    def is_active(self, cluster_id: str) -> bool:
        return self.cluster_state(cluster_id) == "active"

    def cluster_ready(self, name: str) -> bool:
        """Whether the provisioning cluster object reports status.ready."""
        response = self.get("/v1/provisioning.cattle.io.clusters")
        if not response.ok or not isinstance(response.data, dict):
            return False
        for item in response.data.get("data") or []:
            if item.get("metadata", {}).get("name") == name:
                return item.get("status", {}).get("ready") is True
        return False

    def generate_kubeconfig(self, cluster_id: str) -> str | None:
        """Generate a kubeconfig for the cluster; None if empty or refused."""
        response = self.post(f"/v3/clusters/{cluster_id}", params={"action": "generateKubeconfig"})
        if not response.ok or not isinstance(response.data, dict):
            return None
        return response.data.get("config") or None


# -------------------------------------------------------------------------
# Identity provider (Keycloak admin API)
# -------------------------------------------------------------------------


class IdentityProviderClient(BearerTokenClient):
    """Keycloak admin access."""

    def login(self, username: str, password: str, realm: str = "master",
              client_id: str = "admin-cli") -> ApiResponse:
        """Obtain an admin token with the password grant and use it for later calls."""
        response = self.post(
            f"/realms/{realm}/protocol/openid-connect/token",
            data={
                "grant_type": "password",
                "client_id": client_id,
                "username": username,
                "password": password,
            },
        )
        if response.ok and isinstance(response.data, dict) and response.data.get("access_token"):
            self.set_token(response.data["access_token"])
            return response
        return ApiResponse(False, response.status_code, response.data,
                           error=response.error or "No access_token in response")

    def realm_exists(self, realm: str) -> bool:
        return self.get(f"/admin/realms/{realm}").ok


# -------------------------------------------------------------------------
# Registry (Harbor v2 API)
# -------------------------------------------------------------------------


class RegistryClient(BearerTokenClient):
    """Harbor project management."""

    def create_project(self, name: str, public: bool = False) -> ApiResponse:
        """Create a project; an existing project (409) counts as success."""
        response = self.post(
            "/api/v2.0/projects",
            json={"project_name": name, "metadata": {"public": str(public).lower()}},
        )
        if response.status_code == 409:
            return ApiResponse(True, 409, response.data)
        return response


# -------------------------------------------------------------------------
# Source control (GitLab v4 API)
# -------------------------------------------------------------------------


class SourceControlClient(BearerTokenClient):
    """GitLab project lookup and CI variable management."""

    def project_id(self, path: str) -> int | None:
        response = self.get(f"/api/v4/projects/{quote(path, safe='')}")
        if not response.ok or not isinstance(response.data, dict):
            return None
        return response.data.get("id")

    def upsert_variable(self, project_id: int, key: str, value: str,
                        masked: bool = False) -> ApiResponse:
        """Update a CI/CD variable, creating it if it does not exist."""
        body = {"value": value, "masked": masked}
        response = self.put(f"/api/v4/projects/{project_id}/variables/{key}", json=body)
        if response.status_code == 404:
            response = self.post(f"/api/v4/projects/{project_id}/variables",
                                 json={"key": key, **body})
        return response

    def create_runner(self, description: str, runner_type: str = "instance_type") -> str | None:
        """Register a runner and return its authentication token."""
        response = self.post(
            "/api/v4/user/runners",
            json={"runner_type": runner_type, "description": description},
        )
        if not response.ok or not isinstance(response.data, dict):
            return None
        return response.data.get("token")
