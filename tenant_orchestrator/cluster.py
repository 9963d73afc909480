# Tenant Orchestrator - Cluster Client
"""
Minimal Kubernetes REST client.

Only what the provisioners need: get, list, create, replace and the two
patch flavours, plus an idempotent upsert built on top of them. Transport
errors and 5xx responses are retried; other failures surface immediately.
"""

import base64
import json
import os
import ssl
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx
import structlog
import yaml

from .exceptions import (
    ClusterAPIError,
    ClusterUnavailableError,
    PrerequisiteError,
)
from .retry import Clock, SystemClock, retry_transient

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ResourceKind:
    """REST location of a resource kind."""
    api_prefix: str
    plural: str
    namespaced: bool = True


KINDS: Dict[str, ResourceKind] = {
    "Namespace": ResourceKind("api/v1", "namespaces", namespaced=False),
    "ResourceQuota": ResourceKind("api/v1", "resourcequotas"),
    "LimitRange": ResourceKind("api/v1", "limitranges"),
    "Secret": ResourceKind("api/v1", "secrets"),
    "ServiceAccount": ResourceKind("api/v1", "serviceaccounts"),
    "Role": ResourceKind("apis/rbac.authorization.k8s.io/v1", "roles"),
    "RoleBinding": ResourceKind("apis/rbac.authorization.k8s.io/v1", "rolebindings"),
    "Deployment": ResourceKind("apis/apps/v1", "deployments"),
    "StatefulSet": ResourceKind("apis/apps/v1", "statefulsets"),
    "Certificate": ResourceKind("apis/cert-manager.io/v1", "certificates"),
    "Gateway": ResourceKind("apis/gateway.networking.k8s.io/v1", "gateways"),
}


def resource_path(kind: str, name: Optional[str] = None, namespace: Optional[str] = None) -> str:
    try:
        spec = KINDS[kind]
    except KeyError:
        raise ValueError(f"Unsupported resource kind: {kind}")

    if spec.namespaced:
        if not namespace:
            raise ValueError(f"{kind} requires a namespace")
        path = f"/{spec.api_prefix}/namespaces/{namespace}/{spec.plural}"
    else:
        path = f"/{spec.api_prefix}/{spec.plural}"

    return f"{path}/{name}" if name else path


class ClusterClient(Protocol):
    """Capabilities the orchestrator needs from the control plane."""

    def get(self, kind: str, name: str, namespace: Optional[str] = None) -> Optional[dict]:
        ...

    def list(self, kind: str, namespace: Optional[str] = None, label_selector: Optional[str] = None) -> List[dict]:
        ...

    def create(self, manifest: dict) -> dict:
        ...

    def replace(self, manifest: dict) -> dict:
        ...

    def merge_patch(self, kind: str, name: str, namespace: Optional[str], patch: dict) -> dict:
        ...

    def json_patch(self, kind: str, name: str, namespace: Optional[str], operations: List[dict]) -> dict:
        ...


@dataclass
class KubeConfig:
    """Connection details extracted from an admin kubeconfig"""
    server: str
    ca_data: Optional[str] = field(default=None, repr=False)
    token: Optional[str] = field(default=None, repr=False)
    client_cert_data: Optional[str] = field(default=None, repr=False)
    client_key_data: Optional[str] = field(default=None, repr=False)
    insecure: bool = False


def load_kubeconfig(path: Path) -> KubeConfig:
    """Read the current context of a kubeconfig file."""
    path = Path(path)
    if not path.is_file():
        raise PrerequisiteError(f"Kubeconfig not found: {path}", error_code="missing_kubeconfig")

    document = yaml.safe_load(path.read_text(encoding="utf-8")) or {}

    def _named(section: str, name: Optional[str]) -> dict:
        entries = document.get(section) or []
        for entry in entries:
            if name is None or entry.get("name") == name:
                return entry
        raise PrerequisiteError(f"Kubeconfig {path} has no {section} entry {name!r}")

    context = _named("contexts", document.get("current-context")).get("context", {})
    cluster = _named("clusters", context.get("cluster")).get("cluster", {})
    user = _named("users", context.get("user")).get("user", {})

    if not cluster.get("server"):
        raise PrerequisiteError(f"Kubeconfig {path} has no cluster server")

    return KubeConfig(
        server=cluster["server"],
        ca_data=cluster.get("certificate-authority-data"),
        token=user.get("token"),
        client_cert_data=user.get("client-certificate-data"),
        client_key_data=user.get("client-key-data"),
        insecure=bool(cluster.get("insecure-skip-tls-verify", False)),
    )


class _Transient(Exception):
    """Retryable transport failure or 5xx response."""


class KubeClient:
    """
    Kubernetes API client over httpx.

    Authenticates with the admin kubeconfig's bearer token or client
    certificate. Handles retries of transient failures.
    """

    def __init__(
        self,
        config: KubeConfig,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        retry_delay_seconds: float = 1.0,
        clock: Optional[Clock] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.config = config
        self.max_retries = max_retries
        self.retry_delay = retry_delay_seconds
        self.clock = clock or SystemClock()

        headers = {"User-Agent": "tenant-orchestrator/1.0", "Accept": "application/json"}
        if config.token:
            headers["Authorization"] = f"Bearer {config.token}"

        self._client = httpx.Client(
            base_url=config.server,
            verify=self._create_ssl_context() if transport is None else True,
            timeout=httpx.Timeout(timeout_seconds),
            headers=headers,
            transport=transport,
        )

    def __enter__(self) -> "KubeClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self) -> None:
        self._client.close()

    def _create_ssl_context(self) -> ssl.SSLContext:
        """SSL context trusting the cluster CA, with the client certificate if any."""
        ctx = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)

        if self.config.insecure:
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        elif self.config.ca_data:
            ctx.load_verify_locations(cadata=base64.b64decode(self.config.ca_data).decode())

        if self.config.client_cert_data and self.config.client_key_data:
            # load_cert_chain only accepts file paths
            paths = []
            try:
                for data in (self.config.client_cert_data, self.config.client_key_data):
                    fd, path = tempfile.mkstemp(suffix=".pem")
                    paths.append(path)
                    with os.fdopen(fd, "wb") as f:
                        f.write(base64.b64decode(data))
                ctx.load_cert_chain(certfile=paths[0], keyfile=paths[1])
            finally:
                for path in paths:
                    os.unlink(path)

        ctx.minimum_version = ssl.TLSVersion.TLSv1_2
        return ctx

    def _request(
        self,
        method: str,
        path: str,
        body: Any = None,
        content_type: str = "application/json",
        params: Optional[dict] = None,
        allow_missing: bool = False,
    ) -> Optional[dict]:
        """Make an API request with retries; None for a tolerated 404."""

        def attempt() -> Optional[dict]:
            try:
                response = self._client.request(
                    method,
                    path,
                    content=None if body is None else json.dumps(body).encode("utf-8"),
                    headers={"Content-Type": content_type} if body is not None else None,
                    params=params,
                )
            except (httpx.ConnectError, httpx.TimeoutException, httpx.RemoteProtocolError) as e:
                raise _Transient(f"{method} {path}: {e}")

            if response.status_code == 404 and allow_missing:
                return None
            if response.status_code >= 500:
                raise _Transient(f"{method} {path}: HTTP {response.status_code}")
            if response.status_code >= 400:
                raise ClusterAPIError(
                    f"{method} {path} failed: HTTP {response.status_code}: {_error_message(response)}",
                    status_code=response.status_code,
                    error_code=_error_reason(response),
                )
            return response.json() if response.content else {}

        try:
            return retry_transient(
                attempt,
                attempts=self.max_retries,
                delay=self.retry_delay,
                retry_on=(_Transient,),
                clock=self.clock,
                operation=f"{method} {path}",
            )
        except _Transient as e:
            raise ClusterUnavailableError(
                f"Cluster API unreachable after {self.max_retries} attempts: {e}",
                error_code="cluster_unavailable",
            )

    def get(self, kind: str, name: str, namespace: Optional[str] = None) -> Optional[dict]:
        return self._request("GET", resource_path(kind, name, namespace), allow_missing=True)

    def list(self, kind: str, namespace: Optional[str] = None, label_selector: Optional[str] = None) -> List[dict]:
        params = {"labelSelector": label_selector} if label_selector else None
        result = self._request("GET", resource_path(kind, namespace=namespace), params=params)
        return result.get("items", [])

    def create(self, manifest: dict) -> dict:
        kind, _, namespace = identity(manifest)
        return self._request("POST", resource_path(kind, namespace=namespace), body=manifest)

    def replace(self, manifest: dict) -> dict:
        kind, name, namespace = identity(manifest)
        return self._request("PUT", resource_path(kind, name, namespace), body=manifest)

    def merge_patch(self, kind: str, name: str, namespace: Optional[str], patch: dict) -> dict:
        return self._request(
            "PATCH",
            resource_path(kind, name, namespace),
            body=patch,
            content_type="application/merge-patch+json",
        )

    def json_patch(self, kind: str, name: str, namespace: Optional[str], operations: List[dict]) -> dict:
        return self._request(
            "PATCH",
            resource_path(kind, name, namespace),
            body=operations,
            content_type="application/json-patch+json",
        )


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json().get("message", response.text)
    except ValueError:
        return response.text


def _error_reason(response: httpx.Response) -> Optional[str]:
    try:
        return response.json().get("reason")
    except ValueError:
        return None


# =============================================================================
# Idempotent helpers
# =============================================================================

class ApplyResult(str, Enum):
    """What an upsert did to the live object."""
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


def identity(manifest: dict) -> Tuple[str, str, Optional[str]]:
    metadata = manifest.get("metadata", {})
    return manifest["kind"], metadata["name"], metadata.get("namespace")


def encode_secret(manifest: dict) -> dict:
    """Move Secret stringData into base64 data, the form the API server stores."""
    if manifest.get("kind") != "Secret" or "stringData" not in manifest:
        return manifest
    encoded = {key: value for key, value in manifest.items() if key != "stringData"}
    data = dict(manifest.get("data") or {})
    for key, value in manifest["stringData"].items():
        data[key] = base64.b64encode(str(value).encode("utf-8")).decode("ascii")
    encoded["data"] = data
    return encoded


def secret_value(secret: Optional[dict], key: str) -> Optional[str]:
    """Decoded value of one Secret key, None when absent."""
    if not secret:
        return None
    string_data = secret.get("stringData") or {}
    if key in string_data:
        return string_data[key]
    raw = (secret.get("data") or {}).get(key)
    if not raw:
        return None
    return base64.b64decode(raw).decode("utf-8")


def is_subset(desired: Any, live: Any) -> bool:
    """True when every field of desired is present with the same value in live."""
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        return all(key in live and is_subset(value, live[key]) for key, value in desired.items())
    if isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            return False
        return all(is_subset(d, l) for d, l in zip(desired, live))
    return desired == live


def upsert(client: ClusterClient, manifest: dict) -> Tuple[ApplyResult, dict]:
    """
    Create the object if absent, otherwise reconcile it to the manifest.

    Reconciliation is a merge patch of the manifest, skipped when the live
    object already matches.
    """
    manifest = encode_secret(manifest)
    kind, name, namespace = identity(manifest)

    live = client.get(kind, name, namespace)
    if live is None:
        try:
            return ApplyResult.CREATED, client.create(manifest)
        except ClusterAPIError as e:
            if e.status_code != 409:
                raise
            # created concurrently between get and create
            live = client.get(kind, name, namespace)
            if live is None:
                raise

    desired = {key: value for key, value in manifest.items() if key not in ("apiVersion", "kind")}
    if is_subset(desired, live):
        return ApplyResult.UNCHANGED, live

    return ApplyResult.UPDATED, client.merge_patch(kind, name, namespace, desired)


def create_if_absent(client: ClusterClient, manifest: dict) -> Tuple[bool, dict]:
    """Create the object unless one with the same name exists; never modifies it."""
    manifest = encode_secret(manifest)
    kind, name, namespace = identity(manifest)

    live = client.get(kind, name, namespace)
    if live is not None:
        return False, live
    try:
        return True, client.create(manifest)
    except ClusterAPIError as e:
        if e.status_code != 409:
            raise
        live = client.get(kind, name, namespace)
        if live is None:
            raise
        return False, live


def rollout_restart(client: ClusterClient, kind: str, name: str, namespace: str, now: Optional[datetime] = None) -> dict:
    """Trigger a rolling restart the way `kubectl rollout restart` does."""
    now = now or datetime.now(timezone.utc)
    patch = {
        "spec": {
            "template": {
                "metadata": {
                    "annotations": {"kubectl.kubernetes.io/restartedAt": now.isoformat()}
                }
            }
        }
    }
    return client.merge_patch(kind, name, namespace, patch)


def combine(results) -> ApplyResult:
    """Overall result of several upserts that make up one step; the first is the primary object."""
    results = list(results)
    if results and results[0] == ApplyResult.CREATED:
        return ApplyResult.CREATED
    if any(result != ApplyResult.UNCHANGED for result in results):
        return ApplyResult.UPDATED
    return ApplyResult.UNCHANGED
