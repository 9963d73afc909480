# Tenant Orchestrator - CI/CD Access Manager
"""
Deployment identity for pipelines: a service account bound to a
namespace-local role, its long-lived token, and a self-contained kubeconfig
rendered into the credential store.
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple

import structlog
import yaml

from .cluster import ApplyResult, ClusterClient, combine, create_if_absent, secret_value, upsert
from .exceptions import TokenTimeoutError
from .models import ServiceIdentity
from .retry import Clock, SystemClock, poll_until
from .store import CredentialStore

log = structlog.get_logger(__name__)

DEFAULT_TOKEN_TIMEOUT_SECONDS = 10.0
DEFAULT_TOKEN_POLL_INTERVAL_SECONDS = 1.0

DEPLOYER_RULES = [
    {
        "apiGroups": ["", "apps", "networking.k8s.io", "batch"],
        "resources": ["*"],
        "verbs": ["*"],
    }
]


@dataclass
class ClusterEndpoint:
    """What a rendered client configuration needs to reach the cluster"""
    server: str
    ca_data: Optional[str] = field(default=None, repr=False)
    name: str = "k3s"


def kubeconfig_artifact(namespace: str) -> str:
    """Store artifact name of the bundle rendered for a namespace."""
    return f"kubeconfigs/{namespace}.kubeconfig"


def render_kubeconfig(endpoint: ClusterEndpoint, namespace: str, user: str, token: str) -> str:
    cluster = {"server": endpoint.server}
    if endpoint.ca_data:
        cluster["certificate-authority-data"] = endpoint.ca_data

    document = {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{"name": endpoint.name, "cluster": cluster}],
        "contexts": [
            {
                "name": "default",
                "context": {"cluster": endpoint.name, "namespace": namespace, "user": user},
            }
        ],
        "current-context": "default",
        "users": [{"name": user, "user": {"token": token}}],
    }
    return yaml.safe_dump(document, default_flow_style=False, sort_keys=False)


class CICDAccessManager:
    """Ensures the deployer identity of one namespace."""

    def __init__(
        self,
        cluster: ClusterClient,
        store: CredentialStore,
        endpoint: ClusterEndpoint,
        service_account: str = "deployer",
        token_timeout_seconds: float = DEFAULT_TOKEN_TIMEOUT_SECONDS,
        token_poll_interval_seconds: float = DEFAULT_TOKEN_POLL_INTERVAL_SECONDS,
        clock: Optional[Clock] = None,
    ):
        self.cluster = cluster
        self.store = store
        self.endpoint = endpoint
        self.service_account = service_account
        self.token_timeout = token_timeout_seconds
        self.token_poll_interval = token_poll_interval_seconds
        self.clock = clock or SystemClock()

    def _manifests(self, namespace: str):
        sa = self.service_account
        return [
            {
                "apiVersion": "v1",
                "kind": "ServiceAccount",
                "metadata": {"name": sa, "namespace": namespace},
            },
            {
                "apiVersion": "rbac.authorization.k8s.io/v1",
                "kind": "Role",
                "metadata": {"name": f"{sa}-role", "namespace": namespace},
                "rules": DEPLOYER_RULES,
            },
            {
                "apiVersion": "rbac.authorization.k8s.io/v1",
                "kind": "RoleBinding",
                "metadata": {"name": f"{sa}-binding", "namespace": namespace},
                "subjects": [{"kind": "ServiceAccount", "name": sa, "namespace": namespace}],
                "roleRef": {
                    "kind": "Role",
                    "name": f"{sa}-role",
                    "apiGroup": "rbac.authorization.k8s.io",
                },
            },
        ]

    def _token_manifest(self, namespace: str) -> dict:
        return {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {
                "name": f"{self.service_account}-token",
                "namespace": namespace,
                "annotations": {"kubernetes.io/service-account.name": self.service_account},
            },
            "type": "kubernetes.io/service-account-token",
        }

    def wait_for_token(self, namespace: str) -> str:
        """The token controller fills the secret asynchronously."""
        name = f"{self.service_account}-token"

        def probe() -> Optional[str]:
            return secret_value(self.cluster.get("Secret", name, namespace), "token")

        token = poll_until(probe, interval=self.token_poll_interval, timeout=self.token_timeout, clock=self.clock)
        if not token:
            raise TokenTimeoutError(
                f"Token for {namespace}/{self.service_account} not populated within {self.token_timeout:.0f}s",
                error_code="token_timeout",
            )
        return token

    def ensure_service_identity(self, namespace: str) -> Tuple[ServiceIdentity, ApplyResult]:
        """
        Upsert the service account, role and binding, mint the token and
        render the client configuration.

        Raises TokenTimeoutError when the token never populates.
        """
        results = [upsert(self.cluster, manifest)[0] for manifest in self._manifests(namespace)]

        token_created, _ = create_if_absent(self.cluster, self._token_manifest(namespace))
        if token_created:
            results.append(ApplyResult.UPDATED)
        token = self.wait_for_token(namespace)

        artifact = kubeconfig_artifact(namespace)
        bundle = render_kubeconfig(self.endpoint, namespace, self.service_account, token).encode("utf-8")
        if self.store.read_artifact(artifact) != bundle:
            self.store.write_artifact(artifact, bundle)
            results.append(ApplyResult.UPDATED)

        result = combine(results)
        log.info("service_identity_ensured", namespace=namespace, outcome=result.value)

        identity = ServiceIdentity(
            namespace=namespace,
            service_account=self.service_account,
            role=f"{self.service_account}-role",
            role_binding=f"{self.service_account}-binding",
            token=token,
            bundle_name=artifact,
        )
        return identity, result
