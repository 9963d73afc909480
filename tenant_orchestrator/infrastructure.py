"""
Infrastructure-wide credentials: which passwords exist, which cluster
secrets carry them and which workloads consume them.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

import bcrypt

from .cluster import ClusterClient, secret_value
from .store import generate_password

POSTGRES_ADMIN_PASSWORD = "POSTGRES_ADMIN_PASSWORD"
POSTGRES_USER_PASSWORD = "POSTGRES_USER_PASSWORD"
KEYCLOAK_ADMIN_PASSWORD = "KEYCLOAK_ADMIN_PASSWORD"
KEYCLOAK_DB_PASSWORD = "KEYCLOAK_DB_PASSWORD"
GRAFANA_ADMIN_PASSWORD = "GRAFANA_ADMIN_PASSWORD"
ARGOCD_ADMIN_PASSWORD = "ARGOCD_ADMIN_PASSWORD"

# key -> length; database passwords are longer than UI admin passwords
PASSWORD_LENGTHS: Dict[str, int] = {
    POSTGRES_ADMIN_PASSWORD: 32,
    POSTGRES_USER_PASSWORD: 32,
    KEYCLOAK_ADMIN_PASSWORD: 24,
    KEYCLOAK_DB_PASSWORD: 32,
    GRAFANA_ADMIN_PASSWORD: 24,
    ARGOCD_ADMIN_PASSWORD: 24,
}

# show <service> filters
SERVICE_PREFIXES: Dict[str, str] = {
    "postgres": "POSTGRES_",
    "postgresql": "POSTGRES_",
    "keycloak": "KEYCLOAK_",
    "grafana": "GRAFANA_",
    "argocd": "ARGOCD_",
    "argo": "ARGOCD_",
}

KEYCLOAK_DB_ROLE = "keycloak"

# namespaces that hold the infrastructure secrets
INFRASTRUCTURE_NAMESPACES = ("storage", "security", "monitoring", "argocd")


@dataclass(frozen=True)
class RestartTarget:
    """A workload restarted after its credentials changed"""
    namespace: str
    name: str
    kinds: Tuple[str, ...]


RESTART_TARGETS: List[RestartTarget] = [
    RestartTarget("storage", "postgresql", ("StatefulSet",)),
    RestartTarget("security", "keycloak", ("Deployment", "StatefulSet")),
    RestartTarget("monitoring", "grafana", ("Deployment",)),
]


def generate_infrastructure_passwords(previous: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Fresh value for every infrastructure password, none equal to its previous value."""
    previous = previous or {}
    passwords = {}
    for key, length in PASSWORD_LENGTHS.items():
        password = generate_password(length)
        while password == previous.get(key):
            password = generate_password(length)
        passwords[key] = password
    return passwords


def argocd_password_hash(cluster: ClusterClient, password: str) -> Tuple[str, Optional[str]]:
    """
    bcrypt hash for the Argo CD admin secret.

    Reuses the live hash (and its mtime) when it already matches password,
    so re-applying unchanged credentials leaves the secret untouched.
    """
    live = cluster.get("Secret", "argocd-secret", "argocd")
    existing = secret_value(live, "admin.password")
    if existing:
        try:
            if bcrypt.checkpw(password.encode("utf-8"), existing.encode("utf-8")):
                return existing, secret_value(live, "admin.passwordMtime")
        except ValueError:
            pass
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=10)).decode("utf-8")
    return hashed, None


def _secret(name: str, namespace: str, data: Dict[str, str]) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": name, "namespace": namespace},
        "type": "Opaque",
        "stringData": data,
    }


def infrastructure_secret_manifests(
    passwords: Dict[str, str],
    argocd_hash: Callable[[str], Tuple[str, Optional[str]]],
) -> List[dict]:
    """Cluster secrets that carry the infrastructure passwords."""
    hashed, mtime = argocd_hash(passwords[ARGOCD_ADMIN_PASSWORD])
    mtime = mtime or datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

    return [
        _secret("postgresql-secret", "storage", {
            "postgres-password": passwords[POSTGRES_ADMIN_PASSWORD],
            "password": passwords[POSTGRES_USER_PASSWORD],
        }),
        _secret("keycloak-secret", "security", {
            "admin-password": passwords[KEYCLOAK_ADMIN_PASSWORD],
        }),
        _secret("keycloak-db-secret", "security", {
            "password": passwords[KEYCLOAK_DB_PASSWORD],
        }),
        _secret("grafana-secret", "monitoring", {
            "admin-user": "admin",
            "admin-password": passwords[GRAFANA_ADMIN_PASSWORD],
        }),
        _secret("argocd-secret", "argocd", {
            "admin.password": hashed,
            "admin.passwordMtime": mtime,
        }),
    ]
