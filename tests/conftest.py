"""
Tenant Orchestrator - Shared test fixtures

In-memory stand-ins for the Kubernetes API, PostgreSQL and the clock.
No test touches the network or a real database.
"""
from __future__ import annotations

import base64
import copy
import itertools
from typing import Dict, List, Optional, Tuple

import pytest
import structlog

from tenant_orchestrator.cicd import ClusterEndpoint
from tenant_orchestrator.cluster import KINDS, encode_secret
from tenant_orchestrator.config import Settings
from tenant_orchestrator.exceptions import (
    ClusterAPIError,
    ClusterUnavailableError,
    DatabaseStatementError,
    DatabaseUnavailableError,
)
from tenant_orchestrator.infrastructure import (
    INFRASTRUCTURE_NAMESPACES,
    KEYCLOAK_DB_PASSWORD,
    POSTGRES_ADMIN_PASSWORD,
    generate_infrastructure_passwords,
)
from tenant_orchestrator.orchestrator import Orchestrator
from tenant_orchestrator.store import INFRASTRUCTURE_DOMAIN, MemoryCredentialStore

GATEWAY_NAME = "infrastructure-gateway"
GATEWAY_NAMESPACE = "nginx-gateway"
BASE_DOMAIN = "example.com"


# =============================================================================
# Clock
# =============================================================================

class FakeClock:
    """Clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.start = start
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    @property
    def elapsed(self) -> float:
        return self.now - self.start


# =============================================================================
# Cluster
# =============================================================================

def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def _merge(target: dict, patch: dict) -> dict:
    """RFC 7386 JSON merge patch."""
    for key, value in patch.items():
        if value is None:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)
    return target


def _pointer(path: str) -> List[str]:
    return [part.replace("~1", "/").replace("~0", "~") for part in path.lstrip("/").split("/")]


class FakeCluster:
    """
    In-memory Kubernetes API.

    Mimics the API server where it matters to the orchestrator: 409 on
    duplicate create, 404 for objects in a missing namespace, stringData
    folded into base64 data, resourceVersion bumps, JSON patch test ops and
    asynchronous service-account token population.
    """

    def __init__(self):
        self.objects: Dict[Tuple[str, Optional[str], str], dict] = {}
        self.calls: List[Tuple[str, str, Optional[str], Optional[str]]] = []
        self._versions = itertools.count(1)
        self.unavailable = False
        # (operation, kind) -> exception raised instead of performing the call
        self.errors: Dict[Tuple[str, str], Exception] = {}
        # service-account tokens appear after this many reads of the secret
        self.token_delay_reads = 0
        self.populate_tokens = True
        # status given to new certificates: "ready", "pending" or "failed"
        self.certificate_outcome = "ready"
        self._token_reads: Dict[Tuple[Optional[str], str], int] = {}

    # -------------------------------------------------------------------------
    # Seeding and inspection helpers
    # -------------------------------------------------------------------------

    def seed(self, manifest: dict) -> dict:
        manifest = encode_secret(copy.deepcopy(manifest))
        kind = manifest["kind"]
        name = manifest["metadata"]["name"]
        namespace = manifest["metadata"].get("namespace")
        manifest["metadata"]["resourceVersion"] = str(next(self._versions))
        self.objects[(kind, namespace, name)] = manifest
        return manifest

    def seed_namespace(self, name: str) -> None:
        self.seed({"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name}})

    def seed_gateway(self, name: str = GATEWAY_NAME, namespace: str = GATEWAY_NAMESPACE, listeners=None) -> None:
        self.seed_namespace(namespace)
        if listeners is None:
            listeners = [{"name": "http", "port": 80, "protocol": "HTTP"}]
        self.seed({
            "apiVersion": "gateway.networking.k8s.io/v1",
            "kind": "Gateway",
            "metadata": {"name": name, "namespace": namespace},
            "spec": {"gatewayClassName": "nginx", "listeners": listeners},
        })

    def gateway_listeners(self, name: str = GATEWAY_NAME, namespace: str = GATEWAY_NAMESPACE) -> List[dict]:
        return self.objects[("Gateway", namespace, name)]["spec"].get("listeners", [])

    def stored(self, kind: str, name: str, namespace: Optional[str] = None) -> Optional[dict]:
        return self.objects.get((kind, namespace, name))

    def secret_data(self, name: str, namespace: str) -> Dict[str, str]:
        secret = self.objects[("Secret", namespace, name)]
        return {
            key: base64.b64decode(value).decode("utf-8")
            for key, value in (secret.get("data") or {}).items()
        }

    def count(self, kind: str) -> int:
        return sum(1 for key in self.objects if key[0] == kind)

    def mutations(self) -> List[tuple]:
        return [call for call in self.calls if call[0] != "get" and call[0] != "list"]

    # -------------------------------------------------------------------------
    # ClusterClient
    # -------------------------------------------------------------------------

    def _enter(self, operation: str, kind: str, name: Optional[str], namespace: Optional[str]) -> None:
        if kind not in KINDS:
            raise ValueError(f"Unsupported resource kind: {kind}")
        self.calls.append((operation, kind, name, namespace))
        if self.unavailable:
            raise ClusterUnavailableError("Cluster API unreachable after 3 attempts", error_code="cluster_unavailable")
        error = self.errors.get((operation, kind))
        if error is not None:
            raise error

    def _require(self, kind: str, name: str, namespace: Optional[str]) -> dict:
        live = self.objects.get((kind, namespace, name))
        if live is None:
            raise ClusterAPIError(f'{kind.lower()} "{name}" not found', status_code=404, error_code="NotFound")
        return live

    def _bump(self, obj: dict) -> dict:
        obj.setdefault("metadata", {})["resourceVersion"] = str(next(self._versions))
        return copy.deepcopy(obj)

    def get(self, kind: str, name: str, namespace: Optional[str] = None) -> Optional[dict]:
        self._enter("get", kind, name, namespace)
        live = self.objects.get((kind, namespace, name))
        if live is None:
            return None
        if live.get("type") == "kubernetes.io/service-account-token":
            self._maybe_populate_token(live)
        return copy.deepcopy(live)

    def list(self, kind: str, namespace: Optional[str] = None, label_selector: Optional[str] = None) -> List[dict]:
        self._enter("list", kind, None, namespace)
        wanted = {}
        for term in (label_selector or "").split(","):
            if "=" in term:
                key, value = term.split("=", 1)
                wanted[key] = value
        items = []
        for (obj_kind, obj_namespace, _), obj in sorted(self.objects.items(), key=lambda item: item[0][2]):
            if obj_kind != kind or (namespace is not None and obj_namespace != namespace):
                continue
            labels = obj.get("metadata", {}).get("labels") or {}
            if all(labels.get(key) == value for key, value in wanted.items()):
                items.append(copy.deepcopy(obj))
        return items

    def create(self, manifest: dict) -> dict:
        kind = manifest["kind"]
        name = manifest["metadata"]["name"]
        namespace = manifest["metadata"].get("namespace")
        self._enter("create", kind, name, namespace)

        if KINDS[kind].namespaced and ("Namespace", None, namespace) not in self.objects:
            raise ClusterAPIError(f'namespaces "{namespace}" not found', status_code=404, error_code="NotFound")
        if (kind, namespace, name) in self.objects:
            raise ClusterAPIError(f'{kind.lower()} "{name}" already exists', status_code=409, error_code="AlreadyExists")

        obj = encode_secret(copy.deepcopy(manifest))
        if kind == "Certificate":
            obj["status"] = self._certificate_status()
        self.objects[(kind, namespace, name)] = obj
        return self._bump(obj)

    def replace(self, manifest: dict) -> dict:
        kind = manifest["kind"]
        name = manifest["metadata"]["name"]
        namespace = manifest["metadata"].get("namespace")
        self._enter("replace", kind, name, namespace)
        self._require(kind, name, namespace)
        obj = encode_secret(copy.deepcopy(manifest))
        self.objects[(kind, namespace, name)] = obj
        return self._bump(obj)

    def merge_patch(self, kind: str, name: str, namespace: Optional[str], patch: dict) -> dict:
        self._enter("merge_patch", kind, name, namespace)
        live = self._require(kind, name, namespace)
        patch = copy.deepcopy(patch)
        if kind == "Secret" and "stringData" in patch:
            patch = encode_secret({"kind": "Secret", **patch})
            patch.pop("kind")
        _merge(live, patch)
        return self._bump(live)

    def json_patch(self, kind: str, name: str, namespace: Optional[str], operations: List[dict]) -> dict:
        self._enter("json_patch", kind, name, namespace)
        live = self._require(kind, name, namespace)
        patched = copy.deepcopy(live)

        for operation in operations:
            *parents, last = _pointer(operation["path"])
            target = patched
            for part in parents:
                target = target[int(part)] if isinstance(target, list) else target.setdefault(part, {})

            if operation["op"] == "test":
                if target.get(last) != operation["value"]:
                    raise ClusterAPIError("the server rejected our request: test operation failed",
                                          status_code=422, error_code="Invalid")
            elif operation["op"] == "add":
                if isinstance(target, list):
                    value = copy.deepcopy(operation["value"])
                    if last == "-":
                        target.append(value)
                    else:
                        target.insert(int(last), value)
                else:
                    target[last] = copy.deepcopy(operation["value"])
            elif operation["op"] == "replace":
                target[last] = copy.deepcopy(operation["value"])
            elif operation["op"] == "remove":
                if isinstance(target, list):
                    del target[int(last)]
                else:
                    del target[last]
            else:
                raise ClusterAPIError(f"unsupported op {operation['op']}", status_code=422)

        self.objects[(kind, namespace, name)] = patched
        return self._bump(patched)

    # -------------------------------------------------------------------------
    # Controllers
    # -------------------------------------------------------------------------

    def _maybe_populate_token(self, secret: dict) -> None:
        if not self.populate_tokens or (secret.get("data") or {}).get("token"):
            return
        key = (secret["metadata"].get("namespace"), secret["metadata"]["name"])
        reads = self._token_reads.get(key, 0) + 1
        self._token_reads[key] = reads
        if reads > self.token_delay_reads:
            namespace = secret["metadata"].get("namespace")
            secret.setdefault("data", {})["token"] = _b64(f"token-for-{namespace}")
            secret["data"]["ca.crt"] = _b64("cluster-ca")

    def _certificate_status(self) -> dict:
        if self.certificate_outcome == "ready":
            return {"conditions": [{"type": "Ready", "status": "True", "reason": "Ready"}]}
        if self.certificate_outcome == "failed":
            return {
                "conditions": [
                    {"type": "Ready", "status": "False", "reason": "Failed",
                     "message": "ACME challenge failed: connection refused"},
                ],
                "lastFailureTime": "2024-01-01T00:00:00Z",
            }
        return {
            "conditions": [
                {"type": "Ready", "status": "False", "reason": "DoesNotExist",
                 "message": "Issuing certificate as Secret does not exist"},
            ]
        }


# =============================================================================
# Database
# =============================================================================

class FakeDatabase:
    """PostgreSQL server state: roles with passwords, databases and grants."""

    def __init__(self, admin_user: str = "postgres", admin_password: str = "old-admin-password"):
        self.admin_user = admin_user
        self.roles: Dict[str, str] = {admin_user: admin_password}
        self.databases: Dict[str, str] = {"postgres": admin_user}
        self.grants = set()
        self.unavailable = False
        self.reject_statements = False
        # role whose password change is rejected
        self.reject_role: Optional[str] = None
        self.statements: List[str] = []
        self.connections = 0

    def connect(self, password: str) -> "FakeAdmin":
        if self.unavailable:
            raise DatabaseUnavailableError("Database localhost:5432 unreachable", error_code="database_unavailable")
        if self.roles.get(self.admin_user) != password:
            raise DatabaseUnavailableError(
                f'password authentication failed for user "{self.admin_user}"',
                error_code="database_unavailable",
            )
        self.connections += 1
        return FakeAdmin(self)

    def can_login(self, role: str, password: str) -> bool:
        return role in self.roles and self.roles[role] == password


class FakeAdmin:
    """DatabaseAdmin over a FakeDatabase."""

    def __init__(self, server: FakeDatabase):
        self.server = server
        self.closed = False

    def _execute(self, statement: str) -> None:
        if self.closed:
            raise DatabaseUnavailableError("connection closed")
        if self.server.unavailable:
            raise DatabaseUnavailableError("Database connection lost")
        if self.server.reject_statements:
            raise DatabaseStatementError("Statement rejected: permission denied", error_code="database_statement")
        self.server.statements.append(statement)

    def role_exists(self, role: str) -> bool:
        return role in self.server.roles

    def database_exists(self, database: str) -> bool:
        return database in self.server.databases

    def upsert_role(self, role: str, password: str) -> bool:
        created = role not in self.server.roles
        self._execute(f"{'CREATE' if created else 'ALTER'} ROLE {role}")
        self.server.roles[role] = password
        return created

    def create_database(self, database: str, owner: str) -> bool:
        if database in self.server.databases:
            return False
        self._execute(f"CREATE DATABASE {database} OWNER {owner}")
        self.server.databases[database] = owner
        return True

    def grant_all(self, database: str, role: str) -> None:
        self._execute(f"GRANT ALL ON {database} TO {role}")
        self.server.grants.add((database, role))

    def alter_password(self, role: str, password: str) -> None:
        self.alter_passwords({role: password})

    def alter_passwords(self, passwords: Dict[str, str]) -> None:
        if self.server.reject_role in passwords:
            raise DatabaseStatementError(f"Statement rejected: role {self.server.reject_role}")
        for role in passwords:
            self._execute(f"ALTER ROLE {role}")
        self.server.roles.update(passwords)

    def close(self) -> None:
        self.closed = True


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def reset_structlog():
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


@pytest.fixture(autouse=True)
def no_sudo(monkeypatch):
    monkeypatch.delenv("SUDO_UID", raising=False)
    monkeypatch.delenv("SUDO_GID", raising=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cluster():
    cluster = FakeCluster()
    cluster.seed_gateway()
    for namespace in INFRASTRUCTURE_NAMESPACES:
        cluster.seed_namespace(namespace)
    cluster.seed_namespace("kube-system")
    return cluster


@pytest.fixture
def infrastructure_passwords():
    return generate_infrastructure_passwords()


@pytest.fixture
def database(infrastructure_passwords):
    server = FakeDatabase(admin_password=infrastructure_passwords[POSTGRES_ADMIN_PASSWORD])
    server.roles["keycloak"] = infrastructure_passwords[KEYCLOAK_DB_PASSWORD]
    server.databases["keycloak"] = "keycloak"
    return server


@pytest.fixture
def store(infrastructure_passwords):
    return MemoryCredentialStore({INFRASTRUCTURE_DOMAIN: infrastructure_passwords})


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        secrets_dir=tmp_path / "secrets",
        kubeconfig=tmp_path / "k3s.yaml",
        base_domain=BASE_DOMAIN,
        gateway_name=GATEWAY_NAME,
        gateway_namespace=GATEWAY_NAMESPACE,
    )


@pytest.fixture
def endpoint():
    return ClusterEndpoint(server="https://203.0.113.10:6443", ca_data=_b64("cluster-ca"))


@pytest.fixture
def orchestrator(settings, store, cluster, database, endpoint, clock):
    return Orchestrator(settings, store, cluster, database.connect, endpoint, clock=clock)
