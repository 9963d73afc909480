# Tenant Orchestrator - Database Credential Provisioner
"""
Per-environment database, login role and credential record.

The role and database are named <tenant>-<environment>. A fresh password is
issued whenever the stored credential cannot be proven to match the live
role; existing databases are never dropped.
"""

from typing import Callable, Optional, Tuple

import structlog

from .cluster import ApplyResult, ClusterClient, secret_value, upsert
from .database import DatabaseAdmin
from .exceptions import PrerequisiteError
from .models import DatabaseCredential, Environment, Tenant
from .store import INFRASTRUCTURE_DOMAIN, CredentialStore, check_key, generate_password

log = structlog.get_logger(__name__)

ADMIN_PASSWORD_KEY = "POSTGRES_ADMIN_PASSWORD"
PASSWORD_LENGTH = 32

# Opens an admin connection authenticated with the given password
AdminConnector = Callable[[str], DatabaseAdmin]


def password_key(tenant: Tenant, environment: Environment) -> str:
    """Key of a tenant database password in the tenant's credential record."""
    return f"{tenant.secret_prefix}_{environment.value.upper()}_DB_PASSWORD"


def credential_secret_name(tenant: Tenant) -> str:
    return f"{tenant.name}-db"


def credential_secret_manifest(tenant: Tenant, namespace: str, credential: DatabaseCredential) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {
            "name": credential_secret_name(tenant),
            "namespace": namespace,
            "labels": {"app.kubernetes.io/managed-by": "k3s-stack"},
        },
        "type": "Opaque",
        "stringData": credential.to_secret_data(),
    }


def provision_role_database(admin: DatabaseAdmin, name: str, password: str) -> bool:
    """
    Upsert the login role, create its database if missing and grant on it.

    Returns True when the role or the database was newly created.
    """
    role_created = admin.upsert_role(name, password)
    database_created = admin.create_database(name, owner=name)
    admin.grant_all(name, name)
    return role_created or database_created


class DatabaseCredentialProvisioner:
    """Creates or adopts the database credential of one tenant environment."""

    def __init__(
        self,
        cluster: ClusterClient,
        store: CredentialStore,
        connect_admin: AdminConnector,
        host: str,
        port: int = 5432,
    ):
        self.cluster = cluster
        self.store = store
        self.connect_admin = connect_admin
        self.host = host
        self.port = port

    def admin_password(self) -> str:
        password = self.store.get(INFRASTRUCTURE_DOMAIN, ADMIN_PASSWORD_KEY)
        if not password:
            raise PrerequisiteError(
                f"{ADMIN_PASSWORD_KEY} missing from the credential store; run setup first",
                error_code="missing_admin_credential",
            )
        return password

    def _credential(self, name: str, password: str) -> DatabaseCredential:
        return DatabaseCredential(
            host=self.host,
            port=self.port,
            database=name,
            username=name,
            password=password,
        )

    def _is_current(self, admin: DatabaseAdmin, name: str, stored: Optional[str], live_secret: Optional[dict]) -> bool:
        """Stored password, namespace record, role and database all agree."""
        if not stored or secret_value(live_secret, "password") != stored:
            return False
        return admin.role_exists(name) and admin.database_exists(name)

    def ensure_database(self, tenant: Tenant, environment: Environment) -> Tuple[DatabaseCredential, ApplyResult]:
        """
        Provision the tenant environment's database credential.

        Raises PrerequisiteError without an admin credential, DatabaseError
        when the engine is unreachable or rejects a statement.
        """
        name = tenant.qualified(environment)
        key = password_key(tenant, environment)
        check_key(key)
        admin_password = self.admin_password()

        stored = self.store.get(tenant.name, key)
        live_secret = self.cluster.get("Secret", credential_secret_name(tenant), name)

        admin = self.connect_admin(admin_password)
        try:
            if self._is_current(admin, name, stored, live_secret):
                admin.grant_all(name, name)
                credential = self._credential(name, stored)
                secret_result, _ = upsert(self.cluster, credential_secret_manifest(tenant, name, credential))
                log.info("database_ensured", database=name, outcome=secret_result.value)
                return credential, secret_result

            password = generate_password(PASSWORD_LENGTH)
            created = provision_role_database(admin, name, password)
        finally:
            admin.close()

        credential = self._credential(name, password)
        upsert(self.cluster, credential_secret_manifest(tenant, name, credential))
        # kept for export only; workloads read the namespace secret
        self.store.set(tenant.name, key, password)

        result = ApplyResult.CREATED if created else ApplyResult.UPDATED
        log.info("database_ensured", database=name, outcome=result.value)
        return credential, result
