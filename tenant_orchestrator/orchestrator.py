# Tenant Orchestrator - Orchestrator
"""
Sequences the provisioning components for one tenant and aggregates the
per-step outcomes into a RunReport.

Each environment runs namespace -> database -> registry-secret ->
service-identity; each externally reachable hostname runs certificate ->
listener. A raised error is converted into a FAILED outcome; STEP_POLICY
decides whether the rest of that sequence still runs. Completed steps are
never rolled back: rerunning is the recovery path.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from . import database
from .certificates import CertificateIssuerClient
from .cicd import CICDAccessManager, ClusterEndpoint
from .cluster import ApplyResult, ClusterClient, KubeClient, load_kubeconfig, upsert
from .config import Settings
from .databases import AdminConnector, DatabaseCredentialProvisioner, provision_role_database
from .exceptions import DatabaseUnavailableError, OrchestratorError
from .gateway import GatewayListenerManager
from .infrastructure import (
    INFRASTRUCTURE_NAMESPACES,
    KEYCLOAK_DB_PASSWORD,
    KEYCLOAK_DB_ROLE,
    POSTGRES_ADMIN_PASSWORD,
    argocd_password_hash,
    generate_infrastructure_passwords,
    infrastructure_secret_manifests,
)
from .models import (
    CertificateState,
    CertificateStatus,
    Environment,
    ListenerStatus,
    RunReport,
    StepStatus,
    Tenant,
    hostname_slug,
)
from .namespaces import NamespaceProvisioner
from .registry import SOURCE_NAMESPACE, SOURCE_SECRET, RegistrySecretCopier
from .retry import Clock
from .rotation import CredentialRotation
from .store import INFRASTRUCTURE_DOMAIN, CredentialStore, FileCredentialStore, require_infrastructure

log = structlog.get_logger(__name__)


class StepPolicy(str, Enum):
    """What a raised error in a step means for the rest of its sequence."""
    HARD = "hard"
    SOFT = "soft"


STEP_POLICY: Dict[str, StepPolicy] = {
    "namespace": StepPolicy.HARD,
    "database": StepPolicy.HARD,
    "registry-secret": StepPolicy.SOFT,
    "service-identity": StepPolicy.HARD,
    "certificate": StepPolicy.SOFT,
    "listener": StepPolicy.HARD,
    "infrastructure-namespaces": StepPolicy.HARD,
    "infrastructure-secrets": StepPolicy.HARD,
    "keycloak-database": StepPolicy.SOFT,
}

ENVIRONMENT_ORDER = (Environment.ALPHA, Environment.PROD)

_APPLY_STATUS = {
    ApplyResult.CREATED: StepStatus.CREATED,
    ApplyResult.UPDATED: StepStatus.UPDATED,
    ApplyResult.UNCHANGED: StepStatus.UNCHANGED,
}

StepAction = Callable[[], Tuple[StepStatus, str]]


@dataclass
class Hostname:
    """An externally reachable hostname of one environment"""
    environment: Environment
    hostname: str

    @property
    def certificate_name(self) -> str:
        return f"tls-{hostname_slug(self.hostname)}"

    @property
    def listener_name(self) -> str:
        return f"https-{hostname_slug(self.hostname)}"


def tenant_hostnames(tenant: Tenant, base_domain: Optional[str]) -> List[Hostname]:
    """prod answers on <tenant>.<domain>, alpha on <tenant>-alpha.<domain>."""
    if not base_domain:
        return []
    return [
        Hostname(Environment.ALPHA, f"{tenant.name}-alpha.{base_domain}"),
        Hostname(Environment.PROD, f"{tenant.name}.{base_domain}"),
    ]


def run_sequence(report: RunReport, environment: Optional[str], steps: Sequence[Tuple[str, StepAction]]) -> None:
    """
    Run steps in order, recording one outcome each.

    After a HARD step fails, the remaining steps are recorded as SKIPPED.
    """
    blocked_by: Optional[str] = None

    for step, action in steps:
        if blocked_by is not None:
            report.record(step, environment, StepStatus.SKIPPED, f"{blocked_by} failed")
            continue

        with structlog.contextvars.bound_contextvars(step=step, environment=environment):
            try:
                status, detail = action()
            except OrchestratorError as e:
                log.error("step_failed", error=str(e), error_code=e.error_code)
                report.record(step, environment, StepStatus.FAILED, str(e))
                if STEP_POLICY[step] is StepPolicy.HARD:
                    blocked_by = step
                continue

        report.record(step, environment, status, detail)


class Orchestrator:
    """Entry point for setup, onboarding, rotation and the component wiring."""

    def __init__(
        self,
        settings: Settings,
        store: CredentialStore,
        cluster: ClusterClient,
        connect_admin: AdminConnector,
        endpoint: ClusterEndpoint,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings
        self.store = store
        self.cluster = cluster
        self.connect_admin = connect_admin

        self.namespaces = NamespaceProvisioner(cluster)
        self.databases = DatabaseCredentialProvisioner(
            cluster,
            store,
            connect_admin,
            host=settings.database_host,
            port=settings.database_port,
        )
        self.registry = RegistrySecretCopier(cluster)
        self.cicd = CICDAccessManager(
            cluster,
            store,
            endpoint,
            service_account=settings.service_account,
            token_timeout_seconds=settings.token_timeout,
            token_poll_interval_seconds=settings.token_poll_interval,
            clock=clock,
        )
        self.certificates = CertificateIssuerClient(
            cluster,
            namespace=settings.gateway_namespace,
            issuer=settings.cluster_issuer,
            timeout_seconds=settings.certificate_timeout,
            poll_interval_seconds=settings.certificate_poll_interval,
            clock=clock,
        )
        self.gateway = GatewayListenerManager(cluster)

    @classmethod
    def from_settings(cls, settings: Settings, clock: Optional[Clock] = None) -> "Orchestrator":
        """Wire the file store, the Kubernetes API client and PostgreSQL."""
        config = load_kubeconfig(settings.kubeconfig)
        cluster = KubeClient(
            config,
            timeout_seconds=settings.request_timeout,
            max_retries=settings.api_retries,
            retry_delay_seconds=settings.api_retry_delay,
            clock=clock,
        )
        endpoint = ClusterEndpoint(server=config.server, ca_data=config.ca_data, name=settings.cluster_name)

        def connect_admin(password: str) -> database.PostgresAdmin:
            return database.connect(settings, password, clock=clock)

        return cls(
            settings,
            FileCredentialStore(settings.secrets_dir),
            cluster,
            connect_admin,
            endpoint,
            clock=clock,
        )

    # =========================================================================
    # Onboarding
    # =========================================================================

    def onboard(self, tenant_name: str, skip_database: bool = False) -> RunReport:
        """
        Provision both environments of a tenant and its hostnames.

        Raises ValidationError or PrerequisiteError before any side effect;
        every later failure is recorded in the returned report.
        """
        tenant = Tenant(tenant_name)
        require_infrastructure(self.store)
        if not skip_database:
            self.databases.admin_password()

        report = RunReport(operation="onboard")

        with structlog.contextvars.bound_contextvars(tenant=tenant.name), self.store.locked():
            log.info("onboarding_started")

            for environment in ENVIRONMENT_ORDER:
                run_sequence(report, environment.value, self._environment_steps(tenant, environment, skip_database))

            hostnames = tenant_hostnames(tenant, self.settings.base_domain)
            if not hostnames:
                for environment in ENVIRONMENT_ORDER:
                    report.record("certificate", environment.value, StepStatus.SKIPPED, "no base domain configured")
                    report.record("listener", environment.value, StepStatus.SKIPPED, "no base domain configured")

            for hostname in hostnames:
                run_sequence(report, hostname.environment.value, self._hostname_steps(hostname))

            log.info("onboarding_finished", succeeded=report.succeeded, unchanged=report.all_unchanged)

        return report

    def _environment_steps(
        self, tenant: Tenant, environment: Environment, skip_database: bool
    ) -> List[Tuple[str, StepAction]]:
        namespace = tenant.qualified(environment)

        def ensure_namespace() -> Tuple[StepStatus, str]:
            ns, result = self.namespaces.ensure_namespace(tenant, environment)
            return _APPLY_STATUS[result], f"{ns.name} ({ns.quotas.pod_security})"

        def ensure_database() -> Tuple[StepStatus, str]:
            if skip_database:
                return StepStatus.SKIPPED, "database provisioning disabled"
            credential, result = self.databases.ensure_database(tenant, environment)
            return _APPLY_STATUS[result], f"{credential.database}@{credential.host}:{credential.port}"

        def ensure_registry_secret() -> Tuple[StepStatus, str]:
            result = self.registry.ensure_pull_secret(namespace)
            if result is None:
                return StepStatus.SKIPPED, f"{SOURCE_NAMESPACE}/{SOURCE_SECRET} not found"
            return _APPLY_STATUS[result], f"{namespace}/ghcr-secret"

        def ensure_service_identity() -> Tuple[StepStatus, str]:
            identity, result = self.cicd.ensure_service_identity(namespace)
            return _APPLY_STATUS[result], identity.bundle_name

        return [
            ("namespace", ensure_namespace),
            ("database", ensure_database),
            ("registry-secret", ensure_registry_secret),
            ("service-identity", ensure_service_identity),
        ]

    def _hostname_steps(self, hostname: Hostname) -> List[Tuple[str, StepAction]]:
        gateway = self.settings.gateway
        issued: List[CertificateStatus] = []

        def ensure_certificate() -> Tuple[StepStatus, str]:
            if not self.gateway.has_http_listener(gateway, hostname.hostname):
                return StepStatus.FAILED, f"gateway {gateway} has no HTTP listener for {hostname.hostname}"

            status = self.certificates.ensure_certificate(hostname.hostname, hostname.certificate_name)
            issued.append(status)
            if status.state == CertificateState.READY:
                return (StepStatus.CREATED if status.created else StepStatus.UNCHANGED), hostname.hostname
            if status.state == CertificateState.FAILED:
                return StepStatus.FAILED, f"{hostname.hostname}: {status.reason}"
            return StepStatus.PENDING, f"{hostname.hostname}: {status.reason or 'issuance in progress'}"

        def ensure_listener() -> Tuple[StepStatus, str]:
            if not issued or issued[-1].state == CertificateState.FAILED:
                return StepStatus.SKIPPED, "no usable certificate"

            status = self.gateway.ensure_listener(
                gateway, hostname.listener_name, hostname.hostname, hostname.certificate_name
            )
            if status == ListenerStatus.ADDED:
                return StepStatus.CREATED, f"{hostname.listener_name} on {gateway}"
            return StepStatus.UNCHANGED, f"{hostname.listener_name} on {gateway}"

        return [
            ("certificate", ensure_certificate),
            ("listener", ensure_listener),
        ]

    # =========================================================================
    # Infrastructure credentials
    # =========================================================================

    def setup(self) -> RunReport:
        """
        Initialise the infrastructure credential record and its cluster
        secrets. An existing password is never regenerated.
        """
        report = RunReport(operation="setup")

        with self.store.locked():
            existing = self.store.read(INFRASTRUCTURE_DOMAIN)
            generated = generate_infrastructure_passwords()
            missing = {key: value for key, value in generated.items() if key not in existing}
            passwords = {**existing, **missing}

            if not missing:
                report.record("credential-store", None, StepStatus.UNCHANGED, "existing record kept")
            else:
                self.store.replace(INFRASTRUCTURE_DOMAIN, passwords)
                status = StepStatus.UPDATED if existing else StepStatus.CREATED
                report.record("credential-store", None, status, f"{len(missing)} passwords generated")
                log.info("infrastructure_passwords_generated", keys=sorted(missing))

        def ensure_namespaces() -> Tuple[StepStatus, str]:
            results = []
            for name in INFRASTRUCTURE_NAMESPACES:
                result, _ = upsert(self.cluster, {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name}})
                results.append(result)
            changed = [name for name, result in zip(INFRASTRUCTURE_NAMESPACES, results) if result != ApplyResult.UNCHANGED]
            if not changed:
                return StepStatus.UNCHANGED, ", ".join(INFRASTRUCTURE_NAMESPACES)
            return StepStatus.CREATED, ", ".join(changed)

        def ensure_secrets() -> Tuple[StepStatus, str]:
            manifests = infrastructure_secret_manifests(
                passwords, lambda password: argocd_password_hash(self.cluster, password)
            )
            results = [upsert(self.cluster, manifest)[0] for manifest in manifests]
            changed = [
                f"{m['metadata']['namespace']}/{m['metadata']['name']}"
                for m, result in zip(manifests, results)
                if result != ApplyResult.UNCHANGED
            ]
            if not changed:
                return StepStatus.UNCHANGED, f"{len(manifests)} secrets"
            return StepStatus.UPDATED, ", ".join(changed)

        def ensure_keycloak_database() -> Tuple[StepStatus, str]:
            try:
                admin = self.connect_admin(passwords[POSTGRES_ADMIN_PASSWORD])
            except DatabaseUnavailableError as e:
                log.warning("keycloak_database_deferred", error=str(e))
                return StepStatus.SKIPPED, "database unreachable; rerun setup once it is up"
            try:
                created = provision_role_database(admin, KEYCLOAK_DB_ROLE, passwords[KEYCLOAK_DB_PASSWORD])
            finally:
                admin.close()
            return (StepStatus.CREATED if created else StepStatus.UNCHANGED), KEYCLOAK_DB_ROLE

        run_sequence(report, None, [
            ("infrastructure-namespaces", ensure_namespaces),
            ("infrastructure-secrets", ensure_secrets),
        ])
        run_sequence(report, None, [("keycloak-database", ensure_keycloak_database)])
        return report

    def rotate(self) -> RunReport:
        """Rotate every infrastructure password; see CredentialRotation."""
        rotation = CredentialRotation(
            self.store,
            self.cluster,
            self.connect_admin,
            admin_user=self.settings.database_admin_user,
        )
        return rotation.rotate()
