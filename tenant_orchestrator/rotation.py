# Tenant Orchestrator - Credential Rotation
"""
Regenerates every infrastructure password without ever locking operators out.

    LOCKED -> GENERATING -> APPLYING -> PERSISTING -> RESTARTING -> DONE

The live database roles are changed first, authenticating with the OLD admin
password, in a single transaction. Only when that succeeds is the credential
store overwritten; any failure before that point aborts with the store
untouched. Dependent workloads restart after the store is durably updated.
"""

from enum import Enum
from typing import Dict, Optional

import structlog

from .cluster import ClusterClient, rollout_restart, upsert
from .databases import AdminConnector
from .exceptions import ClusterError, OrchestratorError, PrerequisiteError, RotationAbortedError
from .infrastructure import (
    KEYCLOAK_DB_PASSWORD,
    KEYCLOAK_DB_ROLE,
    POSTGRES_ADMIN_PASSWORD,
    RESTART_TARGETS,
    argocd_password_hash,
    generate_infrastructure_passwords,
    infrastructure_secret_manifests,
)
from .models import RunReport, StepStatus
from .store import INFRASTRUCTURE_DOMAIN, CredentialStore, require_infrastructure

log = structlog.get_logger(__name__)


class RotationState(str, Enum):
    """Progress of a rotation run."""
    LOCKED = "locked"
    GENERATING = "generating"
    APPLYING = "applying"
    PERSISTING = "persisting"
    RESTARTING = "restarting"
    DONE = "done"
    ABORTED = "aborted"


class CredentialRotation:
    """Drives one rotation run."""

    def __init__(
        self,
        store: CredentialStore,
        cluster: ClusterClient,
        connect_admin: AdminConnector,
        admin_user: str = "postgres",
    ):
        self.store = store
        self.cluster = cluster
        self.connect_admin = connect_admin
        self.admin_user = admin_user
        self.state: Optional[RotationState] = None

    def _enter(self, state: RotationState) -> None:
        self.state = state
        log.info("rotation_state", state=state.value)

    def rotate(self) -> RunReport:
        """
        Rotate all infrastructure passwords.

        Raises PrerequisiteError when there is nothing to rotate and
        RotationAbortedError when the database rejects the change; in both
        cases the credential store is byte-for-byte unchanged.
        """
        report = RunReport(operation="rotate")

        with self.store.locked():
            self._enter(RotationState.LOCKED)
            old = require_infrastructure(self.store)
            old_admin = old.get(POSTGRES_ADMIN_PASSWORD)
            if not old_admin:
                raise PrerequisiteError(
                    f"{POSTGRES_ADMIN_PASSWORD} missing; cannot rotate without the current password",
                    error_code="missing_admin_credential",
                )

            self._enter(RotationState.GENERATING)
            new = generate_infrastructure_passwords(previous=old)

            self._enter(RotationState.APPLYING)
            try:
                applied = self._apply_to_database(old_admin, new)
            except OrchestratorError as e:
                self.state = RotationState.ABORTED
                log.error("rotation_aborted", error=str(e))
                raise RotationAbortedError(
                    f"Rotation aborted before any change was persisted: {e}",
                    error_code="rotation_aborted",
                )
            report.record("database-passwords", None, StepStatus.UPDATED, f"roles: {', '.join(applied)}")

            self._enter(RotationState.PERSISTING)
            merged = {**old, **new}
            self.store.replace(INFRASTRUCTURE_DOMAIN, merged)
            report.record("credential-store", None, StepStatus.UPDATED, f"{len(new)} passwords rotated")

        self._update_cluster_secrets(merged, report)

        self._enter(RotationState.RESTARTING)
        self._restart_services(report)

        self._enter(RotationState.DONE)
        return report

    def _apply_to_database(self, old_admin: str, new: Dict[str, str]) -> list:
        admin = self.connect_admin(old_admin)
        try:
            targets = {self.admin_user: new[POSTGRES_ADMIN_PASSWORD]}
            if admin.role_exists(KEYCLOAK_DB_ROLE):
                targets[KEYCLOAK_DB_ROLE] = new[KEYCLOAK_DB_PASSWORD]
            admin.alter_passwords(targets)
        finally:
            admin.close()
        return sorted(targets)

    def _update_cluster_secrets(self, passwords: Dict[str, str], report: RunReport) -> None:
        try:
            manifests = infrastructure_secret_manifests(
                passwords, lambda password: argocd_password_hash(self.cluster, password)
            )
        except ClusterError as e:
            report.record("cluster-secrets", None, StepStatus.FAILED, str(e))
            return

        for manifest in manifests:
            target = f"{manifest['metadata']['namespace']}/{manifest['metadata']['name']}"
            try:
                result, _ = upsert(self.cluster, manifest)
            except ClusterError as e:
                log.error("secret_update_failed", resource=target, error=str(e))
                report.record("cluster-secret", None, StepStatus.FAILED, f"{target}: {e}")
                continue
            report.record("cluster-secret", None, StepStatus(result.value), target)

    def _restart_services(self, report: RunReport) -> None:
        for target in RESTART_TARGETS:
            label = f"{target.namespace}/{target.name}"
            try:
                kind = next(
                    (kind for kind in target.kinds if self.cluster.get(kind, target.name, target.namespace)),
                    None,
                )
                if kind is None:
                    report.record("restart", None, StepStatus.SKIPPED, f"{label}: not installed")
                    continue
                rollout_restart(self.cluster, kind, target.name, target.namespace)
            except ClusterError as e:
                log.error("restart_failed", workload=label, error=str(e))
                report.record("restart", None, StepStatus.FAILED, f"{label}: {e}")
                continue
            report.record("restart", None, StepStatus.UPDATED, f"{kind.lower()}/{target.name} in {target.namespace}")
