# Tenant Orchestrator - Secret Export
"""
On-demand, read-only disclosure of stored secrets.

Nothing here writes to the credential store. Exported files are handed to
the invoking user (SUDO_UID/SUDO_GID) and their content is never logged.
"""

import errno
import os
import stat
from pathlib import Path
from typing import Dict, Optional

import structlog
from cryptography import x509

from .cicd import kubeconfig_artifact
from .cluster import ClusterClient, secret_value
from .exceptions import ClusterError, ExportError, ValidationError
from .infrastructure import SERVICE_PREFIXES
from .models import Environment, Tenant
from .store import INFRASTRUCTURE_DOMAIN, CredentialStore, require_infrastructure

log = structlog.get_logger(__name__)

SEALED_SECRETS_CERT = "sealed-secrets-pub.pem"
SEALED_SECRETS_NAMESPACE = "kube-system"
SEALED_SECRETS_ACTIVE_LABEL = "sealedsecrets.bitnami.com/sealed-secrets-key=active"

PUBLIC_FILE_MODE = 0o644
PRIVATE_FILE_MODE = 0o600

BINARY_PLACEHOLDER = "[binary data]"


def invoking_user() -> Optional[tuple]:
    """uid/gid of the user behind sudo, if any."""
    uid = os.environ.get("SUDO_UID")
    gid = os.environ.get("SUDO_GID")
    if uid is None or gid is None:
        return None
    return int(uid), int(gid)


def write_export(dest: Path, content: bytes, mode: int) -> Path:
    """Write content to dest with mode, owned by the invoking user."""
    dest = Path(dest)
    if dest.is_dir():
        raise ExportError(f"Destination is a directory: {dest}", error_code="invalid_destination")
    if not dest.parent.is_dir():
        raise ExportError(f"Destination directory does not exist: {dest.parent}", error_code="invalid_destination")

    if dest.is_symlink():
        raise ExportError(f"Destination is a symbolic link: {dest}", error_code="invalid_destination")

    try:
        fd = os.open(dest, os.O_WRONLY | os.O_CREAT | os.O_NOFOLLOW, mode)
    except OSError as e:
        if e.errno == errno.ELOOP:
            raise ExportError(f"Destination is a symbolic link: {dest}", error_code="invalid_destination")
        raise

    with os.fdopen(fd, "wb") as f:
        if not stat.S_ISREG(os.fstat(f.fileno()).st_mode):
            raise ExportError(f"Destination is not a regular file: {dest}", error_code="invalid_destination")
        # an existing file keeps its old mode through O_CREAT
        os.fchmod(f.fileno(), mode)
        owner = invoking_user()
        if owner is not None:
            os.fchown(f.fileno(), *owner)
        f.truncate()
        f.write(content)

    return dest


class SecretExporter:
    """Read-only access to the credential store and cluster secrets."""

    def __init__(self, store: CredentialStore, cluster: Optional[ClusterClient] = None):
        self.store = store
        self.cluster = cluster

    def show(self, service: Optional[str] = None) -> Dict[str, str]:
        """
        Credentials for display: everything, one infrastructure service, or
        one onboarded tenant's record.
        """
        if service is None or service == "all":
            return require_infrastructure(self.store)

        prefix = SERVICE_PREFIXES.get(service)
        if prefix is not None:
            values = require_infrastructure(self.store)
            return {key: value for key, value in values.items() if key.startswith(prefix)}

        if service != INFRASTRUCTURE_DOMAIN and self.store.exists(service):
            return self.store.read(service)

        valid = ", ".join(sorted(set(SERVICE_PREFIXES) - {"postgresql", "argo"}))
        raise ValidationError(
            f"Unknown service: {service} (valid: {valid}, or the name of an onboarded tenant)",
            error_code="unknown_service",
        )

    def _fetch_cluster_cert(self) -> Optional[bytes]:
        if self.cluster is None:
            return None
        secrets = self.cluster.list(
            "Secret", namespace=SEALED_SECRETS_NAMESPACE, label_selector=SEALED_SECRETS_ACTIVE_LABEL
        )
        if not secrets:
            return None
        value = secret_value(secrets[0], "tls.crt")
        return value.encode("utf-8") if value else None

    def export_cert(self, dest: Path) -> Path:
        """Copy the sealed-secrets public certificate to dest (world-readable)."""
        try:
            content = self._fetch_cluster_cert()
        except ClusterError as e:
            log.warning("cluster_certificate_unavailable", error=str(e))
            content = None
        content = content or self.store.read_artifact(SEALED_SECRETS_CERT)
        if not content:
            raise ExportError(
                "Sealed Secrets certificate not found in the cluster or the credential store",
                error_code="missing_certificate",
            )

        try:
            certificate = x509.load_pem_x509_certificate(content)
        except ValueError as e:
            raise ExportError(f"Sealed Secrets certificate is not valid PEM: {e}", error_code="invalid_certificate")

        path = write_export(dest, content, PUBLIC_FILE_MODE)
        log.info(
            "certificate_exported",
            dest=str(path),
            subject=certificate.subject.rfc4514_string(),
            not_after=certificate.not_valid_after_utc.isoformat(),
        )
        return path

    def export_kubeconfig(self, tenant: Tenant, environment: Environment, dest: Path) -> Path:
        """Copy a rendered CI/CD kubeconfig to dest (owner-only)."""
        artifact = kubeconfig_artifact(tenant.qualified(environment))
        content = self.store.read_artifact(artifact)
        if content is None:
            raise ExportError(
                f"Kubeconfig not found for {tenant.qualified(environment)}; onboard {tenant.name} first",
                error_code="missing_kubeconfig",
            )

        path = write_export(dest, content, PRIVATE_FILE_MODE)
        log.info("kubeconfig_exported", artifact=artifact, dest=str(path))
        return path

    def fetch_secret(self, name: str, namespace: str) -> Dict[str, str]:
        """Decoded keys of a cluster secret, for one-time display."""
        if self.cluster is None:
            raise ExportError("Cluster access is required to fetch secrets")

        secret = self.cluster.get("Secret", name, namespace)
        if not secret or not (secret.get("data") or secret.get("stringData")):
            raise ExportError(f"Secret {namespace}/{name} not found or empty", error_code="missing_secret")

        values = {}
        for key in sorted(set(secret.get("data") or {}) | set(secret.get("stringData") or {})):
            try:
                values[key] = secret_value(secret, key) or ""
            except UnicodeDecodeError:
                values[key] = BINARY_PLACEHOLDER
        log.info("secret_fetched", resource=f"{namespace}/{name}", keys=len(values))
        return values
