# Tenant Orchestrator - Certificate Issuer Client
"""
Requests cert-manager certificates and waits a bounded time for issuance.

An existing certificate is never re-requested, keeping reruns clear of the
issuing authority's rate limits. A certificate still pending when the wait
ends is reported as such; the caller carries on.
"""

from typing import Optional, Tuple

import structlog

from .cluster import ClusterClient, create_if_absent
from .models import CertificateRequest, CertificateState, CertificateStatus
from .retry import Clock, SystemClock, poll_until

log = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_POLL_INTERVAL_SECONDS = 5.0


def certificate_manifest(request: CertificateRequest) -> dict:
    return {
        "apiVersion": "cert-manager.io/v1",
        "kind": "Certificate",
        "metadata": {
            "name": request.name,
            "namespace": request.namespace,
            "labels": {"app.kubernetes.io/managed-by": "k3s-stack"},
        },
        "spec": {
            "secretName": request.secret_name,
            "issuerRef": {"name": request.issuer, "kind": "ClusterIssuer"},
            "dnsNames": [request.hostname],
        },
    }


def _condition(certificate: dict, condition_type: str) -> Optional[dict]:
    for condition in (certificate.get("status") or {}).get("conditions") or []:
        if condition.get("type") == condition_type:
            return condition
    return None


def certificate_state(certificate: Optional[dict]) -> Tuple[CertificateState, Optional[str]]:
    """Map cert-manager status conditions to a state and a reason."""
    if not certificate:
        return CertificateState.REQUESTED, None

    ready = _condition(certificate, "Ready")
    if ready and ready.get("status") == "True":
        return CertificateState.READY, None

    issuing = _condition(certificate, "Issuing")
    if issuing and issuing.get("status") == "False" and issuing.get("reason") == "Failed":
        return CertificateState.FAILED, issuing.get("message") or "issuance failed"
    if ready and ready.get("reason") == "Failed":
        return CertificateState.FAILED, ready.get("message") or "issuance failed"
    if (certificate.get("status") or {}).get("lastFailureTime"):
        message = (ready or {}).get("message") or "last issuance attempt failed"
        return CertificateState.FAILED, message

    reason = (ready or {}).get("message")
    return CertificateState.PENDING, reason


class CertificateIssuerClient:
    """Ensures one certificate per externally reachable hostname."""

    def __init__(
        self,
        cluster: ClusterClient,
        namespace: str,
        issuer: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        clock: Optional[Clock] = None,
    ):
        self.cluster = cluster
        self.namespace = namespace
        self.issuer = issuer
        self.timeout = timeout_seconds
        self.poll_interval = poll_interval_seconds
        self.clock = clock or SystemClock()

    def ensure_certificate(self, hostname: str, secret_name: str) -> CertificateStatus:
        """
        Request a certificate for hostname unless one already exists.

        Returns READY, FAILED (with the reason) or PENDING when issuance
        outlasts the polling window. Only cluster errors raise.
        """
        request = CertificateRequest(
            hostname=hostname,
            secret_name=secret_name,
            issuer=self.issuer,
            namespace=self.namespace,
        )

        created, live = create_if_absent(self.cluster, certificate_manifest(request))
        if created:
            log.info("certificate_requested", hostname=hostname, target=secret_name, issuer=self.issuer)
        else:
            state, reason = certificate_state(live)
            if state in (CertificateState.READY, CertificateState.FAILED):
                log.info("certificate_exists", hostname=hostname, state=state.value, outcome="unchanged")
                return CertificateStatus(request=request, state=state, created=False, reason=reason)
            # issuance of an earlier request is still running; wait without re-requesting
            log.info("certificate_exists", hostname=hostname, state=state.value, outcome="waiting")

        def probe() -> Optional[Tuple[CertificateState, Optional[str]]]:
            state, reason = certificate_state(self.cluster.get("Certificate", request.name, self.namespace))
            if state in (CertificateState.READY, CertificateState.FAILED):
                return state, reason
            return None

        result = poll_until(probe, interval=self.poll_interval, timeout=self.timeout, clock=self.clock)
        if result is None:
            log.warning("certificate_pending", hostname=hostname, timeout=self.timeout)
            return CertificateStatus(
                request=request,
                state=CertificateState.PENDING,
                created=created,
                reason=f"not ready after {self.timeout:.0f}s; issuance continues in the background",
            )

        state, reason = result
        if state == CertificateState.FAILED:
            log.warning("certificate_failed", hostname=hostname, reason=reason)
        else:
            log.info("certificate_ready", hostname=hostname)
        return CertificateStatus(request=request, state=state, created=created, reason=reason)
