# Tenant Orchestrator - Gateway Listener Manager
"""
Adds per-hostname HTTPS listeners to the shared gateway.

Listeners are appended with a JSON patch guarded by the gateway's
resourceVersion, so listeners added concurrently for other tenants are never
overwritten; on a conflict the listener set is re-read before retrying.
"""

from typing import List, Optional

import structlog

from .cluster import ClusterClient
from .exceptions import ClusterAPIError, PrerequisiteError
from .models import GatewayListener, GatewayRef, ListenerStatus

log = structlog.get_logger(__name__)

MAX_PATCH_ATTEMPTS = 3


def hostname_matches(pattern: Optional[str], hostname: str) -> bool:
    """Gateway API hostname matching; a wildcard covers exactly one leading label."""
    if not pattern:
        return True
    if pattern.startswith("*."):
        suffix = pattern[1:]
        return hostname.endswith(suffix) and "." not in hostname[: -len(suffix)]
    return pattern == hostname


class GatewayListenerManager:
    """Reads and extends the listener set of the shared gateway."""

    def __init__(self, cluster: ClusterClient):
        self.cluster = cluster

    def _gateway(self, gateway: GatewayRef) -> dict:
        live = self.cluster.get("Gateway", gateway.name, gateway.namespace)
        if live is None:
            raise PrerequisiteError(f"Gateway {gateway} not found", error_code="missing_gateway")
        return live

    def listeners(self, gateway: GatewayRef) -> List[dict]:
        return list((self._gateway(gateway).get("spec") or {}).get("listeners") or [])

    def has_http_listener(self, gateway: GatewayRef, hostname: str) -> bool:
        """Whether an HTTP listener can serve the ACME HTTP-01 challenge for hostname."""
        return any(
            listener.get("protocol") == "HTTP" and hostname_matches(listener.get("hostname"), hostname)
            for listener in self.listeners(gateway)
        )

    def ensure_listener(
        self,
        gateway: GatewayRef,
        listener_name: str,
        hostname: str,
        certificate_secret: str,
    ) -> ListenerStatus:
        """
        Append an HTTPS listener for hostname unless one named listener_name exists.

        The referenced certificate secret may not be populated yet; the gateway
        controller reconciles the listener once it appears.
        """
        listener = GatewayListener(name=listener_name, hostname=hostname, certificate_secret=certificate_secret)

        for attempt in range(1, MAX_PATCH_ATTEMPTS + 1):
            live = self._gateway(gateway)
            existing = (live.get("spec") or {}).get("listeners")

            if any(entry.get("name") == listener_name for entry in existing or []):
                log.info("listener_exists", gateway=str(gateway), listener=listener_name, outcome="unchanged")
                return ListenerStatus.ALREADY_PRESENT

            operations = [
                {
                    "op": "test",
                    "path": "/metadata/resourceVersion",
                    "value": live.get("metadata", {}).get("resourceVersion"),
                },
            ]
            if existing is None:
                operations.append({"op": "add", "path": "/spec/listeners", "value": [listener.to_manifest()]})
            else:
                operations.append({"op": "add", "path": "/spec/listeners/-", "value": listener.to_manifest()})

            try:
                self.cluster.json_patch("Gateway", gateway.name, gateway.namespace, operations)
            except ClusterAPIError as e:
                # 409/422: the gateway changed since it was read
                if e.status_code not in (409, 422) or attempt == MAX_PATCH_ATTEMPTS:
                    raise
                log.warning("listener_patch_conflict", gateway=str(gateway), listener=listener_name, attempt=attempt)
                continue

            log.info("listener_added", gateway=str(gateway), listener=listener_name, hostname=hostname)
            return ListenerStatus.ADDED

        raise ClusterAPIError(f"Could not add listener {listener_name} to gateway {gateway}")
