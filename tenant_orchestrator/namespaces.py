# Tenant Orchestrator - Namespace Provisioner
"""
Per-environment namespaces with resource quotas and a default container
limit range. Re-running reconciles quota changes onto existing namespaces.
"""

from typing import Dict, Tuple

import structlog

from .cluster import ApplyResult, ClusterClient, combine, upsert
from .models import (
    CONTAINER_DEFAULTS,
    ENVIRONMENT_QUOTAS,
    Environment,
    EnvironmentQuotas,
    Namespace,
    Tenant,
)

log = structlog.get_logger(__name__)

MANAGED_BY = "k3s-stack"


def namespace_manifest(tenant: Tenant, environment: Environment, quotas: EnvironmentQuotas) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": {
            "name": tenant.qualified(environment),
            "labels": {
                "app.kubernetes.io/name": tenant.name,
                "app.kubernetes.io/environment": environment.value,
                "app.kubernetes.io/managed-by": MANAGED_BY,
                # Pod Security Admission
                "pod-security.kubernetes.io/enforce": quotas.pod_security,
                "pod-security.kubernetes.io/audit": "restricted",
                "pod-security.kubernetes.io/warn": "restricted",
            },
        },
    }


def quota_manifest(namespace: str, quotas: EnvironmentQuotas) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "ResourceQuota",
        "metadata": {"name": f"{namespace}-quota", "namespace": namespace},
        "spec": {
            "hard": {
                "requests.cpu": quotas.cpu_request,
                "requests.memory": quotas.memory_request,
                "limits.cpu": quotas.cpu_limit,
                "limits.memory": quotas.memory_limit,
                "pods": str(quotas.max_pods),
            }
        },
    }


def limit_range_manifest(namespace: str) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "LimitRange",
        "metadata": {"name": f"{namespace}-limits", "namespace": namespace},
        "spec": {
            "limits": [{"type": "Container", **CONTAINER_DEFAULTS}],
        },
    }


class NamespaceProvisioner:
    """Creates or adopts the namespace of one tenant environment."""

    def __init__(self, cluster: ClusterClient, quotas: Dict[Environment, EnvironmentQuotas] = None):
        self.cluster = cluster
        self.quotas = quotas or ENVIRONMENT_QUOTAS

    def ensure_namespace(self, tenant: Tenant, environment: Environment) -> Tuple[Namespace, ApplyResult]:
        """
        Upsert the namespace, its quota and its limit range.

        Namespace creation always precedes the namespaced objects. Raises
        ClusterError when the control plane is unreachable.
        """
        quotas = self.quotas[environment]
        name = tenant.qualified(environment)

        ns_result, _ = upsert(self.cluster, namespace_manifest(tenant, environment, quotas))
        quota_result, _ = upsert(self.cluster, quota_manifest(name, quotas))
        limits_result, _ = upsert(self.cluster, limit_range_manifest(name))

        result = combine([ns_result, quota_result, limits_result])
        log.info("namespace_ensured", namespace=name, outcome=result.value)

        return Namespace(name=name, tenant=tenant.name, environment=environment, quotas=quotas), result
