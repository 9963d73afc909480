# Tenant Orchestrator
"""
Tenant provisioning and credential lifecycle for a shared k3s cluster.

This package provides:
- Namespaces with quotas, per-environment databases and CI/CD identities
- cert-manager certificates and shared gateway listeners
- Infrastructure password setup, rotation and export
"""

from .exceptions import OrchestratorError
from .models import Environment, RunReport, StepStatus, Tenant
from .orchestrator import Orchestrator

__version__ = "1.0.0"

__all__ = [
    "Environment",
    "Orchestrator",
    "OrchestratorError",
    "RunReport",
    "StepStatus",
    "Tenant",
]
