"""
Tenant Orchestrator - Data Models
Tenants, environments and the typed specs of every provisioned resource
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from .exceptions import ValidationError

TENANT_NAME_PATTERN = re.compile(r"^[a-z0-9-]+$")

# Kubernetes object names are DNS labels; "-alpha" is the longest suffix added
MAX_TENANT_NAME_LENGTH = 63 - len("-alpha")

# names of credential store entries that are not tenant records
RESERVED_TENANT_NAMES = frozenset({"credentials", "kubeconfigs"})


class Environment(str, Enum):
    """Deployment track of a tenant."""
    ALPHA = "alpha"
    PROD = "prod"

    @classmethod
    def parse(cls, value: str) -> "Environment":
        try:
            return cls(value)
        except ValueError:
            valid = ", ".join(env.value for env in cls)
            raise ValidationError(
                f"Unknown environment '{value}' (expected one of: {valid})",
                error_code="invalid_environment",
            )


@dataclass
class EnvironmentQuotas:
    """Resource quotas and pod security level for one environment"""
    cpu_request: str
    cpu_limit: str
    memory_request: str
    memory_limit: str
    max_pods: int
    pod_security: str


# Environment-based quota configuration
ENVIRONMENT_QUOTAS: Dict[Environment, EnvironmentQuotas] = {
    Environment.ALPHA: EnvironmentQuotas(
        cpu_request="1", cpu_limit="2",
        memory_request="1Gi", memory_limit="2Gi",
        max_pods=10,
        # more permissive for debugging
        pod_security="baseline",
    ),
    Environment.PROD: EnvironmentQuotas(
        cpu_request="2", cpu_limit="4",
        memory_request="2Gi", memory_limit="4Gi",
        max_pods=20,
        pod_security="restricted",
    ),
}

CONTAINER_DEFAULTS = {
    "default": {"cpu": "500m", "memory": "512Mi"},
    "defaultRequest": {"cpu": "100m", "memory": "128Mi"},
}


@dataclass(frozen=True)
class Tenant:
    """An onboarded application."""
    name: str

    def __post_init__(self):
        if not self.name or not TENANT_NAME_PATTERN.match(self.name):
            raise ValidationError(
                f"Tenant name '{self.name}' must be lowercase alphanumeric with hyphens only",
                error_code="invalid_tenant_name",
            )
        if self.name.startswith("-") or self.name.endswith("-"):
            raise ValidationError(
                f"Tenant name '{self.name}' must start and end with an alphanumeric character",
                error_code="invalid_tenant_name",
            )
        if self.name in RESERVED_TENANT_NAMES:
            raise ValidationError(
                f"Tenant name '{self.name}' is reserved",
                error_code="invalid_tenant_name",
            )
        if len(self.name) > MAX_TENANT_NAME_LENGTH:
            raise ValidationError(
                f"Tenant name '{self.name}' is longer than {MAX_TENANT_NAME_LENGTH} characters",
                error_code="invalid_tenant_name",
            )

    def qualified(self, environment: Environment) -> str:
        """Namespace, database and role name of one environment."""
        return f"{self.name}-{environment.value}"

    @property
    def secret_prefix(self) -> str:
        """Key prefix used in the tenant's credential record."""
        return self.name.upper().replace("-", "_")


@dataclass
class Namespace:
    """A provisioned per-environment namespace"""
    name: str
    tenant: str
    environment: Environment
    quotas: EnvironmentQuotas


@dataclass
class DatabaseCredential:
    """Connection details of one tenant database"""
    host: str
    port: int
    database: str
    username: str
    password: str = field(repr=False)

    @property
    def jdbc_url(self) -> str:
        return f"jdbc:postgresql://{self.host}:{self.port}/{self.database}"

    @property
    def r2dbc_url(self) -> str:
        return f"r2dbc:postgresql://{self.host}:{self.port}/{self.database}"

    def to_secret_data(self) -> Dict[str, str]:
        """Keys of the credential record written into the namespace."""
        return {
            "host": self.host,
            "port": str(self.port),
            "database": self.database,
            "username": self.username,
            "password": self.password,
            "url": self.jdbc_url,
            "r2dbc-url": self.r2dbc_url,
        }


class CertificateState(str, Enum):
    """Lifecycle of a certificate request."""
    REQUESTED = "requested"
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


@dataclass
class CertificateRequest:
    """A certificate bound to one hostname"""
    hostname: str
    secret_name: str
    issuer: str
    namespace: str

    @property
    def name(self) -> str:
        return self.secret_name


@dataclass
class CertificateStatus:
    """Outcome of ensuring a certificate"""
    request: CertificateRequest
    state: CertificateState
    created: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class GatewayRef:
    """Location of the shared gateway resource"""
    name: str
    namespace: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class GatewayListener:
    """An HTTPS listener inside the shared gateway"""
    name: str
    hostname: str
    certificate_secret: str
    tls_mode: str = "Terminate"
    port: int = 443

    def to_manifest(self) -> dict:
        return {
            "name": self.name,
            "hostname": self.hostname,
            "port": self.port,
            "protocol": "HTTPS",
            "tls": {
                "mode": self.tls_mode,
                "certificateRefs": [{"kind": "Secret", "name": self.certificate_secret}],
            },
            "allowedRoutes": {"namespaces": {"from": "All"}},
        }


class ListenerStatus(str, Enum):
    """Outcome of ensuring a gateway listener."""
    ADDED = "added"
    ALREADY_PRESENT = "already_present"


@dataclass
class ServiceIdentity:
    """Deployment identity of CI/CD inside one namespace"""
    namespace: str
    service_account: str
    role: str
    role_binding: str
    token: str = field(repr=False)
    bundle_name: str = ""


def hostname_slug(hostname: str) -> str:
    """Object-name-safe form of a hostname."""
    return hostname.replace(".", "-").replace("*", "wildcard")


class StepStatus(str, Enum):
    """Outcome of one orchestrated step."""
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    PENDING = "pending"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def is_failure(self) -> bool:
        return self in (StepStatus.FAILED, StepStatus.PENDING)


@dataclass
class StepOutcome:
    """One row of the run summary"""
    step: str
    environment: Optional[str]
    status: StepStatus
    detail: str = ""

    def to_dict(self) -> dict:
        return {
            "step": self.step,
            "environment": self.environment,
            "status": self.status.value,
            "detail": self.detail,
        }


@dataclass
class RunReport:
    """Aggregated outcomes of an orchestrator run"""
    operation: str
    outcomes: List[StepOutcome] = field(default_factory=list)

    def record(self, step: str, environment: Optional[str], status: StepStatus, detail: str = "") -> StepOutcome:
        outcome = StepOutcome(step=step, environment=environment, status=status, detail=detail)
        self.outcomes.append(outcome)
        return outcome

    @property
    def succeeded(self) -> bool:
        return not any(outcome.status.is_failure for outcome in self.outcomes)

    @property
    def all_unchanged(self) -> bool:
        return all(
            outcome.status in (StepStatus.UNCHANGED, StepStatus.SKIPPED)
            for outcome in self.outcomes
        )

    def for_step(self, step: str, environment: Optional[str] = None) -> List[StepOutcome]:
        return [
            outcome for outcome in self.outcomes
            if outcome.step == step and (environment is None or outcome.environment == environment)
        ]
