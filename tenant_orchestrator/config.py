"""Configuration for the Tenant Orchestrator."""
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import GatewayRef

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Settings(BaseSettings):
    """
    Orchestrator settings from environment variables.

    Every field maps to TENANT_ORCHESTRATOR_<FIELD>, e.g.
    TENANT_ORCHESTRATOR_BASE_DOMAIN=example.com.
    """

    model_config = SettingsConfigDict(
        env_prefix="TENANT_ORCHESTRATOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Credential store
    secrets_dir: Path = Path("/root/.k3s-secrets")

    # Cluster access
    kubeconfig: Path = Path("/etc/rancher/k3s/k3s.yaml")
    cluster_name: str = "k3s"
    request_timeout: float = Field(default=30.0, gt=0)
    api_retries: int = Field(default=3, ge=1, le=10)
    api_retry_delay: float = Field(default=1.0, ge=0)

    # Database engine
    database_host: str = "postgresql.storage.svc.cluster.local"
    database_port: int = 5432
    database_admin_host: str = "localhost"
    database_admin_user: str = "postgres"
    database_admin_database: str = "postgres"
    database_connect_timeout: int = Field(default=10, ge=1)

    # Ingress
    base_domain: Optional[str] = None
    gateway_name: str = "infrastructure-gateway"
    gateway_namespace: str = "nginx-gateway"
    cluster_issuer: str = "letsencrypt-prod"
    certificate_timeout: float = Field(default=120.0, ge=0)
    certificate_poll_interval: float = Field(default=5.0, gt=0)

    # CI/CD access
    service_account: str = "deployer"
    token_timeout: float = Field(default=10.0, ge=0)
    token_poll_interval: float = Field(default=1.0, gt=0)

    # Logging
    log_level: str = "INFO"
    log_json: Optional[bool] = None

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level

    @model_validator(mode="after")
    def validate_domain(self) -> "Settings":
        if self.base_domain is not None:
            self.base_domain = self.base_domain.strip().strip(".").lower() or None
        return self

    @property
    def gateway(self) -> GatewayRef:
        return GatewayRef(name=self.gateway_name, namespace=self.gateway_namespace)
