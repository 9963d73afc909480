"""
Container registry pull secret copied into tenant namespaces from the
Git hosting credential Argo CD already holds.
"""

import base64
import json
from typing import Optional

import structlog

from .cluster import ApplyResult, ClusterClient, secret_value, upsert

log = structlog.get_logger(__name__)

SOURCE_SECRET = "github-repo-creds"
SOURCE_NAMESPACE = "argocd"
PULL_SECRET_NAME = "ghcr-secret"
REGISTRY_SERVER = "ghcr.io"
REGISTRY_USERNAME = "git"


def pull_secret_manifest(namespace: str, password: str) -> dict:
    auth = base64.b64encode(f"{REGISTRY_USERNAME}:{password}".encode("utf-8")).decode("ascii")
    config = {
        "auths": {
            REGISTRY_SERVER: {
                "username": REGISTRY_USERNAME,
                "password": password,
                "auth": auth,
            }
        }
    }
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": PULL_SECRET_NAME, "namespace": namespace},
        "type": "kubernetes.io/dockerconfigjson",
        # sorted keys keep the rendered document stable across runs
        "stringData": {".dockerconfigjson": json.dumps(config, sort_keys=True)},
    }


class RegistrySecretCopier:
    def __init__(self, cluster: ClusterClient):
        self.cluster = cluster

    def source_password(self) -> Optional[str]:
        source = self.cluster.get("Secret", SOURCE_SECRET, SOURCE_NAMESPACE)
        return secret_value(source, "password")

    def ensure_pull_secret(self, namespace: str) -> Optional[ApplyResult]:
        """Upsert the pull secret; None when there is no credential to copy."""
        password = self.source_password()
        if not password:
            log.warning("registry_credentials_missing", source=f"{SOURCE_NAMESPACE}/{SOURCE_SECRET}")
            return None

        result, _ = upsert(self.cluster, pull_secret_manifest(namespace, password))
        log.info("registry_secret_ensured", namespace=namespace, outcome=result.value)
        return result
