"""
Tenant Orchestrator - End-to-end onboarding and setup tests

Runs the full orchestrator against FakeCluster and FakeDatabase.
"""
from __future__ import annotations

import pytest

from tenant_orchestrator.exceptions import ClusterAPIError, PrerequisiteError, ValidationError
from tenant_orchestrator.infrastructure import PASSWORD_LENGTHS, POSTGRES_ADMIN_PASSWORD
from tenant_orchestrator.models import RunReport, StepStatus, Tenant
from tenant_orchestrator.orchestrator import STEP_POLICY, Orchestrator, StepPolicy, run_sequence, tenant_hostnames
from tenant_orchestrator.registry import PULL_SECRET_NAME
from tenant_orchestrator.store import INFRASTRUCTURE_DOMAIN, MemoryCredentialStore


# =============================================================================
# Onboarding
# =============================================================================

class TestOnboardEndToEnd:
    """Test onboard("acme") against in-memory collaborators."""

    def test_first_run_provisions_both_environments(self, orchestrator, cluster, database, store):
        print("\n[TEST] Onboard - acme first run")
        report = orchestrator.onboard("acme")

        assert report.succeeded, [o.to_dict() for o in report.outcomes]
        assert {"acme-alpha", "acme-prod"} <= {key[2] for key in cluster.objects if key[0] == "Namespace"}

        alpha = cluster.secret_data("acme-db", "acme-alpha")
        prod = cluster.secret_data("acme-db", "acme-prod")
        assert alpha["password"] != prod["password"]
        assert database.can_login("acme-alpha", alpha["password"])
        assert database.can_login("acme-prod", prod["password"])

        for namespace in ("acme-alpha", "acme-prod"):
            assert cluster.stored("ServiceAccount", "deployer", namespace) is not None
            assert store.read_artifact(f"kubeconfigs/{namespace}.kubeconfig") is not None

        assert cluster.stored("Certificate", "tls-acme-example-com", "nginx-gateway") is not None
        assert cluster.stored("Certificate", "tls-acme-alpha-example-com", "nginx-gateway") is not None
        names = [listener["name"] for listener in cluster.gateway_listeners()]
        assert names == ["http", "https-acme-alpha-example-com", "https-acme-example-com"]
        print(f"  ✓ {len(report.outcomes)} steps, all succeeded")

    def test_second_run_is_all_noops(self, orchestrator, cluster):
        print("\n[TEST] Onboard - acme rerun")
        orchestrator.onboard("acme")
        counts = {kind: cluster.count(kind) for kind in ("Namespace", "Secret", "ServiceAccount", "Certificate")}
        listeners = len(cluster.gateway_listeners())

        report = orchestrator.onboard("acme")

        assert report.all_unchanged, [o.to_dict() for o in report.outcomes if o.status != StepStatus.UNCHANGED]
        assert {kind: cluster.count(kind) for kind in counts} == counts
        assert len(cluster.gateway_listeners()) == listeners
        print("  ✓ every step reported unchanged")

    def test_step_order_per_environment(self, orchestrator):
        report = orchestrator.onboard("acme")
        alpha_steps = [o.step for o in report.outcomes if o.environment == "alpha"]
        assert alpha_steps == [
            "namespace", "database", "registry-secret", "service-identity", "certificate", "listener",
        ]

    def test_registry_secret_copied_when_credentials_exist(self, orchestrator, cluster):
        cluster.seed({
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": "github-repo-creds", "namespace": "argocd"},
            "stringData": {"url": "https://github.com/acme", "username": "git", "password": "ghp_token"},
        })

        report = orchestrator.onboard("acme")

        assert [o.status for o in report.for_step("registry-secret")] == [StepStatus.CREATED] * 2
        secret = cluster.stored("Secret", PULL_SECRET_NAME, "acme-prod")
        assert secret["type"] == "kubernetes.io/dockerconfigjson"
        assert "ghp_token" in cluster.secret_data(PULL_SECRET_NAME, "acme-prod")[".dockerconfigjson"]

    def test_registry_secret_skipped_without_credentials(self, orchestrator):
        report = orchestrator.onboard("acme")
        assert all(o.status == StepStatus.SKIPPED for o in report.for_step("registry-secret"))

    def test_no_base_domain_skips_certificates(self, orchestrator, cluster):
        orchestrator.settings.base_domain = None
        report = orchestrator.onboard("acme")

        assert report.succeeded
        assert all(o.status == StepStatus.SKIPPED for o in report.for_step("certificate"))
        assert cluster.count("Certificate") == 0

    def test_digit_leading_tenant(self, orchestrator, cluster, database, store):
        print("\n[TEST] Onboard - 1app")
        report = orchestrator.onboard("1app")

        assert report.succeeded, [o.to_dict() for o in report.outcomes]
        stored = store.read("1app")
        assert database.can_login("1app-alpha", stored["1APP_ALPHA_DB_PASSWORD"])
        assert cluster.secret_data("1app-db", "1app-prod")["password"] == stored["1APP_PROD_DB_PASSWORD"]
        assert orchestrator.onboard("1app").all_unchanged
        print("  ✓ credential record keyed 1APP_*, rerun unchanged")


class TestOnboardPreflight:
    """Test failures that stop before any side effect."""

    def test_invalid_tenant_name(self, orchestrator, cluster):
        with pytest.raises(ValidationError):
            orchestrator.onboard("Not_Valid")
        assert cluster.mutations() == []

    def test_missing_infrastructure_record(self, settings, cluster, database, endpoint, clock):
        orchestrator = Orchestrator(settings, MemoryCredentialStore(), cluster, database.connect, endpoint, clock)
        with pytest.raises(PrerequisiteError):
            orchestrator.onboard("acme")
        assert cluster.mutations() == []

    def test_missing_admin_password(self, settings, cluster, database, endpoint, clock):
        store = MemoryCredentialStore({INFRASTRUCTURE_DOMAIN: {"GRAFANA_ADMIN_PASSWORD": "x"}})
        orchestrator = Orchestrator(settings, store, cluster, database.connect, endpoint, clock)
        with pytest.raises(PrerequisiteError):
            orchestrator.onboard("acme")
        assert cluster.mutations() == []


class TestPartialFailure:
    """Test per-step failure policy."""

    def test_database_failure_skips_rest_of_environment_only(self, orchestrator, database):
        print("\n[TEST] Onboard - Database unreachable")
        database.unavailable = True

        report = orchestrator.onboard("acme")

        assert not report.succeeded
        for environment in ("alpha", "prod"):
            assert report.for_step("namespace", environment)[0].status == StepStatus.CREATED
            assert report.for_step("database", environment)[0].status == StepStatus.FAILED
            assert report.for_step("service-identity", environment)[0].status == StepStatus.SKIPPED
        # certificate work is independent of the environment sequence
        assert all(o.status == StepStatus.CREATED for o in report.for_step("certificate"))
        print("  ✓ database failure contained, certificates still issued")

    def test_failure_in_alpha_does_not_block_prod(self, orchestrator, cluster):
        original_create = cluster.create

        def reject_alpha_namespace(manifest):
            if manifest["kind"] == "Namespace" and manifest["metadata"]["name"] == "acme-alpha":
                raise ClusterAPIError("forbidden", status_code=403)
            return original_create(manifest)

        cluster.create = reject_alpha_namespace
        report = orchestrator.onboard("acme")

        assert report.for_step("namespace", "alpha")[0].status == StepStatus.FAILED
        assert report.for_step("database", "alpha")[0].status == StepStatus.SKIPPED
        assert report.for_step("service-identity", "prod")[0].status == StepStatus.CREATED

    def test_completed_steps_are_not_rolled_back(self, orchestrator, cluster):
        cluster.populate_tokens = False
        report = orchestrator.onboard("acme")

        assert report.for_step("service-identity", "alpha")[0].status == StepStatus.FAILED
        assert cluster.stored("Secret", "acme-db", "acme-alpha") is not None
        assert cluster.stored("Namespace", "acme-alpha") is not None

    def test_pending_certificate_still_gets_listener(self, orchestrator, cluster):
        cluster.certificate_outcome = "pending"
        report = orchestrator.onboard("acme")

        assert all(o.status == StepStatus.PENDING for o in report.for_step("certificate"))
        assert all(o.status == StepStatus.CREATED for o in report.for_step("listener"))
        assert not report.succeeded

    def test_failed_certificate_skips_listener(self, orchestrator, cluster):
        cluster.certificate_outcome = "failed"
        report = orchestrator.onboard("acme")

        assert all(o.status == StepStatus.FAILED for o in report.for_step("certificate"))
        assert all(o.status == StepStatus.SKIPPED for o in report.for_step("listener"))
        assert [l["name"] for l in cluster.gateway_listeners()] == ["http"]

    def test_certificate_requires_http_listener(self, orchestrator, cluster):
        cluster.seed_gateway(listeners=[{"name": "https-other", "protocol": "HTTPS", "port": 443}])
        report = orchestrator.onboard("acme")

        assert all(o.status == StepStatus.FAILED for o in report.for_step("certificate"))
        assert cluster.count("Certificate") == 0


class TestRunSequence:
    def test_soft_failure_continues(self):
        report = RunReport(operation="test")

        def boom():
            raise ClusterAPIError("nope")

        run_sequence(report, "alpha", [
            ("registry-secret", boom),
            ("service-identity", lambda: (StepStatus.CREATED, "")),
        ])
        assert [o.status for o in report.outcomes] == [StepStatus.FAILED, StepStatus.CREATED]

    def test_policy_table_covers_onboarding_steps(self):
        assert STEP_POLICY["database"] is StepPolicy.HARD
        assert STEP_POLICY["certificate"] is StepPolicy.SOFT

    def test_hostnames(self):
        hostnames = tenant_hostnames(Tenant("acme"), "example.com")
        assert [(h.environment.value, h.hostname) for h in hostnames] == [
            ("alpha", "acme-alpha.example.com"),
            ("prod", "acme.example.com"),
        ]
        assert hostnames[1].listener_name == "https-acme-example-com"
        assert tenant_hostnames(Tenant("acme"), None) == []


# =============================================================================
# Setup
# =============================================================================

class TestSetup:
    """Test first-install credential initialisation."""

    def test_generates_passwords_and_secrets(self, settings, cluster, database, endpoint, clock):
        store = MemoryCredentialStore()
        database.roles.pop("keycloak")
        database.databases.pop("keycloak")

        def connect_any(password):
            # first install: the database was initialised with the generated password
            database.roles["postgres"] = password
            return database.connect(password)

        orchestrator = Orchestrator(settings, store, cluster, connect_any, endpoint, clock)
        report = orchestrator.setup()

        assert report.succeeded, [o.to_dict() for o in report.outcomes]
        passwords = store.read(INFRASTRUCTURE_DOMAIN)
        assert set(passwords) == set(PASSWORD_LENGTHS)
        assert cluster.secret_data("postgresql-secret", "storage")["postgres-password"] == passwords[POSTGRES_ADMIN_PASSWORD]
        assert report.for_step("keycloak-database")[0].status == StepStatus.CREATED
        assert "keycloak" in database.databases

    def test_rerun_keeps_existing_passwords(self, orchestrator, store, infrastructure_passwords):
        first = orchestrator.setup()
        assert first.for_step("credential-store")[0].status == StepStatus.UNCHANGED

        second = orchestrator.setup()

        assert store.read(INFRASTRUCTURE_DOMAIN) == infrastructure_passwords
        assert second.all_unchanged, [o.to_dict() for o in second.outcomes]

    def test_unreachable_database_defers_keycloak(self, orchestrator, database):
        database.unavailable = True
        report = orchestrator.setup()

        assert report.for_step("keycloak-database")[0].status == StepStatus.SKIPPED
        assert report.succeeded
