"""
Command line entry point.

Exit codes: 0 success, 1 validation or prerequisite error, 2 partial
failure (some steps failed or are still pending, see the summary).
"""

import argparse
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pydantic
import structlog

from .cluster import KubeClient, load_kubeconfig
from .config import LOG_LEVELS, Settings
from .exceptions import ExportError, OrchestratorError, PrerequisiteError, RotationAbortedError, ValidationError
from .export import SecretExporter
from .log import configure_logging
from .models import Environment, RunReport, Tenant
from .orchestrator import Orchestrator
from .store import FileCredentialStore

log = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_INVALID = 1
EXIT_PARTIAL = 2

DISPLAY_WARNING = "These credentials are displayed once. Do not share or screenshot."


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tenant-orchestrator",
        description="Provision tenants and manage credentials on a shared k3s cluster",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        type=str.upper,
        choices=LOG_LEVELS,
        help="Override TENANT_ORCHESTRATOR_LOG_LEVEL",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("setup", help="Generate infrastructure passwords and cluster secrets")

    onboard = sub.add_parser("onboard", help="Provision alpha and prod environments for a tenant")
    onboard.add_argument("tenant", help="Tenant name (lowercase alphanumerics and hyphens)")
    onboard.add_argument("--skip-database", action="store_true", help="Do not provision databases")

    rotate = sub.add_parser("rotate", help="Regenerate all infrastructure passwords")
    rotate.add_argument("--yes", action="store_true", help="Do not ask for confirmation")

    show = sub.add_parser("show", help="Display stored credentials once")
    show.add_argument("service", nargs="?", default="all", help="postgres, keycloak, grafana, argocd or a tenant")

    export_cert = sub.add_parser("export-cert", help="Export the Sealed Secrets public certificate")
    export_cert.add_argument("dest", type=Path)

    export_kubeconfig = sub.add_parser("export-kubeconfig", help="Export a tenant's CI/CD kubeconfig")
    export_kubeconfig.add_argument("tenant")
    export_kubeconfig.add_argument("environment", choices=[env.value for env in Environment])
    export_kubeconfig.add_argument("dest", type=Path)

    fetch = sub.add_parser("fetch-secret", help="Display the decoded keys of a cluster secret once")
    fetch.add_argument("name")
    fetch.add_argument("namespace")

    return parser


def format_report(report: RunReport) -> str:
    """step x environment x status x detail table."""
    rows = [("STEP", "ENV", "STATUS", "DETAIL")]
    rows.extend(
        (outcome.step, outcome.environment or "-", outcome.status.value, outcome.detail)
        for outcome in report.outcomes
    )
    widths = [max(len(row[column]) for row in rows) for column in range(3)]
    lines = [
        f"{row[0]:<{widths[0]}}  {row[1]:<{widths[1]}}  {row[2]:<{widths[2]}}  {row[3]}".rstrip()
        for row in rows
    ]
    return "\n".join(lines)


def _report_exit_code(report: RunReport) -> int:
    print(format_report(report))
    if report.succeeded:
        return EXIT_OK
    print(f"\n{report.operation} completed with failures; rerun after fixing the failed steps.")
    return EXIT_PARTIAL


def _print_values(values: Dict[str, str]) -> None:
    for key, value in values.items():
        print(f"{key}={value}")
    print(f"\n{DISPLAY_WARNING}")


def _exporter(settings: Settings, with_cluster: bool) -> SecretExporter:
    cluster = None
    if with_cluster:
        config = load_kubeconfig(settings.kubeconfig)
        cluster = KubeClient(
            config,
            timeout_seconds=settings.request_timeout,
            max_retries=settings.api_retries,
            retry_delay_seconds=settings.api_retry_delay,
        )
    return SecretExporter(FileCredentialStore(settings.secrets_dir), cluster)


def _onboard_hints(tenant_name: str) -> List[str]:
    return [
        "",
        "CI/CD kubeconfigs are kept in the credential store. Export with:",
        *(
            f"  sudo tenant-orchestrator export-kubeconfig {tenant_name} {env.value} /tmp/kubeconfig-{env.value}.yaml"
            for env in (Environment.ALPHA, Environment.PROD)
        ),
        "Delete exported files after use.",
    ]


def _run(args: argparse.Namespace, settings: Settings) -> int:
    if args.command == "setup":
        return _report_exit_code(Orchestrator.from_settings(settings).setup())

    if args.command == "onboard":
        report = Orchestrator.from_settings(settings).onboard(args.tenant, skip_database=args.skip_database)
        code = _report_exit_code(report)
        print("\n".join(_onboard_hints(args.tenant)))
        return code

    if args.command == "rotate":
        if not args.yes:
            answer = input("Rotate ALL infrastructure passwords and restart dependent services? [y/N] ")
            if answer.strip().lower() not in ("y", "yes"):
                print("Rotation cancelled.")
                return EXIT_INVALID
        code = _report_exit_code(Orchestrator.from_settings(settings).rotate())
        print("\nView the new credentials with: sudo tenant-orchestrator show")
        return code

    if args.command == "show":
        _print_values(_exporter(settings, with_cluster=False).show(args.service))
        return EXIT_OK

    if args.command == "export-cert":
        try:
            exporter = _exporter(settings, with_cluster=True)
        except PrerequisiteError as e:
            log.warning("cluster_unavailable_for_export", error=str(e))
            exporter = _exporter(settings, with_cluster=False)
        path = exporter.export_cert(args.dest)
        print(f"Certificate exported to: {path}")
        print(f"Use it with: kubeseal --cert {path.name} < secret.yaml")
        print(f"Delete the exported file after copying: rm {path}")
        return EXIT_OK

    if args.command == "export-kubeconfig":
        tenant = Tenant(args.tenant)
        path = _exporter(settings, with_cluster=False).export_kubeconfig(
            tenant, Environment.parse(args.environment), args.dest
        )
        print(f"Kubeconfig exported to: {path}")
        print(f"For CI variables, encode as base64: base64 -i {path}")
        print(f"Delete after use: rm {path}")
        return EXIT_OK

    if args.command == "fetch-secret":
        _print_values(_exporter(settings, with_cluster=True).fetch_secret(args.name, args.namespace))
        return EXIT_OK

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        settings = Settings()
    except pydantic.ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return EXIT_INVALID

    configure_logging(args.log_level or settings.log_level, settings.log_json)

    try:
        return _run(args, settings)
    except (ValidationError, PrerequisiteError, ExportError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID
    except RotationAbortedError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("The credential store was not modified.", file=sys.stderr)
        return EXIT_PARTIAL
    except OrchestratorError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_PARTIAL
    except PermissionError as e:
        print(f"Error: {e} (run with sudo)", file=sys.stderr)
        return EXIT_INVALID


if __name__ == "__main__":
    raise SystemExit(main())
