# Tenant Orchestrator - Credential Store
"""
Persistent store of generated secrets and rendered client configurations.

Layout of the file-backed store (root-only):

    <root>/                      0700
    <root>/credentials.env       infrastructure-wide KEY=value records
    <root>/<tenant>.env          per-tenant records
    <root>/kubeconfigs/*.kubeconfig
    <root>/.lock                 advisory lock for read-modify-write cycles

Every file is written atomically with mode 0600.
"""

import fcntl
import os
import re
import secrets
import string
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Protocol

import structlog

from .exceptions import PrerequisiteError, ValidationError

log = structlog.get_logger(__name__)

INFRASTRUCTURE_DOMAIN = "credentials"

DIR_MODE = 0o700
FILE_MODE = 0o600

_DOMAIN_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*$")
_ARTIFACT_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*(/[A-Za-z0-9][A-Za-z0-9._-]*)?$")
_KEY_PATTERN = re.compile(r"^[A-Z0-9][A-Z0-9_]*$")

PASSWORD_ALPHABET = string.ascii_letters + string.digits


def generate_password(length: int = 32) -> str:
    """Random password restricted to alphanumerics so it never needs escaping."""
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def parse_env(text: str) -> Dict[str, str]:
    """Parse KEY=value lines; comments and blank lines are ignored."""
    values: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip()
    return values


def render_env(values: Dict[str, str], title: str) -> str:
    lines = [
        "# " + "=" * 77,
        f"# {title} - KEEP THIS FILE SECURE",
        f"# Updated: {datetime.now(timezone.utc).isoformat(timespec='seconds')}",
        "# " + "=" * 77,
        "",
    ]
    lines.extend(f"{key}={value}" for key, value in values.items())
    return "\n".join(lines) + "\n"


def _check_domain(domain: str) -> None:
    if not _DOMAIN_PATTERN.match(domain):
        raise ValidationError(f"Invalid credential domain: {domain!r}", error_code="invalid_domain")


def check_key(key: str) -> None:
    if not _KEY_PATTERN.match(key):
        raise ValidationError(f"Invalid credential key: {key!r}", error_code="invalid_key")


def _check_artifact(name: str) -> None:
    if not _ARTIFACT_PATTERN.match(name) or ".." in name:
        raise ValidationError(f"Invalid artifact name: {name!r}", error_code="invalid_artifact")


class CredentialStore(Protocol):
    """
    Key-value bags per secret domain plus opaque artifacts.

    A domain is either INFRASTRUCTURE_DOMAIN or a tenant name.
    """

    def exists(self, domain: str) -> bool:
        ...

    def read(self, domain: str) -> Dict[str, str]:
        ...

    def get(self, domain: str, key: str) -> Optional[str]:
        ...

    def set(self, domain: str, key: str, value: str) -> None:
        ...

    def replace(self, domain: str, values: Dict[str, str]) -> None:
        ...

    def domains(self) -> List[str]:
        ...

    def read_artifact(self, name: str) -> Optional[bytes]:
        ...

    def write_artifact(self, name: str, content: bytes) -> None:
        ...

    def locked(self):
        ...


class FileCredentialStore:
    """File-backed credential store with owner-only permissions."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self._lock_path = self.root / ".lock"
        self._lock_depth = 0
        self._lock_fd: Optional[int] = None
        self._thread_lock = threading.RLock()

    def _domain_path(self, domain: str) -> Path:
        _check_domain(domain)
        return self.root / f"{domain}.env"

    def _artifact_path(self, name: str) -> Path:
        _check_artifact(name)
        return self.root / name

    def ensure_root(self) -> None:
        """Create the store directory and tighten its permissions."""
        self.root.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        os.chmod(self.root, DIR_MODE)

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the advisory lock; re-entrant within one process."""
        with self._thread_lock:
            if self._lock_depth == 0:
                self.ensure_root()
                fd = os.open(self._lock_path, os.O_RDWR | os.O_CREAT, FILE_MODE)
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX)
                except OSError:
                    os.close(fd)
                    raise
                self._lock_fd = fd
            self._lock_depth += 1
            try:
                yield
            finally:
                self._lock_depth -= 1
                if self._lock_depth == 0 and self._lock_fd is not None:
                    fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
                    os.close(self._lock_fd)
                    self._lock_fd = None

    def _write_atomic(self, path: Path, content: bytes) -> None:
        path.parent.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        os.chmod(path.parent, DIR_MODE)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        try:
            os.fchmod(fd, FILE_MODE)
            with os.fdopen(fd, "wb") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

        dir_fd = os.open(path.parent, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)

    def exists(self, domain: str) -> bool:
        return self._domain_path(domain).is_file()

    def read(self, domain: str) -> Dict[str, str]:
        path = self._domain_path(domain)
        if not path.is_file():
            return {}
        return parse_env(path.read_text(encoding="utf-8"))

    def get(self, domain: str, key: str) -> Optional[str]:
        return self.read(domain).get(key)

    def set(self, domain: str, key: str, value: str) -> None:
        check_key(key)
        with self.locked():
            values = self.read(domain)
            values[key] = value
            self._write_domain(domain, values)
        log.debug("credential_set", domain=domain, key=key)

    def replace(self, domain: str, values: Dict[str, str]) -> None:
        for key in values:
            check_key(key)
        with self.locked():
            self._write_domain(domain, dict(values))
        log.debug("credential_domain_replaced", domain=domain, keys=len(values))

    def _write_domain(self, domain: str, values: Dict[str, str]) -> None:
        title = "K3s Credentials" if domain == INFRASTRUCTURE_DOMAIN else f"{domain} Credentials"
        self._write_atomic(self._domain_path(domain), render_env(values, title).encode("utf-8"))

    def domains(self) -> List[str]:
        if not self.root.is_dir():
            return []
        return sorted(path.stem for path in self.root.glob("*.env"))

    def read_artifact(self, name: str) -> Optional[bytes]:
        path = self._artifact_path(name)
        if not path.is_file():
            return None
        return path.read_bytes()

    def write_artifact(self, name: str, content: bytes) -> None:
        with self.locked():
            self._write_atomic(self._artifact_path(name), content)
        log.debug("artifact_written", artifact=name)


class MemoryCredentialStore:
    """In-memory credential store with the same contract as the file store."""

    def __init__(self, initial: Optional[Dict[str, Dict[str, str]]] = None):
        self._domains: Dict[str, Dict[str, str]] = {
            domain: dict(values) for domain, values in (initial or {}).items()
        }
        self._artifacts: Dict[str, bytes] = {}
        self._lock = threading.RLock()

    @contextmanager
    def locked(self) -> Iterator[None]:
        with self._lock:
            yield

    def exists(self, domain: str) -> bool:
        _check_domain(domain)
        return domain in self._domains

    def read(self, domain: str) -> Dict[str, str]:
        _check_domain(domain)
        return dict(self._domains.get(domain, {}))

    def get(self, domain: str, key: str) -> Optional[str]:
        return self.read(domain).get(key)

    def set(self, domain: str, key: str, value: str) -> None:
        _check_domain(domain)
        check_key(key)
        with self._lock:
            self._domains.setdefault(domain, {})[key] = value

    def replace(self, domain: str, values: Dict[str, str]) -> None:
        _check_domain(domain)
        for key in values:
            check_key(key)
        with self._lock:
            self._domains[domain] = dict(values)

    def domains(self) -> List[str]:
        return sorted(self._domains)

    def read_artifact(self, name: str) -> Optional[bytes]:
        _check_artifact(name)
        return self._artifacts.get(name)

    def write_artifact(self, name: str, content: bytes) -> None:
        _check_artifact(name)
        with self._lock:
            self._artifacts[name] = bytes(content)

    def snapshot(self) -> dict:
        """Deep copy of everything stored, for before/after comparisons."""
        return {
            "domains": {domain: dict(values) for domain, values in self._domains.items()},
            "artifacts": dict(self._artifacts),
        }


def require_infrastructure(store: CredentialStore) -> Dict[str, str]:
    """Infrastructure credentials, or PrerequisiteError when setup never ran."""
    if not store.exists(INFRASTRUCTURE_DOMAIN):
        raise PrerequisiteError(
            "Infrastructure secrets not found; run 'tenant-orchestrator setup' first",
            error_code="missing_infrastructure_credentials",
        )
    return store.read(INFRASTRUCTURE_DOMAIN)
