"""
Database admin adapter.

Role and database DDL executed over an admin SQLAlchemy connection in
AUTOCOMMIT mode; CREATE DATABASE refuses to run inside a transaction.
"""

from contextlib import contextmanager
from typing import TYPE_CHECKING, Dict, Iterator, Optional, Protocol

import structlog
from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Connection, Engine
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError

from .exceptions import DatabaseStatementError, DatabaseUnavailableError
from .retry import Clock, retry_transient

if TYPE_CHECKING:
    from .config import Settings

log = structlog.get_logger(__name__)


class DatabaseAdmin(Protocol):
    """DDL capabilities needed to provision and rotate tenant credentials."""

    def role_exists(self, role: str) -> bool:
        ...

    def database_exists(self, database: str) -> bool:
        ...

    def upsert_role(self, role: str, password: str) -> bool:
        """Create the login role or reset its password; True when created."""
        ...

    def create_database(self, database: str, owner: str) -> bool:
        """Create the database unless it exists; True when created."""
        ...

    def grant_all(self, database: str, role: str) -> None:
        ...

    def alter_password(self, role: str, password: str) -> None:
        ...

    def alter_passwords(self, passwords: Dict[str, str]) -> None:
        """Change several role passwords atomically: all or none."""
        ...

    def close(self) -> None:
        ...


def quote_literal(value: str) -> str:
    """SQL string literal; DDL password clauses cannot take bind parameters."""
    return "'" + value.replace("'", "''") + "'"


class PostgresAdmin:
    """DatabaseAdmin backed by a PostgreSQL superuser connection."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._quote = engine.dialect.identifier_preparer.quote_identifier

    @classmethod
    def connect(
        cls,
        host: str,
        port: int,
        username: str,
        password: str,
        database: str = "postgres",
        connect_timeout: int = 10,
        attempts: int = 3,
        retry_delay: float = 1.0,
        clock: Optional[Clock] = None,
    ) -> "PostgresAdmin":
        """Open an admin connection, verifying the login before returning."""
        url = URL.create(
            "postgresql+psycopg2",
            username=username,
            password=password,
            host=host,
            port=port,
            database=database,
        )
        engine = create_engine(
            url,
            isolation_level="AUTOCOMMIT",
            pool_pre_ping=True,
            connect_args={"connect_timeout": connect_timeout},
        )
        admin = cls(engine)

        def ping() -> None:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))

        try:
            retry_transient(
                ping,
                attempts=attempts,
                delay=retry_delay,
                retry_on=(OperationalError,),
                clock=clock,
                operation=f"connect {host}:{port}",
            )
        except OperationalError as e:
            engine.dispose()
            raise DatabaseUnavailableError(
                f"Database {host}:{port} unreachable as {username}: {e.orig}",
                error_code="database_unavailable",
            )
        return admin

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _connection(self) -> Iterator[Connection]:
        try:
            with self.engine.connect() as conn:
                yield conn
        except OperationalError as e:
            raise DatabaseUnavailableError(f"Database connection lost: {e.orig}", error_code="database_unavailable")
        except DBAPIError as e:
            raise DatabaseStatementError(f"Statement rejected: {e.orig}", error_code="database_statement")
        except SQLAlchemyError as e:
            raise DatabaseStatementError(str(e), error_code="database_statement")

    def role_exists(self, role: str) -> bool:
        with self._connection() as conn:
            row = conn.execute(text("SELECT 1 FROM pg_roles WHERE rolname = :name"), {"name": role}).first()
        return row is not None

    def database_exists(self, database: str) -> bool:
        with self._connection() as conn:
            row = conn.execute(text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": database}).first()
        return row is not None

    def upsert_role(self, role: str, password: str) -> bool:
        created = not self.role_exists(role)
        verb = "CREATE" if created else "ALTER"
        with self._connection() as conn:
            conn.execute(text(f"{verb} ROLE {self._quote(role)} WITH LOGIN PASSWORD {quote_literal(password)}"))
        log.info("database_role_upserted", role=role, created=created)
        return created

    def create_database(self, database: str, owner: str) -> bool:
        if self.database_exists(database):
            return False
        with self._connection() as conn:
            conn.execute(text(f"CREATE DATABASE {self._quote(database)} OWNER {self._quote(owner)}"))
        log.info("database_created", database=database, owner=owner)
        return True

    def grant_all(self, database: str, role: str) -> None:
        with self._connection() as conn:
            conn.execute(text(f"GRANT ALL PRIVILEGES ON DATABASE {self._quote(database)} TO {self._quote(role)}"))

    def alter_password(self, role: str, password: str) -> None:
        with self._connection() as conn:
            conn.execute(text(f"ALTER ROLE {self._quote(role)} WITH PASSWORD {quote_literal(password)}"))
        log.info("database_password_changed", role=role)

    def alter_passwords(self, passwords: Dict[str, str]) -> None:
        with self._connection() as conn:
            tx_conn = conn.execution_options(isolation_level="READ COMMITTED")
            with tx_conn.begin():
                for role, password in passwords.items():
                    tx_conn.execute(text(f"ALTER ROLE {self._quote(role)} WITH PASSWORD {quote_literal(password)}"))
        log.info("database_passwords_changed", roles=sorted(passwords))


def connect(settings: "Settings", password: str, clock: Optional[Clock] = None) -> PostgresAdmin:
    """Admin connection as the configured admin user with the given password."""
    return PostgresAdmin.connect(
        host=settings.database_admin_host,
        port=settings.database_port,
        username=settings.database_admin_user,
        password=password,
        database=settings.database_admin_database,
        connect_timeout=settings.database_connect_timeout,
        attempts=settings.api_retries,
        retry_delay=settings.api_retry_delay,
        clock=clock,
    )
