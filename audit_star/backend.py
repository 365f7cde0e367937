"""Engine backends: the seam between audit logic and engine-specific SQL."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass

from .models import ColumnDescriptor, TableDescriptor

# Every Nth log entry of a table carries a wall-clock timestamp.
SPARSE_TIME_INTERVAL = 1000

CLIENT_QUERY_MAX_LENGTH = 1000

NO_DML_MESSAGE = "No common-case updates/deletes/truncates allowed on audit table"


@dataclass(frozen=True)
class Term:
    """SQL for one reconstruction lookup of one column.

    ``presence`` is a boolean expression telling whether the lookup is
    defined (``None`` for lookups that always are), ``value`` the typed
    value, and ``join`` an optional clause the view must add to its FROM.
    """

    value: str
    presence: str | None = None
    join: str | None = None


class Backend:
    """Engine-specific SQL for one database connection.

    Subclasses implement catalog reads, capture DDL, derived view DDL and
    log reads. ``errors`` is the exception class the driver raises.
    """

    name = "abstract"
    default_schema = None
    supports_owners = False
    errors: type[Exception] = Exception
    placeholder = "?"

    def __init__(self, conn):
        self.conn = conn

    def execute(self, sql: str, params=()):
        return self.conn.execute(sql, params)

    # Session

    def atomic(self):
        raise NotImplementedError

    def set_lock_timeout(self, milliseconds: int) -> None:
        raise NotImplementedError

    def check_prerequisites(self) -> None:
        raise NotImplementedError

    def supported_json_type(self) -> str:
        raise NotImplementedError

    # Catalog

    def list_schemas(self) -> list[str]:
        raise NotImplementedError

    def list_tables(self, schema: str, owner: str | None = None) -> list[tuple]:
        """Return ``(table_name, owner)`` pairs for base tables in a schema."""
        raise NotImplementedError

    def table_columns(self, schema: str, table: str) -> list[ColumnDescriptor]:
        raise NotImplementedError

    # Capture structures

    def create_base_structures(self) -> None:
        raise NotImplementedError

    def create_log(self, table: TableDescriptor, json_type: str) -> None:
        raise NotImplementedError

    def install_hook(
        self, table: TableDescriptor, json_type: str, policy, enabled: bool
    ) -> None:
        raise NotImplementedError

    def disable_hook(self, table: TableDescriptor) -> None:
        raise NotImplementedError

    def hook_installed(self, table: TableDescriptor) -> bool:
        raise NotImplementedError

    def log_exists(self, table: TableDescriptor) -> bool:
        raise NotImplementedError

    def open_interval(self, table: TableDescriptor) -> None:
        raise NotImplementedError

    def close_interval(self, table: TableDescriptor) -> None:
        raise NotImplementedError

    def grant_statements(
        self, table: TableDescriptor, grantee: str, views=()
    ) -> list[str]:
        """SQL granting read access on a table's log and the given views."""
        return []

    def set_changed_by(self, schema: str | None, value: str | None):
        """Set the actor recorded by capture hooks, returning the previous one."""
        raise NotImplementedError

    # Derived views

    def quote(self, identifier: str) -> str:
        return '"' + identifier.replace('"', '""') + '"'

    def literal(self, value: str) -> str:
        return "'" + value.replace("'", "''") + "'"

    def source_relation(self, table: TableDescriptor) -> str:
        return f"{self.quote(table.schema)}.{self.quote(table.name)}"

    def log_relation(self, table: TableDescriptor) -> str:
        raise NotImplementedError

    def audit_id_column(self, table: TableDescriptor) -> str:
        return f"{table.name}_audit_id"

    def view_relation(self, table: TableDescriptor, kind: str) -> str:
        raise NotImplementedError

    def stored_term(self, map_column: str, column: ColumnDescriptor) -> Term:
        raise NotImplementedError

    def next_before_term(
        self, table: TableDescriptor, column: ColumnDescriptor, index: int
    ) -> Term:
        raise NotImplementedError

    def live_join(self, table: TableDescriptor) -> str:
        raise NotImplementedError

    def live_term(self, column: ColumnDescriptor) -> Term:
        return Term(value=f"live.{self.quote(column.name)}")

    def create_view(self, table: TableDescriptor, kind: str, select_sql: str) -> None:
        raise NotImplementedError

    # Reading

    def select_log(
        self, table: TableDescriptor, pk=None, limit: int | None = None
    ) -> list[dict]:
        raise NotImplementedError

    def select_run_history(
        self, schema: str | None = None, table: str | None = None
    ) -> list[dict]:
        raise NotImplementedError


def backend_for(conn) -> Backend:
    """Return the backend matching a DB-API connection object."""
    if isinstance(conn, Backend):
        return conn
    if isinstance(conn, sqlite3.Connection):
        from .sqlite_backend import SQLiteBackend

        return SQLiteBackend(conn)
    module = type(conn).__module__
    if module.startswith("psycopg"):
        from .postgres_backend import PostgresBackend

        return PostgresBackend(conn)
    raise TypeError(f"Unsupported connection type: {type(conn).__name__}")
