"""Read change logs, derived views and run history back into Python."""

from __future__ import annotations

from .backend import backend_for
from .models import ChangeLogEntry, Operation, RunHistoryInterval, TableDescriptor
from .views import ViewKind, replay


def _audited_table(backend, table_name: str, schema: str | None) -> TableDescriptor:
    schema = schema or backend.default_schema
    table = TableDescriptor(
        schema=schema,
        name=table_name,
        columns=tuple(backend.table_columns(schema, table_name)),
    )
    if not backend.log_exists(table):
        raise ValueError(
            f"Auditing is not enabled for table {table.qualified_name!r} "
            f"(no change log exists)."
        )
    return table


def _entry(row: dict) -> ChangeLogEntry:
    return ChangeLogEntry(
        id=row["id"],
        operation=Operation(row["operation"]),
        primary_key=row["primary_key"],
        sparse_time=row["sparse_time"],
        changed_by=row["changed_by"],
        db_user=row["db_user"],
        client_addr=row["client_addr"],
        client_port=row["client_port"],
        client_query=row["client_query"],
        before_change=row["before_change"] or {},
        change=row["change"] or {},
    )


def get_history(
    conn,
    table_name: str,
    *,
    schema: str | None = None,
    limit: int | None = None,
) -> list[ChangeLogEntry]:
    """Return the change log entries of a table, newest first.

    Args:
        conn: sqlite3 or psycopg connection.
        table_name: Name of the audited table.
        schema: Schema (SQLite: database name) holding the table.
        limit: Maximum number of entries to return.
    """
    backend = backend_for(conn)
    table = _audited_table(backend, table_name, schema)
    return [_entry(row) for row in backend.select_log(table, limit=limit)]


def get_row_history(
    conn,
    table_name: str,
    pk,
    *,
    schema: str | None = None,
    limit: int | None = None,
) -> list[ChangeLogEntry]:
    """Return the change log entries of one row, newest first.

    Same format as :func:`get_history`, filtered by primary key value.
    """
    backend = backend_for(conn)
    table = _audited_table(backend, table_name, schema)
    return [_entry(row) for row in backend.select_log(table, pk=pk, limit=limit)]


def get_run_history(
    conn, *, schema: str | None = None, table: str | None = None
) -> list[RunHistoryInterval]:
    """Return the capture intervals recorded for every table, oldest first."""
    backend = backend_for(conn)
    return [
        RunHistoryInterval(
            schema=row["schema_name"],
            table=row["table_name"],
            start_time=row["start_time"],
            end_time=row["end_time"],
        )
        for row in backend.select_run_history(schema=schema, table=table)
    ]


def get_view_rows(
    conn,
    table_name: str,
    pk,
    kind=ViewKind.SNAPSHOT,
    *,
    schema: str | None = None,
) -> list[dict]:
    """Return the rows of one derived view for one primary key, oldest first."""
    backend = backend_for(conn)
    kind = ViewKind(kind)
    table = _audited_table(backend, table_name, schema)
    audit_id = backend.quote(backend.audit_id_column(table))
    if backend.name == "postgresql":
        pk = str(pk)
    cursor = backend.execute(
        f"select * from {backend.view_relation(table, kind.value)} "
        f"where primary_key = {backend.placeholder} order by {audit_id}",
        (pk,),
    )
    col_names = [desc[0] for desc in cursor.description]
    return [dict(zip(col_names, row)) for row in cursor.fetchall()]


def reconstruct_row(
    conn,
    table_name: str,
    pk,
    kind=ViewKind.SNAPSHOT,
    *,
    schema: str | None = None,
) -> list[dict]:
    """Rebuild the history of one row in Python, without the derived views.

    Returns the same fields as :func:`get_view_rows`, with the entry id
    under ``"audit_id"``.
    """
    backend = backend_for(conn)
    table = _audited_table(backend, table_name, schema)
    pk_column = table.primary_key
    if pk_column is None:
        raise ValueError(
            f"Table {table.qualified_name!r} has no single-column primary key."
        )
    entries = [_entry(row) for row in backend.select_log(table, pk=pk)]
    cursor = backend.execute(
        f"select * from {backend.source_relation(table)} "
        f"where {backend.quote(pk_column.name)} = {backend.placeholder}",
        (pk,),
    )
    col_names = [desc[0] for desc in cursor.description]
    row = cursor.fetchone()
    live_row = dict(zip(col_names, row)) if row is not None else None
    return replay(kind, entries, live_row, columns=table.column_names)
