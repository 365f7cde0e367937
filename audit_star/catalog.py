"""Read schemas, tables and columns from the live database."""

from __future__ import annotations

from .errors import DiscoveryError
from .models import TableDescriptor


def read_catalog(backend, owner: str | None = None) -> list[TableDescriptor]:
    """Describe every auditable base table, sorted by schema then table.

    Audit infrastructure and system objects are never returned. Any engine
    error is re-raised as DiscoveryError.
    """
    try:
        tables = []
        for schema in sorted(backend.list_schemas()):
            for name, table_owner in backend.list_tables(schema, owner):
                columns = tuple(backend.table_columns(schema, name))
                tables.append(
                    TableDescriptor(
                        schema=schema, name=name, columns=columns, owner=table_owner
                    )
                )
    except backend.errors as exc:
        raise DiscoveryError(f"Could not read the schema catalog: {exc}") from exc
    tables.sort(key=lambda t: (t.schema, t.name))
    return tables
