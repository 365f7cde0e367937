"""Datasette plugin exposing reconstructed row history as JSON.

Registers ``GET /-/audit-star/<database>/<table>/<pk>``, returning the rows
of one derived view for one primary key, oldest first. ``?_view=`` picks
``delta``, ``snapshot`` (the default) or ``compare``; ``?_view=log``
returns the raw change log entries instead, newest first.
"""

from __future__ import annotations

import sqlite3

from datasette import hookimpl
from datasette.utils.asgi import Response

from .history import get_row_history, get_view_rows
from .sqlite_backend import SQLiteBackend
from .views import ViewKind


def _coerce_single(value_str: str, col_type: str):
    """Coerce a single PK string value based on column type."""
    upper = col_type.upper()
    if "INT" in upper:
        try:
            return int(value_str)
        except ValueError:
            pass
    elif "REAL" in upper or "FLOAT" in upper or "DOUBLE" in upper:
        try:
            return float(value_str)
        except ValueError:
            pass
    return value_str


async def _row_history_view(datasette, request):
    db_name = request.url_vars["database"]
    table_name = request.url_vars["table"]
    pk_str = request.url_vars["pk"]
    view = request.args.get("_view", ViewKind.SNAPSHOT.value)

    if view != "log" and view not in [kind.value for kind in ViewKind]:
        return Response.json(
            {"ok": False, "error": f"Unknown view: {view}"},
            status=400,
        )

    try:
        db = datasette.get_database(db_name)
    except KeyError:
        return Response.json(
            {"ok": False, "error": f"Database '{db_name}' not found"},
            status=404,
        )

    def fetch(conn):
        backend = SQLiteBackend(conn)
        pks = [
            c for c in backend.table_columns("main", table_name) if c.is_primary_key
        ]
        if len(pks) != 1:
            raise ValueError(
                f"Table '{table_name}' has no single-column primary key."
            )
        pk = _coerce_single(pk_str, pks[0].data_type)
        if view == "log":
            return [entry.to_dict() for entry in get_row_history(backend, table_name, pk)]
        return get_view_rows(backend, table_name, pk, view)

    try:
        rows = await db.execute_fn(fetch)
    except ValueError as e:
        return Response.json({"ok": False, "error": str(e)}, status=404)
    except sqlite3.Error as e:
        return Response.json({"ok": False, "error": str(e)}, status=400)

    return Response.json({"ok": True, "view": view, "rows": rows})


@hookimpl
def register_routes(datasette):
    return [
        (
            r"^/-/audit-star/(?P<database>[^/]+)/(?P<table>[^/]+)/(?P<pk>[^/]+)$",
            _row_history_view,
        ),
    ]
