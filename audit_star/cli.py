"""Command-line interface for audit-star."""

from __future__ import annotations

import argparse
import dataclasses
import json
import sys

from .backend import backend_for
from .config import connect, load_config
from .errors import AuditStarError, ValidationSkip
from .history import (
    get_history,
    get_row_history,
    get_run_history,
    get_view_rows,
    reconstruct_row,
)
from .models import TableDescriptor
from .orchestrator import run_all
from .policy import AuditPolicy
from .views import ViewKind, build_view_sql


def _coerce_value(s: str):
    """Try to coerce a string to int, then float, otherwise keep as str."""
    try:
        return int(s)
    except ValueError:
        pass
    try:
        return float(s)
    except ValueError:
        pass
    return s


def _fail(message: str):
    print(f"Error: {message}", file=sys.stderr)
    sys.exit(1)


def _open(args):
    """Return ``(connection, policy)`` for the global options."""
    try:
        config = load_config(args.config) if args.config else None
        conn = connect(config, args.database)
    except AuditStarError as e:
        _fail(str(e))
    policy = config.policy if config is not None else AuditPolicy()
    return conn, policy


def _dump(data):
    json.dump(data, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")


def cmd_run(args):
    conn, policy = _open(args)
    if args.views_only:
        policy = dataclasses.replace(policy, views_only=True)
    log = None
    if args.verbose:

        def log(message):
            print(message, file=sys.stderr)

    try:
        report = run_all(conn, policy, table=args.table, log=log)
    except AuditStarError as e:
        _fail(str(e))
    finally:
        conn.close()

    for outcome in report.outcomes:
        line = f"{outcome.qualified_name}: {outcome.state.value}"
        if outcome.skip_reason:
            line += f" ({outcome.skip_reason})"
        print(line, file=sys.stderr)
        for message in outcome.errors:
            print(f"  error: {message}", file=sys.stderr)
        for message in outcome.warnings:
            print(f"  warning: {message}", file=sys.stderr)
    if args.json:
        _dump([outcome.to_dict() for outcome in report.outcomes])
    print(f"{report.failure_count} failure(s).", file=sys.stderr)
    if report.cancelled:
        print("Cancelled.", file=sys.stderr)
        sys.exit(130)


def cmd_history(args):
    conn, _ = _open(args)
    try:
        entries = get_history(conn, args.table, schema=args.schema, limit=args.n)
        _dump([entry.to_dict() for entry in entries])
    except ValueError as e:
        _fail(str(e))
    finally:
        conn.close()


def cmd_row_history(args):
    conn, _ = _open(args)
    pk = _coerce_value(args.pk)
    try:
        if args.view:
            _dump(get_view_rows(conn, args.table, pk, args.view, schema=args.schema))
        elif args.replay:
            _dump(reconstruct_row(conn, args.table, pk, args.replay, schema=args.schema))
        else:
            entries = get_row_history(
                conn, args.table, pk, schema=args.schema, limit=args.n
            )
            _dump([entry.to_dict() for entry in entries])
    except ValueError as e:
        _fail(str(e))
    finally:
        conn.close()


def cmd_run_history(args):
    conn, _ = _open(args)
    try:
        intervals = get_run_history(conn, schema=args.schema, table=args.table)
        _dump([interval.to_dict() for interval in intervals])
    finally:
        conn.close()


def cmd_view_sql(args):
    conn, _ = _open(args)
    try:
        backend = backend_for(conn)
        schema = args.schema or backend.default_schema
        columns = tuple(backend.table_columns(schema, args.table))
        if not columns:
            _fail(f"Table {schema}.{args.table} does not exist")
        table = TableDescriptor(schema=schema, name=args.table, columns=columns)
        sys.stdout.write(build_view_sql(backend, table, args.kind) + "\n")
    except (ValidationSkip, AuditStarError) as e:
        _fail(str(e))
    finally:
        conn.close()


def cli(args=None):
    parser = argparse.ArgumentParser(
        prog="audit-star",
        description="Row-level change auditing with reconstruction views.",
    )
    parser.add_argument("--config", default=None, help="Path to an audit.yml file.")
    parser.add_argument(
        "--database",
        default=None,
        help="Path to a SQLite database file (overrides the config file).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    view_kinds = [kind.value for kind in ViewKind]

    # run
    p_run = subparsers.add_parser(
        "run", help="Install capture and build views for every selected table."
    )
    p_run.add_argument(
        "--table", default=None, help="Only process this schema.table."
    )
    p_run.add_argument(
        "--views-only",
        action="store_true",
        help="Only rebuild the derived views, leave capture untouched.",
    )
    p_run.add_argument(
        "--json", action="store_true", help="Write the run report as JSON to stdout."
    )
    p_run.add_argument(
        "-v", "--verbose", action="store_true", help="Print progress messages."
    )
    p_run.set_defaults(func=cmd_run)

    # history
    p_history = subparsers.add_parser(
        "history", help="Show change log entries for a table."
    )
    p_history.add_argument("table", help="Table name.")
    p_history.add_argument("--schema", default=None, help="Schema of the table.")
    p_history.add_argument(
        "-n", type=int, default=None, help="Maximum number of entries to show."
    )
    p_history.set_defaults(func=cmd_history)

    # row-history
    p_row_history = subparsers.add_parser(
        "row-history", help="Show change log entries for a specific row."
    )
    p_row_history.add_argument("table", help="Table name.")
    p_row_history.add_argument("pk", help="Primary key value.")
    p_row_history.add_argument("--schema", default=None, help="Schema of the table.")
    p_row_history.add_argument(
        "-n", type=int, default=None, help="Maximum number of entries to show."
    )
    row_mode = p_row_history.add_mutually_exclusive_group()
    row_mode.add_argument(
        "--view", choices=view_kinds, default=None, help="Read this derived view."
    )
    row_mode.add_argument(
        "--replay",
        choices=view_kinds,
        default=None,
        help="Reconstruct this view in Python from the raw log.",
    )
    p_row_history.set_defaults(func=cmd_row_history)

    # run-history
    p_run_history = subparsers.add_parser(
        "run-history", help="Show when capture was enabled for each table."
    )
    p_run_history.add_argument("--schema", default=None, help="Filter by schema.")
    p_run_history.add_argument("--table", default=None, help="Filter by table name.")
    p_run_history.set_defaults(func=cmd_run_history)

    # view-sql
    p_view_sql = subparsers.add_parser(
        "view-sql", help="Output the SELECT behind one derived view."
    )
    p_view_sql.add_argument("table", help="Table name.")
    p_view_sql.add_argument("kind", choices=view_kinds, help="View kind.")
    p_view_sql.add_argument("--schema", default=None, help="Schema of the table.")
    p_view_sql.set_defaults(func=cmd_view_sql)

    parsed = parser.parse_args(args)
    parsed.func(parsed)
