"""Derived views that reconstruct historical row state from the sparse log.

The log stores only what an operation changed, so the value of a column
at a given entry is found by trying lookups in order until one is
defined:

- ``STORED_BEFORE``: the entry's own ``before_change`` holds the column
- ``STORED_NEW``: the entry's own ``change`` holds the column
- ``NEXT_BEFORE``: the closest later entry for the same primary key whose
  ``before_change`` holds the column, since that is the value the column
  kept until then
- ``LIVE``: the current value in the source table

A lookup is defined when the mapping has the key, so a stored null is a
real value and ends the chain. ``LIVE`` always ends the chain.

``RULES`` gives, for every view and field, the chain to use for each
operation kind.
"""

from __future__ import annotations

import enum

from .errors import ValidationSkip, ViewError
from .models import ChangeLogEntry, Operation, TableDescriptor


class ViewKind(enum.Enum):
    DELTA = "delta"
    SNAPSHOT = "snapshot"
    COMPARE = "compare"


class Lookup(enum.Enum):
    STORED_BEFORE = "B"
    STORED_NEW = "N"
    NEXT_BEFORE = "NB"
    LIVE = "L"


_B = Lookup.STORED_BEFORE
_N = Lookup.STORED_NEW
_NB = Lookup.NEXT_BEFORE
_L = Lookup.LIVE

_I = Operation.INSERT
_U = Operation.UPDATE
_D = Operation.DELETE
_T = Operation.TRUNCATE

# view -> field prefix -> operation -> lookup chain
RULES: dict[ViewKind, dict[str, dict[Operation, tuple[Lookup, ...]]]] = {
    ViewKind.DELTA: {
        "old_": {_I: (), _U: (_B,), _D: (_B,), _T: ()},
        "new_": {_I: (_N, _NB, _L), _U: (_N,), _D: (_N,), _T: (_N,)},
    },
    ViewKind.SNAPSHOT: {
        "": {_I: (_N, _NB, _L), _U: (_N, _NB, _L), _D: (_N,), _T: (_N,)},
    },
    ViewKind.COMPARE: {
        "old_": {_I: (_B,), _U: (_B, _NB, _L), _D: (_B, _NB, _L), _T: (_B, _NB, _L)},
        "new_": {_I: (_N, _NB, _L), _U: (_N, _NB, _L), _D: (_N,), _T: (_N,)},
    },
}

# Entry columns every view carries, as (log column, view column)
_ENTRY_COLUMNS = (
    ("primary_key", "primary_key"),
    ("sparse_time", "audited_sparse_time"),
    ("operation", "audited_operation"),
    ("db_user", "audited_db_user"),
    ("changed_by", "audited_change_agent"),
)


def _grouped_chains(rules: dict[Operation, tuple[Lookup, ...]]) -> list[tuple]:
    """Group operations that share a chain, keeping Operation order."""
    groups: dict[tuple[Lookup, ...], list[Operation]] = {}
    for operation in Operation:
        chain = rules[operation]
        if chain:
            groups.setdefault(chain, []).append(operation)
    return [(chain, operations) for chain, operations in groups.items()]


def build_view_sql(backend, table: TableDescriptor, kind) -> str:
    """Return the SELECT statement behind one derived view of *table*.

    Raises ValidationSkip if the table has no single-column primary key.
    """
    kind = ViewKind(kind)
    pk = table.primary_key
    if pk is None:
        raise ValidationSkip(
            f"{table.qualified_name} has no single-column primary key"
        )

    audit_id = backend.quote(backend.audit_id_column(table))
    select = [f"e.{audit_id}"]
    for log_column, view_column in _ENTRY_COLUMNS:
        if log_column == view_column:
            select.append(f"e.{log_column}")
        else:
            select.append(f"e.{log_column} as {view_column}")

    joins = {backend.live_join(table): None}
    for index, column in enumerate(table.columns):
        terms = {
            _B: backend.stored_term("before_change", column),
            _N: backend.stored_term("change", column),
            _NB: backend.next_before_term(table, column, index),
            _L: backend.live_term(column),
        }
        for prefix, rules in RULES[kind].items():
            whens = []
            for chain, operations in _grouped_chains(rules):
                codes = ", ".join(f"'{op.value}'" for op in operations)
                whens.append(
                    f"when e.operation in ({codes}) then {_chain_sql(chain, terms)}"
                )
                for lookup in chain:
                    if terms[lookup].join:
                        joins[terms[lookup].join] = None
            field = backend.quote(f"{prefix}{column.name}")
            select.append(
                "case\n        " + "\n        ".join(whens) + f"\n    end as {field}"
            )

    return (
        "select\n    "
        + ",\n    ".join(select)
        + f"\nfrom {backend.log_relation(table)} e\n"
        + "\n".join(joins)
    )


def _chain_sql(chain: tuple[Lookup, ...], terms: dict) -> str:
    whens = []
    for lookup in chain:
        term = terms[lookup]
        if term.presence is None:
            if not whens:
                return term.value
            return "case " + " ".join(whens) + f" else {term.value} end"
        whens.append(f"when {term.presence} then {term.value}")
    return "case " + " ".join(whens) + " end"


def build_view(backend, table: TableDescriptor, kind) -> None:
    """Drop and recreate one derived view of *table* in its own transaction."""
    kind = ViewKind(kind)
    sql = build_view_sql(backend, table, kind)
    try:
        with backend.atomic():
            backend.create_view(table, kind.value, sql)
    except backend.errors as exc:
        raise ViewError(
            f"Could not build {kind.value} view of {table.qualified_name}: {exc}"
        ) from exc


def replay(
    kind,
    entries: list[ChangeLogEntry],
    live_row: dict | None,
    columns: list[str] | None = None,
) -> list[dict]:
    """Evaluate the reconstruction rules in Python.

    *entries* are the log entries of one row and *live_row* its current
    state (None if it no longer exists). Returns one dict per entry,
    ordered by id, with the same fields as the derived view and the entry
    id under ``"audit_id"``.

    *columns* defaults to the live row's columns, or to every column seen
    in the entries when there is no live row.
    """
    kind = ViewKind(kind)
    entries = sorted(entries, key=lambda e: e.id)
    if columns is None:
        if live_row is not None:
            columns = list(live_row)
        else:
            columns = []
            for entry in entries:
                for key in list(entry.before_change) + list(entry.change):
                    if key not in columns:
                        columns.append(key)

    missing = object()

    def lookup(position: int, entry: ChangeLogEntry, step: Lookup, column: str):
        if step is Lookup.STORED_BEFORE:
            return entry.before_change.get(column, missing)
        if step is Lookup.STORED_NEW:
            return entry.change.get(column, missing)
        if step is Lookup.NEXT_BEFORE:
            for later in entries[position + 1 :]:
                if later.primary_key == entry.primary_key and column in later.before_change:
                    return later.before_change[column]
            return missing
        return (live_row or {}).get(column)

    result = []
    for position, entry in enumerate(entries):
        row = {
            "audit_id": entry.id,
            "primary_key": entry.primary_key,
            "audited_sparse_time": entry.sparse_time,
            "audited_operation": entry.operation.value,
            "audited_db_user": entry.db_user,
            "audited_change_agent": entry.changed_by,
        }
        for column in columns:
            for prefix, rules in RULES[kind].items():
                value = None
                for step in rules[entry.operation]:
                    found = lookup(position, entry, step, column)
                    if found is not missing:
                        value = found
                        break
                row[f"{prefix}{column}"] = value
        result.append(row)
    return result
