"""SQLite backend.

SQLite triggers and views may only reference objects in their own
database, so each audited table gets its log table, capture triggers and
derived views in the database (``main`` or an attached one) that holds the
table itself:

- ``_audit_star_raw_{table}`` - the append-only change log
- ``_audit_star_{table}_insert`` / ``_update`` / ``_delete`` - capture triggers
- ``{table}_audit_delta`` / ``_snapshot`` / ``_compare`` - derived views
- ``_audit_star_settings`` - per-database ``changed_by`` value read by triggers

Run history is kept in ``main._audit_star_history``.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from itertools import count

from .backend import NO_DML_MESSAGE, SPARSE_TIME_INTERVAL, Backend, Term
from .errors import PrereqError, ViewError
from .models import ColumnDescriptor, TableDescriptor

_savepoint_counter = count(1)

_HISTORY_TABLE = "_audit_star_history"
_SETTINGS_TABLE = "_audit_star_settings"

_NOW = "strftime('%Y-%m-%d %H:%M:%f', 'now')"

_HOOK_OPERATIONS = ("insert", "update", "delete")

_MAX_REAL = "1.7976931348623157e308"


def log_table_name(table_name: str) -> str:
    return f"_audit_star_raw_{table_name}"


def _hook_trigger_name(table_name: str, operation: str) -> str:
    return f"_audit_star_{table_name}_{operation}"


class SQLiteBackend(Backend):
    name = "sqlite"
    default_schema = "main"
    errors = sqlite3.Error

    @contextmanager
    def atomic(self):
        """Run the block inside a SAVEPOINT, rolling back on any exception."""
        savepoint_name = f"audit_star_sp_{next(_savepoint_counter)}"
        self.conn.execute(f"savepoint [{savepoint_name}]")
        try:
            yield
        except BaseException:
            # Some errors (SQLITE_BUSY, SQLITE_FULL) roll back the whole
            # transaction, taking the savepoint with it.
            if self.conn.in_transaction:
                self.conn.execute(f"rollback to [{savepoint_name}]")
                self.conn.execute(f"release [{savepoint_name}]")
            raise
        else:
            self.conn.execute(f"release [{savepoint_name}]")

    def set_lock_timeout(self, milliseconds: int) -> None:
        self.conn.execute(f"pragma busy_timeout = {int(milliseconds)}")

    def check_prerequisites(self) -> None:
        try:
            self.conn.execute("""select '{"a": 1}' -> '$.a'""").fetchone()
        except sqlite3.OperationalError as exc:
            raise PrereqError(
                f"SQLite {sqlite3.sqlite_version} has no JSON operator "
                f"support (3.38 or later is required): {exc}"
            ) from exc

    def supported_json_type(self) -> str:
        try:
            self.conn.execute("select jsonb('{}')").fetchone()
        except sqlite3.OperationalError:
            return "json"
        return "jsonb"

    # Catalog

    def list_schemas(self) -> list[str]:
        rows = self.conn.execute("pragma database_list").fetchall()
        return [r[1] for r in rows if r[1] != "temp"]

    def list_tables(self, schema: str, owner: str | None = None) -> list[tuple]:
        # table_list tells base tables from views, virtual and shadow tables
        rows = self.conn.execute(f"pragma {self.quote(schema)}.table_list").fetchall()
        names = sorted(
            r[1]
            for r in rows
            if r[2] == "table" and not r[1].startswith(("sqlite_", "_audit_star"))
        )
        return [(name, None) for name in names]

    def table_columns(self, schema: str, table: str) -> list[ColumnDescriptor]:
        rows = self.conn.execute(
            f"pragma {self.quote(schema)}.table_info({self.quote(table)})"
        ).fetchall()
        return [
            ColumnDescriptor(name=r[1], data_type=r[2], is_primary_key=r[5] > 0)
            for r in rows
        ]

    def _has_column(self, schema: str, table: str, column: str) -> bool:
        return any(c.name == column for c in self.table_columns(schema, table))

    def _object_exists(self, schema: str, object_type: str, name: str) -> bool:
        return (
            self.conn.execute(
                f"select count(*) from {self.quote(schema)}.sqlite_master "
                "where type = ? and name = ?",
                (object_type, name),
            ).fetchone()[0]
            > 0
        )

    # Capture structures

    def create_base_structures(self) -> None:
        self.conn.execute(
            f"""create table if not exists main.[{_HISTORY_TABLE}] (
    audit_history_id integer primary key,
    schema_name text not null,
    table_name text not null,
    start_time text not null,
    end_time text
)"""
        )
        self.conn.execute(
            f"create unique index if not exists main.[{_HISTORY_TABLE}_open] "
            f"on [{_HISTORY_TABLE}] (schema_name, table_name) "
            f"where end_time is null"
        )

    def _ensure_settings(self, schema: str) -> None:
        self.conn.execute(
            f"create table if not exists {self.quote(schema)}.[{_SETTINGS_TABLE}] "
            f"(name text primary key, value text)"
        )
        self.conn.execute(
            f"insert or ignore into {self.quote(schema)}.[{_SETTINGS_TABLE}] "
            f"(name, value) values ('changed_by', '')"
        )

    def set_changed_by(self, schema: str | None, value: str | None):
        schema = schema or self.default_schema
        self._ensure_settings(schema)
        previous = self.conn.execute(
            f"select value from {self.quote(schema)}.[{_SETTINGS_TABLE}] "
            f"where name = 'changed_by'"
        ).fetchone()[0]
        self.conn.execute(
            f"update {self.quote(schema)}.[{_SETTINGS_TABLE}] "
            f"set value = ? where name = 'changed_by'",
            (value,),
        )
        return previous

    def create_log(self, table: TableDescriptor, json_type: str) -> None:
        schema = self.quote(table.schema)
        log_name = log_table_name(table.name)
        log = self.quote(log_name)
        audit_id = self.quote(self.audit_id_column(table))
        json_decl = "blob" if json_type == "jsonb" else "text"

        self._ensure_settings(table.schema)
        self.conn.execute(
            f"""create table if not exists {schema}.{log} (
    {audit_id} integer primary key,
    sparse_time text,
    changed_by text,
    db_user text,
    client_addr text,
    client_port integer,
    client_query text,
    operation text not null,
    before_change {json_decl},
    change {json_decl},
    primary_key
)"""
        )

        # Logs created by older versions may lack some columns
        for column, decl in (
            ("sparse_time", "text"),
            ("changed_by", "text"),
            ("db_user", "text"),
            ("client_addr", "text"),
            ("client_port", "integer"),
            ("client_query", "text"),
            ("before_change", json_decl),
            ("change", json_decl),
            ("primary_key", ""),
        ):
            if not self._has_column(table.schema, log_name, column):
                self.conn.execute(
                    f"alter table {schema}.{log} add column "
                    f"{self.quote(column)} {decl}".rstrip()
                )

        for suffix, event in (("no_update", "update"), ("no_delete", "delete")):
            self.conn.execute(
                f"""create trigger if not exists {schema}.{self.quote(f'{log_name}_{suffix}')}
before {event} on {log}
begin
    select raise(abort, {self.literal(NO_DML_MESSAGE)});
end"""
            )

        self.conn.execute(
            f"create index if not exists {schema}.{self.quote(f'{log_name}_primary_key')} "
            f"on {log} (primary_key, {audit_id})"
        )
        self.conn.execute(
            f"create index if not exists {schema}.{self.quote(f'{log_name}_sparse_time')} "
            f"on {log} (sparse_time) where sparse_time is not null"
        )

    def _row_object_sql(
        self,
        columns: tuple[ColumnDescriptor, ...],
        row: str,
        json_type: str,
        changed_only: bool = False,
    ) -> str:
        """Build a JSON object of ``row``'s columns, optionally only changed ones.

        json_group_object over a union keeps SQL NULLs as JSON nulls
        (unlike json_patch) and is not bound by the function argument limit.
        Blobs cannot be held by JSON, so they are stored as hex text.

        The JSON printer keeps only 15 significant digits of a REAL, so
        finite reals are printed with 17 and parsed back with ``json()`` in
        the outer query (subtypes do not survive the subquery).
        """
        group_fn = "jsonb_group_object" if json_type == "jsonb" else "json_group_object"
        selects = []
        for col in columns:
            ref = f"{row}.{self.quote(col.name)}"
            finite_real = (
                f"(case when typeof({ref}) = 'real' "
                f"then abs({ref}) <= {_MAX_REAL} else 0 end)"
            )
            value = (
                f"case when typeof({ref}) = 'blob' then hex({ref}) "
                f"when {finite_real} then printf('%!.17g', {ref}) "
                f"else {ref} end"
            )
            select = (
                f"select {self.literal(col.name)} as k, {value} as v, "
                f"{finite_real} as r"
            )
            if changed_only:
                name = self.quote(col.name)
                select += f" where OLD.{name} is not NEW.{name}"
            selects.append(select)
        union = "\n            union all ".join(selects)
        value = "case when r then json(v) else v end"
        return f"(select {group_fn}(k, {value}) from (\n            {union}\n        ))"

    def _log_insert_sql(
        self,
        table: TableDescriptor,
        operation: str,
        before_sql: str,
        change_sql: str,
        pk_sql: str,
    ) -> str:
        log = self.quote(log_table_name(table.name))
        audit_id = self.quote(self.audit_id_column(table))
        next_id = f"(select coalesce(max({audit_id}), 0) + 1 from {log})"
        return f"""insert into {log} ({audit_id}, sparse_time, changed_by, operation, before_change, change, primary_key)
    values (
        {next_id},
        case when {next_id} % {SPARSE_TIME_INTERVAL} = 0 then {_NOW} end,
        (select value from [{_SETTINGS_TABLE}] where name = 'changed_by'),
        '{operation}',
        {before_sql},
        {change_sql},
        {pk_sql}
    );"""

    def hook_sql(self, table: TableDescriptor, json_type: str) -> dict[str, str]:
        """Return the CREATE TRIGGER statement for each captured operation."""
        schema = self.quote(table.schema)
        source = self.quote(table.name)
        pk = table.primary_key

        def pk_ref(row: str) -> str:
            return f"{row}.{self.quote(pk.name)}" if pk is not None else "null"

        bodies = {
            "insert": self._log_insert_sql(table, "I", "null", "null", pk_ref("NEW")),
            "update": self._log_insert_sql(
                table,
                "U",
                self._row_object_sql(table.columns, "OLD", json_type, changed_only=True),
                self._row_object_sql(table.columns, "NEW", json_type, changed_only=True),
                pk_ref("NEW"),
            ),
            "delete": self._log_insert_sql(
                table,
                "D",
                self._row_object_sql(table.columns, "OLD", json_type),
                "null",
                pk_ref("OLD"),
            ),
        }
        return {
            operation: f"""create trigger {schema}.{self.quote(_hook_trigger_name(table.name, operation))}
after {operation} on {source}
begin
    {body}
end"""
            for operation, body in bodies.items()
        }

    def install_hook(
        self, table: TableDescriptor, json_type: str, policy, enabled: bool
    ) -> None:
        # Triggers are always rebuilt so they follow column changes. SQLite
        # cannot disable a trigger, so a disabled hook is simply absent.
        self.disable_hook(table)
        if not enabled:
            return
        for sql in self.hook_sql(table, json_type).values():
            self.conn.execute(sql)

    def disable_hook(self, table: TableDescriptor) -> None:
        for operation in _HOOK_OPERATIONS:
            name = _hook_trigger_name(table.name, operation)
            self.conn.execute(
                f"drop trigger if exists {self.quote(table.schema)}.{self.quote(name)}"
            )

    def hook_installed(self, table: TableDescriptor) -> bool:
        return any(
            self._object_exists(
                table.schema, "trigger", _hook_trigger_name(table.name, operation)
            )
            for operation in _HOOK_OPERATIONS
        )

    def log_exists(self, table: TableDescriptor) -> bool:
        return self._object_exists(table.schema, "table", log_table_name(table.name))

    def open_interval(self, table: TableDescriptor) -> None:
        self.conn.execute(
            f"insert into main.[{_HISTORY_TABLE}] (schema_name, table_name, start_time) "
            f"select ?, ?, {_NOW} where not exists ("
            f"select 1 from main.[{_HISTORY_TABLE}] "
            f"where schema_name = ? and table_name = ? and end_time is null)",
            (table.schema, table.name, table.schema, table.name),
        )

    def close_interval(self, table: TableDescriptor) -> None:
        if not self._object_exists("main", "table", _HISTORY_TABLE):
            return
        self.conn.execute(
            f"update main.[{_HISTORY_TABLE}] set end_time = {_NOW} "
            f"where schema_name = ? and table_name = ? and end_time is null",
            (table.schema, table.name),
        )

    # Derived views

    def log_relation(self, table: TableDescriptor) -> str:
        # View bodies resolve names in the view's own database
        return self.quote(log_table_name(table.name))

    def view_relation(self, table: TableDescriptor, kind: str) -> str:
        return f"{self.quote(table.schema)}.{self.quote(f'{table.name}_audit_{kind}')}"

    def _json_path(self, column: ColumnDescriptor) -> str:
        if '"' in column.name:
            raise ViewError(
                f"Column {column.name!r} cannot be addressed in a JSON path"
            )
        return self.literal(f'$."{column.name}"')

    def stored_term(self, map_column: str, column: ColumnDescriptor) -> Term:
        path = self._json_path(column)
        return Term(
            presence=f"e.{map_column} -> {path} is not null",
            value=f"e.{map_column} ->> {path}",
        )

    def next_before_term(
        self, table: TableDescriptor, column: ColumnDescriptor, index: int
    ) -> Term:
        path = self._json_path(column)
        audit_id = self.quote(self.audit_id_column(table))
        lookup = (
            f"(select n.before_change -> {path} from {self.log_relation(table)} n "
            f"where n.primary_key = e.primary_key "
            f"and n.{audit_id} > e.{audit_id} "
            f"and n.before_change -> {path} is not null "
            f"order by n.{audit_id} limit 1)"
        )
        return Term(presence=f"{lookup} is not null", value=f"{lookup} ->> '$'")

    def live_join(self, table: TableDescriptor) -> str:
        pk = self.quote(table.primary_key.name)
        return f"left join {self.quote(table.name)} live on live.{pk} = e.primary_key"

    def create_view(self, table: TableDescriptor, kind: str, select_sql: str) -> None:
        relation = self.view_relation(table, kind)
        self.conn.execute(f"drop view if exists {relation}")
        self.conn.execute(f"create view {relation} as\n{select_sql}")

    # Reading

    def select_log(
        self, table: TableDescriptor, pk=None, limit: int | None = None
    ) -> list[dict]:
        audit_id = self.quote(self.audit_id_column(table))
        sql = (
            f"select {audit_id} as id, operation, primary_key, sparse_time, "
            f"changed_by, db_user, client_addr, client_port, client_query, "
            f"json(before_change) as before_change, json(change) as change "
            f"from {self.quote(table.schema)}.{self.quote(log_table_name(table.name))}"
        )
        params: list = []
        if pk is not None:
            sql += " where primary_key = ?"
            params.append(pk)
        sql += f" order by {audit_id} desc"
        if limit is not None:
            sql += f" limit {int(limit)}"

        cursor = self.conn.execute(sql, params)
        col_names = [desc[0] for desc in cursor.description]
        result = []
        for row in cursor.fetchall():
            row_dict = dict(zip(col_names, row))
            for key in ("before_change", "change"):
                if row_dict[key] is not None:
                    row_dict[key] = json.loads(row_dict[key])
            result.append(row_dict)
        return result

    def select_run_history(
        self, schema: str | None = None, table: str | None = None
    ) -> list[dict]:
        if not self._object_exists("main", "table", _HISTORY_TABLE):
            return []
        sql = (
            f"select schema_name, table_name, start_time, end_time "
            f"from main.[{_HISTORY_TABLE}]"
        )
        conditions = []
        params: list = []
        if schema is not None:
            conditions.append("schema_name = ?")
            params.append(schema)
        if table is not None:
            conditions.append("table_name = ?")
            params.append(table)
        if conditions:
            sql += f" where {' and '.join(conditions)}"
        sql += " order by audit_history_id"
        cursor = self.conn.execute(sql, params)
        col_names = [desc[0] for desc in cursor.description]
        return [dict(zip(col_names, row)) for row in cursor.fetchall()]
