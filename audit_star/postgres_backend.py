"""PostgreSQL backend, using psycopg 3 and the hstore extension.

Layout for a source table ``<schema>.<table>``:

- ``"<schema>_audit_raw"."<table>_audit"`` - change log
- ``"<schema>_audit_raw"."audit_<schema>_<table>"()`` - capture function
- ``row_audit_star`` / ``statement_audit_star`` - triggers on the source table
- ``"<schema>_audit"."<table>_audit_<kind>"`` - derived views
- ``audit.audit_history`` and ``audit.no_dml_on_audit_table()`` - shared
"""

from __future__ import annotations

from contextlib import contextmanager

import psycopg

from .backend import (
    CLIENT_QUERY_MAX_LENGTH,
    NO_DML_MESSAGE,
    SPARSE_TIME_INTERVAL,
    Backend,
    Term,
)
from .errors import PrereqError
from .models import ColumnDescriptor, TableDescriptor

CHANGED_BY_SETTING = "audit_star.changed_by"

ROW_TRIGGER = "row_audit_star"
STATEMENT_TRIGGER = "statement_audit_star"


class PostgresBackend(Backend):
    name = "postgresql"
    default_schema = "public"
    supports_owners = True
    errors = psycopg.Error
    placeholder = "%s"

    def execute(self, sql: str, params=None):
        # Without parameters psycopg sends the query as is, so a literal %
        # needs no escaping.
        return self.conn.execute(sql, params or None)

    @contextmanager
    def atomic(self):
        with self.conn.transaction():
            yield

    def set_lock_timeout(self, milliseconds: int) -> None:
        self.execute(
            "select set_config('lock_timeout', %s, false)", (f"{int(milliseconds)}ms",)
        )

    def check_prerequisites(self) -> None:
        try:
            with self.atomic():
                self.execute(f"select current_setting('{CHANGED_BY_SETTING}')")
        except psycopg.Error as exc:
            raise PrereqError(
                f"Setting {CHANGED_BY_SETTING} is not defined; run "
                f"ALTER DATABASE ... SET {CHANGED_BY_SETTING} = '' first ({exc})"
            ) from exc
        row = self.execute(
            "select 1 from pg_extension where extname = 'hstore'"
        ).fetchone()
        if row is None:
            raise PrereqError("The hstore extension is not installed")

    def supported_json_type(self) -> str:
        row = self.execute("select 1 from pg_type where typname = 'jsonb'").fetchone()
        return "jsonb" if row is not None else "json"

    # Names

    def raw_schema(self, table: TableDescriptor) -> str:
        return self.quote(f"{table.schema}_audit_raw")

    def view_schema(self, table: TableDescriptor) -> str:
        return self.quote(f"{table.schema}_audit")

    def log_relation(self, table: TableDescriptor) -> str:
        return f"{self.raw_schema(table)}.{self.quote(f'{table.name}_audit')}"

    def function_relation(self, table: TableDescriptor) -> str:
        return (
            f"{self.raw_schema(table)}."
            f"{self.quote(f'audit_{table.schema}_{table.name}')}"
        )

    def view_relation(self, table: TableDescriptor, kind: str) -> str:
        return f"{self.view_schema(table)}.{self.quote(f'{table.name}_audit_{kind}')}"

    # Catalog

    def list_schemas(self) -> list[str]:
        rows = self.execute(
            "select schema_name from information_schema.schemata "
            "where schema_name not like '%audit%' "
            "and schema_name not like 'pg\\_%' "
            "and schema_name <> 'information_schema' "
            "order by schema_name"
        ).fetchall()
        return [r[0] for r in rows]

    def list_tables(self, schema: str, owner: str | None = None) -> list[tuple]:
        sql = (
            "select c.relname, r.rolname from pg_class c "
            "join pg_namespace n on n.oid = c.relnamespace "
            "join pg_roles r on r.oid = c.relowner "
            "where c.relkind = 'r' and not c.relisshared and n.nspname = %s"
        )
        params = [schema]
        if owner is not None:
            sql += " and r.rolname = %s"
            params.append(owner)
        sql += " order by c.relname"
        return [(r[0], r[1]) for r in self.execute(sql, params).fetchall()]

    def table_columns(self, schema: str, table: str) -> list[ColumnDescriptor]:
        rows = self.execute(
            "select a.attname, format_type(a.atttypid, a.atttypmod), "
            "exists (select 1 from pg_index i where i.indrelid = a.attrelid "
            "and i.indisprimary and a.attnum = any(i.indkey)) "
            "from pg_attribute a "
            "where a.attrelid = %s::regclass and a.attnum > 0 "
            "and not a.attisdropped "
            "order by a.attnum",
            (f"{self.quote(schema)}.{self.quote(table)}",),
        ).fetchall()
        return [
            ColumnDescriptor(name=r[0], data_type=r[1], is_primary_key=bool(r[2]))
            for r in rows
        ]

    # Capture structures

    def create_base_structures(self) -> None:
        self.execute("create schema if not exists audit")
        self.execute(
            """create table if not exists audit.audit_history (
    audit_history_id serial primary key,
    schema_name text not null,
    table_name text not null,
    start_time timestamptz not null,
    end_time timestamptz,
    unique (schema_name, table_name, start_time)
)"""
        )
        self.execute(
            "create unique index if not exists audit_history_one_open "
            "on audit.audit_history (schema_name, table_name) "
            "where end_time is null"
        )
        self.execute(
            f"""create or replace function audit.no_dml_on_audit_table()
returns trigger as $$
begin
    raise exception {self.literal(NO_DML_MESSAGE)};
    return null;
end;
$$ language plpgsql"""
        )

    def create_log(self, table: TableDescriptor, json_type: str) -> None:
        log = self.log_relation(table)
        audit_id = self.quote(self.audit_id_column(table))
        self.execute(f"create schema if not exists {self.raw_schema(table)}")
        self.execute(
            f"""create table if not exists {log} (
    {audit_id} bigserial primary key,
    sparse_time timestamptz,
    changed_by text,
    db_user text,
    client_addr inet,
    client_port integer,
    client_query text,
    operation varchar(1) not null,
    before_change {json_type},
    change {json_type},
    primary_key text
)"""
        )
        # Logs created by older versions may lack some columns
        for column, decl in (
            ("sparse_time", "timestamptz"),
            ("changed_by", "text"),
            ("db_user", "text"),
            ("client_addr", "inet"),
            ("client_port", "integer"),
            ("client_query", "text"),
            ("primary_key", "text"),
        ):
            self.execute(f"alter table {log} add column if not exists {column} {decl}")
        self.execute(f"alter table {log} alter column client_query drop not null")
        # Older logs may carry a not-null changed_at and varchar(50) actor columns
        types = self._log_column_types(table)
        if "changed_at" in types:
            self.execute(f"alter table {log} alter column changed_at drop not null")
        for column in ("changed_by", "db_user"):
            if types.get(column, "text") != "text":
                self.execute(f"alter table {log} alter column {column} type text")

        self.execute(f"drop trigger if exists no_dml_on_audit_table on {log}")
        self.execute(
            f"create trigger no_dml_on_audit_table before update or delete on {log} "
            f"for each row execute procedure audit.no_dml_on_audit_table()"
        )
        self.execute(f"drop trigger if exists no_truncate_on_audit on {log}")
        self.execute(
            f"create trigger no_truncate_on_audit before truncate on {log} "
            f"for each statement execute procedure audit.no_dml_on_audit_table()"
        )

        self.execute(
            f"create index if not exists {self.quote(f'index_{table.name}_on_primary_key')} "
            f"on {log} (primary_key, {audit_id})"
        )
        self.execute(
            f"create index if not exists {self.quote(f'index_{table.name}_on_sparse_time')} "
            f"on {log} (sparse_time) where sparse_time is not null"
        )

    def _log_column_types(self, table: TableDescriptor) -> dict[str, str]:
        rows = self.execute(
            "select column_name, data_type from information_schema.columns "
            "where table_schema = %s and table_name = %s",
            (f"{table.schema}_audit_raw", f"{table.name}_audit"),
        ).fetchall()
        return {name: data_type for name, data_type in rows}

    def _sequence_name(self, table: TableDescriptor) -> str:
        row = self.execute(
            "select pg_get_serial_sequence(%s, %s)",
            (self.log_relation(table), self.audit_id_column(table)),
        ).fetchone()
        if row is not None and row[0] is not None:
            return row[0]
        sequence = f"{self.raw_schema(table)}.{self.quote(f'{table.name}_audit_seq')}"
        self.execute(f"create sequence if not exists {sequence}")
        return sequence

    def function_sql(
        self, table: TableDescriptor, json_type: str, policy, sequence: str
    ) -> str:
        """Return the CREATE FUNCTION statement of the capture hook."""
        log = self.log_relation(table)
        audit_id = self.quote(self.audit_id_column(table))
        to_json = f"hstore_to_{json_type}"
        client_query = (
            f"substring(current_query(), 1, {CLIENT_QUERY_MAX_LENGTH})"
            if policy.log_client_query
            else "null"
        )

        def insert(operation: str, before: str, change: str) -> str:
            return (
                f"insert into {log} ({audit_id}, sparse_time, changed_by, db_user, "
                f"client_addr, client_port, client_query, operation, "
                f"before_change, change, primary_key)\n"
                f"        values (v_audit_id, v_sparse_time, "
                f"current_setting('{CHANGED_BY_SETTING}', true), session_user::text, "
                f"inet_client_addr(), inet_client_port(), {client_query}, "
                f"'{operation}', {before}, {change}, v_pk);"
            )

        return f"""create or replace function {self.function_relation(table)}()
returns trigger as $$
declare
    v_audit_id bigint;
    v_sparse_time timestamptz;
    v_pk text;
begin
    v_audit_id := nextval({self.literal(sequence)});
    if v_audit_id % {SPARSE_TIME_INTERVAL} = 0 then
        v_sparse_time := now();
    end if;
    if TG_OP = 'UPDATE' then
        if TG_NARGS > 0 then
            v_pk := hstore(NEW) -> TG_ARGV[0];
        end if;
        {insert('U', f'{to_json}(hstore(OLD) - hstore(NEW))', f'{to_json}(hstore(NEW) - hstore(OLD))')}
    elsif TG_OP = 'INSERT' then
        if TG_NARGS > 0 then
            v_pk := hstore(NEW) -> TG_ARGV[0];
        end if;
        {insert('I', 'null', 'null')}
    elsif TG_OP = 'DELETE' then
        if TG_NARGS > 0 then
            v_pk := hstore(OLD) -> TG_ARGV[0];
        end if;
        {insert('D', f'{to_json}(hstore(OLD))', 'null')}
    elsif TG_OP = 'TRUNCATE' then
        {insert('T', 'null', 'null')}
    end if;
    return null;
end;
$$ language plpgsql
security {policy.security}"""

    def install_hook(
        self, table: TableDescriptor, json_type: str, policy, enabled: bool
    ) -> None:
        source = self.source_relation(table)
        function = self.function_relation(table)
        sequence = self._sequence_name(table)
        self.execute(self.function_sql(table, json_type, policy, sequence))

        args = self.literal(table.primary_key.name) if table.primary_key else ""
        self.execute(f"drop trigger if exists {ROW_TRIGGER} on {source}")
        self.execute(f"drop trigger if exists {STATEMENT_TRIGGER} on {source}")
        self.execute(
            f"create trigger {ROW_TRIGGER} after insert or update or delete on {source} "
            f"for each row execute procedure {function}({args})"
        )
        self.execute(
            f"create trigger {STATEMENT_TRIGGER} after truncate on {source} "
            f"for each statement execute procedure {function}({args})"
        )
        action = "enable" if enabled else "disable"
        self.execute(f"alter table {source} {action} trigger {ROW_TRIGGER}")
        self.execute(f"alter table {source} {action} trigger {STATEMENT_TRIGGER}")

    def disable_hook(self, table: TableDescriptor) -> None:
        source = self.source_relation(table)
        self.execute(f"alter table {source} disable trigger {ROW_TRIGGER}")
        self.execute(f"alter table {source} disable trigger {STATEMENT_TRIGGER}")

    def hook_installed(self, table: TableDescriptor) -> bool:
        row = self.execute(
            "select count(*) from pg_trigger "
            "where tgrelid = %s::regclass and tgname in (%s, %s)",
            (self.source_relation(table), ROW_TRIGGER, STATEMENT_TRIGGER),
        ).fetchone()
        return row[0] == 2

    def log_exists(self, table: TableDescriptor) -> bool:
        row = self.execute(
            "select to_regclass(%s) is not null", (self.log_relation(table),)
        ).fetchone()
        return bool(row[0])

    def open_interval(self, table: TableDescriptor) -> None:
        self.execute(
            "insert into audit.audit_history (schema_name, table_name, start_time) "
            "select %s, %s, now() where not exists ("
            "select 1 from audit.audit_history "
            "where schema_name = %s and table_name = %s and end_time is null)",
            (table.schema, table.name, table.schema, table.name),
        )

    def close_interval(self, table: TableDescriptor) -> None:
        self.execute(
            "update audit.audit_history set end_time = now() "
            "where schema_name = %s and table_name = %s and end_time is null",
            (table.schema, table.name),
        )

    def grant_statements(
        self, table: TableDescriptor, grantee: str, views=()
    ) -> list[str]:
        role = self.quote(grantee)
        statements = [
            f"grant usage on schema {self.raw_schema(table)} to {role}",
            f"grant select on {self.log_relation(table)} to {role}",
            f"grant usage on schema {self.view_schema(table)} to {role}",
        ]
        for kind in views:
            statements.append(
                f"grant select on {self.view_relation(table, kind)} to {role}"
            )
        return statements

    def set_changed_by(self, schema: str | None, value: str | None):
        previous = self.execute(
            f"select current_setting('{CHANGED_BY_SETTING}', true)"
        ).fetchone()[0]
        self.execute(
            "select set_config(%s, %s, false)", (CHANGED_BY_SETTING, value or "")
        )
        return previous

    # Derived views

    def stored_term(self, map_column: str, column: ColumnDescriptor) -> Term:
        key = self.literal(column.name)
        return Term(
            presence=f"e.{map_column} -> {key} is not null",
            value=f"(e.{map_column} ->> {key})::{column.data_type}",
        )

    def next_before_term(
        self, table: TableDescriptor, column: ColumnDescriptor, index: int
    ) -> Term:
        key = self.literal(column.name)
        audit_id = self.quote(self.audit_id_column(table))
        alias = f"nb_{index}"
        join = (
            f"left join lateral (\n"
            f"    select n.before_change -> {key} as value\n"
            f"    from {self.log_relation(table)} n\n"
            f"    where n.primary_key = e.primary_key\n"
            f"    and n.{audit_id} > e.{audit_id}\n"
            f"    and n.before_change -> {key} is not null\n"
            f"    order by n.{audit_id}\n"
            f"    limit 1\n"
            f") {alias} on true"
        )
        return Term(
            presence=f"{alias}.value is not null",
            value=f"({alias}.value #>> '{{}}')::{column.data_type}",
            join=join,
        )

    def live_join(self, table: TableDescriptor) -> str:
        pk = table.primary_key
        return (
            f"left join {self.source_relation(table)} live "
            f"on live.{self.quote(pk.name)} = e.primary_key::{pk.data_type}"
        )

    def create_view(self, table: TableDescriptor, kind: str, select_sql: str) -> None:
        relation = self.view_relation(table, kind)
        self.execute(f"create schema if not exists {self.view_schema(table)}")
        self.execute(f"drop view if exists {relation}")
        self.execute(f"create view {relation} as\n{select_sql}")

    # Reading

    def select_log(
        self, table: TableDescriptor, pk=None, limit: int | None = None
    ) -> list[dict]:
        audit_id = self.quote(self.audit_id_column(table))
        sql = (
            f"select {audit_id} as id, operation, primary_key, sparse_time, "
            f"changed_by, db_user, client_addr::text, client_port, client_query, "
            f"before_change, change from {self.log_relation(table)}"
        )
        params = []
        if pk is not None:
            sql += " where primary_key = %s"
            params.append(str(pk))
        sql += f" order by {audit_id} desc"
        if limit is not None:
            sql += f" limit {int(limit)}"
        cursor = self.execute(sql, params)
        col_names = [desc[0] for desc in cursor.description]
        return [dict(zip(col_names, row)) for row in cursor.fetchall()]

    def select_run_history(
        self, schema: str | None = None, table: str | None = None
    ) -> list[dict]:
        exists = self.execute(
            "select to_regclass('audit.audit_history') is not null"
        ).fetchone()[0]
        if not exists:
            return []
        sql = (
            "select schema_name, table_name, start_time, end_time "
            "from audit.audit_history"
        )
        conditions = []
        params = []
        if schema is not None:
            conditions.append("schema_name = %s")
            params.append(schema)
        if table is not None:
            conditions.append("table_name = %s")
            params.append(table)
        if conditions:
            sql += f" where {' and '.join(conditions)}"
        sql += " order by audit_history_id"
        cursor = self.execute(sql, params)
        col_names = [desc[0] for desc in cursor.description]
        return [dict(zip(col_names, row)) for row in cursor.fetchall()]
