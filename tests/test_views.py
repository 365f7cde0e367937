"""Tests for the delta, snapshot and compare reconstruction views."""

import sqlite3

import pytest

from audit_star import (
    RULES,
    AuditPolicy,
    ChangeLogEntry,
    Lookup,
    Operation,
    ValidationSkip,
    ViewError,
    ViewKind,
    build_view_sql,
    changed_by,
    get_row_history,
    replay,
    run_all,
)
from audit_star.models import ColumnDescriptor, TableDescriptor
from audit_star.sqlite_backend import SQLiteBackend


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def conn():
    db = sqlite3.connect(":memory:")
    db.row_factory = sqlite3.Row
    db.execute(
        """
        CREATE TABLE items (
            id INTEGER PRIMARY KEY,
            name TEXT,
            price FLOAT
        )
        """
    )
    run_all(db, AuditPolicy())
    yield db
    db.close()


@pytest.fixture
def history(conn):
    """Insert, rename, reprice and finally delete item 1; item 2 stays live."""
    conn.execute("INSERT INTO items (id, name, price) VALUES (1, 'Widget', 10.0)")
    conn.execute("INSERT INTO items (id, name, price) VALUES (2, 'Gizmo', 3.0)")
    conn.execute("UPDATE items SET name = 'Gadget' WHERE id = 1")
    conn.execute("UPDATE items SET price = 12.0 WHERE id = 1")
    conn.execute("DELETE FROM items WHERE id = 1")
    return conn


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def view_rows(conn, kind, pk=None):
    sql = f"SELECT * FROM items_audit_{kind}"
    params = []
    if pk is not None:
        sql += " WHERE primary_key = ?"
        params.append(pk)
    rows = conn.execute(sql + " ORDER BY items_audit_id", params).fetchall()
    return [dict(r) for r in rows]


def columns_of(rows, *names):
    return [tuple(r[n] for n in names) for r in rows]


def items_table():
    return TableDescriptor(
        schema="main",
        name="items",
        columns=(
            ColumnDescriptor("id", "INTEGER", is_primary_key=True),
            ColumnDescriptor("name", "TEXT"),
            ColumnDescriptor("price", "FLOAT"),
        ),
    )


# ---------------------------------------------------------------------------
# Rule table
# ---------------------------------------------------------------------------


class TestRules:
    def test_every_view_covers_every_operation(self):
        for kind in ViewKind:
            for rules in RULES[kind].values():
                assert set(rules) == set(Operation)

    def test_live_is_always_last(self):
        for kind in ViewKind:
            for rules in RULES[kind].values():
                for chain in rules.values():
                    if Lookup.LIVE in chain:
                        assert chain[-1] is Lookup.LIVE

    def test_field_prefixes(self):
        assert list(RULES[ViewKind.DELTA]) == ["old_", "new_"]
        assert list(RULES[ViewKind.SNAPSHOT]) == [""]
        assert list(RULES[ViewKind.COMPARE]) == ["old_", "new_"]


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------


class TestBuildViewSql:
    def test_views_exist_after_run(self, conn):
        names = {
            r[0]
            for r in conn.execute("SELECT name FROM sqlite_master WHERE type = 'view'")
        }
        assert names == {"items_audit_delta", "items_audit_snapshot", "items_audit_compare"}

    def test_view_columns(self, conn):
        common = [
            "items_audit_id",
            "primary_key",
            "audited_sparse_time",
            "audited_operation",
            "audited_db_user",
            "audited_change_agent",
        ]
        for kind, fields in [
            ("snapshot", ["id", "name", "price"]),
            ("delta", ["old_id", "new_id", "old_name", "new_name", "old_price", "new_price"]),
            ("compare", ["old_id", "new_id", "old_name", "new_name", "old_price", "new_price"]),
        ]:
            cursor = conn.execute(f"SELECT * FROM items_audit_{kind}")
            assert [d[0] for d in cursor.description] == common + fields

    def test_accepts_kind_as_string(self, conn):
        backend = SQLiteBackend(conn)
        assert build_view_sql(backend, items_table(), "snapshot") == build_view_sql(
            backend, items_table(), ViewKind.SNAPSHOT
        )

    def test_requires_single_column_primary_key(self, conn):
        table = TableDescriptor(
            schema="main",
            name="user_roles",
            columns=(
                ColumnDescriptor("user_id", "INTEGER", is_primary_key=True),
                ColumnDescriptor("role_id", "INTEGER", is_primary_key=True),
            ),
        )
        with pytest.raises(ValidationSkip, match="single-column primary key"):
            build_view_sql(SQLiteBackend(conn), table, ViewKind.SNAPSHOT)

    def test_validation_skip_is_not_fatal(self):
        assert not ValidationSkip.fatal

    def test_unaddressable_column_raises_view_error(self, conn):
        table = TableDescriptor(
            schema="main",
            name="weird",
            columns=(
                ColumnDescriptor("id", "INTEGER", is_primary_key=True),
                ColumnDescriptor('say "hi"', "TEXT"),
            ),
        )
        with pytest.raises(ViewError):
            build_view_sql(SQLiteBackend(conn), table, ViewKind.DELTA)

    def test_operations_sharing_a_chain_are_grouped(self, conn):
        sql = build_view_sql(SQLiteBackend(conn), items_table(), ViewKind.SNAPSHOT)
        assert "when e.operation in ('I', 'U') then" in sql
        assert "when e.operation in ('D', 'T') then" in sql


# ---------------------------------------------------------------------------
# Reconstruction
# ---------------------------------------------------------------------------


class TestSnapshot:
    def test_insert_then_updates_while_live(self, conn):
        conn.execute("INSERT INTO items (id, name, price) VALUES (1, 'Widget', 10.0)")
        conn.execute("UPDATE items SET name = 'Gadget' WHERE id = 1")
        conn.execute("UPDATE items SET price = 12.0 WHERE id = 1")
        rows = view_rows(conn, "snapshot", 1)
        assert columns_of(rows, "audited_operation", "id", "name", "price") == [
            ("I", 1, "Widget", 10.0),
            ("U", 1, "Gadget", 10.0),
            ("U", 1, "Gadget", 12.0),
        ]

    def test_history_ending_in_delete(self, history):
        rows = view_rows(history, "snapshot", 1)
        assert columns_of(rows, "audited_operation", "id", "name", "price") == [
            ("I", 1, "Widget", 10.0),
            ("U", 1, "Gadget", 10.0),
            ("U", 1, "Gadget", 12.0),
            ("D", None, None, None),
        ]

    def test_update_recovers_unchanged_primary_key(self, conn):
        conn.execute("INSERT INTO items (id, name, price) VALUES (7, 'Widget', 1.0)")
        conn.execute("UPDATE items SET name = 'Gadget' WHERE id = 7")
        [_, update] = view_rows(conn, "snapshot", 7)
        assert update["id"] == 7

    def test_rows_of_other_keys_are_independent(self, history):
        rows = view_rows(history, "snapshot", 2)
        assert columns_of(rows, "id", "name", "price") == [(2, "Gizmo", 3.0)]

    def test_stored_null_stops_the_chain(self, conn):
        conn.execute("INSERT INTO items (id, name, price) VALUES (3, NULL, 1.0)")
        conn.execute("UPDATE items SET name = 'Named' WHERE id = 3")
        insert, update = view_rows(conn, "snapshot", 3)
        assert insert["name"] is None
        assert update["name"] == "Named"

    def test_changed_by_is_exposed(self, conn):
        with changed_by(conn, "alice"):
            conn.execute("INSERT INTO items (id, name, price) VALUES (1, 'Widget', 1.0)")
        [row] = view_rows(conn, "snapshot", 1)
        assert row["audited_change_agent"] == "alice"


class TestDelta:
    def test_delta(self, history):
        rows = view_rows(history, "delta", 1)
        assert columns_of(rows, "audited_operation", "old_name", "new_name") == [
            ("I", None, "Widget"),
            ("U", "Widget", "Gadget"),
            ("U", None, None),
            ("D", "Gadget", None),
        ]
        assert columns_of(rows, "old_price", "new_price") == [
            (None, 10.0),
            (None, None),
            (10.0, 12.0),
            (12.0, None),
        ]

    def test_insert_new_values_are_the_full_row(self, history):
        insert = view_rows(history, "delta", 1)[0]
        assert (insert["new_id"], insert["old_id"]) == (1, None)


class TestCompare:
    def test_compare(self, history):
        rows = view_rows(history, "compare", 1)
        assert columns_of(rows, "audited_operation", "old_name", "new_name") == [
            ("I", None, "Widget"),
            ("U", "Widget", "Gadget"),
            ("U", "Gadget", "Gadget"),
            ("D", "Gadget", None),
        ]
        assert columns_of(rows, "old_price", "new_price") == [
            (None, 10.0),
            (10.0, 10.0),
            (10.0, 12.0),
            (12.0, None),
        ]

    def test_compare_update_recovers_both_sides(self, conn):
        conn.execute("INSERT INTO items (id, name, price) VALUES (1, 'Widget', 5.0)")
        conn.execute("UPDATE items SET name = 'Gadget' WHERE id = 1")
        update = view_rows(conn, "compare", 1)[1]
        assert (update["old_id"], update["new_id"]) == (1, 1)
        assert (update["old_price"], update["new_price"]) == (5.0, 5.0)

    def test_deleted_real_is_exact(self, conn):
        conn.execute("INSERT INTO items (id, price) VALUES (1, ?)", (0.1 + 0.2,))
        conn.execute("DELETE FROM items WHERE id = 1")
        delete = view_rows(conn, "compare", 1)[-1]
        assert delete["old_price"] == 0.1 + 0.2
        assert delete["new_price"] is None


class TestSchemaChanges:
    def test_added_column_appears_after_rerun(self, conn):
        conn.execute("INSERT INTO items (id, name, price) VALUES (1, 'Widget', 1.0)")
        conn.execute("ALTER TABLE items ADD COLUMN colour TEXT")
        conn.execute("UPDATE items SET colour = 'red' WHERE id = 1")
        run_all(conn, AuditPolicy())
        conn.execute("UPDATE items SET colour = 'blue' WHERE id = 1")
        rows = view_rows(conn, "snapshot", 1)
        # The update made before the rerun was captured without the new column
        assert columns_of(rows, "audited_operation", "colour") == [
            ("I", "red"),
            ("U", "red"),
            ("U", "blue"),
        ]

    def test_history_survives_rerun(self, history):
        before = view_rows(history, "compare")
        run_all(history, AuditPolicy())
        assert view_rows(history, "compare") == before


# ---------------------------------------------------------------------------
# Python replay
# ---------------------------------------------------------------------------


def entry(id, operation, before=None, change=None, pk=1):
    return ChangeLogEntry(
        id=id,
        operation=operation,
        primary_key=pk,
        before_change=before or {},
        change=change or {},
    )


class TestReplay:
    def test_snapshot(self):
        entries = [
            entry(2, Operation.UPDATE, {"name": "Widget"}, {"name": "Gadget"}),
            entry(1, Operation.INSERT),
        ]
        rows = replay("snapshot", entries, {"id": 1, "name": "Gadget", "price": 4})
        assert [(r["audit_id"], r["id"], r["name"], r["price"]) for r in rows] == [
            (1, 1, "Widget", 4),
            (2, 1, "Gadget", 4),
        ]

    def test_stored_null_is_a_value(self):
        entries = [
            entry(1, Operation.INSERT),
            entry(2, Operation.UPDATE, {"name": None}, {"name": "B"}),
        ]
        rows = replay(ViewKind.SNAPSHOT, entries, {"id": 1, "name": "B"})
        assert rows[0]["name"] is None

    def test_deleted_row_without_live_state(self):
        entries = [
            entry(1, Operation.INSERT),
            entry(2, Operation.DELETE, {"id": 1, "name": "Widget"}),
        ]
        rows = replay(ViewKind.COMPARE, entries, None)
        assert [(r["old_name"], r["new_name"]) for r in rows] == [
            (None, "Widget"),
            ("Widget", None),
        ]

    def test_truncate(self):
        rows = replay(
            ViewKind.COMPARE,
            [entry(1, Operation.TRUNCATE, pk=None)],
            None,
            columns=["id"],
        )
        assert (rows[0]["old_id"], rows[0]["new_id"]) == (None, None)

    def test_next_before_ignores_other_keys(self):
        entries = [
            entry(1, Operation.INSERT, pk=1),
            entry(2, Operation.UPDATE, {"name": "Other"}, {"name": "X"}, pk=2),
        ]
        rows = replay(ViewKind.SNAPSHOT, entries, {"id": 1, "name": "Live"})
        assert rows[0]["name"] == "Live"

    def test_replay_matches_views(self, history):
        entries = get_row_history(history, "items", 1)
        for kind in ViewKind:
            expected = view_rows(history, kind.value, 1)
            for row in expected:
                row["audit_id"] = row.pop("items_audit_id")
            replayed = replay(kind, entries, None, columns=["id", "name", "price"])
            assert replayed == expected
