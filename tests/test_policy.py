"""Tests for the audit policy evaluator."""

import sqlite3

import pytest

from audit_star import AuditPolicy, PolicyError, TableDecision, evaluate_policy
from audit_star.models import ColumnDescriptor, TableDescriptor
from audit_star.policy import split_qualified_name
from audit_star.sqlite_backend import SQLiteBackend


def make_table(schema, name):
    return TableDescriptor(
        schema=schema,
        name=name,
        columns=(ColumnDescriptor("id", "integer", is_primary_key=True),),
    )


@pytest.fixture
def tables():
    return [
        make_table("public", "items"),
        make_table("public", "secrets"),
        make_table("billing", "invoices"),
        make_table("billing_archive", "invoices"),
        make_table("staging", "imports"),
    ]


class TestEvaluatePolicy:
    def test_default_policy_provisions_everything(self, tables):
        decisions = evaluate_policy(tables, AuditPolicy())
        assert set(decisions) == {t.qualified_name for t in tables}
        assert all(d == TableDecision(True, True) for d in decisions.values())

    def test_excluded_table(self, tables):
        decisions = evaluate_policy(
            tables, AuditPolicy(excluded_tables=("public.secrets",))
        )
        assert decisions["public.secrets"] == TableDecision(False, False)
        assert decisions["public.items"].provision

    def test_excluded_schema_matches_by_prefix(self, tables):
        decisions = evaluate_policy(tables, AuditPolicy(excluded_schemas=("billing",)))
        assert not decisions["billing.invoices"].provision
        assert not decisions["billing_archive.invoices"].provision
        assert decisions["staging.imports"].provision

    def test_included_schema_matches_exactly(self, tables):
        decisions = evaluate_policy(tables, AuditPolicy(included_schemas=("billing",)))
        assert decisions["billing.invoices"].provision
        assert not decisions["billing_archive.invoices"].provision
        assert not decisions["public.items"].provision

    def test_included_tables(self, tables):
        decisions = evaluate_policy(
            tables, AuditPolicy(included_tables=("public.items",))
        )
        provisioned = [name for name, d in decisions.items() if d.provision]
        assert provisioned == ["public.items"]

    def test_include_lists_combine(self, tables):
        policy = AuditPolicy(
            included_schemas=("staging",), included_tables=("public.items",)
        )
        decisions = evaluate_policy(tables, policy)
        provisioned = sorted(name for name, d in decisions.items() if d.provision)
        assert provisioned == ["public.items", "staging.imports"]

    def test_exclusion_wins_over_inclusion(self, tables):
        policy = AuditPolicy(
            included_schemas=("public",), excluded_tables=("public.secrets",)
        )
        decisions = evaluate_policy(tables, policy)
        assert decisions["public.items"].provision
        assert not decisions["public.secrets"].provision

    def test_public_is_not_excluded_by_default(self, tables):
        assert evaluate_policy(tables, AuditPolicy())["public.items"].provision

    def test_flags_move_together(self, tables):
        decisions = evaluate_policy(tables, AuditPolicy(excluded_schemas=("pub",)))
        for decision in decisions.values():
            assert decision.provision == decision.capture_enabled


class TestValidate:
    def test_valid_policy(self):
        AuditPolicy(
            included_schemas=("public",),
            excluded_tables=("public.secrets",),
            security="invoker",
            lock_timeout=500,
        ).validate()

    @pytest.mark.parametrize(
        "entry", ["secrets", ".secrets", "public.", "", 42]
    )
    def test_bad_table_entry(self, entry):
        with pytest.raises(PolicyError, match="excluded_tables"):
            AuditPolicy(excluded_tables=(entry,)).validate()

    def test_empty_schema_entry(self):
        with pytest.raises(PolicyError, match="included_schemas"):
            AuditPolicy(included_schemas=("",)).validate()

    def test_unknown_security_mode(self):
        with pytest.raises(PolicyError, match="security"):
            AuditPolicy(security="owner").validate()

    @pytest.mark.parametrize("timeout", [-1, 1.5, "100", True])
    def test_bad_lock_timeout(self, timeout):
        with pytest.raises(PolicyError, match="lock_timeout"):
            AuditPolicy(lock_timeout=timeout).validate()

    def test_owner_on_sqlite_is_rejected(self):
        backend = SQLiteBackend(sqlite3.connect(":memory:"))
        with pytest.raises(PolicyError, match="owner"):
            AuditPolicy(owner="app").validate(backend)

    def test_policy_errors_are_fatal(self):
        assert PolicyError.fatal


class TestSplitQualifiedName:
    def test_splits_on_first_dot(self):
        assert split_qualified_name("public.items") == ("public", "items")
        assert split_qualified_name("public.items.v2") == ("public", "items.v2")

    def test_requires_schema(self):
        with pytest.raises(PolicyError):
            split_qualified_name("items")
