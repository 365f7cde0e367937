"""Tests for audit.yml loading and connection setup."""

import sqlite3

import pytest

from audit_star import AuditPolicy, PolicyError
from audit_star.config import AuditConfig, connect, load_config, parse_config


def write(tmp_path, text):
    path = tmp_path / "audit.yml"
    path.write_text(text)
    return path


class TestLoadConfig:
    def test_full_config(self, tmp_path):
        path = write(
            tmp_path,
            """
host: db.example.com
port: 5432
db_name: shop
username: auditor
password: secret
ssl_mode: require
included_schemas: [sales]
excluded_tables: [sales.sessions]
excluded_schemas: [tmp_]
owner: app
grantee: reporting
security: INVOKER
log_client_query: true
lock_timeout: 2000
""",
        )
        config = load_config(path)
        assert config.host == "db.example.com"
        assert config.port == 5432
        assert config.db_name == "shop"
        assert config.username == "auditor"
        assert config.password == "secret"
        assert config.ssl_mode == "require"
        assert config.database is None
        assert config.policy == AuditPolicy(
            included_schemas=("sales",),
            excluded_tables=("sales.sessions",),
            excluded_schemas=("tmp_",),
            owner="app",
            grantee="reporting",
            security="invoker",
            log_client_query=True,
            lock_timeout=2000,
        )

    def test_empty_file_gives_defaults(self, tmp_path):
        config = load_config(write(tmp_path, ""))
        assert config == AuditConfig(policy=AuditPolicy())

    def test_sqlite_database(self, tmp_path):
        config = load_config(write(tmp_path, "database: shop.db\nviews_only: true\n"))
        assert config.database == "shop.db"
        assert config.policy.views_only

    def test_missing_file(self, tmp_path):
        with pytest.raises(PolicyError, match="Could not read config file"):
            load_config(tmp_path / "missing.yml")

    def test_malformed_yaml(self, tmp_path):
        with pytest.raises(PolicyError, match="Could not read config file"):
            load_config(write(tmp_path, "included_schemas: [sales\n"))

    def test_not_a_mapping(self, tmp_path):
        with pytest.raises(PolicyError, match="mapping"):
            load_config(write(tmp_path, "- sales\n- hr\n"))


class TestParseConfig:
    def test_unknown_key(self):
        with pytest.raises(PolicyError, match="Unknown config key"):
            parse_config({"include_schemas": ["sales"]})

    @pytest.mark.parametrize(
        "data,message",
        [
            ({"included_tables": "sales.orders"}, "must be a list"),
            ({"included_tables": ["orders"]}, "schema.table"),
            ({"log_client_query": "yes"}, "true or false"),
            ({"owner": 12}, "role name"),
            ({"security": "sometimes"}, "security must be one of"),
            ({"lock_timeout": -5}, "lock_timeout"),
            ({"lock_timeout": "5s"}, "lock_timeout"),
            ({"port": "5432"}, "port must be an integer"),
        ],
    )
    def test_invalid_values(self, data, message):
        with pytest.raises(PolicyError, match=message):
            parse_config(data)

    def test_connection_values_are_strings(self):
        config = parse_config({"password": 1234, "db_name": 2024})
        assert config.password == "1234"
        assert config.db_name == "2024"


class TestConnect:
    def test_sqlite_path(self, tmp_path):
        conn = connect(database=str(tmp_path / "data.db"))
        try:
            assert isinstance(conn, sqlite3.Connection)
            assert conn.isolation_level is None
        finally:
            conn.close()

    def test_database_from_config(self, tmp_path):
        config = AuditConfig(policy=AuditPolicy(), database=str(tmp_path / "data.db"))
        conn = connect(config)
        try:
            assert isinstance(conn, sqlite3.Connection)
        finally:
            conn.close()

    def test_nothing_to_connect_to(self):
        with pytest.raises(PolicyError, match="No database given"):
            connect()
