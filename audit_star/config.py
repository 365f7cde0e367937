"""Load ``audit.yml`` and open the database it describes."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .errors import PolicyError
from .policy import AuditPolicy

_CONNECTION_KEYS = ("database", "host", "port", "db_name", "username", "password", "ssl_mode")
_LIST_KEYS = ("included_schemas", "included_tables", "excluded_schemas", "excluded_tables")
_BOOL_KEYS = ("log_client_query", "views_only")
_STRING_KEYS = ("owner", "grantee", "security")


@dataclass(frozen=True)
class AuditConfig:
    """Connection settings plus the audit policy read from a config file.

    ``database`` selects SQLite; otherwise the PostgreSQL settings are used.
    """

    policy: AuditPolicy
    database: str | None = None
    host: str | None = None
    port: int | None = None
    db_name: str | None = None
    username: str | None = None
    password: str | None = None
    ssl_mode: str | None = None


def load_config(path) -> AuditConfig:
    """Read an ``audit.yml`` file, raising PolicyError if it is malformed."""
    path = Path(path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise PolicyError(f"Could not read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise PolicyError(f"Config file must contain a mapping: {path}")
    return parse_config(data)


def parse_config(data: dict[str, Any]) -> AuditConfig:
    known = set(_CONNECTION_KEYS + _LIST_KEYS + _BOOL_KEYS + _STRING_KEYS)
    known.add("lock_timeout")
    unknown = sorted(set(data) - known)
    if unknown:
        raise PolicyError(f"Unknown config key(s): {', '.join(unknown)}")

    policy_args: dict[str, Any] = {}
    for key in _LIST_KEYS:
        value = data.get(key) or []
        if not isinstance(value, list):
            raise PolicyError(f"{key} must be a list, got {value!r}")
        policy_args[key] = tuple(value)
    for key in _BOOL_KEYS:
        value = data.get(key, False)
        if not isinstance(value, bool):
            raise PolicyError(f"{key} must be true or false, got {value!r}")
        policy_args[key] = value
    for key in ("owner", "grantee"):
        value = data.get(key)
        if value is not None and not isinstance(value, str):
            raise PolicyError(f"{key} must be a role name, got {value!r}")
        policy_args[key] = value or None
    security = data.get("security", "definer")
    if not isinstance(security, str):
        raise PolicyError(f"security must be a string, got {security!r}")
    policy_args["security"] = security.lower()
    policy_args["lock_timeout"] = data.get("lock_timeout")

    policy = AuditPolicy(**policy_args)
    policy.validate()

    port = data.get("port")
    if port is not None and (isinstance(port, bool) or not isinstance(port, int)):
        raise PolicyError(f"port must be an integer, got {port!r}")
    connection = {key: data.get(key) for key in _CONNECTION_KEYS if key != "port"}
    for key, value in connection.items():
        if value is not None and not isinstance(value, str):
            connection[key] = str(value)
    return AuditConfig(policy=policy, port=port, **connection)


def connect(config: AuditConfig | None = None, database: str | None = None):
    """Open an autocommit connection for *database* or the config's settings.

    A SQLite path wins over PostgreSQL settings.
    """
    if database is None and config is not None:
        database = config.database
    if database is not None:
        return sqlite3.connect(database, isolation_level=None)
    if config is None:
        raise PolicyError("No database given: pass a SQLite path or a config file")

    import psycopg
    from psycopg.conninfo import make_conninfo

    conninfo = make_conninfo(
        host=config.host,
        port=config.port,
        dbname=config.db_name,
        user=config.username,
        password=config.password,
        sslmode=config.ssl_mode,
    )
    return psycopg.connect(conninfo, autocommit=True)
