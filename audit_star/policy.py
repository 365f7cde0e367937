"""Decide which tables are audited, and how."""

from __future__ import annotations

from dataclasses import dataclass

from .errors import PolicyError
from .models import TableDescriptor

SECURITY_MODES = ("definer", "invoker")


@dataclass(frozen=True)
class AuditPolicy:
    """Filters and options for one provisioning run.

    Schema exclusions match by prefix, table entries are exact
    ``schema.table`` names. When either include list is non-empty, only
    matching tables are provisioned; exclusions always win.
    """

    included_schemas: tuple[str, ...] = ()
    included_tables: tuple[str, ...] = ()
    excluded_schemas: tuple[str, ...] = ()
    excluded_tables: tuple[str, ...] = ()
    owner: str | None = None
    grantee: str | None = None
    security: str = "definer"
    log_client_query: bool = False
    views_only: bool = False
    lock_timeout: int | None = None

    def validate(self, backend=None) -> None:
        """Raise PolicyError if the policy cannot be applied as written."""
        for key in ("included_schemas", "excluded_schemas"):
            for schema in getattr(self, key):
                if not isinstance(schema, str) or not schema:
                    raise PolicyError(f"{key}: invalid schema entry {schema!r}")
        for key in ("included_tables", "excluded_tables"):
            for name in getattr(self, key):
                _split_qualified(name, key)
        if self.security not in SECURITY_MODES:
            raise PolicyError(
                f"security must be one of {', '.join(SECURITY_MODES)}, "
                f"got {self.security!r}"
            )
        if self.lock_timeout is not None and (
            isinstance(self.lock_timeout, bool)
            or not isinstance(self.lock_timeout, int)
            or self.lock_timeout < 0
        ):
            raise PolicyError(
                f"lock_timeout must be a non-negative number of milliseconds, "
                f"got {self.lock_timeout!r}"
            )
        if self.owner is not None and (
            not isinstance(self.owner, str) or not self.owner
        ):
            raise PolicyError(f"owner must be a role name, got {self.owner!r}")
        if self.owner and backend is not None and not backend.supports_owners:
            raise PolicyError(
                f"owner filter {self.owner!r} cannot be applied: "
                f"{backend.name} tables have no owner"
            )

    def excludes(self, table: TableDescriptor) -> bool:
        if any(table.schema.startswith(prefix) for prefix in self.excluded_schemas):
            return True
        return table.qualified_name in self.excluded_tables

    def includes(self, table: TableDescriptor) -> bool:
        if not self.included_schemas and not self.included_tables:
            return True
        return (
            table.schema in self.included_schemas
            or table.qualified_name in self.included_tables
        )


@dataclass(frozen=True)
class TableDecision:
    provision: bool
    capture_enabled: bool


def evaluate_policy(
    tables: list[TableDescriptor], policy: AuditPolicy
) -> dict[str, TableDecision]:
    """Apply include and exclude rules to every catalog table.

    Returns a decision per qualified table name.
    """
    result = {}
    for table in tables:
        provision = policy.includes(table) and not policy.excludes(table)
        result[table.qualified_name] = TableDecision(
            provision=provision, capture_enabled=provision
        )
    return result


def split_qualified_name(name: str) -> tuple[str, str]:
    """Split ``schema.table`` on the first dot."""
    return _split_qualified(name, "table")


def _split_qualified(name, key: str) -> tuple[str, str]:
    if not isinstance(name, str):
        raise PolicyError(f"{key}: expected 'schema.table', got {name!r}")
    schema, dot, table = name.partition(".")
    if not dot or not schema or not table:
        raise PolicyError(f"{key}: expected 'schema.table', got {name!r}")
    return schema, table
