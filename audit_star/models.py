"""Typed records shared by the catalog reader, capture installer and views."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


class Operation(enum.Enum):
    """Kind of DML operation recorded in a change log entry.

    The value is the single-letter code stored in the log's
    ``operation`` column.
    """

    INSERT = "I"
    UPDATE = "U"
    DELETE = "D"
    TRUNCATE = "T"


@dataclass(frozen=True)
class ColumnDescriptor:
    name: str
    data_type: str
    is_primary_key: bool = False


@dataclass(frozen=True)
class TableDescriptor:
    """A base table discovered in the catalog during one run."""

    schema: str
    name: str
    columns: tuple[ColumnDescriptor, ...]
    owner: str | None = None

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}"

    @property
    def primary_key(self) -> ColumnDescriptor | None:
        """The primary key column, only when exactly one column forms the key."""
        pks = [c for c in self.columns if c.is_primary_key]
        if len(pks) == 1:
            return pks[0]
        return None

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]


@dataclass
class ChangeLogEntry:
    """One decoded row of a table's change log.

    ``before_change`` and ``change`` are empty dicts when the log stored
    no mapping for the operation.
    """

    id: int
    operation: Operation
    primary_key: object = None
    sparse_time: object = None
    changed_by: str | None = None
    db_user: str | None = None
    client_addr: str | None = None
    client_port: int | None = None
    client_query: str | None = None
    before_change: dict = field(default_factory=dict)
    change: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operation": self.operation.name.lower(),
            "primary_key": self.primary_key,
            "sparse_time": _isoformat(self.sparse_time),
            "changed_by": self.changed_by,
            "db_user": self.db_user,
            "client_addr": self.client_addr,
            "client_port": self.client_port,
            "client_query": self.client_query,
            "before_change": self.before_change,
            "change": self.change,
        }


@dataclass
class RunHistoryInterval:
    """The period during which a table's capture hook was enabled."""

    schema: str
    table: str
    start_time: object
    end_time: object = None

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    def to_dict(self) -> dict:
        return {
            "schema": self.schema,
            "table": self.table,
            "start_time": _isoformat(self.start_time),
            "end_time": _isoformat(self.end_time),
        }


def _isoformat(value):
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value
