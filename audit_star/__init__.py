"""Row-level change auditing with a sparse change log and reconstruction views."""

from .capture import changed_by, grant_access, install_capture, retire_capture
from .catalog import read_catalog
from .errors import (
    AuditStarError,
    DiscoveryError,
    PolicyError,
    PrereqError,
    StructuralError,
    ValidationSkip,
    ViewError,
)
from .history import (
    get_history,
    get_row_history,
    get_run_history,
    get_view_rows,
    reconstruct_row,
)
from .models import (
    ChangeLogEntry,
    ColumnDescriptor,
    Operation,
    RunHistoryInterval,
    TableDescriptor,
)
from .orchestrator import ProvisioningReport, TableOutcome, TableState, run_all
from .policy import AuditPolicy, TableDecision, evaluate_policy
from .views import RULES, Lookup, ViewKind, build_view, build_view_sql, replay

__all__ = [
    "run_all",
    "read_catalog",
    "evaluate_policy",
    "install_capture",
    "retire_capture",
    "grant_access",
    "changed_by",
    "build_view",
    "build_view_sql",
    "replay",
    "get_history",
    "get_row_history",
    "get_run_history",
    "get_view_rows",
    "reconstruct_row",
    "AuditPolicy",
    "TableDecision",
    "ProvisioningReport",
    "TableOutcome",
    "TableState",
    "ViewKind",
    "Lookup",
    "RULES",
    "Operation",
    "ColumnDescriptor",
    "TableDescriptor",
    "ChangeLogEntry",
    "RunHistoryInterval",
    "AuditStarError",
    "DiscoveryError",
    "PrereqError",
    "PolicyError",
    "StructuralError",
    "ViewError",
    "ValidationSkip",
]
