"""Run the whole provisioning pipeline over every discovered table."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

from .backend import backend_for
from .capture import grant_access, install_capture, retire_capture
from .catalog import read_catalog
from .errors import PolicyError, StructuralError, ValidationSkip, ViewError
from .policy import AuditPolicy, evaluate_policy, split_qualified_name
from .views import ViewKind, build_view


class TableState(enum.Enum):
    DISCOVERED = "discovered"
    FILTERED = "filtered"
    INSTALLED = "installed"
    RECONSTRUCTED = "reconstructed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class TableOutcome:
    qualified_name: str
    state: TableState = TableState.DISCOVERED
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    skip_reason: str | None = None
    views: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "table": self.qualified_name,
            "state": self.state.value,
            "errors": self.errors,
            "warnings": self.warnings,
            "skip_reason": self.skip_reason,
            "views": self.views,
        }


@dataclass
class ProvisioningReport:
    """Outcome of one provisioning run.

    ``failure_count`` counts each capture failure and each failed view once.
    """

    outcomes: list[TableOutcome] = field(default_factory=list)
    failure_count: int = 0
    cancelled: bool = False
    json_type: str | None = None

    def outcome(self, qualified_name: str) -> TableOutcome:
        for outcome in self.outcomes:
            if outcome.qualified_name == qualified_name:
                return outcome
        raise KeyError(qualified_name)

    def by_state(self, state: TableState) -> list[TableOutcome]:
        return [o for o in self.outcomes if o.state == state]


def run_all(
    conn,
    policy: AuditPolicy,
    *,
    table: str | None = None,
    log=None,
) -> ProvisioningReport:
    """Provision auditing for every table the policy selects.

    Args:
        conn: sqlite3 or psycopg connection.
        policy: Filters and options for this run.
        table: Optional ``schema.table`` name to process alone.
        log: Optional callable receiving progress messages.

    Fatal errors (policy, prerequisites, catalog, shared structures) are
    raised. Errors affecting one table are recorded in the report and the
    run carries on with the next table.
    """
    if log is None:

        def log(message):
            pass

    backend = backend_for(conn)
    policy.validate(backend)
    if policy.lock_timeout is not None:
        backend.set_lock_timeout(policy.lock_timeout)
    backend.check_prerequisites()
    log(f"Prerequisites found on {backend.name}")

    tables = read_catalog(backend, owner=policy.owner)
    if table is not None:
        schema_name, table_name = split_qualified_name(table)
        tables = [
            t for t in tables if t.schema == schema_name and t.name == table_name
        ]
        if not tables:
            raise PolicyError(f"Table {table!r} was not found in the catalog")
    log(f"Discovered {len(tables)} table(s)")

    decisions = evaluate_policy(tables, policy)
    report = ProvisioningReport(json_type=backend.supported_json_type())
    log(f"Change maps stored as {report.json_type}")

    if not policy.views_only:
        try:
            with backend.atomic():
                backend.create_base_structures()
        except backend.errors as exc:
            raise StructuralError(
                f"Could not create the shared audit structures: {exc}"
            ) from exc
        log("Shared audit structures ready")

    report.outcomes = [TableOutcome(t.qualified_name) for t in tables]
    try:
        for descriptor, outcome in zip(tables, report.outcomes):
            _provision_table(
                backend,
                descriptor,
                decisions[descriptor.qualified_name],
                policy,
                report,
                outcome,
                log,
            )
    except KeyboardInterrupt:
        report.cancelled = True
        log("Cancelled, remaining tables were not processed")
    return report


def _provision_table(backend, table, decision, policy, report, outcome, log):
    name = table.qualified_name
    if not decision.provision:
        if not policy.views_only:
            try:
                if retire_capture(backend, table):
                    log(f"{name}: capture disabled")
            except StructuralError as exc:
                outcome.warnings.append(str(exc))
        outcome.state = TableState.SKIPPED
        outcome.skip_reason = "excluded by policy"
        return
    outcome.state = TableState.FILTERED

    if policy.views_only:
        try:
            has_log = backend.log_exists(table)
        except backend.errors as exc:
            outcome.state = TableState.FAILED
            outcome.errors.append(f"Could not find change log of {name}: {exc}")
            report.failure_count += 1
            log(f"{name}: {outcome.errors[-1]}")
            return
        if not has_log:
            outcome.state = TableState.SKIPPED
            outcome.skip_reason = "no change log"
            return
    else:
        try:
            install_capture(backend, table, decision, policy, report.json_type)
        except StructuralError as exc:
            outcome.state = TableState.FAILED
            outcome.errors.append(str(exc))
            report.failure_count += 1
            log(f"{name}: {exc}")
            return
        log(f"{name}: capture installed, enabled={decision.capture_enabled}")
    outcome.state = TableState.INSTALLED

    view_errors = 0
    built = []
    try:
        for kind in ViewKind:
            try:
                build_view(backend, table, kind)
            except ViewError as exc:
                view_errors += 1
                outcome.errors.append(str(exc))
                log(f"{name}: {exc}")
            else:
                built.append(kind.value)
                outcome.views.append(backend.view_relation(table, kind.value))
                log(f"{name}: {kind.value} view built")
    except ValidationSkip as exc:
        outcome.state = TableState.SKIPPED
        outcome.skip_reason = str(exc)
        log(f"{name}: skipped views, {exc}")
    else:
        report.failure_count += view_errors
        outcome.state = (
            TableState.FAILED if view_errors else TableState.RECONSTRUCTED
        )

    if policy.grantee:
        outcome.warnings.extend(grant_access(backend, table, policy.grantee, built))
