"""Install, toggle and retire the write-time capture of a table."""

from __future__ import annotations

from contextlib import contextmanager

from .backend import backend_for
from .errors import StructuralError
from .models import TableDescriptor
from .policy import AuditPolicy, TableDecision


def install_capture(
    backend,
    table: TableDescriptor,
    decision: TableDecision,
    policy: AuditPolicy,
    json_type: str,
) -> None:
    """Create the log of *table* and install its capture hook.

    The log structure and the hook are installed in two transactions. When
    the decision disables capture the hook is installed disabled and any
    open run-history interval is closed; the log itself is always kept.
    """
    try:
        with backend.atomic():
            backend.create_log(table, json_type)
        with backend.atomic():
            backend.install_hook(table, json_type, policy, decision.capture_enabled)
            if decision.capture_enabled:
                backend.open_interval(table)
            else:
                backend.close_interval(table)
    except backend.errors as exc:
        raise StructuralError(
            f"Could not install capture on {table.qualified_name}: {exc}"
        ) from exc


def retire_capture(backend, table: TableDescriptor) -> bool:
    """Disable the hook of a table no longer audited and close its interval.

    Nothing is created. Returns True if a hook was installed.
    """
    try:
        with backend.atomic():
            installed = backend.hook_installed(table)
            if installed:
                backend.disable_hook(table)
            backend.close_interval(table)
    except backend.errors as exc:
        raise StructuralError(
            f"Could not retire capture on {table.qualified_name}: {exc}"
        ) from exc
    return installed


def grant_access(backend, table: TableDescriptor, grantee: str, views=()) -> list[str]:
    """Grant *grantee* read access to the log and views of *table*.

    Each grant is attempted on its own; failures are returned as warning
    messages instead of being raised.
    """
    warnings = []
    for statement in backend.grant_statements(table, grantee, views):
        try:
            with backend.atomic():
                backend.execute(statement)
        except backend.errors as exc:
            warnings.append(f"{statement}: {exc}")
    return warnings


@contextmanager
def changed_by(conn, actor: str, schema: str | None = None):
    """Context manager that attributes captured changes to *actor*.

    Every log entry written by capture hooks while the block runs records
    *actor* in its ``changed_by`` column. The previous value is restored on
    exit.

    Usage::

        with changed_by(conn, "importer"):
            conn.execute("update items set price = 0")

    On SQLite the value is kept per database, so pass *schema* when the
    audited table lives in an attached database.
    """
    backend = backend_for(conn)
    previous = backend.set_changed_by(schema, actor)
    try:
        yield
    finally:
        backend.set_changed_by(schema, previous)
