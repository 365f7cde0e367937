"""Exceptions raised while provisioning row-level auditing."""

from __future__ import annotations


class AuditStarError(Exception):
    """Base class for every provisioning error.

    ``fatal`` errors abort the whole run; the others are recorded against a
    single table in the run report and the run carries on.
    """

    fatal = True


class DiscoveryError(AuditStarError):
    """The schema catalog could not be read."""


class PrereqError(AuditStarError):
    """A required database setting or capability is missing."""


class PolicyError(AuditStarError):
    """The audit policy or configuration file is malformed."""


class StructuralError(AuditStarError):
    """Log tables, guards or capture hooks could not be installed.

    Fatal when raised for the shared base structures, recorded per table
    otherwise.
    """


class ViewError(AuditStarError):
    """One derived view could not be built."""

    fatal = False


class ValidationSkip(AuditStarError):
    """A table has no single-column primary key, so it gets no views.

    This is an explicit skip, not a failure.
    """

    fatal = False
