"""Exception types raised by the reporting engine and its collaborators."""

from __future__ import annotations


class ReportingError(RuntimeError):
    """Base class for reporting failures that callers should surface."""


class ReportConfigError(ReportingError):
    """Raised for structural problems: no permitted datasets, no views to run."""


class ReportNotFoundError(ReportingError):
    """Raised when a saved report id cannot be resolved."""


class DatasetAccessError(ReportConfigError):
    """Raised when none of a report's datasets are readable by the principal."""
