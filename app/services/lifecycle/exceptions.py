"""
Exception types raised by lifecycle services.

Job code catches these at unit boundaries (one date, one batch, one event)
and records them as per-unit error strings; only the orchestrator turns an
escaped exception into a job-level failure summary.
"""
from typing import Any, Dict, Optional


class LifecycleError(Exception):
    """Base class for lifecycle errors."""

    code = "LIFECYCLE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ProviderError(LifecycleError):
    """The sports data provider failed or returned an unusable response."""

    code = "PROVIDER_ERROR"


class SchemaMismatchError(LifecycleError):
    """The store rejected a write that references a column it does not have."""

    code = "SCHEMA_MISMATCH"

    def __init__(self, message: str, column: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.column = column


class SettlementError(LifecycleError):
    """Settlement of a queue item could not be completed."""

    code = "SETTLEMENT_ERROR"


class UnknownJobError(LifecycleError):
    """An operator asked for a job name outside the known set."""

    code = "UNKNOWN_JOB"
