from __future__ import annotations


class ReconciliationError(Exception):
    """Base class for errors raised by the reconciliation engine."""


class ValidationError(ReconciliationError, ValueError):
    """Bad input: rule weights, missing notes or reason. Never retried."""


class NotFoundError(ReconciliationError, LookupError):
    pass


class ConflictError(ReconciliationError):
    """The item or record is not in a state that allows the operation.

    Callers should re-fetch the current state instead of retrying blindly.
    """


class UpstreamUnavailable(ReconciliationError):
    """A candidate repository or bank feed call failed or timed out."""


class IntegrityViolation(ReconciliationError):
    """Internal inconsistency, e.g. an applied item with no matched candidate."""
