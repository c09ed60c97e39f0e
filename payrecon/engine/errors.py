"""Typed errors raised by the reconciliation engine."""

from typing import Optional


class ReconciliationError(Exception):
    """Base class for engine errors surfaced to callers."""

    code = "reconciliation_error"
    retryable = False

    def __init__(self, message: str, entity_id: Optional[str] = None):
        super().__init__(message)
        self.entity_id = entity_id


class NotFound(ReconciliationError):
    """Payment or proforma id is unknown."""
    code = "not_found"


class NoAutoMatch(ReconciliationError):
    """Approve requested for a payment without an automatic match."""
    code = "no_auto_match"


class InvalidBinding(ReconciliationError):
    """Assign requested to a nonexistent or unusable proforma."""
    code = "invalid_binding"


class InvalidTransition(ReconciliationError):
    """Requested status change is not allowed from the current status."""
    code = "invalid_transition"


class ConcurrentModification(ReconciliationError):
    """Entity was mutated by another operation since it was read."""
    code = "concurrent_modification"


class ExternalUnavailable(ReconciliationError):
    """A collaborator store could not be reached during a binding."""
    code = "external_unavailable"
    retryable = True
