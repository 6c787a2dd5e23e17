"""Error taxonomy for the capital engine.

ValidationError, ConstraintViolation, NotFound and ConcurrencyConflict abort
the triggering operation with no side effects. Integrity findings are not
errors; see schemas.integrity.Inconsistency.
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all capital engine errors."""

    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})


class ValidationError(LedgerError, ValueError):
    """Malformed or out-of-range input, rejected before touching the store."""


class ConstraintViolation(LedgerError):
    """A business invariant would be broken (over-call, over-payment, duplicate, ...)."""


class NotFound(LedgerError):
    """A referenced entity does not exist."""

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(
            f"{entity} {entity_id} not found",
            {"entity": entity, "entity_id": entity_id},
        )
        self.entity = entity
        self.entity_id = entity_id


class ConcurrencyConflict(LedgerError):
    """Lost an optimistic version check or lock race. Safe to retry."""

    retryable = True
