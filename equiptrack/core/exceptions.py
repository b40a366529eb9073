"""
Application-wide exception hierarchy.

Services raise these; ``equiptrack.utils.errors.register_error_handlers``
maps each type to one HTTP status and machine code, once, for the whole app.

Usage:
    from equiptrack.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ClearanceRequest", resource_id=42)
    raise ValidationError("amount must be >= 0", details={"amount": "-5"})
"""


class NotFoundError(Exception):
    """Raised when a referenced entity does not exist.

    Maps to HTTP 404.

    Args:
        resource: Human-readable model/entity name (e.g. "EquipmentItem").
        resource_id: The PK (or list of PKs) that was looked up.
    """

    def __init__(self, resource: str, resource_id=None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule
    (negative amount, missing required id, unknown enum value).

    Distinct from HTTP 400 (malformed input, caught in blueprint).
    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidStateError(Exception):
    """Raised when an operation is attempted from a state that forbids it.

    Carries the entity, its current state and the states the operation
    would have accepted so the caller can render a precise message.
    Maps to HTTP 409.
    """

    def __init__(
        self,
        entity: str,
        entity_id,
        current: str | None,
        expected: list | tuple | None = None,
        message: str | None = None,
    ) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.expected = [getattr(e, "value", e) for e in (expected or [])]
        if message is None:
            message = f"{entity} id={entity_id} is '{current}'"
            if self.expected:
                message += f"; expected one of {self.expected}"
        super().__init__(message)

    def to_details(self) -> dict:
        return {
            "entity": self.entity,
            "entity_id": self.entity_id,
            "current": self.current,
            "expected": self.expected,
        }


class PersistenceError(Exception):
    """Raised when the store fails during a transactional operation.

    ``step`` names the step of the multi-step operation that was running
    when the failure happened; the whole transaction has been rolled back.
    Maps to HTTP 500.
    """

    def __init__(self, operation: str, step: str | None, cause: str | None = None) -> None:
        self.operation = operation
        self.step = step
        self.cause = cause
        msg = f"{operation} failed"
        if step:
            msg += f" at step '{step}'"
        if cause:
            msg += f": {cause}"
        super().__init__(msg)


class ConsistencyError(Exception):
    """Raised when derived data disagrees with the ledger, or when the
    ledger holds duplicate unsettled records for one key.

    Surfaced to an operator; the remedy is a forced full recompute
    (``accountability_summary.reconcile_all_summaries``).
    Maps to HTTP 409.
    """

    def __init__(self, message: str, keys: list | None = None) -> None:
        self.keys = keys or []
        super().__init__(message)
