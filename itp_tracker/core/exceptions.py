"""
Platform-wide exception hierarchy.

Services raise these; the application factory registers one handler per
type so every blueprint gets the same HTTP status codes.

Validation *refusals* of the completion state machine (missing evidence,
missing witness data, missing reason/description) are NOT exceptions.  They
are expected control flow and are returned as ``(None, refusal)`` tuples by
the completion service — see ``itp_tracker.core.checklist_rules``.

Usage:
    from itp_tracker.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Lot", resource_id=42)
    raise ValidationError("severity must be minor or major", details={"severity": "..."})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Maps to HTTP 404.

    Args:
        resource: Human-readable model/entity name (e.g. "Lot", "ITPInstance").
        resource_id: The PK that was looked up. Included in logs and message.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate of a unique record.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class StateTransitionError(Exception):
    """Raised when a requested state change is not an edge of the state machine.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, from_state: str, to_state: str, reason: str | None = None) -> None:
        self.resource = resource
        self.from_state = from_state
        self.to_state = to_state
        msg = f"Invalid {resource} transition: {from_state} → {to_state}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class NcrCreationError(Exception):
    """Raised when the NCR auto-raised by a failed checklist item cannot be created.

    The failed transition is rolled back together with the NCR insert, so the
    completion keeps its previous state.  Maps to HTTP 502.
    """

    def __init__(self, checklist_item_id: int, cause: str) -> None:
        self.checklist_item_id = checklist_item_id
        self.cause = cause
        super().__init__(
            f"NCR could not be raised for checklist item {checklist_item_id}: {cause}"
        )
