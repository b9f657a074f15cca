"""Domain error taxonomy shared by the ledger and approval services.

Every error carries a machine-readable ``code`` and the HTTP status the API
layer answers with.  Services raise these; nothing in the core swallows them.
"""


class BursarError(Exception):
    """Base exception for ledger and workflow errors."""

    code = "bursar_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BursarError):
    """Bad input shape or range, e.g. a negative amount."""

    code = "validation_error"
    status_code = 422


class InvariantViolation(BursarError):
    """The change would break a stored invariant."""

    code = "invariant_violation"
    status_code = 409


class InvalidStateTransition(BursarError):
    """A state machine rule was violated."""

    code = "invalid_state_transition"
    status_code = 409


class PreconditionFailed(BursarError):
    """A dependent stage or condition is not yet satisfied."""

    code = "precondition_failed"
    status_code = 409


class ResourceNotFound(BursarError):
    """A ledger, record or receipt file does not exist."""

    code = "not_found"
    status_code = 404


class ConcurrencyConflict(BursarError):
    """Lock contention or a stale version outlasted the retry budget."""

    code = "concurrency_conflict"
    status_code = 503


def require_remarks(remarks: str | None, action: str) -> str:
    """Return stripped remarks, or raise when a rejection has none."""
    text = (remarks or "").strip()
    if not text:
        raise ValidationError(f"Remarks are required to {action}")
    return text
