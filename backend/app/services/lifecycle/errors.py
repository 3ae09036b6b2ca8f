"""
Lifecycle error taxonomy.

Every rejection carries a stable `kind` and an HTTP status so the API layer
can render it without re-deriving meaning. None of these are swallowed.
"""


class LifecycleError(Exception):
    """Base class for all business rejections raised by the lifecycle core."""

    kind = "LifecycleError"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "detail": self.message}


class InvalidTransition(LifecycleError):
    """Requested edge does not exist in the transition table."""
    kind = "InvalidTransition"
    status_code = 422


class Forbidden(LifecycleError):
    """Actor role lacks permission for the requested action."""
    kind = "Forbidden"
    status_code = 403


class Conflict(LifecycleError):
    """Optimistic version mismatch - reload and retry."""
    kind = "Conflict"
    status_code = 409


class InvalidStage(LifecycleError):
    """Operation attempted outside its valid case / bid / milestone state."""
    kind = "InvalidStage"
    status_code = 422


class AlreadyLocked(LifecycleError):
    """Commercial terms on the case are already locked."""
    kind = "AlreadyLocked"
    status_code = 409


class NotFound(LifecycleError):
    """Unknown case, bid, tracker or audit entry."""
    kind = "NotFound"
    status_code = 404


class ValidationError(LifecycleError):
    """Malformed input that passed transport validation (e.g. non-positive amount)."""
    kind = "ValidationError"
    status_code = 422
