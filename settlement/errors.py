"""Error taxonomy for the verification engine.

Every error carries a stable machine-readable ``code`` (e.g.
``BATCH_ALREADY_EXISTS``) and the HTTP status the API layer maps it to.
Reference problems inside a bulk upload (unknown transaction ids, items that
were already decided) are NOT raised; they are reported per row in the
processing summary. External advisory failures are never raised at all.
"""

from typing import Any, Dict, Iterable, Optional


class SettlementError(Exception):
    """Base class for all errors surfaced by the engine."""

    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class ValidationFailed(SettlementError):
    """Client-correctable input problem; nothing was mutated."""

    status_code = 400
    default_code = "VALIDATION_ERROR"


class NotFound(SettlementError):
    status_code = 404
    default_code = "NOT_FOUND"


class PermissionDenied(SettlementError):
    status_code = 403
    default_code = "FORBIDDEN"


class StateError(SettlementError):
    """An operation is not valid from the record's current state."""

    status_code = 409
    default_code = "INVALID_STATE"

    def __init__(
        self,
        message: str,
        current: str,
        allowed: Iterable[str],
        code: Optional[str] = None,
    ) -> None:
        allowed = sorted(allowed)
        super().__init__(
            message,
            code=code,
            details={"current_state": current, "allowed_states": allowed},
        )
        self.current = current
        self.allowed = allowed


class ConflictError(SettlementError):
    """A conditional write lost its precondition; the caller may retry."""

    status_code = 409
    default_code = "CONFLICT"


class StorageUnavailable(SettlementError):
    status_code = 503
    default_code = "STORAGE_UNAVAILABLE"
