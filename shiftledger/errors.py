from __future__ import annotations

from typing import Any, Dict, Optional


class ShiftLedgerError(Exception):
    """Base exception for shift lifecycle errors."""

    status_code = 500
    default_message = "An error occurred in the shift ledger"

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.code = code
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.code:
            return f"[{self.code}] {self.message}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.__class__.__name__,
            "message": self.message,
        }
        if self.code:
            payload["code"] = self.code
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(ShiftLedgerError):
    """Malformed identifiers or dates."""

    status_code = 400
    default_message = "Validation error"


class AuthError(ShiftLedgerError):
    """Missing or insufficient role.

    The message never mentions the entity being acted on.
    """

    status_code = 403
    default_message = "Forbidden"

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None, *, status_code: int = 403):
        super().__init__(message, code, details)
        self.status_code = status_code


class NotFoundError(ShiftLedgerError):
    status_code = 404
    default_message = "Resource not found"


class TransitionError(ShiftLedgerError):
    """A status change outside the allowed lifecycle was requested."""

    status_code = 409
    default_message = "Illegal status transition"


class ShiftValidationError(ShiftLedgerError):
    """Draft shifts fail the pre-publication checks."""

    status_code = 422
    default_message = "Draft shifts failed validation"


class NotificationError(ShiftLedgerError):
    """A single recipient could not be notified. Never escapes fan-out."""

    default_message = "Notification delivery failed"
