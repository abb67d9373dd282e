"""
Engine Errors — Exception taxonomy shared by services and routes.

Each error carries the HTTP status it maps to; main.py renders them as
ErrorResponse bodies. A lost race is deliberately absent: conditional updates
that match zero rows are resolved by re-reading state (see store.TransitionResult).
"""
from typing import Optional


class EngineError(Exception):
    """Base class for all lifecycle, billing and reconciliation errors."""

    status_code = 400
    error_code = "ENGINE_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code


class NotFound(EngineError):
    status_code = 404
    error_code = "NOT_FOUND"


class UnauthorizedAccess(EngineError):
    """Caller is not a participant (or not the required participant) of the session."""
    status_code = 403
    error_code = "UNAUTHORIZED_ACCESS"


class InvalidTransition(EngineError):
    status_code = 409
    error_code = "INVALID_TRANSITION"


class InsufficientBalance(EngineError):
    status_code = 402
    error_code = "INSUFFICIENT_BALANCE"

    def __init__(self, message: str, available: int = 0, required: int = 0):
        super().__init__(message)
        self.available = available
        self.required = required


class InconsistentState(EngineError):
    status_code = 500
    error_code = "INCONSISTENT_STATE"


class MalformedExternalEvent(EngineError):
    status_code = 422
    error_code = "MALFORMED_EXTERNAL_EVENT"


class InvalidSignature(EngineError):
    status_code = 401
    error_code = "INVALID_SIGNATURE"
