"""Domain errors raised by the service layer.

Services raise these and never translate them; the FastAPI exception handler
in ``eventplanner.main`` maps ``status_code`` and ``code`` onto a response.
"""
from typing import Any, Optional


class DomainError(Exception):
    """Base class for every recoverable, caller-surfaced failure."""

    status_code = 400
    code = "DOMAIN_ERROR"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


class NotFound(DomainError):
    status_code = 404
    code = "NOT_FOUND"


class InvalidTransition(DomainError):
    status_code = 409
    code = "INVALID_TRANSITION"


class EventFull(DomainError):
    status_code = 409
    code = "EVENT_FULL"

    def __init__(self, message: str = "Event is at capacity", waitlist_available: bool = False):
        super().__init__(message, waitlist_available=waitlist_available)
        self.waitlist_available = waitlist_available


class NotFull(DomainError):
    status_code = 409
    code = "NOT_FULL"


class AlreadyQueued(DomainError):
    status_code = 409
    code = "ALREADY_QUEUED"


class NoActiveOffer(DomainError):
    status_code = 409
    code = "NO_ACTIVE_OFFER"


class QuotaExceeded(DomainError):
    status_code = 429
    code = "QUOTA_EXCEEDED"

    def __init__(self, message: str, scope: Optional[str] = None, window: Optional[str] = None, **details: Any):
        super().__init__(message, scope=scope, window=window, **details)
        self.scope = scope
        self.window = window


class NotOrganizer(DomainError):
    status_code = 403
    code = "NOT_ORGANIZER"


class ValidationFailed(DomainError):
    status_code = 422
    code = "VALIDATION_FAILED"
