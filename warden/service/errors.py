from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for authentication-core exceptions.

    Each subclass carries a stable ``error_code`` plus the HTTP ``status_code``
    a transport layer should answer with:
    - validation_error (400)
    - not_activated (403)
    - disabled (403)
    - user_not_found (404)
    - already_suspended (409)
    - suspended (429)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Empty or malformed input (400)."""
    status_code = 400
    error_code = "validation_error"


class SuspendedError(ServiceError):
    """The identifier/origin pair is over its attempt limit (429)."""
    status_code = 429
    error_code = "suspended"


class AlreadySuspendedError(ServiceError):
    """A suspension was requested while one is still active (409)."""
    status_code = 409
    error_code = "already_suspended"


class NotActivatedError(ServiceError):
    """The account has not been activated yet (403)."""
    status_code = 403
    error_code = "not_activated"


class DisabledError(ServiceError):
    """The account is disabled (403)."""
    status_code = 403
    error_code = "disabled"


class UserNotFoundError(ServiceError):
    """Only raised on administrative or forced paths (404)."""
    status_code = 404
    error_code = "user_not_found"


__all__ = [
    "ServiceError",
    "ValidationError",
    "SuspendedError",
    "AlreadySuspendedError",
    "NotActivatedError",
    "DisabledError",
    "UserNotFoundError",
]
