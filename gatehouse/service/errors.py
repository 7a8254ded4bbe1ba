from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that callers can branch on:
    - incorrect_credentials (401)
    - unauthorized (401)
    - account_unconfirmed (403)
    - already_authenticated (403)
    - not_found (404)
    - invalid_or_expired_token (400)
    - email_no_longer_available (409)
    - validation_error (422)
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


class ValidationFailed(ServiceError):
    """Input failed field-level validation (422); detail maps field -> messages."""
    status_code = 422
    error_code = "validation_error"

    def __init__(self, errors: dict[str, list[str]], message: str = "validation failed") -> None:
        super().__init__(message, detail=errors)
        self.errors = errors


class IncorrectCredentials(ServiceError):
    """Email/password pair did not match an account (401)."""
    status_code = 401
    error_code = "incorrect_credentials"

    def __init__(self, message: str = "Incorrect email or password.") -> None:
        super().__init__(message)


class AuthenticationRequired(ServiceError):
    """The request has no signed-in user (401)."""
    status_code = 401
    error_code = "unauthorized"


class AccountUnconfirmed(ServiceError):
    """The account must confirm its email before this action (403)."""
    status_code = 403
    error_code = "account_unconfirmed"

    def __init__(
        self, message: str = "You must confirm your email before continuing."
    ) -> None:
        super().__init__(message)


class AlreadyAuthenticated(ServiceError):
    """Action is only available to anonymous visitors (403)."""
    status_code = 403
    error_code = "already_authenticated"

    def __init__(self, message: str = "You are already logged in.") -> None:
        super().__init__(message)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class InvalidOrExpiredToken(ServiceError):
    """A confirmation or reset token could not be used (400).

    Deliberately generic: tampered, expired and wrong-purpose tokens all
    surface as this one error.
    """
    status_code = 400
    error_code = "invalid_or_expired_token"

    def __init__(self, message: str = "Invalid or expired token.") -> None:
        super().__init__(message)


class EmailNoLongerAvailable(ServiceError):
    """The pending email was claimed by another account before confirmation (409)."""
    status_code = 409
    error_code = "email_no_longer_available"

    def __init__(
        self, message: str = "That email address is no longer available."
    ) -> None:
        super().__init__(message)


__all__ = [
    "ServiceError",
    "ValidationFailed",
    "IncorrectCredentials",
    "AuthenticationRequired",
    "AccountUnconfirmed",
    "AlreadyAuthenticated",
    "NotFoundError",
    "InvalidOrExpiredToken",
    "EmailNoLongerAvailable",
]
