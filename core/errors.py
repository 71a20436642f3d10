"""
core/errors.py -- Application error taxonomy.

Every expected failure is raised as a subclass of AppError. The API layer has
one exception handler for AppError that renders the standard envelope, so
services and stores never build HTTP responses themselves.

Each class carries a default HTTP status, a machine-readable code, and a
default human message. Callers may override the message and attach a list of
field-level errors or extra data (e.g. the email echoed back on activation
failures).

Layer rule: core/ is the kernel -- no imports from other project packages.
"""

from __future__ import annotations

from typing import Any


class AppError(Exception):
    """Base exception for expected, client-visible failures."""

    status_code: int = 500
    code: str = "internal_error"
    default_message: str = "An unexpected error occurred."

    def __init__(
        self,
        message: str | None = None,
        *,
        errors: list[dict[str, Any]] | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.errors = errors
        self.data = data
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    code = "validation_error"
    default_message = "Validation failed."


class AuthenticationError(AppError):
    status_code = 401
    code = "unauthenticated"
    default_message = "Authentication required."


class AuthorizationError(AppError):
    status_code = 403
    code = "forbidden"
    default_message = "You do not have permission to perform this action."


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"
    default_message = "Resource not found."


class ConflictError(AppError):
    status_code = 409
    code = "conflict"
    default_message = "Resource already exists."


class GoneError(AppError):
    status_code = 410
    code = "gone"
    default_message = "Resource is no longer available."


class TooManyRequestsError(AppError):
    status_code = 429
    code = "rate_limited"
    default_message = "Too many requests."


class InternalError(AppError):
    pass


# ---------------------------------------------------------------------------
# Token errors
# ---------------------------------------------------------------------------


class TokenExpiredError(AuthenticationError):
    code = "token_expired"
    default_message = "Token expired. Please sign in again."


class InvalidTokenError(AuthenticationError):
    code = "invalid_token"
    default_message = "Invalid token."


class TokenTypeError(InvalidTokenError):
    """A valid signature with the wrong type discriminator (access vs refresh)."""

    code = "invalid_token_type"
    default_message = "Invalid token type."


# ---------------------------------------------------------------------------
# Activation errors
# ---------------------------------------------------------------------------


class InvalidActivationTokenError(AuthenticationError):
    code = "INVALID_TOKEN"
    default_message = "Invalid activation token."


class AlreadyActivatedError(AuthenticationError):
    code = "ALREADY_ACTIVATED"
    default_message = "This account is already activated."

    def __init__(self, email: str, message: str | None = None) -> None:
        super().__init__(message, data={"email": email})
        self.email = email


class ActivationExpiredError(GoneError):
    code = "TOKEN_EXPIRED"
    default_message = "Activation link expired. Request a new one."

    def __init__(self, email: str, message: str | None = None) -> None:
        super().__init__(message, data={"email": email})
        self.email = email
