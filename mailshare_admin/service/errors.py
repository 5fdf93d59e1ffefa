from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - legacy_session / session_revoked / session_expired (401)
    - invalid_password (401)
    - forbidden (403)
    - not_found (404)
    - validation_error / precondition_failed (400)
    - conflict (409, raised as storage ConstraintViolation)
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
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class PreconditionFailedError(ServiceError):
    """Operation attempted before a required step, e.g. TOTP verify before enrollment (400)."""
    status_code = 400
    error_code = "precondition_failed"


class AuthenticationError(ServiceError):
    """Bearer credential missing, malformed, tampered or expired (401)."""
    status_code = 401
    error_code = "unauthorized"


class LegacySessionError(AuthenticationError):
    """Token was minted without a session binding (401)."""
    error_code = "legacy_session"


class SessionRevokedError(AuthenticationError):
    """Session referenced by the token is missing or inactive (401)."""
    error_code = "session_revoked"


class SessionExpiredError(AuthenticationError):
    """Session exceeded the inactivity threshold (401)."""
    error_code = "session_expired"


class InvalidPasswordError(AuthenticationError):
    """Step-up password re-entry did not match (401)."""
    error_code = "invalid_password"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "PreconditionFailedError",
    "AuthenticationError",
    "LegacySessionError",
    "SessionRevokedError",
    "SessionExpiredError",
    "InvalidPasswordError",
    "ForbiddenError",
    "NotFoundError",
]
