from __future__ import annotations

from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - conflict (400)
    - auth_error (400)
    - unauthorized (401)
    - not_found (404)
    - dispatch_failed (500)
    - server_error (500)
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


class ConflictError(ServiceError):
    """A phone or email is already held by another account (400)."""
    status_code = 400
    error_code = "conflict"


class AuthReason(str, Enum):
    """Why an OTP or token was rejected."""

    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    MISMATCH = "mismatch"
    WRONG_PURPOSE = "wrong_purpose"
    INVALID_SIGNATURE = "invalid_signature"
    TOKEN_REUSE_DETECTED = "token_reuse_detected"
    ACCOUNT_HAS_NO_SESSION = "account_has_no_session"


class AuthError(ServiceError):
    """Bad, expired or reused OTP or token (400)."""
    status_code = 400
    error_code = "auth_error"

    def __init__(
        self,
        reason: AuthReason,
        message: str,
        *,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            status_code=status_code,
            detail={"reason": reason.value},
            error_code=error_code,
        )
        self.reason = reason


class UnauthorizedError(AuthError):
    """Missing or invalid access token on an authenticated operation (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested account not found (404)."""
    status_code = 404
    error_code = "not_found"


class DispatchFailure(ServiceError):
    """The notification transport failed or timed out (500)."""
    status_code = 500
    error_code = "dispatch_failed"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "ConflictError",
    "AuthReason",
    "AuthError",
    "UnauthorizedError",
    "NotFoundError",
    "DispatchFailure",
    "ServerError",
]
