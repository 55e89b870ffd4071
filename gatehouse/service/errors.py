from __future__ import annotations

from datetime import datetime
from typing import Optional

SESSION_EXPIRED_MESSAGE = "session expired, sign in again"
RESET_INVALID_MESSAGE = "invalid or expired code"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and one of the stable
    envelope codes:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - server_error (500, 503)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """Token failed authentication or could not be decoded. Never retried."""

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(AuthenticationError):
    """Token authenticated but its expiry has passed."""

    def __init__(self, message: str = "token has expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionError(AuthenticationError):
    """A refresh session cannot be used.

    Every subclass shows the client the same message; the concrete class is
    the cause recorded in logs.
    """

    reason: str = "session_invalid"

    def __init__(self, message: str = SESSION_EXPIRED_MESSAGE, **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionNotFoundError(SessionError):
    """No live session for the token's id (unknown, or already rotated)."""
    reason = "session_not_found"


class SessionBlockedError(SessionError):
    reason = "session_blocked"


class SessionUserMismatchError(SessionError):
    reason = "session_user_mismatch"


class SessionTokenMismatchError(SessionError):
    reason = "session_token_mismatch"


class SessionExpiredError(SessionError):
    """Session row is past its expiry (401)."""
    reason = "session_expired"


class ResetCodeMismatchError(ValidationError):
    """Reset code missing, expired or wrong."""

    def __init__(self, message: str = RESET_INVALID_MESSAGE, **kwargs) -> None:
        super().__init__(message, **kwargs)


class ResetTokenInvalidError(ValidationError):
    """Reset token failed verification or was already used."""

    def __init__(self, message: str = RESET_INVALID_MESSAGE, **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "rate limit exceeded",
        *,
        limit: int = 0,
        remaining: int = 0,
        reset_at: Optional[datetime] = None,
        **kwargs,
    ) -> None:
        detail = kwargs.pop("detail", None) or {}
        if reset_at is not None:
            detail = {
                **detail,
                "remaining": remaining,
                "reset_at": reset_at.isoformat(),
            }
        super().__init__(message, detail=detail, **kwargs)
        self.limit = limit
        self.remaining = remaining
        self.reset_at = reset_at


class ResetThrottledError(RateLimitedError):
    """Password-reset request or confirmation attempted too often."""


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class TransientStoreError(ServerError):
    """Redis or the database was unreachable or timed out (503)."""
    status_code = 503

    def __init__(self, message: str = "backing store unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidTokenError",
    "TokenExpiredError",
    "SessionError",
    "SessionNotFoundError",
    "SessionBlockedError",
    "SessionUserMismatchError",
    "SessionTokenMismatchError",
    "SessionExpiredError",
    "ResetCodeMismatchError",
    "ResetTokenInvalidError",
    "ForbiddenError",
    "NotFoundError",
    "RateLimitedError",
    "ResetThrottledError",
    "ServerError",
    "TransientStoreError",
]
