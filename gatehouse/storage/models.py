from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from gatehouse.logging import get_logger

logger = get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionState(str, Enum):
    ACTIVE = "active"
    ROTATED = "rotated"
    BLOCKED = "blocked"
    EXPIRED = "expired"


@dataclass
class User:
    id: int
    email: str
    password_hash: Optional[str] = None
    is_admin: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Event:
    id: int
    owner_id: int
    is_private: bool = True


@dataclass
class Session:
    """Refresh session row; ``uuid`` equals the refresh token's session id.

    A row is never rewritten into its successor: rotation stamps
    ``superseded_by``/``rotated_at`` on the old row and inserts a new one.
    """

    uuid: str
    user_id: int
    refresh_token: str
    expires_at: datetime
    is_blocked: bool = False
    created_at: datetime = field(default_factory=utcnow)
    superseded_by: Optional[str] = None
    rotated_at: Optional[datetime] = None

    def state(self, now: Optional[datetime] = None) -> SessionState:
        if self.is_blocked:
            return SessionState.BLOCKED
        if self.superseded_by is not None:
            return SessionState.ROTATED
        if (now or utcnow()) >= self.expires_at:
            return SessionState.EXPIRED
        return SessionState.ACTIVE


@dataclass
class PrivateEventToken:
    event_id: int
    token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime
    limit: int = 0


DEFAULT_WINDOW_SECONDS = 60


def rate_limit_key(endpoint: str, subject: str | int) -> str:
    return f"rate_limit:{endpoint}:{subject}"


def reset_cooldown_key(email: str) -> str:
    return f"reset:cooldown:{email.strip().lower()}"


def reset_code_key(user_id: int) -> str:
    return f"reset:code:{user_id}"


def reset_token_key(token: str) -> str:
    return f"reset:token:{token}"


def effective_window(window_seconds: int) -> int:
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            window_seconds=window_seconds,
            default_window=DEFAULT_WINDOW_SECONDS,
        )
        return DEFAULT_WINDOW_SECONDS
    return window_seconds
