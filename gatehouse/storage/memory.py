from __future__ import annotations

import hmac
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from gatehouse.logging import get_logger
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import (
    Event,
    PrivateEventToken,
    RateLimitResult,
    Session,
    SessionState,
    User,
    effective_window,
    rate_limit_key,
    reset_code_key,
    reset_cooldown_key,
    reset_token_key,
    utcnow,
)


class MemoryStore:
    """In-memory session, user, event and invite tables for tests and local runs."""

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.events: Dict[int, Event] = {}
        self.sessions: Dict[str, Session] = {}
        self.private_tokens: List[PrivateEventToken] = []
        self._clock = clock
        # RLock so helpers can nest acquisitions within one call
        self._data_lock = threading.RLock()

    # users / events -----------------------------------------------------

    def add_user(self, user: User) -> User:
        with self._data_lock:
            if any(u.email.lower() == user.email.lower() for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"email": user.email})
            self.users[user.id] = user
            return user

    def add_event(self, event: Event) -> Event:
        with self._data_lock:
            self.events[event.id] = event
            return event

    async def get_user_by_email(self, email: str) -> Optional[User]:
        needle = email.strip().lower()
        with self._data_lock:
            for user in self.users.values():
                if user.email.lower() == needle:
                    return user
        return None

    async def update_password_hash(self, user_id: int, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            user.password_hash = password_hash

    async def get_event_owner(self, event_id: int) -> Optional[int]:
        with self._data_lock:
            event = self.events.get(event_id)
            return event.owner_id if event else None

    # sessions -----------------------------------------------------------

    async def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.uuid in self.sessions:
                raise ConstraintViolation("session already exists", {"uuid": session.uuid})
            self.sessions[session.uuid] = replace(session)
            return session

    async def get_session(self, session_uuid: str) -> Optional[Session]:
        with self._data_lock:
            stored = self.sessions.get(session_uuid)
            return replace(stored) if stored else None

    async def rotate_session(self, old_uuid: str, new_session: Session) -> bool:
        with self._data_lock:
            old = self.sessions.get(old_uuid)
            if old is None or old.is_blocked or old.superseded_by is not None:
                return False
            if new_session.uuid in self.sessions:
                raise ConstraintViolation(
                    "session already exists", {"uuid": new_session.uuid}
                )
            old.superseded_by = new_session.uuid
            old.rotated_at = self._clock()
            self.sessions[new_session.uuid] = replace(new_session)
            return True

    async def block_session(self, session_uuid: str) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_uuid)
            if session is None:
                return False
            session.is_blocked = True
            return True

    async def block_user_sessions(self, user_id: int) -> int:
        now = self._clock()
        blocked = 0
        with self._data_lock:
            for session in self.sessions.values():
                if session.user_id == user_id and session.state(now) == SessionState.ACTIVE:
                    session.is_blocked = True
                    blocked += 1
        return blocked

    # private invites ----------------------------------------------------

    async def create_private_event_token(self, token: PrivateEventToken) -> PrivateEventToken:
        with self._data_lock:
            self.private_tokens.append(token)
            return token

    async def get_private_event_token(
        self, event_id: int, token: str
    ) -> Optional[PrivateEventToken]:
        with self._data_lock:
            for row in self.private_tokens:
                if row.event_id == event_id and row.token == token:
                    return row
        return None

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class MemoryCache:
    """Process-local stand-in for Redis rate limits and reset keys.

    Same semantics as the Redis implementation: fixed windows anchored on the
    first hit, values expiring after their TTL. Expiry is evaluated lazily
    against the injected clock.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self._values: Dict[str, Tuple[str, Optional[datetime]]] = {}
        self._lock = threading.RLock()

    def _live(self, key: str, now: datetime) -> Optional[Tuple[str, Optional[datetime]]]:
        entry = self._values.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and now >= expires_at:
            del self._values[key]
            return None
        return entry

    def _set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._values[key] = (value, self._clock() + timedelta(seconds=max(1, ttl_seconds)))

    def _get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key, self._clock())
            return entry[0] if entry else None

    def _delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    def verify_connection(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def consume(
        self, endpoint: str, user_id: str | int, limit: int, window_seconds: int
    ) -> RateLimitResult:
        window = effective_window(window_seconds)
        now = self._clock()
        if limit <= 0:
            return RateLimitResult(
                allowed=True,
                remaining=0,
                reset_at=now + timedelta(seconds=window),
                limit=limit,
            )
        key = rate_limit_key(endpoint, user_id)
        with self._lock:
            entry = self._live(key, now)
            if entry is None:
                count = 1
                reset_at = now + timedelta(seconds=window)
            else:
                count = int(entry[0]) + 1
                reset_at = entry[1] or now + timedelta(seconds=window)
            self._values[key] = (str(count), reset_at)
        return RateLimitResult(
            allowed=count <= limit,
            remaining=max(limit - count, 0),
            reset_at=reset_at,
            limit=limit,
        )

    async def peek(
        self, endpoint: str, user_id: str | int, limit: int, window_seconds: int
    ) -> RateLimitResult:
        window = effective_window(window_seconds)
        now = self._clock()
        key = rate_limit_key(endpoint, user_id)
        with self._lock:
            entry = self._live(key, now)
        if entry is None:
            return RateLimitResult(
                allowed=True,
                remaining=max(limit, 0),
                reset_at=now + timedelta(seconds=window),
                limit=limit,
            )
        count = int(entry[0])
        return RateLimitResult(
            allowed=limit <= 0 or count <= limit,
            remaining=max(limit - count, 0),
            reset_at=entry[1] or now + timedelta(seconds=window),
            limit=limit,
        )

    async def can_send_reset_request(self, email: str, cooldown_seconds: int) -> bool:
        key = reset_cooldown_key(email)
        now = self._clock()
        with self._lock:
            if self._live(key, now) is not None:
                return False
            self._set(key, str(int(now.timestamp())), cooldown_seconds)
            return True

    async def save_reset_code(self, user_id: int, code: str, ttl_seconds: int) -> None:
        with self._lock:
            self._set(reset_code_key(user_id), code, ttl_seconds)

    async def consume_reset_code(self, user_id: int, code: str) -> bool:
        key = reset_code_key(user_id)
        with self._lock:
            entry = self._live(key, self._clock())
            if entry is None or not hmac.compare_digest(entry[0].encode(), code.encode()):
                return False
            del self._values[key]
            return True

    async def save_reset_token(self, token: str, user_id: int, ttl_seconds: int) -> None:
        with self._lock:
            self._set(reset_token_key(token), str(user_id), ttl_seconds)

    async def get_reset_token_user(self, token: str) -> Optional[int]:
        raw = self._get(reset_token_key(token))
        return int(raw) if raw is not None else None

    async def delete_reset_token(self, token: str) -> None:
        self._delete(reset_token_key(token))

    async def close(self) -> None:
        return None
