from __future__ import annotations

import asyncio
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from argon2 import PasswordHasher, Type

from gatehouse.logging import get_logger
from gatehouse.service.auth import AuthSessionManager
from gatehouse.service.errors import (
    InvalidTokenError,
    ResetCodeMismatchError,
    ResetThrottledError,
    ResetTokenInvalidError,
    TokenExpiredError,
    TransientStoreError,
)
from gatehouse.service.tokens import TokenCodec, TokenPurpose
from gatehouse.storage.models import RateLimitResult, User, utcnow

logger = get_logger(__name__)

CONFIRM_ATTEMPTS_ENDPOINT = "reset-confirm"


class UserDirectory(Protocol):
    async def get_user_by_email(self, email: str) -> Optional[User]: ...

    async def update_password_hash(self, user_id: int, password_hash: str) -> None: ...


class ResetStateStore(Protocol):
    async def can_send_reset_request(self, email: str, cooldown_seconds: int) -> bool: ...

    async def consume(
        self, endpoint: str, user_id: str | int, limit: int, window_seconds: int
    ) -> RateLimitResult: ...

    async def save_reset_code(self, user_id: int, code: str, ttl_seconds: int) -> None: ...

    async def consume_reset_code(self, user_id: int, code: str) -> bool: ...

    async def save_reset_token(self, token: str, user_id: int, ttl_seconds: int) -> None: ...

    async def get_reset_token_user(self, token: str) -> Optional[int]: ...

    async def delete_reset_token(self, token: str) -> None: ...


class Mailer(Protocol):
    def send_password_reset_code(self, to_email: str, code: str, ttl_minutes: int) -> bool: ...


def generate_reset_code(length: int, randbytes: Callable[[int], bytes] = secrets.token_bytes) -> str:
    """Return a zero-padded numeric code of ``length`` digits.

    Four random bytes are read as a big-endian integer and reduced modulo
    ``10**length``, which leaves a small bias toward low values.
    """
    if not 1 <= length <= 9:
        raise ValueError("reset code length must be between 1 and 9")
    value = int.from_bytes(randbytes(4), "big") % (10**length)
    return str(value).zfill(length)


class PasswordResetFlow:
    """Three-step password reset: mail a code, trade it for a token, set the password.

    Codes and tokens are single-use values with a TTL in the ephemeral store.
    A reset token is accepted only while it both verifies and is still stored.
    """

    def __init__(
        self,
        *,
        users: UserDirectory,
        state: ResetStateStore,
        codec: TokenCodec,
        mailer: Mailer,
        sessions: Optional[AuthSessionManager] = None,
        code_length: int = 6,
        code_ttl_seconds: int = 600,
        token_ttl_seconds: int = 900,
        cooldown_seconds: int = 60,
        max_confirm_attempts: int = 5,
        clock: Callable[[], datetime] = utcnow,
        randbytes: Callable[[int], bytes] = secrets.token_bytes,
    ) -> None:
        if not 1 <= code_length <= 9:
            raise ValueError("reset code length must be between 1 and 9")
        self.users = users
        self.state = state
        self.codec = codec
        self.mailer = mailer
        self.sessions = sessions
        self.code_length = code_length
        self.code_ttl_seconds = code_ttl_seconds
        self.token_ttl_seconds = token_ttl_seconds
        self.cooldown_seconds = cooldown_seconds
        self.max_confirm_attempts = max_confirm_attempts
        self._clock = clock
        self._randbytes = randbytes
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    async def initiate(self, email: str) -> bool:
        """Mail a reset code to ``email`` if it belongs to a user.

        Returns whether a code was dispatched. Unknown addresses are a silent
        no-op; a running cooldown raises :class:`ResetThrottledError`.
        """
        user = await self.users.get_user_by_email(email)
        if user is None:
            self.logger.info("password_reset_unknown_email", email=email)
            return False
        if not await self.state.can_send_reset_request(email, self.cooldown_seconds):
            self.logger.info("password_reset_cooldown_active", user_id=user.id)
            raise ResetThrottledError(
                reset_at=self._clock() + timedelta(seconds=self.cooldown_seconds)
            )
        code = generate_reset_code(self.code_length, self._randbytes)
        await self.state.save_reset_code(user.id, code, self.code_ttl_seconds)
        ttl_minutes = max(1, self.code_ttl_seconds // 60)
        sent = await asyncio.to_thread(
            self.mailer.send_password_reset_code, user.email, code, ttl_minutes
        )
        if not sent:
            self.logger.error("password_reset_mail_failed", user_id=user.id)
            return False
        self.logger.info("password_reset_requested", user_id=user.id)
        return True

    async def confirm(self, email: str, code: str) -> Optional[str]:
        """Trade a correct code for a reset token; the code is spent on success.

        Returns None for unknown addresses.
        """
        attempt = await self.state.consume(
            CONFIRM_ATTEMPTS_ENDPOINT,
            email.strip().lower(),
            self.max_confirm_attempts,
            self.code_ttl_seconds,
        )
        if not attempt.allowed:
            self.logger.warning("password_reset_confirm_throttled", email=email)
            raise ResetThrottledError(
                limit=attempt.limit, remaining=attempt.remaining, reset_at=attempt.reset_at
            )
        user = await self.users.get_user_by_email(email)
        if user is None:
            self.logger.info("password_reset_confirm_unknown_email", email=email)
            return None
        # Compare and delete in one step so a code yields at most one token
        if not await self.state.consume_reset_code(user.id, code):
            self.logger.info("password_reset_code_mismatch", user_id=user.id)
            raise ResetCodeMismatchError()
        token, _ = self.codec.mint(
            user.id,
            False,
            timedelta(seconds=self.token_ttl_seconds),
            purpose=TokenPurpose.RESET,
        )
        await self.state.save_reset_token(token, user.id, self.token_ttl_seconds)
        self.logger.info("password_reset_code_confirmed", user_id=user.id)
        return token

    async def complete(self, token: str, new_password: str) -> None:
        """Set a new password with a reset token; the token is spent on success."""
        try:
            payload = self.codec.verify(token, purpose=TokenPurpose.RESET)
        except (InvalidTokenError, TokenExpiredError) as exc:
            self.logger.info("password_reset_token_rejected", reason=type(exc).__name__)
            raise ResetTokenInvalidError() from exc
        user_id = await self.state.get_reset_token_user(token)
        if user_id is None or user_id != payload.user_id:
            self.logger.warning("password_reset_invalid_token", token_prefix=token[:8])
            raise ResetTokenInvalidError()
        password_hash = self._pwd_hasher.hash(new_password)
        await self.users.update_password_hash(user_id, password_hash)
        await self.state.delete_reset_token(token)
        if self.sessions is not None:
            try:
                await self.sessions.revoke_user_sessions(user_id)
            except TransientStoreError as exc:
                self.logger.warning(
                    "revoke_sessions_failed", user_id=user_id, error=str(exc)
                )
        self.logger.info("password_reset_completed", user_id=user_id)
