from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from gatehouse.logging import get_logger
from gatehouse.service.errors import (
    InvalidTokenError,
    SessionBlockedError,
    SessionError,
    SessionExpiredError,
    SessionNotFoundError,
    SessionTokenMismatchError,
    SessionUserMismatchError,
    TokenExpiredError,
    TransientStoreError,
)
from gatehouse.service.tokens import TokenCodec, TokenPayload, TokenPurpose
from gatehouse.storage.models import Session, SessionState, utcnow

logger = get_logger(__name__)


class SessionStore(Protocol):
    async def create_session(self, session: Session) -> Session: ...

    async def get_session(self, session_uuid: str) -> Optional[Session]: ...

    async def rotate_session(self, old_uuid: str, new_session: Session) -> bool: ...

    async def block_session(self, session_uuid: str) -> bool: ...

    async def block_user_sessions(self, user_id: int) -> int: ...


@dataclass(frozen=True)
class Identity:
    """Caller identity recovered from a verified access token."""

    user_id: int
    is_admin: bool
    session_id: str


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    session_id: str
    user_id: int


class AuthSessionManager:
    """Issue token pairs and rotate refresh sessions.

    Access tokens are verified statelessly. Refresh tokens are bound to a
    session row; each refresh supersedes that row with a new one, so a
    refresh token can be exchanged at most once.
    """

    def __init__(
        self,
        codec: TokenCodec,
        store: SessionStore,
        *,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        block_on_logout: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.codec = codec
        self.store = store
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.block_on_logout = block_on_logout
        self._clock = clock
        self.logger = logger

    def _mint_pair(self, user_id: int, is_admin: bool) -> tuple[TokenPair, Session]:
        access_token, access_payload = self.codec.mint(
            user_id, is_admin, self.access_ttl, purpose=TokenPurpose.ACCESS
        )
        refresh_token, refresh_payload = self.codec.mint(
            user_id, is_admin, self.refresh_ttl, purpose=TokenPurpose.REFRESH
        )
        session = Session(
            uuid=refresh_payload.session_id,
            user_id=user_id,
            refresh_token=refresh_token,
            expires_at=refresh_payload.expires_at,
            created_at=refresh_payload.issued_at,
        )
        pair = TokenPair(
            access_token=access_token,
            access_expires_at=access_payload.expires_at,
            refresh_token=refresh_token,
            refresh_expires_at=refresh_payload.expires_at,
            session_id=session.uuid,
            user_id=user_id,
        )
        return pair, session

    async def login(self, user_id: int, is_admin: bool = False) -> TokenPair:
        """Start a session for a user whose credentials were already checked."""
        pair, session = self._mint_pair(user_id, is_admin)
        await self.store.create_session(session)
        self.logger.info("session_created", user_id=user_id, session_id=session.uuid)
        return pair

    async def _load_session(self, refresh_token: str) -> tuple[TokenPayload, Session]:
        payload = self.codec.verify(refresh_token, purpose=TokenPurpose.REFRESH)
        session = await self.store.get_session(payload.session_id)
        if session is None:
            raise SessionNotFoundError()
        if session.superseded_by is not None:
            # Presenting a superseded refresh token means it leaked or was replayed
            self.logger.warning(
                "refresh_token_replay",
                session_id=session.uuid,
                superseded_by=session.superseded_by,
                user_id=session.user_id,
            )
            raise SessionNotFoundError()
        state = session.state(self._clock())
        if state == SessionState.BLOCKED:
            raise SessionBlockedError()
        if session.user_id != payload.user_id:
            raise SessionUserMismatchError()
        if session.refresh_token != refresh_token:
            raise SessionTokenMismatchError()
        if state == SessionState.EXPIRED:
            raise SessionExpiredError()
        return payload, session

    async def validate(self, refresh_token: str) -> Session:
        """Check that a refresh token still names a live session, without rotating."""
        try:
            _, session = await self._load_session(refresh_token)
        except (InvalidTokenError, TokenExpiredError, SessionError) as exc:
            self._log_rejection("session_validate_rejected", exc)
            raise
        return session

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new token pair, retiring the old session."""
        try:
            payload, session = await self._load_session(refresh_token)
        except (InvalidTokenError, TokenExpiredError, SessionError) as exc:
            self._log_rejection("session_refresh_rejected", exc)
            raise
        pair, successor = self._mint_pair(session.user_id, payload.is_admin)
        rotated = await self.store.rotate_session(session.uuid, successor)
        if not rotated:
            self.logger.warning(
                "session_refresh_lost_race",
                session_id=session.uuid,
                user_id=session.user_id,
            )
            raise SessionNotFoundError()
        self.logger.info(
            "session_rotated",
            user_id=session.user_id,
            session_id=session.uuid,
            successor_id=successor.uuid,
        )
        return pair

    def verify(self, access_token: str) -> Identity:
        """Verify an access token; no storage lookup."""
        payload = self.codec.verify(access_token, purpose=TokenPurpose.ACCESS)
        return Identity(
            user_id=payload.user_id,
            is_admin=payload.is_admin,
            session_id=payload.session_id,
        )

    async def logout(self, refresh_token: Optional[str]) -> None:
        """Block the session behind ``refresh_token`` when configured to.

        Never raises: the caller clears cookies regardless of the outcome.
        """
        if not refresh_token or not self.block_on_logout:
            return
        try:
            payload = self.codec.verify(refresh_token, purpose=TokenPurpose.REFRESH)
        except (InvalidTokenError, TokenExpiredError) as exc:
            self.logger.info("logout_token_unusable", reason=type(exc).__name__)
            return
        try:
            session = await self.store.get_session(payload.session_id)
            if session is None or session.refresh_token != refresh_token:
                self.logger.info("logout_session_not_found", session_id=payload.session_id)
                return
            await self.store.block_session(session.uuid)
        except TransientStoreError as exc:
            self.logger.warning(
                "logout_block_failed", session_id=payload.session_id, error=str(exc)
            )
            return
        self.logger.info("session_blocked", session_id=payload.session_id, user_id=payload.user_id)

    async def revoke_user_sessions(self, user_id: int) -> int:
        blocked = await self.store.block_user_sessions(user_id)
        self.logger.info("user_sessions_blocked", user_id=user_id, count=blocked)
        return blocked

    def _log_rejection(self, event: str, exc: Exception) -> None:
        reason = getattr(exc, "reason", None) or type(exc).__name__
        self.logger.info(event, reason=reason)
