from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from gatehouse.logging import get_logger
from gatehouse.service.errors import (
    ForbiddenError,
    InvalidTokenError,
    NotFoundError,
    TokenExpiredError,
)
from gatehouse.service.tokens import TokenCodec, TokenPurpose
from gatehouse.storage.models import PrivateEventToken, utcnow

logger = get_logger(__name__)

# Invite tokens are not bound to any user
INVITE_SUBJECT_ID = 0


class InviteStore(Protocol):
    async def get_event_owner(self, event_id: int) -> Optional[int]: ...

    async def create_private_event_token(
        self, token: PrivateEventToken
    ) -> PrivateEventToken: ...

    async def get_private_event_token(
        self, event_id: int, token: str
    ) -> Optional[PrivateEventToken]: ...


class PrivateInviteIssuer:
    """Mint shareable access tokens for private events."""

    def __init__(
        self,
        codec: TokenCodec,
        store: InviteStore,
        *,
        ttl: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.codec = codec
        self.store = store
        self.ttl = ttl
        self._clock = clock

    async def issue_invite(self, event_id: int, requester_id: int) -> PrivateEventToken:
        owner_id = await self.store.get_event_owner(event_id)
        if owner_id is None:
            raise NotFoundError("event not found", detail={"event_id": event_id})
        if owner_id != requester_id:
            logger.warning(
                "private_invite_forbidden", event_id=event_id, requester_id=requester_id
            )
            raise ForbiddenError("only the event owner can create invites")
        token, payload = self.codec.mint(
            INVITE_SUBJECT_ID, False, self.ttl, purpose=TokenPurpose.INVITE
        )
        invite = PrivateEventToken(
            event_id=event_id,
            token=token,
            expires_at=payload.expires_at,
            created_at=payload.issued_at,
        )
        await self.store.create_private_event_token(invite)
        logger.info("private_invite_issued", event_id=event_id, owner_id=owner_id)
        return invite

    async def check_invite(self, event_id: int, token: str) -> bool:
        """True if ``token`` is a live invite for ``event_id``."""
        try:
            self.codec.verify(token, purpose=TokenPurpose.INVITE)
        except (InvalidTokenError, TokenExpiredError):
            return False
        invite = await self.store.get_private_event_token(event_id, token)
        if invite is None:
            return False
        return not invite.is_expired(self._clock())
