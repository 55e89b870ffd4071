"""Private event invite issuance."""

from datetime import timedelta

import pytest

from gatehouse.service.errors import ForbiddenError, NotFoundError
from gatehouse.service.invites import INVITE_SUBJECT_ID, PrivateInviteIssuer
from gatehouse.service.tokens import TokenPurpose
from gatehouse.storage.models import PrivateEventToken


@pytest.fixture
def issuer(codec, store, clock):
    return PrivateInviteIssuer(codec, store, ttl=timedelta(hours=1), clock=clock)


class TestIssueInvite:
    async def test_owner_gets_stored_invite(self, issuer, store, codec, clock):
        invite = await issuer.issue_invite(10, 1)

        assert invite.event_id == 10
        assert invite.expires_at == clock() + timedelta(hours=1)
        assert store.private_tokens == [invite]
        payload = codec.verify(invite.token, purpose=TokenPurpose.INVITE)
        assert payload.user_id == INVITE_SUBJECT_ID
        assert payload.is_admin is False

    async def test_each_invite_is_distinct(self, issuer):
        first = await issuer.issue_invite(10, 1)
        second = await issuer.issue_invite(10, 1)
        assert first.token != second.token

    async def test_non_owner_forbidden(self, issuer, store):
        with pytest.raises(ForbiddenError):
            await issuer.issue_invite(10, 2)
        assert store.private_tokens == []

    async def test_missing_event(self, issuer):
        with pytest.raises(NotFoundError):
            await issuer.issue_invite(404, 1)


class TestCheckInvite:
    async def test_live_invite_accepted(self, issuer):
        invite = await issuer.issue_invite(10, 1)
        assert await issuer.check_invite(10, invite.token) is True

    async def test_invite_bound_to_event(self, issuer):
        invite = await issuer.issue_invite(10, 1)
        assert await issuer.check_invite(11, invite.token) is False

    async def test_expired_invite_rejected(self, issuer, clock):
        invite = await issuer.issue_invite(10, 1)
        clock.advance(hours=1, seconds=1)
        assert await issuer.check_invite(10, invite.token) is False

    async def test_unstored_token_rejected(self, issuer, codec):
        token, _ = codec.mint(
            INVITE_SUBJECT_ID, False, timedelta(hours=1), purpose=TokenPurpose.INVITE
        )
        assert await issuer.check_invite(10, token) is False
        assert await issuer.check_invite(10, "garbage") is False

    @pytest.mark.parametrize(
        "purpose", [TokenPurpose.ACCESS, TokenPurpose.REFRESH, TokenPurpose.RESET]
    )
    async def test_other_token_purposes_rejected(self, issuer, codec, store, purpose):
        token, payload = codec.mint(1, False, timedelta(hours=1), purpose=purpose)
        # Stored as if it were an invite, so only the purpose check refuses it
        await store.create_private_event_token(
            PrivateEventToken(event_id=10, token=token, expires_at=payload.expires_at)
        )
        assert await issuer.check_invite(10, token) is False
