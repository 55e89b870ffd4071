"""Token codec: round trip, expiry, tamper detection, purpose and key rotation."""

from datetime import timedelta

import pytest
from conftest import TEST_KEY

from gatehouse.service.errors import InvalidTokenError, TokenExpiredError
from gatehouse.service.tokens import TokenCodec, TokenPayload, TokenPurpose

OTHER_KEY = "another-symmetric-key-abcdef0123456789"
ACCESS = TokenPurpose.ACCESS


class TestTokenCodec:
    def test_round_trip_preserves_claims(self, codec, clock):
        token, minted = codec.mint(42, True, timedelta(minutes=5), purpose=ACCESS)
        payload = codec.verify(token, purpose=ACCESS)
        assert payload == minted
        assert payload.user_id == 42
        assert payload.is_admin is True
        assert payload.purpose is TokenPurpose.ACCESS
        assert payload.issued_at == clock.now
        assert payload.expires_at == clock.now + timedelta(minutes=5)

    def test_each_mint_gets_a_fresh_session_id(self, codec):
        _, first = codec.mint(1, False, timedelta(minutes=5), purpose=ACCESS)
        _, second = codec.mint(1, False, timedelta(minutes=5), purpose=ACCESS)
        assert first.session_id != second.session_id

    def test_negative_duration_is_expired_immediately(self, codec):
        token, _ = codec.mint(1, False, timedelta(seconds=-1), purpose=ACCESS)
        with pytest.raises(TokenExpiredError):
            codec.verify(token, purpose=ACCESS)

    def test_expiry_follows_the_clock(self, codec, clock):
        token, _ = codec.mint(1, False, timedelta(minutes=1), purpose=ACCESS)
        clock.advance(seconds=60)
        assert codec.verify(token, purpose=ACCESS).user_id == 1
        clock.advance(seconds=1)
        with pytest.raises(TokenExpiredError):
            codec.verify(token, purpose=ACCESS)

    def test_tampered_token_is_rejected(self, codec):
        token, _ = codec.mint(1, False, timedelta(minutes=5), purpose=ACCESS)
        index = len(token) // 2
        replacement = "A" if token[index] != "A" else "B"
        tampered = token[:index] + replacement + token[index + 1:]
        with pytest.raises(InvalidTokenError):
            codec.verify(tampered, purpose=ACCESS)

    @pytest.mark.parametrize("garbage", ["", "not-a-token", "gAAAAA", "ünïcode"])
    def test_garbage_is_rejected(self, codec, garbage):
        with pytest.raises(InvalidTokenError):
            codec.verify(garbage, purpose=ACCESS)

    def test_token_from_other_key_is_rejected(self, codec, clock):
        foreign = TokenCodec(OTHER_KEY, clock=clock)
        token, _ = foreign.mint(1, False, timedelta(minutes=5), purpose=ACCESS)
        with pytest.raises(InvalidTokenError):
            codec.verify(token, purpose=ACCESS)

    def test_previous_keys_still_verify(self, codec, clock):
        old_token, _ = codec.mint(7, False, timedelta(minutes=5), purpose=ACCESS)
        rotated = TokenCodec(OTHER_KEY, previous_keys=[TEST_KEY], clock=clock)
        assert rotated.verify(old_token, purpose=ACCESS).user_id == 7
        new_token, _ = rotated.mint(8, False, timedelta(minutes=5), purpose=ACCESS)
        with pytest.raises(InvalidTokenError):
            codec.verify(new_token, purpose=ACCESS)

    def test_tokens_have_no_padding(self, codec):
        for _ in range(8):
            token, _ = codec.mint(1, False, timedelta(minutes=5), purpose=ACCESS)
            assert "=" not in token

    def test_short_key_rejected(self):
        with pytest.raises(ValueError):
            TokenCodec("too-short")

    def test_short_previous_key_rejected(self):
        with pytest.raises(ValueError):
            TokenCodec(OTHER_KEY, previous_keys=["short"])


class TestTokenPurpose:
    """A token only verifies for the purpose it was minted for."""

    @pytest.mark.parametrize("minted", list(TokenPurpose))
    @pytest.mark.parametrize("presented", list(TokenPurpose))
    def test_purpose_must_match(self, codec, minted, presented):
        token, _ = codec.mint(1, False, timedelta(minutes=5), purpose=minted)
        if minted is presented:
            assert codec.verify(token, purpose=presented).purpose is minted
        else:
            with pytest.raises(InvalidTokenError):
                codec.verify(token, purpose=presented)

    def test_purpose_mismatch_wins_over_expiry(self, codec):
        token, _ = codec.mint(1, False, timedelta(seconds=-1), purpose=TokenPurpose.INVITE)
        with pytest.raises(InvalidTokenError) as excinfo:
            codec.verify(token, purpose=ACCESS)
        assert not isinstance(excinfo.value, TokenExpiredError)


class TestTokenPayload:
    def test_naive_timestamps_rejected(self):
        raw = (
            b'{"sid":"8b7c1d38-64a6-4a53-9a0b-0c8e2f7a1d11","typ":"access","uid":1,"adm":false,'
            b'"iat":"2024-05-01T12:00:00","exp":"2024-05-01T12:05:00"}'
        )
        with pytest.raises(ValueError):
            TokenPayload.from_json(raw)

    def test_wrong_claim_types_rejected(self):
        raw = (
            b'{"sid":"8b7c1d38-64a6-4a53-9a0b-0c8e2f7a1d11","typ":"access","uid":"1","adm":false,'
            b'"iat":"2024-05-01T12:00:00+00:00","exp":"2024-05-01T12:05:00+00:00"}'
        )
        with pytest.raises(ValueError):
            TokenPayload.from_json(raw)

    def test_unknown_purpose_rejected(self):
        raw = (
            b'{"sid":"8b7c1d38-64a6-4a53-9a0b-0c8e2f7a1d11","typ":"admin","uid":1,"adm":false,'
            b'"iat":"2024-05-01T12:00:00+00:00","exp":"2024-05-01T12:05:00+00:00"}'
        )
        with pytest.raises(ValueError):
            TokenPayload.from_json(raw)

    def test_missing_purpose_rejected(self):
        raw = (
            b'{"sid":"8b7c1d38-64a6-4a53-9a0b-0c8e2f7a1d11","uid":1,"adm":false,'
            b'"iat":"2024-05-01T12:00:00+00:00","exp":"2024-05-01T12:05:00+00:00"}'
        )
        with pytest.raises(KeyError):
            TokenPayload.from_json(raw)
