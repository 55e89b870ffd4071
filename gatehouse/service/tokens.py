from __future__ import annotations

import base64
import hashlib
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Iterable, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from gatehouse.config import MIN_SYMMETRIC_KEY_LENGTH
from gatehouse.logging import get_logger
from gatehouse.service.errors import InvalidTokenError, TokenExpiredError
from gatehouse.storage.models import utcnow

logger = get_logger(__name__)


def _fernet_from_raw_key(raw_key: str) -> Fernet:
    digest = hashlib.sha256(raw_key.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


class TokenPurpose(str, Enum):
    """What a token may be used for; checked on every verify."""

    ACCESS = "access"
    REFRESH = "refresh"
    RESET = "reset"
    INVITE = "invite"


@dataclass(frozen=True)
class TokenPayload:
    session_id: str
    purpose: TokenPurpose
    user_id: int
    is_admin: bool
    issued_at: datetime
    expires_at: datetime

    def to_json(self) -> bytes:
        return json.dumps(
            {
                "sid": self.session_id,
                "typ": self.purpose.value,
                "uid": self.user_id,
                "adm": self.is_admin,
                "iat": self.issued_at.isoformat(),
                "exp": self.expires_at.isoformat(),
            },
            separators=(",", ":"),
        ).encode("utf-8")

    @classmethod
    def from_json(cls, raw: bytes) -> "TokenPayload":
        data = json.loads(raw)
        issued_at = datetime.fromisoformat(data["iat"])
        expires_at = datetime.fromisoformat(data["exp"])
        if issued_at.tzinfo is None or expires_at.tzinfo is None:
            raise ValueError("token timestamps must be timezone-aware")
        if not isinstance(data["uid"], int) or not isinstance(data["adm"], bool):
            raise ValueError("token claims have the wrong types")
        return cls(
            session_id=str(uuid.UUID(data["sid"])),
            purpose=TokenPurpose(data["typ"]),
            user_id=data["uid"],
            is_admin=data["adm"],
            issued_at=issued_at,
            expires_at=expires_at,
        )


class TokenCodec:
    """Mint and verify encrypted, authenticated bearer tokens.

    Tokens are Fernet envelopes (AES-128-CBC with HMAC-SHA256) around a JSON
    payload, so claims are neither readable nor forgeable without the key.
    Expiry is fixed at mint time and checked against the injected clock.
    Each token carries the purpose it was minted for, and verification
    rejects a token presented for any other purpose. Retired keys passed as
    ``previous_keys`` still verify; new tokens always use ``symmetric_key``.
    """

    def __init__(
        self,
        symmetric_key: str,
        *,
        previous_keys: Iterable[str] = (),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        keys = [symmetric_key, *previous_keys]
        for key in keys:
            if not key or len(key) < MIN_SYMMETRIC_KEY_LENGTH:
                raise ValueError(
                    f"token keys must be at least {MIN_SYMMETRIC_KEY_LENGTH} characters"
                )
        self._fernet = MultiFernet([_fernet_from_raw_key(key) for key in keys])
        self._clock = clock

    def mint(
        self,
        user_id: int,
        is_admin: bool,
        duration: timedelta,
        *,
        purpose: TokenPurpose,
        session_id: Optional[str] = None,
    ) -> Tuple[str, TokenPayload]:
        now = self._clock()
        payload = TokenPayload(
            session_id=session_id or str(uuid.uuid4()),
            purpose=purpose,
            user_id=user_id,
            is_admin=is_admin,
            issued_at=now,
            expires_at=now + duration,
        )
        # Padding stripped so the token is a plain cookie value
        token = self._fernet.encrypt(payload.to_json()).decode("ascii").rstrip("=")
        return token, payload

    def verify(self, token: str, *, purpose: TokenPurpose) -> TokenPayload:
        """Decrypt ``token`` and check its expiry and that it was minted for ``purpose``."""
        if not token:
            raise InvalidTokenError()
        try:
            padded = token + "=" * (-len(token) % 4)
            raw = self._fernet.decrypt(padded.encode("ascii"))
        except (InvalidToken, UnicodeEncodeError) as exc:
            raise InvalidTokenError() from exc
        try:
            payload = TokenPayload.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("token_payload_malformed", error=str(exc))
            raise InvalidTokenError() from exc
        if payload.purpose != purpose:
            logger.warning(
                "token_purpose_mismatch",
                expected=purpose.value,
                presented=payload.purpose.value,
            )
            raise InvalidTokenError()
        if self._clock() > payload.expires_at:
            raise TokenExpiredError()
        return payload
