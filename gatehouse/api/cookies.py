from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import Response

from gatehouse.config import Settings
from gatehouse.service.auth import TokenPair

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
RESET_COOKIE = "reset_token"

_ACCESS_PATH = "/"
_REFRESH_PATH = "/auth"
_RESET_PATH = "/reset-pw"
# Production traffic arrives behind the /api reverse-proxy prefix
_PRODUCTION_PREFIX = "/api"


class CookiePolicy:
    """Name, path and flag rules for the auth cookies.

    All cookies are HttpOnly and SameSite=Lax. In production they are also
    Secure and their paths carry the ``/api`` prefix.
    """

    def __init__(self, settings: Settings) -> None:
        self.secure = settings.is_production
        self.domain = settings.cookie_domain
        self._prefix = _PRODUCTION_PREFIX if settings.is_production else ""

    def path(self, base: str) -> str:
        if not self._prefix:
            return base
        return f"{self._prefix}{base}"

    def _set(
        self,
        response: Response,
        name: str,
        value: str,
        path: str,
        expires_at: Optional[datetime] = None,
    ) -> None:
        response.set_cookie(
            name,
            value,
            httponly=True,
            secure=self.secure,
            samesite="lax",
            expires=expires_at,
            path=self.path(path),
            domain=self.domain,
        )

    def _clear(self, response: Response, name: str, path: str) -> None:
        response.delete_cookie(
            name,
            path=self.path(path),
            domain=self.domain,
            secure=self.secure,
            httponly=True,
            samesite="lax",
        )

    def set_auth_cookies(self, response: Response, pair: TokenPair) -> None:
        self._set(
            response, ACCESS_COOKIE, pair.access_token, _ACCESS_PATH, pair.access_expires_at
        )
        self._set(
            response,
            REFRESH_COOKIE,
            pair.refresh_token,
            _REFRESH_PATH,
            pair.refresh_expires_at,
        )

    def clear_auth_cookies(self, response: Response) -> None:
        self._clear(response, ACCESS_COOKIE, _ACCESS_PATH)
        self._clear(response, REFRESH_COOKIE, _REFRESH_PATH)

    def clear_refresh_cookie(self, response: Response) -> None:
        self._clear(response, REFRESH_COOKIE, _REFRESH_PATH)

    def set_reset_cookie(self, response: Response, token: str, expires_at: datetime) -> None:
        self._set(response, RESET_COOKIE, token, _RESET_PATH, expires_at)

    def clear_reset_cookie(self, response: Response) -> None:
        self._clear(response, RESET_COOKIE, _RESET_PATH)
