from __future__ import annotations

from typing import Awaitable, Callable

from fastapi import Depends, Request, Response

from gatehouse.api.cookies import ACCESS_COOKIE, CookiePolicy
from gatehouse.api.error_handling import rate_limit_headers
from gatehouse.logging import get_logger
from gatehouse.service.auth import Identity
from gatehouse.service.errors import (
    AuthenticationError,
    ForbiddenError,
    RateLimitedError,
    ServerError,
)
from gatehouse.service.runtime import Runtime
from gatehouse.storage.models import RateLimitResult

logger = get_logger(__name__)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_cookie_policy(request: Request) -> CookiePolicy:
    return request.app.state.cookie_policy


def require_identity(
    request: Request, runtime: Runtime = Depends(get_runtime)
) -> Identity:
    """Verify the access-token cookie and attach the caller's identity to the request."""
    token = request.cookies.get(ACCESS_COOKIE)
    if not token:
        raise AuthenticationError("authentication required")
    identity = runtime.auth.verify(token)
    request.state.identity = identity
    return identity


def current_identity(request: Request) -> Identity:
    """Identity attached by :func:`require_identity`; raises if there is none."""
    identity = getattr(request.state, "identity", None)
    if not isinstance(identity, Identity):
        raise AuthenticationError("authentication required")
    return identity


def require_admin(identity: Identity = Depends(require_identity)) -> Identity:
    if not identity.is_admin:
        raise ForbiddenError("admin access required")
    return identity


def apply_rate_limit_headers(response: Response, result: RateLimitResult) -> None:
    for name, value in rate_limit_headers(
        result.limit, result.remaining, result.reset_at
    ).items():
        response.headers[name] = value


def enforce_rate_limit(name: str) -> Callable[..., Awaitable[RateLimitResult]]:
    """Dependency factory that spends one unit of the ``name`` quota per call.

    The quota comes from ``Settings.rate_limits`` and is counted per user.
    Exhausted quotas raise :class:`RateLimitedError` before the handler runs.
    """

    async def _dependency(
        response: Response,
        identity: Identity = Depends(require_identity),
        runtime: Runtime = Depends(get_runtime),
    ) -> RateLimitResult:
        rule = runtime.settings.rate_limit_rule(name)
        if rule is None:
            logger.error("rate_limit_rule_missing", endpoint=name)
            raise ServerError(f"no rate limit configured for {name}")
        result = await runtime.cache.consume(
            name, identity.user_id, rule.limit, rule.window_seconds
        )
        if not result.allowed:
            logger.warning(
                "rate_limit_exceeded",
                endpoint=name,
                user_id=identity.user_id,
                reset_at=result.reset_at.isoformat(),
            )
            raise RateLimitedError(
                limit=result.limit,
                remaining=result.remaining,
                reset_at=result.reset_at,
            )
        apply_rate_limit_headers(response, result)
        return result

    return _dependency
