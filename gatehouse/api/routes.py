from __future__ import annotations

from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Response

from gatehouse.api.cookies import CookiePolicy
from gatehouse.api.dependencies import (
    get_cookie_policy,
    get_runtime,
    require_identity,
)
from gatehouse.api.error_handling import error_response
from gatehouse.api.schemas import (
    Envelope,
    PasswordResetCodeConfirm,
    PasswordResetComplete,
    PasswordResetRequest,
    PrivateInviteResponse,
    RateLimitStatus,
)
from gatehouse.logging import get_logger
from gatehouse.service.auth import Identity
from gatehouse.service.errors import (
    AuthenticationError,
    NotFoundError,
    ResetCodeMismatchError,
    ResetThrottledError,
    ResetTokenInvalidError,
    SESSION_EXPIRED_MESSAGE,
)
from gatehouse.service.runtime import Runtime

logger = get_logger(__name__)

router = APIRouter()

_RESET_INITIATED = {"status": "sent", "message": "if the address is registered, a code is on its way"}


def _session_rejected(policy: CookiePolicy) -> Response:
    response = error_response(401, SESSION_EXPIRED_MESSAGE, code="unauthorized")
    policy.clear_refresh_cookie(response)
    return response


@router.post("/auth/refresh", status_code=204, tags=["auth"])
async def refresh_tokens(
    refresh_token: Optional[str] = Cookie(None),
    runtime: Runtime = Depends(get_runtime),
    policy: CookiePolicy = Depends(get_cookie_policy),
):
    if not refresh_token:
        return _session_rejected(policy)
    try:
        pair = await runtime.auth.refresh(refresh_token)
    except AuthenticationError:
        return _session_rejected(policy)
    response = Response(status_code=204)
    policy.set_auth_cookies(response, pair)
    return response


@router.get("/auth", status_code=204, tags=["auth"])
async def validate_session(
    refresh_token: Optional[str] = Cookie(None),
    runtime: Runtime = Depends(get_runtime),
    policy: CookiePolicy = Depends(get_cookie_policy),
):
    if not refresh_token:
        return _session_rejected(policy)
    try:
        await runtime.auth.validate(refresh_token)
    except AuthenticationError:
        return _session_rejected(policy)
    return Response(status_code=204)


@router.post("/auth/logout", status_code=204, tags=["auth"])
async def logout(
    refresh_token: Optional[str] = Cookie(None),
    runtime: Runtime = Depends(get_runtime),
    policy: CookiePolicy = Depends(get_cookie_policy),
):
    await runtime.auth.logout(refresh_token)
    response = Response(status_code=204)
    policy.clear_auth_cookies(response)
    return response


@router.post("/reset-pw/initiate", response_model=Envelope, tags=["password-reset"])
async def initiate_reset(
    body: PasswordResetRequest, runtime: Runtime = Depends(get_runtime)
):
    try:
        await runtime.password_reset.initiate(body.email)
    except ResetThrottledError:
        # Same response as every other outcome so the endpoint reveals nothing
        logger.info("password_reset_initiate_throttled", email=body.email)
    return Envelope(status="ok", data=_RESET_INITIATED)


@router.post("/reset-pw/confirm", response_model=Envelope, tags=["password-reset"])
async def confirm_reset(
    body: PasswordResetCodeConfirm,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
    policy: CookiePolicy = Depends(get_cookie_policy),
):
    token = await runtime.password_reset.confirm(body.email, body.code)
    if token is None:
        raise ResetCodeMismatchError()
    expires_at = runtime.clock() + timedelta(
        seconds=runtime.settings.reset_token_ttl_seconds
    )
    policy.set_reset_cookie(response, token, expires_at)
    return Envelope(status="ok", data={"status": "confirmed"})


@router.post("/reset-pw/complete", response_model=Envelope, tags=["password-reset"])
async def complete_reset(
    body: PasswordResetComplete,
    response: Response,
    reset_token: Optional[str] = Cookie(None),
    runtime: Runtime = Depends(get_runtime),
    policy: CookiePolicy = Depends(get_cookie_policy),
):
    if not reset_token:
        raise ResetTokenInvalidError()
    await runtime.password_reset.complete(reset_token, body.new_password)
    policy.clear_reset_cookie(response)
    return Envelope(status="ok", data={"status": "reset"})


@router.post(
    "/events/{event_id}/private-token",
    response_model=Envelope,
    status_code=201,
    tags=["events"],
)
async def create_private_token(
    event_id: int,
    identity: Identity = Depends(require_identity),
    runtime: Runtime = Depends(get_runtime),
):
    invite = await runtime.invites.issue_invite(event_id, identity.user_id)
    return Envelope(
        status="ok",
        data=PrivateInviteResponse(
            event_id=invite.event_id,
            token=invite.token,
            expires_at=invite.expires_at,
        ).model_dump(mode="json"),
    )


@router.get("/rate-limits/{name}", response_model=Envelope, tags=["rate-limits"])
async def rate_limit_status(
    name: str,
    identity: Identity = Depends(require_identity),
    runtime: Runtime = Depends(get_runtime),
):
    rule = runtime.settings.rate_limit_rule(name)
    if rule is None:
        raise NotFoundError("unknown rate limit", detail={"name": name})
    result = await runtime.cache.peek(
        name, identity.user_id, rule.limit, rule.window_seconds
    )
    return Envelope(
        status="ok",
        data=RateLimitStatus(
            limit=rule.limit, remaining=result.remaining, reset_at=result.reset_at
        ).model_dump(mode="json"),
    )
