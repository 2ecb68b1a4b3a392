from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from authcore.api.schemas import (
    AuthResponse,
    BlockedIpListResponse,
    BlockedIpResponse,
    BlockIpRequest,
    Envelope,
    LoginAttemptStatisticsResponse,
    LoginRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    SessionListResponse,
    SessionResponse,
    SessionStatisticsResponse,
    TokenRefreshRequest,
    UserResponse,
)
from authcore.logging import get_logger
from authcore.service.auth import AuthContext, AuthTokens
from authcore.service.errors import ForbiddenError
from authcore.service.runtime import check_rate_limit, get_runtime
from authcore.service.security_settings import RateLimitConfig, SessionConfig
from authcore.storage.models import User

logger = get_logger(__name__)

ADMIN_ROLE = "admin"


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def get_client_ip(request: Request) -> Optional[str]:
    runtime = get_runtime()
    if runtime.settings.trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    return request.client.host if request.client else None


def _user_agent(request: Request) -> Optional[str]:
    return request.headers.get("User-Agent")


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> None:
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds
    )
    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
        response.headers["X-RateLimit-Reset"] = str(reset_seconds)
    if not allowed:
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            headers={"Retry-After": str(max(1, reset_seconds))},
        )


async def enforce_request_rate_limit(request: Request) -> None:
    """Per-client request throttle driven by the rate-limit configuration."""
    runtime = get_runtime()
    cfg = runtime.security_settings.rate_limit
    if not cfg.enable_rate_limiting:
        return
    ip = get_client_ip(request) or "unknown"
    await _enforce_rate_limit(runtime, f"req:min:{ip}", cfg.requests_per_minute, 60)
    await _enforce_rate_limit(runtime, f"req:hour:{ip}", cfg.requests_per_hour, 3600)


router = APIRouter(prefix="/v1", dependencies=[Depends(enforce_request_rate_limit)])


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization).unwrap()


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    if not principal.has_role(ADMIN_ROLE):
        logger.warning("admin_access_denied", user_id=principal.user_id)
        raise ForbiddenError("admin access required")
    return principal


def _auth_response(tokens: AuthTokens) -> AuthResponse:
    return AuthResponse(
        token=tokens.token,
        refresh_token=tokens.refresh_token,
        expiration=tokens.expiration,
        refresh_expiration=tokens.refresh_expiration,
        user_id=tokens.user_id,
        roles=tokens.roles,
        session_id=tokens.session_id,
    )


def _user_to_response(runtime, user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        roles=runtime.store.get_user_roles(user.id),
        is_active=user.is_active,
        created_at=user.created_at,
    )


# auth


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    x_device_id: Optional[str] = Header(None, alias="X-Device-ID"),
):
    """Authenticate with username (or email) and password.

    Raises:
        401: invalid credentials
        429: login throttle exceeded or the client IP is blocked
    """
    runtime = get_runtime()
    ip = get_client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"login:{ip or 'unknown'}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    tokens = (
        await runtime.auth.login(
            body.username,
            body.password,
            ip=ip,
            user_agent=_user_agent(request),
            device_id=body.device_id or x_device_id,
        )
    ).unwrap()
    return Envelope(status="ok", data=_auth_response(tokens))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    body: TokenRefreshRequest,
    request: Request,
    x_device_id: Optional[str] = Header(None, alias="X-Device-ID"),
):
    runtime = get_runtime()
    tokens = (
        await runtime.auth.refresh(
            body.refresh_token,
            ip=get_client_ip(request),
            user_agent=_user_agent(request),
            device_id=body.device_id or x_device_id,
        )
    ).unwrap()
    return Envelope(status="ok", data=_auth_response(tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    authorization: Optional[str] = Header(None),
    x_device_id: Optional[str] = Header(None, alias="X-Device-ID"),
):
    """End the caller's session and revoke its refresh tokens.

    Repeating the call, or calling it with an already invalid token, succeeds
    without side effects.
    """
    runtime = get_runtime()
    ctx = runtime.auth.authenticate(authorization)
    if not ctx.ok:
        logger.info("logout_without_active_session")
        return Envelope(status="ok", data={"logged_out": True})
    principal = ctx.value
    (
        await runtime.auth.logout(
            principal.user_id,
            jwt_id=principal.jwt_id,
            session_id=principal.session_id,
            device_id=x_device_id,
        )
    ).unwrap()
    return Envelope(status="ok", data={"logged_out": True})


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{get_client_ip(request) or 'unknown'}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    user = runtime.auth.register(body.username, body.email, body.password).unwrap()
    return Envelope(status="ok", data=_user_to_response(runtime, user))


@router.post("/auth/reset/request", response_model=Envelope, tags=["auth"])
async def request_reset(body: PasswordResetRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"reset:{body.email}", 5, 300)
    # Same response whether or not the address is known
    (await runtime.auth.request_password_reset(body.email)).unwrap()
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_reset(body: PasswordResetConfirm):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "reset:confirm", 5, 300)
    (await runtime.auth.complete_password_reset(body.token, body.new_password)).unwrap()
    return Envelope(status="ok", data={"status": "reset"})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if user is None:
        raise _http_error("not_found", "user not found", status_code=404)
    return Envelope(status="ok", data=_user_to_response(runtime, user))


# sessions


@router.get("/session/my-sessions", response_model=Envelope, tags=["sessions"])
async def list_my_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = runtime.sessions.list_for_user(principal.user_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[
                SessionResponse.from_session(s, current_id=principal.session_id)
                for s in sessions
            ]
        ),
    )


@router.delete("/session/my-sessions/terminate-all", response_model=Envelope, tags=["sessions"])
async def terminate_other_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    count = runtime.sessions.terminate_all(
        principal.user_id,
        principal.jwt_id,
        except_session_id=principal.session_id,
    )
    return Envelope(status="ok", data={"terminated": count})


@router.get("/session/statistics", response_model=Envelope, tags=["sessions"])
async def session_statistics(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    stats = runtime.sessions.statistics(principal.user_id)
    return Envelope(status="ok", data=SessionStatisticsResponse.from_statistics(stats))


@router.get("/session/configuration", response_model=Envelope, tags=["sessions"])
async def get_session_configuration(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.sessions.get_configuration())


@router.put("/session/configuration", response_model=Envelope, tags=["sessions"])
async def update_session_configuration(
    body: SessionConfig, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    updated = runtime.sessions.update_configuration(body)
    logger.info("session_configuration_changed", admin_id=principal.user_id)
    return Envelope(status="ok", data=updated)


@router.delete("/session/{session_id}", response_model=Envelope, tags=["sessions"])
async def terminate_session(session_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    terminated = runtime.sessions.terminate(session_id, principal.user_id).unwrap()
    return Envelope(status="ok", data={"terminated": terminated})


# security administration


@router.get("/security/blocked-ips", response_model=Envelope, tags=["security"])
async def list_blocked_ips(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    blocks = runtime.ip_blocker.list_blocked()
    return Envelope(
        status="ok",
        data=BlockedIpListResponse(items=[BlockedIpResponse.from_block(b) for b in blocks]),
    )


@router.post("/security/blocked-ips", response_model=Envelope, status_code=201, tags=["security"])
async def block_ip(body: BlockIpRequest, principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    block = runtime.ip_blocker.block_manually(
        body.ip_address, body.reason, body.duration_minutes
    ).unwrap()
    logger.info("admin_blocked_ip", admin_id=principal.user_id, ip_address=block.ip_address)
    return Envelope(status="ok", data=BlockedIpResponse.from_block(block))


@router.delete("/security/blocked-ips/{ip_address}", response_model=Envelope, tags=["security"])
async def unblock_ip(ip_address: str, principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    runtime.ip_blocker.unblock(ip_address).unwrap()
    logger.info("admin_unblocked_ip", admin_id=principal.user_id, ip_address=ip_address)
    return Envelope(status="ok", data={"unblocked": ip_address})


@router.get("/security/login-attempts/statistics", response_model=Envelope, tags=["security"])
async def login_attempt_statistics(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    stats = runtime.ip_blocker.statistics()
    return Envelope(status="ok", data=LoginAttemptStatisticsResponse.from_statistics(stats))


@router.get("/security/rate-limit/configuration", response_model=Envelope, tags=["security"])
async def get_rate_limit_configuration(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.security_settings.rate_limit)


@router.put("/security/rate-limit/configuration", response_model=Envelope, tags=["security"])
async def update_rate_limit_configuration(
    body: RateLimitConfig, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    updated = runtime.security_settings.update_rate_limit(body)
    logger.info("rate_limit_configuration_changed", admin_id=principal.user_id)
    return Envelope(status="ok", data=updated)
