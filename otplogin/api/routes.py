from __future__ import annotations

import ipaddress
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from otplogin.api.schemas import (
    AccessTokenResponse,
    Envelope,
    ForceLogoutRequest,
    LogoutResponse,
    MessageResponse,
    OtpRequest,
    OtpResponse,
    ProfileUpdateRequest,
    RefreshRequest,
    SignupRequest,
    SignupResponse,
    TokenResponse,
    UserProfile,
    UserStatsResponse,
    VerifyOtpRequest,
    dump,
)
from otplogin.logging import get_logger
from otplogin.service.auth import ClientInfo, LogoutResult, Principal
from otplogin.service.errors import ValidationError
from otplogin.service.rate_limit import RateDecision
from otplogin.service.runtime import Runtime
from otplogin.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _clean_ip(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = value.strip()
    if not value or value.lower() == "unknown":
        return None
    try:
        return str(ipaddress.ip_address(value))
    except ValueError:
        return None


def client_ip(request: Request, runtime: Runtime) -> Optional[str]:
    """Source address used for IP buckets and lockouts.

    Forwarding headers are honoured only when TRUST_FORWARDED_HEADERS is on,
    since any client can set them.
    """
    peer = request.client.host if request.client else None
    if runtime.settings.trust_forwarded_headers:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = _clean_ip(forwarded.split(",")[0]) if forwarded else None
        if first:
            return first
        real_ip = _clean_ip(request.headers.get("x-real-ip"))
        if real_ip:
            return real_ip
    return peer


def client_info(request: Request, runtime: Runtime = Depends(get_runtime)) -> ClientInfo:
    return ClientInfo(
        ip=client_ip(request, runtime), user_agent=request.headers.get("user-agent")
    )


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    @classmethod
    def from_decision(cls, decision: RateDecision) -> "RateLimitInfo":
        return cls(decision.rule.limit, decision.remaining, decision.reset_seconds)

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime: Runtime,
    endpoint: str,
    client: ClientInfo,
    *,
    email: Optional[str] = None,
    response: Optional[Response] = None,
) -> Optional[RateLimitInfo]:
    """Consume from the endpoint's IP and email buckets; raises 429 on denial."""
    decision = await runtime.rate_limiter.enforce(endpoint, ip=client.ip, email=email)
    if decision is None:
        return None
    info = RateLimitInfo.from_decision(decision)
    if response is not None:
        info.apply_headers(response)
    return info


async def get_current_principal(
    runtime: Runtime = Depends(get_runtime),
    authorization: Optional[str] = Header(None),
) -> Principal:
    return await runtime.auth.authenticate(authorization)


async def get_current_user(principal: Principal = Depends(get_current_principal)) -> User:
    return principal.user


def _logout_envelope(result: LogoutResult) -> Envelope:
    return Envelope(
        status="ok",
        data=dump(
            LogoutResponse(
                message=result.message,
                timestamp=result.timestamp,
                sessions_terminated=result.sessions_terminated,
            )
        ),
    )


def _profile(user: User, message: Optional[str] = None) -> dict:
    return dump(
        UserProfile(
            id=user.id,
            email=user.email,
            name=user.name,
            is_active=user.is_active,
            created_at=user.created_at,
            updated_at=user.updated_at,
            message=message,
        )
    )


# -- auth ----------------------------------------------------------------------


@router.post("/auth/signup", status_code=201, response_model=Envelope, tags=["auth"])
async def signup(
    body: SignupRequest,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
    client: ClientInfo = Depends(client_info),
):
    await _enforce_rate_limit(runtime, "signup", client, email=body.email, response=response)
    user = runtime.users.signup(body.email, body.name)
    return Envelope(
        status="ok",
        data=dump(SignupResponse(email=user.email, name=user.name, user_id=user.id)),
    )


@router.post("/auth/request-otp", response_model=Envelope, tags=["auth"])
async def request_otp(
    body: OtpRequest,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
    client: ClientInfo = Depends(client_info),
):
    await _enforce_rate_limit(
        runtime, "request-otp", client, email=body.email, response=response
    )
    challenge = await runtime.auth.request_otp(body.email, client)
    return Envelope(
        status="ok",
        data=dump(OtpResponse(email=challenge.email, expires_in=challenge.expires_in)),
    )


@router.post("/auth/verify-otp", response_model=Envelope, tags=["auth"])
async def verify_otp(
    body: VerifyOtpRequest,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
    client: ClientInfo = Depends(client_info),
):
    await _enforce_rate_limit(runtime, "verify-otp", client, response=response)
    pair = await runtime.auth.verify_otp(body.email, body.otp, client)
    return Envelope(
        status="ok",
        data=dump(
            TokenResponse(
                access_token=pair.access_token,
                refresh_token=pair.refresh_token,
                token_type=pair.token_type,
                expires_in=pair.expires_in,
                email=pair.email,
            )
        ),
    )


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(body: RefreshRequest, runtime: Runtime = Depends(get_runtime)):
    if not body.refresh_token or not body.refresh_token.strip():
        raise ValidationError(
            "Refresh token is required", detail={"field": "refreshToken"}
        )
    grant = await runtime.auth.refresh(body.refresh_token.strip())
    return Envelope(
        status="ok",
        data=dump(
            AccessTokenResponse(
                access_token=grant.access_token,
                token_type=grant.token_type,
                expires_in=grant.expires_in,
            )
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    runtime: Runtime = Depends(get_runtime),
    client: ClientInfo = Depends(client_info),
    authorization: Optional[str] = Header(None),
):
    await _enforce_rate_limit(runtime, "logout", client, response=response)
    result = await runtime.auth.logout(authorization, client)
    return _logout_envelope(result)


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(
    response: Response,
    runtime: Runtime = Depends(get_runtime),
    client: ClientInfo = Depends(client_info),
    authorization: Optional[str] = Header(None),
):
    await _enforce_rate_limit(runtime, "logout", client, response=response)
    result = await runtime.auth.logout_all(authorization, client)
    return _logout_envelope(result)


@router.post("/auth/invalidate-refresh-tokens", response_model=Envelope, tags=["auth"])
async def invalidate_refresh_tokens(
    response: Response,
    runtime: Runtime = Depends(get_runtime),
    client: ClientInfo = Depends(client_info),
    authorization: Optional[str] = Header(None),
):
    await _enforce_rate_limit(runtime, "logout", client, response=response)
    result = await runtime.auth.invalidate_refresh_tokens(authorization, client)
    return _logout_envelope(result)


@router.post("/auth/force-logout", response_model=Envelope, tags=["auth"])
async def force_logout(
    body: ForceLogoutRequest,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
    client: ClientInfo = Depends(client_info),
    principal: Principal = Depends(get_current_principal),
):
    await _enforce_rate_limit(runtime, "logout", client, response=response)
    if not body.email:
        raise ValidationError("Email is required", detail={"field": "email"})
    result = await runtime.auth.force_logout(principal, body.email, ip_address=body.ip_address)
    return _logout_envelope(result)


# -- user ----------------------------------------------------------------------


@router.get("/user/profile", response_model=Envelope, tags=["user"])
async def get_profile(user: User = Depends(get_current_user)):
    return Envelope(status="ok", data=_profile(user))


@router.put("/user/profile", response_model=Envelope, tags=["user"])
async def update_profile(
    body: ProfileUpdateRequest,
    runtime: Runtime = Depends(get_runtime),
    user: User = Depends(get_current_user),
):
    updated = runtime.users.update_profile(user, body.name)
    return Envelope(status="ok", data=_profile(updated, "Profile updated successfully"))


@router.post("/user/deactivate", response_model=Envelope, tags=["user"])
async def deactivate_account(
    runtime: Runtime = Depends(get_runtime),
    user: User = Depends(get_current_user),
):
    runtime.users.deactivate(user)
    return Envelope(
        status="ok", data=dump(MessageResponse(message="Account deactivated successfully"))
    )


@router.get("/user/stats", response_model=Envelope, tags=["user"])
async def user_stats(
    runtime: Runtime = Depends(get_runtime),
    user: User = Depends(get_current_user),
):
    stats = runtime.users.stats(user)
    return Envelope(
        status="ok",
        data=dump(
            UserStatsResponse(
                email=stats.email,
                account_status=stats.account_status,
                failed_attempts_last24_hours=stats.failed_attempts_last_24_hours,
                failed_attempts_last_hour=stats.failed_attempts_last_hour,
                member_since=stats.member_since,
            )
        ),
    )
