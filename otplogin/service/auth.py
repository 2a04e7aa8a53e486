from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from otplogin.logging import get_logger, redact_email
from otplogin.service.attempts import AttemptTracker
from otplogin.service.audit import (
    LOGOUT_ALL_DEVICES,
    LOGOUT_FORCED,
    LOGOUT_REFRESH_INVALIDATION,
    LOGOUT_SINGLE,
    AuditService,
)
from otplogin.service.email import EmailDispatcher
from otplogin.service.errors import (
    AuthenticationError,
    ForbiddenError,
    InvalidTokenError,
    RateLimitedError,
    ValidationError,
)
from otplogin.service.otp import OtpStore, normalize_email
from otplogin.service.revocation import RevocationRegistry
from otplogin.service.tokens import (
    ACCESS,
    REFRESH,
    TokenClaims,
    TokenService,
    extract_bearer,
)
from otplogin.storage.models import User, utcnow

logger = get_logger(__name__)

INVALID_MAIL = "INVALID MAIL"
INVALID_OTP = "Invalid OTP. Please try again."
INVALID_REFRESH = "Invalid or expired refresh token"
INVALID_ACCESS = "Invalid or expired token"
OTP_ATTEMPTS_EXCEEDED = "Too many OTP attempts. Please try again later."


class UserLookup(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...


@dataclass(frozen=True)
class ClientInfo:
    ip: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class OtpChallenge:
    email: str
    expires_in: int


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    email: str
    token_type: str = "Bearer"


@dataclass(frozen=True)
class AccessGrant:
    access_token: str
    expires_in: int
    token_type: str = "Bearer"


@dataclass(frozen=True)
class LogoutResult:
    message: str
    sessions_terminated: int
    timestamp: datetime


@dataclass(frozen=True)
class Principal:
    user: User
    claims: TokenClaims
    token: str


class AuthOrchestrator:
    """Request-OTP, verify-OTP, refresh and logout flows.

    Each flow is a short decision chain over the limiter, lockout tracker,
    OTP store, token service and revocation registry; the first failing step
    raises the matching :mod:`otplogin.service.errors` exception.

    Enumeration policy: unknown and deactivated addresses are treated alike.
    Requesting a code for either yields ``INVALID MAIL``; verifying or
    refreshing for either yields the same 401 as a wrong code or bad token.
    """

    def __init__(
        self,
        *,
        users: UserLookup,
        otp: OtpStore,
        tokens: TokenService,
        revocation: RevocationRegistry,
        attempts: AttemptTracker,
        audit: AuditService,
        mailer: Optional[EmailDispatcher] = None,
    ):
        self.users = users
        self.otp = otp
        self.tokens = tokens
        self.revocation = revocation
        self.attempts = attempts
        self.audit = audit
        self.mailer = mailer

    def _active_user(self, email: str) -> Optional[User]:
        user = self.users.get_user_by_email(email)
        if user is None or not user.is_active:
            return None
        return user

    def _lockout_error(self, scope: str) -> RateLimitedError:
        if scope == "ip_lockout":
            minutes = self.attempts.ip_window_minutes
            return RateLimitedError(
                "IP temporarily blocked due to too many failed attempts. "
                f"Please try again in {minutes} minutes.",
                scope=scope,
                limit=self.attempts.ip_max_failures,
                retry_after=minutes * 60,
            )
        minutes = self.attempts.account_window_minutes
        return RateLimitedError(
            "Account temporarily locked due to too many failed attempts. "
            f"Please try again in {minutes} minutes.",
            scope=scope,
            limit=self.attempts.account_max_failures,
            retry_after=minutes * 60,
        )

    # -- OTP challenge -----------------------------------------------------

    async def request_otp(self, email: str, client: ClientInfo) -> OtpChallenge:
        email = normalize_email(email)
        if await self.otp.is_rate_limited(email):
            _, retry_after = await self.otp.attempts(email)
            logger.warning("otp_request_attempts_exhausted", email=redact_email(email))
            raise RateLimitedError(
                OTP_ATTEMPTS_EXCEEDED,
                scope="otp_attempts",
                limit=self.otp.max_attempts,
                retry_after=retry_after or self.otp.ttl_seconds,
            )

        user = self._active_user(email)
        if user is None:
            logger.info("otp_request_rejected", email=redact_email(email))
            raise ValidationError(INVALID_MAIL)
        if self.attempts.is_account_locked(user.id):
            raise self._lockout_error("account_lockout")
        if self.attempts.is_ip_locked(client.ip):
            raise self._lockout_error("ip_lockout")

        code = await self.otp.generate(email)
        self._dispatch_code(email, code)
        remaining = await self.otp.remaining_ttl(email)
        expires_in = int(remaining.total_seconds()) or self.otp.ttl_seconds
        return OtpChallenge(email=redact_email(email), expires_in=expires_in)

    def _dispatch_code(self, email: str, code: str) -> None:
        if self.mailer is None:
            logger.warning("otp_mailer_missing", email=redact_email(email))
            return
        try:
            self.mailer.send_otp_code(email, code, max(1, self.otp.ttl_seconds // 60))
        except RuntimeError as exc:
            # executor already shut down
            logger.error("otp_dispatch_rejected", email=redact_email(email), error=str(exc))

    async def verify_otp(self, email: str, code: str, client: ClientInfo) -> TokenPair:
        email = normalize_email(email)
        user = self.users.get_user_by_email(email)
        if user is None or not user.is_active:
            self.audit.record_login(
                email,
                user=user,
                ip_address=client.ip,
                user_agent=client.user_agent,
                successful=False,
                failure_reason="Unknown email" if user is None else "Account is inactive",
            )
            raise AuthenticationError(INVALID_OTP)
        if self.attempts.is_account_locked(user.id):
            raise self._lockout_error("account_lockout")

        if not await self.otp.verify(email, code):
            self.audit.record_login(
                email,
                user=user,
                ip_address=client.ip,
                user_agent=client.user_agent,
                successful=False,
                failure_reason="Invalid OTP",
            )
            raise AuthenticationError(INVALID_OTP)

        access_token = self.tokens.issue(email, ACCESS)
        refresh_token = self.tokens.issue(email, REFRESH)
        self.audit.record_login(
            email,
            user=user,
            ip_address=client.ip,
            user_agent=client.user_agent,
            successful=True,
        )
        logger.info("login_succeeded", email=redact_email(email), user_id=user.id)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.tokens.access_ttl_seconds,
            email=email,
        )

    # -- tokens ------------------------------------------------------------

    async def refresh(self, refresh_token: str) -> AccessGrant:
        if not refresh_token:
            raise ValidationError("Refresh token is required")
        try:
            claims = self.tokens.parse(refresh_token)
        except InvalidTokenError:
            raise InvalidTokenError(INVALID_REFRESH)
        if claims.token_type != REFRESH:
            raise InvalidTokenError("Invalid refresh token")
        if self.tokens.is_expired(claims) or self.revocation.is_revoked(claims):
            logger.info("refresh_rejected", email=redact_email(claims.subject), jti=claims.jti)
            raise InvalidTokenError(INVALID_REFRESH)
        if self._active_user(claims.subject) is None:
            raise InvalidTokenError(INVALID_REFRESH)
        access_token = self.tokens.refresh(claims)
        return AccessGrant(access_token=access_token, expires_in=self.tokens.access_ttl_seconds)

    def _live_access_claims(self, token: Optional[str]) -> Optional[TokenClaims]:
        if not token:
            return None
        try:
            claims = self.tokens.parse(token)
        except InvalidTokenError:
            return None
        if claims.token_type != ACCESS or self.tokens.is_expired(claims):
            return None
        if self.revocation.is_revoked(claims):
            return None
        return claims

    async def authenticate(self, authorization: Optional[str]) -> Principal:
        token = extract_bearer(authorization)
        if not token:
            raise AuthenticationError("Authentication required")
        claims = self._live_access_claims(token)
        if claims is None:
            raise AuthenticationError(INVALID_ACCESS)
        user = self._active_user(claims.subject)
        if user is None:
            raise AuthenticationError(INVALID_ACCESS)
        return Principal(user=user, claims=claims, token=token)

    # -- logout family -----------------------------------------------------

    def _signed_claims(self, authorization: Optional[str]) -> Optional[TokenClaims]:
        token = extract_bearer(authorization)
        if not token:
            return None
        try:
            return self.tokens.parse(token)
        except InvalidTokenError:
            return None

    def _unidentified(self, flow: str, message: str) -> LogoutResult:
        logger.info("logout_unidentified", flow=flow)
        return LogoutResult(message=message, sessions_terminated=0, timestamp=utcnow())

    async def logout(self, authorization: Optional[str], client: ClientInfo) -> LogoutResult:
        """Revoke the presented token and the subject's refresh tokens.

        Any validly signed token is accepted, expired or not; anything else
        still gets the generic success response.
        """
        message = "Logged out successfully"
        claims = self._signed_claims(authorization)
        if claims is None:
            return self._unidentified("logout", message)
        reason = "User logout"
        already_revoked = claims.token_type == REFRESH and self.revocation.is_revoked(claims)
        terminated = self.revocation.revoke_all_for_subject_and_type(
            claims.subject,
            REFRESH,
            "User logout - invalidate refresh tokens",
            client.ip,
            client.user_agent,
        )
        if claims.token_type == REFRESH:
            # covered by the refresh cutoff just recorded
            terminated += int(not already_revoked)
        else:
            terminated += int(
                self.revocation.revoke(claims, reason, client.ip, client.user_agent)
            )
        await self.otp.clear(claims.subject)
        self.audit.record_logout(
            claims.subject,
            LOGOUT_SINGLE,
            reason=reason,
            ip_address=client.ip,
            user_agent=client.user_agent,
            sessions_terminated=terminated,
        )
        return LogoutResult(message=message, sessions_terminated=terminated, timestamp=utcnow())

    async def logout_all(
        self, authorization: Optional[str], client: ClientInfo
    ) -> LogoutResult:
        message = "Logged out from all devices successfully"
        claims = self._live_access_claims(extract_bearer(authorization))
        if claims is None:
            return self._unidentified("logout_all", message)
        reason = "Logout all devices"
        terminated = self.revocation.revoke_all_for_subject(
            claims.subject, reason, client.ip, client.user_agent
        )
        terminated += int(self.revocation.revoke(claims, reason, client.ip, client.user_agent))
        await self.otp.clear(claims.subject)
        self.audit.record_logout(
            claims.subject,
            LOGOUT_ALL_DEVICES,
            reason=reason,
            ip_address=client.ip,
            user_agent=client.user_agent,
            sessions_terminated=terminated,
        )
        return LogoutResult(message=message, sessions_terminated=terminated, timestamp=utcnow())

    async def invalidate_refresh_tokens(
        self, authorization: Optional[str], client: ClientInfo
    ) -> LogoutResult:
        message = "All refresh tokens invalidated successfully"
        claims = self._live_access_claims(extract_bearer(authorization))
        if claims is None:
            return self._unidentified("invalidate_refresh_tokens", message)
        reason = "Refresh token invalidation"
        terminated = self.revocation.revoke_all_for_subject_and_type(
            claims.subject, REFRESH, reason, client.ip, client.user_agent
        )
        self.audit.record_logout(
            claims.subject,
            LOGOUT_REFRESH_INVALIDATION,
            reason=reason,
            ip_address=client.ip,
            user_agent=client.user_agent,
            sessions_terminated=terminated,
        )
        return LogoutResult(message=message, sessions_terminated=terminated, timestamp=utcnow())

    async def force_logout(
        self,
        admin: Principal,
        email: str,
        *,
        ip_address: Optional[str] = None,
    ) -> LogoutResult:
        if not admin.user.is_admin:
            logger.warning("force_logout_denied", user_id=admin.user.id)
            raise ForbiddenError("Admin privileges required")
        email = normalize_email(email)
        reason = "Force logout by admin"
        terminated = self.revocation.revoke_all_for_subject(
            email, reason, ip_address, "Admin System"
        )
        await self.otp.clear(email)
        self.audit.record_logout(
            email,
            LOGOUT_FORCED,
            reason=reason,
            ip_address=ip_address,
            user_agent="Admin System",
            sessions_terminated=terminated,
        )
        logger.warning(
            "force_logout_executed", email=redact_email(email), admin_id=admin.user.id
        )
        return LogoutResult(
            message="User has been forcefully logged out from all devices",
            sessions_terminated=terminated,
            timestamp=utcnow(),
        )
