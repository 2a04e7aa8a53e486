from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from otplogin.config import Settings
from otplogin.logging import get_logger, redact_email
from otplogin.service.errors import RateLimitedError

logger = get_logger(__name__)

KEY_CLASS_IP = "ip"
KEY_CLASS_EMAIL = "email"

_GENERIC_MESSAGE = "Too many requests. Please try again later."
_IP_MESSAGE = "IP rate limit exceeded. Too many requests from this IP address."
_EMAIL_MESSAGE = "Email rate limit exceeded. Too many OTP requests for this email address."


class BucketBackend(Protocol):
    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        ...


@dataclass(frozen=True)
class RateRule:
    """Capacity of one key-class on one endpoint group.

    ``limit`` tokens refill linearly over ``window_seconds``.
    """

    endpoint: str
    key_class: str
    limit: int
    window_seconds: int = 60
    message: str = _GENERIC_MESSAGE


@dataclass(frozen=True)
class RateDecision:
    rule: RateRule
    allowed: bool
    remaining: int
    reset_seconds: int


def default_rules(settings: Settings) -> List[RateRule]:
    window = settings.rate_limit_window_seconds
    return [
        RateRule("request-otp", KEY_CLASS_IP, settings.rate_limit_otp_ip_per_minute, window, _IP_MESSAGE),
        RateRule("request-otp", KEY_CLASS_EMAIL, settings.rate_limit_otp_email_per_minute, window, _EMAIL_MESSAGE),
        RateRule("signup", KEY_CLASS_IP, settings.rate_limit_signup_ip_per_minute, window, _IP_MESSAGE),
        RateRule("signup", KEY_CLASS_EMAIL, settings.rate_limit_signup_email_per_minute, window, _EMAIL_MESSAGE),
        RateRule("verify-otp", KEY_CLASS_IP, settings.rate_limit_verify_ip_per_minute, window),
        RateRule("logout", KEY_CLASS_IP, settings.rate_limit_logout_ip_per_minute, window),
    ]


class RateLimiter:
    """Token-bucket gate keyed by endpoint group, key-class and subject.

    Buckets live in the shared cache; refill is computed lazily at consume
    time and refill-plus-consume is a single atomic step per key.
    """

    def __init__(self, backend: BucketBackend, rules: Iterable[RateRule]):
        self.backend = backend
        self._rules: Dict[str, List[RateRule]] = {}
        for rule in rules:
            self._rules.setdefault(rule.endpoint, []).append(rule)

    @classmethod
    def from_settings(cls, backend: BucketBackend, settings: Settings) -> "RateLimiter":
        return cls(backend, default_rules(settings))

    def rules_for(self, endpoint: str) -> List[RateRule]:
        return list(self._rules.get(endpoint, []))

    @staticmethod
    def _bucket_key(rule: RateRule, subject: str) -> str:
        return f"{rule.endpoint}:{rule.key_class}:{subject}"

    async def check(self, rule: RateRule, subject: str, *, weight: int = 1) -> RateDecision:
        if rule.limit <= 0:
            return RateDecision(rule, True, 0, 0)
        window = rule.window_seconds
        if window <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                endpoint=rule.endpoint,
                key_class=rule.key_class,
                window_seconds=window,
            )
            window = 60
        allowed, remaining, reset_seconds = await self.backend.check_rate_limit(
            self._bucket_key(rule, subject), rule.limit, window, cost=weight
        )
        return RateDecision(rule, allowed, remaining, reset_seconds)

    async def try_consume(self, rule: RateRule, subject: str, *, weight: int = 1) -> bool:
        return (await self.check(rule, subject, weight=weight)).allowed

    async def enforce(
        self,
        endpoint: str,
        *,
        ip: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[RateDecision]:
        """Consume one token from every bucket configured for ``endpoint``.

        Buckets are checked in declaration order (IP before email) and the
        first denial raises :class:`RateLimitedError` scoped to its key-class.
        Returns the tightest passing decision for response headers.
        """

        subjects = {KEY_CLASS_IP: ip, KEY_CLASS_EMAIL: email}
        tightest: Optional[RateDecision] = None
        for rule in self._rules.get(endpoint, []):
            subject = subjects.get(rule.key_class)
            if not subject:
                continue
            decision = await self.check(rule, subject)
            if not decision.allowed:
                logger.warning(
                    "rate_limit_exceeded",
                    endpoint=endpoint,
                    key_class=rule.key_class,
                    subject=redact_email(subject) if rule.key_class == KEY_CLASS_EMAIL else subject,
                    retry_after=decision.reset_seconds,
                )
                raise RateLimitedError(
                    rule.message,
                    scope=rule.key_class,
                    limit=rule.limit,
                    retry_after=decision.reset_seconds or rule.window_seconds,
                )
            if tightest is None or decision.remaining < tightest.remaining:
                tightest = decision
        return tightest
