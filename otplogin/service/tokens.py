from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

from otplogin.config import Settings
from otplogin.logging import get_logger
from otplogin.service.errors import InvalidTokenError

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
TOKEN_TYPES = (ACCESS, REFRESH)


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    token_type: str
    jti: str
    issued_at: float
    expires_at: float

    @property
    def issued_at_dt(self) -> datetime:
        return datetime.fromtimestamp(self.issued_at, tz=timezone.utc)

    @property
    def expires_at_dt(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc)


TokenLike = Union[str, TokenClaims]


class TokenService:
    """Mint and check HS256-signed bearer tokens.

    Tokens carry ``sub`` (email), ``token_type``, a random ``jti``, ``iat`` and
    ``exp`` alongside issuer/audience claims. :meth:`parse` checks signature
    and structure only; expiry is left to the predicates so callers can still
    read an expired token, e.g. to revoke it.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl_seconds: int = 15 * 60,
        refresh_ttl_seconds: int = 30 * 24 * 60 * 60,
        leeway_seconds: float = 0.0,
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ValueError("token signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "TokenService":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            **kwargs,
        )

    def ttl_for(self, token_type: str) -> int:
        if token_type == ACCESS:
            return self.access_ttl_seconds
        if token_type == REFRESH:
            return self.refresh_ttl_seconds
        raise ValueError(f"unknown token type: {token_type}")

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def issue(self, email: str, token_type: str) -> str:
        now = self._clock()
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": email,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": int(now + self.ttl_for(token_type)),
        }
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def parse(self, token: TokenLike) -> TokenClaims:
        if isinstance(token, TokenClaims):
            return token
        if not token or not isinstance(token, str):
            raise InvalidTokenError("missing token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("malformed token")

        # Pin the algorithm so "none" or RS/HS confusion cannot slip through
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise InvalidTokenError("malformed token header")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError("unsupported token algorithm")

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise InvalidTokenError("bad token signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("malformed token payload")
        if not isinstance(payload, dict):
            raise InvalidTokenError("malformed token payload")

        if payload.get("iss") != self.issuer:
            raise InvalidTokenError("unexpected token issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise InvalidTokenError("unexpected token audience")

        token_type = payload.get("token_type")
        subject = payload.get("sub")
        jti = payload.get("jti")
        if token_type not in TOKEN_TYPES or not subject or not jti:
            raise InvalidTokenError("incomplete token claims")
        try:
            issued_at = float(payload["iat"])
            expires_at = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("invalid token timestamps")
        return TokenClaims(
            subject=str(subject),
            token_type=token_type,
            jti=str(jti),
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def is_expired(self, token: TokenLike) -> bool:
        claims = self.parse(token)
        return claims.expires_at <= self._clock() - self.leeway_seconds

    def is_type(self, token: TokenLike, token_type: str) -> bool:
        return self.parse(token).token_type == token_type

    def subject_of(self, token: TokenLike) -> str:
        return self.parse(token).subject

    def validate(self, token: TokenLike, expected_subject: str) -> bool:
        claims = self.parse(token)
        return claims.subject == expected_subject and not self.is_expired(claims)

    def refresh(self, refresh_token: TokenLike) -> str:
        """Mint a new access token from a live refresh token.

        The refresh token itself is neither rotated nor invalidated.
        """
        claims = self.parse(refresh_token)
        if claims.token_type != REFRESH:
            raise InvalidTokenError("Invalid refresh token")
        if self.is_expired(claims):
            raise InvalidTokenError("Invalid or expired refresh token")
        return self.issue(claims.subject, ACCESS)

    def seconds_remaining(self, token: TokenLike) -> int:
        claims = self.parse(token)
        return max(0, int(claims.expires_at - self._clock()))


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, credentials = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()
