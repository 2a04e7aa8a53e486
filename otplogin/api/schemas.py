from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: Optional[str]) -> str:
    """NFKC-normalize, lowercase and shape-check an email address."""
    if value is None or not str(value).strip():
        raise ValueError("must not be blank")
    normalized = unicodedata.normalize("NFKC", str(value).strip().lower())
    if len(normalized) > 254:
        raise ValueError("Invalid email format")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("Invalid email format")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Invalid email format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Invalid email format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Invalid email format")
    return normalized


def _validate_name(value: Optional[str], min_length: int, max_length: int) -> str:
    if value is None or not value.strip():
        raise ValueError("must not be blank")
    stripped = value.strip()
    if not min_length <= len(stripped) <= max_length:
        raise ValueError(f"size must be between {min_length} and {max_length}")
    return stripped


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -- requests ----------------------------------------------------------------


class SignupRequest(_CamelModel):
    name: str
    email: str

    @field_validator("name")
    @classmethod
    def _validate_signup_name(cls, value: str) -> str:
        return _validate_name(value, 2, 50)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)


class OtpRequest(_CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_otp_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifyOtpRequest(_CamelModel):
    email: str
    otp: str

    @field_validator("email")
    @classmethod
    def _validate_verify_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("otp")
    @classmethod
    def _validate_otp(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be blank")
        return value.strip()


class RefreshRequest(_CamelModel):
    refresh_token: Optional[str] = None


class ForceLogoutRequest(_CamelModel):
    email: Optional[str] = None
    ip_address: Optional[str] = Field(default=None, max_length=64)

    @field_validator("email")
    @classmethod
    def _validate_force_logout_email(cls, value: Optional[str]) -> Optional[str]:
        # absence is reported by the route as "Email is required"
        if value is None or not value.strip():
            return None
        return _validate_email(value)


class ProfileUpdateRequest(_CamelModel):
    name: str

    @field_validator("name")
    @classmethod
    def _validate_profile_name(cls, value: str) -> str:
        return _validate_name(value, 2, 100)


# -- responses ---------------------------------------------------------------


class SignupResponse(_CamelModel):
    message: str = "User registered successfully"
    email: str
    name: str
    user_id: str


class OtpResponse(_CamelModel):
    message: str = "OTP has been sent to your email"
    email: str
    expires_in: int


class TokenResponse(_CamelModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    email: str


class AccessTokenResponse(_CamelModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int


class LogoutResponse(_CamelModel):
    message: str
    timestamp: datetime
    sessions_terminated: int = 0


class UserProfile(_CamelModel):
    id: str
    email: str
    name: str
    is_active: bool
    created_at: datetime
    updated_at: datetime
    message: Optional[str] = None


class MessageResponse(_CamelModel):
    message: str


class UserStatsResponse(_CamelModel):
    email: str
    account_status: str
    failed_attempts_last24_hours: int = Field(alias="failedAttemptsLast24Hours")
    failed_attempts_last_hour: int
    member_since: datetime


def dump(model: BaseModel) -> dict:
    """Serialize a response model with its camelCase aliases."""
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)
