from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from linkhub.service.passwords import check_password_strength


def _normalize_unicode(value: str) -> str:
    """Normalize Unicode string using NFKC.

    Zero-width and bidi override characters are dropped first so they cannot
    be used to register look-alike addresses or usernames.
    """
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


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
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

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


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


def _validate_username(value: str) -> str:
    """Alphanumeric with underscores/hyphens, 3 to 32 chars."""
    value = _normalize_unicode(value.strip())
    if len(value) < 3:
        raise ValueError("username must be at least 3 characters")
    if len(value) > 32:
        raise ValueError("username must be at most 32 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError(
            "username must contain only alphanumeric characters, underscores, and hyphens"
        )
    return value


class SignupRequest(BaseModel):
    email: str
    username: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("username")
    @classmethod
    def _validate_signup_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return check_password_strength(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TwoFactorRequest(BaseModel):
    """Body for every ``/auth/2fa`` action; which fields are needed depends on the action."""

    session_id: Optional[str] = Field(default=None, max_length=256)
    code: Optional[str] = Field(default=None, max_length=32)
    method: Optional[str] = Field(default=None, max_length=16)
    password: Optional[str] = Field(default=None, max_length=128)

    @field_validator("method")
    @classmethod
    def _validate_method(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        normalized = value.strip().lower()
        if normalized not in {"totp", "email"}:
            raise ValueError("method must be 'totp' or 'email'")
        return normalized

    @field_validator("code")
    @classmethod
    def _strip_code(cls, value: Optional[str]) -> Optional[str]:
        return value.strip() if value is not None else None


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return check_password_strength(value)


class EmailChangeRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_new_email(cls, value: str) -> str:
        return _validate_email(value)


class UsernameChangeRequest(BaseModel):
    username: str

    @field_validator("username")
    @classmethod
    def _validate_new_username(cls, value: str) -> str:
        return _validate_username(value)


class UserResponse(BaseModel):
    id: str
    email: str
    username: str
    role: str
    permissions: List[str] = Field(default_factory=list)
    companies: List[Dict[str, str]] = Field(default_factory=list)
    created_at: datetime


class AuthResponse(BaseModel):
    user: UserResponse
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    token_type: str = "bearer"
    two_factor_required: bool = False


class LoginChallengeResponse(BaseModel):
    session_id: str
    two_factor_required: bool = True
    methods: List[str]
    expires_at: datetime
    email_sent: bool = False


class TwoFactorSetupResponse(BaseModel):
    method: str
    backup_codes: List[str] = Field(default_factory=list)
    secret: Optional[str] = None
    provisioning_uri: Optional[str] = None
    session_id: Optional[str] = None
    email_sent: Optional[bool] = None


class TwoFactorStatusResponse(BaseModel):
    totp_enabled: bool
    email_enabled: bool
    totp_pending: bool
    backup_codes_remaining: int
    methods: List[str] = Field(default_factory=list)


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]


class EntitlementResponse(BaseModel):
    effective_tier: str
    raw_tier: str
    status: str
    has_access: bool
    access_until: Optional[datetime] = None
    reason: str
    features: List[str] = Field(default_factory=list)
    limits: Dict[str, int] = Field(default_factory=dict)
    table_version: str


class FeatureCheckResponse(BaseModel):
    feature: str
    allowed: bool
    effective_tier: str
    required_tier: Optional[str] = None
