from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from applicant_auth.service.passwords import MAX_PASSWORD_LENGTH, password_policy_violation

MAX_TOKEN_LENGTH = 4096


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi-override characters."""
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

    code: str = Field(..., description="Stable error code")
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
    """API envelope format."""

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


def _validate_password_strength(value: str) -> str:
    problem = password_policy_violation(value)
    if problem:
        raise ValueError(problem)
    return value


class _EmailField(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_email_field(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(_EmailField):
    password: str
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=32)
    country: Optional[str] = Field(default=None, max_length=64)
    city: Optional[str] = Field(default=None, max_length=100)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    def profile(self) -> dict:
        return self.model_dump(exclude={"email", "password"}, exclude_none=True)


class LoginRequest(BaseModel):
    # Lenient on purpose: malformed identifiers still count as login attempts
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _normalize_login_email(cls, value: str) -> str:
        return _normalize_unicode(value.strip().lower())


class GoogleLoginRequest(BaseModel):
    id_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class EmailRequest(_EmailField):
    """Body for resend-activation, forgot-password and send-otp."""


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=512)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class SetPasswordRequest(BaseModel):
    new_password: str
    confirm_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)

    @field_validator("new_password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class EmailChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    new_email: str

    @field_validator("new_email")
    @classmethod
    def _validate_new_email(cls, value: str) -> str:
        return _validate_email(value)


class SsoOwnershipRequest(BaseModel):
    id_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class SsoNewEmailRequest(BaseModel):
    id_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    new_email: str

    @field_validator("new_email")
    @classmethod
    def _validate_new_email(cls, value: str) -> str:
        return _validate_email(value)


class SsoEmailChangeRequest(BaseModel):
    old_email_proof: str = Field(..., min_length=1, max_length=512)
    new_email_proof: str = Field(..., min_length=1, max_length=512)


class OtpVerifyRequest(_EmailField):
    code: str = Field(..., min_length=6, max_length=6)

    @field_validator("code")
    @classmethod
    def _digits_only(cls, value: str) -> str:
        if not (value.isascii() and value.isdigit()):
            raise ValueError("code must be 6 digits")
        return value


class AccountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    role: str
    auth_provider: str
    enabled: bool
    activated: bool
    profile: dict = Field(default_factory=dict)
    created_at: datetime


class AuthResponse(BaseModel):
    account: AccountResponse
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime


class SessionResponse(AuthResponse):
    valid: bool = True


class ProofResponse(BaseModel):
    proof: str
    expires_in: int


class TokenVerification(BaseModel):
    """Plain (non-envelope) body of the inter-service verification endpoint."""

    valid: bool
    system_id: Optional[str] = None
    subject: Optional[str] = None
    username: Optional[str] = None
    message: str

    @model_validator(mode="after")
    def _subject_only_when_valid(self):
        if not self.valid:
            self.subject = None
            self.username = None
        return self
