from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from siteauth.storage.models import Account


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
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
    "locked",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
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
_OTP_PATTERN = re.compile(r"^[0-9]{4,10}$")


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
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_otp(value: str) -> str:
    value = value.strip()
    if not _OTP_PATTERN.match(value):
        raise ValueError("otp must be a numeric code")
    return value


def _validate_name(value: str) -> str:
    value = _normalize_unicode(value).strip()
    if not value:
        raise ValueError("name must not be blank")
    return value


class _EmailModel(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_email_field(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(_EmailModel):
    password: str
    first_name: str = Field(..., max_length=100)
    last_name: str = Field(..., max_length=100)
    role: Literal["project_manager", "project_supervisor"] = "project_manager"
    phone_number: Optional[str] = Field(default=None, max_length=32)
    company_id: Optional[str] = Field(default=None, max_length=64)
    supervisors_manager_id: Optional[str] = Field(default=None, max_length=64)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return _validate_name(value)


class LoginRequest(_EmailModel):
    password: str = Field(..., max_length=128)
    device_token: Optional[str] = Field(default=None, max_length=512)


class VerifyEmailRequest(_EmailModel):
    token: str = Field(..., max_length=2048)
    otp: str

    @field_validator("otp")
    @classmethod
    def _validate_otp_field(cls, value: str) -> str:
        return _validate_otp(value)


class EmailRequest(_EmailModel):
    pass


class ResetPasswordRequest(_EmailModel):
    password: str
    otp: str

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("otp")
    @classmethod
    def _validate_otp_field(cls, value: str) -> str:
        return _validate_otp(value)


class ChangePasswordRequest(BaseModel):
    old_password: str = Field(..., max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @model_validator(mode="after")
    def _reject_same_password(self):
        if self.old_password == self.new_password:
            raise ValueError("new password must differ from the current password")
        return self


class SetInitialPasswordRequest(BaseModel):
    password: str

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class InviteSupervisorRequest(_EmailModel):
    first_name: str = Field(..., max_length=100)
    last_name: str = Field(..., max_length=100)
    phone_number: Optional[str] = Field(default=None, max_length=32)

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return _validate_name(value)


class ProvisionAdminRequest(_EmailModel):
    first_name: str = Field(..., max_length=100)
    last_name: str = Field(..., max_length=100)
    role: Literal["admin", "super_admin"] = "admin"

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return _validate_name(value)


class AccountResponse(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: str
    role: str
    phone_number: Optional[str] = None
    company_id: Optional[str] = None
    supervisors_manager_id: Optional[str] = None
    is_email_verified: bool
    is_reset_password: bool
    is_password_temporary: bool
    created_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            email=account.email,
            first_name=account.first_name,
            last_name=account.last_name,
            role=account.role.value,
            phone_number=account.phone_number,
            company_id=account.company_id,
            supervisors_manager_id=account.supervisors_manager_id,
            is_email_verified=account.is_email_verified,
            is_reset_password=account.is_reset_password,
            is_password_temporary=account.is_password_temporary,
            created_at=account.created_at,
        )


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime


class RegisterResponse(BaseModel):
    user: AccountResponse
    verification_token: str
    otp: Optional[str] = None
    otp_expires_at: datetime


class LoginResponse(BaseModel):
    user: AccountResponse
    tokens: TokenPairResponse
    is_setup_complete: bool


class VerifyEmailResponse(BaseModel):
    user: AccountResponse
    tokens: TokenPairResponse


class OtpDispatchResponse(BaseModel):
    email: str
    purpose: str
    token: str
    otp: Optional[str] = None
    expires_at: datetime


class ProvisionedAccountResponse(BaseModel):
    user: AccountResponse
    temporary_password: Optional[str] = None


class MeResponse(BaseModel):
    user: AccountResponse
    role: str
    company_id: Optional[str] = None
