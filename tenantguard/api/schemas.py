from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tenantguard.logging import get_correlation_id
from tenantguard.storage.models import Role

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
COMMON_PASSWORDS = frozenset({"Password123", "Admin123", "Welcome123", "12345678"})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is a stable machine-readable kind."""

    code: str
    message: str
    details: Optional[Any] = None


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("Please provide a valid email")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Please provide a valid email")
    labels = domain.split(".")
    if len(labels) < 2:
        raise ValueError("Please provide a valid email")
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Please provide a valid email")
    return normalized


def validate_password_strength(value: str) -> str:
    """Apply the account password policy; returns the password unchanged."""
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    if not value[0].isupper():
        raise ValueError("password must start with a capital letter")
    if value in COMMON_PASSWORDS:
        raise ValueError("password is too common")
    return value


class _PasswordConfirmation(BaseModel):
    password: str
    confirm_password: str

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return validate_password_strength(value)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("Passwords are not the same")
        return self


# -- requests ---------------------------------------------------------------


class RegisterRequest(_PasswordConfirmation):
    name: str = Field(..., min_length=1, max_length=120)
    email: str
    role: Role = Role.CASHIER
    tenant_name: Optional[str] = Field(default=None, max_length=200)
    phone_number: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class ForgotPasswordRequest(BaseModel):
    email: str = Field(..., max_length=254)


class ResetPasswordRequest(_PasswordConfirmation):
    pass


class ChangePasswordRequest(_PasswordConfirmation):
    current_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class MFAActivateRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=6, pattern=r"^\d{6}$")


class MFADisableRequest(BaseModel):
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class MFAVerifyLoginRequest(BaseModel):
    mfa_token: str
    code: str = Field(..., min_length=6, max_length=6, pattern=r"^\d{6}$")


class MFARecoveryLoginRequest(BaseModel):
    mfa_token: str
    recovery_code: str = Field(..., min_length=1, max_length=32)


class UpdateMeRequest(BaseModel):
    # Unknown keys are dropped here and again by the service allow-list
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    email: Optional[str] = None
    phone_number: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None


class AdminUpdateUserRequest(UpdateMeRequest):
    role: Optional[Role] = None
    tenant_id: Optional[str] = None
    is_active: Optional[bool] = None


class TenantCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    is_active: bool = True


class TenantUpdateRequest(BaseModel):
    is_active: bool


# -- responses --------------------------------------------------------------


class TenantResponse(BaseModel):
    id: str
    name: str
    is_active: bool
    created_at: datetime


class UserResponse(BaseModel):
    id: str
    name: str
    email: str
    role: Role
    tenant_id: Optional[str] = None
    tenant_name: Optional[str] = None
    phone_number: Optional[str] = None
    is_active: bool = True
    mfa_enabled: bool = False
    created_at: datetime


class UserListResponse(BaseModel):
    items: List[UserResponse]


class TenantListResponse(BaseModel):
    items: List[TenantResponse]


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime


class LoginResponse(BaseModel):
    mfa_required: bool = False
    mfa_token: Optional[str] = None
    access_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_at: Optional[datetime] = None
    session_id: Optional[str] = None
    user: Optional[UserResponse] = None
    recovery_codes_remaining: Optional[int] = None


class MFASetupResponse(BaseModel):
    secret: str
    otpauth_uri: str


class RecoveryCodesResponse(BaseModel):
    recovery_codes: List[str]


class SessionResponse(BaseModel):
    id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    last_active: datetime
    created_at: datetime
    current: bool = False


class SessionListResponse(BaseModel):
    items: List[SessionResponse]
