from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from aegisid.logging import get_correlation_id
from aegisid.service.credentials import validate_email, validate_username

_VALID_ERROR_CODES = frozenset(
    {
        "validation_error",
        "unauthenticated",
        "invalid_credentials",
        "invalid_challenge",
        "mfa_required",
        "invalid_mfa_code",
        "mfa_expired",
        "session_expired",
        "forbidden",
        "not_found",
        "conflict",
        "cannot_revoke_current",
        "mfa_locked_out",
        "rate_limited",
        "resend_cap_exceeded",
        "email_send_failed",
        "server_error",
    }
)


class ErrorBody(BaseModel):
    """Error envelope body with a stable ``code`` clients can branch on."""

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
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class RegisterRequest(BaseModel):
    username: str = Field(..., max_length=30)
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=128)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        return validate_username(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return validate_email(value)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=128)
    remember_me: bool = False

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        # Malformed addresses fall through to invalid_credentials
        return value.strip().lower()


class MFAVerifyRequest(BaseModel):
    challenge_token: str = Field(..., max_length=4096)
    code: str = Field(..., min_length=1, max_length=32)
    method: Optional[Literal["totp", "email", "backup_code"]] = None
    remember_device: bool = False


class MFAResendRequest(BaseModel):
    challenge_token: str = Field(..., max_length=4096)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=128)
    new_password: str = Field(..., max_length=128)


class TOTPEnableRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=6)


class PasswordConfirmRequest(BaseModel):
    password: str = Field(..., max_length=128)


class RolePolicyRequest(BaseModel):
    mfa_required: bool
    allowed_methods: Optional[List[str]] = None
    grace_period_days: Optional[int] = Field(default=None, ge=0)
    exempt: bool = False


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime


class AuthResponse(BaseModel):
    mfa_required: bool = False
    user: Dict[str, Any]
    session_id: Optional[str] = None
    tokens: Optional[TokenPairResponse] = None
    mfa_setup_required: bool = False
    challenge_token: Optional[str] = None
    method: Optional[str] = None


class SessionResponse(BaseModel):
    id: str
    device_name: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    device_type: Optional[str] = None
    ip_address: Optional[str] = None
    location: Optional[Dict[str, Any]] = None
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    current: bool = False


class TrustedDeviceResponse(BaseModel):
    id: str
    name: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    device_type: Optional[str] = None
    ip_address: Optional[str] = None
    trusted_until: datetime
    last_used_at: Optional[datetime] = None
    created_at: datetime


class SecurityEventResponse(BaseModel):
    id: str
    event_type: str
    severity: str
    description: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    location: Optional[Dict[str, Any]] = None
    acknowledged: bool = False
    created_at: datetime


class RolePolicyResponse(BaseModel):
    role: str
    mfa_required: bool
    allowed_methods: List[str]
    grace_period_days: Optional[int] = None
    exempt: bool = False
    updated_at: Optional[datetime] = None
