from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    username: str
    email: str
    role: str = "user"
    email_verified: bool = False
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    email_mfa_enabled: bool = False
    mfa_grace_period_end: Optional[datetime] = None
    meta: Dict | None = None

    def public_view(self) -> dict:
        """Fields safe to hand back to the account owner."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "email_verified": self.email_verified,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class MFASecret:
    """TOTP enrolment for one user.

    ``secret`` is plaintext base32 on objects handed out by a store; at rest
    it is always the Fernet ciphertext.
    """

    user_id: str
    secret: str
    enabled: bool = False
    enabled_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_used_step: Optional[int] = None
    last_used_at: Optional[datetime] = None


@dataclass
class BackupCode:
    id: str
    user_id: str
    code_hash: str
    used: bool = False
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class EmailCode:
    id: str
    user_id: str
    code_hash: str
    expires_at: datetime
    attempts: int = 0
    resend_count: int = 0
    last_sent_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    used: bool = False
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class TrustedDevice:
    id: str
    user_id: str
    device_fingerprint: str
    trusted_until: datetime
    name: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    device_type: Optional[str] = None
    ip_address: Optional[str] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Session:
    id: str
    user_id: str
    refresh_token_hash: str
    created_at: datetime
    expires_at: datetime
    absolute_expires_at: datetime
    last_activity_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    device_type: Optional[str] = None
    device_name: Optional[str] = None
    location: Optional[Dict] = None
    remember_me: bool = False
    is_active: bool = True


@dataclass
class LoginAttempt:
    id: str
    email: str
    success: bool
    created_at: datetime
    user_id: Optional[str] = None
    failure_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[Dict] = None


@dataclass
class SecurityEvent:
    id: str
    user_id: str
    event_type: str
    severity: str
    description: str
    created_at: datetime
    metadata: Dict = field(default_factory=dict)
    ip_address: Optional[str] = None
    location: Optional[Dict] = None
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None


@dataclass
class RoleMFAPolicy:
    role: str
    mfa_required: bool = False
    allowed_methods: List[str] = field(default_factory=lambda: ["totp", "email"])
    grace_period_days: Optional[int] = None
    exempt: bool = False
    updated_at: Optional[datetime] = None
