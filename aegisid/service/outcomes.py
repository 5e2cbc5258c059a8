"""Closed result types returned by the MFA engine and the auth orchestrator.

Callers dispatch on the concrete class; the ``Union`` aliases name every
variant so type checkers flag an unhandled branch.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass(frozen=True)
class Authenticated:
    user: dict
    tokens: TokenPair
    session_id: str
    mfa_setup_required: bool = False


@dataclass(frozen=True)
class MfaRequired:
    challenge_token: str
    method: str
    user: dict


LoginOutcome = Union[Authenticated, MfaRequired]


@dataclass(frozen=True)
class MfaOk:
    method: str
    backup_codes_remaining: Optional[int] = None


@dataclass(frozen=True)
class MfaInvalid:
    attempts_remaining: int


@dataclass(frozen=True)
class MfaExpiredCode:
    pass


@dataclass(frozen=True)
class MfaLocked:
    until: datetime


@dataclass(frozen=True)
class MfaThrottled:
    retry_after: float


MfaVerification = Union[MfaOk, MfaInvalid, MfaExpiredCode, MfaLocked, MfaThrottled]


@dataclass(frozen=True)
class SessionValidity:
    valid: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class TotpEnrollment:
    secret: str
    otpauth_uri: str


@dataclass(frozen=True)
class MfaRequirement:
    required: bool
    method: Optional[str] = None
    setup_required: bool = False
