from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on:
    - invalid_credentials, invalid_challenge, unauthenticated, session_expired (401)
    - mfa_required, invalid_mfa_code, mfa_expired (401)
    - forbidden (403)
    - not_found (404)
    - conflict, cannot_revoke_current (409)
    - mfa_locked_out (423)
    - rate_limited, resend_cap_exceeded (429)
    - validation_error (400)
    - email_send_failed (502)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationFailed(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthenticated"


class Unauthenticated(AuthenticationError):
    def __init__(self, message: str = "authentication required") -> None:
        super().__init__(message)


class InvalidCredentials(AuthenticationError):
    """Unknown email, wrong password and deactivated accounts all map here."""

    error_code = "invalid_credentials"

    def __init__(self) -> None:
        super().__init__("invalid email or password")


class InvalidChallenge(AuthenticationError):
    error_code = "invalid_challenge"

    def __init__(self, message: str = "mfa challenge is invalid or expired") -> None:
        super().__init__(message)


class MfaRequiredError(AuthenticationError):
    """Raised by surfaces that need a fully authenticated principal."""

    error_code = "mfa_required"

    def __init__(self, method: str, challenge_token: str) -> None:
        super().__init__(
            "multi-factor verification required",
            detail={"method": method, "challenge_token": challenge_token},
        )
        self.method = method
        self.challenge_token = challenge_token


class InvalidMfaCode(AuthenticationError):
    error_code = "invalid_mfa_code"

    def __init__(self, attempts_remaining: int) -> None:
        super().__init__(
            "verification code is incorrect",
            detail={"attempts_remaining": attempts_remaining},
        )
        self.attempts_remaining = attempts_remaining


class MfaExpired(AuthenticationError):
    error_code = "mfa_expired"

    def __init__(self) -> None:
        super().__init__("verification code has expired")


class SessionExpired(AuthenticationError):
    """Session is no longer valid; ``reason`` is inactivity, absolute or refresh."""

    error_code = "session_expired"

    def __init__(self, reason: str) -> None:
        super().__init__("session expired", detail={"reason": reason})
        self.reason = reason


class Forbidden(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFound(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class Conflict(ServiceError):
    """Uniqueness conflict on ``field`` (409)."""
    status_code = 409
    error_code = "conflict"

    def __init__(self, field: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"{field} already exists", detail={"field": field})
        self.field = field


class CannotRevokeCurrent(ServiceError):
    status_code = 409
    error_code = "cannot_revoke_current"

    def __init__(self) -> None:
        super().__init__("use logout to end the current session")


class MfaLockedOut(ServiceError):
    status_code = 423
    error_code = "mfa_locked_out"

    def __init__(self, until: datetime) -> None:
        super().__init__(
            "too many failed verification attempts",
            detail={"until": until.isoformat()},
        )
        self.until = until


class MfaRateLimited(ServiceError):
    """Code requested again before the resend cooldown elapsed (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, retry_after: float) -> None:
        super().__init__(
            "please wait before requesting another code",
            detail={"retry_after": retry_after},
        )
        self.retry_after = retry_after


class ResendCapExceeded(ServiceError):
    status_code = 429
    error_code = "resend_cap_exceeded"

    def __init__(self) -> None:
        super().__init__("maximum number of code resends reached")


class EmailSendFailed(ServiceError):
    status_code = 502
    error_code = "email_send_failed"

    def __init__(self, message: str = "verification email could not be sent") -> None:
        super().__init__(message)


class Internal(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"

    def __init__(self, message: str = "internal server error") -> None:
        super().__init__(message)


__all__ = [
    "ServiceError",
    "ValidationFailed",
    "AuthenticationError",
    "Unauthenticated",
    "InvalidCredentials",
    "InvalidChallenge",
    "MfaRequiredError",
    "InvalidMfaCode",
    "MfaExpired",
    "SessionExpired",
    "Forbidden",
    "NotFound",
    "Conflict",
    "CannotRevokeCurrent",
    "MfaLockedOut",
    "MfaRateLimited",
    "ResendCapExceeded",
    "EmailSendFailed",
    "Internal",
]
