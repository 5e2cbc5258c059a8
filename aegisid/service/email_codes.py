from __future__ import annotations

import asyncio
import hashlib
import hmac
import secrets
from datetime import timedelta
from typing import Callable, Optional

from aegisid.config import EmailCodeFormat, Settings
from aegisid.logging import get_logger
from aegisid.service.clock import Clock, SystemClock
from aegisid.service.email import EmailDeliveryError, EmailSender, render_login_code
from aegisid.service.errors import (
    EmailSendFailed,
    MfaLockedOut,
    MfaRateLimited,
    ResendCapExceeded,
)
from aegisid.service.outcomes import (
    MfaExpiredCode,
    MfaInvalid,
    MfaLocked,
    MfaOk,
    MfaVerification,
)
from aegisid.storage.models import EmailCode, User

logger = get_logger(__name__)

# No 0/O or 1/I so codes survive being read aloud or retyped
UNAMBIGUOUS_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def generate_code(code_format: EmailCodeFormat) -> str:
    if code_format is EmailCodeFormat.NUMERIC_8:
        return f"{secrets.randbelow(10**8):08d}"
    if code_format is EmailCodeFormat.ALPHANUMERIC_6:
        return "".join(secrets.choice(UNAMBIGUOUS_ALPHABET) for _ in range(6))
    return f"{secrets.randbelow(10**6):06d}"


def normalize_code(code: str) -> str:
    return "".join((code or "").split()).replace("-", "").upper()


def hash_code(code: str) -> str:
    return hashlib.sha256(normalize_code(code).encode("utf-8")).hexdigest()


class EmailCodeService:
    """Issue, resend and verify emailed one-time codes.

    A user has at most one live code; issuing or resending replaces it inside
    a single store transaction. Lockouts are tracked per user: the latest
    ``locked_until`` on any of the user's codes blocks every new challenge.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        sender: EmailSender,
        clock: Optional[Clock] = None,
        *,
        code_generator: Optional[Callable[[], str]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.sender = sender
        self.clock = clock or SystemClock()
        self._generate = code_generator or (
            lambda: generate_code(settings.email_code_format)
        )

    @property
    def code_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.email_code_ttl_minutes)

    @property
    def lockout_duration(self) -> timedelta:
        return timedelta(minutes=self.settings.mfa_lockout_minutes)

    def _ensure_not_locked(self, user_id: str) -> None:
        locked_until = self.store.get_email_lockout(user_id, now=self.clock.now())
        if locked_until:
            raise MfaLockedOut(locked_until)

    async def issue(self, user: User) -> EmailCode:
        """Create a fresh code for ``user`` and email it, superseding older codes."""
        self._ensure_not_locked(user.id)
        now = self.clock.now()
        code = self._generate()
        record = self.store.create_email_code(
            user.id, hash_code(code), expires_at=now + self.code_ttl, now=now
        )
        await self._dispatch(user, record, code)
        logger.info("email_code_issued", user_id=user.id, expires_at=record.expires_at.isoformat())
        return record

    async def resend(self, user: User) -> EmailCode:
        """Send a replacement code, honouring the cooldown and the resend cap.

        Raises:
            MfaLockedOut: a lockout is active for the user
            ResendCapExceeded: ``email_max_resend`` replacements already sent
            MfaRateLimited: the previous code was sent less than the cooldown ago
            EmailSendFailed: the transport failed; the new code is discarded
        """
        self._ensure_not_locked(user.id)
        active = self.store.get_active_email_code(user.id)
        if active is None:
            return await self.issue(user)
        if active.resend_count >= self.settings.email_max_resend:
            raise ResendCapExceeded()
        now = self.clock.now()
        cooldown = timedelta(seconds=self.settings.email_resend_cooldown_seconds)
        if active.last_sent_at is not None:
            elapsed = now - active.last_sent_at
            if elapsed < cooldown:
                raise MfaRateLimited(retry_after=(cooldown - elapsed).total_seconds())
        code = self._generate()
        record = self.store.create_email_code(
            user.id,
            hash_code(code),
            expires_at=now + self.code_ttl,
            now=now,
            attempts=active.attempts if active.locked_until is None else 0,
            resend_count=active.resend_count + 1,
        )
        await self._dispatch(user, record, code)
        logger.info("email_code_resent", user_id=user.id, resend_count=record.resend_count)
        return record

    async def _dispatch(self, user: User, record: EmailCode, code: str) -> None:
        subject, text_body, html_body = render_login_code(
            code, self.settings.email_code_ttl_minutes, self.settings.email_from_name
        )
        try:
            await asyncio.wait_for(
                self.sender.send(user.email, subject, text_body, html_body),
                timeout=self.settings.email_send_timeout_seconds,
            )
        except (asyncio.TimeoutError, EmailDeliveryError, OSError) as exc:
            self.store.invalidate_email_code(record.id)
            logger.error(
                "email_code_dispatch_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
            )
            raise EmailSendFailed() from exc

    def verify(self, user: User, code: str) -> MfaVerification:
        now = self.clock.now()
        locked_until = self.store.get_email_lockout(user.id, now=now)
        if locked_until:
            return MfaLocked(until=locked_until)
        active = self.store.get_active_email_code(user.id)
        if active is None or active.expires_at <= now:
            return MfaExpiredCode()
        if not hmac.compare_digest(hash_code(code), active.code_hash):
            max_attempts = self.settings.mfa_max_attempts
            updated = self.store.record_email_code_failure(
                active.id,
                max_attempts=max_attempts,
                lockout_until=now + self.lockout_duration,
            )
            attempts = updated.attempts if updated else active.attempts + 1
            if updated and updated.locked_until and updated.locked_until > now:
                logger.warning(
                    "mfa_lockout_triggered", user_id=user.id, method="email", attempts=attempts
                )
                return MfaLocked(until=updated.locked_until)
            return MfaInvalid(attempts_remaining=max(max_attempts - attempts, 0))
        if not self.store.consume_email_code(active.id):
            # Lost a race with a concurrent verify of the same code
            return MfaExpiredCode()
        return MfaOk(method="email")

    def unlock(self, user_id: str) -> int:
        cleared = self.store.clear_email_lockouts(user_id)
        logger.info("email_code_lockout_cleared", user_id=user_id, codes=cleared)
        return cleared
