from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional

from aegisid.config import MfaMethod, Settings
from aegisid.logging import get_logger
from aegisid.service import totp
from aegisid.service.backup_codes import BackupCodeService
from aegisid.service.clock import Clock, SystemClock
from aegisid.service.context import RequestContext
from aegisid.service.credentials import CredentialStore
from aegisid.service.email_codes import EmailCodeService
from aegisid.service.errors import Conflict, InvalidCredentials, NotFound, ValidationFailed
from aegisid.service.outcomes import (
    MfaInvalid,
    MfaLocked,
    MfaOk,
    MfaRequirement,
    MfaVerification,
    TotpEnrollment,
)
from aegisid.service.policy import MFAPolicyService
from aegisid.service.trusted_devices import TrustedDeviceService
from aegisid.storage.models import MFASecret, TrustedDevice, User

logger = get_logger(__name__)


class MFAEngine:
    """Second-factor enrolment, verification and lockout.

    TOTP and backup-code failures share the lockout counter on the user's
    MFA secret; emailed codes keep their own per-user lockout in
    ``EmailCodeService``. Both use ``mfa_max_attempts`` and
    ``mfa_lockout_minutes``.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        credentials: CredentialStore,
        email_codes: EmailCodeService,
        backup_codes: BackupCodeService,
        trusted_devices: TrustedDeviceService,
        policy: MFAPolicyService,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.credentials = credentials
        self.email_codes = email_codes
        self.backup_codes = backup_codes
        self.trusted_devices = trusted_devices
        self.policy = policy
        self.clock = clock or SystemClock()

    # policy
    def _enabled_secret(self, user_id: str) -> Optional[MFASecret]:
        secret = self.store.get_mfa_secret(user_id)
        return secret if secret and secret.enabled else None

    def mfa_required_for(self, user: User) -> MfaRequirement:
        return self.policy.evaluate(
            user, totp_enabled=self._enabled_secret(user.id) is not None
        )

    def method_for(self, user: User) -> Optional[str]:
        return self.mfa_required_for(user).method

    def is_trusted_device(self, user: User, fingerprint: Optional[str]) -> bool:
        return self.trusted_devices.is_trusted(user.id, fingerprint)

    def trust(self, user: User, ctx: RequestContext) -> TrustedDevice:
        return self.trusted_devices.trust(user.id, ctx)

    # TOTP enrolment
    def setup_totp(self, user: User) -> TotpEnrollment:
        if self._enabled_secret(user.id):
            raise Conflict("totp", "TOTP is already enabled")
        secret = totp.generate_secret()
        self.store.save_mfa_secret(user.id, secret, now=self.clock.now())
        logger.info("totp_setup_started", user_id=user.id)
        return TotpEnrollment(
            secret=secret,
            otpauth_uri=totp.provisioning_uri(secret, user.email, self.settings.totp_issuer),
        )

    def enable_totp(self, user: User, code: str) -> tuple[MfaVerification, List[str]]:
        """Confirm enrolment with a first code; returns fresh backup codes on success."""
        record = self.store.get_mfa_secret(user.id)
        if record is None:
            raise NotFound("TOTP setup has not been started")
        if record.enabled:
            raise Conflict("totp", "TOTP is already enabled")
        result = self._check_totp(user.id, record, code)
        if not isinstance(result, MfaOk):
            return result, []
        self.store.enable_mfa_secret(user.id, now=self.clock.now())
        codes = self.backup_codes.regenerate(user.id)
        logger.info("totp_enabled", user_id=user.id)
        return result, codes

    def disable_totp(self, user: User, password: str) -> None:
        if not self.credentials.verify_password(user, password):
            raise InvalidCredentials()
        if not self.store.delete_mfa_secret(user.id):
            raise NotFound("TOTP is not enabled")
        logger.info("totp_disabled", user_id=user.id)

    def enable_email_mfa(self, user: User) -> User:
        updated = self.credentials.update(user.id, email_mfa_enabled=True, mfa_grace_period_end=None)
        logger.info("email_mfa_enabled", user_id=user.id)
        return updated

    def disable_email_mfa(self, user: User, password: str) -> User:
        if not self.credentials.verify_password(user, password):
            raise InvalidCredentials()
        updated = self.credentials.update(user.id, email_mfa_enabled=False)
        logger.info("email_mfa_disabled", user_id=user.id)
        return updated

    # backup codes
    def regenerate_backup_codes(self, user: User, password: str) -> List[str]:
        if not self.credentials.verify_password(user, password):
            raise InvalidCredentials()
        if not self._enabled_secret(user.id):
            raise ValidationFailed("backup codes require TOTP to be enabled")
        return self.backup_codes.regenerate(user.id)

    def backup_codes_remaining(self, user_id: str) -> int:
        return self.backup_codes.remaining(user_id)

    # verification
    def verify(self, user: User, method: str, code: str) -> MfaVerification:
        try:
            method = MfaMethod(method).value
        except ValueError:
            raise ValidationFailed(f"unsupported MFA method {method!r}")
        if method == MfaMethod.EMAIL.value:
            return self.email_codes.verify(user, code)
        record = self._enabled_secret(user.id)
        if record is None:
            raise ValidationFailed(f"{method} verification is not available for this account")
        if method == MfaMethod.TOTP.value:
            return self._check_totp(user.id, record, code)
        return self._check_backup_code(user.id, record, code)

    def _active_lock(self, record: MFASecret, now: datetime) -> Optional[datetime]:
        if record.locked_until and record.locked_until > now:
            return record.locked_until
        return None

    def _record_failure(self, user_id: str, now: datetime, method: str) -> MfaVerification:
        max_attempts = self.settings.mfa_max_attempts
        attempts, locked_until = self.store.record_mfa_failure(
            user_id,
            max_attempts=max_attempts,
            lockout_until=now + timedelta(minutes=self.settings.mfa_lockout_minutes),
        )
        if locked_until:
            logger.warning(
                "mfa_lockout_triggered", user_id=user_id, method=method, attempts=attempts
            )
            return MfaLocked(until=locked_until)
        return MfaInvalid(attempts_remaining=max(max_attempts - attempts, 0))

    def _check_totp(self, user_id: str, record: MFASecret, code: str) -> MfaVerification:
        now = self.clock.now()
        locked_until = self._active_lock(record, now)
        if locked_until:
            return MfaLocked(until=locked_until)
        step = totp.match_step(record.secret, code, now)
        if step is None:
            return self._record_failure(user_id, now, MfaMethod.TOTP.value)
        if not self.store.consume_totp_step(user_id, step, now=now):
            logger.warning("totp_replay_rejected", user_id=user_id, step=step)
            return self._record_failure(user_id, now, MfaMethod.TOTP.value)
        self.store.clear_mfa_failures(user_id)
        return MfaOk(method=MfaMethod.TOTP.value)

    def _check_backup_code(self, user_id: str, record: MFASecret, code: str) -> MfaVerification:
        now = self.clock.now()
        locked_until = self._active_lock(record, now)
        if locked_until:
            return MfaLocked(until=locked_until)
        if not self.backup_codes.consume(user_id, code):
            return self._record_failure(user_id, now, MfaMethod.BACKUP_CODE.value)
        self.store.clear_mfa_failures(user_id)
        return MfaOk(
            method=MfaMethod.BACKUP_CODE.value,
            backup_codes_remaining=self.backup_codes.remaining(user_id),
        )

    def admin_unlock(self, user_id: str) -> None:
        if self.credentials.get_any(user_id) is None:
            raise NotFound("user not found")
        self.store.clear_mfa_failures(user_id)
        self.email_codes.unlock(user_id)
        logger.info("mfa_lockout_cleared_by_admin", user_id=user_id)
