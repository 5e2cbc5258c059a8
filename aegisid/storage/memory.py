from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from aegisid.logging import get_logger
from aegisid.storage.common import (
    build_secret_cipher,
    check_user_patch,
    decrypt_secret,
    encrypt_secret,
    normalize_email,
)
from aegisid.storage.errors import ConstraintViolation
from aegisid.storage.models import (
    BackupCode,
    EmailCode,
    LoginAttempt,
    MFASecret,
    RoleMFAPolicy,
    SecurityEvent,
    Session,
    TrustedDevice,
    User,
)


class MemoryStore:
    """In-process store with the same surface as ``PostgresStore``.

    Every public method takes ``_data_lock`` for its whole body, so the
    compare-and-set helpers (backup codes, TOTP steps, email codes) are atomic
    with respect to each other exactly like their SQL counterparts.
    """

    def __init__(self, *, mfa_encryption_key: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, str] = {}
        self.mfa_secrets: Dict[str, MFASecret] = {}
        self.backup_codes: Dict[str, List[BackupCode]] = {}
        self.email_codes: Dict[str, EmailCode] = {}
        self.trusted_devices: Dict[str, TrustedDevice] = {}
        self.sessions: Dict[str, Session] = {}
        self.login_attempts: List[LoginAttempt] = []
        self.security_events: Dict[str, SecurityEvent] = {}
        self.role_policies: Dict[str, RoleMFAPolicy] = {}
        # RLock so helpers can call each other while holding the lock
        self._data_lock = threading.RLock()
        self._mfa_cipher = build_secret_cipher(mfa_encryption_key)

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None

    # users
    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        now: datetime,
        role: str = "user",
        email_verified: bool = False,
        is_active: bool = True,
        mfa_grace_period_end: Optional[datetime] = None,
        meta: Optional[dict] = None,
    ) -> User:
        email = normalize_email(email)
        with self._data_lock:
            for existing in self.users.values():
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.username.lower() == username.lower():
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                role=role,
                email_verified=email_verified,
                is_active=is_active,
                created_at=now,
                updated_at=now,
                password_changed_at=now,
                mfa_grace_period_end=mfa_grace_period_end,
                meta=dict(meta) if meta else None,
            )
            self.users[user.id] = user
            self.credentials[user.id] = password_hash
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            for user in self.users.values():
                if user.email == email:
                    return replace(user)
        return None

    def get_user_by_username(self, username: str) -> Optional[User]:
        lowered = username.lower()
        with self._data_lock:
            for user in self.users.values():
                if user.username.lower() == lowered:
                    return replace(user)
        return None

    def update_user(self, user_id: str, *, now: datetime, **fields) -> Optional[User]:
        patch = check_user_patch(fields)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for other in self.users.values():
                if other.id == user_id:
                    continue
                if "email" in patch and other.email == patch["email"]:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if (
                    "username" in patch
                    and other.username.lower() == str(patch["username"]).lower()
                ):
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
            updated = replace(user, **patch, updated_at=now)
            self.users[user_id] = updated
            return replace(updated)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self.credentials.pop(user_id, None)
            self.mfa_secrets.pop(user_id, None)
            self.backup_codes.pop(user_id, None)
            for table in (self.email_codes, self.trusted_devices, self.sessions, self.security_events):
                for key in [k for k, v in table.items() if v.user_id == user_id]:
                    table.pop(key, None)
            self.login_attempts = [a for a in self.login_attempts if a.user_id != user_id]
            return True

    def save_password(self, user_id: str, password_hash: str, *, now: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            self.credentials[user_id] = password_hash
            self.users[user_id] = replace(user, password_changed_at=now, updated_at=now)

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def apply_mfa_grace_period(self, role: str, grace_end: datetime) -> int:
        """Start the grace window for active users of ``role`` with no enrolment."""
        applied = 0
        with self._data_lock:
            for user_id, user in list(self.users.items()):
                if user.role != role or not user.is_active:
                    continue
                if user.mfa_grace_period_end is not None or user.email_mfa_enabled:
                    continue
                secret = self.mfa_secrets.get(user_id)
                if secret and secret.enabled:
                    continue
                self.users[user_id] = replace(user, mfa_grace_period_end=grace_end)
                applied += 1
        return applied

    # mfa secrets
    def _decrypted(self, record: MFASecret) -> MFASecret:
        return replace(record, secret=decrypt_secret(self._mfa_cipher, record.secret))

    def save_mfa_secret(self, user_id: str, secret: str, *, now: datetime) -> MFASecret:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            record = MFASecret(
                user_id=user_id,
                secret=encrypt_secret(self._mfa_cipher, secret),
                enabled=False,
                created_at=now,
            )
            self.mfa_secrets[user_id] = record
            return replace(record, secret=secret)

    def get_mfa_secret(self, user_id: str) -> Optional[MFASecret]:
        with self._data_lock:
            record = self.mfa_secrets.get(user_id)
            return self._decrypted(record) if record else None

    def enable_mfa_secret(self, user_id: str, *, now: datetime) -> bool:
        with self._data_lock:
            record = self.mfa_secrets.get(user_id)
            if not record:
                return False
            self.mfa_secrets[user_id] = replace(
                record, enabled=True, enabled_at=now, failed_attempts=0, locked_until=None
            )
            user = self.users.get(user_id)
            if user:
                self.users[user_id] = replace(user, mfa_grace_period_end=None)
            return True

    def delete_mfa_secret(self, user_id: str) -> bool:
        with self._data_lock:
            self.backup_codes.pop(user_id, None)
            return self.mfa_secrets.pop(user_id, None) is not None

    def record_mfa_failure(
        self, user_id: str, *, max_attempts: int, lockout_until: datetime
    ) -> tuple[int, Optional[datetime]]:
        """Count a failed second factor; lock once ``max_attempts`` is reached.

        Returns the failure count that was recorded and the lock expiry, if a
        lock is now in place.
        """
        with self._data_lock:
            record = self.mfa_secrets.get(user_id)
            if not record:
                return 0, None
            attempts = record.failed_attempts + 1
            if attempts >= max_attempts:
                self.mfa_secrets[user_id] = replace(
                    record, failed_attempts=0, locked_until=lockout_until
                )
                return attempts, lockout_until
            self.mfa_secrets[user_id] = replace(record, failed_attempts=attempts)
            return attempts, None

    def clear_mfa_failures(self, user_id: str) -> None:
        with self._data_lock:
            record = self.mfa_secrets.get(user_id)
            if record:
                self.mfa_secrets[user_id] = replace(
                    record, failed_attempts=0, locked_until=None
                )

    def consume_totp_step(self, user_id: str, step: int, *, now: datetime) -> bool:
        with self._data_lock:
            record = self.mfa_secrets.get(user_id)
            if not record:
                return False
            if record.last_used_step is not None and record.last_used_step >= step:
                return False
            self.mfa_secrets[user_id] = replace(
                record, last_used_step=step, last_used_at=now
            )
            return True

    # backup codes
    def replace_backup_codes(
        self, user_id: str, code_hashes: Sequence[str], *, now: datetime
    ) -> int:
        with self._data_lock:
            self.backup_codes[user_id] = [
                BackupCode(
                    id=str(uuid.uuid4()), user_id=user_id, code_hash=code_hash, created_at=now
                )
                for code_hash in code_hashes
            ]
            return len(code_hashes)

    def list_unused_backup_codes(self, user_id: str) -> List[BackupCode]:
        with self._data_lock:
            return [replace(c) for c in self.backup_codes.get(user_id, []) if not c.used]

    def consume_backup_code(self, code_id: str, *, now: datetime) -> bool:
        with self._data_lock:
            for codes in self.backup_codes.values():
                for idx, code in enumerate(codes):
                    if code.id != code_id:
                        continue
                    if code.used:
                        return False
                    codes[idx] = replace(code, used=True, used_at=now)
                    return True
        return False

    def count_unused_backup_codes(self, user_id: str) -> int:
        with self._data_lock:
            return sum(1 for c in self.backup_codes.get(user_id, []) if not c.used)

    # email codes
    def create_email_code(
        self,
        user_id: str,
        code_hash: str,
        *,
        expires_at: datetime,
        now: datetime,
        attempts: int = 0,
        resend_count: int = 0,
    ) -> EmailCode:
        with self._data_lock:
            for code_id, existing in list(self.email_codes.items()):
                if existing.user_id == user_id and not existing.used:
                    self.email_codes[code_id] = replace(existing, used=True)
            record = EmailCode(
                id=str(uuid.uuid4()),
                user_id=user_id,
                code_hash=code_hash,
                expires_at=expires_at,
                attempts=attempts,
                resend_count=resend_count,
                last_sent_at=now,
                created_at=now,
            )
            self.email_codes[record.id] = record
            return replace(record)

    def get_active_email_code(self, user_id: str) -> Optional[EmailCode]:
        with self._data_lock:
            candidates = [
                c for c in self.email_codes.values() if c.user_id == user_id and not c.used
            ]
            if not candidates:
                return None
            return replace(max(candidates, key=lambda c: c.created_at))

    def get_email_lockout(self, user_id: str, *, now: datetime) -> Optional[datetime]:
        with self._data_lock:
            locks = [
                c.locked_until
                for c in self.email_codes.values()
                if c.user_id == user_id and c.locked_until and c.locked_until > now
            ]
            return max(locks) if locks else None

    def record_email_code_failure(
        self, code_id: str, *, max_attempts: int, lockout_until: datetime
    ) -> Optional[EmailCode]:
        with self._data_lock:
            code = self.email_codes.get(code_id)
            if not code:
                return None
            attempts = code.attempts + 1
            locked_until = lockout_until if attempts >= max_attempts else code.locked_until
            updated = replace(code, attempts=attempts, locked_until=locked_until)
            self.email_codes[code_id] = updated
            return replace(updated)

    def consume_email_code(self, code_id: str) -> bool:
        with self._data_lock:
            code = self.email_codes.get(code_id)
            if not code or code.used:
                return False
            self.email_codes[code_id] = replace(code, used=True)
            return True

    def invalidate_email_code(self, code_id: str) -> None:
        with self._data_lock:
            code = self.email_codes.get(code_id)
            if code:
                self.email_codes[code_id] = replace(code, used=True)

    def clear_email_lockouts(self, user_id: str) -> int:
        cleared = 0
        with self._data_lock:
            for code_id, code in list(self.email_codes.items()):
                if code.user_id == user_id and (code.locked_until or code.attempts):
                    self.email_codes[code_id] = replace(code, attempts=0, locked_until=None)
                    cleared += 1
        return cleared

    def delete_expired_email_codes(self, *, now: datetime) -> int:
        with self._data_lock:
            stale = [
                code_id
                for code_id, code in self.email_codes.items()
                if code.expires_at <= now
                and (code.locked_until is None or code.locked_until <= now)
            ]
            for code_id in stale:
                self.email_codes.pop(code_id, None)
            return len(stale)

    # trusted devices
    def upsert_trusted_device(
        self,
        user_id: str,
        device_fingerprint: str,
        *,
        trusted_until: datetime,
        now: datetime,
        name: Optional[str] = None,
        browser: Optional[str] = None,
        os: Optional[str] = None,
        device_type: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> TrustedDevice:
        with self._data_lock:
            for device_id, device in self.trusted_devices.items():
                if device.user_id == user_id and device.device_fingerprint == device_fingerprint:
                    updated = replace(
                        device,
                        trusted_until=trusted_until,
                        last_used_at=now,
                        name=name,
                        browser=browser,
                        os=os,
                        device_type=device_type,
                        ip_address=ip_address,
                    )
                    self.trusted_devices[device_id] = updated
                    return replace(updated)
            device = TrustedDevice(
                id=str(uuid.uuid4()),
                user_id=user_id,
                device_fingerprint=device_fingerprint,
                trusted_until=trusted_until,
                name=name,
                browser=browser,
                os=os,
                device_type=device_type,
                ip_address=ip_address,
                last_used_at=now,
                created_at=now,
            )
            self.trusted_devices[device.id] = device
            return replace(device)

    def get_trusted_device(
        self, user_id: str, device_fingerprint: str
    ) -> Optional[TrustedDevice]:
        with self._data_lock:
            for device in self.trusted_devices.values():
                if device.user_id == user_id and device.device_fingerprint == device_fingerprint:
                    return replace(device)
        return None

    def touch_trusted_device(self, device_id: str, *, now: datetime) -> None:
        with self._data_lock:
            device = self.trusted_devices.get(device_id)
            if device:
                self.trusted_devices[device_id] = replace(device, last_used_at=now)

    def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]:
        with self._data_lock:
            devices = [replace(d) for d in self.trusted_devices.values() if d.user_id == user_id]
        return sorted(
            devices, key=lambda d: d.last_used_at or d.created_at, reverse=True
        )

    def delete_trusted_device(self, user_id: str, device_id: str) -> bool:
        with self._data_lock:
            device = self.trusted_devices.get(device_id)
            if not device or device.user_id != user_id:
                return False
            self.trusted_devices.pop(device_id, None)
            return True

    def delete_trusted_devices_for_user(self, user_id: str) -> int:
        with self._data_lock:
            doomed = [k for k, d in self.trusted_devices.items() if d.user_id == user_id]
            for device_id in doomed:
                self.trusted_devices.pop(device_id, None)
            return len(doomed)

    def evict_trusted_devices(self, user_id: str, *, keep: int) -> int:
        """Drop the least recently used devices beyond ``keep``; never-used first."""
        with self._data_lock:
            devices = [d for d in self.trusted_devices.values() if d.user_id == user_id]
            if len(devices) <= keep:
                return 0
            devices.sort(
                key=lambda d: (d.last_used_at is not None, d.last_used_at or d.created_at)
            )
            doomed = devices[: len(devices) - keep]
            for device in doomed:
                self.trusted_devices.pop(device.id, None)
            return len(doomed)

    def delete_expired_trusted_devices(self, *, now: datetime) -> int:
        with self._data_lock:
            doomed = [k for k, d in self.trusted_devices.items() if d.trusted_until <= now]
            for device_id in doomed:
                self.trusted_devices.pop(device_id, None)
            return len(doomed)

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("session user missing", {"user_id": session.user_id})
            if any(
                s.refresh_token_hash == session.refresh_token_hash
                for s in self.sessions.values()
            ):
                raise ConstraintViolation(
                    "refresh token already exists", {"field": "refresh_token"}
                )
            self.sessions[session.id] = replace(session)
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return replace(session) if session else None

    def get_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]:
        with self._data_lock:
            for session in self.sessions.values():
                if session.refresh_token_hash == refresh_token_hash:
                    return replace(session)
        return None

    def touch_session(self, session_id: str, *, now: datetime) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session or not session.is_active:
                return False
            self.sessions[session_id] = replace(
                session, last_activity_at=max(session.last_activity_at, now)
            )
            return True

    def find_activity_session(
        self, user_id: str, ip_address: Optional[str], user_agent: Optional[str]
    ) -> Optional[Session]:
        with self._data_lock:
            matches = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id
                and s.is_active
                and s.ip_address == ip_address
                and s.user_agent == user_agent
            ]
            if not matches:
                return None
            return replace(max(matches, key=lambda s: s.last_activity_at))

    def get_most_recent_session(self, user_id: str) -> Optional[Session]:
        with self._data_lock:
            active = [s for s in self.sessions.values() if s.user_id == user_id and s.is_active]
            if not active:
                return None
            return replace(max(active, key=lambda s: s.last_activity_at))

    def list_sessions(self, user_id: str, *, active_only: bool = True) -> List[Session]:
        with self._data_lock:
            sessions = [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and (s.is_active or not active_only)
            ]
        return sorted(sessions, key=lambda s: s.last_activity_at, reverse=True)

    def deactivate_session(self, session_id: str) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session or not session.is_active:
                return False
            self.sessions[session_id] = replace(session, is_active=False)
            return True

    def deactivate_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        revoked = 0
        with self._data_lock:
            for session_id, session in list(self.sessions.items()):
                if session.user_id != user_id or not session.is_active:
                    continue
                if except_session_id and session_id == except_session_id:
                    continue
                self.sessions[session_id] = replace(session, is_active=False)
                revoked += 1
        return revoked

    def rotate_refresh_token(
        self, session_id: str, old_hash: str, new_hash: str, *, expires_at: datetime
    ) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session or not session.is_active or session.refresh_token_hash != old_hash:
                return False
            self.sessions[session_id] = replace(
                session, refresh_token_hash=new_hash, expires_at=expires_at
            )
            return True

    def delete_expired_sessions(
        self, *, now: datetime, inactive_before: datetime
    ) -> Dict[str, int]:
        """Delete dead sessions, bucketed by the first predicate that matched."""
        counts = {"absolute": 0, "inactivity": 0, "refresh": 0}
        with self._data_lock:
            for session_id, session in list(self.sessions.items()):
                if session.absolute_expires_at <= now:
                    bucket = "absolute"
                elif session.last_activity_at <= inactive_before:
                    bucket = "inactivity"
                elif session.expires_at <= now:
                    bucket = "refresh"
                else:
                    continue
                self.sessions.pop(session_id, None)
                counts[bucket] += 1
        return counts

    # login attempts
    def record_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt:
        with self._data_lock:
            stored = replace(attempt, email=normalize_email(attempt.email))
            self.login_attempts.append(stored)
            return replace(stored)

    def count_recent_failures(self, email: str, *, since: datetime) -> int:
        email = normalize_email(email)
        with self._data_lock:
            return sum(
                1
                for a in self.login_attempts
                if a.email == email and not a.success and a.created_at >= since
            )

    def list_successful_logins(self, user_id: str, *, limit: int = 100) -> List[LoginAttempt]:
        with self._data_lock:
            matches = [a for a in self.login_attempts if a.user_id == user_id and a.success]
        matches.sort(key=lambda a: a.created_at, reverse=True)
        return [replace(a) for a in matches[:limit]]

    # security events
    def create_security_event_unless_recent(
        self, event: SecurityEvent, *, since: datetime
    ) -> bool:
        with self._data_lock:
            for existing in self.security_events.values():
                if (
                    existing.user_id == event.user_id
                    and existing.event_type == event.event_type
                    and existing.created_at >= since
                ):
                    return False
            self.security_events[event.id] = replace(event)
            return True

    def list_security_events(
        self, user_id: str, *, limit: int = 50, unacknowledged_only: bool = False
    ) -> List[SecurityEvent]:
        with self._data_lock:
            events = [
                replace(e)
                for e in self.security_events.values()
                if e.user_id == user_id and (not unacknowledged_only or not e.acknowledged)
            ]
        events.sort(key=lambda e: e.created_at, reverse=True)
        return events[:limit]

    def acknowledge_security_event(self, user_id: str, event_id: str, *, now: datetime) -> bool:
        with self._data_lock:
            event = self.security_events.get(event_id)
            if not event or event.user_id != user_id:
                return False
            self.security_events[event_id] = replace(
                event, acknowledged=True, acknowledged_at=event.acknowledged_at or now
            )
            return True

    def acknowledge_all_security_events(self, user_id: str, *, now: datetime) -> int:
        acknowledged = 0
        with self._data_lock:
            for event_id, event in list(self.security_events.items()):
                if event.user_id == user_id and not event.acknowledged:
                    self.security_events[event_id] = replace(
                        event, acknowledged=True, acknowledged_at=now
                    )
                    acknowledged += 1
        return acknowledged

    def count_unacknowledged_security_events(self, user_id: str) -> int:
        with self._data_lock:
            return sum(
                1
                for e in self.security_events.values()
                if e.user_id == user_id and not e.acknowledged
            )

    # role policies
    def get_role_policy(self, role: str) -> Optional[RoleMFAPolicy]:
        with self._data_lock:
            policy = self.role_policies.get(role)
            return replace(policy, allowed_methods=list(policy.allowed_methods)) if policy else None

    def upsert_role_policy(self, policy: RoleMFAPolicy) -> RoleMFAPolicy:
        with self._data_lock:
            stored = replace(policy, allowed_methods=list(policy.allowed_methods))
            self.role_policies[policy.role] = stored
            return replace(stored, allowed_methods=list(stored.allowed_methods))

    def list_role_policies(self) -> List[RoleMFAPolicy]:
        with self._data_lock:
            return [
                replace(p, allowed_methods=list(p.allowed_methods))
                for p in sorted(self.role_policies.values(), key=lambda p: p.role)
            ]
