from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from aegisid.logging import get_logger
from aegisid.storage.common import (
    build_secret_cipher,
    check_user_patch,
    decrypt_secret,
    encrypt_secret,
    normalize_email,
)
from aegisid.storage.errors import ConstraintViolation, StoreUnavailable
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

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

_REQUIRED_TABLES = (
    "users",
    "user_credential",
    "mfa_secret",
    "mfa_backup_code",
    "email_2fa_code",
    "trusted_device",
    "auth_session",
    "login_attempt",
    "security_event",
    "mfa_role_policy",
)

_SESSION_COLUMNS = (
    "id, user_id, refresh_token_hash, created_at, expires_at, absolute_expires_at, "
    "last_activity_at, ip_address, user_agent, browser, os, device_type, device_name, "
    "location, remember_me, is_active"
)


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _json_or_none(value: Optional[dict]) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _constraint_field(exc: errors.UniqueViolation) -> str:
    name = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    if "username" in name:
        return "username"
    if "refresh" in name:
        return "refresh_token"
    return "email"


class PostgresStore:
    """Postgres-backed store for identities, MFA state, sessions and events."""

    def __init__(
        self,
        dsn: str,
        *,
        mfa_encryption_key: str | None = None,
        pool: ConnectionPool | None = None,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._mfa_cipher = build_secret_cipher(mfa_encryption_key)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure every table exists before serving requests."""

        try:
            with self._connect() as conn:
                missing_tables = []
                for table in _REQUIRED_TABLES:
                    row = conn.execute(
                        "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                    ).fetchone()
                    if not row or not row.get("oid"):
                        missing_tables.append(table)
        except errors.OperationalError as exc:
            raise StoreUnavailable(f"cannot reach database: {exc}") from exc
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply {} first.".format(
                    ", ".join(sorted(missing_tables)), SCHEMA_PATH.name
                )
            )

    def ping(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1")
            return True
        except errors.OperationalError as exc:
            self.logger.error("postgres_ping_failed", error=str(exc))
            return False

    def close(self) -> None:
        self.pool.close()

    # row mappers
    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            username=str(row["username"]),
            email=str(row["email"]),
            role=row.get("role", "user"),
            email_verified=bool(row.get("email_verified", False)),
            is_active=bool(row.get("is_active", True)),
            created_at=row["created_at"],
            updated_at=row.get("updated_at"),
            password_changed_at=row.get("password_changed_at"),
            email_mfa_enabled=bool(row.get("email_mfa_enabled", False)),
            mfa_grace_period_end=row.get("mfa_grace_period_end"),
            meta=row.get("meta"),
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token_hash=row["refresh_token_hash"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            absolute_expires_at=row["absolute_expires_at"],
            last_activity_at=row["last_activity_at"],
            ip_address=_str_or_none(row.get("ip_address")),
            user_agent=row.get("user_agent"),
            browser=row.get("browser"),
            os=row.get("os"),
            device_type=row.get("device_type"),
            device_name=row.get("device_name"),
            location=row.get("location"),
            remember_me=bool(row.get("remember_me", False)),
            is_active=bool(row.get("is_active", True)),
        )

    @staticmethod
    def _email_code_from_row(row: dict) -> EmailCode:
        return EmailCode(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            code_hash=row["code_hash"],
            expires_at=row["expires_at"],
            attempts=int(row.get("attempts") or 0),
            resend_count=int(row.get("resend_count") or 0),
            last_sent_at=row.get("last_sent_at"),
            locked_until=row.get("locked_until"),
            used=bool(row.get("used", False)),
            created_at=row["created_at"],
        )

    @staticmethod
    def _device_from_row(row: dict) -> TrustedDevice:
        return TrustedDevice(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            device_fingerprint=row["device_fingerprint"],
            trusted_until=row["trusted_until"],
            name=row.get("name"),
            browser=row.get("browser"),
            os=row.get("os"),
            device_type=row.get("device_type"),
            ip_address=_str_or_none(row.get("ip_address")),
            last_used_at=row.get("last_used_at"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _event_from_row(row: dict) -> SecurityEvent:
        return SecurityEvent(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            event_type=row["event_type"],
            severity=row["severity"],
            description=row["description"],
            created_at=row["created_at"],
            metadata=row.get("metadata") or {},
            ip_address=_str_or_none(row.get("ip_address")),
            location=row.get("location"),
            acknowledged=bool(row.get("acknowledged", False)),
            acknowledged_at=row.get("acknowledged_at"),
        )

    @staticmethod
    def _attempt_from_row(row: dict) -> LoginAttempt:
        return LoginAttempt(
            id=str(row["id"]),
            email=str(row["email"]),
            success=bool(row["success"]),
            created_at=row["created_at"],
            user_id=_str_or_none(row.get("user_id")),
            failure_reason=row.get("failure_reason"),
            ip_address=_str_or_none(row.get("ip_address")),
            user_agent=row.get("user_agent"),
            location=row.get("location"),
        )

    @staticmethod
    def _policy_from_row(row: dict) -> RoleMFAPolicy:
        return RoleMFAPolicy(
            role=row["role"],
            mfa_required=bool(row.get("mfa_required", False)),
            allowed_methods=list(row.get("allowed_methods") or []),
            grace_period_days=row.get("grace_period_days"),
            exempt=bool(row.get("exempt", False)),
            updated_at=row.get("updated_at"),
        )

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
        user_id = str(uuid.uuid4())
        email = normalize_email(email)
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO users (id, username, email, role, email_verified, is_active,
                                       mfa_grace_period_end, password_changed_at, meta,
                                       created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        username,
                        email,
                        role,
                        email_verified,
                        is_active,
                        mfa_grace_period_end,
                        now,
                        _json_or_none(meta),
                        now,
                        now,
                    ),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, updated_at)
                    VALUES (%s, %s, %s)
                    """,
                    (user_id, password_hash, now),
                )
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE username = %s", (username,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user(self, user_id: str, *, now: datetime, **fields) -> Optional[User]:
        patch = check_user_patch(fields)
        if "meta" in patch:
            patch["meta"] = _json_or_none(patch["meta"])
        assignments = ", ".join(f"{column} = %s" for column in patch)
        params: list[Any] = list(patch.values())
        sql = "UPDATE users SET "
        if assignments:
            sql += assignments + ", "
        sql += "updated_at = %s WHERE id = %s RETURNING *"
        params.extend([now, user_id])
        try:
            with self._connect() as conn:
                row = conn.execute(sql, params).fetchone()
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM users WHERE id = %s", (user_id,))
            return result.rowcount > 0

    def save_password(self, user_id: str, password_hash: str, *, now: datetime) -> None:
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, updated_at)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        updated_at = EXCLUDED.updated_at
                    """,
                    (user_id, password_hash, now),
                )
                conn.execute(
                    "UPDATE users SET password_changed_at = %s, updated_at = %s WHERE id = %s",
                    (now, now, user_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": user_id})

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM user_credential WHERE user_id = %s", (user_id,)
            ).fetchone()
        return str(row["password_hash"]) if row else None

    def apply_mfa_grace_period(self, role: str, grace_end: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE users u SET mfa_grace_period_end = %s
                WHERE u.role = %s
                  AND u.is_active
                  AND u.mfa_grace_period_end IS NULL
                  AND NOT u.email_mfa_enabled
                  AND NOT EXISTS (
                      SELECT 1 FROM mfa_secret s WHERE s.user_id = u.id AND s.enabled
                  )
                """,
                (grace_end, role),
            )
            return result.rowcount

    # mfa secrets
    def _secret_from_row(self, row: dict) -> MFASecret:
        return MFASecret(
            user_id=str(row["user_id"]),
            secret=decrypt_secret(self._mfa_cipher, row["secret"]),
            enabled=bool(row.get("enabled", False)),
            enabled_at=row.get("enabled_at"),
            created_at=row["created_at"],
            failed_attempts=int(row.get("failed_attempts") or 0),
            locked_until=row.get("locked_until"),
            last_used_step=row.get("last_used_step"),
            last_used_at=row.get("last_used_at"),
        )

    def save_mfa_secret(self, user_id: str, secret: str, *, now: datetime) -> MFASecret:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO mfa_secret (user_id, secret, enabled, created_at)
                    VALUES (%s, %s, FALSE, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET secret = EXCLUDED.secret,
                        enabled = FALSE,
                        enabled_at = NULL,
                        failed_attempts = 0,
                        locked_until = NULL,
                        last_used_step = NULL,
                        last_used_at = NULL,
                        created_at = EXCLUDED.created_at
                    RETURNING *
                    """,
                    (user_id, encrypt_secret(self._mfa_cipher, secret), now),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
        return self._secret_from_row(row)

    def get_mfa_secret(self, user_id: str) -> Optional[MFASecret]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM mfa_secret WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._secret_from_row(row) if row else None

    def enable_mfa_secret(self, user_id: str, *, now: datetime) -> bool:
        with self._connect() as conn, conn.transaction():
            result = conn.execute(
                """
                UPDATE mfa_secret
                SET enabled = TRUE, enabled_at = %s, failed_attempts = 0, locked_until = NULL
                WHERE user_id = %s
                """,
                (now, user_id),
            )
            if result.rowcount == 0:
                return False
            conn.execute(
                "UPDATE users SET mfa_grace_period_end = NULL WHERE id = %s", (user_id,)
            )
            return True

    def delete_mfa_secret(self, user_id: str) -> bool:
        with self._connect() as conn, conn.transaction():
            conn.execute("DELETE FROM mfa_backup_code WHERE user_id = %s", (user_id,))
            result = conn.execute("DELETE FROM mfa_secret WHERE user_id = %s", (user_id,))
            return result.rowcount > 0

    def record_mfa_failure(
        self, user_id: str, *, max_attempts: int, lockout_until: datetime
    ) -> tuple[int, Optional[datetime]]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                UPDATE mfa_secret SET failed_attempts = failed_attempts + 1
                WHERE user_id = %s
                RETURNING failed_attempts
                """,
                (user_id,),
            ).fetchone()
            if not row:
                return 0, None
            attempts = int(row["failed_attempts"])
            if attempts < max_attempts:
                return attempts, None
            conn.execute(
                """
                UPDATE mfa_secret SET failed_attempts = 0, locked_until = %s
                WHERE user_id = %s
                """,
                (lockout_until, user_id),
            )
            return attempts, lockout_until

    def clear_mfa_failures(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE mfa_secret SET failed_attempts = 0, locked_until = NULL WHERE user_id = %s",
                (user_id,),
            )

    def consume_totp_step(self, user_id: str, step: int, *, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE mfa_secret SET last_used_step = %s, last_used_at = %s
                WHERE user_id = %s AND (last_used_step IS NULL OR last_used_step < %s)
                RETURNING user_id
                """,
                (step, now, user_id, step),
            ).fetchone()
        return row is not None

    # backup codes
    def replace_backup_codes(
        self, user_id: str, code_hashes: Sequence[str], *, now: datetime
    ) -> int:
        with self._connect() as conn, conn.transaction():
            conn.execute("DELETE FROM mfa_backup_code WHERE user_id = %s", (user_id,))
            with conn.cursor() as cur:
                cur.executemany(
                    """
                    INSERT INTO mfa_backup_code (id, user_id, code_hash, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    [(str(uuid.uuid4()), user_id, code_hash, now) for code_hash in code_hashes],
                )
        return len(code_hashes)

    def list_unused_backup_codes(self, user_id: str) -> List[BackupCode]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM mfa_backup_code WHERE user_id = %s AND used = FALSE",
                (user_id,),
            ).fetchall()
        return [
            BackupCode(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                code_hash=row["code_hash"],
                used=bool(row["used"]),
                used_at=row.get("used_at"),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def consume_backup_code(self, code_id: str, *, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE mfa_backup_code SET used = TRUE, used_at = %s
                WHERE id = %s AND used = FALSE
                RETURNING id
                """,
                (now, code_id),
            ).fetchone()
        return row is not None

    def count_unused_backup_codes(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM mfa_backup_code WHERE user_id = %s AND used = FALSE",
                (user_id,),
            ).fetchone()
        return int(row["n"]) if row else 0

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
        with self._connect() as conn, conn.transaction():
            conn.execute(
                "UPDATE email_2fa_code SET used = TRUE WHERE user_id = %s AND used = FALSE",
                (user_id,),
            )
            row = conn.execute(
                """
                INSERT INTO email_2fa_code (id, user_id, code_hash, expires_at, attempts,
                                            resend_count, last_sent_at, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    user_id,
                    code_hash,
                    expires_at,
                    attempts,
                    resend_count,
                    now,
                    now,
                ),
            ).fetchone()
        return self._email_code_from_row(row)

    def get_active_email_code(self, user_id: str) -> Optional[EmailCode]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM email_2fa_code
                WHERE user_id = %s AND used = FALSE
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (user_id,),
            ).fetchone()
        return self._email_code_from_row(row) if row else None

    def get_email_lockout(self, user_id: str, *, now: datetime) -> Optional[datetime]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT MAX(locked_until) AS until FROM email_2fa_code
                WHERE user_id = %s AND locked_until > %s
                """,
                (user_id, now),
            ).fetchone()
        return row["until"] if row else None

    def record_email_code_failure(
        self, code_id: str, *, max_attempts: int, lockout_until: datetime
    ) -> Optional[EmailCode]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE email_2fa_code
                SET attempts = attempts + 1,
                    locked_until = CASE WHEN attempts + 1 >= %s THEN %s ELSE locked_until END
                WHERE id = %s
                RETURNING *
                """,
                (max_attempts, lockout_until, code_id),
            ).fetchone()
        return self._email_code_from_row(row) if row else None

    def consume_email_code(self, code_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE email_2fa_code SET used = TRUE WHERE id = %s AND used = FALSE RETURNING id",
                (code_id,),
            ).fetchone()
        return row is not None

    def invalidate_email_code(self, code_id: str) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE email_2fa_code SET used = TRUE WHERE id = %s", (code_id,))

    def clear_email_lockouts(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE email_2fa_code SET attempts = 0, locked_until = NULL
                WHERE user_id = %s AND (locked_until IS NOT NULL OR attempts > 0)
                """,
                (user_id,),
            )
            return result.rowcount

    def delete_expired_email_codes(self, *, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                DELETE FROM email_2fa_code
                WHERE expires_at <= %s AND (locked_until IS NULL OR locked_until <= %s)
                """,
                (now, now),
            )
            return result.rowcount

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
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO trusted_device (id, user_id, device_fingerprint, name, browser, os,
                                            device_type, ip_address, trusted_until,
                                            last_used_at, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (user_id, device_fingerprint) DO UPDATE
                SET trusted_until = EXCLUDED.trusted_until,
                    last_used_at = EXCLUDED.last_used_at,
                    name = EXCLUDED.name,
                    browser = EXCLUDED.browser,
                    os = EXCLUDED.os,
                    device_type = EXCLUDED.device_type,
                    ip_address = EXCLUDED.ip_address
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    user_id,
                    device_fingerprint,
                    name,
                    browser,
                    os,
                    device_type,
                    ip_address,
                    trusted_until,
                    now,
                    now,
                ),
            ).fetchone()
        return self._device_from_row(row)

    def get_trusted_device(
        self, user_id: str, device_fingerprint: str
    ) -> Optional[TrustedDevice]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM trusted_device WHERE user_id = %s AND device_fingerprint = %s",
                (user_id, device_fingerprint),
            ).fetchone()
        return self._device_from_row(row) if row else None

    def touch_trusted_device(self, device_id: str, *, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE trusted_device SET last_used_at = %s WHERE id = %s", (now, device_id)
            )

    def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM trusted_device WHERE user_id = %s
                ORDER BY COALESCE(last_used_at, created_at) DESC
                """,
                (user_id,),
            ).fetchall()
        return [self._device_from_row(row) for row in rows]

    def delete_trusted_device(self, user_id: str, device_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM trusted_device WHERE id = %s AND user_id = %s",
                (device_id, user_id),
            )
            return result.rowcount > 0

    def delete_trusted_devices_for_user(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM trusted_device WHERE user_id = %s", (user_id,))
            return result.rowcount

    def evict_trusted_devices(self, user_id: str, *, keep: int) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                DELETE FROM trusted_device
                WHERE id IN (
                    SELECT id FROM trusted_device
                    WHERE user_id = %s
                    ORDER BY last_used_at ASC NULLS FIRST, created_at ASC
                    OFFSET 0
                    LIMIT GREATEST((SELECT COUNT(*) FROM trusted_device WHERE user_id = %s) - %s, 0)
                )
                """,
                (user_id, user_id, keep),
            )
            return result.rowcount

    def delete_expired_trusted_devices(self, *, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM trusted_device WHERE trusted_until <= %s", (now,)
            )
            return result.rowcount

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO auth_session ({_SESSION_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_SESSION_COLUMNS}
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.refresh_token_hash,
                        session.created_at,
                        session.expires_at,
                        session.absolute_expires_at,
                        session.last_activity_at,
                        session.ip_address,
                        session.user_agent,
                        session.browser,
                        session.os,
                        session.device_type,
                        session.device_name,
                        _json_or_none(session.location),
                        session.remember_me,
                        session.is_active,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token already exists", {"field": "refresh_token"}
            )
        return self._session_from_row(row)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE refresh_token_hash = %s",
                (refresh_token_hash,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(self, session_id: str, *, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session SET last_activity_at = GREATEST(last_activity_at, %s)
                WHERE id = %s AND is_active
                """,
                (now, session_id),
            )
            return result.rowcount > 0

    def find_activity_session(
        self, user_id: str, ip_address: Optional[str], user_agent: Optional[str]
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM auth_session
                WHERE user_id = %s AND is_active
                  AND ip_address IS NOT DISTINCT FROM %s::inet
                  AND user_agent IS NOT DISTINCT FROM %s
                ORDER BY last_activity_at DESC
                LIMIT 1
                """,
                (user_id, ip_address, user_agent),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_most_recent_session(self, user_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM auth_session
                WHERE user_id = %s AND is_active
                ORDER BY last_activity_at DESC
                LIMIT 1
                """,
                (user_id,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_sessions(self, user_id: str, *, active_only: bool = True) -> List[Session]:
        sql = f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE user_id = %s"
        if active_only:
            sql += " AND is_active"
        sql += " ORDER BY last_activity_at DESC"
        with self._connect() as conn:
            rows = conn.execute(sql, (user_id,)).fetchall()
        return [self._session_from_row(row) for row in rows]

    def deactivate_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET is_active = FALSE WHERE id = %s AND is_active",
                (session_id,),
            )
            return result.rowcount > 0

    def deactivate_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_session_id:
                result = conn.execute(
                    """
                    UPDATE auth_session SET is_active = FALSE
                    WHERE user_id = %s AND is_active AND id <> %s
                    """,
                    (user_id, except_session_id),
                )
            else:
                result = conn.execute(
                    "UPDATE auth_session SET is_active = FALSE WHERE user_id = %s AND is_active",
                    (user_id,),
                )
            return result.rowcount

    def rotate_refresh_token(
        self, session_id: str, old_hash: str, new_hash: str, *, expires_at: datetime
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET refresh_token_hash = %s, expires_at = %s
                WHERE id = %s AND refresh_token_hash = %s AND is_active
                RETURNING id
                """,
                (new_hash, expires_at, session_id, old_hash),
            ).fetchone()
        return row is not None

    def delete_expired_sessions(
        self, *, now: datetime, inactive_before: datetime
    ) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        with self._connect() as conn, conn.transaction():
            counts["absolute"] = conn.execute(
                "DELETE FROM auth_session WHERE absolute_expires_at <= %s", (now,)
            ).rowcount
            counts["inactivity"] = conn.execute(
                "DELETE FROM auth_session WHERE last_activity_at <= %s", (inactive_before,)
            ).rowcount
            counts["refresh"] = conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s", (now,)
            ).rowcount
        return counts

    # login attempts
    def record_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_attempt (id, user_id, email, success, failure_reason,
                                           ip_address, user_agent, location, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    attempt.id,
                    attempt.user_id,
                    normalize_email(attempt.email),
                    attempt.success,
                    attempt.failure_reason,
                    attempt.ip_address,
                    attempt.user_agent,
                    _json_or_none(attempt.location),
                    attempt.created_at,
                ),
            )
        return attempt

    def count_recent_failures(self, email: str, *, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS n FROM login_attempt
                WHERE email = %s AND NOT success AND created_at >= %s
                """,
                (normalize_email(email), since),
            ).fetchone()
        return int(row["n"]) if row else 0

    def list_successful_logins(self, user_id: str, *, limit: int = 100) -> List[LoginAttempt]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM login_attempt
                WHERE user_id = %s AND success
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (user_id, limit),
            ).fetchall()
        return [self._attempt_from_row(row) for row in rows]

    # security events
    def create_security_event_unless_recent(
        self, event: SecurityEvent, *, since: datetime
    ) -> bool:
        """Insert ``event`` unless one of the same type exists since ``since``.

        A transaction-scoped advisory lock on (user, type) serialises
        concurrent detectors so the dedupe check and insert cannot interleave.
        """
        with self._connect() as conn, conn.transaction():
            conn.execute(
                "SELECT pg_advisory_xact_lock(hashtext(%s))",
                (f"{event.user_id}:{event.event_type}",),
            )
            row = conn.execute(
                """
                INSERT INTO security_event (id, user_id, event_type, severity, description,
                                            metadata, ip_address, location, created_at)
                SELECT %s, %s, %s, %s, %s, %s, %s, %s, %s
                WHERE NOT EXISTS (
                    SELECT 1 FROM security_event
                    WHERE user_id = %s AND event_type = %s AND created_at >= %s
                )
                RETURNING id
                """,
                (
                    event.id,
                    event.user_id,
                    event.event_type,
                    event.severity,
                    event.description,
                    json.dumps(event.metadata or {}),
                    event.ip_address,
                    _json_or_none(event.location),
                    event.created_at,
                    event.user_id,
                    event.event_type,
                    since,
                ),
            ).fetchone()
        return row is not None

    def list_security_events(
        self, user_id: str, *, limit: int = 50, unacknowledged_only: bool = False
    ) -> List[SecurityEvent]:
        sql = "SELECT * FROM security_event WHERE user_id = %s"
        if unacknowledged_only:
            sql += " AND NOT acknowledged"
        sql += " ORDER BY created_at DESC LIMIT %s"
        with self._connect() as conn:
            rows = conn.execute(sql, (user_id, limit)).fetchall()
        return [self._event_from_row(row) for row in rows]

    def acknowledge_security_event(self, user_id: str, event_id: str, *, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE security_event
                SET acknowledged = TRUE, acknowledged_at = COALESCE(acknowledged_at, %s)
                WHERE id = %s AND user_id = %s
                """,
                (now, event_id, user_id),
            )
            return result.rowcount > 0

    def acknowledge_all_security_events(self, user_id: str, *, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE security_event SET acknowledged = TRUE, acknowledged_at = %s
                WHERE user_id = %s AND NOT acknowledged
                """,
                (now, user_id),
            )
            return result.rowcount

    def count_unacknowledged_security_events(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM security_event WHERE user_id = %s AND NOT acknowledged",
                (user_id,),
            ).fetchone()
        return int(row["n"]) if row else 0

    # role policies
    def get_role_policy(self, role: str) -> Optional[RoleMFAPolicy]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM mfa_role_policy WHERE role = %s", (role,)
            ).fetchone()
        return self._policy_from_row(row) if row else None

    def upsert_role_policy(self, policy: RoleMFAPolicy) -> RoleMFAPolicy:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO mfa_role_policy (role, mfa_required, allowed_methods,
                                             grace_period_days, exempt, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (role) DO UPDATE
                SET mfa_required = EXCLUDED.mfa_required,
                    allowed_methods = EXCLUDED.allowed_methods,
                    grace_period_days = EXCLUDED.grace_period_days,
                    exempt = EXCLUDED.exempt,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                (
                    policy.role,
                    policy.mfa_required,
                    list(policy.allowed_methods),
                    policy.grace_period_days,
                    policy.exempt,
                    policy.updated_at,
                ),
            ).fetchone()
        return self._policy_from_row(row)

    def list_role_policies(self) -> List[RoleMFAPolicy]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM mfa_role_policy ORDER BY role").fetchall()
        return [self._policy_from_row(row) for row in rows]
