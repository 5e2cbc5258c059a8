from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional, Protocol

from aegisid.config import Role, Settings
from aegisid.logging import get_logger
from aegisid.service.clock import Clock, SystemClock
from aegisid.service.errors import Conflict, NotFound, ValidationFailed
from aegisid.service.passwords import PasswordService
from aegisid.storage.errors import ConstraintViolation
from aegisid.storage.models import User

logger = get_logger(__name__)

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{3,30}$")
MAX_PASSWORD_LENGTH = 128

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def validate_email(value: str) -> str:
    """Normalize and validate an email address, returning the lowercase form."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
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


def validate_username(value: str) -> str:
    if not isinstance(value, str) or not USERNAME_PATTERN.match(value):
        raise ValueError(
            "username must be 3-30 characters of letters, digits and underscores"
        )
    return value


def validate_password(value: str, min_length: int) -> str:
    if len(value) < min_length:
        raise ValueError(f"password must be at least {min_length} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


class UserStore(Protocol):
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
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def update_user(self, user_id: str, *, now: datetime, **fields) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, *, now: datetime) -> None: ...

    def get_password_hash(self, user_id: str) -> Optional[str]: ...

    def deactivate_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int: ...

    def delete_trusted_devices_for_user(self, user_id: str) -> int: ...


class CredentialStore:
    """Data-access façade over users and their password hashes.

    Lookups hide deactivated accounts: they raise ``NotFound`` exactly as if
    the user did not exist, so callers cannot tell the two apart.
    """

    def __init__(
        self,
        store: UserStore,
        passwords: PasswordService,
        settings: Settings,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.settings = settings
        self.clock = clock or SystemClock()

    @staticmethod
    def _visible(user: Optional[User]) -> User:
        if user is None or not user.is_active:
            raise NotFound("user not found")
        return user

    def find_by_id(self, user_id: str) -> User:
        return self._visible(self.store.get_user(user_id))

    def find_by_email(self, email: str) -> User:
        return self._visible(self.store.get_user_by_email(email))

    def find_by_username(self, username: str) -> User:
        return self._visible(self.store.get_user_by_username(username))

    def get_any(self, user_id: str) -> Optional[User]:
        """Admin lookup that also returns deactivated accounts."""
        return self.store.get_user(user_id)

    def verify_password(self, user: User, plaintext: str) -> bool:
        stored_hash = self.store.get_password_hash(user.id)
        if not stored_hash:
            logger.warning("password_record_missing", user_id=user.id)
            self.passwords.dummy_verify(plaintext)
            return False
        return self.passwords.verify(stored_hash, plaintext)

    def dummy_verify(self, plaintext: str) -> None:
        self.passwords.dummy_verify(plaintext)

    def rehash_if_needed(self, user: User, plaintext: str) -> bool:
        """Re-hash with current Argon2 parameters after a successful verify."""
        stored_hash = self.store.get_password_hash(user.id)
        if not stored_hash or not self.passwords.needs_rehash(stored_hash):
            return False
        self.store.save_password(
            user.id, self.passwords.hash(plaintext), now=self.clock.now()
        )
        logger.info("password_rehashed", user_id=user.id)
        return True

    def create(
        self,
        username: str,
        email: str,
        password: str,
        *,
        role: str = Role.USER.value,
        email_verified: bool = False,
        mfa_grace_period_end: Optional[datetime] = None,
        meta: Optional[dict] = None,
    ) -> User:
        try:
            username = validate_username(username)
            email = validate_email(email)
            password = validate_password(password, self.settings.password_min_length)
            role = Role(role).value
        except ValueError as exc:
            raise ValidationFailed(str(exc))
        try:
            user = self.store.create_user(
                username,
                email,
                self.passwords.hash(password),
                now=self.clock.now(),
                role=role,
                email_verified=email_verified,
                mfa_grace_period_end=mfa_grace_period_end,
                meta=meta,
            )
        except ConstraintViolation as exc:
            raise Conflict(exc.detail.get("field", "email"))
        logger.info("user_created", user_id=user.id, role=user.role)
        return user

    def update(self, user_id: str, **patch: Any) -> User:
        """Apply a partial update; a ``password`` key goes through ``change_password``."""
        password = patch.pop("password", None)
        self.find_by_id(user_id)
        try:
            if "email" in patch:
                patch["email"] = validate_email(patch["email"])
            if "username" in patch:
                patch["username"] = validate_username(patch["username"])
            if "role" in patch:
                patch["role"] = Role(patch["role"]).value
        except ValueError as exc:
            raise ValidationFailed(str(exc))
        user: Optional[User] = None
        if patch:
            try:
                user = self.store.update_user(user_id, now=self.clock.now(), **patch)
            except ConstraintViolation as exc:
                raise Conflict(exc.detail.get("field", "email"))
        if password is not None:
            self.change_password(user_id, password)
            user = None
        return user or self.find_by_id(user_id)

    def change_password(self, user_id: str, new_password: str) -> None:
        """Store a new hash and drop every session and trusted device of the user."""
        try:
            validate_password(new_password, self.settings.password_min_length)
        except ValueError as exc:
            raise ValidationFailed(str(exc))
        self.store.save_password(
            user_id, self.passwords.hash(new_password), now=self.clock.now()
        )
        revoked = self.store.deactivate_user_sessions(user_id)
        forgotten = self.store.delete_trusted_devices_for_user(user_id)
        logger.info(
            "password_changed",
            user_id=user_id,
            sessions_revoked=revoked,
            trusted_devices_removed=forgotten,
        )

    def set_active(self, user_id: str, active: bool) -> User:
        user = self.store.update_user(user_id, now=self.clock.now(), is_active=active)
        if user is None:
            raise NotFound("user not found")
        if not active:
            self.store.deactivate_user_sessions(user_id)
        logger.info("user_active_changed", user_id=user_id, is_active=active)
        return user
