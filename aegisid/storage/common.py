"""Helpers shared between the memory and postgres stores.

Both backends encrypt TOTP secrets the same way and agree on which user
fields may be patched, so that logic lives here rather than twice.
"""

from __future__ import annotations

import base64
import hashlib
from typing import Any, Dict

from cryptography.fernet import Fernet, InvalidToken

from aegisid.logging import get_logger

logger = get_logger(__name__)

# Columns ``update_user`` accepts; everything else is owned by a dedicated method
UPDATABLE_USER_FIELDS = frozenset(
    {
        "username",
        "email",
        "role",
        "email_verified",
        "is_active",
        "email_mfa_enabled",
        "mfa_grace_period_end",
        "meta",
    }
)


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_secret_cipher(key_material: str | None) -> Fernet:
    """Build the Fernet cipher used for TOTP secrets at rest.

    A missing key is a startup error; there is no generated fallback because a
    key that changes between restarts silently invalidates every enrolment.
    """
    if not key_material:
        raise RuntimeError("MFA_ENCRYPTION_KEY is required to store TOTP secrets")
    try:
        cipher = Fernet(derive_cipher_key(key_material))
        # Round-trip once so a broken key fails here instead of at first login
        cipher.decrypt(cipher.encrypt(b"self-check"))
        return cipher
    except Exception as exc:
        raise RuntimeError("Unable to initialize MFA cipher") from exc


def encrypt_secret(cipher: Fernet, secret: str) -> str:
    return cipher.encrypt(secret.encode()).decode()


def decrypt_secret(cipher: Fernet, ciphertext: str) -> str:
    try:
        return cipher.decrypt(ciphertext.encode()).decode()
    except InvalidToken as exc:
        logger.error("mfa_secret_decrypt_failed")
        raise RuntimeError("stored MFA secret cannot be decrypted with the configured key") from exc


def normalize_email(email: str) -> str:
    return email.strip().lower()


def check_user_patch(fields: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - UPDATABLE_USER_FIELDS
    if unknown:
        raise ValueError(f"unsupported user fields: {', '.join(sorted(unknown))}")
    patch = dict(fields)
    if "email" in patch and patch["email"] is not None:
        patch["email"] = normalize_email(patch["email"])
    return patch
