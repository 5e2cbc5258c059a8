from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import List, Optional

from aegisid.logging import get_logger
from aegisid.service.clock import Clock, SystemClock

logger = get_logger(__name__)

BACKUP_CODE_COUNT = 10


def generate_backup_code() -> str:
    raw = secrets.token_hex(4).upper()
    return f"{raw[:4]}-{raw[4:]}"


def normalize_backup_code(code: str) -> str:
    return "".join((code or "").split()).replace("-", "").upper()


def hash_backup_code(code: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(8)
    digest = hashlib.sha256(f"{salt}:{normalize_backup_code(code)}".encode()).hexdigest()
    return f"{salt}${digest}"


def backup_code_matches(code: str, stored: str) -> bool:
    salt, sep, _ = stored.partition("$")
    if not sep:
        return False
    return hmac.compare_digest(hash_backup_code(code, salt), stored)


class BackupCodeService:
    """One-use recovery codes stored as salted hashes."""

    def __init__(self, store, clock: Optional[Clock] = None) -> None:
        self.store = store
        self.clock = clock or SystemClock()

    def regenerate(self, user_id: str) -> List[str]:
        """Replace every code of ``user_id``; the plaintext is returned once."""
        codes = [generate_backup_code() for _ in range(BACKUP_CODE_COUNT)]
        self.store.replace_backup_codes(
            user_id, [hash_backup_code(code) for code in codes], now=self.clock.now()
        )
        logger.info("backup_codes_generated", user_id=user_id, count=len(codes))
        return codes

    def consume(self, user_id: str, code: str) -> bool:
        # Check every unused hash so timing does not reveal the matching position
        matched_id = None
        for record in self.store.list_unused_backup_codes(user_id):
            if backup_code_matches(code, record.code_hash) and matched_id is None:
                matched_id = record.id
        if matched_id is None:
            return False
        if not self.store.consume_backup_code(matched_id, now=self.clock.now()):
            logger.warning("backup_code_already_consumed", user_id=user_id)
            return False
        logger.info("backup_code_used", user_id=user_id)
        return True

    def remaining(self, user_id: str) -> int:
        return self.store.count_unused_backup_codes(user_id)
