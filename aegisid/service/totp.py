"""RFC 6238 time-based one-time passwords (HMAC-SHA1, 6 digits, 30 s steps)."""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from datetime import datetime
from typing import Optional
from urllib.parse import quote, urlencode

from aegisid.logging import get_logger

logger = get_logger(__name__)

STEP_SECONDS = 30
DIGITS = 6
SECRET_BYTES = 20  # 160 bits


def generate_secret() -> str:
    return base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode("ascii").rstrip("=")


def time_step(moment: datetime) -> int:
    return int(moment.timestamp()) // STEP_SECONDS


def code_for_step(secret: str, step: int, *, digits: int = DIGITS) -> str:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except ValueError:
        logger.warning("totp_secret_invalid")
        return ""
    digest = hmac.new(key, step.to_bytes(8, "big"), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def code_at(secret: str, moment: datetime) -> str:
    return code_for_step(secret, time_step(moment))


def match_step(
    secret: str, code: str, moment: datetime, *, window: int = 1
) -> Optional[int]:
    """Return the step ``code`` belongs to within ±``window`` steps, else None.

    Every candidate is compared so the timing does not reveal which step hit.
    """
    candidate = (code or "").strip().replace(" ", "")
    if len(candidate) != DIGITS or not candidate.isdigit():
        return None
    current = time_step(moment)
    matched: Optional[int] = None
    for offset in range(-window, window + 1):
        generated = code_for_step(secret, current + offset)
        if generated and hmac.compare_digest(generated, candidate) and matched is None:
            matched = current + offset
    return matched


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}", safe=":@")
    query = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": DIGITS,
            "period": STEP_SECONDS,
        },
        quote_via=quote,
    )
    return f"otpauth://totp/{label}?{query}"
