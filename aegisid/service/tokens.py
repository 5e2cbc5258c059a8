from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import timedelta
from enum import Enum
from typing import Any, Mapping, Optional

from aegisid.config import Settings
from aegisid.logging import get_logger
from aegisid.service.clock import Clock, SystemClock

logger = get_logger(__name__)

_RESERVED_CLAIMS = frozenset({"iss", "aud", "sub", "type", "iat", "exp", "jti"})


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    MFA = "mfa"


class TokenError(Exception):
    """Base class for token validation failures."""

    reason = "invalid"


class TokenMalformed(TokenError):
    reason = "malformed"


class TokenBadSignature(TokenError):
    reason = "bad_signature"


class TokenBadAudience(TokenError):
    reason = "bad_audience"


class TokenExpired(TokenError):
    reason = "expired"


class TokenWrongKind(TokenError):
    reason = "wrong_kind"


def hash_token(token: str) -> str:
    """One-way digest used to store bearer tokens without keeping them."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenService:
    """HS256 tokens for the three disjoint kinds: access, refresh and mfa.

    Tokens are signed with the current key and carry its id in the header;
    validation also accepts retired keys listed in ``jwt_previous_keys``.
    """

    def __init__(self, settings: Settings, clock: Optional[Clock] = None) -> None:
        if not settings.jwt_secret:
            raise RuntimeError("JWT_SECRET is required to sign tokens")
        self.settings = settings
        self.clock = clock or SystemClock()
        self._key_id = settings.jwt_key_id
        self._keys: dict[str, bytes] = {
            kid: secret.encode() for kid, secret in settings.jwt_previous_keys.items()
        }
        self._keys[self._key_id] = settings.jwt_secret.encode()

    def default_ttl(self, kind: TokenKind) -> timedelta:
        if kind is TokenKind.ACCESS:
            return timedelta(minutes=self.settings.access_token_ttl_minutes)
        if kind is TokenKind.REFRESH:
            return timedelta(days=self.settings.refresh_token_ttl_days)
        return timedelta(minutes=self.settings.mfa_challenge_ttl_minutes)

    def issue(
        self,
        kind: TokenKind,
        subject: str,
        extras: Optional[Mapping[str, Any]] = None,
        *,
        ttl: Optional[timedelta] = None,
    ) -> str:
        kind = TokenKind(kind)
        clashes = _RESERVED_CLAIMS.intersection(extras or {})
        if clashes:
            raise ValueError(f"extras may not override {', '.join(sorted(clashes))}")
        issued_at = int(self.clock.now().timestamp())
        lifetime = ttl if ttl is not None else self.default_ttl(kind)
        payload: dict[str, Any] = dict(extras or {})
        payload.update(
            {
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "sub": subject,
                "type": kind.value,
                "iat": issued_at,
                "exp": issued_at + int(lifetime.total_seconds()),
                "jti": str(uuid.uuid4()),
            }
        )
        return self._encode_jwt(payload)

    def validate(self, token: str, expected_kind: TokenKind) -> dict[str, Any]:
        """Return the claims of ``token`` or raise a ``TokenError`` subclass.

        Checks run in order: structure, signature, issuer and audience,
        expiry, then the kind gate.
        """
        expected_kind = TokenKind(expected_kind)
        payload = self._decode_jwt(token)
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenBadAudience("unexpected issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenBadAudience("unexpected audience")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenMalformed("exp claim missing")
        if exp_ts <= self.clock.now().timestamp():
            raise TokenExpired("token expired")
        if payload.get("type") != expected_kind.value:
            logger.warning(
                "token_kind_mismatch",
                expected=expected_kind.value,
                presented=payload.get("type"),
            )
            raise TokenWrongKind(f"expected a {expected_kind.value} token")
        if not payload.get("sub"):
            raise TokenMalformed("sub claim missing")
        return payload

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, key: bytes, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT", "kid": self._key_id}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(self._keys[self._key_id], signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        if not isinstance(token, str):
            raise TokenMalformed("token must be a string")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenMalformed("token must have three segments")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenMalformed("header is not valid JSON")
        if not isinstance(header, dict):
            raise TokenMalformed("header is not an object")
        # Reject anything but HS256 to rule out algorithm confusion
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise TokenMalformed("unsupported algorithm")

        kid = header.get("kid") or self._key_id
        if not isinstance(kid, str):
            raise TokenMalformed("kid must be a string")
        if not sig_b64.isascii():
            raise TokenMalformed("signature is not base64url")
        key = self._keys.get(kid)
        if key is None:
            raise TokenBadSignature("unknown signing key")
        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._sign(key, signing_input).encode(), sig_b64.encode()):
            raise TokenBadSignature("signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenMalformed("payload is not valid JSON")
        if not isinstance(payload, dict):
            raise TokenMalformed("payload is not an object")
        return payload
