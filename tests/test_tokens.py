"""Tests for HS256 token issue and validation."""

import base64
import json

import pytest

from aegisid.config import Settings
from aegisid.service.tokens import (
    TokenBadAudience,
    TokenBadSignature,
    TokenExpired,
    TokenKind,
    TokenMalformed,
    TokenService,
    TokenWrongKind,
    hash_token,
)
from helpers import ManualClock

SECRET = "unit-test-signing-secret-0123456789abcdef"


def _settings(**overrides):
    return Settings(jwt_secret=SECRET, **overrides)


def _claims(token):
    payload = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def tokens(clock):
    return TokenService(_settings(), clock)


class TestIssue:
    """Claim layout of issued tokens."""

    def test_standard_claims_are_set(self, tokens, clock):
        token = tokens.issue(TokenKind.ACCESS, "user-1", {"role": "admin"})
        claims = _claims(token)

        assert claims["sub"] == "user-1"
        assert claims["type"] == "access"
        assert claims["iss"] == "auth-system"
        assert claims["aud"] == "auth-system-api"
        assert claims["role"] == "admin"
        assert claims["exp"] - claims["iat"] == 15 * 60
        assert claims["iat"] == int(clock.now().timestamp())

    def test_each_token_has_unique_jti(self, tokens):
        first = _claims(tokens.issue(TokenKind.REFRESH, "user-1"))
        second = _claims(tokens.issue(TokenKind.REFRESH, "user-1"))
        assert first["jti"] != second["jti"]

    def test_extras_cannot_override_reserved_claims(self, tokens):
        with pytest.raises(ValueError):
            tokens.issue(TokenKind.ACCESS, "user-1", {"exp": 0})

    def test_default_ttls_follow_settings(self, tokens):
        mfa = _claims(tokens.issue(TokenKind.MFA, "user-1"))
        refresh = _claims(tokens.issue(TokenKind.REFRESH, "user-1"))
        assert mfa["exp"] - mfa["iat"] == 5 * 60
        assert refresh["exp"] - refresh["iat"] == 7 * 24 * 3600

    def test_missing_secret_is_fatal(self):
        with pytest.raises(RuntimeError):
            TokenService(Settings(jwt_secret=None))


class TestValidate:
    """Validation order and failure kinds."""

    def test_round_trip(self, tokens):
        token = tokens.issue(TokenKind.MFA, "user-1", {"method": "totp"})
        claims = tokens.validate(token, TokenKind.MFA)
        assert claims["method"] == "totp"

    def test_expiry_is_enforced_at_the_boundary(self, tokens, clock):
        token = tokens.issue(TokenKind.ACCESS, "user-1")
        clock.advance(minutes=14, seconds=59)
        tokens.validate(token, TokenKind.ACCESS)
        clock.advance(seconds=1)
        with pytest.raises(TokenExpired):
            tokens.validate(token, TokenKind.ACCESS)

    @pytest.mark.parametrize(
        "issued,expected",
        [
            (TokenKind.ACCESS, TokenKind.REFRESH),
            (TokenKind.REFRESH, TokenKind.ACCESS),
            (TokenKind.MFA, TokenKind.ACCESS),
            (TokenKind.ACCESS, TokenKind.MFA),
        ],
    )
    def test_kinds_are_not_interchangeable(self, tokens, issued, expected):
        token = tokens.issue(issued, "user-1")
        with pytest.raises(TokenWrongKind):
            tokens.validate(token, expected)

    def test_tampered_payload_fails_signature(self, tokens):
        header, payload, signature = tokens.issue(TokenKind.ACCESS, "user-1").split(".")
        claims = _claims(f"{header}.{payload}.{signature}")
        claims["role"] = "super_admin"
        forged = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
        with pytest.raises(TokenBadSignature):
            tokens.validate(f"{header}.{forged}.{signature}", TokenKind.ACCESS)

    def test_token_from_other_secret_is_rejected(self, clock):
        other = TokenService(Settings(jwt_secret="x" * 40), clock)
        token = other.issue(TokenKind.ACCESS, "user-1")
        with pytest.raises(TokenBadSignature):
            TokenService(_settings(), clock).validate(token, TokenKind.ACCESS)

    def test_wrong_audience_is_rejected(self, clock):
        token = TokenService(_settings(jwt_audience="elsewhere"), clock).issue(
            TokenKind.ACCESS, "user-1"
        )
        with pytest.raises(TokenBadAudience):
            TokenService(_settings(), clock).validate(token, TokenKind.ACCESS)

    def test_alg_none_is_rejected(self, tokens):
        _, payload, _ = tokens.issue(TokenKind.ACCESS, "user-1").split(".")
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
        with pytest.raises(TokenMalformed):
            tokens.validate(f"{header}.{payload}.", TokenKind.ACCESS)

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "!!!.###.$$$"])
    def test_garbage_is_malformed(self, tokens, garbage):
        with pytest.raises(TokenMalformed):
            tokens.validate(garbage, TokenKind.ACCESS)

    def test_non_ascii_signature_is_malformed(self, tokens):
        header, payload, _ = tokens.issue(TokenKind.ACCESS, "user-1").split(".")
        with pytest.raises(TokenMalformed):
            tokens.validate(f"{header}.{payload}.é", TokenKind.ACCESS)

    @pytest.mark.parametrize("kid", [["x"], {"k": 1}, 7])
    def test_non_string_kid_is_malformed(self, tokens, kid):
        _, payload, sig = tokens.issue(TokenKind.ACCESS, "user-1").split(".")
        raw = json.dumps({"alg": "HS256", "typ": "JWT", "kid": kid}).encode()
        header = base64.urlsafe_b64encode(raw).decode().rstrip("=")
        with pytest.raises(TokenMalformed):
            tokens.validate(f"{header}.{payload}.{sig}", TokenKind.ACCESS)

    def test_signature_is_checked_before_expiry(self, tokens, clock):
        header, payload, _ = tokens.issue(TokenKind.ACCESS, "user-1").split(".")
        clock.advance(days=1)
        with pytest.raises(TokenBadSignature):
            tokens.validate(f"{header}.{payload}.AAAA", TokenKind.ACCESS)


class TestKeyRotation:
    """Retired keys keep validating tokens they signed."""

    def test_previous_key_still_validates(self, clock):
        old = TokenService(Settings(jwt_secret="o" * 40, jwt_key_id="k1"), clock)
        token = old.issue(TokenKind.ACCESS, "user-1")

        rotated = TokenService(
            Settings(
                jwt_secret=SECRET,
                jwt_key_id="k2",
                jwt_previous_keys={"k1": "o" * 40},
            ),
            clock,
        )
        assert rotated.validate(token, TokenKind.ACCESS)["sub"] == "user-1"

    def test_unknown_key_id_is_rejected(self, clock):
        token = TokenService(Settings(jwt_secret="o" * 40, jwt_key_id="gone"), clock).issue(
            TokenKind.ACCESS, "user-1"
        )
        with pytest.raises(TokenBadSignature):
            TokenService(_settings(), clock).validate(token, TokenKind.ACCESS)


def test_hash_token_is_stable_hex_digest():
    assert hash_token("abc") == hash_token("abc")
    assert len(hash_token("abc")) == 64
    assert hash_token("abc") != hash_token("abd")
