"""Tests for emailed one-time codes: issue, resend limits, verification and lockout."""

from datetime import timedelta

import pytest

from aegisid.config import EmailCodeFormat
from aegisid.service.email_codes import (
    UNAMBIGUOUS_ALPHABET,
    generate_code,
    hash_code,
    normalize_code,
)
from aegisid.service.errors import (
    EmailSendFailed,
    MfaLockedOut,
    MfaRateLimited,
    ResendCapExceeded,
)
from aegisid.service.outcomes import MfaExpiredCode, MfaInvalid, MfaLocked, MfaOk


class TestCodeFormat:
    def test_numeric_formats(self):
        assert len(generate_code(EmailCodeFormat.NUMERIC_6)) == 6
        assert generate_code(EmailCodeFormat.NUMERIC_6).isdigit()
        assert len(generate_code(EmailCodeFormat.NUMERIC_8)) == 8

    def test_alphanumeric_avoids_ambiguous_characters(self):
        for _ in range(50):
            code = generate_code(EmailCodeFormat.ALPHANUMERIC_6)
            assert len(code) == 6
            assert set(code) <= set(UNAMBIGUOUS_ALPHABET)
        assert not set("01IO") & set(UNAMBIGUOUS_ALPHABET)

    def test_hash_ignores_case_spaces_and_dashes(self):
        assert normalize_code(" ab-c 12 ") == "ABC12"
        assert hash_code("abc-123") == hash_code("ABC123")


class TestIssue:
    async def test_code_is_emailed_and_only_its_hash_stored(self, runtime, user, sender):
        record = await runtime.email_codes.issue(user)
        code = sender.last_code()

        assert sender.messages[-1]["to"] == "alice@example.com"
        assert record.code_hash == hash_code(code)
        assert record.expires_at == runtime.clock.now() + timedelta(minutes=5)

    async def test_new_code_supersedes_old_one(self, runtime, user, sender):
        await runtime.email_codes.issue(user)
        first = sender.last_code()
        await runtime.email_codes.issue(user)
        second = sender.last_code()

        if first != second:
            assert isinstance(runtime.email_codes.verify(user, first), MfaInvalid)
        assert isinstance(runtime.email_codes.verify(user, second), MfaOk)

    async def test_send_failure_discards_the_code(self, runtime, user, sender):
        sender.fail = True
        with pytest.raises(EmailSendFailed):
            await runtime.email_codes.issue(user)
        assert runtime.store.get_active_email_code(user.id) is None


class TestVerify:
    async def test_correct_code_succeeds_once(self, runtime, user, sender):
        await runtime.email_codes.issue(user)
        code = sender.last_code()
        assert runtime.email_codes.verify(user, code) == MfaOk(method="email")
        assert isinstance(runtime.email_codes.verify(user, code), MfaExpiredCode)

    async def test_expired_code(self, runtime, user, sender):
        await runtime.email_codes.issue(user)
        runtime.clock.advance(minutes=5)
        assert isinstance(runtime.email_codes.verify(user, sender.last_code()), MfaExpiredCode)

    def test_no_code_issued(self, runtime, user):
        assert isinstance(runtime.email_codes.verify(user, "123456"), MfaExpiredCode)

    async def test_wrong_codes_count_down_then_lock(self, runtime, user, sender):
        await runtime.email_codes.issue(user)
        good = sender.last_code()
        wrong = "000000" if good != "000000" else "111111"

        for remaining in (4, 3, 2, 1):
            assert runtime.email_codes.verify(user, wrong) == MfaInvalid(remaining)
        locked = runtime.email_codes.verify(user, wrong)
        assert isinstance(locked, MfaLocked)
        assert locked.until == runtime.clock.now() + timedelta(minutes=15)
        assert isinstance(runtime.email_codes.verify(user, good), MfaLocked)

    async def test_lockout_blocks_new_challenges_until_it_lapses(self, runtime, user, sender):
        await runtime.email_codes.issue(user)
        for _ in range(5):
            runtime.email_codes.verify(user, "not-it")
        with pytest.raises(MfaLockedOut):
            await runtime.email_codes.issue(user)
        with pytest.raises(MfaLockedOut):
            await runtime.email_codes.resend(user)

        runtime.clock.advance(minutes=15, seconds=1)
        await runtime.email_codes.issue(user)
        assert runtime.email_codes.verify(user, sender.last_code()) == MfaOk(method="email")

    async def test_admin_unlock_clears_email_lockout(self, runtime, user, sender):
        await runtime.email_codes.issue(user)
        for _ in range(5):
            runtime.email_codes.verify(user, "not-it")
        runtime.mfa.admin_unlock(user.id)
        await runtime.email_codes.issue(user)
        assert runtime.email_codes.verify(user, sender.last_code()) == MfaOk(method="email")


class TestResend:
    async def test_cooldown_is_enforced(self, runtime, user):
        await runtime.email_codes.issue(user)
        runtime.clock.advance(seconds=10)
        with pytest.raises(MfaRateLimited) as exc:
            await runtime.email_codes.resend(user)
        assert exc.value.retry_after == pytest.approx(20)

    async def test_cooldown_holds_until_its_last_millisecond(self, runtime, user):
        await runtime.email_codes.issue(user)
        runtime.clock.advance(seconds=29, milliseconds=999)
        with pytest.raises(MfaRateLimited) as exc:
            await runtime.email_codes.resend(user)
        assert exc.value.retry_after == pytest.approx(0.001)

    async def test_resend_is_allowed_just_after_cooldown(self, runtime, user, sender):
        await runtime.email_codes.issue(user)
        runtime.clock.advance(seconds=30, milliseconds=1)
        record = await runtime.email_codes.resend(user)
        assert record.resend_count == 1
        assert len(sender.messages) == 2

    async def test_resend_cap(self, runtime, user):
        await runtime.email_codes.issue(user)
        for expected in (1, 2, 3):
            runtime.clock.advance(seconds=30)
            record = await runtime.email_codes.resend(user)
            assert record.resend_count == expected
        runtime.clock.advance(seconds=30)
        with pytest.raises(ResendCapExceeded):
            await runtime.email_codes.resend(user)

    async def test_resend_keeps_failed_attempt_count(self, runtime, user, sender):
        await runtime.email_codes.issue(user)
        runtime.email_codes.verify(user, "not-it")
        runtime.email_codes.verify(user, "not-it")
        runtime.clock.advance(seconds=30)
        await runtime.email_codes.resend(user)
        assert runtime.email_codes.verify(user, "not-it") == MfaInvalid(attempts_remaining=2)

    async def test_resend_without_active_code_issues_fresh_one(self, runtime, user, sender):
        record = await runtime.email_codes.resend(user)
        assert record.resend_count == 0
        assert len(sender.messages) == 1

    async def test_failed_resend_leaves_no_usable_code(self, runtime, user, sender):
        await runtime.email_codes.issue(user)
        old = sender.last_code()
        runtime.clock.advance(seconds=30)
        sender.fail = True
        with pytest.raises(EmailSendFailed):
            await runtime.email_codes.resend(user)
        assert isinstance(runtime.email_codes.verify(user, old), MfaExpiredCode)
