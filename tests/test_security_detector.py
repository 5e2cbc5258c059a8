"""Tests for login-attempt recording and security event detection."""

import time

import pytest

from aegisid.service.context import RequestContext
from aegisid.service.errors import InvalidCredentials, NotFound
from aegisid.service.security import EventType, FailureReason
from helpers import FIREFOX_MAC_UA, IPHONE_UA, PASSWORD

OSLO = {"country": "Norway", "region": "Oslo", "city": "Oslo"}
LIMA = {"country": "Peru", "region": "Lima", "city": "Lima"}


async def _fail(runtime, ctx, email="alice@example.com", times=1):
    for _ in range(times):
        with pytest.raises(InvalidCredentials):
            await runtime.auth.login(email, "wrong password", ctx)


def _event_types(runtime, user):
    return [e.event_type for e in runtime.security.list_events(user.id)]


class TestAttemptLog:
    async def test_failures_record_reason(self, runtime, user, ctx):
        await _fail(runtime, ctx)
        await _fail(runtime, ctx, email="ghost@example.com")
        reasons = [a.failure_reason for a in runtime.store.login_attempts]
        assert reasons == [
            FailureReason.INVALID_PASSWORD.value,
            FailureReason.UNKNOWN_EMAIL.value,
        ]
        assert runtime.store.login_attempts[0].user_id == user.id
        assert runtime.store.login_attempts[1].user_id is None

    async def test_success_is_recorded(self, runtime, user, ctx):
        await runtime.auth.login("alice@example.com", PASSWORD, ctx)
        attempt = runtime.store.login_attempts[-1]
        assert attempt.success
        assert attempt.failure_reason is None
        assert attempt.ip_address == "198.51.100.7"


class TestBruteForce:
    async def test_threshold_creates_one_critical_event(self, runtime, user, ctx):
        await _fail(runtime, ctx, times=4)
        assert _event_types(runtime, user) == []

        await _fail(runtime, ctx)
        events = runtime.security.list_events(user.id)
        assert [e.event_type for e in events] == [EventType.BRUTE_FORCE_ATTEMPT.value]
        assert events[0].severity == "critical"
        assert events[0].metadata == {"failure_count": 5, "time_window_minutes": 15}

    async def test_further_failures_are_deduplicated(self, runtime, user, ctx):
        await _fail(runtime, ctx, times=8)
        runtime.clock.advance(minutes=60)
        await _fail(runtime, ctx, times=5)
        assert _event_types(runtime, user).count(EventType.BRUTE_FORCE_ATTEMPT.value) == 1

        runtime.clock.advance(minutes=121)
        await _fail(runtime, ctx, times=5)
        assert _event_types(runtime, user).count(EventType.BRUTE_FORCE_ATTEMPT.value) == 2

    async def test_failures_outside_window_do_not_count(self, runtime, user, ctx):
        await _fail(runtime, ctx, times=4)
        runtime.clock.advance(minutes=16)
        await _fail(runtime, ctx)
        assert _event_types(runtime, user) == []

    async def test_unknown_email_never_creates_event(self, runtime, ctx):
        await _fail(runtime, ctx, email="ghost@example.com", times=6)
        assert runtime.store.security_events == {}


class TestNewDevice:
    async def test_first_login_is_quiet(self, runtime, user, ctx):
        await runtime.auth.login("alice@example.com", PASSWORD, ctx)
        assert _event_types(runtime, user) == []

    async def test_same_device_again_is_quiet(self, runtime, user, ctx):
        await runtime.auth.login("alice@example.com", PASSWORD, ctx)
        runtime.clock.advance(hours=2)
        await runtime.auth.login("alice@example.com", PASSWORD, ctx)
        assert _event_types(runtime, user) == []

    async def test_different_browser_and_os_triggers_event(self, runtime, user, ctx):
        await runtime.auth.login("alice@example.com", PASSWORD, ctx)
        runtime.clock.advance(hours=2)
        mac = RequestContext(ip=ctx.ip, user_agent=FIREFOX_MAC_UA)
        await runtime.auth.login("alice@example.com", PASSWORD, mac)

        events = runtime.security.list_events(user.id)
        assert [e.event_type for e in events] == [EventType.LOGIN_FROM_NEW_DEVICE.value]
        assert events[0].severity == "info"
        assert events[0].metadata["browser"] == "Firefox"
        assert events[0].metadata["os"] == "macOS"

    async def test_alert_email_is_sent_when_enabled(self, runtime, user, ctx, sender, monkeypatch):
        enabled = runtime.settings.model_copy(update={"new_device_alerts": True})
        monkeypatch.setattr(runtime.security, "settings", enabled)
        await runtime.auth.login("alice@example.com", PASSWORD, ctx)
        runtime.clock.advance(hours=2)
        await runtime.auth.login(
            "alice@example.com", PASSWORD, RequestContext(ip=ctx.ip, user_agent=IPHONE_UA)
        )
        await runtime.security.drain_alerts()
        assert sender.messages[-1]["subject"].startswith("New sign-in")
        assert "Safari on iOS" in sender.messages[-1]["text"]

    async def test_slow_alert_does_not_hold_up_login(self, runtime, user, ctx, sender, monkeypatch):
        enabled = runtime.settings.model_copy(update={"new_device_alerts": True})
        monkeypatch.setattr(runtime.security, "settings", enabled)
        await runtime.auth.login("alice@example.com", PASSWORD, ctx)
        sender.delay = 1.0

        started = time.monotonic()
        outcome = await runtime.auth.login(
            "alice@example.com", PASSWORD, RequestContext(ip=ctx.ip, user_agent=IPHONE_UA)
        )
        assert time.monotonic() - started < sender.delay
        assert outcome.tokens.access_token
        assert sender.messages == []

        await runtime.security.drain_alerts()
        assert [m["subject"][:11] for m in sender.messages] == ["New sign-in"]

    async def test_alert_failure_does_not_fail_login(self, runtime, user, ctx, sender, monkeypatch):
        enabled = runtime.settings.model_copy(update={"new_device_alerts": True})
        monkeypatch.setattr(runtime.security, "settings", enabled)
        await runtime.auth.login("alice@example.com", PASSWORD, ctx)
        sender.fail = True
        outcome = await runtime.auth.login(
            "alice@example.com", PASSWORD, RequestContext(ip=ctx.ip, user_agent=IPHONE_UA)
        )
        assert outcome.tokens.access_token
        await runtime.security.drain_alerts()
        assert sender.messages == []


class TestNewLocation:
    async def test_unseen_city_triggers_warning(self, runtime, user, geo):
        geo.table.update({"198.51.100.7": OSLO, "203.0.113.20": LIMA})
        home = RequestContext(ip="198.51.100.7", user_agent=IPHONE_UA)
        away = RequestContext(ip="203.0.113.20", user_agent=IPHONE_UA)

        await runtime.auth.login("alice@example.com", PASSWORD, home)
        assert _event_types(runtime, user) == []
        runtime.clock.advance(hours=3)
        await runtime.auth.login("alice@example.com", PASSWORD, away)

        events = runtime.security.list_events(user.id)
        assert [e.event_type for e in events] == [EventType.LOGIN_FROM_NEW_LOCATION.value]
        assert events[0].severity == "warning"
        assert events[0].metadata == {"location": "Lima, Lima, Peru"}

    async def test_unknown_location_is_skipped(self, runtime, user, geo):
        geo.table["198.51.100.7"] = OSLO
        await runtime.auth.login(
            "alice@example.com", PASSWORD, RequestContext(ip="198.51.100.7", user_agent=IPHONE_UA)
        )
        await runtime.auth.login(
            "alice@example.com", PASSWORD, RequestContext(ip="192.0.2.44", user_agent=IPHONE_UA)
        )
        assert _event_types(runtime, user) == []


class TestEventManagement:
    async def test_acknowledge_and_counts(self, runtime, user, ctx):
        await _fail(runtime, ctx, times=5)
        event = runtime.security.list_events(user.id)[0]
        assert runtime.security.count_unacknowledged(user.id) == 1

        runtime.security.acknowledge(user.id, event.id)
        assert runtime.security.count_unacknowledged(user.id) == 0
        assert runtime.security.list_events(user.id, unacknowledged_only=True) == []

    async def test_cannot_acknowledge_other_users_event(self, runtime, user, ctx):
        await _fail(runtime, ctx, times=5)
        event = runtime.security.list_events(user.id)[0]
        bob = runtime.credentials.create("bob", "bob@example.com", "another long secret")
        with pytest.raises(NotFound):
            runtime.security.acknowledge(bob.id, event.id)

    async def test_acknowledge_all(self, runtime, user, ctx):
        await _fail(runtime, ctx, times=5)
        assert runtime.security.acknowledge_all(user.id) == 1
        assert runtime.security.acknowledge_all(user.id) == 0

    async def test_detector_errors_are_swallowed(self, runtime, user, ctx, monkeypatch):
        def broken(**kwargs):
            raise RuntimeError("event store down")

        monkeypatch.setattr(runtime.security, "detect", broken)
        outcome = await runtime.auth.login("alice@example.com", PASSWORD, ctx)
        assert outcome.session_id
