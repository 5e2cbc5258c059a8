"""Tests for session lifetimes, activity tracking, revocation and cleanup."""

from datetime import timedelta

import pytest

from aegisid.service.context import RequestContext
from aegisid.service.errors import CannotRevokeCurrent, NotFound, SessionExpired
from aegisid.service.tokens import hash_token
from helpers import FIREFOX_MAC_UA, IPHONE_UA, PASSWORD


class TestCreate:
    async def test_session_fields_and_hashed_refresh_token(self, runtime, user, ctx):
        session, refresh_token = await runtime.sessions.create_session(user, ctx)
        now = runtime.clock.now()

        assert session.refresh_token_hash == hash_token(refresh_token)
        assert session.refresh_token_hash != refresh_token
        assert session.expires_at == now + timedelta(days=7)
        assert session.absolute_expires_at == now + timedelta(days=7)
        assert session.browser == "Chrome"
        assert session.os == "Windows"
        assert session.device_type == "desktop"
        assert session.ip_address == "198.51.100.7"

    async def test_remember_me_extends_horizons(self, runtime, user, ctx):
        session, _ = await runtime.sessions.create_session(user, ctx, remember_me=True)
        now = runtime.clock.now()
        assert session.expires_at == now + timedelta(days=30)
        assert session.absolute_expires_at == now + timedelta(days=30)

    async def test_location_comes_from_geolocation(self, runtime, user, ctx, geo):
        geo.table["198.51.100.7"] = {"country": "Norway", "region": "Oslo", "city": "Oslo"}
        session, _ = await runtime.sessions.create_session(user, ctx)
        assert session.location["country"] == "Norway"

    async def test_lookup_by_refresh_token(self, runtime, user, ctx):
        session, refresh_token = await runtime.sessions.create_session(user, ctx)
        assert runtime.sessions.find_by_refresh_token(refresh_token).id == session.id
        assert runtime.sessions.find_by_refresh_token("nope") is None


class TestValidity:
    async def test_inactivity_window_boundary(self, runtime, user, ctx):
        session, _ = await runtime.sessions.create_session(user, ctx)
        runtime.clock.advance(minutes=29, seconds=59)
        assert runtime.sessions.validity(runtime.sessions.get(session.id)).valid
        runtime.clock.advance(seconds=1)
        validity = runtime.sessions.validity(runtime.sessions.get(session.id))
        assert not validity.valid
        assert validity.reason == "inactivity"

    async def test_touch_slides_the_inactivity_window(self, runtime, user, ctx):
        session, _ = await runtime.sessions.create_session(user, ctx)
        for _ in range(4):
            runtime.clock.advance(minutes=20)
            assert runtime.sessions.touch(session.id) == session.id
        assert runtime.sessions.is_valid(runtime.sessions.get(session.id))

    async def test_absolute_expiry_wins_over_activity(self, runtime, user, ctx):
        session, _ = await runtime.sessions.create_session(user, ctx)
        for _ in range(7 * 24 * 3):
            runtime.clock.advance(minutes=20)
            runtime.sessions.touch(session.id)
        validity = runtime.sessions.validity(runtime.sessions.get(session.id))
        assert validity.reason == "absolute"

    async def test_revoked_session_is_invalid(self, runtime, user, ctx):
        session, _ = await runtime.sessions.create_session(user, ctx)
        assert runtime.sessions.revoke(session.id)
        assert not runtime.sessions.revoke(session.id)
        validity = runtime.sessions.validity(runtime.sessions.get(session.id))
        assert validity.reason == "revoked"
        assert runtime.sessions.touch(session.id) is None


class TestTouchByCaller:
    async def test_matches_on_ip_and_user_agent(self, runtime, user, ctx):
        first, _ = await runtime.sessions.create_session(user, ctx)
        other_ctx = RequestContext(ip="203.0.113.9", user_agent=IPHONE_UA)
        second, _ = await runtime.sessions.create_session(user, other_ctx)

        runtime.clock.advance(minutes=5)
        touched = runtime.sessions.touch(
            user_id=user.id, ip=ctx.ip, user_agent=ctx.user_agent
        )
        assert touched == first.id
        assert runtime.sessions.get(first.id).last_activity_at == runtime.clock.now()
        assert runtime.sessions.get(second.id).last_activity_at < runtime.clock.now()

    async def test_falls_back_to_most_recent_session(self, runtime, user, ctx):
        session, _ = await runtime.sessions.create_session(user, ctx)
        runtime.clock.advance(minutes=1)
        touched = runtime.sessions.touch(user_id=user.id, ip="192.0.2.1", user_agent="curl/8")
        assert touched == session.id

    def test_no_sessions_means_nothing_to_touch(self, runtime, user):
        assert runtime.sessions.touch(user_id=user.id, ip=None, user_agent=None) is None


class TestRevocation:
    async def test_list_marks_current_session(self, runtime, user, ctx):
        current, _ = await runtime.sessions.create_session(user, ctx)
        other, _ = await runtime.sessions.create_session(
            user, RequestContext(ip="203.0.113.9", user_agent=FIREFOX_MAC_UA)
        )
        views = {v.session.id: v.current for v in runtime.sessions.list_for_user(user.id, current.id)}
        assert views == {current.id: True, other.id: False}

    async def test_cannot_revoke_current_from_listing(self, runtime, user, ctx):
        current, _ = await runtime.sessions.create_session(user, ctx)
        with pytest.raises(CannotRevokeCurrent):
            runtime.sessions.revoke_for_user(user.id, current.id, current.id)

    async def test_cannot_revoke_someone_elses_session(self, runtime, user, ctx):
        bob = runtime.credentials.create("bob", "bob@example.com", "another long secret")
        bobs, _ = await runtime.sessions.create_session(bob, ctx)
        with pytest.raises(NotFound):
            runtime.sessions.revoke_for_user(user.id, bobs.id, None)
        assert runtime.sessions.get(bobs.id).is_active

    async def test_revoke_all_except_keeps_current(self, runtime, user, ctx):
        keep, _ = await runtime.sessions.create_session(user, ctx)
        for _ in range(3):
            await runtime.sessions.create_session(user, ctx)
        assert runtime.sessions.revoke_all_except(user.id, keep.id) == 3
        assert [v.session.id for v in runtime.sessions.list_for_user(user.id)] == [keep.id]

    async def test_rotation_is_single_use(self, runtime, user, ctx):
        session, refresh_token = await runtime.sessions.create_session(user, ctx)
        rotated = runtime.sessions.rotate_refresh_token(session, refresh_token)
        assert rotated and rotated != refresh_token
        assert runtime.sessions.rotate_refresh_token(session, refresh_token) is None
        assert runtime.sessions.find_by_refresh_token(rotated).id == session.id
        assert runtime.sessions.find_by_refresh_token(refresh_token) is None


class TestCleanup:
    async def test_sessions_are_bucketed_by_first_failing_rule(self, runtime, user, ctx):
        revoked, _ = await runtime.sessions.create_session(user, ctx)
        runtime.sessions.revoke(revoked.id)
        idle, _ = await runtime.sessions.create_session(user, ctx)
        runtime.clock.advance(minutes=31)
        live, _ = await runtime.sessions.create_session(user, ctx)

        counts = runtime.sessions.cleanup()

        assert counts == {"absolute": 0, "inactivity": 2, "refresh": 0}
        assert runtime.sessions.get(live.id) is not None
        assert runtime.sessions.get(idle.id) is None

    async def test_revoked_but_unexpired_sessions_survive(self, runtime, user, ctx):
        login = await runtime.auth.login("alice@example.com", PASSWORD, ctx)
        runtime.sessions.revoke_all(user.id)

        assert runtime.sessions.cleanup() == {"absolute": 0, "inactivity": 0, "refresh": 0}
        assert runtime.sessions.get(login.session_id) is not None
        with pytest.raises(SessionExpired) as exc:
            await runtime.auth.refresh(login.tokens.refresh_token)
        assert exc.value.reason == "refresh"

    async def test_cleanup_job_sweeps_codes_and_devices(self, runtime, user, ctx):
        await runtime.email_codes.issue(user)
        runtime.trusted_devices.trust(user.id, ctx)
        runtime.clock.advance(days=31)

        counts = runtime.cleanup.run_once()

        assert counts["email_codes"] == 1
        assert counts["trusted_devices"] == 1

    async def test_cleanup_job_start_and_stop(self, runtime):
        task = runtime.cleanup.start()
        assert runtime.cleanup.start() is task
        await runtime.cleanup.stop()
        assert task.cancelled() or task.done()


class TestTrustedDevices:
    def test_trust_and_expire(self, runtime, user, ctx):
        runtime.trusted_devices.trust(user.id, ctx)
        assert runtime.trusted_devices.is_trusted(user.id, ctx.device_fingerprint)
        runtime.clock.advance(days=30)
        assert not runtime.trusted_devices.is_trusted(user.id, ctx.device_fingerprint)
        assert runtime.trusted_devices.list(user.id) == []

    def test_retrusting_refreshes_one_row(self, runtime, user, ctx):
        first = runtime.trusted_devices.trust(user.id, ctx)
        runtime.clock.advance(days=1)
        second = runtime.trusted_devices.trust(user.id, ctx)
        assert first.id == second.id
        assert len(runtime.trusted_devices.list(user.id)) == 1

    def test_least_recently_used_device_is_evicted(self, runtime, user):
        contexts = [
            RequestContext(ip="198.51.100.7", user_agent=f"agent-{i}", accept_language="en")
            for i in range(6)
        ]
        devices = []
        for device_ctx in contexts:
            runtime.clock.advance(minutes=1)
            devices.append(runtime.trusted_devices.trust(user.id, device_ctx))

        remaining = {d.id for d in runtime.trusted_devices.list(user.id)}
        assert len(remaining) == 5
        assert devices[0].id not in remaining

    def test_fingerprint_ignores_ip(self, runtime, user, ctx):
        runtime.trusted_devices.trust(user.id, ctx)
        moved = RequestContext(
            ip="203.0.113.50", user_agent=ctx.user_agent, accept_language=ctx.accept_language
        )
        assert runtime.trusted_devices.is_trusted(user.id, moved.device_fingerprint)

    def test_revoke_one_and_all(self, runtime, user, ctx):
        device = runtime.trusted_devices.trust(user.id, ctx)
        runtime.trusted_devices.revoke(user.id, device.id)
        with pytest.raises(NotFound):
            runtime.trusted_devices.revoke(user.id, device.id)
        runtime.trusted_devices.trust(user.id, ctx)
        assert runtime.trusted_devices.revoke_all(user.id) == 1
