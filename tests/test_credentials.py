"""Tests for the credential store and password hashing."""

import pytest

from aegisid.service.errors import Conflict, NotFound, ValidationFailed
from aegisid.service.passwords import PasswordService
from helpers import PASSWORD


class TestPasswordService:
    def test_hash_is_argon2id_and_salted(self):
        passwords = PasswordService(time_cost=2, memory_cost=8192)
        first = passwords.hash("hunter2hunter2")
        second = passwords.hash("hunter2hunter2")
        assert first.startswith("$argon2id$")
        assert first != second
        assert passwords.verify(first, "hunter2hunter2")
        assert not passwords.verify(first, "hunter3hunter3")

    def test_unreadable_hash_does_not_raise(self):
        passwords = PasswordService(time_cost=2, memory_cost=8192)
        assert passwords.verify("not-a-hash", "anything") is False

    def test_weaker_hash_needs_rehash(self):
        weak = PasswordService(time_cost=2, memory_cost=8192)
        strong = PasswordService(time_cost=3, memory_cost=8192)
        assert strong.needs_rehash(weak.hash("some password"))
        assert not weak.needs_rehash(weak.hash("some password"))


class TestCreate:
    """User creation and uniqueness."""

    def test_create_normalizes_email(self, runtime):
        user = runtime.credentials.create("Bob_1", "  Bob@Example.COM ", PASSWORD)
        assert user.email == "bob@example.com"
        assert user.role == "user"
        assert user.is_active

    def test_password_is_never_stored_in_plaintext(self, runtime, user):
        stored = runtime.store.get_password_hash(user.id)
        assert stored != PASSWORD
        assert stored.startswith("$argon2id$")

    def test_duplicate_email_conflicts(self, runtime, user):
        with pytest.raises(Conflict) as exc:
            runtime.credentials.create("someone_else", "ALICE@example.com", PASSWORD)
        assert exc.value.field == "email"

    def test_duplicate_username_conflicts_case_insensitively(self, runtime, user):
        with pytest.raises(Conflict) as exc:
            runtime.credentials.create("ALICE", "other@example.com", PASSWORD)
        assert exc.value.field == "username"

    @pytest.mark.parametrize(
        "username,email,password",
        [
            ("ab", "x@example.com", PASSWORD),
            ("bad name", "x@example.com", PASSWORD),
            ("a" * 31, "x@example.com", PASSWORD),
            ("valid_name", "not-an-email", PASSWORD),
            ("valid_name", "x@example.com", "short"),
            ("valid_name", "x@example.com", "p" * 129),
        ],
    )
    def test_invalid_input_is_rejected(self, runtime, username, email, password):
        with pytest.raises(ValidationFailed):
            runtime.credentials.create(username, email, password)


class TestLookup:
    def test_find_by_email_and_username(self, runtime, user):
        assert runtime.credentials.find_by_email("Alice@Example.com").id == user.id
        assert runtime.credentials.find_by_username("alice").id == user.id
        assert runtime.credentials.find_by_id(user.id).email == "alice@example.com"

    def test_unknown_user_is_not_found(self, runtime):
        with pytest.raises(NotFound):
            runtime.credentials.find_by_email("nobody@example.com")

    def test_inactive_user_is_hidden(self, runtime, user):
        runtime.credentials.set_active(user.id, False)
        with pytest.raises(NotFound):
            runtime.credentials.find_by_email("alice@example.com")
        assert runtime.credentials.get_any(user.id) is not None

    def test_verify_password(self, runtime, user):
        assert runtime.credentials.verify_password(user, PASSWORD)
        assert not runtime.credentials.verify_password(user, PASSWORD + "x")


class TestChangePassword:
    async def test_change_password_revokes_sessions_and_devices(self, runtime, user, ctx):
        session, _ = await runtime.sessions.create_session(user, ctx)
        runtime.trusted_devices.trust(user.id, ctx)

        runtime.credentials.change_password(user.id, "a brand new passphrase")

        assert not runtime.store.get_session(session.id).is_active
        assert runtime.trusted_devices.list(user.id) == []
        refreshed = runtime.credentials.find_by_id(user.id)
        assert runtime.credentials.verify_password(refreshed, "a brand new passphrase")
        assert not runtime.credentials.verify_password(refreshed, PASSWORD)

    def test_update_with_password_key_goes_through_change(self, runtime, user):
        runtime.credentials.update(user.id, password="another long secret", username="alice_2")
        refreshed = runtime.credentials.find_by_id(user.id)
        assert refreshed.username == "alice_2"
        assert runtime.credentials.verify_password(refreshed, "another long secret")

    def test_rehash_after_cost_increase(self, runtime, user):
        weak = PasswordService(time_cost=2, memory_cost=8192)
        runtime.store.save_password(user.id, weak.hash(PASSWORD), now=runtime.clock.now())
        runtime.credentials.passwords = PasswordService(time_cost=3, memory_cost=8192)

        assert runtime.credentials.rehash_if_needed(user, PASSWORD)
        stored = runtime.store.get_password_hash(user.id)
        assert "t=3" in stored
        assert not runtime.credentials.rehash_if_needed(user, PASSWORD)
