"""Tests for the in-process durable store and the Redis fast-store wrapper."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from authcore.storage.errors import ConstraintViolation
from authcore.storage.memory import MemoryStore
from authcore.storage.models import OAuthProviderLink, Session, User, new_id


def _session(user_id, *, token=None, expires_in=timedelta(days=1), **fields):
    now = datetime.now(timezone.utc)
    return Session(
        id=new_id(),
        user_id=user_id,
        session_token=token or new_id(),
        expires_at=now + expires_in,
        **fields,
    )


class TestMemoryStoreUsers:
    """Tests for user records."""

    def test_username_unique_case_insensitively(self, store):
        """A second 'Alice' collides with 'alice'."""
        store.create_user(User.new("alice", "alice@example.com"))

        with pytest.raises(ConstraintViolation) as exc:
            store.create_user(User.new("ALICE", "other@example.com"))
        assert exc.value.detail["field"] == "username"

    def test_email_unique_case_insensitively(self, store):
        """Emails collide regardless of case."""
        store.create_user(User.new("alice", "alice@example.com"))

        with pytest.raises(ConstraintViolation) as exc:
            store.create_user(User.new("bob", "Alice@Example.com"))
        assert exc.value.detail["field"] == "email"

    def test_lookups_are_case_insensitive(self, store):
        """Username and email lookups ignore case."""
        user = store.create_user(User.new("Alice", "Alice@Example.com"))

        assert store.get_user_by_username("alice").id == user.id
        assert store.get_user_by_email("ALICE@example.COM").id == user.id

    def test_update_rejects_unknown_fields(self, store):
        """Only mutable columns may be changed."""
        user = store.create_user(User.new("alice"))

        with pytest.raises(ValueError):
            store.update_user(user.id, id="other")

    def test_update_rechecks_uniqueness(self, store):
        """Renaming into an existing username is a constraint violation."""
        store.create_user(User.new("alice"))
        bob = store.create_user(User.new("bob"))

        with pytest.raises(ConstraintViolation):
            store.update_user(bob.id, username="alice", username_lower="alice")

    def test_returned_records_are_copies(self, store):
        """Mutating a returned user does not change the stored row."""
        user = store.create_user(User.new("alice"))
        fetched = store.get_user(user.id)
        fetched.is_suspended = True

        assert store.get_user(user.id).is_suspended is False

    def test_counters_increment(self, store):
        """Failed-login and suspicious-activity counters are atomic increments."""
        user = store.create_user(User.new("alice"))
        at = datetime.now(timezone.utc)

        assert store.increment_failed_logins(user.id) == 1
        assert store.increment_failed_logins(user.id) == 2
        assert store.increment_suspicious_activity(user.id, at) == 1
        assert store.get_user(user.id).last_suspicious_activity == at


class TestMemoryStoreSessions:
    """Tests for session rows."""

    def test_delete_is_idempotent(self, store):
        """Deleting twice reports False the second time."""
        user = store.create_user(User.new("alice"))
        session = store.create_session(_session(user.id))

        assert store.delete_session(session.session_token) is True
        assert store.delete_session(session.session_token) is False

    def test_sweep_removes_only_expired(self, store):
        """delete_expired_sessions leaves live rows alone."""
        user = store.create_user(User.new("alice"))
        live = store.create_session(_session(user.id))
        store.create_session(_session(user.id, expires_in=timedelta(seconds=-1)))

        assert store.delete_expired_sessions(datetime.now(timezone.utc)) == 1
        assert [s.id for s in store.list_user_sessions(user.id)] == [live.id]

    def test_update_expiry_and_touch(self, store):
        """Expiry extension and last-used updates hit the row by token."""
        user = store.create_user(User.new("alice"))
        session = store.create_session(_session(user.id))
        later = datetime.now(timezone.utc) + timedelta(days=30)

        updated = store.update_session_expiry(session.session_token, later, later)
        assert updated.expires_at == later
        assert store.touch_session(session.session_token, later) is True
        assert store.touch_session("missing", later) is False

    def test_delete_user_sessions(self, store):
        """All of one user's rows go; other users keep theirs."""
        alice = store.create_user(User.new("alice"))
        bob = store.create_user(User.new("bob"))
        store.create_session(_session(alice.id))
        store.create_session(_session(alice.id))
        store.create_session(_session(bob.id))

        assert store.delete_user_sessions(alice.id) == 2
        assert len(store.list_user_sessions(bob.id)) == 1


class TestMemoryStoreLinks:
    """Tests for OAuth provider links."""

    def test_user_with_provider_created_together(self, store):
        """The account and its link appear in one step."""
        user = User.new("gina", "gina@example.com")
        link = OAuthProviderLink(new_id(), user.id, "google", "g-1", "gina@example.com")
        store.create_user_with_provider(user, link)

        assert store.get_provider_link("google", "g-1").user_id == user.id
        assert store.get_user_provider_link(user.id, "google").provider_id == "g-1"

    def test_failed_link_leaves_no_user(self, store):
        """A duplicate provider id aborts the whole creation."""
        first = User.new("gina", "gina@example.com")
        store.create_user_with_provider(
            first, OAuthProviderLink(new_id(), first.id, "google", "g-1")
        )
        second = User.new("gino", "gino@example.com")

        with pytest.raises(ConstraintViolation):
            store.create_user_with_provider(
                second, OAuthProviderLink(new_id(), second.id, "google", "g-1")
            )
        assert store.get_user_by_username("gino") is None

    def test_link_email_update(self, store):
        """The stored provider email follows the latest profile."""
        user = store.create_user(User.new("gina"))
        link = store.create_provider_link(OAuthProviderLink(new_id(), user.id, "google", "g-1", "a@x.io"))
        store.update_provider_link_email(link.id, "b@x.io")

        assert store.get_provider_link("google", "g-1").email == "b@x.io"


class TestMemoryStorePersistence:
    """Tests for JSON persistence under the shared filesystem root."""

    def test_state_survives_restart(self, tmp_path):
        """Users, sessions and links reload from disk."""
        first = MemoryStore(fs_root=str(tmp_path))
        user = first.create_user(User.new("alice", "alice@example.com", password_hash="h"))
        session = first.create_session(_session(user.id, remember_me=True))
        first.create_provider_link(OAuthProviderLink(new_id(), user.id, "google", "g-1"))

        second = MemoryStore(fs_root=str(tmp_path))
        assert second.get_user_by_username("alice").password_hash == "h"
        reloaded = second.get_session_by_token(session.session_token)
        assert reloaded.remember_me is True
        assert reloaded.expires_at == session.expires_at
        assert second.get_provider_link("google", "g-1").user_id == user.id

    def test_no_files_without_persist(self, tmp_path):
        """persist=False keeps everything in memory."""
        store = MemoryStore(fs_root=str(tmp_path / "nowhere"), persist=False)
        store.create_user(User.new("alice"))

        assert not (tmp_path / "nowhere").exists()


class TestRedisCache:
    """Tests for the fast-store wrapper."""

    @pytest.mark.asyncio
    async def test_session_round_trip_with_ttl(self, cache, fake_redis):
        """Mirrors are stored as JSON under session:<token> with the remaining lifetime."""
        expires = datetime.now(timezone.utc) + timedelta(hours=1)
        ttl = await cache.set_session("tok", {"user_id": "u1"}, expires)

        assert 3590 <= ttl <= 3600
        assert json.loads(fake_redis.data["session:tok"]) == {"user_id": "u1"}
        assert await cache.get_session("tok") == {"user_id": "u1"}

    @pytest.mark.asyncio
    async def test_corrupt_mirror_dropped(self, cache, fake_redis):
        """Unreadable JSON is deleted and reported as a miss."""
        fake_redis.data["session:bad"] = "{not json"

        assert await cache.get_session("bad") is None
        assert "session:bad" not in fake_redis.data

    @pytest.mark.asyncio
    async def test_past_expiry_clamps_ttl(self, cache):
        """An expiry in the past still yields a positive TTL."""
        past = datetime.now(timezone.utc) - timedelta(minutes=5)

        assert await cache.set_session("tok", {}, past) == 1

    @pytest.mark.asyncio
    async def test_purge_user_sessions(self, cache):
        """Scan-based purge removes only the named user's mirrors."""
        expires = datetime.now(timezone.utc) + timedelta(hours=1)
        await cache.set_session("a1", {"user_id": "alice"}, expires)
        await cache.set_session("a2", {"user_id": "alice"}, expires)
        await cache.set_session("b1", {"user_id": "bob"}, expires)

        assert await cache.purge_user_sessions("alice") == 2
        assert await cache.get_session("b1") == {"user_id": "bob"}

    @pytest.mark.asyncio
    async def test_oauth_state_is_single_use(self, cache):
        """pop_oauth_state returns the state once."""
        expires = datetime.now(timezone.utc) + timedelta(minutes=10)
        await cache.set_oauth_state("st", "google", expires)

        provider, expires_at = await cache.pop_oauth_state("st")
        assert provider == "google"
        assert expires_at == expires
        assert await cache.pop_oauth_state("st") is None

    @pytest.mark.asyncio
    async def test_close_releases_client(self, cache, fake_redis):
        """close() closes the underlying client."""
        await cache.close()

        assert fake_redis.closed is True
