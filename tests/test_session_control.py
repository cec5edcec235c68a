"""
Tests for SessionManager.

Sessions slide forward on use, are capped by an absolute lifetime and are
judged expired lazily at read time.
"""
import pytest

from teamvault.core.auth.session_control import SessionManager
from teamvault.core.errors import NotFound
from teamvault.db import hash_secret

from conftest import FAST_SECURITY, register_user


TTL = FAST_SECURITY.session_ttl_seconds
MAX_LIFETIME = FAST_SECURITY.session_max_lifetime_seconds


@pytest.fixture
def alice(store):
    user, _ = register_user(store, "alice", confirm=True)
    return user


class TestNewSession:
    """Session creation."""

    def test_new_session_fields(self, sessions, alice, clock):
        session = sessions.new_session(alice.id, "10.0.0.1", "pytest", requires_csrf=True)

        assert session.user_id == "alice"
        assert session.requires_csrf is True
        assert session.created_at == clock.now
        assert (session.expires_at - session.created_at).total_seconds() == TTL
        assert session.store_token
        assert session.id != session.store_token

    def test_tokens_are_unique(self, sessions, alice):
        first = sessions.new_session(alice.id)
        second = sessions.new_session(alice.id)
        assert first.id != second.id

    def test_only_digest_is_stored(self, sessions, alice, db):
        session = sessions.new_session(alice.id)
        with db.connect() as conn:
            row = conn.execute("SELECT id_hash FROM sessions").fetchone()
        assert row["id_hash"] == hash_secret(session.id)
        assert row["id_hash"] != session.id

    def test_unknown_user(self, sessions):
        with pytest.raises(NotFound):
            sessions.new_session("ghost")

    def test_token_not_in_repr(self, sessions, alice):
        session = sessions.new_session(alice.id)
        assert session.id not in repr(session)
        assert session.store_token not in repr(session)

    def test_lifetime_must_cover_ttl(self, db, store):
        with pytest.raises(ValueError):
            SessionManager(db, ttl_seconds=3600, max_lifetime_seconds=60)


class TestUpdateSession:
    """Validation and sliding expiry."""

    def test_update_refreshes_metadata(self, sessions, alice, clock):
        session = sessions.new_session(alice.id, "10.0.0.1", "old-agent")
        clock.advance(60)

        updated = sessions.update_session(session.id, "10.0.0.2", "new-agent")

        assert updated.last_seen_at == clock.now
        assert updated.client_ip == "10.0.0.2"
        assert updated.user_agent == "new-agent"
        assert updated.expires_at > session.expires_at
        assert updated.store_token == session.store_token

    def test_unknown_token(self, sessions):
        assert sessions.update_session("nope") is None
        assert sessions.update_session("") is None

    def test_valid_one_second_before_expiry(self, sessions, alice, clock):
        session = sessions.new_session(alice.id)
        clock.advance(TTL - 1)
        assert sessions.update_session(session.id) is not None

    def test_expired_exactly_at_ttl(self, sessions, alice, clock):
        session = sessions.new_session(alice.id)
        clock.advance(TTL)
        assert sessions.update_session(session.id) is None
        assert sessions.get_session(session.id) is None

    def test_expired_session_is_removed(self, sessions, alice, clock, db):
        session = sessions.new_session(alice.id)
        clock.advance(TTL + 1)
        sessions.update_session(session.id)
        with db.connect() as conn:
            assert conn.execute("SELECT COUNT(*) FROM sessions").fetchone()[0] == 0

    def test_sliding_expiry_capped_by_max_lifetime(self, sessions, alice, clock):
        session = sessions.new_session(alice.id)

        # Keep the session busy well inside the idle window
        for _ in range(4):
            clock.advance(3000)
            assert sessions.update_session(session.id) is not None

        refreshed = sessions.get_session(session.id)
        assert (refreshed.expires_at - refreshed.created_at).total_seconds() == MAX_LIFETIME

        clock.advance(MAX_LIFETIME - 4 * 3000)
        assert sessions.update_session(session.id) is None

    def test_requires_csrf_never_changes(self, sessions, alice, clock):
        session = sessions.new_session(alice.id, requires_csrf=True)
        clock.advance(10)
        assert sessions.update_session(session.id).requires_csrf is True

        plain = sessions.new_session(alice.id, requires_csrf=False)
        assert sessions.update_session(plain.id).requires_csrf is False

    def test_get_session_does_not_slide(self, sessions, alice, clock):
        session = sessions.new_session(alice.id)
        clock.advance(100)
        fetched = sessions.get_session(session.id)
        assert fetched.expires_at == session.expires_at
        assert fetched.last_seen_at == session.last_seen_at


class TestDeleteSessions:
    """Logout and revocation."""

    def test_delete_session(self, sessions, alice):
        session = sessions.new_session(alice.id)
        sessions.delete_session(session.id)
        assert sessions.update_session(session.id) is None

    def test_delete_unknown_session_is_silent(self, sessions):
        sessions.delete_session("not-a-session")

    def test_delete_all_sessions(self, sessions, alice, store):
        bob, _ = register_user(store, "bob", confirm=True)
        first = sessions.new_session(alice.id)
        second = sessions.new_session(alice.id)
        kept = sessions.new_session(bob.id)

        assert sessions.delete_all_sessions(alice.id) == 2
        assert sessions.update_session(first.id) is None
        assert sessions.update_session(second.id) is None
        assert sessions.update_session(kept.id) is not None

    def test_delete_all_with_no_sessions(self, sessions, alice):
        assert sessions.delete_all_sessions(alice.id) == 0
