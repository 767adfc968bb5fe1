"""Unit tests for the SQLite session store."""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from webmail_proxy.lib.session_db import SessionDatabase
from webmail_proxy.models.account import AuthSession, SecurityMode, ServerSettings, UserSettings

NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _create_user(db, email="user@example.com"):
    return db.create_user(
        email=email,
        name="User",
        imap=ServerSettings("imap.example.com", 993),
        smtp=ServerSettings("smtp.example.com", 587, SecurityMode.STARTTLS),
        encrypted_password="k1$00:11:22",
    )


def _session(user_id, jti="jti-1", created=NOW, ttl=timedelta(days=7)):
    return AuthSession(
        jti=jti,
        user_id=user_id,
        password_version=1,
        created_at=created,
        last_used_at=created,
        expires_at=created + ttl,
        ip_address="127.0.0.1",
        user_agent="pytest",
    )


class TestUsers:
    """Test user persistence."""

    def test_create_and_read_back(self, temp_db):
        user = _create_user(temp_db)

        stored = temp_db.get_user(user.id)
        assert stored.email == "user@example.com"
        assert stored.smtp.security is SecurityMode.STARTTLS
        assert stored.password_version == 1

    def test_lookup_is_case_insensitive(self, temp_db):
        _create_user(temp_db)
        assert temp_db.get_user_by_email("USER@example.COM") is not None

    def test_duplicate_email_rejected(self, temp_db):
        _create_user(temp_db)
        with pytest.raises(sqlite3.IntegrityError):
            _create_user(temp_db, email="User@Example.com")

    def test_update_user(self, temp_db):
        user = _create_user(temp_db)
        user.password_version = 3
        user.name = "Renamed"
        user.imap = ServerSettings("imap2.example.com", 143, SecurityMode.STARTTLS)
        temp_db.update_user(user)

        stored = temp_db.get_user(user.id)
        assert stored.password_version == 3
        assert stored.name == "Renamed"
        assert stored.imap.host == "imap2.example.com"

    def test_update_encrypted_password_keeps_version(self, temp_db):
        user = _create_user(temp_db)
        temp_db.update_encrypted_password(user.id, "k2$aa:bb:cc")

        stored = temp_db.get_user(user.id)
        assert stored.encrypted_password == "k2$aa:bb:cc"
        assert stored.password_version == 1

    def test_list_users(self, temp_db):
        _create_user(temp_db, "a@example.com")
        _create_user(temp_db, "b@example.com")
        assert [u.email for u in temp_db.list_users()] == ["a@example.com", "b@example.com"]


class TestSessions:
    """Test session persistence."""

    def test_create_get_touch(self, temp_db):
        user = _create_user(temp_db)
        temp_db.create_session(_session(user.id))

        later = NOW + timedelta(hours=2)
        temp_db.touch_session("jti-1", later)

        stored = temp_db.get_session("jti-1")
        assert stored.last_used_at == later
        assert stored.user_agent == "pytest"

    def test_delete_scoped_to_owner(self, temp_db):
        """
        Validates: a user can only revoke their own sessions

        Expected outcome:
        - Deleting with another user's id removes nothing
        """
        owner = _create_user(temp_db, "a@example.com")
        other = _create_user(temp_db, "b@example.com")
        temp_db.create_session(_session(owner.id))

        assert not temp_db.delete_session("jti-1", user_id=other.id)
        assert temp_db.delete_session("jti-1", user_id=owner.id)
        assert temp_db.get_session("jti-1") is None

    def test_delete_user_sessions_except_one(self, temp_db):
        user = _create_user(temp_db)
        for jti in ("a", "b", "c"):
            temp_db.create_session(_session(user.id, jti=jti))

        assert temp_db.delete_user_sessions(user.id, except_jti="b") == 2
        assert [s.jti for s in temp_db.list_user_sessions(user.id)] == ["b"]

    def test_sessions_ordered_by_last_use(self, temp_db):
        user = _create_user(temp_db)
        temp_db.create_session(_session(user.id, jti="old", created=NOW))
        temp_db.create_session(_session(user.id, jti="new", created=NOW + timedelta(hours=1)))
        assert [s.jti for s in temp_db.list_user_sessions(user.id)] == ["new", "old"]

    def test_delete_expired_sessions(self, temp_db):
        """
        Validates: sweeping removes exactly the sessions past expiry

        Expected outcome:
        - Expired row removed, live row kept, second sweep removes nothing
        """
        user = _create_user(temp_db)
        temp_db.create_session(_session(user.id, jti="expired", ttl=timedelta(hours=1)))
        temp_db.create_session(_session(user.id, jti="live", ttl=timedelta(days=7)))

        assert temp_db.delete_expired_sessions(NOW + timedelta(hours=2)) == 1
        assert temp_db.delete_expired_sessions(NOW + timedelta(hours=2)) == 0
        assert temp_db.get_session("live") is not None

    def test_sessions_removed_with_user(self, temp_db):
        user = _create_user(temp_db)
        temp_db.create_session(_session(user.id))
        with temp_db.connection:
            temp_db.connection.execute("DELETE FROM users WHERE id = ?", (user.id,))
        assert temp_db.get_session("jti-1") is None


class TestSettings:
    """Test per-user settings persistence."""

    def test_defaults_when_unset(self, temp_db):
        user = _create_user(temp_db)
        assert temp_db.get_settings(user.id) == UserSettings()

    def test_save_and_reload(self, temp_db):
        user = _create_user(temp_db)
        settings = UserSettings(signature="-- \nUser", auto_bcc="archive@example.com", show_images=True)
        temp_db.save_settings(user.id, settings)

        assert temp_db.get_settings(user.id) == settings


class TestDatabaseFile:
    """Test database initialization."""

    def test_file_created_with_owner_only_permissions(self, tmp_path):
        import os
        import stat

        db = SessionDatabase(tmp_path / "nested" / "webmail.db")
        try:
            assert db.db_path.exists()
            assert stat.S_IMODE(os.stat(db.db_path).st_mode) == 0o600
        finally:
            db.close()

    def test_reopen_keeps_data(self, tmp_path):
        path = tmp_path / "webmail.db"
        db = SessionDatabase(path)
        _create_user(db)
        db.close()

        reopened = SessionDatabase(path)
        try:
            assert reopened.get_user_by_email("user@example.com") is not None
        finally:
            reopened.close()
