"""SQLite store for users, auth sessions and per-user settings."""

import sqlite3
import threading
from datetime import datetime
from pathlib import Path

from webmail_proxy.lib.config import storage_config
from webmail_proxy.lib.logger import get_logger
from webmail_proxy.lib.migrations import MigrationManager
from webmail_proxy.models.account import (
    AuthSession,
    SecurityMode,
    ServerSettings,
    User,
    UserSettings,
    utcnow,
)

logger = get_logger(__name__)


def _ts(value: datetime) -> str:
    return value.isoformat()


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


class SessionDatabase:
    """Persistent store shared by every request thread.

    One connection is opened with ``check_same_thread=False`` and every
    statement runs under a re-entrant lock.
    """

    def __init__(self, db_path: Path | None = None):
        """
        Initialize the database, applying pending migrations.

        Args:
            db_path: Path to SQLite database file (default: storage_config.database_path)
        """
        from webmail_proxy.lib.utils import ensure_secure_directory, ensure_secure_file

        self.db_path = Path(db_path or storage_config.database_path)

        ensure_secure_directory(self.db_path.parent, mode=0o700)

        MigrationManager(self.db_path).migrate()

        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()

        try:
            _ = self.connection
            logger.debug(f"Initialized session database at {self.db_path}")
        except sqlite3.Error as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

        ensure_secure_file(self.db_path, mode=0o600)

    @property
    def connection(self) -> sqlite3.Connection:
        """Get or create the persistent database connection."""
        if self._connection is None:
            self._connection = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys = ON")
            self._connection.execute("PRAGMA journal_mode = WAL")
            logger.debug("Created persistent database connection")
        return self._connection

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
                logger.debug("Closed database connection")

    # ========================================================================
    # Users
    # ========================================================================

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            name=row["name"],
            imap=ServerSettings(
                host=row["imap_host"],
                port=row["imap_port"],
                security=SecurityMode.parse(row["imap_security"]),
            ),
            smtp=ServerSettings(
                host=row["smtp_host"],
                port=row["smtp_port"],
                security=SecurityMode.parse(row["smtp_security"]),
            ),
            encrypted_password=row["encrypted_password"],
            password_version=row["password_version"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    def get_user(self, user_id: int) -> User | None:
        with self._lock:
            row = self.connection.execute(
                "SELECT * FROM users WHERE id = ?", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive)."""
        with self._lock:
            row = self.connection.execute(
                "SELECT * FROM users WHERE email = ?", (email.lower(),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def create_user(
        self,
        email: str,
        name: str,
        imap: ServerSettings,
        smtp: ServerSettings,
        encrypted_password: str,
    ) -> User:
        """
        Insert a new user at password version 1.

        Raises:
            sqlite3.IntegrityError: Email already registered
        """
        now = utcnow()
        try:
            with self._lock, self.connection:
                cursor = self.connection.execute(
                    """
                    INSERT INTO users
                    (email, name, imap_host, imap_port, imap_security,
                     smtp_host, smtp_port, smtp_security,
                     encrypted_password, password_version, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
                    """,
                    (
                        email.lower(),
                        name,
                        imap.host,
                        imap.port,
                        imap.security.value,
                        smtp.host,
                        smtp.port,
                        smtp.security.value,
                        encrypted_password,
                        _ts(now),
                        _ts(now),
                    ),
                )
                user_id = cursor.lastrowid
        except sqlite3.Error as e:
            logger.error(f"Failed to create user: {e}")
            raise

        logger.debug(f"Created user {user_id}")
        return User(
            id=user_id,
            email=email,
            name=name,
            imap=imap,
            smtp=smtp,
            encrypted_password=encrypted_password,
            password_version=1,
            created_at=now,
            updated_at=now,
        )

    def update_user(self, user: User) -> None:
        """Persist every mutable user column."""
        user.updated_at = utcnow()
        try:
            with self._lock, self.connection:
                self.connection.execute(
                    """
                    UPDATE users SET
                        name = ?, imap_host = ?, imap_port = ?, imap_security = ?,
                        smtp_host = ?, smtp_port = ?, smtp_security = ?,
                        encrypted_password = ?, password_version = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        user.name,
                        user.imap.host,
                        user.imap.port,
                        user.imap.security.value,
                        user.smtp.host,
                        user.smtp.port,
                        user.smtp.security.value,
                        user.encrypted_password,
                        user.password_version,
                        _ts(user.updated_at),
                        user.id,
                    ),
                )
        except sqlite3.Error as e:
            logger.error(f"Failed to update user {user.id}: {e}")
            raise

    def update_encrypted_password(self, user_id: int, encrypted_password: str) -> None:
        """Replace the stored credential blob without touching the version."""
        with self._lock, self.connection:
            self.connection.execute(
                "UPDATE users SET encrypted_password = ?, updated_at = ? WHERE id = ?",
                (encrypted_password, _ts(utcnow()), user_id),
            )

    def list_users(self) -> list[User]:
        with self._lock:
            rows = self.connection.execute("SELECT * FROM users ORDER BY id").fetchall()
        return [self._row_to_user(row) for row in rows]

    # ========================================================================
    # Sessions
    # ========================================================================

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> AuthSession:
        return AuthSession(
            jti=row["jti"],
            user_id=row["user_id"],
            password_version=row["password_version"],
            created_at=_parse_ts(row["created_at"]),
            last_used_at=_parse_ts(row["last_used_at"]),
            expires_at=_parse_ts(row["expires_at"]),
            ip_address=row["ip_address"],
            user_agent=row["user_agent"],
        )

    def create_session(self, session: AuthSession) -> None:
        try:
            with self._lock, self.connection:
                self.connection.execute(
                    """
                    INSERT INTO sessions
                    (jti, user_id, password_version, created_at, last_used_at,
                     expires_at, ip_address, user_agent)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        session.jti,
                        session.user_id,
                        session.password_version,
                        _ts(session.created_at),
                        _ts(session.last_used_at),
                        _ts(session.expires_at),
                        session.ip_address,
                        session.user_agent,
                    ),
                )
        except sqlite3.Error as e:
            logger.error(f"Failed to create session for user {session.user_id}: {e}")
            raise

    def get_session(self, jti: str) -> AuthSession | None:
        with self._lock:
            row = self.connection.execute(
                "SELECT * FROM sessions WHERE jti = ?", (jti,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def list_user_sessions(self, user_id: int) -> list[AuthSession]:
        """Sessions of one user, most recently used first."""
        with self._lock:
            rows = self.connection.execute(
                "SELECT * FROM sessions WHERE user_id = ? ORDER BY last_used_at DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def touch_session(self, jti: str, when: datetime | None = None) -> None:
        with self._lock, self.connection:
            self.connection.execute(
                "UPDATE sessions SET last_used_at = ? WHERE jti = ?",
                (_ts(when or utcnow()), jti),
            )

    def delete_session(self, jti: str, user_id: int | None = None) -> bool:
        """
        Delete one session.

        Args:
            jti: Session identifier
            user_id: When given, only delete if the session belongs to this user

        Returns:
            True if a row was deleted
        """
        query = "DELETE FROM sessions WHERE jti = ?"
        params: list = [jti]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)

        with self._lock, self.connection:
            cursor = self.connection.execute(query, params)
        return cursor.rowcount > 0

    def delete_user_sessions(self, user_id: int, except_jti: str | None = None) -> int:
        """Delete every session of a user, optionally keeping one."""
        query = "DELETE FROM sessions WHERE user_id = ?"
        params: list = [user_id]
        if except_jti:
            query += " AND jti != ?"
            params.append(except_jti)

        with self._lock, self.connection:
            cursor = self.connection.execute(query, params)
        logger.debug(f"Deleted {cursor.rowcount} sessions for user {user_id}")
        return cursor.rowcount

    def delete_expired_sessions(self, now: datetime | None = None) -> int:
        """
        Remove sessions whose expiry has passed.

        Returns:
            Number of sessions deleted
        """
        try:
            with self._lock, self.connection:
                cursor = self.connection.execute(
                    "DELETE FROM sessions WHERE expires_at <= ?",
                    (_ts(now or utcnow()),),
                )
            deleted = cursor.rowcount
            if deleted:
                logger.info(f"Swept {deleted} expired sessions")
            return deleted
        except sqlite3.Error as e:
            logger.error(f"Failed to sweep expired sessions: {e}")
            raise

    # ========================================================================
    # Settings
    # ========================================================================

    def get_settings(self, user_id: int) -> UserSettings:
        """Stored settings, or defaults when none were saved yet."""
        with self._lock:
            row = self.connection.execute(
                "SELECT * FROM user_settings WHERE user_id = ?", (user_id,)
            ).fetchone()
        if row is None:
            return UserSettings()
        return UserSettings(
            signature=row["signature"],
            auto_bcc=row["auto_bcc"],
            default_folder=row["default_folder"],
            reading_pane=row["reading_pane"],
            emails_per_page=row["emails_per_page"],
            show_images=bool(row["show_images"]),
        )

    def save_settings(self, user_id: int, settings: UserSettings) -> None:
        with self._lock, self.connection:
            self.connection.execute(
                """
                INSERT OR REPLACE INTO user_settings
                (user_id, signature, auto_bcc, default_folder, reading_pane,
                 emails_per_page, show_images, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    settings.signature,
                    settings.auto_bcc,
                    settings.default_folder,
                    settings.reading_pane,
                    settings.emails_per_page,
                    int(settings.show_images),
                    _ts(utcnow()),
                ),
            )
