"""Database migration system for schema evolution."""

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from webmail_proxy.lib.logger import get_logger

logger = get_logger(__name__)


@dataclass
class Migration:
    """Represents a database migration."""

    version: int
    description: str
    upgrade_sql: list[str]
    downgrade_sql: list[str] | None = None


# Migration registry - all migrations must be registered here in version order
MIGRATIONS = [
    Migration(
        version=1,
        description="Users and sessions",
        upgrade_sql=[
            """
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT NOT NULL UNIQUE COLLATE NOCASE,
                name TEXT NOT NULL,
                imap_host TEXT NOT NULL,
                imap_port INTEGER NOT NULL,
                imap_security TEXT NOT NULL,
                smtp_host TEXT NOT NULL,
                smtp_port INTEGER NOT NULL,
                smtp_security TEXT NOT NULL,
                encrypted_password TEXT NOT NULL,
                password_version INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS sessions (
                jti TEXT PRIMARY KEY,
                user_id INTEGER NOT NULL,
                password_version INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                last_used_at TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                ip_address TEXT,
                user_agent TEXT,
                FOREIGN KEY (user_id) REFERENCES users(id)
                    ON DELETE CASCADE
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_sessions_user
            ON sessions(user_id)
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_sessions_expires
            ON sessions(expires_at)
            """,
        ],
        downgrade_sql=[
            "DROP INDEX IF EXISTS idx_sessions_expires",
            "DROP INDEX IF EXISTS idx_sessions_user",
            "DROP TABLE IF EXISTS sessions",
            "DROP TABLE IF EXISTS users",
        ],
    ),
    Migration(
        version=2,
        description="Per-user client settings",
        upgrade_sql=[
            """
            CREATE TABLE IF NOT EXISTS user_settings (
                user_id INTEGER PRIMARY KEY,
                signature TEXT NOT NULL DEFAULT '',
                auto_bcc TEXT NOT NULL DEFAULT '',
                default_folder TEXT NOT NULL DEFAULT 'INBOX',
                reading_pane TEXT NOT NULL DEFAULT 'right',
                emails_per_page INTEGER NOT NULL DEFAULT 50,
                show_images BOOLEAN NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (user_id) REFERENCES users(id)
                    ON DELETE CASCADE
            )
            """,
        ],
        downgrade_sql=[
            "DROP TABLE IF EXISTS user_settings",
        ],
    ),
]


class MigrationManager:
    """Applies and reverts the ``MIGRATIONS`` registry against one SQLite file.

    Applied versions are recorded in ``schema_version``; each migrate or
    rollback call runs in a single transaction.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path))
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    description TEXT NOT NULL,
                    applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            yield conn
        finally:
            conn.close()

    @staticmethod
    def latest_version() -> int:
        return max(m.version for m in MIGRATIONS)

    def get_current_version(self) -> int:
        """Highest applied version, 0 for an empty database."""
        with self._connect() as conn:
            (version,) = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        return version or 0

    def migrate(self, target_version: int | None = None) -> None:
        """
        Apply pending migrations up to ``target_version`` (default: latest).

        Raises:
            ValueError: Target outside 0..latest
            sqlite3.Error: A migration statement failed (nothing is applied)
        """
        target = self.latest_version() if target_version is None else target_version
        if not 0 <= target <= self.latest_version():
            raise ValueError(f"Invalid target version: {target}")

        current = self.get_current_version()
        pending = [m for m in MIGRATIONS if current < m.version <= target]
        if not pending:
            logger.debug(f"Database already at version {current}")
            return

        logger.info(f"Migrating database from version {current} to {target}")
        with self._connect() as conn:
            try:
                with conn:
                    for migration in pending:
                        logger.info(f"Applying migration {migration.version}: {migration.description}")
                        for sql in migration.upgrade_sql:
                            conn.execute(sql)
                        conn.execute(
                            "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                            (migration.version, migration.description),
                        )
            except sqlite3.Error as e:
                logger.error(f"Migration failed: {e}")
                raise

    def rollback(self, target_version: int) -> None:
        """
        Revert applied migrations newer than ``target_version``.

        Raises:
            ValueError: A migration on the way down has no downgrade statements
            sqlite3.Error: A downgrade statement failed (nothing is reverted)
        """
        current = self.get_current_version()
        steps = [m for m in reversed(MIGRATIONS) if target_version < m.version <= current]
        if not steps:
            logger.info(f"Database already at or before version {target_version}")
            return

        missing = [m.version for m in steps if not m.downgrade_sql]
        if missing:
            raise ValueError(f"Migration {missing[0]} has no downgrade path")

        logger.warning(f"Rolling back database from version {current} to {target_version}")
        with self._connect() as conn:
            try:
                with conn:
                    for migration in steps:
                        for sql in migration.downgrade_sql:
                            conn.execute(sql)
                        conn.execute("DELETE FROM schema_version WHERE version = ?", (migration.version,))
            except sqlite3.Error as e:
                logger.error(f"Rollback failed: {e}")
                raise

    def get_migration_history(self) -> list[dict]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT version, description, applied_at FROM schema_version ORDER BY version"
            ).fetchall()
        return [{"version": v, "description": d, "applied_at": at} for v, d, at in rows]
