"""Storage and file path configuration."""

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class StorageConfig:
    """Configuration for file storage."""

    # Base directory
    home_dir: Path

    # Subdirectories (derived from home_dir)
    log_dir: Path

    # Database path
    database_path: Path

    # Keyring service used for server secrets
    keyring_service: str = "webmail_proxy"

    @classmethod
    def from_env(cls) -> "StorageConfig":
        """Create config from environment variables."""
        home_dir_str = os.getenv("WEBMAIL_PROXY_HOME")
        home_dir = Path(home_dir_str) if home_dir_str else Path.home() / ".webmail_proxy"

        database_str = os.getenv("DATABASE_PATH")

        return cls(
            home_dir=home_dir,
            log_dir=home_dir / "logs",
            database_path=Path(database_str) if database_str else home_dir / "webmail.db",
            keyring_service=os.getenv("KEYRING_SERVICE", "webmail_proxy"),
        )

    def ensure_directories(self) -> None:
        """Create necessary directories with secure permissions."""
        from webmail_proxy.lib.utils import ensure_secure_directory

        ensure_secure_directory(self.home_dir, mode=0o700)
        ensure_secure_directory(self.log_dir, mode=0o700)

    def validate(self) -> None:
        """Validate configuration."""
        if not self.keyring_service:
            raise ValueError("Keyring service name must not be empty")

        if self.database_path.suffix not in (".db", ".sqlite", ".sqlite3"):
            raise ValueError(
                f"Database path must end in .db, .sqlite or .sqlite3: {self.database_path}"
            )
