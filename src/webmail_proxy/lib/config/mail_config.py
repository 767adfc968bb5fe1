"""Mail server connection configuration."""

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class MailConfig:
    """Configuration for IMAP/SMTP connections and server discovery."""

    # Fallback servers used when discovery finds no published config
    default_imap_host: str | None = None
    default_imap_port: int = 993
    default_smtp_host: str | None = None
    default_smtp_port: int = 465

    # Timeouts
    imap_timeout_seconds: int = 30
    smtp_timeout_seconds: int = 30
    discovery_timeout_seconds: float = 5.0

    # Folder lookup cache
    folder_cache_ttl_seconds: int = 300  # 5 minutes
    folder_cache_max_entries: int = 1000

    # TLS certificate verification
    verify_tls: bool = True

    @classmethod
    def from_env(cls) -> "MailConfig":
        """Create config from environment variables."""
        return cls(
            default_imap_host=os.getenv("DEFAULT_IMAP_HOST") or None,
            default_imap_port=int(os.getenv("DEFAULT_IMAP_PORT", "993")),
            default_smtp_host=os.getenv("DEFAULT_SMTP_HOST") or None,
            default_smtp_port=int(os.getenv("DEFAULT_SMTP_PORT", "465")),
            imap_timeout_seconds=int(os.getenv("IMAP_TIMEOUT_SECONDS", "30")),
            smtp_timeout_seconds=int(os.getenv("SMTP_TIMEOUT_SECONDS", "30")),
            discovery_timeout_seconds=float(os.getenv("DISCOVERY_TIMEOUT_SECONDS", "5")),
            folder_cache_ttl_seconds=int(os.getenv("FOLDER_CACHE_TTL_SECONDS", "300")),
            folder_cache_max_entries=int(os.getenv("FOLDER_CACHE_MAX_ENTRIES", "1000")),
            verify_tls=os.getenv("MAIL_VERIFY_TLS", "true").lower() in ("1", "true", "yes"),
        )

    def validate(self) -> None:
        """Validate configuration."""
        for label, port in (("IMAP", self.default_imap_port), ("SMTP", self.default_smtp_port)):
            if not 0 < port < 65536:
                raise ValueError(f"Default {label} port must be between 1 and 65535")

        if self.imap_timeout_seconds <= 0 or self.smtp_timeout_seconds <= 0:
            raise ValueError("Mail timeouts must be positive")

        if self.discovery_timeout_seconds <= 0:
            raise ValueError("Discovery timeout must be positive")

        if self.folder_cache_ttl_seconds <= 0:
            raise ValueError("Folder cache TTL must be positive")

        if self.folder_cache_max_entries <= 0:
            raise ValueError("Folder cache max entries must be positive")
