"""Account entity models: users, sessions, server settings and client settings."""

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class SecurityMode(Enum):
    """Transport security used to reach a mail server.

    - SSL_TLS: implicit TLS from the first byte (IMAPS 993, SMTPS 465)
    - STARTTLS: plain connect, then upgrade with STARTTLS (IMAP 143, SMTP 587)
    - NONE: no transport security
    """

    SSL_TLS = "SSL/TLS"
    STARTTLS = "STARTTLS"
    NONE = "None"

    @classmethod
    def parse(cls, value: "str | SecurityMode | None", default: "SecurityMode | None" = None) -> "SecurityMode":
        """Parse a security mode from its wire value.

        Args:
            value: "SSL/TLS", "STARTTLS", "None" (case-insensitive) or a member
            default: Returned when value is empty

        Raises:
            ValueError: Unknown security mode
        """
        if isinstance(value, cls):
            return value
        if not value:
            if default is None:
                raise ValueError("Security mode is required")
            return default
        normalized = str(value).strip().lower()
        for member in cls:
            if member.value.lower() == normalized:
                return member
        if normalized in ("ssl", "tls"):
            return cls.SSL_TLS
        raise ValueError(f"Unknown security mode: {value}")


@dataclass(frozen=True)
class ServerSettings:
    """Host, port and transport security of one mail server."""

    host: str
    port: int
    security: SecurityMode = SecurityMode.SSL_TLS

    def __post_init__(self) -> None:
        if not self.host or not self.host.strip():
            raise ValueError("Server host cannot be empty")
        if not 0 < int(self.port) < 65536:
            raise ValueError(f"Server port out of range: {self.port}")

    def to_dict(self) -> dict[str, Any]:
        return {"host": self.host, "port": self.port, "security": self.security.value}


@dataclass
class User:
    """
    Mailbox owner, created on first successful login.

    Attributes:
        id: Stable database identifier
        email: Lowercased email address (unique)
        name: Display name
        imap: IMAP server settings
        smtp: SMTP server settings
        encrypted_password: Credential codec blob of the mail password
        password_version: Epoch bumped whenever the mail password changes
        created_at: First login timestamp
        updated_at: Last login/settings refresh timestamp
    """

    id: int
    email: str
    name: str
    imap: ServerSettings
    smtp: ServerSettings
    encrypted_password: str
    password_version: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not self.email or "@" not in self.email:
            raise ValueError(f"Invalid user email: {self.email!r}")
        self.email = self.email.lower()
        if self.password_version < 1:
            raise ValueError("Password version must be positive")

    def to_public_dict(self) -> dict[str, Any]:
        """User fields safe to return to the browser."""
        return {"id": self.id, "email": self.email, "name": self.name}


@dataclass
class AuthSession:
    """
    One issued bearer token.

    Attributes:
        jti: Unique token identifier (also embedded in the token)
        user_id: Owning user
        password_version: User's password epoch when the token was minted
        created_at: Login time
        last_used_at: Last authenticated request (best-effort)
        expires_at: Hard expiry, matches the token ``exp`` claim
        ip_address: Client IP at login
        user_agent: Client user agent at login
    """

    jti: str
    user_id: int
    password_version: int
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    ip_address: str | None = None
    user_agent: str | None = None

    def __post_init__(self) -> None:
        if not self.jti:
            raise ValueError("Session JTI cannot be empty")
        if self.expires_at < self.created_at:
            raise ValueError("Session expiry cannot be before creation")

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check whether the session has reached its expiry time."""
        return (now or utcnow()) >= self.expires_at

    def to_dict(self, current_jti: str | None = None) -> dict[str, Any]:
        return {
            "jti": self.jti,
            "createdAt": self.created_at.isoformat(),
            "lastUsedAt": self.last_used_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "current": self.jti == current_jti,
        }


READING_PANE_OPTIONS = ("right", "bottom", "off")


@dataclass
class UserSettings:
    """Client preferences persisted per user."""

    signature: str = ""
    auto_bcc: str = ""
    default_folder: str = "INBOX"
    reading_pane: str = "right"
    emails_per_page: int = 50
    show_images: bool = False

    # Wire (camelCase) name -> attribute name
    WIRE_NAMES = {
        "signature": "signature",
        "autoBcc": "auto_bcc",
        "defaultFolder": "default_folder",
        "readingPane": "reading_pane",
        "emailsPerPage": "emails_per_page",
        "showImages": "show_images",
    }

    def __post_init__(self) -> None:
        if self.reading_pane not in READING_PANE_OPTIONS:
            raise ValueError(f"Reading pane must be one of {READING_PANE_OPTIONS}")
        if not isinstance(self.emails_per_page, int) or isinstance(self.emails_per_page, bool):
            raise ValueError("Emails per page must be an integer")
        if not 10 <= self.emails_per_page <= 200:
            raise ValueError("Emails per page must be between 10 and 200")
        if not isinstance(self.show_images, bool):
            raise ValueError("Show images must be a boolean")
        if not self.default_folder:
            raise ValueError("Default folder cannot be empty")
        if len(self.signature) > 10_000:
            raise ValueError("Signature must not exceed 10000 characters")

    def to_dict(self) -> dict[str, Any]:
        return {wire: getattr(self, attr) for wire, attr in self.WIRE_NAMES.items()}

    def merged(self, updates: dict[str, Any]) -> "UserSettings":
        """Return a copy with camelCase ``updates`` applied and validated.

        Raises:
            ValueError: Unknown key or invalid value
        """
        unknown = set(updates) - set(self.WIRE_NAMES)
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        for wire, value in updates.items():
            values[self.WIRE_NAMES[wire]] = value
        return UserSettings(**values)
