"""Token signing and credential encryption configuration."""

import os
from dataclasses import dataclass, field


def _parse_retired_keys(raw: str | None) -> dict[str, str]:
    """Parse ``id=secret,id=secret`` into a mapping."""
    keys: dict[str, str] = {}
    if not raw:
        return keys
    for pair in raw.split(","):
        key_id, sep, secret = pair.strip().partition("=")
        if sep and key_id and secret:
            keys[key_id.strip()] = secret.strip()
    return keys


@dataclass(frozen=True)
class AuthConfig:
    """Configuration for JWT sessions and the credential codec."""

    # Token settings
    jwt_secret: str | None = None
    jwt_algorithm: str = "HS256"
    token_ttl_days: int = 7

    # Credential encryption
    encryption_key: str | None = None
    encryption_key_id: str = "k1"
    retired_keys: dict[str, str] = field(default_factory=dict)
    encryption_salt: str = "webmail-proxy-salt"
    kdf_iterations: int = 100_000

    # Background maintenance
    session_cleanup_interval_seconds: int = 3600

    @classmethod
    def from_env(cls) -> "AuthConfig":
        """Create config from environment variables."""
        return cls(
            jwt_secret=os.getenv("JWT_SECRET") or None,
            token_ttl_days=int(os.getenv("TOKEN_TTL_DAYS", "7")),
            encryption_key=os.getenv("ENCRYPTION_KEY") or None,
            encryption_key_id=os.getenv("ENCRYPTION_KEY_ID", "k1"),
            retired_keys=_parse_retired_keys(os.getenv("ENCRYPTION_KEYS_RETIRED")),
            encryption_salt=os.getenv("ENCRYPTION_SALT", "webmail-proxy-salt"),
            session_cleanup_interval_seconds=int(
                os.getenv("SESSION_CLEANUP_INTERVAL_SECONDS", "3600")
            ),
        )

    def validate(self) -> None:
        """Validate configuration."""
        if self.token_ttl_days <= 0:
            raise ValueError("Token TTL days must be positive")

        if self.jwt_algorithm not in ("HS256", "HS384", "HS512"):
            raise ValueError(f"Unsupported JWT algorithm: {self.jwt_algorithm}")

        if not self.encryption_key_id or "$" in self.encryption_key_id:
            raise ValueError("Encryption key id must be non-empty and must not contain '$'")

        if self.encryption_key_id in self.retired_keys:
            raise ValueError("Current encryption key id cannot also be retired")

        if self.kdf_iterations < 10_000:
            raise ValueError("KDF iterations must be at least 10000")

        if self.session_cleanup_interval_seconds <= 0:
            raise ValueError("Session cleanup interval must be positive")
