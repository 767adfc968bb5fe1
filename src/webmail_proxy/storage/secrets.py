"""Application secret storage backed by the OS keyring.

The JWT signing secret and the credential encryption key are normally
supplied through the environment. When they are not, they are read from the
operating system's credential manager, where ``webmail-proxy init-secrets``
puts them:
- macOS: Keychain
- Windows: Windows Credential Locker
- Linux: Secret Service API / KWallet / gnome-keyring
"""

import logging
import secrets

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from webmail_proxy.lib.config import auth_config, storage_config

# ============================================================================
# Logging Configuration
# ============================================================================

logger = logging.getLogger("webmail_proxy.storage.secrets")

JWT_SECRET_KEY = "jwt_secret"
ENCRYPTION_KEY_KEY = "encryption_key"


# ============================================================================
# SecretStore Class
# ============================================================================


class SecretStore:
    """Reads and generates application secrets in the OS keyring.

    Attributes:
        _service_name: Keyring service identifier
    """

    def __init__(self, service_name: str | None = None) -> None:
        self._service_name = service_name or storage_config.keyring_service

    def get(self, name: str) -> str | None:
        """Read one secret, returning None if absent or the keyring is unusable."""
        try:
            return keyring.get_password(self._service_name, name)
        except KeyringError as e:
            logger.warning(f"Keyring unavailable while reading {name}: {e}")
            return None

    def set(self, name: str, value: str) -> None:
        """Store one secret.

        Raises:
            KeyringError: The keyring backend rejected the write
        """
        keyring.set_password(self._service_name, name, value)
        logger.info(f"Stored secret {name} in keyring service {self._service_name}")

    def delete(self, name: str) -> bool:
        try:
            keyring.delete_password(self._service_name, name)
            return True
        except PasswordDeleteError:
            return False

    def generate(self, name: str, force: bool = False, nbytes: int = 48) -> tuple[str, bool]:
        """Create a random secret unless one already exists.

        Args:
            name: Secret name
            force: Overwrite an existing value
            nbytes: Entropy in bytes

        Returns:
            (value, created) where created is False if an existing value was kept
        """
        existing = self.get(name)
        if existing and not force:
            return existing, False

        value = secrets.token_urlsafe(nbytes)
        self.set(name, value)
        return value, True

    # ========================================================================
    # Resolution (environment first, then keyring)
    # ========================================================================

    def jwt_secret(self) -> str | None:
        return auth_config.jwt_secret or self.get(JWT_SECRET_KEY)

    def encryption_secret(self) -> str | None:
        """ENCRYPTION_KEY, then JWT_SECRET, then the keyring entries."""
        return (
            auth_config.encryption_key
            or auth_config.jwt_secret
            or self.get(ENCRYPTION_KEY_KEY)
            or self.get(JWT_SECRET_KEY)
        )
