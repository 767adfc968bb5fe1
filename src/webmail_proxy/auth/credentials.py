"""Symmetric codec for mail passwords stored at rest.

Blob format::

    <key_id>$<nonce_hex>:<ciphertext_hex>:<tag_hex>

The key id prefix lets several secrets coexist during a rotation. A blob
without a prefix is read with the current key.
"""

import os
import threading

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from webmail_proxy.lib.errors import DecryptionError, EncryptionError
from webmail_proxy.lib.logger import get_logger

logger = get_logger(__name__)

NONCE_SIZE = 16
TAG_SIZE = 16
KEY_SIZE = 32
KEY_ID_SEPARATOR = "$"
FIELD_SEPARATOR = ":"


class CredentialCodec:
    """AES-256-GCM encryption with PBKDF2-derived, per-key-id keys."""

    def __init__(
        self,
        secrets: dict[str, str],
        current_key_id: str,
        salt: bytes,
        iterations: int = 100_000,
    ):
        """
        Initialize codec.

        Args:
            secrets: Key id -> secret for the current and every retired key
            current_key_id: Key id used for new blobs
            salt: Static application salt for key derivation
            iterations: PBKDF2 iteration count
        """
        if KEY_ID_SEPARATOR in current_key_id:
            raise ValueError(f"Key id must not contain {KEY_ID_SEPARATOR!r}")
        self._secrets = dict(secrets)
        self.current_key_id = current_key_id
        self._salt = salt
        self._iterations = iterations
        self._derived: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def _key(self, key_id: str) -> bytes:
        with self._lock:
            derived = self._derived.get(key_id)
            if derived is not None:
                return derived

            secret = self._secrets.get(key_id)
            if not secret:
                raise KeyError(key_id)

            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=KEY_SIZE,
                salt=self._salt,
                iterations=self._iterations,
            )
            derived = kdf.derive(secret.encode("utf-8"))
            self._derived[key_id] = derived
            return derived

    @staticmethod
    def key_id_of(blob: str, default: str) -> str:
        key_id, sep, _ = blob.partition(KEY_ID_SEPARATOR)
        return key_id if sep else default

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt with the current key.

        Raises:
            EncryptionError: Empty plaintext or the current secret is unset
        """
        if not plaintext:
            raise EncryptionError("Cannot encrypt an empty credential")
        try:
            key = self._key(self.current_key_id)
        except KeyError:
            raise EncryptionError("Encryption key is not configured") from None

        nonce = os.urandom(NONCE_SIZE)
        sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]

        return (
            f"{self.current_key_id}{KEY_ID_SEPARATOR}"
            f"{nonce.hex()}{FIELD_SEPARATOR}{ciphertext.hex()}{FIELD_SEPARATOR}{tag.hex()}"
        )

    def decrypt(self, blob: str) -> str:
        """
        Decrypt a blob written with any known key.

        Raises:
            DecryptionError: Malformed blob, unknown key id or failed authentication
        """
        if not blob:
            raise DecryptionError("Unable to decrypt credential")

        key_id = self.key_id_of(blob, self.current_key_id)
        body = blob.partition(KEY_ID_SEPARATOR)[2] if KEY_ID_SEPARATOR in blob else blob

        parts = body.split(FIELD_SEPARATOR)
        if len(parts) != 3:
            raise DecryptionError("Unable to decrypt credential")

        try:
            nonce, ciphertext, tag = (bytes.fromhex(p) for p in parts)
            key = self._key(key_id)
            plaintext = AESGCM(key).decrypt(nonce, ciphertext + tag, None)
            return plaintext.decode("utf-8")
        except (ValueError, KeyError, InvalidTag, UnicodeDecodeError) as e:
            logger.debug(f"Credential decryption failed with key id {key_id}: {type(e).__name__}")
            raise DecryptionError("Unable to decrypt credential") from None

    def needs_rotation(self, blob: str) -> bool:
        """True if the blob was written with a key other than the current one."""
        return self.key_id_of(blob, self.current_key_id) != self.current_key_id

    def rotate(self, blob: str) -> str:
        """Re-encrypt a blob under the current key."""
        return self.encrypt(self.decrypt(blob))


def build_codec(secret_store=None) -> CredentialCodec:
    """Create the codec from configuration and the secret store.

    Raises:
        EncryptionError: No encryption secret is available
    """
    from webmail_proxy.lib.config import auth_config
    from webmail_proxy.storage.secrets import SecretStore

    store = secret_store or SecretStore()
    current = store.encryption_secret()
    if not current:
        raise EncryptionError(
            "No encryption secret configured. Set ENCRYPTION_KEY or run 'webmail-proxy init-secrets'"
        )

    keys = dict(auth_config.retired_keys)
    keys[auth_config.encryption_key_id] = current

    return CredentialCodec(
        secrets=keys,
        current_key_id=auth_config.encryption_key_id,
        salt=auth_config.encryption_salt.encode("utf-8"),
        iterations=auth_config.kdf_iterations,
    )
