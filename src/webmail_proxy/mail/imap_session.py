"""Per-operation IMAP connections.

Each ``with_connection`` call is one connect -> login -> operate -> logout
cycle. Nothing is shared between calls, so concurrent requests never
contend for a connection.
"""

import socket
import ssl
from typing import Callable, TypeVar

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError, LoginError

from webmail_proxy.lib.config import mail_config
from webmail_proxy.lib.errors import (
    MailAuthenticationError,
    MailServerError,
    MailServerUnavailable,
    WebmailError,
)
from webmail_proxy.lib.logger import get_logger, hash_email
from webmail_proxy.mail.protocols import IMAPClientProtocol
from webmail_proxy.models.account import SecurityMode, ServerSettings

logger = get_logger(__name__)

T = TypeVar("T")

UNAVAILABLE_ERRORS = (ConnectionRefusedError, socket.gaierror)


def create_ssl_context(verify: bool = True) -> ssl.SSLContext:
    """TLS context with certificate verification and TLS 1.2 minimum."""
    context = ssl.create_default_context()
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    if verify:
        context.check_hostname = True
        context.verify_mode = ssl.CERT_REQUIRED
    else:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def sanitize_error(error: Exception) -> str:
    """Map a low-level error to a generic message safe for logs and clients."""
    error_str = str(error).lower()
    if isinstance(error, socket.timeout) or "timed out" in error_str:
        return "Connection timed out"
    if "ssl" in error_str or "tls" in error_str or "certificate" in error_str:
        return "SSL/TLS connection error"
    if "invalid" in error_str or "credentials" in error_str or "authenticat" in error_str:
        return "Authentication credentials rejected"
    return "Connection error"


class IMAPConnector:
    """Opens an authenticated IMAP connection for the duration of one call."""

    def __init__(
        self,
        settings: ServerSettings,
        username: str,
        password: str,
        timeout: float | None = None,
        verify_tls: bool | None = None,
        client_factory: Callable[..., IMAPClientProtocol] = IMAPClient,
    ):
        self.settings = settings
        self.username = username
        self._password = password
        self._timeout = timeout or mail_config.imap_timeout_seconds
        self._verify_tls = mail_config.verify_tls if verify_tls is None else verify_tls
        self._client_factory = client_factory

    def __repr__(self) -> str:
        return (
            f"IMAPConnector(host={self.settings.host}, port={self.settings.port}, "
            f"user={hash_email(self.username)})"
        )

    def _connect(self) -> IMAPClientProtocol:
        security = self.settings.security
        context = create_ssl_context(self._verify_tls)
        try:
            if security is SecurityMode.SSL_TLS:
                client = self._client_factory(
                    self.settings.host,
                    port=self.settings.port,
                    ssl=True,
                    ssl_context=context,
                    timeout=self._timeout,
                )
            else:
                client = self._client_factory(
                    self.settings.host,
                    port=self.settings.port,
                    ssl=False,
                    timeout=self._timeout,
                )
                if security is SecurityMode.STARTTLS:
                    client.starttls(context)
            return client
        except UNAVAILABLE_ERRORS as e:
            logger.warning(f"IMAP server {self.settings.host} unavailable: {sanitize_error(e)}")
            raise MailServerUnavailable(
                f"Unable to connect to {self.settings.host}:{self.settings.port}"
            ) from e
        except (OSError, IMAPClientError) as e:
            logger.error(f"IMAP connect to {self.settings.host} failed: {sanitize_error(e)}")
            raise MailServerError(sanitize_error(e), stage="connect") from e

    def _login(self, client: IMAPClientProtocol) -> None:
        try:
            client.login(self.username, self._password)
        except LoginError as e:
            logger.info(f"IMAP login rejected for user {hash_email(self.username)}")
            raise MailAuthenticationError("Invalid email or password") from e
        except (OSError, IMAPClientError) as e:
            logger.error(
                f"IMAP login for user {hash_email(self.username)} failed: {sanitize_error(e)}"
            )
            raise MailServerError(sanitize_error(e), stage="login") from e

    @staticmethod
    def _logout(client: IMAPClientProtocol) -> None:
        try:
            client.logout()
        except (OSError, IMAPClientError) as e:
            logger.debug(f"IMAP logout failed: {sanitize_error(e)}")

    def with_connection(self, fn: Callable[[IMAPClientProtocol], T]) -> T:
        """
        Run ``fn`` against a fresh, logged-in client.

        Raises:
            MailServerUnavailable: Connection refused or host unknown
            MailAuthenticationError: Server rejected the credentials
            MailServerError: Any other network or protocol failure
        """
        client = self._connect()
        try:
            self._login(client)
            return fn(client)
        except WebmailError:
            raise
        except IMAPClientError as e:
            logger.warning(f"IMAP command failed on {self.settings.host}: {e}")
            raise MailServerError(str(e) or "IMAP command failed", stage="command") from e
        except (OSError, socket.timeout) as e:
            logger.error(f"IMAP connection to {self.settings.host} failed: {sanitize_error(e)}")
            raise MailServerError(sanitize_error(e), stage="command") from e
        finally:
            self._logout(client)


def imap_connector_factory(settings: ServerSettings, username: str, password: str) -> IMAPConnector:
    """Default factory used by the session manager and the request layer."""
    return IMAPConnector(settings, username, password)
