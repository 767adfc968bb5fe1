"""Login, token validation and session lifecycle.

A session is valid only while all of the following hold:
- the token's signature and ``exp`` verify
- a session row with the token's JTI exists and has not expired
- the session's password version equals the user's current version

Changing the mail password bumps the user's version, which invalidates
every session minted before the change.
"""

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from imapclient.exceptions import IMAPClientError

from webmail_proxy.auth.credentials import CredentialCodec
from webmail_proxy.auth.lockout import LoginLockout
from webmail_proxy.auth.tokens import TokenService
from webmail_proxy.lib.config import auth_config
from webmail_proxy.lib.errors import (
    CredentialUnavailable,
    DecryptionError,
    MailAuthenticationError,
    PasswordChanged,
    SessionExpired,
    SessionNotFound,
    ValidationError,
    WebmailError,
)
from webmail_proxy.lib.logger import get_structured_logger, hash_email
from webmail_proxy.lib.session_db import SessionDatabase
from webmail_proxy.lib.utils import validate_email_address
from webmail_proxy.mail.discovery import MailDiscovery
from webmail_proxy.mail.protocols import MailSender, MailSession
from webmail_proxy.models.account import AuthSession, ServerSettings, User, utcnow
from webmail_proxy.models.mailbox import Mailbox

logger = get_structured_logger(__name__)

ConnectorFactory = Callable[[ServerSettings, str, str], MailSession]
SenderFactory = Callable[[ServerSettings, str, str], MailSender]


@dataclass
class LoginServers:
    """Server settings supplied by the client at login (all optional)."""

    imap: ServerSettings | None = None
    smtp: ServerSettings | None = None


@dataclass
class LoginResult:
    token: str
    user: User
    session: AuthSession
    mailboxes: list[Mailbox] = field(default_factory=list)


@dataclass
class AuthenticatedIdentity:
    """Outcome of a successful token validation.

    Attributes:
        user: Current user record
        session: Session row backing the token
        password: Decrypted mail password (held only for this request)
    """

    user: User
    session: AuthSession
    password: str = field(repr=False)

    @property
    def jti(self) -> str:
        return self.session.jti


class SessionManager:
    """Issues, validates and revokes authenticated sessions."""

    def __init__(
        self,
        db: SessionDatabase,
        codec: CredentialCodec,
        tokens: TokenService,
        discovery: MailDiscovery,
        connector_factory: ConnectorFactory,
        sender_factory: SenderFactory | None = None,
        lockout: LoginLockout | None = None,
        token_ttl: timedelta | None = None,
        cleanup_interval_seconds: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._db = db
        self._codec = codec
        self._tokens = tokens
        self._discovery = discovery
        self._connector_factory = connector_factory
        self._sender_factory = sender_factory
        self._lockout = lockout or LoginLockout()
        self._token_ttl = token_ttl or timedelta(days=auth_config.token_ttl_days)
        self._cleanup_interval = (
            cleanup_interval_seconds or auth_config.session_cleanup_interval_seconds
        )
        self._clock = clock
        self._stop_cleanup = threading.Event()
        self._cleanup_thread: threading.Thread | None = None

    # ========================================================================
    # Login
    # ========================================================================

    def resolve_servers(self, email: str, servers: LoginServers | None) -> tuple[ServerSettings, ServerSettings]:
        """Fill missing server settings from discovery."""
        imap = servers.imap if servers else None
        smtp = servers.smtp if servers else None
        if imap and smtp:
            return imap, smtp

        result = self._discovery.discover(email)
        logger.info(
            "Resolved mail servers",
            user=hash_email(email),
            source=result.source,
            imap=result.config.imap.host,
            smtp=result.config.smtp.host,
        )
        return imap or result.config.imap.to_settings(), smtp or result.config.smtp.to_settings()

    def login(
        self,
        email: str,
        password: str,
        servers: LoginServers | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        name: str | None = None,
    ) -> LoginResult:
        """
        Verify credentials against the mail server and open a session.

        Raises:
            ValidationError: Malformed email or empty password
            RateLimitExceeded: Address is locked out after repeated failures
            MailAuthenticationError: IMAP server rejected the credentials
            MailServerError: IMAP server could not be reached
        """
        email = (email or "").strip().lower()
        if not validate_email_address(email):
            raise ValidationError("Invalid email address")
        if not password:
            raise ValidationError("Password is required")

        self._lockout.check(email)

        imap, smtp = self.resolve_servers(email, servers)

        def probe(client) -> list[Mailbox]:
            try:
                return [
                    Mailbox.from_imap_response(flags, delimiter, mailbox_name)
                    for flags, delimiter, mailbox_name in client.list_folders()
                ]
            except IMAPClientError as e:
                logger.warning("Mailbox listing at login failed", error=type(e).__name__)
                return []

        try:
            mailboxes = self._connector_factory(imap, email, password).with_connection(probe)
        except MailAuthenticationError:
            self._lockout.record_failure(email)
            logger.log_session_event("login_failed", email)
            raise

        self._verify_smtp(smtp, email, password)

        user = self._upsert_user(email, password, imap, smtp, name)

        now = self._clock()
        session = AuthSession(
            jti=uuid.uuid4().hex,
            user_id=user.id,
            password_version=user.password_version,
            created_at=now,
            last_used_at=now,
            expires_at=now + self._token_ttl,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self._db.create_session(session)
        token = self._tokens.issue(user.id, user.email, session.jti, session.expires_at, issued_at=now)

        self._lockout.record_success(email)
        logger.log_session_event("login", email, session.jti)
        return LoginResult(token=token, user=user, session=session, mailboxes=mailboxes)

    def _verify_smtp(self, smtp: ServerSettings, email: str, password: str) -> None:
        if self._sender_factory is None:
            return
        try:
            self._sender_factory(smtp, email, password).verify()
        except WebmailError as e:
            logger.warning(
                "SMTP verification failed, continuing login",
                user=hash_email(email),
                host=smtp.host,
                error=e.category,
            )

    def _upsert_user(
        self,
        email: str,
        password: str,
        imap: ServerSettings,
        smtp: ServerSettings,
        name: str | None,
    ) -> User:
        encrypted = self._codec.encrypt(password)
        user = self._db.get_user_by_email(email)

        if user is None:
            return self._db.create_user(
                email=email,
                name=name or email.split("@", 1)[0],
                imap=imap,
                smtp=smtp,
                encrypted_password=encrypted,
            )

        try:
            changed = self._codec.decrypt(user.encrypted_password) != password
        except DecryptionError:
            changed = True

        if changed:
            user.password_version += 1
            logger.log_session_event("password_changed", email)

        user.imap = imap
        user.smtp = smtp
        if name:
            user.name = name
        user.encrypted_password = encrypted
        self._db.update_user(user)
        return user

    # ========================================================================
    # Validation
    # ========================================================================

    def validate(self, token: str) -> AuthenticatedIdentity:
        """
        Resolve a bearer token to an authenticated identity.

        Raises:
            InvalidToken / TokenExpired: Token failed verification
            SessionNotFound: Session revoked or never existed
            SessionExpired: Session row is past expiry
            PasswordChanged: Session predates the current password
            CredentialUnavailable: Stored credential cannot be decrypted
        """
        claims = self._tokens.decode(token)

        session = self._db.get_session(claims.jti)
        if session is None:
            raise SessionNotFound("Session not found or revoked")

        now = self._clock()
        if session.is_expired(now):
            self._delete_quietly(session.jti)
            raise SessionExpired("Session has expired")

        user = self._db.get_user(session.user_id)
        if user is None:
            self._delete_quietly(session.jti)
            raise SessionNotFound("Session not found or revoked")

        if session.password_version != user.password_version:
            self._delete_quietly(session.jti)
            logger.log_session_event("session_invalidated", user.email, session.jti)
            raise PasswordChanged("Password has changed, please log in again")

        try:
            password = self._codec.decrypt(user.encrypted_password)
        except DecryptionError:
            self._delete_quietly(session.jti)
            logger.log_session_event("credential_unreadable", user.email, session.jti)
            raise CredentialUnavailable("Stored credential unavailable, please log in again") from None

        try:
            self._db.touch_session(session.jti, now)
            session.last_used_at = now
        except Exception as e:
            logger.warning("Failed to update session last-used time", error=str(e))

        if self._codec.needs_rotation(user.encrypted_password):
            try:
                user.encrypted_password = self._codec.encrypt(password)
                self._db.update_encrypted_password(user.id, user.encrypted_password)
                logger.info("Rotated stored credential to current key", user_id=user.id)
            except Exception as e:
                logger.warning("Credential rotation failed", user_id=user.id, error=str(e))

        return AuthenticatedIdentity(user=user, session=session, password=password)

    def _delete_quietly(self, jti: str) -> None:
        try:
            self._db.delete_session(jti)
        except Exception as e:
            logger.warning("Failed to delete invalid session", error=str(e))

    # ========================================================================
    # Session lifecycle
    # ========================================================================

    def logout(self, jti: str) -> None:
        """Delete the session. Safe to call more than once."""
        if self._db.delete_session(jti):
            logger.info("Session closed", jti=jti[:8])

    def list_sessions(self, user_id: int) -> list[AuthSession]:
        return self._db.list_user_sessions(user_id)

    def revoke_session(self, user_id: int, jti: str) -> bool:
        """Delete one of the caller's own sessions."""
        return self._db.delete_session(jti, user_id=user_id)

    def revoke_all(self, user_id: int, except_jti: str | None = None) -> int:
        return self._db.delete_user_sessions(user_id, except_jti=except_jti)

    def sweep_expired(self) -> int:
        """Delete every expired session and return how many were removed."""
        return self._db.delete_expired_sessions(self._clock())

    def start_cleanup_thread(self) -> None:
        """Start background thread that periodically sweeps expired sessions."""
        if self._cleanup_thread and self._cleanup_thread.is_alive():
            return
        self._stop_cleanup.clear()

        def cleanup_worker():
            while not self._stop_cleanup.wait(self._cleanup_interval):
                try:
                    self.sweep_expired()
                except Exception as e:
                    logger.error("Error in session cleanup thread", error=str(e))

        self._cleanup_thread = threading.Thread(
            target=cleanup_worker,
            daemon=True,
            name="session-cleanup",
        )
        self._cleanup_thread.start()
        logger.info("Started session cleanup thread", interval=self._cleanup_interval)

    def stop_cleanup_thread(self, timeout: float = 5.0) -> None:
        self._stop_cleanup.set()
        if self._cleanup_thread:
            self._cleanup_thread.join(timeout)
            self._cleanup_thread = None
