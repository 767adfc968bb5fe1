"""Authentication module: credential sealing, tokens and sessions."""

from webmail_proxy.auth.credentials import (
    CredentialCodec,
    build_codec,
)
from webmail_proxy.auth.lockout import LoginLockout
from webmail_proxy.auth.session_manager import (
    AuthenticatedIdentity,
    LoginResult,
    LoginServers,
    SessionManager,
)
from webmail_proxy.auth.tokens import (
    TokenClaims,
    TokenService,
)

__all__ = [
    # Credential sealing
    "CredentialCodec",
    "build_codec",
    # Tokens
    "TokenClaims",
    "TokenService",
    # Sessions
    "AuthenticatedIdentity",
    "LoginLockout",
    "LoginResult",
    "LoginServers",
    "SessionManager",
]
