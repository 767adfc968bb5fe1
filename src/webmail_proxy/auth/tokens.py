"""Signed bearer tokens (JWT, HMAC)."""

from dataclasses import dataclass
from datetime import datetime, timezone

import jwt

from webmail_proxy.lib.errors import InvalidToken, TokenExpired

REQUIRED_CLAIMS = ["sub", "email", "jti", "iat", "exp"]


@dataclass(frozen=True)
class TokenClaims:
    """Claims carried by a session token. Never includes the mail password."""

    user_id: int
    email: str
    jti: str
    issued_at: datetime
    expires_at: datetime


class TokenService:
    """Issues and verifies session tokens."""

    def __init__(self, secret: str, algorithm: str = "HS256"):
        if not secret:
            raise ValueError("Token signing secret cannot be empty")
        self._secret = secret
        self._algorithm = algorithm

    def issue(
        self,
        user_id: int,
        email: str,
        jti: str,
        expires_at: datetime,
        issued_at: datetime | None = None,
    ) -> str:
        issued = issued_at or datetime.now(timezone.utc)
        payload = {
            "sub": str(user_id),
            "email": email,
            "jti": jti,
            "iat": int(issued.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def decode(self, token: str) -> TokenClaims:
        """
        Verify signature and expiry.

        Raises:
            TokenExpired: ``exp`` is in the past
            InvalidToken: Bad signature, malformed token or missing claims
        """
        if not token:
            raise InvalidToken("Missing token")
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"require": REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError:
            raise TokenExpired("Token has expired") from None
        except jwt.InvalidTokenError:
            raise InvalidToken("Invalid token") from None

        try:
            return TokenClaims(
                user_id=int(payload["sub"]),
                email=payload["email"],
                jti=payload["jti"],
                issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            )
        except (TypeError, ValueError):
            raise InvalidToken("Invalid token") from None
