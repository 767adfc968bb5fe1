"""Error taxonomy shared by the proxy layers and the HTTP surface.

Every error carries an HTTP status code and a stable machine-readable
category. The Flask error handlers render them as
``{"error": category, "message": message}``.
"""


# ============================================================================
# Base
# ============================================================================


class WebmailError(Exception):
    """Base class for all errors surfaced to API callers."""

    status_code = 500
    category = "Internal Server Error"
    # Shown instead of the detailed message for 5xx errors in production
    public_message = "An unexpected error occurred"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.category)
        self.message = message or self.category

    def to_dict(self) -> dict:
        """Serialize error for a JSON response body."""
        return {"error": self.category, "message": self.message}


# ============================================================================
# 400 / 404 / 429
# ============================================================================


class ValidationError(WebmailError):
    """Raised when a request body or parameter is malformed.

    This includes:
    - Missing required fields
    - Wrong field types (e.g. non-boolean flag values)
    - Invalid email address formats
    - Attempts to delete or empty protected folders
    """

    status_code = 400
    category = "Validation Error"


class NotFoundError(WebmailError):
    """Raised when a message, attachment or folder does not exist."""

    status_code = 404
    category = "Not Found"


class RateLimitExceeded(WebmailError):
    """Raised when a client exceeds the request or login rate limit."""

    status_code = 429
    category = "Too Many Requests"

    def __init__(self, message: str = "", retry_after: int = 60) -> None:
        super().__init__(message or "Too many requests, please try again later")
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["retryAfter"] = self.retry_after
        return body


# ============================================================================
# 401
# ============================================================================


class AuthenticationError(WebmailError):
    """Raised when a request cannot be authenticated.

    Subclasses distinguish the internal reason for logging; the external
    contract is always the same 401 response.
    """

    status_code = 401
    category = "Unauthorized"


class InvalidToken(AuthenticationError):
    """Token signature or structure is invalid."""


class TokenExpired(AuthenticationError):
    """Token ``exp`` claim is in the past."""


class SessionNotFound(AuthenticationError):
    """No session record matches the token's JTI (revoked or never existed)."""


class SessionExpired(AuthenticationError):
    """Session record exists but is past its expiry time."""


class PasswordChanged(AuthenticationError):
    """Session was minted under an older password version."""


class CredentialUnavailable(AuthenticationError):
    """Stored mail password can no longer be decrypted (e.g. its key was retired)."""


class MailAuthenticationError(AuthenticationError):
    """Mail server rejected the supplied credentials."""

    category = "Authentication Failed"


# ============================================================================
# 5xx
# ============================================================================


class MailServerError(WebmailError):
    """Raised when an IMAP or SMTP command fails.

    This includes:
    - Network failures and timeouts talking to the mail server
    - Protocol errors returned by the server
    - Invalid folder paths rejected by the server

    Attributes:
        stage: Which step failed (connect, login, command, send)
    """

    status_code = 502
    category = "Mail Server Error"
    public_message = "Error communicating with mail server"

    def __init__(self, message: str = "", stage: str = "command") -> None:
        super().__init__(message or "Error communicating with mail server")
        self.stage = stage

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["stage"] = self.stage
        return body


class MailServerUnavailable(MailServerError):
    """Mail server refused the connection."""

    status_code = 503
    category = "Service Unavailable"
    public_message = "Unable to connect to mail server"

    def __init__(self, message: str = "", stage: str = "connect") -> None:
        super().__init__(message or "Unable to connect to mail server", stage=stage)


class EncryptionError(WebmailError):
    """Credential could not be encrypted (empty input or missing secret)."""

    category = "Encryption Error"


class DecryptionError(WebmailError):
    """Credential blob is malformed, tampered with, or sealed by an unknown key."""

    category = "Decryption Error"


class InternalError(WebmailError):
    """Uncategorized failure; message is suppressed in production."""
