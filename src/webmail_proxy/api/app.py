"""Flask application factory and composition root.

``create_app`` wires every long-lived object once: the session database,
the session manager, the folder cache and the rate limiter. Tests pass a
``Services`` bundle of their own to avoid keyring and network access.
"""

import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable

from flask import Flask, g, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from webmail_proxy.api.auth_routes import bp as auth_bp
from webmail_proxy.api.email_routes import bp as emails_bp
from webmail_proxy.api.folder_routes import bp as folders_bp
from webmail_proxy.api.middleware import EXTENSION_KEY, client_ip
from webmail_proxy.api.middleware import services as current_services
from webmail_proxy.api.settings_routes import bp as settings_bp
from webmail_proxy.auth.credentials import build_codec
from webmail_proxy.auth.lockout import LoginLockout
from webmail_proxy.auth.session_manager import ConnectorFactory, SessionManager
from webmail_proxy.auth.tokens import TokenService
from webmail_proxy.lib.cache import FolderCache, RateLimiter
from webmail_proxy.lib.config import AppConfig, app_config, auth_config, mail_config
from webmail_proxy.lib.errors import InternalError, RateLimitExceeded, WebmailError
from webmail_proxy.lib.logger import get_structured_logger
from webmail_proxy.lib.session_db import SessionDatabase
from webmail_proxy.mail.discovery import MailDiscovery
from webmail_proxy.mail.folders import FolderResolver
from webmail_proxy.mail.imap_session import imap_connector_factory
from webmail_proxy.mail.smtp import SMTPSender, smtp_sender_factory
from webmail_proxy.models.account import utcnow
from webmail_proxy.storage.secrets import JWT_SECRET_KEY, SecretStore

logger = get_structured_logger(__name__)

EXEMPT_PATHS = frozenset({"/health"})

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
}


@dataclass
class Services:
    """Everything the request handlers need, built once per app."""

    db: SessionDatabase
    sessions: SessionManager
    discovery: MailDiscovery
    folder_cache: FolderCache
    resolver: FolderResolver
    rate_limiter: RateLimiter
    connector_factory: ConnectorFactory
    sender_factory: Callable[..., SMTPSender]


def resolve_jwt_secret(store: SecretStore, config: AppConfig) -> str:
    """
    JWT_SECRET, then the keyring. Development generates one on first use.

    Raises:
        ValueError: No secret available in production
    """
    secret = store.jwt_secret()
    if secret:
        return secret
    if config.is_production:
        raise ValueError("JWT secret is not configured. Set JWT_SECRET or run 'webmail-proxy init-secrets'")
    logger.warning("No JWT secret configured, generating one in the keyring")
    secret, _ = store.generate(JWT_SECRET_KEY)
    return secret


def build_services(config: AppConfig | None = None, db: SessionDatabase | None = None) -> Services:
    """Create the production object graph."""
    config = config or app_config
    store = SecretStore()
    db = db or SessionDatabase()
    discovery = MailDiscovery()
    folder_cache = FolderCache(
        ttl_seconds=mail_config.folder_cache_ttl_seconds,
        max_entries=mail_config.folder_cache_max_entries,
    )

    tokens = TokenService(resolve_jwt_secret(store, config), algorithm=auth_config.jwt_algorithm)
    sessions = SessionManager(
        db=db,
        codec=build_codec(store),
        tokens=tokens,
        discovery=discovery,
        connector_factory=imap_connector_factory,
        sender_factory=smtp_sender_factory,
        lockout=LoginLockout(
            window_minutes=config.login_rate_limit_window_minutes,
            threshold=config.login_rate_limit_max,
        ),
        token_ttl=timedelta(days=auth_config.token_ttl_days),
    )

    return Services(
        db=db,
        sessions=sessions,
        discovery=discovery,
        folder_cache=folder_cache,
        resolver=FolderResolver(folder_cache),
        rate_limiter=RateLimiter(
            max_requests=config.rate_limit_max_requests,
            window_seconds=config.rate_limit_window_seconds,
        ),
        connector_factory=imap_connector_factory,
        sender_factory=smtp_sender_factory,
    )


# ============================================================================
# Request hooks
# ============================================================================


def _enforce_rate_limit():
    g.request_started = time.perf_counter()
    if request.path in EXEMPT_PATHS or request.method == "OPTIONS":
        return None

    allowed, retry_after = current_services().rate_limiter.hit(client_ip())
    if not allowed:
        raise RateLimitExceeded(retry_after=retry_after)
    return None


def _finish_request(response):
    for header, value in SECURITY_HEADERS.items():
        response.headers.setdefault(header, value)

    started = g.get("request_started")
    duration_ms = (time.perf_counter() - started) * 1000 if started else None
    logger.log_request(
        request.method,
        request.path,
        response.status_code,
        duration_ms=duration_ms,
        remote_addr=client_ip(),
    )
    return response


# ============================================================================
# Error handlers
# ============================================================================


def _register_error_handlers(app: Flask, config: AppConfig) -> None:
    @app.errorhandler(WebmailError)
    def handle_webmail_error(error: WebmailError):
        if error.status_code >= 500:
            logger.error("Request failed", path=request.path, error=type(error).__name__,
                         stage=getattr(error, "stage", None), detail=error.message)
        body = error.to_dict()
        if config.is_production and error.status_code >= 500:
            body["message"] = error.public_message
        response = jsonify(body)
        response.status_code = error.status_code
        if isinstance(error, RateLimitExceeded):
            response.headers["Retry-After"] = str(error.retry_after)
        return response

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        response = jsonify({"error": error.name, "message": error.description})
        response.status_code = error.code or 500
        return response

    @app.errorhandler(Exception)
    def handle_unexpected(error: Exception):
        logger.error("Unhandled error", path=request.path, error=type(error).__name__, detail=str(error))
        message = InternalError.public_message if config.is_production else str(error)
        response = jsonify(InternalError(message).to_dict())
        response.status_code = InternalError.status_code
        return response


# ============================================================================
# Factory
# ============================================================================


def create_app(services: Services | None = None, config: AppConfig | None = None) -> Flask:
    """
    Create the Flask application.

    Args:
        services: Pre-built service bundle (default: production wiring)
        config: Application config (default: environment)

    Returns:
        Configured Flask app with all blueprints registered
    """
    config = config or app_config
    app = Flask(__name__)
    app.json.sort_keys = False
    app.config["MAX_CONTENT_LENGTH"] = 50 * 1024 * 1024
    app.extensions[EXTENSION_KEY] = services or build_services(config)

    CORS(app, origins=[o.strip() for o in config.cors_origin.split(",") if o.strip()], supports_credentials=True)

    app.before_request(_enforce_rate_limit)
    app.after_request(_finish_request)
    _register_error_handlers(app, config)

    app.register_blueprint(auth_bp, url_prefix="/api/auth")
    app.register_blueprint(emails_bp, url_prefix="/api/emails")
    app.register_blueprint(folders_bp, url_prefix="/api/folders")
    app.register_blueprint(settings_bp, url_prefix="/api/settings")

    @app.get("/health")
    def health():
        return jsonify({"status": "ok", "timestamp": utcnow().isoformat()})

    logger.info("Application created", environment=config.environment)
    return app
