"""Request helpers shared by the blueprints: auth decorator and body parsing."""

from functools import wraps
from typing import Any, Callable

from flask import current_app, g, jsonify, request

from webmail_proxy.lib.cache import FolderCache
from webmail_proxy.lib.errors import InvalidToken, ValidationError
from webmail_proxy.lib.utils import safe_int
from webmail_proxy.mail.mailbox_service import MailboxService
from webmail_proxy.mail.smtp import SMTPSender

EXTENSION_KEY = "webmail_proxy"


def services():
    """The ``Services`` bundle registered by ``create_app``."""
    return current_app.extensions[EXTENSION_KEY]


def api_ok(data: dict[str, Any] | None = None, status: int = 200):
    payload = {"success": True}
    if data:
        payload.update(data)
    return jsonify(payload), status


def client_ip() -> str:
    return request.remote_addr or "unknown"


def bearer_token() -> str:
    """
    Extract the bearer token from the Authorization header.

    Raises:
        InvalidToken: Header missing or not a bearer credential
    """
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise InvalidToken("No authentication token provided")
    return token.strip()


def json_body() -> dict[str, Any]:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def require_bool(body: dict[str, Any], key: str) -> bool:
    value = body.get(key)
    if not isinstance(value, bool):
        raise ValidationError(f"{key} must be a boolean")
    return value


def require_str(body: dict[str, Any], key: str) -> str:
    value = body.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{key} is required")
    return value.strip()


def query_int(name: str, default: int, minimum: int = 0, maximum: int | None = None) -> int:
    value = max(minimum, safe_int(request.args.get(name), default))
    return min(value, maximum) if maximum is not None else value


def mailbox_service_for(identity) -> MailboxService:
    svc = services()
    user = identity.user
    connector = svc.connector_factory(user.imap, user.email, identity.password)
    return MailboxService(
        connector,
        svc.resolver,
        cache_key=FolderCache.key_for(user.email, user.imap.host),
    )


def smtp_sender_for(identity) -> SMTPSender:
    user = identity.user
    return services().sender_factory(user.smtp, user.email, identity.password, display_name=user.name)


def authenticate_request() -> None:
    """
    Authenticate the request from its bearer token.

    Sets ``g.identity`` (AuthenticatedIdentity) and ``g.mailbox`` (a
    MailboxService bound to the caller's IMAP account) before calling
    the view. Authentication failures propagate to the error handlers.
    """
    g.identity = services().sessions.validate(bearer_token())
    g.mailbox = mailbox_service_for(g.identity)


def authenticate_blueprint() -> None:
    """``before_request`` hook for blueprints whose every route is private."""
    if request.method != "OPTIONS":
        authenticate_request()


def require_auth(fn: Callable) -> Callable:
    @wraps(fn)
    def wrapper(*args, **kwargs):
        authenticate_request()
        return fn(*args, **kwargs)

    return wrapper
