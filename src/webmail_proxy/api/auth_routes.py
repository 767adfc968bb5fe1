"""Login, logout, token verification, session management and autoconfig."""

from flask import Blueprint, g, jsonify, request

from webmail_proxy.api.middleware import (
    api_ok,
    client_ip,
    json_body,
    require_auth,
    services,
)
from webmail_proxy.auth.session_manager import LoginServers
from webmail_proxy.lib.errors import NotFoundError, ValidationError
from webmail_proxy.lib.utils import safe_int, validate_email_address
from webmail_proxy.mail.folders import describe_mailbox
from webmail_proxy.models.account import SecurityMode, ServerSettings

bp = Blueprint("auth", __name__)


def _server_from_body(body: dict, prefix: str, default_port: int) -> ServerSettings | None:
    """``{prefix}Server/Port/Security`` fields, or None when no host is given."""
    host = body.get(f"{prefix}Server")
    if not host:
        return None
    if not isinstance(host, str):
        raise ValidationError(f"{prefix}Server must be a string")
    port = body.get(f"{prefix}Port")
    if port is not None and (isinstance(port, bool) or safe_int(port, -1) < 0):
        raise ValidationError(f"{prefix}Port must be a number")
    try:
        return ServerSettings(
            host=host.strip(),
            port=safe_int(port, default_port) if port is not None else default_port,
            security=SecurityMode.parse(body.get(f"{prefix}Security"), SecurityMode.SSL_TLS),
        )
    except ValueError as e:
        raise ValidationError(str(e)) from None


@bp.post("/login")
def login():
    body = json_body()
    email = body.get("email")
    password = body.get("password")
    if not isinstance(email, str) or not validate_email_address(email.strip()):
        raise ValidationError("Invalid email address")
    if not isinstance(password, str) or not password:
        raise ValidationError("Password is required")

    servers = LoginServers(
        imap=_server_from_body(body, "imap", 993),
        smtp=_server_from_body(body, "smtp", 465),
    )
    result = services().sessions.login(
        email,
        password,
        servers=servers,
        ip_address=client_ip(),
        user_agent=request.headers.get("User-Agent"),
    )
    return api_ok(
        {
            "token": result.token,
            "user": result.user.to_public_dict(),
            "mailboxes": [describe_mailbox(m) for m in result.mailboxes],
        }
    )


@bp.post("/logout")
@require_auth
def logout():
    services().sessions.logout(g.identity.jti)
    return api_ok({"message": "Logged out successfully"})


@bp.post("/verify")
@require_auth
def verify():
    return jsonify({"valid": True, "user": g.identity.user.to_public_dict()})


@bp.get("/sessions")
@require_auth
def list_sessions():
    sessions = services().sessions.list_sessions(g.identity.user.id)
    return jsonify({"sessions": [s.to_dict(current_jti=g.identity.jti) for s in sessions]})


@bp.delete("/sessions/<jti>")
@require_auth
def revoke_session(jti: str):
    if not services().sessions.revoke_session(g.identity.user.id, jti):
        raise NotFoundError("Session not found")
    return api_ok({"message": "Session revoked"})


@bp.post("/autoconfig")
def autoconfig():
    email = json_body().get("email")
    if not isinstance(email, str) or "@" not in email:
        raise ValidationError("Please provide a valid email address")
    return jsonify(services().discovery.discover(email.strip().lower()).to_dict())
