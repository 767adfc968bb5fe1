"""Per-user client settings."""

from flask import Blueprint, g, jsonify

from webmail_proxy.api.middleware import authenticate_blueprint, json_body, services
from webmail_proxy.lib.errors import ValidationError

bp = Blueprint("settings", __name__)
bp.before_request(authenticate_blueprint)


@bp.get("/", strict_slashes=False)
def get_settings():
    settings = services().db.get_settings(g.identity.user.id)
    return jsonify({"settings": settings.to_dict()})


@bp.patch("/", strict_slashes=False)
def update_settings():
    updates = json_body().get("settings")
    if not isinstance(updates, dict):
        raise ValidationError("settings must be an object")

    db = services().db
    try:
        settings = db.get_settings(g.identity.user.id).merged(updates)
    except ValueError as e:
        raise ValidationError(str(e)) from None
    db.save_settings(g.identity.user.id, settings)
    return jsonify({"success": True, "settings": settings.to_dict()})
