"""Mailbox routes: list, status, create, rename, delete and empty."""

from flask import Blueprint, g, jsonify

from webmail_proxy.api.middleware import (
    api_ok,
    authenticate_blueprint,
    json_body,
    require_str,
)
from webmail_proxy.lib.errors import ValidationError
from webmail_proxy.lib.logger import get_structured_logger
from webmail_proxy.mail.folders import describe_mailbox

logger = get_structured_logger(__name__)

bp = Blueprint("folders", __name__)
bp.before_request(authenticate_blueprint)


@bp.get("/", strict_slashes=False)
def list_folders():
    return jsonify({"folders": [describe_mailbox(m) for m in g.mailbox.list_mailboxes()]})


@bp.get("/all-status")
def all_status():
    return jsonify({"folders": g.mailbox.all_status()})


@bp.get("/<path:path>/status")
def folder_status(path: str):
    return jsonify(g.mailbox.mailbox_status(path).to_dict())


@bp.post("/", strict_slashes=False)
def create_folder():
    body = json_body()
    parent = body.get("parent")
    if parent is not None and not isinstance(parent, str):
        raise ValidationError("parent must be a string")
    path = g.mailbox.create_mailbox(require_str(body, "name"), parent or None)
    logger.log_mail_operation("create_folder", folder=path)
    return api_ok({"path": path}, status=201)


@bp.patch("/<path:path>")
def rename_folder(path: str):
    new_path = g.mailbox.rename_mailbox(path, require_str(json_body(), "newName"))
    logger.log_mail_operation("rename_folder", folder=new_path)
    return api_ok({"oldPath": path, "newPath": new_path})


@bp.delete("/<path:path>")
def delete_folder(path: str):
    g.mailbox.delete_mailbox(path)
    logger.log_mail_operation("delete_folder", folder=path)
    return api_ok()


@bp.post("/<path:path>/empty")
def empty_folder(path: str):
    deleted = g.mailbox.empty_mailbox(path)
    logger.log_mail_operation("empty_folder", folder=path)
    return api_ok({"deleted": deleted})
