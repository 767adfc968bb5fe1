"""Message routes: listing, reading, sending, drafts, flags and batches.

Folder segments use the ``path`` converter so hierarchical mailboxes
("INBOX/Receipts", "[Gmail]/Sent Mail") can be addressed directly.
"""

import io
from typing import Any, Callable

from flask import Blueprint, g, jsonify, request, send_file

from webmail_proxy.api.middleware import (
    api_ok,
    authenticate_blueprint,
    json_body,
    query_int,
    require_bool,
    require_str,
    services,
    smtp_sender_for,
)
from webmail_proxy.lib.errors import ValidationError
from webmail_proxy.lib.logger import get_structured_logger
from webmail_proxy.lib.utils import parse_bool
from webmail_proxy.mail.batch import run_batch
from webmail_proxy.mail.folders import INBOX
from webmail_proxy.mail.mailbox_service import MailboxService
from webmail_proxy.mail.smtp import ComposeRequest, SendResult, parse_attachments, parse_recipients
from webmail_proxy.models.message import EmailAddress, Message, attachment_contents

logger = get_structured_logger(__name__)

bp = Blueprint("emails", __name__)

MAX_PAGE_SIZE = 200


bp.before_request(authenticate_blueprint)


def _folders_arg() -> list[str] | None:
    raw = request.args.get("folders")
    if not raw:
        return None
    return [f.strip() for f in raw.split(",") if f.strip()]


def _apply_auto_bcc(compose: ComposeRequest) -> None:
    settings = services().db.get_settings(g.identity.user.id)
    if not settings.auto_bcc:
        return
    present = set(compose.recipients)
    for address in EmailAddress.parse_header(settings.auto_bcc):
        if address.email and address.email not in present:
            compose.bcc.append(address)


def _sent_response(result: SendResult) -> dict[str, Any]:
    """Send succeeded; the Sent copy is best effort."""
    body = result.to_dict()
    body["savedToSent"] = g.mailbox.save_sent_copy(result.raw)
    return body


# ============================================================================
# Reading
# ============================================================================


@bp.get("/", strict_slashes=False)
def list_emails():
    page = g.mailbox.list_messages(
        folder=request.args.get("folder", INBOX),
        limit=query_int("limit", 50, minimum=1, maximum=MAX_PAGE_SIZE),
        offset=query_int("offset", 0),
        search=request.args.get("search") or None,
    )
    return jsonify(page.to_dict())


@bp.get("/search")
def search_emails():
    query = request.args.get("q", "")
    if not query.strip():
        raise ValidationError("Search query is required")
    emails = g.mailbox.search(
        query,
        folder=request.args.get("folder", INBOX),
        limit=query_int("limit", 50, minimum=1, maximum=MAX_PAGE_SIZE),
    )
    return jsonify({"emails": [e.to_dict() for e in emails], "total": len(emails), "query": query})


@bp.get("/starred")
def starred_emails():
    emails = g.mailbox.starred(_folders_arg(), limit=query_int("limit", 100, minimum=1, maximum=500))
    return jsonify({"emails": [e.to_dict() for e in emails], "total": len(emails)})


@bp.get("/sync")
def sync():
    uid_next = request.args.get("uidNext")
    if uid_next is not None and not uid_next.isdigit():
        raise ValidationError("uidNext must be a positive integer")
    result = g.mailbox.sync(
        request.args.get("folder", INBOX),
        int(uid_next) if uid_next else None,
    )
    result["newEmails"] = [e.to_dict() for e in result["newEmails"]]
    return jsonify(result)


@bp.get("/unread-counts")
def unread_counts():
    return jsonify({"counts": g.mailbox.unread_counts(_folders_arg())})


@bp.get("/<path:folder>/<int:uid>")
def get_email(folder: str, uid: int):
    mark_read = parse_bool(request.args.get("markAsRead"), default=True)
    message = g.mailbox.get_message(folder, uid, mark_read=mark_read)
    return jsonify(message.to_dict())


@bp.get("/<path:folder>/<int:uid>/attachment/<attachment_id>")
def get_attachment(folder: str, uid: int, attachment_id: str):
    attachment = g.mailbox.get_attachment(folder, uid, attachment_id)
    return send_file(
        io.BytesIO(attachment.content),
        mimetype=attachment.content_type,
        as_attachment=True,
        download_name=attachment.filename,
    )


@bp.get("/<path:folder>/<int:uid>/thread")
def get_thread(folder: str, uid: int):
    thread = g.mailbox.get_thread(folder, uid)
    thread["thread"] = [m.to_dict() for m in thread["thread"]]
    return jsonify(thread)


# ============================================================================
# Sending and drafts
# ============================================================================


@bp.post("/send")
def send_email():
    compose = ComposeRequest.from_dict(json_body())
    _apply_auto_bcc(compose)
    result = smtp_sender_for(g.identity).send(compose)
    logger.log_mail_operation("send")
    return jsonify(_sent_response(result))


@bp.post("/<path:folder>/<int:uid>/reply")
def reply(folder: str, uid: int):
    body = json_body()
    reply_all = body.get("replyAll", False)
    if not isinstance(reply_all, bool):
        raise ValidationError("replyAll must be a boolean")

    original = g.mailbox.get_message(folder, uid)
    sender = smtp_sender_for(g.identity)
    compose = sender.build_reply(
        original,
        str(body.get("body") or ""),
        reply_all=reply_all,
        attachments=parse_attachments(body.get("attachments")),
    )
    _apply_auto_bcc(compose)
    result = sender.send(compose)
    logger.log_mail_operation("reply", folder=folder, uid=uid)
    return jsonify(_sent_response(result))


@bp.post("/<path:folder>/<int:uid>/forward")
def forward(folder: str, uid: int):
    body = json_body()
    to = parse_recipients(body.get("to"), "to")
    if not to:
        raise ValidationError("At least one recipient is required")

    raw = g.mailbox.get_raw(folder, uid)
    original = Message.from_fetch(folder, uid, {b"BODY[]": raw, b"FLAGS": ()})
    attachments = attachment_contents(raw) if body.get("includeAttachments", True) else []
    attachments.extend(parse_attachments(body.get("attachments")))

    sender = smtp_sender_for(g.identity)
    compose = sender.build_forward(
        original,
        to,
        cc=parse_recipients(body.get("cc"), "cc"),
        bcc=parse_recipients(body.get("bcc"), "bcc"),
        html_body=str(body.get("body") or ""),
        attachments=attachments,
    )
    _apply_auto_bcc(compose)
    result = sender.send(compose)
    logger.log_mail_operation("forward", folder=folder, uid=uid)
    return jsonify(_sent_response(result))


@bp.post("/draft")
def save_draft():
    compose = ComposeRequest.from_dict(json_body(), require_recipient=False)
    raw = smtp_sender_for(g.identity).build_raw(compose)
    return api_ok(g.mailbox.save_draft(raw))


@bp.put("/draft/<path:folder>/<int:uid>")
def update_draft(folder: str, uid: int):
    compose = ComposeRequest.from_dict(json_body(), require_recipient=False)
    raw = smtp_sender_for(g.identity).build_raw(compose)
    return api_ok(g.mailbox.update_draft(folder, uid, raw))


@bp.delete("/draft/<path:folder>/<int:uid>")
def delete_draft(folder: str, uid: int):
    g.mailbox.delete_draft(folder, uid)
    return api_ok()


# ============================================================================
# Single-message changes
# ============================================================================


@bp.patch("/<path:folder>/<int:uid>/read")
def mark_read(folder: str, uid: int):
    read = require_bool(json_body(), "read")
    g.mailbox.set_read(folder, uid, read)
    return api_ok({"read": read})


@bp.patch("/<path:folder>/<int:uid>/star")
def mark_starred(folder: str, uid: int):
    starred = require_bool(json_body(), "starred")
    g.mailbox.set_starred(folder, uid, starred)
    return api_ok({"starred": starred})


@bp.patch("/<path:folder>/<int:uid>/important")
def mark_important(folder: str, uid: int):
    important = require_bool(json_body(), "important")
    applied = g.mailbox.set_important(folder, uid, important)
    return api_ok({"important": important, "applied": applied})


@bp.post("/<path:folder>/<int:uid>/move")
def move_email(folder: str, uid: int):
    target = g.mailbox.move(folder, uid, require_str(json_body(), "targetFolder"))
    logger.log_mail_operation("move", folder=folder, uid=uid)
    return api_ok({"targetFolder": target})


@bp.post("/<path:folder>/<int:uid>/copy")
def copy_email(folder: str, uid: int):
    target = g.mailbox.copy(folder, uid, require_str(json_body(), "targetFolder"))
    return api_ok({"targetFolder": target})


@bp.delete("/<path:folder>/<int:uid>")
def delete_email(folder: str, uid: int):
    result = g.mailbox.delete(folder, uid, permanent=parse_bool(request.args.get("permanent")))
    logger.log_mail_operation("delete", folder=folder, uid=uid)
    return api_ok(result)


@bp.post("/<path:folder>/<int:uid>/archive")
def archive_email(folder: str, uid: int):
    return api_ok({"movedTo": g.mailbox.archive(folder, uid)})


@bp.post("/<path:folder>/<int:uid>/spam")
def spam_email(folder: str, uid: int):
    return api_ok({"movedTo": g.mailbox.mark_spam(folder, uid)})


@bp.post("/<path:folder>/<int:uid>/not-spam")
def not_spam_email(folder: str, uid: int):
    return api_ok({"movedTo": g.mailbox.mark_not_spam(folder, uid)})


@bp.post("/<path:folder>/<int:uid>/label")
def add_label(folder: str, uid: int):
    label = require_str(json_body(), "label")
    g.mailbox.add_label(folder, uid, label)
    return api_ok({"label": label})


@bp.delete("/<path:folder>/<int:uid>/label/<label>")
def remove_label(folder: str, uid: int, label: str):
    g.mailbox.remove_label(folder, uid, label)
    return api_ok()


# ============================================================================
# Batch operations
# ============================================================================


def _batch_items(body: dict[str, Any]) -> list[tuple[str, int]]:
    """
    Validate ``emails: [{folder, uid}]``.

    Raises:
        ValidationError: Missing, empty or malformed list
    """
    emails = body.get("emails")
    if not isinstance(emails, list) or not emails:
        raise ValidationError("emails must be a non-empty array")

    items = []
    for entry in emails:
        if not isinstance(entry, dict):
            raise ValidationError("Each email must be an object with folder and uid")
        folder, uid = entry.get("folder"), entry.get("uid")
        if not isinstance(folder, str) or not folder:
            raise ValidationError("Each email needs a folder")
        if isinstance(uid, bool) or not str(uid).isdigit():
            raise ValidationError("Each email needs a numeric uid")
        items.append((folder, int(uid)))
    return items


def _run_batch(items: list[tuple[str, int]], operation: Callable[[MailboxService, str, int], Any], name: str):
    # Worker threads have no request context; bind the service here.
    mailbox = g.mailbox
    result = run_batch(
        items,
        lambda item: operation(mailbox, *item),
        describe=lambda item: {"folder": item[0], "uid": item[1]},
    )
    logger.log_mail_operation(f"batch_{name}", status=f"{result.succeeded} ok, {result.failed} failed")
    return result


@bp.post("/batch/read")
def batch_read():
    body = json_body()
    items = _batch_items(body)
    read = require_bool(body, "read")
    result = _run_batch(items, lambda m, f, u: m.set_read(f, u, read), "read")
    return jsonify({**result.to_dict(), "read": read})


@bp.post("/batch/star")
def batch_star():
    body = json_body()
    items = _batch_items(body)
    starred = require_bool(body, "starred")
    result = _run_batch(items, lambda m, f, u: m.set_starred(f, u, starred), "star")
    return jsonify({**result.to_dict(), "starred": starred})


@bp.post("/batch/delete")
def batch_delete():
    body = json_body()
    items = _batch_items(body)
    permanent = body.get("permanent", False)
    if not isinstance(permanent, bool):
        raise ValidationError("permanent must be a boolean")
    result = _run_batch(items, lambda m, f, u: m.delete(f, u, permanent=permanent), "delete")
    return jsonify(result.to_dict())


@bp.post("/batch/move")
def batch_move():
    body = json_body()
    items = _batch_items(body)
    target = require_str(body, "targetFolder")
    result = _run_batch(items, lambda m, f, u: m.move(f, u, target), "move")
    return jsonify({**result.to_dict(), "targetFolder": target})


@bp.post("/batch/archive")
def batch_archive():
    result = _run_batch(_batch_items(json_body()), lambda m, f, u: m.archive(f, u), "archive")
    return jsonify(result.to_dict())


@bp.post("/batch/spam")
def batch_spam():
    result = _run_batch(_batch_items(json_body()), lambda m, f, u: m.mark_spam(f, u), "spam")
    return jsonify(result.to_dict())
