"""Mailbox operations over a per-call IMAP session.

Every public method is one connect -> resolve folder(s) -> command(s) ->
logout unit run through ``MailSession.with_connection``. No state survives
between calls apart from the folder lookup cache, which is only a hint.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from imapclient.exceptions import CapabilityError, IMAPClientError

from webmail_proxy.lib.errors import MailServerError, NotFoundError, ValidationError
from webmail_proxy.lib.logger import get_logger
from webmail_proxy.lib.utils import base_subject
from webmail_proxy.mail.folders import (
    ARCHIVE_NAMES,
    DRAFTS_NAMES,
    EMPTYABLE_NAMES,
    INBOX,
    PROTECTED_NAMES,
    SENT_NAMES,
    SPAM_NAMES,
    TRASH_NAMES,
    FolderResolver,
    describe_mailbox,
    FolderRole,
    find_special_folder,
    folder_role,
    list_mailboxes,
    mailbox_role,
)
from webmail_proxy.mail.protocols import IMAPClientProtocol, MailSession
from webmail_proxy.models.mailbox import Mailbox
from webmail_proxy.models.message import (
    AttachmentContent,
    Message,
    MessageSummary,
    find_attachment,
)

logger = get_logger(__name__)

SEEN = "\\Seen"
FLAGGED = "\\Flagged"
DRAFT = "\\Draft"
IMPORTANT_KEYWORD = "$Important"

SUMMARY_FIELDS = ["ENVELOPE", "FLAGS", "RFC822.SIZE", "BODYSTRUCTURE", "INTERNALDATE"]
FULL_FIELDS = SUMMARY_FIELDS + ["BODY.PEEK[]"]
STATUS_ITEMS = ["MESSAGES", "RECENT", "UNSEEN", "UIDNEXT", "UIDVALIDITY"]

APPENDUID_PATTERN = re.compile(rb"APPENDUID\s+\d+\s+(\d+)", re.IGNORECASE)
# IMAP keyword atom: no whitespace, list wildcards, quotes or brackets
KEYWORD_PATTERN = re.compile(r'^[^\s(){%*"\\\]]+$')

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class MessagePage:
    """One page of a folder listing, newest first."""

    emails: list[MessageSummary]
    total: int
    folder: str
    limit: int
    offset: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "emails": [e.to_dict() for e in self.emails],
            "total": self.total,
            "folder": self.folder,
            "limit": self.limit,
            "offset": self.offset,
            "hasMore": self.offset + len(self.emails) < self.total,
        }


@dataclass
class FolderStatus:
    folder: str
    messages: int = 0
    recent: int = 0
    unseen: int = 0
    uid_next: int | None = None
    uid_validity: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        body = {
            "folder": self.folder,
            "messages": self.messages,
            "recent": self.recent,
            "unseen": self.unseen,
            "uidNext": self.uid_next,
            "uidValidity": self.uid_validity,
        }
        if self.error:
            body["error"] = self.error
        return body


def _status_value(raw: dict, key: str) -> int | None:
    value = raw.get(key.encode()) if key.encode() in raw else raw.get(key)
    return int(value) if value is not None else None


def _charset_for(*values: str) -> str | None:
    """SEARCH needs an explicit charset for non-ASCII criteria."""
    return None if all(v.isascii() for v in values) else "UTF-8"


def _newest_first(messages: Iterable[MessageSummary]) -> list[MessageSummary]:
    return sorted(messages, key=lambda m: (m.date or _EPOCH, m.uid), reverse=True)


def _is_trash(mailbox: Mailbox | None, path: str) -> bool:
    name = (mailbox.name if mailbox else path).lower()
    role = mailbox_role(mailbox) if mailbox else folder_role(None, path)
    return role is FolderRole.TRASH or "trash" in name or "deleted" in name


def _display_name(path: str, delimiter: str | None) -> str:
    if delimiter and delimiter in path:
        return path.rsplit(delimiter, 1)[-1]
    return path


class MailboxService:
    """IMAP operations for one authenticated account."""

    def __init__(
        self,
        session: MailSession,
        resolver: FolderResolver,
        cache_key: str | None = None,
    ):
        self._session = session
        self._resolver = resolver
        self._cache_key = cache_key

    # ========================================================================
    # Helpers
    # ========================================================================

    def _run(self, fn):
        return self._session.with_connection(fn)

    def _resolve(self, client: IMAPClientProtocol, folder: str) -> str:
        return self._resolver.resolve(folder, client, self._cache_key)

    def _invalidate(self) -> None:
        self._resolver.invalidate(self._cache_key)

    def _select(self, client: IMAPClientProtocol, folder: str, readonly: bool = False) -> tuple[str, dict]:
        path = self._resolve(client, folder)
        return path, client.select_folder(path, readonly=readonly)

    @staticmethod
    def _fetch_summaries(client: IMAPClientProtocol, path: str, uids: Any) -> list[MessageSummary]:
        if not uids:
            return []
        response = client.fetch(uids, SUMMARY_FIELDS)
        return [MessageSummary.from_fetch(path, uid, data) for uid, data in response.items()]

    @staticmethod
    def _move_uids(client: IMAPClientProtocol, uids: list[int], target: str) -> None:
        """MOVE when the server supports it, otherwise COPY + delete + expunge."""
        try:
            client.move(uids, target)
        except CapabilityError:
            client.copy(uids, target)
            client.delete_messages(uids)
            client.expunge()

    def _find_or_create(
        self,
        client: IMAPClientProtocol,
        mailboxes: list[Mailbox],
        special_use: str,
        names: tuple[str, ...],
        default_name: str,
    ) -> str:
        found = find_special_folder(mailboxes, special_use, names)
        if found:
            return found.path
        logger.info(f"No {special_use} folder found, creating {default_name}")
        client.create_folder(default_name)
        self._invalidate()
        return default_name

    def _move_to_special(
        self,
        folder: str,
        uid: int,
        special_use: str,
        names: tuple[str, ...],
        default_name: str,
    ) -> str:
        def op(client):
            mailboxes = list_mailboxes(client)
            target = self._find_or_create(client, mailboxes, special_use, names, default_name)
            self._select(client, folder)
            self._move_uids(client, [uid], target)
            return target

        return self._run(op)

    # ========================================================================
    # Listing and fetching
    # ========================================================================

    def list_mailboxes(self) -> list[Mailbox]:
        return self._run(list_mailboxes)

    def list_messages(
        self,
        folder: str = INBOX,
        limit: int = 50,
        offset: int = 0,
        search: str | None = None,
    ) -> MessagePage:
        """List one page of a folder, newest first.

        Args:
            folder: Folder name, alias or path
            limit: Page size
            offset: Number of newest messages to skip
            search: Optional text matched against subject, from and body
        """

        def op(client):
            path, info = self._select(client, folder, readonly=True)
            if not info.get(b"EXISTS", 0):
                return MessagePage(emails=[], total=0, folder=path, limit=limit, offset=offset)

            if search:
                criteria = ["OR", "SUBJECT", search, "OR", "FROM", search, "BODY", search]
                uids = client.search(criteria, charset=_charset_for(search))
            else:
                uids = client.search("ALL")

            ordered = sorted(uids, reverse=True)
            page = ordered[offset:offset + limit]
            emails = _newest_first(self._fetch_summaries(client, path, page))
            return MessagePage(emails=emails, total=len(ordered), folder=path, limit=limit, offset=offset)

        return self._run(op)

    def get_message(self, folder: str, uid: int, mark_read: bool = False) -> Message:
        """
        Fetch one message with its parsed body.

        Raises:
            NotFoundError: No message with that UID in the folder
        """

        def op(client):
            path, _ = self._select(client, folder, readonly=not mark_read)
            response = client.fetch([uid], FULL_FIELDS)
            data = response.get(uid)
            if not data or b"BODY[]" not in data:
                raise NotFoundError(f"Email {uid} not found in {folder}")

            message = Message.from_fetch(path, uid, data)
            if mark_read and not message.read:
                client.add_flags([uid], [SEEN])
                message.flags.add(SEEN)
            return message

        return self._run(op)

    def get_attachment(self, folder: str, uid: int, attachment_id: str) -> AttachmentContent:
        """
        Raises:
            NotFoundError: Message or attachment not found
        """

        def op(client):
            self._select(client, folder, readonly=True)
            data = client.fetch([uid], ["BODY.PEEK[]"]).get(uid)
            if not data or b"BODY[]" not in data:
                raise NotFoundError(f"Email {uid} not found in {folder}")
            attachment = find_attachment(data[b"BODY[]"], attachment_id)
            if attachment is None:
                raise NotFoundError("Attachment not found")
            return attachment

        return self._run(op)

    def get_raw(self, folder: str, uid: int) -> bytes:
        """Raw RFC 822 bytes of a message, without setting \\Seen."""

        def op(client):
            self._select(client, folder, readonly=True)
            data = client.fetch([uid], ["BODY.PEEK[]"]).get(uid)
            if not data or b"BODY[]" not in data:
                raise NotFoundError(f"Email {uid} not found in {folder}")
            return data[b"BODY[]"]

        return self._run(op)

    def search(self, query: str, folder: str = INBOX, limit: int = 50) -> list[MessageSummary]:
        """Search subject, from, to and body; newest first."""
        if not query or not query.strip():
            raise ValidationError("Search query is required")

        def op(client):
            path, _ = self._select(client, folder, readonly=True)
            criteria = [
                "OR", "SUBJECT", query,
                "OR", "FROM", query,
                "OR", "TO", query,
                "BODY", query,
            ]
            uids = sorted(client.search(criteria, charset=_charset_for(query)), reverse=True)
            return _newest_first(self._fetch_summaries(client, path, uids[:limit]))

        return self._run(op)

    # ========================================================================
    # Flags and labels
    # ========================================================================

    def _set_flag(self, folder: str, uid: int, flag: str, enabled: bool) -> bool:
        def op(client):
            self._select(client, folder)
            if enabled:
                client.add_flags([uid], [flag])
            else:
                client.remove_flags([uid], [flag])
            return True

        return self._run(op)

    def set_read(self, folder: str, uid: int, read: bool) -> bool:
        return self._set_flag(folder, uid, SEEN, read)

    def set_starred(self, folder: str, uid: int, starred: bool) -> bool:
        return self._set_flag(folder, uid, FLAGGED, starred)

    def set_important(self, folder: str, uid: int, important: bool) -> bool:
        """Toggle the ``$Important`` keyword. Returns False instead of raising."""
        try:
            return self._set_flag(folder, uid, IMPORTANT_KEYWORD, important)
        except MailServerError as e:
            logger.warning(f"Server rejected {IMPORTANT_KEYWORD} on {folder}/{uid}: {e.message}")
            return False

    @staticmethod
    def _check_label(label: str) -> str:
        label = (label or "").strip()
        if not label or not KEYWORD_PATTERN.match(label):
            raise ValidationError("Label must be a single word without special characters")
        return label

    def add_label(self, folder: str, uid: int, label: str) -> bool:
        return self._set_flag(folder, uid, self._check_label(label), True)

    def remove_label(self, folder: str, uid: int, label: str) -> bool:
        return self._set_flag(folder, uid, self._check_label(label), False)

    def set_flags_bulk(self, folder: str, uids: list[int], flag: str, enabled: bool) -> int:
        """Add or remove one flag on many messages in a single command."""
        def op(client):
            self._select(client, folder)
            if enabled:
                client.add_flags(uids, [flag])
            else:
                client.remove_flags(uids, [flag])
            return len(uids)

        return self._run(op)

    # ========================================================================
    # Moving and deleting
    # ========================================================================

    def move(self, folder: str, uid: int, target_folder: str) -> str:
        """Move a message; returns the resolved target path."""

        def op(client):
            target = self._resolve(client, target_folder)
            self._select(client, folder)
            self._move_uids(client, [uid], target)
            return target

        return self._run(op)

    def copy(self, folder: str, uid: int, target_folder: str) -> str:
        def op(client):
            target = self._resolve(client, target_folder)
            self._select(client, folder)
            client.copy([uid], target)
            return target

        return self._run(op)

    def delete(self, folder: str, uid: int, permanent: bool = False) -> dict[str, Any]:
        """
        Move a message to Trash, or expunge it.

        The delete is permanent when ``permanent`` is set or when the
        message is already in the trash folder.
        """

        def op(client):
            mailboxes = list_mailboxes(client)
            path = self._resolve(client, folder)
            source = next((m for m in mailboxes if m.path == path), None)
            hard = permanent or _is_trash(source, path)

            if hard:
                client.select_folder(path)
                client.delete_messages([uid])
                client.expunge()
                return {"permanent": True, "movedTo": None}

            trash = self._find_or_create(client, mailboxes, "\\Trash", TRASH_NAMES, "Trash")
            client.select_folder(path)
            self._move_uids(client, [uid], trash)
            return {"permanent": False, "movedTo": trash}

        return self._run(op)

    def archive(self, folder: str, uid: int) -> str:
        return self._move_to_special(folder, uid, "\\Archive", ARCHIVE_NAMES, "Archive")

    def mark_spam(self, folder: str, uid: int) -> str:
        return self._move_to_special(folder, uid, "\\Junk", SPAM_NAMES, "Spam")

    def mark_not_spam(self, folder: str, uid: int) -> str:
        return self.move(folder, uid, INBOX)

    # ========================================================================
    # Mailboxes
    # ========================================================================

    def create_mailbox(self, name: str, parent: str | None = None) -> str:
        """Create a mailbox; returns its full path."""
        name = (name or "").strip()
        if not name:
            raise ValidationError("Folder name is required")

        def op(client):
            if parent:
                mailboxes = list_mailboxes(client)
                parent_path = self._resolve(client, parent)
                parent_box = next((m for m in mailboxes if m.path == parent_path), None)
                delimiter = (parent_box.delimiter if parent_box else None) or "/"
                path = f"{parent_path}{delimiter}{name}"
            else:
                path = name
            client.create_folder(path)
            self._invalidate()
            return path

        return self._run(op)

    def rename_mailbox(self, path: str, new_name: str) -> str:
        """Rename the last path segment; returns the new path."""
        new_name = (new_name or "").strip()
        if not new_name:
            raise ValidationError("New folder name is required")
        if path.upper() == INBOX:
            raise ValidationError("INBOX cannot be renamed")

        def op(client):
            mailboxes = list_mailboxes(client)
            current = self._resolve(client, path)
            box = next((m for m in mailboxes if m.path == current), None)
            delimiter = box.delimiter if box else "/"
            if delimiter and delimiter in current:
                new_path = f"{current.rsplit(delimiter, 1)[0]}{delimiter}{new_name}"
            else:
                new_path = new_name
            client.rename_folder(current, new_path)
            self._invalidate()
            return new_path

        return self._run(op)

    def delete_mailbox(self, path: str) -> None:
        """
        Raises:
            ValidationError: Attempt to delete a protected system folder
        """
        if path.lower() in PROTECTED_NAMES or _display_name(path, "/").lower() in PROTECTED_NAMES:
            raise ValidationError(f"Cannot delete system folder {path}")

        def op(client):
            mailboxes = list_mailboxes(client)
            box = next((m for m in mailboxes if m.path == path), None)
            if box and _display_name(box.path, box.delimiter).lower() in PROTECTED_NAMES:
                raise ValidationError(f"Cannot delete system folder {path}")
            client.delete_folder(path)
            self._invalidate()

        self._run(op)

    def empty_mailbox(self, path: str) -> int:
        """
        Permanently delete every message in a trash or spam folder.

        Returns:
            Number of messages deleted

        Raises:
            ValidationError: Folder is neither trash nor spam
        """

        def op(client):
            mailboxes = list_mailboxes(client)
            resolved = self._resolve(client, path)
            box = next((m for m in mailboxes if m.path == resolved), None)
            role = mailbox_role(box) if box else folder_role(None, resolved)
            name = (box.name if box else resolved).lower()
            if role not in (FolderRole.TRASH, FolderRole.SPAM) and name not in EMPTYABLE_NAMES:
                raise ValidationError("Only trash and spam folders can be emptied")

            client.select_folder(resolved)
            uids = client.search("ALL")
            if uids:
                client.delete_messages(uids)
                client.expunge()
            return len(uids)

        return self._run(op)

    def _status(self, client: IMAPClientProtocol, path: str) -> FolderStatus:
        raw = client.folder_status(path, STATUS_ITEMS)
        return FolderStatus(
            folder=path,
            messages=_status_value(raw, "MESSAGES") or 0,
            recent=_status_value(raw, "RECENT") or 0,
            unseen=_status_value(raw, "UNSEEN") or 0,
            uid_next=_status_value(raw, "UIDNEXT"),
            uid_validity=_status_value(raw, "UIDVALIDITY"),
        )

    def mailbox_status(self, folder: str) -> FolderStatus:
        return self._run(lambda client: self._status(client, self._resolve(client, folder)))

    def all_status(self) -> list[dict[str, Any]]:
        """Every mailbox with its role and counts; failures report zeros."""

        def op(client):
            results = []
            for mailbox in list_mailboxes(client):
                entry = describe_mailbox(mailbox)
                if not mailbox.selectable:
                    status = FolderStatus(folder=mailbox.path)
                else:
                    try:
                        status = self._status(client, mailbox.path)
                    except IMAPClientError as e:
                        status = FolderStatus(folder=mailbox.path, error=str(e))
                entry.update(status.to_dict())
                results.append(entry)
            return results

        return self._run(op)

    def unread_counts(self, folders: list[str] | None = None) -> dict[str, dict[str, Any]]:
        def op(client):
            if folders:
                paths = [self._resolve(client, f) for f in folders]
            else:
                paths = [m.path for m in list_mailboxes(client) if m.selectable]

            counts = {}
            for path in paths:
                try:
                    status = self._status(client, path)
                    counts[path] = {"unseen": status.unseen, "total": status.messages}
                except IMAPClientError as e:
                    counts[path] = {"unseen": 0, "total": 0, "error": str(e)}
            return counts

        return self._run(op)

    def expunge(self, folder: str) -> None:
        def op(client):
            self._select(client, folder)
            client.expunge()

        self._run(op)

    # ========================================================================
    # Drafts and sent mail
    # ========================================================================

    @staticmethod
    def _append(client: IMAPClientProtocol, path: str, raw: bytes, flags: Iterable[str]) -> int | None:
        response = client.append(path, raw, flags=tuple(flags))
        if isinstance(response, str):
            response = response.encode()
        match = APPENDUID_PATTERN.search(response or b"")
        return int(match.group(1)) if match else None

    def append(self, folder: str, raw: bytes, flags: Iterable[str] = ()) -> int | None:
        """Append a message; returns its UID when the server reports APPENDUID."""
        return self._run(lambda client: self._append(client, self._resolve(client, folder), raw, flags))

    def save_draft(self, raw: bytes) -> dict[str, Any]:
        """
        Raises:
            NotFoundError: Account has no drafts folder
        """

        def op(client):
            drafts = find_special_folder(list_mailboxes(client), "\\Drafts", DRAFTS_NAMES)
            if drafts is None:
                raise NotFoundError("Drafts folder not found")
            uid = self._append(client, drafts.path, raw, (DRAFT, SEEN))
            return {"folder": drafts.path, "uid": uid}

        return self._run(op)

    def update_draft(self, folder: str, uid: int, raw: bytes) -> dict[str, Any]:
        """Append the new version first, then remove the old one."""

        def op(client):
            path = self._resolve(client, folder)
            new_uid = self._append(client, path, raw, (DRAFT, SEEN))
            client.select_folder(path)
            client.delete_messages([uid])
            client.expunge()
            return {"folder": path, "uid": new_uid}

        return self._run(op)

    def delete_draft(self, folder: str, uid: int) -> None:
        def op(client):
            self._select(client, folder)
            client.delete_messages([uid])
            client.expunge()

        self._run(op)

    def save_sent_copy(self, raw: bytes) -> bool:
        """Append to the Sent folder. Failures are logged, never raised."""

        def op(client):
            sent = find_special_folder(list_mailboxes(client), "\\Sent", SENT_NAMES)
            if sent is None:
                logger.warning("No Sent folder found, skipping sent copy")
                return False
            self._append(client, sent.path, raw, (SEEN,))
            return True

        try:
            return self._run(op)
        except MailServerError as e:
            logger.warning(f"Failed to save sent copy: {e.message}")
            return False

    # ========================================================================
    # Starred, thread and sync
    # ========================================================================

    def starred(self, folders: list[str] | None = None, limit: int = 100) -> list[MessageSummary]:
        """Flagged messages across folders (default: every selectable one), newest first."""

        def op(client):
            targets = folders or [m.path for m in list_mailboxes(client) if m.selectable]
            found: list[MessageSummary] = []
            for folder in targets:
                try:
                    path, _ = self._select(client, folder, readonly=True)
                    uids = sorted(client.search(["FLAGGED"]), reverse=True)[:limit]
                    found.extend(self._fetch_summaries(client, path, uids))
                except IMAPClientError as e:
                    logger.warning(f"Failed to get starred messages from {folder}: {e}")
            return _newest_first(found)[:limit]

        return self._run(op)

    def get_thread(self, folder: str, uid: int) -> dict[str, Any]:
        """
        Messages sharing the base subject of ``uid``, oldest first.

        Raises:
            NotFoundError: Message not found
        """

        def op(client):
            path, _ = self._select(client, folder, readonly=True)
            anchor = self._fetch_summaries(client, path, [uid])
            if not anchor:
                raise NotFoundError(f"Email {uid} not found in {folder}")

            base = base_subject(anchor[0].subject)
            if not base:
                return {"thread": anchor, "count": 1, "subject": anchor[0].subject}

            candidates = client.search(["SUBJECT", base], charset=_charset_for(base))
            messages = [
                m for m in self._fetch_summaries(client, path, sorted(set(candidates) | {uid}))
                if base_subject(m.subject).lower() == base.lower()
            ]
            messages.sort(key=lambda m: (m.date or _EPOCH, m.uid))
            return {"thread": messages, "count": len(messages), "subject": base}

        return self._run(op)

    def sync(self, folder: str, uid_next: int | None = None) -> dict[str, Any]:
        """Poll for messages that arrived since the ``uid_next`` watermark."""

        def op(client):
            path = self._resolve(client, folder)
            status = self._status(client, path)
            result = {
                "folder": path,
                "total": status.messages,
                "recent": status.recent,
                "unseen": status.unseen,
                "uidNext": status.uid_next,
                "uidValidity": status.uid_validity,
                "hasNew": False,
                "newCount": 0,
                "newEmails": [],
            }
            if uid_next is None or status.uid_next is None or status.uid_next <= uid_next:
                return result

            client.select_folder(path, readonly=True)
            response = client.fetch(f"{uid_next}:{status.uid_next - 1}", SUMMARY_FIELDS)
            new = [
                MessageSummary.from_fetch(path, uid, data)
                for uid, data in response.items()
                if int(uid) >= uid_next
            ]
            result["newEmails"] = _newest_first(new)
            result["newCount"] = len(new)
            result["hasNew"] = bool(new)
            return result

        return self._run(op)
