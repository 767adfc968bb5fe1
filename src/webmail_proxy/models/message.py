"""Email message models built from imapclient FETCH responses."""

import hashlib
import html as html_lib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email import policy
from email.errors import HeaderParseError, MessageError
from email.header import decode_header, make_header
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any, TypedDict

NO_SUBJECT = "(no subject)"
SNIPPET_LENGTH = 200

# TypedDict for IMAP fetch response structure
# Note: Runtime keys are bytes (e.g., b"BODY[]"), but TypedDict requires string keys.
IMAPFetchData = TypedDict('IMAPFetchData', {
    'BODY[]': bytes,
    'ENVELOPE': Any,
    'FLAGS': tuple[bytes, ...],
    'INTERNALDATE': datetime,
    'RFC822.SIZE': int,
    'BODYSTRUCTURE': Any,
}, total=False)


# ============================================================================
# Decoding helpers
# ============================================================================


def _to_str(value: bytes | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def decode_mime_words(value: bytes | str | None) -> str:
    """Decode RFC 2047 encoded-words ("=?utf-8?q?...?=") into text."""
    text = _to_str(value)
    if "=?" not in text:
        return text
    try:
        return str(make_header(decode_header(text)))
    except (HeaderParseError, LookupError, UnicodeDecodeError):
        return text


def _as_aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _flag_names(flags: tuple | None) -> set[str]:
    return {_to_str(f) for f in (flags or ())}


def _has_attachment(structure: Any) -> bool:
    """Walk a BODYSTRUCTURE tree looking for an attachment disposition."""
    if isinstance(structure, (bytes, str)):
        return _to_str(structure).lower() == "attachment"
    if isinstance(structure, (tuple, list)):
        return any(_has_attachment(part) for part in structure)
    return False


@dataclass(frozen=True)
class EmailAddress:
    """A display name plus address pair."""

    name: str
    email: str

    @staticmethod
    def from_envelope(address: Any) -> "EmailAddress | None":
        """Build from an imapclient ``Address`` (None for group markers)."""
        if address is None or not address.host:
            return None
        return EmailAddress(
            name=decode_mime_words(address.name),
            email=f"{_to_str(address.mailbox)}@{_to_str(address.host)}".lower(),
        )

    @staticmethod
    def parse_header(value: str | None) -> list["EmailAddress"]:
        """Parse a To/Cc style header into addresses."""
        if not value:
            return []
        return [
            EmailAddress(name=name, email=addr.lower())
            for name, addr in getaddresses([str(value)])
            if addr
        ]

    def formatted(self) -> str:
        """RFC 5322 form suitable for a header."""
        if self.name:
            escaped = self.name.replace('"', '\\"')
            return f'"{escaped}" <{self.email}>'
        return self.email

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "email": self.email}


EMPTY_ADDRESS = EmailAddress(name="", email="")


def _envelope_addresses(addresses: Any) -> list[EmailAddress]:
    result = []
    for address in addresses or ():
        parsed = EmailAddress.from_envelope(address)
        if parsed:
            result.append(parsed)
    return result


# ============================================================================
# Summary (list views)
# ============================================================================


@dataclass
class MessageSummary:
    """
    Lightweight message representation for list, search and sync views.

    Attributes:
        folder: Folder path the UID belongs to
        uid: IMAP UID (valid for the folder's UIDVALIDITY epoch)
        message_id: Message-ID header
        subject: Decoded subject, "(no subject)" when absent
        sender: From address
        to: To addresses
        cc: Cc addresses
        date: Envelope date, falling back to INTERNALDATE
        flags: Raw IMAP flags and keywords
        size: RFC822.SIZE in bytes
        has_attachments: Whether BODYSTRUCTURE contains an attachment
    """

    folder: str
    uid: int
    subject: str
    sender: EmailAddress
    date: datetime | None
    message_id: str | None = None
    to: list[EmailAddress] = field(default_factory=list)
    cc: list[EmailAddress] = field(default_factory=list)
    bcc: list[EmailAddress] = field(default_factory=list)
    in_reply_to: str | None = None
    flags: set[str] = field(default_factory=set)
    size: int | None = None
    has_attachments: bool = False

    @property
    def read(self) -> bool:
        return "\\Seen" in self.flags

    @property
    def starred(self) -> bool:
        return "\\Flagged" in self.flags

    @property
    def important(self) -> bool:
        return "$Important" in self.flags or "\\Important" in self.flags

    @property
    def answered(self) -> bool:
        return "\\Answered" in self.flags

    @property
    def labels(self) -> list[str]:
        """User keywords (flags without a leading backslash or '$')."""
        return sorted(f for f in self.flags if not f.startswith(("\\", "$")))

    @classmethod
    def from_fetch(cls, folder: str, uid: int, data: dict) -> "MessageSummary":
        """Build from a FETCH (ENVELOPE FLAGS RFC822.SIZE BODYSTRUCTURE) response."""
        envelope = data.get(b"ENVELOPE")
        senders = _envelope_addresses(envelope.from_ if envelope else None)
        date = _as_aware(envelope.date if envelope else None)
        if date is None:
            date = _as_aware(data.get(b"INTERNALDATE"))

        return cls(
            folder=folder,
            uid=int(uid),
            subject=decode_mime_words(envelope.subject if envelope else None) or NO_SUBJECT,
            sender=senders[0] if senders else EMPTY_ADDRESS,
            date=date,
            message_id=_to_str(envelope.message_id) or None if envelope else None,
            to=_envelope_addresses(envelope.to if envelope else None),
            cc=_envelope_addresses(envelope.cc if envelope else None),
            bcc=_envelope_addresses(envelope.bcc if envelope else None),
            in_reply_to=_to_str(envelope.in_reply_to) or None if envelope else None,
            flags=_flag_names(data.get(b"FLAGS")),
            size=data.get(b"RFC822.SIZE"),
            has_attachments=_has_attachment(data.get(b"BODYSTRUCTURE")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "id": f"{self.folder}-{self.uid}",
            "folder": self.folder,
            "messageId": self.message_id,
            "from": self.sender.to_dict(),
            "to": [a.to_dict() for a in self.to],
            "cc": [a.to_dict() for a in self.cc],
            "bcc": [a.to_dict() for a in self.bcc],
            "subject": self.subject,
            "date": self.date.isoformat() if self.date else None,
            "read": self.read,
            "starred": self.starred,
            "important": self.important,
            "answered": self.answered,
            "size": self.size,
            "hasAttachments": self.has_attachments,
            "labels": self.labels,
        }


# ============================================================================
# Full message
# ============================================================================


@dataclass(frozen=True)
class AttachmentInfo:
    """Attachment metadata (no payload)."""

    id: str
    filename: str
    content_type: str
    size: int
    content_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "contentType": self.content_type,
            "size": self.size,
            "contentId": self.content_id,
        }


@dataclass(frozen=True)
class AttachmentContent:
    """Attachment payload returned for download."""

    filename: str
    content_type: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


def _attachment_parts(msg: EmailMessage) -> list[tuple[AttachmentInfo, EmailMessage]]:
    parts = []
    for index, part in enumerate(msg.walk()):
        if part.is_multipart():
            continue
        disposition = part.get_content_disposition()
        filename = part.get_filename()
        if disposition != "attachment" and not (disposition == "inline" and filename):
            continue
        payload = part.get_payload(decode=True) or b""
        content_id = (part.get("Content-ID") or "").strip().strip("<>") or None
        attachment_id = content_id or hashlib.sha256(payload).hexdigest()[:16]
        info = AttachmentInfo(
            id=attachment_id,
            filename=filename or f"attachment-{index}",
            content_type=part.get_content_type(),
            size=len(payload),
            content_id=content_id,
        )
        parts.append((info, part))
    return parts


def _body_text(msg: EmailMessage, subtype: str) -> str:
    try:
        part = msg.get_body(preferencelist=(subtype,))
        if part is None:
            return ""
        content = part.get_content()
        return content if isinstance(content, str) else ""
    except (KeyError, LookupError, MessageError):
        return ""


def parse_rfc822(raw: bytes) -> EmailMessage:
    """Parse raw message bytes with the modern email policy."""
    return BytesParser(policy=policy.default).parsebytes(raw)


@dataclass
class Message(MessageSummary):
    """
    Fully parsed message with bodies, headers and attachment metadata.

    The HTML body falls back to the escaped plain-text body wrapped in
    ``<pre>`` when the message has no text/html part.
    """

    html_body: str = ""
    text_body: str = ""
    reply_to: EmailAddress | None = None
    references: list[str] = field(default_factory=list)
    headers: dict[str, Any] = field(default_factory=dict)
    attachments: list[AttachmentInfo] = field(default_factory=list)

    @property
    def snippet(self) -> str:
        return " ".join(self.text_body.split())[:SNIPPET_LENGTH]

    @classmethod
    def from_fetch(cls, folder: str, uid: int, data: dict) -> "Message":
        """Build from a FETCH response that includes ``BODY[]``."""
        summary = MessageSummary.from_fetch(folder, uid, data)
        parsed = parse_rfc822(data.get(b"BODY[]") or b"")

        text_body = _body_text(parsed, "plain")
        html_body = _body_text(parsed, "html")
        if not html_body and text_body:
            html_body = f"<pre>{html_lib.escape(text_body)}</pre>"

        headers: dict[str, Any] = {}
        for key, value in parsed.items():
            key = key.lower()
            if key in headers:
                existing = headers[key]
                headers[key] = existing + [str(value)] if isinstance(existing, list) else [existing, str(value)]
            else:
                headers[key] = str(value)

        reply_to = EmailAddress.parse_header(parsed.get("Reply-To"))
        references = str(parsed.get("References") or "").split()

        date = summary.date
        if date is None and parsed.get("Date"):
            try:
                date = _as_aware(parsedate_to_datetime(str(parsed.get("Date"))))
            except (TypeError, ValueError):
                date = None

        sender = summary.sender
        if not sender.email:
            parsed_from = EmailAddress.parse_header(parsed.get("From"))
            sender = parsed_from[0] if parsed_from else EMPTY_ADDRESS

        subject = summary.subject
        if subject == NO_SUBJECT and parsed.get("Subject"):
            subject = str(parsed.get("Subject"))

        return cls(
            folder=folder,
            uid=summary.uid,
            subject=subject,
            sender=sender,
            date=date,
            message_id=summary.message_id or (str(parsed.get("Message-ID") or "") or None),
            to=summary.to or EmailAddress.parse_header(parsed.get("To")),
            cc=summary.cc or EmailAddress.parse_header(parsed.get("Cc")),
            bcc=summary.bcc,
            in_reply_to=summary.in_reply_to or (str(parsed.get("In-Reply-To") or "") or None),
            flags=summary.flags,
            size=summary.size,
            has_attachments=summary.has_attachments,
            html_body=html_body,
            text_body=text_body,
            reply_to=reply_to[0] if reply_to else None,
            references=references,
            headers=headers,
            attachments=[info for info, _ in _attachment_parts(parsed)],
        )

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body.update(
            {
                "replyTo": self.reply_to.to_dict() if self.reply_to else None,
                "inReplyTo": self.in_reply_to,
                "references": self.references,
                "body": self.html_body,
                "textBody": self.text_body,
                "snippet": self.snippet,
                "attachments": [a.to_dict() for a in self.attachments],
                "headers": self.headers,
                "hasAttachments": self.has_attachments or bool(self.attachments),
            }
        )
        return body


def find_attachment(raw: bytes, attachment_id: str) -> AttachmentContent | None:
    """Locate an attachment payload by id (Content-ID or checksum)."""
    for info, part in _attachment_parts(parse_rfc822(raw)):
        if info.id == attachment_id or info.content_id == attachment_id:
            return AttachmentContent(
                filename=info.filename,
                content_type=info.content_type,
                content=part.get_payload(decode=True) or b"",
            )
    return None


def attachment_contents(raw: bytes) -> list[AttachmentContent]:
    """Every attachment payload of a raw message, in MIME order."""
    return [
        AttachmentContent(
            filename=info.filename,
            content_type=info.content_type,
            content=part.get_payload(decode=True) or b"",
        )
        for info, part in _attachment_parts(parse_rfc822(raw))
    ]
