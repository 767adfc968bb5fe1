"""Outgoing mail: MIME construction and SMTP delivery."""

import base64
import binascii
import html
import smtplib
import socket
from contextlib import contextmanager
from dataclasses import dataclass, field
from email import policy
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Any, Callable, Iterator

from webmail_proxy.lib.config import mail_config
from webmail_proxy.lib.errors import (
    MailAuthenticationError,
    MailServerError,
    MailServerUnavailable,
    ValidationError,
)
from webmail_proxy.lib.logger import get_logger, hash_email
from webmail_proxy.lib.utils import strip_html, validate_email_address
from webmail_proxy.mail.imap_session import UNAVAILABLE_ERRORS, create_ssl_context, sanitize_error
from webmail_proxy.models.account import SecurityMode, ServerSettings
from webmail_proxy.models.message import (
    NO_SUBJECT,
    AttachmentContent,
    EmailAddress,
    Message,
)

logger = get_logger(__name__)

MAX_ATTACHMENT_BYTES = 25 * 1024 * 1024


# ============================================================================
# Compose model
# ============================================================================


def parse_recipients(value: Any, field_name: str) -> list[EmailAddress]:
    """Accept "a@b.c", "A <a@b.c>", {"email", "name"} or a list of those."""
    if not value:
        return []
    if isinstance(value, (str, dict)):
        value = [value]
    if not isinstance(value, list):
        raise ValidationError(f"'{field_name}' must be a list of recipients")

    recipients = []
    for entry in value:
        if isinstance(entry, dict):
            parsed = [EmailAddress(name=str(entry.get("name") or ""), email=str(entry.get("email") or "").lower())]
        elif isinstance(entry, str):
            parsed = EmailAddress.parse_header(entry)
        else:
            raise ValidationError(f"Invalid recipient in '{field_name}'")
        for address in parsed:
            if not validate_email_address(address.email):
                raise ValidationError(f"Invalid email address in '{field_name}': {address.email}")
            recipients.append(address)
    return recipients


def parse_attachments(value: Any) -> list[AttachmentContent]:
    if not value:
        return []
    if not isinstance(value, list):
        raise ValidationError("'attachments' must be a list")

    attachments = []
    for entry in value:
        if not isinstance(entry, dict) or not entry.get("content"):
            raise ValidationError("Each attachment needs base64 'content'")
        try:
            content = base64.b64decode(entry["content"], validate=True)
        except (binascii.Error, ValueError, TypeError):
            raise ValidationError("Attachment content must be base64") from None
        if len(content) > MAX_ATTACHMENT_BYTES:
            raise ValidationError("Attachment exceeds the 25 MB limit")
        attachments.append(
            AttachmentContent(
                filename=str(entry.get("filename") or entry.get("name") or "attachment"),
                content_type=str(entry.get("contentType") or entry.get("type") or "application/octet-stream"),
                content=content,
            )
        )
    return attachments


@dataclass
class ComposeRequest:
    """A message to send or save as a draft."""

    to: list[EmailAddress] = field(default_factory=list)
    cc: list[EmailAddress] = field(default_factory=list)
    bcc: list[EmailAddress] = field(default_factory=list)
    subject: str = ""
    html_body: str = ""
    text_body: str = ""
    attachments: list[AttachmentContent] = field(default_factory=list)
    in_reply_to: str | None = None
    references: list[str] = field(default_factory=list)
    reply_to: EmailAddress | None = None

    @property
    def recipients(self) -> list[str]:
        seen: dict[str, None] = {}
        for address in self.to + self.cc + self.bcc:
            seen.setdefault(address.email, None)
        return list(seen)

    @classmethod
    def from_dict(cls, body: dict[str, Any], require_recipient: bool = True) -> "ComposeRequest":
        """
        Build from a JSON request body.

        Raises:
            ValidationError: Bad recipients or attachments, or none when required
        """
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")

        reply_to = parse_recipients(body.get("replyTo"), "replyTo")
        references = body.get("references") or []
        if isinstance(references, str):
            references = references.split()

        compose = cls(
            to=parse_recipients(body.get("to"), "to"),
            cc=parse_recipients(body.get("cc"), "cc"),
            bcc=parse_recipients(body.get("bcc"), "bcc"),
            subject=str(body.get("subject") or ""),
            html_body=str(body.get("body") or ""),
            text_body=str(body.get("textBody") or ""),
            attachments=parse_attachments(body.get("attachments")),
            in_reply_to=body.get("inReplyTo") or None,
            references=[str(r) for r in references],
            reply_to=reply_to[0] if reply_to else None,
        )
        if require_recipient and not compose.recipients:
            raise ValidationError("At least one recipient is required")
        return compose


@dataclass
class SendResult:
    message_id: str
    accepted: list[str]
    rejected: list[str]
    raw: bytes = field(default=b"", repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "messageId": self.message_id,
            "accepted": self.accepted,
            "rejected": self.rejected,
        }


def _prefixed(subject: str, prefix: str) -> str:
    """Add ``prefix`` ("Re:" / "Fwd:") unless the subject already starts with it."""
    subject = subject if subject and subject != NO_SUBJECT else ""
    if subject.lower().startswith(prefix.lower()):
        return subject
    return f"{prefix} {subject}".strip()


# ============================================================================
# SMTP sender
# ============================================================================


class SMTPSender:
    """Builds and sends messages for one account, one connection per send."""

    def __init__(
        self,
        settings: ServerSettings,
        username: str,
        password: str,
        display_name: str | None = None,
        timeout: float | None = None,
        verify_tls: bool | None = None,
        smtp_factory: Callable[..., smtplib.SMTP] | None = None,
        smtp_ssl_factory: Callable[..., smtplib.SMTP] | None = None,
    ):
        self.settings = settings
        self.username = username
        self._password = password
        self.display_name = display_name or username.split("@", 1)[0]
        self._timeout = timeout or mail_config.smtp_timeout_seconds
        self._verify_tls = mail_config.verify_tls if verify_tls is None else verify_tls
        self._smtp_factory = smtp_factory or smtplib.SMTP
        self._smtp_ssl_factory = smtp_ssl_factory or smtplib.SMTP_SSL

    @property
    def sender(self) -> EmailAddress:
        return EmailAddress(name=self.display_name, email=self.username.lower())

    @property
    def domain(self) -> str:
        return self.username.rpartition("@")[2] or "localhost"

    # ------------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------------

    @contextmanager
    def _errors(self, stage: str) -> Iterator[None]:
        try:
            yield
        except smtplib.SMTPAuthenticationError as e:
            logger.info(f"SMTP login rejected for user {hash_email(self.username)}")
            raise MailAuthenticationError("SMTP server rejected the credentials") from e
        except UNAVAILABLE_ERRORS as e:
            logger.warning(f"SMTP server {self.settings.host} unavailable: {sanitize_error(e)}")
            raise MailServerUnavailable(
                f"Unable to connect to {self.settings.host}:{self.settings.port}", stage=stage
            ) from e
        except smtplib.SMTPException as e:
            logger.error(f"SMTP {stage} failed on {self.settings.host}: {e}")
            raise MailServerError(f"SMTP {stage} failed", stage=stage) from e
        except (OSError, socket.timeout) as e:
            logger.error(f"SMTP {stage} failed on {self.settings.host}: {sanitize_error(e)}")
            raise MailServerError(sanitize_error(e), stage=stage) from e

    @contextmanager
    def connection(self) -> Iterator[smtplib.SMTP]:
        """Connected, authenticated SMTP session; always closed on exit."""
        context = create_ssl_context(self._verify_tls)
        host, port = self.settings.host, self.settings.port

        with self._errors("connect"):
            if self.settings.security is SecurityMode.SSL_TLS:
                smtp = self._smtp_ssl_factory(host, port, timeout=self._timeout, context=context)
            else:
                smtp = self._smtp_factory(host, port, timeout=self._timeout)
                if self.settings.security is SecurityMode.STARTTLS:
                    smtp.ehlo()
                    smtp.starttls(context=context)
                    smtp.ehlo()

        try:
            with self._errors("login"):
                smtp.login(self.username, self._password)
            yield smtp
        finally:
            try:
                smtp.quit()
            except (smtplib.SMTPException, OSError):
                smtp.close()

    def verify(self) -> None:
        """
        Check that the server accepts the credentials.

        Raises:
            MailAuthenticationError / MailServerError / MailServerUnavailable
        """
        with self.connection() as smtp:
            with self._errors("verify"):
                smtp.noop()

    def send_message(self, message: EmailMessage, recipients: list[str] | None = None) -> dict:
        """Deliver an already-built message; returns refused recipients."""
        with self.connection() as smtp:
            with self._errors("send"):
                return smtp.send_message(message, from_addr=self.username, to_addrs=recipients)

    # ------------------------------------------------------------------------
    # Message construction
    # ------------------------------------------------------------------------

    def build_message(self, compose: ComposeRequest) -> EmailMessage:
        """multipart/alternative (text + HTML), wrapped in mixed when attaching."""
        message = EmailMessage()
        message["From"] = self.sender.formatted()
        if compose.to:
            message["To"] = ", ".join(a.formatted() for a in compose.to)
        if compose.cc:
            message["Cc"] = ", ".join(a.formatted() for a in compose.cc)
        if compose.bcc:
            message["Bcc"] = ", ".join(a.formatted() for a in compose.bcc)
        if compose.reply_to:
            message["Reply-To"] = compose.reply_to.formatted()
        message["Subject"] = compose.subject or NO_SUBJECT
        message["Date"] = formatdate(localtime=True)
        message["Message-ID"] = make_msgid(domain=self.domain)
        if compose.in_reply_to:
            message["In-Reply-To"] = compose.in_reply_to
        if compose.references:
            message["References"] = " ".join(compose.references)

        text = compose.text_body or strip_html(compose.html_body)
        message.set_content(text)
        if compose.html_body:
            message.add_alternative(compose.html_body, subtype="html")

        for attachment in compose.attachments:
            maintype, _, subtype = attachment.content_type.partition("/")
            message.add_attachment(
                attachment.content,
                maintype=maintype or "application",
                subtype=subtype or "octet-stream",
                filename=attachment.filename,
            )
        return message

    def build_raw(self, compose: ComposeRequest) -> bytes:
        """RFC 822 bytes suitable for IMAP APPEND (drafts, sent copies)."""
        return self.build_message(compose).as_bytes(policy=policy.SMTP)

    def send(self, compose: ComposeRequest) -> SendResult:
        """
        Send a message.

        Raises:
            ValidationError: No recipients
            MailServerError: Delivery failed
        """
        recipients = compose.recipients
        if not recipients:
            raise ValidationError("At least one recipient is required")

        message = self.build_message(compose)
        raw = message.as_bytes(policy=policy.SMTP)
        refused = self.send_message(message, recipients)

        rejected = sorted(refused or {})
        accepted = [r for r in recipients if r not in refused]
        logger.info(
            f"Sent message for user {hash_email(self.username)}: "
            f"{len(accepted)} accepted, {len(rejected)} rejected"
        )
        return SendResult(
            message_id=str(message["Message-ID"]),
            accepted=accepted,
            rejected=rejected,
            raw=raw,
        )

    def build_reply(
        self,
        original: Message,
        html_body: str,
        reply_all: bool = False,
        text_body: str = "",
        attachments: list[AttachmentContent] | None = None,
    ) -> ComposeRequest:
        own = self.username.lower()
        primary = original.reply_to or original.sender
        to = [primary] if primary.email else []

        cc: list[EmailAddress] = []
        if reply_all:
            taken = {own} | {a.email for a in to}
            for address in original.to + original.cc:
                if address.email not in taken:
                    cc.append(address)
                    taken.add(address.email)

        references = list(original.references)
        if original.message_id and original.message_id not in references:
            references.append(original.message_id)

        return ComposeRequest(
            to=to,
            cc=cc,
            subject=_prefixed(original.subject, "Re:"),
            html_body=html_body,
            text_body=text_body,
            attachments=attachments or [],
            in_reply_to=original.message_id,
            references=references,
        )

    def send_reply(
        self,
        original: Message,
        html_body: str,
        reply_all: bool = False,
        text_body: str = "",
        attachments: list[AttachmentContent] | None = None,
    ) -> SendResult:
        """Reply (or reply-all, minus our own address) threaded on the original."""
        return self.send(self.build_reply(original, html_body, reply_all, text_body, attachments))

    def build_forward(
        self,
        original: Message,
        to: list[EmailAddress],
        cc: list[EmailAddress] | None = None,
        bcc: list[EmailAddress] | None = None,
        html_body: str = "",
        attachments: list[AttachmentContent] | None = None,
    ) -> ComposeRequest:
        date = original.date.strftime("%a, %d %b %Y %H:%M %Z") if original.date else ""
        quoted = (
            f"{html_body}<br><br>"
            '<div style="border-left: 2px solid #ccc; padding-left: 10px; margin-left: 10px;">'
            "<p><strong>---------- Forwarded message ---------</strong></p>"
            f"<p><strong>From:</strong> {html.escape(original.sender.formatted())}</p>"
            f"<p><strong>Date:</strong> {html.escape(date)}</p>"
            f"<p><strong>Subject:</strong> {html.escape(original.subject)}</p>"
            f"<p><strong>To:</strong> {html.escape(', '.join(a.email for a in original.to))}</p>"
            f"<br>{original.html_body}</div>"
        )
        return ComposeRequest(
            to=to,
            cc=cc or [],
            bcc=bcc or [],
            subject=_prefixed(original.subject, "Fwd:"),
            html_body=quoted,
            attachments=attachments or [],
        )

    def forward(
        self,
        original: Message,
        to: list[EmailAddress],
        cc: list[EmailAddress] | None = None,
        bcc: list[EmailAddress] | None = None,
        html_body: str = "",
        attachments: list[AttachmentContent] | None = None,
    ) -> SendResult:
        """Forward with a quoted header block; ``attachments`` are re-attached."""
        return self.send(self.build_forward(original, to, cc, bcc, html_body, attachments))


def smtp_sender_factory(
    settings: ServerSettings,
    username: str,
    password: str,
    display_name: str | None = None,
) -> SMTPSender:
    return SMTPSender(settings, username, password, display_name=display_name)
