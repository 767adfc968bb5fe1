"""Folder roles and user-facing folder name resolution.

Servers name their system folders differently ("Sent", "Sent Items",
"[Gmail]/Sent Mail", "INBOX.Sent"). Clients ask for a folder by alias,
display name or path; the resolver maps that to the server's real path
using RFC 6154 special-use attributes first and names second.
"""

from enum import Enum

from imapclient.exceptions import IMAPClientError

from webmail_proxy.lib.cache import FolderCache
from webmail_proxy.lib.logger import get_logger
from webmail_proxy.mail.protocols import IMAPClientProtocol
from webmail_proxy.models.mailbox import Mailbox

logger = get_logger(__name__)

INBOX = "INBOX"


class FolderRole(Enum):
    INBOX = "inbox"
    SENT = "sent"
    DRAFTS = "drafts"
    TRASH = "trash"
    SPAM = "spam"
    ARCHIVE = "archive"
    STARRED = "starred"
    ALL = "all"
    IMPORTANT = "important"
    CUSTOM = "custom"


SPECIAL_USE_ROLES: dict[str, FolderRole] = {
    "\\inbox": FolderRole.INBOX,
    "\\sent": FolderRole.SENT,
    "\\drafts": FolderRole.DRAFTS,
    "\\trash": FolderRole.TRASH,
    "\\junk": FolderRole.SPAM,
    "\\flagged": FolderRole.STARRED,
    "\\all": FolderRole.ALL,
    "\\archive": FolderRole.ARCHIVE,
    "\\important": FolderRole.IMPORTANT,
}

NAME_ROLES: dict[str, FolderRole] = {
    "inbox": FolderRole.INBOX,
    "sent": FolderRole.SENT,
    "sent items": FolderRole.SENT,
    "sent messages": FolderRole.SENT,
    "sent mail": FolderRole.SENT,
    "drafts": FolderRole.DRAFTS,
    "draft": FolderRole.DRAFTS,
    "trash": FolderRole.TRASH,
    "deleted": FolderRole.TRASH,
    "deleted items": FolderRole.TRASH,
    "deleted messages": FolderRole.TRASH,
    "spam": FolderRole.SPAM,
    "junk": FolderRole.SPAM,
    "junk e-mail": FolderRole.SPAM,
    "junk mail": FolderRole.SPAM,
    "starred": FolderRole.STARRED,
    "flagged": FolderRole.STARRED,
    "important": FolderRole.IMPORTANT,
    "archive": FolderRole.ARCHIVE,
    "all mail": FolderRole.ALL,
}

# User-facing alias -> RFC 6154 tag
SPECIAL_USE_ALIASES: dict[str, str] = {
    "sent": "\\Sent",
    "drafts": "\\Drafts",
    "trash": "\\Trash",
    "junk": "\\Junk",
    "spam": "\\Junk",
    "archive": "\\Archive",
    "all": "\\All",
    "flagged": "\\Flagged",
    "important": "\\Important",
}

# Names tried, in order, when a system folder has no special-use tag
TRASH_NAMES = ("Trash", "Deleted Items", "Deleted Messages")
ARCHIVE_NAMES = ("Archive", "All Mail", "All")
SPAM_NAMES = ("Spam", "Junk", "Junk E-mail")
DRAFTS_NAMES = ("Drafts", "Draft")
SENT_NAMES = ("Sent", "Sent Items", "Sent Messages")

PROTECTED_NAMES = frozenset({"inbox", "sent", "drafts", "trash", "spam", "junk"})
EMPTYABLE_NAMES = frozenset({"trash", "deleted", "deleted items", "spam", "junk", "junk e-mail"})


def is_inbox(name: str) -> bool:
    return name.upper() == INBOX


def folder_role(special_use: str | None, name: str) -> FolderRole:
    """
    Classify a folder.

    Args:
        special_use: RFC 6154 tag (e.g. "\\Sent") or None
        name: Display name or full path

    Returns:
        Role from the special-use tag if it has one, else from the name
    """
    if is_inbox(name):
        return FolderRole.INBOX
    if special_use:
        role = SPECIAL_USE_ROLES.get(special_use.lower())
        if role:
            return role
    display = name.rsplit("/", 1)[-1].rsplit(".", 1)[-1] if name else ""
    return NAME_ROLES.get(name.lower()) or NAME_ROLES.get(display.lower()) or FolderRole.CUSTOM


def mailbox_role(mailbox: Mailbox) -> FolderRole:
    if is_inbox(mailbox.path):
        return FolderRole.INBOX
    return folder_role(mailbox.special_use, mailbox.name)


def describe_mailbox(mailbox: Mailbox) -> dict:
    """Wire form of a mailbox including its role as ``type``."""
    entry = mailbox.to_dict()
    entry["type"] = mailbox_role(mailbox).value
    return entry


def find_special_folder(
    mailboxes: list[Mailbox],
    special_use: str,
    names: tuple[str, ...],
) -> Mailbox | None:
    """Find a system folder by tag, then by the first conventional name present."""
    tag = special_use.lower()
    for mailbox in mailboxes:
        if mailbox.special_use and mailbox.special_use.lower() == tag:
            return mailbox

    by_name = {m.name.lower(): m for m in mailboxes}
    by_path = {m.path.lower(): m for m in mailboxes}
    for name in names:
        match = by_name.get(name.lower()) or by_path.get(name.lower())
        if match:
            return match
    return None


def list_mailboxes(client: IMAPClientProtocol) -> list[Mailbox]:
    """LIST every mailbox, marking which ones are subscribed."""
    listed = client.list_folders()
    try:
        subscribed = {name for _, _, name in client.list_sub_folders()}
    except IMAPClientError as e:
        logger.debug(f"LSUB failed, treating every folder as subscribed: {type(e).__name__}")
        subscribed = None

    return [
        Mailbox.from_imap_response(
            flags,
            delimiter,
            name,
            subscribed=True if subscribed is None else name in subscribed,
        )
        for flags, delimiter, name in listed
    ]


class FolderResolver:
    """Maps requested folder names to server paths, with a per-account cache."""

    def __init__(self, cache: FolderCache):
        self._cache = cache

    @staticmethod
    def build_lookup(mailboxes: list[Mailbox]) -> dict[str, str]:
        lookup: dict[str, str] = {}
        for mailbox in mailboxes:
            lookup.setdefault(mailbox.name.lower(), mailbox.path)
            lookup.setdefault(mailbox.path.lower(), mailbox.path)
            if mailbox.special_use:
                lookup.setdefault(mailbox.special_use.lower(), mailbox.path)

        # Aliases from tags take priority over a same-named custom folder
        for alias, tag in SPECIAL_USE_ALIASES.items():
            for mailbox in mailboxes:
                if mailbox.special_use and mailbox.special_use.lower() == tag.lower():
                    lookup[alias] = mailbox.path
                    break
        return lookup

    def resolve(
        self,
        requested: str,
        client: IMAPClientProtocol,
        cache_key: str | None = None,
        force_refresh: bool = False,
    ) -> str:
        """
        Resolve a folder name to the server path.

        Returns:
            Server path, or ``requested`` unchanged if nothing matches
        """
        if is_inbox(requested):
            return INBOX

        lookup = None
        if cache_key and not force_refresh:
            lookup = self._cache.get(cache_key)

        if lookup is None:
            lookup = self.build_lookup(list_mailboxes(client))
            if cache_key:
                self._cache.set(cache_key, lookup)

        resolved = lookup.get(requested.lower())
        if resolved is None:
            logger.debug(f"No folder matches {requested!r}, passing through")
            return requested
        return resolved

    def invalidate(self, cache_key: str | None) -> None:
        if cache_key:
            self._cache.invalidate(cache_key)
