"""Mailbox (IMAP folder) model."""

from dataclasses import dataclass, field
from typing import Any

# RFC 6154 special-use attributes (plus RFC 8457 \Important)
SPECIAL_USE_FLAGS = (
    "\\All",
    "\\Archive",
    "\\Drafts",
    "\\Flagged",
    "\\Important",
    "\\Junk",
    "\\Sent",
    "\\Trash",
)

_SPECIAL_USE_BY_LOWER = {flag.lower(): flag for flag in SPECIAL_USE_FLAGS}


def _to_str(value: bytes | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


@dataclass
class Mailbox:
    """Represents one IMAP mailbox as listed by the server.

    Attributes:
        name: Last path segment (display name)
        path: Full server-side path, used for SELECT
        delimiter: Hierarchy delimiter ("/" or "."), empty for flat servers
        flags: LIST attributes as strings (e.g. "\\HasNoChildren")
        special_use: RFC 6154 tag such as "\\Sent", or None
        subscribed: Whether the mailbox appears in LSUB
    """

    name: str
    path: str
    delimiter: str = "/"
    flags: tuple[str, ...] = field(default_factory=tuple)
    special_use: str | None = None
    subscribed: bool = True

    @property
    def selectable(self) -> bool:
        """False for \\Noselect / \\NonExistent container nodes."""
        lowered = {f.lower() for f in self.flags}
        return "\\noselect" not in lowered and "\\nonexistent" not in lowered

    @staticmethod
    def from_imap_response(
        flags: tuple[bytes | str, ...],
        delimiter: bytes | str | None,
        name: str,
        subscribed: bool = True,
    ) -> "Mailbox":
        """Create Mailbox from an imapclient LIST triple.

        Args:
            flags: LIST attributes (e.g., (b'\\HasNoChildren', b'\\Sent'))
            delimiter: Hierarchy delimiter
            name: Full mailbox path

        Returns:
            Mailbox instance
        """
        str_flags = tuple(_to_str(f) for f in flags)
        special_use = None
        for flag in str_flags:
            if flag.lower() in _SPECIAL_USE_BY_LOWER:
                special_use = _SPECIAL_USE_BY_LOWER[flag.lower()]
                break

        delim = _to_str(delimiter)
        path = _to_str(name)
        display = path.rsplit(delim, 1)[-1] if delim and delim in path else path

        return Mailbox(
            name=display,
            path=path,
            delimiter=delim,
            flags=str_flags,
            special_use=special_use,
            subscribed=subscribed,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "path": self.path,
            "delimiter": self.delimiter,
            "flags": list(self.flags),
            "specialUse": self.special_use,
            "subscribed": self.subscribed,
        }
