"""Protocol definitions for the mail session seam.

These Protocol-based interfaces decouple the mailbox service from
``imapclient`` so that tests can substitute an in-memory server and a
future pooled connector can replace the per-call one.

Protocols use structural subtyping (PEP 544): any class with the required
methods satisfies them without inheriting.
"""

from typing import Any, Callable, Protocol, TypeVar, runtime_checkable

T = TypeVar("T")

# ============================================================================
# IMAP Client Protocol
# ============================================================================


@runtime_checkable
class IMAPClientProtocol(Protocol):
    """Subset of ``imapclient.IMAPClient`` used by the mailbox service."""

    def login(self, username: str, password: str) -> Any: ...

    def logout(self) -> Any: ...

    def capabilities(self) -> tuple: ...

    def list_folders(self, directory: str = "", pattern: str = "*") -> list: ...

    def list_sub_folders(self, directory: str = "", pattern: str = "*") -> list: ...

    def select_folder(self, folder: str, readonly: bool = False) -> dict: ...

    def folder_status(self, folder: str, what: Any = None) -> dict: ...

    def search(self, criteria: Any = "ALL", charset: str | None = None) -> list: ...

    def fetch(self, messages: Any, data: Any, modifiers: Any = None) -> dict: ...

    def add_flags(self, messages: Any, flags: Any, silent: bool = False) -> Any: ...

    def remove_flags(self, messages: Any, flags: Any, silent: bool = False) -> Any: ...

    def move(self, messages: Any, folder: str) -> Any: ...

    def copy(self, messages: Any, folder: str) -> Any: ...

    def delete_messages(self, messages: Any, silent: bool = False) -> Any: ...

    def expunge(self, messages: Any = None) -> Any: ...

    def append(self, folder: str, msg: Any, flags: Any = (), msg_time: Any = None) -> Any: ...

    def create_folder(self, folder: str) -> Any: ...

    def rename_folder(self, old_name: str, new_name: str) -> Any: ...

    def delete_folder(self, folder: str) -> Any: ...


# ============================================================================
# Mail Session Protocol
# ============================================================================


@runtime_checkable
class MailSession(Protocol):
    """One authenticated unit of IMAP work.

    ``with_connection(fn)`` hands ``fn`` a live, logged-in client and
    guarantees logout afterwards, whatever ``fn`` does.

    Example:
        >>> session: MailSession = IMAPConnector(settings, email, password)
        >>> folders = session.with_connection(lambda c: c.list_folders())
    """

    def with_connection(self, fn: Callable[[IMAPClientProtocol], T]) -> T: ...


@runtime_checkable
class MailSender(Protocol):
    """Outgoing mail transport (SMTP)."""

    def verify(self) -> None: ...

    def send_message(self, message: Any) -> Any: ...
