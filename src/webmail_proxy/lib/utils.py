"""Utility functions for the webmail proxy."""

import html
import os
import re
import stat
from pathlib import Path
from typing import Any

from webmail_proxy.lib.logger import get_logger

logger = get_logger(__name__)

# Email validation pattern (compiled once at module level)
EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")

# Leading reply/forward markers, possibly repeated ("Re: Fwd: re: ...")
SUBJECT_PREFIX_PATTERN = re.compile(r"^(?:\s*(?:re|fwd|fw)\s*:\s*)+", re.IGNORECASE)


def validate_email_address(email: str) -> bool:
    """
    Validate email address format.

    Args:
        email: Email address to validate

    Returns:
        True if valid format, False otherwise
    """
    if not email or not isinstance(email, str):
        return False
    return bool(EMAIL_PATTERN.match(email.strip()))


def email_domain(email: str) -> str:
    """Return the lowercased domain part of an email address ('' if absent)."""
    _, sep, domain = email.strip().rpartition("@")
    return domain.lower() if sep else ""


def base_subject(subject: str | None) -> str:
    """
    Strip leading Re:/Fwd:/Fw: markers from a subject line.

    Example:
        >>> base_subject("Re: Re: Fwd: Status")
        'Status'
    """
    if not subject:
        return ""
    return SUBJECT_PREFIX_PATTERN.sub("", subject).strip()


def strip_html(markup: str | None) -> str:
    """Convert a fragment of HTML into readable plain text."""
    if not markup:
        return ""
    text = re.sub(r"<br\s*/?>", "\n", markup, flags=re.IGNORECASE)
    text = re.sub(r"</p>", "\n\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<(script|style)[^>]*>.*?</\1>", "", text, flags=re.IGNORECASE | re.DOTALL)
    text = re.sub(r"<[^>]+>", "", text)
    text = html.unescape(text).replace("\xa0", " ")
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def safe_int(value: Any, default: int = 0) -> int:
    """
    Safely convert value to int.

    Args:
        value: Value to convert
        default: Default value if conversion fails

    Returns:
        Integer value or default
    """
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_bool(value: Any, default: bool = False) -> bool:
    """Interpret query-string style booleans ("true", "0", "yes", ...)."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _tighten(path: Path, mode: int) -> None:
    current_mode = stat.S_IMODE(os.stat(path).st_mode)
    if current_mode & (stat.S_IRWXG | stat.S_IRWXO):
        logger.warning(f"Insecure permissions {oct(current_mode)} on {path}, fixing to {oct(mode)}")
        os.chmod(path, mode)


def ensure_secure_file(file_path: Path, mode: int = 0o600) -> None:
    """Create ``file_path`` if missing and strip group/other access."""
    if not file_path.exists():
        file_path.touch(mode=mode)
        return
    _tighten(file_path, mode)


def ensure_secure_directory(dir_path: Path, mode: int = 0o700) -> None:
    """
    Create ``dir_path`` (and parents) readable by the owner only.

    mkdir honours the umask, so the mode is re-checked afterwards.
    """
    dir_path.mkdir(parents=True, exist_ok=True, mode=mode)
    _tighten(dir_path, mode)
