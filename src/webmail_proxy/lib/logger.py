"""Logging for the webmail proxy.

Every handler formats through ``SanitizingFormatter`` so that mailbox
addresses, bearer tokens and passwords never reach a log sink. Request
and mail events go through ``StructuredLogger``, which renders keyword
fields as ``message | key=value | ...``.
"""

import hashlib
import logging
import re
from pathlib import Path
from typing import Any, Optional

from webmail_proxy.lib.config import app_config, storage_config


class PIISanitizer:
    """Mask credentials and addresses in log text."""

    # Order matters: tokens before addresses, a JWT can follow "Bearer"
    RULES = (
        (re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+", re.IGNORECASE), r"\1***"),
        (re.compile(r"\beyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+"), "eyJ***"),
        (re.compile(r"(password[\"']?\s*[:=]\s*[\"']?)[^\s,\"'}]+", re.IGNORECASE), r"\1***"),
        (re.compile(r"\b[A-Za-z0-9._%+-]+@([A-Za-z0-9.-]+\.[A-Za-z]{2,})\b"), r"***@\1"),
    )

    @classmethod
    def sanitize(cls, text: Any) -> str:
        text = text if isinstance(text, str) else str(text)
        for pattern, replacement in cls.RULES:
            text = pattern.sub(replacement, text)
        return text


class SanitizingFormatter(logging.Formatter):
    """Formatter that runs the message and its string args through PIISanitizer."""

    def format(self, record: logging.LogRecord) -> str:
        if isinstance(record.msg, str):
            record.msg = PIISanitizer.sanitize(record.msg)
        if record.args and isinstance(record.args, tuple):
            record.args = tuple(PIISanitizer.sanitize(a) if isinstance(a, str) else a for a in record.args)
        return super().format(record)


def hash_email(email: str) -> str:
    """First 12 hex chars of the SHA-256 of the lowercased address."""
    return hashlib.sha256(email.lower().encode()).hexdigest()[:12]


def get_logger(name: str, log_file: Optional[str] = None) -> logging.Logger:
    """
    Get a logger with sanitizing console (and optional file) handlers.

    Handlers are attached once per logger name, so repeated calls from
    the same module are cheap.

    Args:
        name: Logger name (usually __name__)
        log_file: File name inside ``storage_config.log_dir``

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(app_config.log_level.upper())
    if logger.handlers:
        return logger

    formatter = SanitizingFormatter(fmt=app_config.log_format, datefmt=app_config.log_date_format)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        path: Path = storage_config.log_dir / log_file
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path))

    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


class StructuredLogger:
    """Logger wrapper that appends keyword fields; ``None`` fields are dropped."""

    def __init__(self, name: str, log_file: Optional[str] = None):
        self.logger = get_logger(name, log_file)

    @staticmethod
    def _render(message: str, fields: dict[str, Any]) -> str:
        parts = [f"{k}={v}" for k, v in fields.items() if v is not None]
        return " | ".join([message, *parts])

    def debug(self, message: str, **fields: Any) -> None:
        self.logger.debug(self._render(message, fields))

    def info(self, message: str, **fields: Any) -> None:
        self.logger.info(self._render(message, fields))

    def warning(self, message: str, **fields: Any) -> None:
        self.logger.warning(self._render(message, fields))

    def error(self, message: str, **fields: Any) -> None:
        self.logger.error(self._render(message, fields))

    def log_request(
        self,
        method: str,
        path: str,
        status: int,
        duration_ms: Optional[float] = None,
        remote_addr: Optional[str] = None,
    ) -> None:
        level = logging.WARNING if status >= 500 else logging.INFO
        self.logger.log(
            level,
            self._render(
                "Request completed",
                {
                    "method": method,
                    "path": path,
                    "status": status,
                    "duration_ms": f"{duration_ms:.2f}" if duration_ms is not None else None,
                    "remote_addr": remote_addr,
                },
            ),
        )

    def log_mail_operation(
        self,
        operation: str,
        folder: Optional[str] = None,
        uid: Optional[int] = None,
        status: str = "ok",
    ) -> None:
        self.info("Mail operation", operation=operation, folder=folder, uid=uid, status=status)

    def log_session_event(self, event: str, email: str, jti: Optional[str] = None) -> None:
        """Session lifecycle event keyed by the hashed address and a JTI prefix."""
        self.info("Session event", event=event, user=hash_email(email), jti=jti[:8] if jti else None)


def get_structured_logger(name: str, log_file: Optional[str] = None) -> StructuredLogger:
    return StructuredLogger(name, log_file)
