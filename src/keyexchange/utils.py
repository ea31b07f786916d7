"""
keyexchange - Utility functions.

Provides validation helpers, display formatting and logging setup.
"""

import logging
import re
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

from rich.console import Console
from rich.logging import RichHandler

from .constants import (
    LOG_BACKUP_COUNT,
    LOG_DATE_FORMAT,
    LOG_FILENAME,
    LOG_FORMAT,
    LOG_MAX_BYTES,
    MAX_USERNAME_LENGTH,
)

logger = logging.getLogger(__name__)

_USERNAME_INVALID = re.compile(r"[\s\x00-\x1f\x7f/\\]")


def validate_username(username: str) -> bool:
    """
    Validate a directory username.

    A username is the natural key of a user record: it must be a non-empty
    string of at most MAX_USERNAME_LENGTH characters without whitespace,
    control characters or path separators. It also names the local key
    directory, so "." and ".." are rejected.

    Args:
        username: Username to validate

    Returns:
        True if valid, False otherwise
    """
    if not isinstance(username, str) or not username:
        return False
    if len(username) > MAX_USERNAME_LENGTH:
        return False
    if username in (".", ".."):
        return False
    return _USERNAME_INVALID.search(username) is None


def format_fingerprint(fingerprint: str, group_size: int = 4) -> str:
    """
    Format a hex fingerprint in upper-case groups for out-of-band comparison.

    Args:
        fingerprint: Hex fingerprint string
        group_size: Characters per group

    Returns:
        Formatted fingerprint, e.g. "AB12 CD34 ..."
    """
    fingerprint = fingerprint.upper()
    return " ".join(
        fingerprint[i:i + group_size] for i in range(0, len(fingerprint), group_size)
    )


def format_timestamp(value: Union[datetime, str], format_str: str = "%Y-%m-%d %H:%M:%S") -> str:
    """
    Format a datetime or ISO timestamp to a human-readable UTC string.

    Returns the original value unchanged if it cannot be parsed.
    """
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            logger.debug(f"Failed to parse timestamp '{value}': {e}")
            return value
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(format_str)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime truncated to milliseconds.

    MongoDB stores milliseconds only; truncating keeps both backends equal.
    """
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def setup_logging(
    level: str = "INFO",
    log_dir: Optional[Path] = None,
    console: bool = True,
    debug: bool = False,
) -> None:
    """
    Configure the keyexchange logger hierarchy.

    Console output goes through rich to stderr and shows warnings only unless
    debug is set. File output, when log_dir is given, uses a rotating file
    with the central log format.

    Args:
        level: Level name for the file handler
        log_dir: Directory for the rotating log file (None disables it)
        console: Whether to attach the console handler
        debug: Show DEBUG records on the console
    """
    root = logging.getLogger("keyexchange")
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.propagate = False

    if console:
        console_handler = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            markup=False,
            rich_tracebacks=debug,
        )
        console_handler.setLevel(logging.DEBUG if debug else logging.WARNING)
        root.addHandler(console_handler)

    if log_dir is not None:
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_dir / LOG_FILENAME,
                maxBytes=LOG_MAX_BYTES,
                backupCount=LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
        except OSError as e:
            logger.warning(f"File logging disabled: {e}")
        else:
            file_handler.setLevel(getattr(logging, str(level).upper(), logging.INFO))
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
            root.addHandler(file_handler)

    if not root.handlers:
        root.addHandler(logging.NullHandler())
