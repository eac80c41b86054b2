"""Input validation helpers for chat input and file names.

Every value typed by a user goes through one of these functions before it
reaches the database or a provisioning script.
"""
from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional, Tuple

from .pricing import LEVELS

MAX_STRING_LENGTH = 500
MAX_FILENAME_LENGTH = 100

ACCOUNT_USERNAME_RE = re.compile(r"^[a-zA-Z0-9_]{3,20}$")
ACCOUNT_PASSWORD_RE = re.compile(r"^[a-zA-Z0-9]{6,}$")
DOMAIN_RE = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)


def sanitize_string(value: str, max_length: int = MAX_STRING_LENGTH) -> str:
    """Trim user input and drop null bytes.

    Parameters
    ----------
    value : str
        Input string to sanitize
    max_length : int
        Maximum allowed length

    Returns
    -------
    str
        Sanitized string, empty for non-string input
    """
    if not isinstance(value, str):
        return ""
    return value[:max_length].replace("\x00", "").strip()


def validate_account_username(username: str) -> bool:
    """Account names: 3-20 letters, digits or underscores."""

    return bool(username) and bool(ACCOUNT_USERNAME_RE.match(username))


def validate_account_password(password: str) -> bool:
    """SSH passwords: at least 6 letters or digits."""

    return bool(password) and bool(ACCOUNT_PASSWORD_RE.match(password))


def validate_domain(domain: str) -> bool:
    if not domain or len(domain) > 253:
        return False
    return bool(DOMAIN_RE.match(domain))


def validate_user_id(value: str) -> Tuple[bool, Optional[int]]:
    """Parse a Telegram user id typed by an admin.

    Returns
    -------
    tuple
        (is_valid, parsed_id)
    """
    value = (value or "").strip()
    if not value.isdigit():
        return False, None
    return True, int(value)


def parse_level_change(text: str) -> Tuple[bool, Optional[int], Optional[str]]:
    """Parse ``"<user id> <level>"`` input.

    Returns
    -------
    tuple
        (is_valid, user_id, level)
    """
    parts = (text or "").split()
    if len(parts) != 2:
        return False, None, None
    ok, user_id = validate_user_id(parts[0])
    level = parts[1].lower()
    if not ok or level not in LEVELS:
        return False, None, None
    return True, user_id, level


def validate_int(value: str, min_value: int = 0) -> Tuple[bool, Optional[int]]:
    try:
        num = int((value or "").strip())
    except ValueError:
        return False, None
    if num < min_value:
        return False, None
    return True, num


def validate_price(value: str) -> Tuple[bool, Optional[float]]:
    """Prices must parse as a float greater than zero."""

    try:
        num = float((value or "").strip())
    except ValueError:
        return False, None
    if num <= 0:
        return False, None
    return True, num


def secure_filename(filename: str) -> str:
    """Generate a safe file name by removing path parts and odd characters.

    Parameters
    ----------
    filename : str
        Original filename

    Returns
    -------
    str
        Sanitized filename, ``"unknown"`` when nothing usable remains
    """
    filename = os.path.basename(filename or "")
    filename = re.sub(r"[^a-zA-Z0-9._-]", "", filename)
    filename = filename.lstrip(".")

    if len(filename) > MAX_FILENAME_LENGTH:
        ext = Path(filename).suffix
        name = Path(filename).stem[:MAX_FILENAME_LENGTH - len(ext)]
        filename = name + ext

    return filename or "unknown"
