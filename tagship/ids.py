"""
Release ID generation utilities.
"""

import random
import string
from datetime import datetime


def new_release_id() -> str:
    """
    Generate a new release ID in format: r-YYYYMMDD-hhmmss-XXXX

    Returns:
        str: Unique release ID
    """
    now = datetime.now()
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=4))
    return f"r-{now.strftime('%Y%m%d')}-{now.strftime('%H%M%S')}-{suffix}"


def is_valid_release_id(release_id: str) -> bool:
    """
    Validate release ID format.

    Args:
        release_id: ID to validate

    Returns:
        bool: True if valid format
    """
    if not release_id.startswith("r-"):
        return False

    parts = release_id.split("-")
    if len(parts) != 4:
        return False

    # YYYYMMDD
    if len(parts[1]) != 8 or not parts[1].isdigit():
        return False

    # HHMMSS
    if len(parts[2]) != 6 or not parts[2].isdigit():
        return False

    if len(parts[3]) != 4 or not parts[3].isalnum():
        return False

    return True
