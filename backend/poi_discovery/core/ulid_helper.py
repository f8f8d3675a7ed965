"""ULID generation helper utilities."""

from typing import Optional

import ulid


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ulid.ULID())


def is_valid_ulid(value: Optional[str]) -> bool:
    """Check if a string is a valid ULID."""
    if not value:
        return False
    try:
        ulid.ULID.from_str(value)
    except ValueError:
        return False
    return True
