"""Common utility functions following DRY and KISS principles."""
import math
from uuid import UUID


def truncate_snippet(text: str, max_length: int, suffix: str = "...") -> str:
    """Keep the first ``max_length`` characters, marking the cut with ``suffix``."""
    if len(text) <= max_length:
        return text
    return text[:max_length] + suffix


def estimate_token_count(text: str) -> int:
    """Rough token estimate: ~4 characters per token."""
    return math.ceil(len(text) / 4)


def parse_uuid(value: str | UUID) -> UUID | None:
    """Return ``value`` as a UUID, or None if it is not a valid one."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return None
