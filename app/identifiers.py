import uuid
from typing import Optional


def canonical_identifier(raw: Optional[str]) -> Optional[str]:
    """Lower-case hyphenated form of a UUID string, the users.id format.

    Returns None for anything that is not a hyphenated UUID.
    """
    if not raw or not isinstance(raw, str):
        return None
    try:
        parsed = uuid.UUID(raw)
    except ValueError:
        return None
    canonical = str(parsed)
    if canonical != raw.lower():
        return None
    return canonical


def is_valid_identifier(raw: Optional[str]) -> bool:
    return canonical_identifier(raw) is not None
