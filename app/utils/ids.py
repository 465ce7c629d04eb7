from __future__ import annotations

from uuid import UUID


def is_uuid(value: object) -> bool:
    """True when ``value`` can be bound to a UUID primary key column."""
    if not isinstance(value, str):
        return False
    try:
        UUID(value)
    except ValueError:
        return False
    return True
