"""ULID identifiers for connections and in-memory records."""

import ulid


def generate_ulid() -> str:
    """Generate a new ULID string (26 chars, time-sortable)."""
    return str(ulid.ULID())
