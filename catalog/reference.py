"""
catalog/reference.py -- Human-readable listing reference codes.

Format: REF-<YYYYMMDDHHMMSS>-<10 chars>

The suffix alphabet drops 0/O and 1/I so a reference read aloud over the
phone or copied from a printed flyer cannot be mistyped into another valid
one. Uniqueness is NOT guaranteed here: the listings table has a UNIQUE index
on reference and CatalogStore.create_listing() surfaces a collision as
ConflictError.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timezone

PREFIX = "REF"
ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
SUFFIX_LENGTH = 10


def generate_reference(now: datetime | None = None) -> str:
    """Return a new reference code, e.g. REF-20261018143005-K7WQ2MZX9P."""
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%d%H%M%S")
    suffix = "".join(secrets.choice(ALPHABET) for _ in range(SUFFIX_LENGTH))
    return f"{PREFIX}-{stamp}-{suffix}"
