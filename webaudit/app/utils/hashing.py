"""
Hashing utilities.

Provides standardized helpers for computing SHA-256 digests used
throughout webaudit, ensuring consistent algorithms and encoding.
"""

from __future__ import annotations

import hashlib
from typing import Iterable


def sha256_hex(text: str) -> str:
    """Return the hex SHA-256 digest of a UTF-8 encoded string."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def fingerprint(parts: Iterable[str], *, length: int = 16) -> str:
    """
    Content-addressed fingerprint of an ordered sequence of strings.

    Parts are joined with '|' before hashing, so the order of parts is
    significant and part boundaries remain unambiguous for the field
    values webaudit hashes.
    """
    return sha256_hex("|".join(parts))[:length]
