"""
Identifier hashing.

The digest of a raw identifier is the permanent cross-tenant lookup key, so it
is unsalted and must stay stable across processes and releases.
"""

import hashlib
import re


def normalize_identifier(raw_identifier: str) -> str:
    """
    Normalize an identifier number before hashing.

    Removes spaces, dashes, dots, commas and slashes, and converts to uppercase.

    Args:
        raw_identifier: The identifier to normalize (can be None)

    Returns:
        Normalized identifier string, or empty string if None/empty
    """
    if not raw_identifier:
        return ""
    normalized = re.sub(r'[\s\-\.\,\/]', '', raw_identifier)
    return normalized.upper()


class IdentifierHasher:
    """Deterministic SHA-256 hashing of sensitive identifiers."""

    def __init__(self, normalize: bool = False):
        self.normalize = normalize

    def hash(self, raw_identifier: str) -> str:
        """
        Hash a raw identifier.

        Args:
            raw_identifier: Plaintext identifier (e.g. a national ID number)

        Returns:
            Lowercase 64-character hex digest
        """
        value = normalize_identifier(raw_identifier) if self.normalize else raw_identifier
        return hashlib.sha256(value.encode('utf-8')).hexdigest()
