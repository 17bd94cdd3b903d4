"""
Unit tests for identifier hashing.
"""

import hashlib
import re

import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from protection.hashing import IdentifierHasher, normalize_identifier


HEX_64 = re.compile(r'^[0-9a-f]{64}$')


class TestIdentifierHasher:
    """Tests for deterministic SHA-256 hashing."""

    def test_same_input_same_hash(self):
        """Hashing is deterministic across instances."""
        assert IdentifierHasher().hash("123456789") == IdentifierHasher().hash("123456789")

    def test_distinct_inputs_distinct_hashes(self):
        """Different identifiers never share a hash."""
        hasher = IdentifierHasher()
        hashes = {hasher.hash(v) for v in ["123456789", "123456788", "AB123", "ab123", " 123456789"]}
        assert len(hashes) == 5

    def test_lowercase_hex_format(self):
        """Digest is 64 lowercase hex characters."""
        assert HEX_64.match(IdentifierHasher().hash("ID-0001"))

    def test_matches_sha256(self):
        """Digest is plain unsalted SHA-256 of the UTF-8 bytes."""
        expected = hashlib.sha256("Omang 4411".encode('utf-8')).hexdigest()
        assert IdentifierHasher().hash("Omang 4411") == expected

    def test_empty_string_hashes_normally(self):
        """The empty string is a valid input."""
        assert IdentifierHasher().hash("") == hashlib.sha256(b"").hexdigest()

    def test_unicode_input(self):
        """Non-ASCII identifiers hash without error."""
        assert HEX_64.match(IdentifierHasher().hash("Müller-Ñandú"))

    def test_no_normalization_by_default(self):
        """Formatting differences produce different hashes unless normalization is on."""
        hasher = IdentifierHasher()
        assert hasher.hash("12-34") != hasher.hash("1234")

    def test_normalization_correlates_formats(self):
        """With normalization, separators and case are ignored."""
        hasher = IdentifierHasher(normalize=True)
        assert hasher.hash("ab-12 34") == hasher.hash("AB1234")
        assert hasher.hash("ab-12 34") == IdentifierHasher().hash("AB1234")


class TestNormalizeIdentifier:
    """Tests for identifier normalization."""

    @pytest.mark.parametrize("raw,expected", [
        ("pa-123-456-78", "PA12345678"),
        ("PA 123 456 78", "PA12345678"),
        ("12.345.678/9", "123456789"),
        ("", ""),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_identifier(raw) == expected

    def test_normalize_none(self):
        """None normalizes to the empty string."""
        assert normalize_identifier(None) == ""
