"""
Unit tests for stored entry naming.
"""

import pytest

from jwksync.keys import KeyFamily
from jwksync.naming import (
    JWKS_ENTRY,
    EntryKind,
    EntryName,
    current_kid_entry,
    family_of_kid,
    kid_history_entry,
    private_key_entry,
    public_key_entry,
    rotation_entry,
)


class TestEncode:
    """Entry names follow the persisted layout exactly."""

    def test_key_entries(self):
        assert private_key_entry("rsa__abc123xyz456") == "private__rsa__abc123xyz456"
        assert public_key_entry("ec__abc") == "public__ec__abc"
        assert rotation_entry("ec__abc") == "rotation__ec__abc"

    def test_family_entries(self):
        assert current_kid_entry(KeyFamily.RSA) == "currentKid__rsa"
        assert current_kid_entry("EC") == "currentKid__ec"
        assert kid_history_entry("rsa") == "kidHistory__rsa"

    def test_jwks_entry(self):
        assert EntryName(EntryKind.JWKS).encode() == JWKS_ENTRY == "jwks"

    def test_missing_subject(self):
        """Kinds other than jwks need a subject."""
        with pytest.raises(ValueError):
            EntryName(EntryKind.PUBLIC).encode()


class TestDecode:
    """decode() is the inverse of encode()."""

    def test_kid_containing_separator(self):
        """The kid itself contains '__' and survives decoding."""
        name = EntryName.decode("public__rsa__abc123xyz456")
        assert name.kind is EntryKind.PUBLIC
        assert name.kid == "rsa__abc123xyz456"
        assert name.family is KeyFamily.RSA

    def test_current_kid(self):
        name = EntryName.decode("currentKid__ec")
        assert name.kind is EntryKind.CURRENT_KID
        assert name.kid is None
        assert name.family is KeyFamily.EC

    def test_jwks(self):
        assert EntryName.decode("jwks").kind is EntryKind.JWKS

    @pytest.mark.parametrize("name", ["settings", "foo__bar", "public__", "jwks__x", ""])
    def test_unknown_names(self, name):
        assert EntryName.decode(name) is None


class TestFamilyOfKid:
    def test_known(self):
        assert family_of_kid("ec__x") is KeyFamily.EC

    def test_unknown(self):
        assert family_of_kid("dsa__x") is None
        assert family_of_kid("plainkid") is None
