"""
Stored entry naming for jwksync.

Every entry the key store holds is named ``<kind>__<subject>`` (or just
``jwks`` for the published key set). The layout is shared with gateway
policies that read the store directly, so it must not drift:

    private__<kid>          secrets partition, PKCS8 PEM
    public__<kid>           non-secrets partition, SPKI PEM
    currentKid__<family>    non-secrets partition, bare kid
    kidHistory__<family>    non-secrets partition, JSON list of {kid, rotated_at}
    rotation__<kid>         non-secrets partition, JSON rotation checkpoint
    jwks                    non-secrets partition, {"keys": [...]}

Nothing outside this module should build or split these strings.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from jwksync.keys import KeyFamily

SEPARATOR = "__"
JWKS_ENTRY = "jwks"


class EntryKind(str, Enum):
    """Kinds of stored entries, valued by their name prefix."""

    PRIVATE = "private"
    PUBLIC = "public"
    CURRENT_KID = "currentKid"
    KID_HISTORY = "kidHistory"
    ROTATION = "rotation"
    JWKS = "jwks"


# Kinds whose subject is a family rather than a kid
_FAMILY_KINDS = (EntryKind.CURRENT_KID, EntryKind.KID_HISTORY)


@dataclass(frozen=True)
class EntryName:
    """A decoded store entry name."""

    kind: EntryKind
    subject: Optional[str] = None

    def encode(self) -> str:
        """Return the stored name for this entry."""
        if self.kind is EntryKind.JWKS:
            return JWKS_ENTRY
        if not self.subject:
            raise ValueError(f"Entry kind {self.kind.value} requires a subject")
        return f"{self.kind.value}{SEPARATOR}{self.subject}"

    @property
    def kid(self) -> Optional[str]:
        """The kid for key-scoped entries, None otherwise."""
        if self.kind in _FAMILY_KINDS or self.kind is EntryKind.JWKS:
            return None
        return self.subject

    @property
    def family(self) -> Optional[KeyFamily]:
        """The key family this entry belongs to, if it can be determined."""
        if self.subject is None:
            return None
        if self.kind in _FAMILY_KINDS:
            return KeyFamily.parse(self.subject, strict=False)
        return family_of_kid(self.subject)

    @classmethod
    def decode(cls, name: str) -> Optional["EntryName"]:
        """
        Decode a stored entry name.

        Returns:
            The EntryName, or None if ``name`` does not follow the layout.
        """
        if name == JWKS_ENTRY:
            return cls(EntryKind.JWKS)

        prefix, sep, subject = name.partition(SEPARATOR)
        if not sep or not subject:
            return None
        try:
            kind = EntryKind(prefix)
        except ValueError:
            return None
        if kind is EntryKind.JWKS:
            return None
        return cls(kind, subject)


def _family_value(family: Union[KeyFamily, str]) -> str:
    return KeyFamily.parse(family).value


def private_key_entry(kid: str) -> str:
    return EntryName(EntryKind.PRIVATE, kid).encode()


def public_key_entry(kid: str) -> str:
    return EntryName(EntryKind.PUBLIC, kid).encode()


def current_kid_entry(family: Union[KeyFamily, str]) -> str:
    return EntryName(EntryKind.CURRENT_KID, _family_value(family)).encode()


def kid_history_entry(family: Union[KeyFamily, str]) -> str:
    return EntryName(EntryKind.KID_HISTORY, _family_value(family)).encode()


def rotation_entry(kid: str) -> str:
    return EntryName(EntryKind.ROTATION, kid).encode()


def family_of_kid(kid: str) -> Optional[KeyFamily]:
    """Return the family encoded in a kid's prefix, or None."""
    prefix, sep, _ = kid.partition(SEPARATOR)
    if not sep:
        return None
    return KeyFamily.parse(prefix, strict=False)
