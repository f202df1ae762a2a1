"""
Key generation and kid allocation.

Produces fresh RSA or EC signing keypairs as PEM text (SPKI public,
PKCS8 private) and mints the ``<family>__<token>`` identifiers that join
stored key material to its published JWK.
"""

import logging
import secrets
import string
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from jwksync.errors import KeyGenerationError

logger = logging.getLogger(__name__)

BASE36_ALPHABET = string.digits + string.ascii_lowercase
DEFAULT_RSA_BITS = 2048
DEFAULT_EC_CURVE = "P-256"
DEFAULT_KID_LENGTH = 18

_CURVES = {
    "P-256": ec.SECP256R1,
    "secp256r1": ec.SECP256R1,
    "prime256v1": ec.SECP256R1,
    "P-384": ec.SECP384R1,
    "secp384r1": ec.SECP384R1,
    "P-521": ec.SECP521R1,
    "secp521r1": ec.SECP521R1,
}


class KeyFamily(str, Enum):
    """Asymmetric algorithm families a keypair can belong to."""

    RSA = "rsa"
    EC = "ec"

    @classmethod
    def parse(cls, value: Union["KeyFamily", str], strict: bool = True) -> Optional["KeyFamily"]:
        """
        Parse a family from its name, case-insensitively.

        Args:
            value: A KeyFamily or a string such as "RSA", "rsa", "ec".
            strict: Raise ValueError on unknown names instead of returning None.
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            if strict:
                raise ValueError(f"Unknown key family: {value!r} (expected 'rsa' or 'ec')")
            return None


@dataclass(frozen=True)
class KeyPair:
    """
    A freshly issued signing keypair.

    Attributes:
        kid: Key identifier, ``<family>__<token>``.
        family: Algorithm family.
        public_key: SPKI PEM text.
        private_key: PKCS8 PEM text. Belongs in the secrets partition only.
    """

    kid: str
    family: KeyFamily
    public_key: str
    private_key: str = field(repr=False)


def resolve_curve(name: str) -> ec.EllipticCurve:
    """Return a curve instance for a JOSE or OpenSSL curve name."""
    try:
        return _CURVES[name]()
    except KeyError:
        raise KeyGenerationError(
            f"Unsupported EC curve: {name!r} (supported: {', '.join(sorted(_CURVES))})"
        )


def allocate_kid(family: Union[KeyFamily, str], length: int = DEFAULT_KID_LENGTH) -> str:
    """
    Allocate a key identifier for ``family``.

    The store is not consulted: uniqueness rests on ``length`` base36
    characters drawn from the system CSPRNG (about 93 bits at 18 chars).

    Args:
        family: The key family; its value becomes the kid prefix.
        length: Token length, at least 18.

    Returns:
        A kid such as ``rsa__k3v9q0x1m2c8a7d4zz``.
    """
    if length < DEFAULT_KID_LENGTH:
        raise ValueError(f"kid token length must be at least {DEFAULT_KID_LENGTH}")
    family = KeyFamily.parse(family)
    token = "".join(secrets.choice(BASE36_ALPHABET) for _ in range(length))
    return f"{family.value}__{token}"


def generate_keypair(
    family: Union[KeyFamily, str],
    kid: Optional[str] = None,
    rsa_bits: int = DEFAULT_RSA_BITS,
    ec_curve: str = DEFAULT_EC_CURVE,
) -> KeyPair:
    """
    Generate a new keypair.

    Args:
        family: RSA or EC.
        kid: Identifier to assign; a fresh one is allocated when omitted.
        rsa_bits: RSA modulus length.
        ec_curve: EC named curve (P-256, P-384, P-521 or OpenSSL aliases).

    Returns:
        The KeyPair with PEM-encoded SPKI public and PKCS8 private keys.

    Raises:
        KeyGenerationError: If the parameters are rejected.
    """
    family = KeyFamily.parse(family)

    try:
        if family is KeyFamily.RSA:
            private_key = rsa.generate_private_key(public_exponent=65537, key_size=rsa_bits)
        else:
            private_key = ec.generate_private_key(resolve_curve(ec_curve))
    except KeyGenerationError:
        raise
    except (ValueError, TypeError) as e:
        raise KeyGenerationError(f"Cannot generate {family.value} key: {e}") from e

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")

    kid = kid or allocate_kid(family)
    logger.debug(f"Generated {family.value} keypair {kid}")
    return KeyPair(kid=kid, family=family, public_key=public_pem, private_key=private_pem)
