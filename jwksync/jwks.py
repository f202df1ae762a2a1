"""
JWK / JWKS construction.

Converts stored PEM public keys into JWK records and maintains the
aggregated ``{"keys": [...]}`` document published for verifiers.
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from jwcrypto import jwk

from jwksync.errors import JWKSCorruptError, KeyFormatError
from jwksync.naming import EntryKind, EntryName

logger = logging.getLogger(__name__)

PEM_PUBLIC_KEY_HEADER = "-----BEGIN PUBLIC KEY-----"

# JWK members that carry private key material (RFC 7518 section 6)
PRIVATE_MEMBERS = frozenset({"d", "p", "q", "dp", "dq", "qi", "oth", "k"})

JWKS = Dict[str, List[Dict[str, Any]]]


def empty_jwks() -> JWKS:
    return {"keys": []}


def to_jwk(public_key_pem: Union[str, bytes], kid: str) -> Dict[str, Any]:
    """
    Convert a PEM public key into a signing JWK.

    Args:
        public_key_pem: SPKI PEM text.
        kid: Identifier to assign.

    Returns:
        ``{"kty", "kid", "use": "sig", ...public parameters}``

    Raises:
        KeyFormatError: If the input is not a PEM public key.
    """
    data = public_key_pem.encode("ascii") if isinstance(public_key_pem, str) else public_key_pem
    try:
        key = jwk.JWK.from_pem(data)
    except Exception as e:
        raise KeyFormatError(f"Not a recognized PEM public key for {kid}: {e}") from e

    if key.has_private:
        raise KeyFormatError(f"Refusing to publish private key material for {kid}")

    public = key.export_public(as_dict=True)
    record = {"kty": public["kty"], "kid": kid, "use": "sig"}
    for name, value in public.items():
        if name not in ("kty", "kid", "use"):
            record[name] = value
    return record


def parse_jwks(raw: Union[str, bytes, Mapping, None]) -> JWKS:
    """
    Parse a stored JWKS document.

    A bare JSON list is accepted as the key list, since earlier tooling
    wrote the rebuilt set without the ``keys`` wrapper.

    Raises:
        JWKSCorruptError: If the document is not a usable key set.
    """
    if raw is None:
        raise JWKSCorruptError("No JWKS document")

    if isinstance(raw, (str, bytes)):
        try:
            document = json.loads(raw)
        except ValueError as e:
            raise JWKSCorruptError(f"JWKS is not valid JSON: {e}") from e
    else:
        document = raw

    if isinstance(document, list):
        keys = document
    elif isinstance(document, Mapping):
        keys = document.get("keys")
    else:
        raise JWKSCorruptError(f"JWKS must be an object, got {type(document).__name__}")

    if not isinstance(keys, list) or not all(isinstance(k, Mapping) for k in keys):
        raise JWKSCorruptError("JWKS 'keys' must be a list of objects")
    return {"keys": [dict(k) for k in keys]}


def _check_public(record: Mapping[str, Any]) -> None:
    leaked = PRIVATE_MEMBERS.intersection(record)
    if leaked:
        raise KeyFormatError(
            f"JWK {record.get('kid')} carries private members: {', '.join(sorted(leaked))}"
        )


def merge(existing: Union[str, bytes, Mapping, None], new_jwk: Mapping[str, Any]) -> JWKS:
    """
    Append ``new_jwk`` to an existing key set.

    A missing or unparsable ``existing`` document is treated as empty and
    the anomaly is logged. An entry already holding the same kid is
    replaced in place, so kids stay unique and order is preserved.

    Raises:
        KeyFormatError: If ``new_jwk`` has no kid or carries private members.
    """
    if not new_jwk.get("kid"):
        raise KeyFormatError("JWK to publish has no kid")
    _check_public(new_jwk)

    if existing is None:
        logger.warning("No existing JWKS document, starting a new key set")
        jwks = empty_jwks()
    else:
        try:
            jwks = parse_jwks(existing)
        except JWKSCorruptError as e:
            logger.warning(f"Existing JWKS is corrupt, starting a new key set: {e}")
            jwks = empty_jwks()

    record = dict(new_jwk)
    for index, current in enumerate(jwks["keys"]):
        if current.get("kid") == record["kid"]:
            logger.warning(f"JWKS already holds {record['kid']}, replacing it")
            jwks["keys"][index] = record
            break
    else:
        jwks["keys"].append(record)
    return jwks


def public_key_jwks(entries: Mapping[str, str]) -> List[Dict[str, Any]]:
    """
    Convert stored ``public__<kid>`` entries into JWKs, in entry order.

    Entries whose value is not a PEM public key are skipped with a warning.
    """
    records = []
    for name, value in entries.items():
        decoded = EntryName.decode(name)
        if decoded is None or decoded.kind is not EntryKind.PUBLIC:
            continue
        if not isinstance(value, str) or not value.startswith(PEM_PUBLIC_KEY_HEADER):
            logger.warning(f"Skipping {name}: value is not a PEM public key")
            continue
        try:
            records.append(to_jwk(value, decoded.kid))
        except KeyFormatError as e:
            logger.warning(f"Skipping {name}: {e}")
    return records


def rebuild(entries: Mapping[str, str], order: Optional[Iterable[str]] = None) -> JWKS:
    """
    Recompute the key set from every valid stored public key.

    Args:
        entries: Non-secrets partition entries (any names; only
            ``public__`` entries are considered).
        order: Kids to place first, in this order (typically the order of
            the currently published set). Remaining kids follow sorted.

    Returns:
        A JWKS whose serialization depends only on ``entries`` and ``order``.
    """
    by_kid = {record["kid"]: record for record in public_key_jwks(entries)}

    keys = []
    for kid in order or ():
        if kid in by_kid:
            keys.append(by_kid.pop(kid))
    keys.extend(by_kid[kid] for kid in sorted(by_kid))
    return {"keys": keys}


def kids(jwks: Mapping[str, Any]) -> List[str]:
    """Return the kids of a key set in order."""
    return [k.get("kid") for k in jwks.get("keys", [])]


def dumps_jwks(jwks: Mapping[str, Any]) -> str:
    """Serialize a key set for storage."""
    return json.dumps(jwks, separators=(",", ":"))
