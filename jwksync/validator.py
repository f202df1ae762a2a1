"""
jwksync Token Validator.

Verifies compact-serialized signed tokens against a JWKS fetched over
HTTP. Each validation performs exactly one fetch; caching the key set
across validations is left to the caller.
"""

import base64
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import httpx
from jwcrypto import jwk, jws
from jwcrypto.common import JWException

from jwksync.errors import (
    FetchError,
    JWKSCorruptError,
    KeyNotFoundError,
    SignatureInvalidError,
    TokenFormatError,
    ValidationError,
)
from jwksync.jwks import parse_jwks

logger = logging.getLogger(__name__)

SIGNED_TOKEN_PATTERN = re.compile(r"^([^.]+)\.([^.]+)\.([^.]+)$")


@dataclass
class ValidationResult:
    """Outcome of a non-raising validation."""

    is_valid: bool
    payload: Any = None
    error: Optional[ValidationError] = None

    @property
    def reason(self) -> Optional[str]:
        return str(self.error) if self.error else None


def b64url_decode(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def is_canonical_segment(segment: str) -> bool:
    """
    Check that a segment is the one base64url encoding of its bytes.

    Decoding ignores the unused low bits of the last character and skips
    characters outside the alphabet, so several strings decode to the same
    bytes. Only the canonical one is the string that was signed.
    """
    try:
        return b64url_encode(b64url_decode(segment)) == segment
    except ValueError:
        return False


def split_token(token: str) -> re.Match:
    """Check the three-segment structure and return the match."""
    match = SIGNED_TOKEN_PATTERN.match(token or "")
    if not match:
        raise TokenFormatError("Token is not a signed JWT (header.payload.signature)")
    return match


def decode_header(segment: str) -> dict:
    """Decode the protected header; it must name a ``kid`` and an ``alg``."""
    try:
        header = json.loads(b64url_decode(segment))
    except (ValueError, UnicodeDecodeError) as e:
        raise TokenFormatError(f"Token header is not base64url JSON: {e}") from e
    if not isinstance(header, dict):
        raise TokenFormatError("Token header is not a JSON object")
    for name in ("kid", "alg"):
        if not isinstance(header.get(name), str) or not header[name]:
            raise TokenFormatError(f"Token header has no '{name}'")
    return header


def find_key(jwks: Mapping[str, Any], kid: str) -> dict:
    for record in jwks.get("keys", []):
        if record.get("kid") == kid:
            return record
    raise KeyNotFoundError(f"Cannot find a matching key for {kid}")


def verify_with_jwks(token: str, jwks: Mapping[str, Any]) -> Any:
    """
    Verify ``token`` against an already fetched key set.

    Returns:
        The payload, parsed as JSON when possible, otherwise as text.
    """
    match = split_token(token)
    header = decode_header(match.group(1))
    record = find_key(jwks, header["kid"])

    for segment in match.groups():
        if not is_canonical_segment(segment):
            raise SignatureInvalidError(
                f"Token for {header['kid']} has a non-canonical base64url segment"
            )

    try:
        key = jwk.JWK(**record)
        verifier = jws.JWS()
        verifier.deserialize(token)
        verifier.verify(key, alg=header["alg"])
    except (JWException, ValueError, TypeError) as e:
        raise SignatureInvalidError(f"Signature verification failed for {header['kid']}: {e}") from e

    content = verifier.payload
    text = content.decode("utf-8") if isinstance(content, bytes) else content
    try:
        return json.loads(text)
    except ValueError:
        return text


class TokenValidator:
    """
    Validates tokens against a remote JWKS endpoint.

    Example:
        >>> async with TokenValidator() as validator:
        ...     payload = await validator.validate(token, "https://issuer/.well-known/jwks.json")
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, http_timeout: float = 10.0):
        """
        Initialize the validator.

        Args:
            client: HTTP client to use; one is created per context otherwise.
            http_timeout: Timeout for JWKS requests when creating a client.
        """
        self._http_client = client
        self._owns_client = False
        self._http_timeout = http_timeout

    async def __aenter__(self):
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._http_timeout)
            self._owns_client = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None
            self._owns_client = False

    async def fetch_jwks(self, endpoint: str) -> dict:
        """GET the key set; any transport, status or format problem is a FetchError."""
        client = self._http_client or httpx.AsyncClient(timeout=self._http_timeout)
        try:
            try:
                response = await client.get(endpoint, headers={"accept": "application/json"})
            finally:
                if not self._http_client:
                    await client.aclose()
        except httpx.HTTPError as e:
            raise FetchError(f"GET {endpoint} failed: {e}") from e

        logger.debug(f"GET {endpoint} ==> {response.status_code}")
        if not response.is_success:
            raise FetchError(f"GET {endpoint} returned {response.status_code}")
        try:
            return parse_jwks(response.json())
        except (ValueError, JWKSCorruptError) as e:
            raise FetchError(f"{endpoint} did not return a JWKS: {e}") from e

    async def validate(self, token: str, endpoint: str) -> Any:
        """
        Validate ``token`` against the JWKS published at ``endpoint``.

        Returns:
            The decoded payload.

        Raises:
            TokenFormatError, FetchError, KeyNotFoundError, SignatureInvalidError
        """
        split_token(token)
        jwks = await self.fetch_jwks(endpoint)
        payload = verify_with_jwks(token, jwks)
        logger.info("Signature verified")
        return payload

    async def check(self, token: str, endpoint: str) -> ValidationResult:
        """Like ``validate`` but reports rejections instead of raising them."""
        try:
            payload = await self.validate(token, endpoint)
        except ValidationError as e:
            logger.info(f"Token rejected: {e}")
            return ValidationResult(is_valid=False, error=e)
        return ValidationResult(is_valid=True, payload=payload)
