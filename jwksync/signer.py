"""
jwksync Token Signer.

Signs payloads with a provisioned private key, producing compact JWS
tokens whose header carries the kid the published JWKS resolves.
"""

import json
from typing import Any, Dict, Mapping, Optional, Union

from jwcrypto import jwk, jws
from jwcrypto.common import json_encode

from jwksync.errors import KeyFormatError
from jwksync.naming import private_key_entry
from jwksync.store import PartitionedKeyStore

_EC_ALGS = {"P-256": "ES256", "P-384": "ES384", "P-521": "ES512"}


def default_alg(key: jwk.JWK) -> str:
    """Pick the JWS algorithm matching a key's type and curve."""
    kty = key["kty"]
    if kty == "RSA":
        return "RS256"
    if kty == "EC" and key.get("crv") in _EC_ALGS:
        return _EC_ALGS[key["crv"]]
    raise KeyFormatError(f"No signing algorithm for key type {kty} {key.get('crv', '')}".strip())


class TokenSigner:
    """
    Signs payloads with a PKCS8 private key.

    Example:
        >>> signer = TokenSigner(keypair.private_key, keypair.kid)
        >>> token = signer.sign({"sub": "test"})
    """

    def __init__(self, private_key_pem: str, kid: str, alg: Optional[str] = None):
        """
        Initialize the signer.

        Args:
            private_key_pem: PKCS8 PEM private key.
            kid: Key identifier placed in the token header.
            alg: JWS algorithm; derived from the key when omitted.

        Raises:
            KeyFormatError: If the PEM is not a usable private key.
        """
        if not kid:
            raise ValueError("TokenSigner requires a 'kid'")
        try:
            self._key = jwk.JWK.from_pem(private_key_pem.encode("ascii"))
        except Exception as e:
            raise KeyFormatError(f"Invalid private key for {kid}: {e}") from e
        if not self._key.has_private:
            raise KeyFormatError(f"Key for {kid} is not a private key")

        self.kid = kid
        self.alg = alg or default_alg(self._key)

    @classmethod
    async def from_store(
        cls, store: PartitionedKeyStore, kid: str, alg: Optional[str] = None
    ) -> "TokenSigner":
        """Load ``private__<kid>`` from the secrets partition."""
        private_key = await store.get_secret(private_key_entry(kid))
        if private_key is None:
            raise KeyFormatError(f"No private key stored for {kid}")
        return cls(private_key, kid, alg=alg)

    def sign(
        self, payload: Union[Mapping[str, Any], str], headers: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Sign a payload and return the compact serialization.

        Args:
            payload: A JSON object (serialized compactly) or a raw string.
            headers: Extra protected header members.
        """
        if isinstance(payload, str):
            content = payload
        else:
            content = json.dumps(payload, separators=(",", ":"))

        protected = {"alg": self.alg, "kid": self.kid, "typ": "JWT"}
        if headers:
            protected.update(headers)

        token = jws.JWS(content)
        token.add_signature(self._key, None, json_encode(protected), None)
        return token.serialize(compact=True)
