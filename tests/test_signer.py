"""
Unit tests for TokenSigner.
"""

import json

import pytest

from jwksync import KeyFamily, TokenSigner, generate_keypair
from jwksync.errors import KeyFormatError
from jwksync.validator import b64url_decode


def header_of(token: str) -> dict:
    return json.loads(b64url_decode(token.split(".")[0]))


class TestTokenSigner:
    """Tests for TokenSigner."""

    def test_rsa_header(self, rsa_keypair, sample_payload):
        token = TokenSigner(rsa_keypair.private_key, rsa_keypair.kid).sign(sample_payload)

        assert token.count(".") == 2
        assert header_of(token) == {"alg": "RS256", "kid": rsa_keypair.kid, "typ": "JWT"}

    def test_ec_alg_follows_curve(self):
        keypair = generate_keypair(KeyFamily.EC, ec_curve="P-384")
        token = TokenSigner(keypair.private_key, keypair.kid).sign("hello")
        assert header_of(token)["alg"] == "ES384"

    def test_compact_payload(self, ec_keypair, sample_payload):
        token = TokenSigner(ec_keypair.private_key, ec_keypair.kid).sign(sample_payload)
        assert b64url_decode(token.split(".")[1]) == b'{"sub":"test"}'

    def test_extra_headers(self, ec_keypair):
        token = TokenSigner(ec_keypair.private_key, ec_keypair.kid).sign("x", headers={"cty": "text"})
        assert header_of(token)["cty"] == "text"

    def test_public_key_rejected(self, ec_keypair):
        with pytest.raises(KeyFormatError):
            TokenSigner(ec_keypair.public_key, ec_keypair.kid)

    def test_garbage_rejected(self):
        with pytest.raises(KeyFormatError):
            TokenSigner("not a key", "ec__x")

    def test_requires_kid(self, ec_keypair):
        with pytest.raises(ValueError):
            TokenSigner(ec_keypair.private_key, "")

    @pytest.mark.asyncio
    async def test_from_store(self, manager, store):
        keypair = await manager.rotate(KeyFamily.EC)
        signer = await TokenSigner.from_store(store, keypair.kid)
        assert header_of(signer.sign("x"))["kid"] == keypair.kid

    @pytest.mark.asyncio
    async def test_from_store_unknown_kid(self, store):
        with pytest.raises(KeyFormatError):
            await TokenSigner.from_store(store, "ec__missing0000000000000")
