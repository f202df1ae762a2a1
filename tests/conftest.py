"""
Shared pytest fixtures for jwksync tests.
"""

import json

import httpx
import pytest
import pytest_asyncio

from jwksync import generate_keypair, KeyFamily, KeyPair
from jwksync.jwks import dumps_jwks, to_jwk
from jwksync.rotation import KeyRotationManager
from jwksync.store import MemoryKeyStore, PartitionedKeyStore


@pytest.fixture(scope="session")
def rsa_keypair() -> KeyPair:
    """An RSA-2048 keypair with the kid used throughout the scenarios."""
    return generate_keypair(KeyFamily.RSA, kid="rsa__abc123xyz456", rsa_bits=2048)


@pytest.fixture(scope="session")
def ec_keypair() -> KeyPair:
    """A P-256 keypair."""
    return generate_keypair(KeyFamily.EC, kid="ec__0123456789abcdefgh")


@pytest.fixture
def memory_backend() -> MemoryKeyStore:
    return MemoryKeyStore()


@pytest_asyncio.fixture
async def store(memory_backend) -> PartitionedKeyStore:
    """A memory-backed store with both partitions created."""
    partitioned = PartitionedKeyStore(memory_backend)
    await partitioned.ensure()
    return partitioned


@pytest.fixture
def manager(store) -> KeyRotationManager:
    return KeyRotationManager(store)


@pytest.fixture
def sample_payload() -> dict:
    return {"sub": "test"}


@pytest.fixture
def jwks_transport():
    """Build a transport serving a fixed JWKS document for every GET."""

    def build(jwks_document, status_code: int = 200) -> httpx.MockTransport:
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if isinstance(jwks_document, (dict, list)):
                return httpx.Response(status_code, json=jwks_document)
            return httpx.Response(status_code, text=jwks_document)

        transport = httpx.MockTransport(handler)
        transport.requests = requests
        return transport

    return build


@pytest.fixture
def jwks_for():
    """Build a JWKS document from keypairs."""

    def build(*keypairs: KeyPair) -> dict:
        return json.loads(dumps_jwks({"keys": [to_jwk(k.public_key, k.kid) for k in keypairs]}))

    return build


class FakeRedis:
    """Minimal async stand-in for the redis.asyncio hash commands the store uses."""

    def __init__(self):
        self.hashes = {}

    async def hget(self, name, key):
        value = self.hashes.get(name, {}).get(key)
        return value.encode("utf-8") if value is not None else None

    async def hset(self, name, key, value):
        self.hashes.setdefault(name, {})[key] = value
        return 1

    async def hgetall(self, name):
        return {k.encode("utf-8"): v.encode("utf-8") for k, v in self.hashes.get(name, {}).items()}

    async def hdel(self, name, key):
        return 1 if self.hashes.get(name, {}).pop(key, None) is not None else 0


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()
