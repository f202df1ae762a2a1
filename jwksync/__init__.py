"""
jwksync - asymmetric key lifecycle and JWKS publishing.

Generates signing keypairs, stores private and public halves in separate
partitions of a key-value store, tracks the current key per algorithm
family, publishes the aggregated JSON Web Key Set, and validates tokens
against a fetched key set.
"""

__version__ = "0.4.0"

from .errors import (
    JWKSyncError,
    KeyGenerationError,
    StoreError,
    StoreReadError,
    StoreWriteError,
    KeyFormatError,
    JWKSCorruptError,
    RotationError,
    ValidationError,
    TokenFormatError,
    FetchError,
    KeyNotFoundError,
    SignatureInvalidError,
)
from .keys import KeyFamily, KeyPair, allocate_kid, generate_keypair
from .store import (
    KeyStoreInterface,
    MemoryKeyStore,
    RedisKeyStore,
    HTTPKeyStore,
    PartitionedKeyStore,
    RemovalResult,
)
from .rotation import KeyRotationManager, RotationStage, CurrentKid, ProvisionResult
from .maintenance import PublicKeyMaintainer, ReconciliationReport
from .signer import TokenSigner
from .validator import TokenValidator, ValidationResult


def __getattr__(name):
    """Lazy loading of the HTTP endpoint (requires the 'server' extra)."""
    if name == "create_app":
        from .server import create_app

        return create_app
    raise AttributeError(f"module 'jwksync' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Errors
    "JWKSyncError",
    "KeyGenerationError",
    "StoreError",
    "StoreReadError",
    "StoreWriteError",
    "KeyFormatError",
    "JWKSCorruptError",
    "RotationError",
    "ValidationError",
    "TokenFormatError",
    "FetchError",
    "KeyNotFoundError",
    "SignatureInvalidError",
    # Keys
    "KeyFamily",
    "KeyPair",
    "allocate_kid",
    "generate_keypair",
    # Stores
    "KeyStoreInterface",
    "MemoryKeyStore",
    "RedisKeyStore",
    "HTTPKeyStore",
    "PartitionedKeyStore",
    "RemovalResult",
    # Lifecycle
    "KeyRotationManager",
    "RotationStage",
    "CurrentKid",
    "ProvisionResult",
    "PublicKeyMaintainer",
    "ReconciliationReport",
    # Tokens
    "TokenSigner",
    "TokenValidator",
    "ValidationResult",
    # Endpoint (lazy loaded)
    "create_app",
]
