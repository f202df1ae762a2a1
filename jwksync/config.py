# jwksync/config.py
"""
Centralized configuration for jwksync.

All configurable values are read from environment variables with sensible
defaults, so the same tooling can point at different environments without
code changes. CLI flags override these values.

Usage:
    from jwksync.config import SECRETS_PARTITION, NONSECRETS_PARTITION

Environment Variables:
    JWKSYNC_SECRETS_PARTITION: Encrypted partition for private keys (default: secrets)
    JWKSYNC_NONSECRETS_PARTITION: Partition for public keys, pointers, JWKS (default: settings)
    JWKSYNC_STORE: Store backend, one of memory, redis, http (default: memory)
"""

import os
from typing import Final, Optional

# =============================================================================
# Partitions
# =============================================================================

SECRETS_PARTITION: Final[str] = os.getenv("JWKSYNC_SECRETS_PARTITION", "secrets")

NONSECRETS_PARTITION: Final[str] = os.getenv("JWKSYNC_NONSECRETS_PARTITION", "settings")

# =============================================================================
# Key Generation
# =============================================================================

RSA_BITS: Final[int] = int(os.getenv("JWKSYNC_RSA_BITS", "2048"))

EC_CURVE: Final[str] = os.getenv("JWKSYNC_EC_CURVE", "P-256")

KID_LENGTH: Final[int] = int(os.getenv("JWKSYNC_KID_LENGTH", "18"))

# =============================================================================
# Store Backends
# =============================================================================

# memory | redis | http
STORE_BACKEND: Final[str] = os.getenv("JWKSYNC_STORE", "memory")

REDIS_URL: Final[str] = os.getenv("JWKSYNC_REDIS_URL", "redis://localhost:6379/0")

# Fernet key sealing values in encrypted partitions of the Redis store
FERNET_KEY: Final[Optional[str]] = os.getenv("JWKSYNC_FERNET_KEY")

# Key-value map management API (Apigee-style)
KVM_BASE_URL: Final[str] = os.getenv(
    "JWKSYNC_KVM_BASE_URL",
    "https://api.enterprise.apigee.com/v1/organizations/example"
)

KVM_ENV: Final[str] = os.getenv("JWKSYNC_KVM_ENV", "test")

# Bearer token for the management API, obtained out of band
KVM_TOKEN: Final[Optional[str]] = os.getenv("JWKSYNC_KVM_TOKEN")

HTTP_TIMEOUT: Final[float] = float(os.getenv("JWKSYNC_HTTP_TIMEOUT", "10.0"))

# =============================================================================
# JWKS Endpoint
# =============================================================================

SERVER_HOST: Final[str] = os.getenv("JWKSYNC_SERVER_HOST", "127.0.0.1")

SERVER_PORT: Final[int] = int(os.getenv("JWKSYNC_SERVER_PORT", "8080"))


# =============================================================================
# Configuration Summary (for debugging)
# =============================================================================

def print_config() -> None:
    """Print current configuration. Secrets are reported as set/unset only."""
    print("jwksync configuration:")
    print(f"  SECRETS_PARTITION:    {SECRETS_PARTITION}")
    print(f"  NONSECRETS_PARTITION: {NONSECRETS_PARTITION}")
    print(f"  RSA_BITS:             {RSA_BITS}")
    print(f"  EC_CURVE:             {EC_CURVE}")
    print(f"  KID_LENGTH:           {KID_LENGTH}")
    print(f"  STORE_BACKEND:        {STORE_BACKEND}")
    print(f"  REDIS_URL:            {REDIS_URL}")
    print(f"  FERNET_KEY:           {'set' if FERNET_KEY else 'unset'}")
    print(f"  KVM_BASE_URL:         {KVM_BASE_URL}")
    print(f"  KVM_ENV:              {KVM_ENV}")
    print(f"  KVM_TOKEN:            {'set' if KVM_TOKEN else 'unset'}")
    print(f"  HTTP_TIMEOUT:         {HTTP_TIMEOUT}")
    print(f"  SERVER:               {SERVER_HOST}:{SERVER_PORT}")


if __name__ == "__main__":
    print_config()
