"""
jwksync error taxonomy.

Key lifecycle errors (generation, storage, formatting, rotation) and
token validation errors share a single root so callers can catch
``JWKSyncError`` at the outermost layer.
"""

from typing import Optional


class JWKSyncError(Exception):
    """Base class for all jwksync errors."""


# =============================================================================
# Key lifecycle
# =============================================================================


class KeyGenerationError(JWKSyncError):
    """The cryptographic primitive rejected the requested key parameters."""


class StoreError(JWKSyncError):
    """Base class for key store failures."""

    def __init__(self, message: str, partition: Optional[str] = None, key: Optional[str] = None):
        super().__init__(message)
        self.partition = partition
        self.key = key


class StoreReadError(StoreError):
    """The store could not be read, or the partition does not exist."""


class StoreWriteError(StoreError):
    """The store rejected a write."""


class KeyFormatError(JWKSyncError):
    """A value is not a recognized PEM public key."""


class JWKSCorruptError(JWKSyncError):
    """A stored JWKS document could not be parsed."""


class RotationError(JWKSyncError):
    """
    A rotation step failed.

    Attributes:
        kid: The kid allocated for the failed rotation (None if generation failed).
        family: The key family being rotated.
        stage: The last stage that completed before the failure.
        cause: The underlying exception.
    """

    def __init__(self, kid: Optional[str], family: str, stage, cause: BaseException):
        self.kid = kid
        self.family = family
        self.stage = stage
        self.cause = cause
        stage_name = stage.value if stage is not None else "none"
        super().__init__(
            f"rotation of {family} key {kid or '<unallocated>'} failed after stage "
            f"'{stage_name}': {cause}"
        )


# =============================================================================
# Token validation
# =============================================================================


class ValidationError(JWKSyncError):
    """Base class for token validation rejections."""


class TokenFormatError(ValidationError):
    """The token is not a three-segment compact JWS with a usable header."""


class FetchError(ValidationError):
    """The JWKS document could not be fetched or parsed."""


class KeyNotFoundError(ValidationError):
    """No key in the JWKS matches the token's kid."""


class SignatureInvalidError(ValidationError):
    """The token signature does not verify against the matched key."""
