"""
jwksync Key Rotation.

Mints a new keypair for one family and publishes it without disturbing
existing keys. A rotation walks a fixed sequence of stages:

    generated -> private_written -> public_written -> pointer_updated -> published

The steps are not transactional. Every stage is logged, and once the
public key is written the progress is checkpointed to ``rotation__<kid>``
so reconciliation can find and repair rotations that stopped part way.
Concurrent rotations of the same family against one store race on the
pointer and on the JWKS read-modify-write; callers must serialize them.
"""

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Union

from jwksync import jwks as jwks_builder
from jwksync.errors import JWKSyncError, KeyGenerationError, RotationError
from jwksync.keys import (
    DEFAULT_EC_CURVE,
    DEFAULT_KID_LENGTH,
    DEFAULT_RSA_BITS,
    KeyFamily,
    KeyPair,
    allocate_kid,
    generate_keypair,
)
from jwksync.naming import (
    JWKS_ENTRY,
    current_kid_entry,
    kid_history_entry,
    private_key_entry,
    public_key_entry,
    rotation_entry,
)
from jwksync.store import PartitionedKeyStore, escape_newlines

logger = logging.getLogger(__name__)


class RotationStage(str, Enum):
    """Completed stages of a rotation, in order."""

    GENERATED = "generated"
    PRIVATE_WRITTEN = "private_written"
    PUBLIC_WRITTEN = "public_written"
    POINTER_UPDATED = "pointer_updated"
    PUBLISHED = "published"


@dataclass
class RotationCheckpoint:
    """
    Persisted progress of a rotation that has not been published yet.

    Attributes:
        kid: The kid being rotated in.
        family: Key family value ("rsa" / "ec").
        stage: Last completed stage value.
        updated_at: Unix timestamp of the last update.
        error: Failure message, if the rotation stopped on an error.
    """

    kid: str
    family: str
    stage: str
    updated_at: int
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "RotationCheckpoint":
        return cls(**data)


@dataclass(frozen=True)
class CurrentKid:
    """The active kid of a family, with the time it became active (if known)."""

    kid: str
    rotated_at: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "CurrentKid":
        return cls(kid=data["kid"], rotated_at=data.get("rotated_at"))


@dataclass
class ProvisionResult:
    """Outcome of provisioning one family."""

    family: KeyFamily
    keypair: Optional[KeyPair] = None
    error: Optional[RotationError] = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.error is None


def parse_history(raw: Optional[str]) -> List[CurrentKid]:
    """Parse a stored kid history; unparsable history is logged and treated as empty."""
    if not raw:
        return []
    try:
        return [CurrentKid.from_dict(item) for item in json.loads(raw)]
    except (ValueError, TypeError, KeyError) as e:
        logger.warning(f"Kid history is corrupt, starting a new one: {e}")
        return []


class KeyRotationManager:
    """
    Orchestrates generation, storage, pointer update and publication.

    Example:
        >>> store = PartitionedKeyStore(MemoryKeyStore())
        >>> manager = KeyRotationManager(store)
        >>> results = await manager.provision()
        >>> keypair = await manager.rotate(KeyFamily.EC)
        >>> (await manager.current_kid(KeyFamily.EC)).kid == keypair.kid
        True
    """

    def __init__(
        self,
        store: PartitionedKeyStore,
        rsa_bits: int = DEFAULT_RSA_BITS,
        ec_curve: str = DEFAULT_EC_CURVE,
        kid_length: int = DEFAULT_KID_LENGTH,
        check_kid_collisions: bool = False,
        max_kid_attempts: int = 5,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the rotation manager.

        Args:
            store: Partition-bound key store.
            rsa_bits: RSA modulus length for new RSA keys.
            ec_curve: Named curve for new EC keys.
            kid_length: Random token length of new kids.
            check_kid_collisions: Probe the store for ``public__<kid>`` before
                using a freshly allocated kid.
            max_kid_attempts: Allocation attempts when probing collisions.
            clock: Time source for timestamps.
        """
        self._store = store
        self._rsa_bits = rsa_bits
        self._ec_curve = ec_curve
        self._kid_length = kid_length
        self._check_collisions = check_kid_collisions
        self._max_kid_attempts = max_kid_attempts
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    async def _allocate(self, family: KeyFamily) -> str:
        if not self._check_collisions:
            return allocate_kid(family, self._kid_length)

        for _ in range(self._max_kid_attempts):
            kid = allocate_kid(family, self._kid_length)
            if await self._store.get_public(public_key_entry(kid)) is None:
                return kid
            logger.warning(f"Allocated kid {kid} already exists, allocating another")
        raise KeyGenerationError(
            f"Could not allocate an unused {family.value} kid in {self._max_kid_attempts} attempts"
        )

    async def _generate(self, family: KeyFamily) -> KeyPair:
        kid = await self._allocate(family)
        return generate_keypair(family, kid=kid, rsa_bits=self._rsa_bits, ec_curve=self._ec_curve)

    async def _write_private(self, keypair: KeyPair) -> None:
        await self._store.put_secret(private_key_entry(keypair.kid), keypair.private_key)

    async def _write_public(self, keypair: KeyPair) -> None:
        await self._store.put_public(public_key_entry(keypair.kid), keypair.public_key)

    async def _update_pointer(self, keypair: KeyPair) -> None:
        await self._store.put_public(current_kid_entry(keypair.family), keypair.kid)

        history_name = kid_history_entry(keypair.family)
        history = parse_history(await self._store.get_public(history_name))
        history.append(CurrentKid(kid=keypair.kid, rotated_at=self._now()))
        await self._store.put_public(history_name, json.dumps([h.to_dict() for h in history]))

    async def _publish(self, keypair: KeyPair) -> None:
        record = jwks_builder.to_jwk(keypair.public_key, keypair.kid)
        existing = await self._store.get_public(JWKS_ENTRY)
        merged = jwks_builder.merge(existing, record)
        await self._store.put_public(JWKS_ENTRY, jwks_builder.dumps_jwks(merged))

    async def _checkpoint(
        self, keypair: KeyPair, stage: RotationStage, error: Optional[str] = None
    ) -> None:
        """Log the stage; persist it once the non-secrets partition holds the key."""
        if error:
            logger.error(f"Rotation of {keypair.kid} stopped after {stage.value}: {error}")
        else:
            logger.info(f"Rotation of {keypair.kid}: {stage.value}")

        if stage is RotationStage.PUBLISHED:
            await self._store.remove_public(rotation_entry(keypair.kid))
            return
        if stage in (RotationStage.GENERATED, RotationStage.PRIVATE_WRITTEN):
            return

        checkpoint = RotationCheckpoint(
            kid=keypair.kid,
            family=keypair.family.value,
            stage=stage.value,
            updated_at=self._now(),
            error=error,
        )
        try:
            await self._store.put_public(
                rotation_entry(keypair.kid), json.dumps(checkpoint.to_dict())
            )
        except JWKSyncError as e:
            logger.warning(f"Could not persist checkpoint for {keypair.kid}: {e}")

    async def rotate(self, family: Union[KeyFamily, str]) -> KeyPair:
        """
        Generate, store and publish one new key for ``family``.

        Returns:
            The new KeyPair.

        Raises:
            RotationError: Tagged with the last completed stage. Stages
                already completed are not rolled back; retrying allocates
                a new kid.
        """
        family = KeyFamily.parse(family)

        try:
            keypair = await self._generate(family)
        except JWKSyncError as e:
            raise RotationError(None, family.value, None, e) from e

        logger.info(f"Provisioning new key {keypair.kid}")
        logger.debug(f"Public key {keypair.kid}: {escape_newlines(keypair.public_key)}")

        stage = RotationStage.GENERATED
        await self._checkpoint(keypair, stage)

        steps = (
            (RotationStage.PRIVATE_WRITTEN, self._write_private),
            (RotationStage.PUBLIC_WRITTEN, self._write_public),
            (RotationStage.POINTER_UPDATED, self._update_pointer),
            (RotationStage.PUBLISHED, self._publish),
        )
        for next_stage, step in steps:
            try:
                await step(keypair)
            except JWKSyncError as e:
                await self._checkpoint(keypair, stage, error=str(e))
                raise RotationError(keypair.kid, family.value, stage, e) from e
            stage = next_stage
            await self._checkpoint(keypair, stage)

        return keypair

    async def provision(
        self, families: Iterable[Union[KeyFamily, str]] = (KeyFamily.RSA, KeyFamily.EC)
    ) -> Dict[KeyFamily, ProvisionResult]:
        """
        Ensure both partitions exist, then rotate each family independently.

        A failed family is reported in its result and does not stop the others.

        Raises:
            StoreError: If the partitions cannot be ensured.
        """
        await self._store.ensure()

        results: Dict[KeyFamily, ProvisionResult] = {}
        for value in families:
            family = KeyFamily.parse(value)
            try:
                keypair = await self.rotate(family)
                results[family] = ProvisionResult(family=family, keypair=keypair)
            except RotationError as e:
                logger.error(f"Provisioning {family.value} failed: {e}")
                results[family] = ProvisionResult(family=family, error=e)
        return results

    async def kid_history(self, family: Union[KeyFamily, str]) -> List[CurrentKid]:
        """Return every kid that has been current for ``family``, oldest first."""
        return parse_history(await self._store.get_public(kid_history_entry(family)))

    async def current_kid(self, family: Union[KeyFamily, str]) -> Optional[CurrentKid]:
        """
        Return the active kid of ``family``.

        The ``currentKid__<family>`` pointer is authoritative; the history
        supplies the time it became active.
        """
        kid = await self._store.get_public(current_kid_entry(family))
        if not kid:
            return None
        for record in reversed(await self.kid_history(family)):
            if record.kid == kid:
                return record
        return CurrentKid(kid=kid)
