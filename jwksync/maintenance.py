"""
jwksync Public Key Maintenance.

Lists the stored public keys as JWKs, prunes named keys, rebuilds the
published JWKS from the stored public keys, and reconciles drift left
behind by interrupted rotations.

Private keys are never removed: deleting from the encrypted partition is
not reliably supported by key-value map backends, so a private key is
retained permanently once written.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from jwksync import jwks as jwks_builder
from jwksync.errors import JWKSCorruptError
from jwksync.keys import KeyFamily
from jwksync.naming import (
    JWKS_ENTRY,
    EntryKind,
    EntryName,
    current_kid_entry,
    family_of_kid,
    kid_history_entry,
    private_key_entry,
    public_key_entry,
    rotation_entry,
)
from jwksync.rotation import RotationCheckpoint, parse_history
from jwksync.store import PartitionedKeyStore, RemovalResult

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    """
    Differences between stored key material and the published JWKS.

    Attributes:
        stored_kids: Kids with a parsable ``public__`` entry, in store order.
        published_kids: Kids in the published JWKS, in order.
        unpublished: Stored kids missing from the JWKS.
        orphaned: Published kids with no stored public key.
        missing_private: Stored kids with no ``private__`` entry in the secrets partition.
        dangling_pointers: Family value to a current kid with no stored key.
        incomplete_rotations: Checkpoints of rotations that never published.
        jwks_corrupt: True when the published document could not be parsed.
        repaired: True when repairs were written back.
    """

    stored_kids: List[str] = field(default_factory=list)
    published_kids: List[str] = field(default_factory=list)
    unpublished: List[str] = field(default_factory=list)
    orphaned: List[str] = field(default_factory=list)
    missing_private: List[str] = field(default_factory=list)
    dangling_pointers: Dict[str, str] = field(default_factory=dict)
    incomplete_rotations: List[RotationCheckpoint] = field(default_factory=list)
    jwks_corrupt: bool = False
    repaired: bool = False

    @property
    def consistent(self) -> bool:
        return not (
            self.unpublished
            or self.orphaned
            or self.missing_private
            or self.dangling_pointers
            or self.incomplete_rotations
            or self.jwks_corrupt
        )


class PublicKeyMaintainer:
    """
    Inspects and prunes stored public keys.

    Example:
        >>> maintainer = PublicKeyMaintainer(store)
        >>> removed = await maintainer.remove(["rsa__oldkey0000000000"])
        >>> jwks = await maintainer.update()
    """

    def __init__(self, store: PartitionedKeyStore):
        self._store = store

    async def list_keys(self) -> List[dict]:
        """Return the stored public keys as JWKs; unparsable entries are skipped."""
        entries = await self._store.public_entries()
        return jwks_builder.public_key_jwks(entries)

    async def remove(self, kids: Iterable[str]) -> List[str]:
        """
        Remove the ``public__<kid>`` entries of ``kids``, best effort.

        The JWKS is left alone; call ``update()`` to republish. Removing a
        family's current kid leaves its ``currentKid__`` pointer dangling
        until ``reconcile(repair=True)`` re-points it; this is logged.

        Returns:
            The kids whose entry was actually removed.
        """
        current = {}
        for family in KeyFamily:
            pointer = await self._store.get_public(current_kid_entry(family))
            if pointer:
                current[pointer] = family

        removed = []
        for kid in kids:
            result = await self._store.remove_public(public_key_entry(kid))
            if result is RemovalResult.REMOVED:
                logger.info(f"Removed public key {kid}")
                removed.append(kid)
                if kid in current:
                    logger.warning(
                        f"Removed the current {current[kid].value} key {kid}; "
                        f"run reconcile with repair to re-point currentKid__{current[kid].value}"
                    )
            elif result is RemovalResult.ABSENT:
                logger.info(f"No public key stored for {kid}")
        return removed

    def _published_order(self, entries: Dict[str, str]) -> Optional[List[str]]:
        raw = entries.get(JWKS_ENTRY)
        if raw is None:
            return None
        try:
            return jwks_builder.kids(jwks_builder.parse_jwks(raw))
        except JWKSCorruptError as e:
            logger.warning(f"Published JWKS is corrupt, rebuilding without its order: {e}")
            return None

    async def rebuild(self) -> dict:
        """Compute the JWKS from the stored public keys without writing it."""
        entries = await self._store.public_entries()
        return jwks_builder.rebuild(entries, order=self._published_order(entries))

    async def update(self) -> dict:
        """Overwrite the published JWKS with the rebuilt key set."""
        rebuilt = await self.rebuild()
        await self._store.put_public(JWKS_ENTRY, jwks_builder.dumps_jwks(rebuilt))
        logger.info(f"Published JWKS with {len(rebuilt['keys'])} keys")
        return rebuilt

    async def reconcile(self, repair: bool = False) -> ReconciliationReport:
        """
        Compare stored keys, pointers and checkpoints with the published JWKS.

        Args:
            repair: Rewrite the JWKS from stored keys, re-point dangling
                pointers to the newest stored key of their family (or drop
                them when none is left), and clear incomplete checkpoints.
                Incomplete rotations get their key published but do not
                take over the current pointer.
                Kids missing their private entry are reported only: the
                private half cannot be recreated.

        Returns:
            The report describing the state found before any repair.
        """
        entries = await self._store.public_entries()
        report = ReconciliationReport()

        stored = jwks_builder.public_key_jwks(entries)
        report.stored_kids = [record["kid"] for record in stored]

        raw = entries.get(JWKS_ENTRY)
        if raw is not None:
            try:
                report.published_kids = jwks_builder.kids(jwks_builder.parse_jwks(raw))
            except JWKSCorruptError as e:
                logger.warning(f"Published JWKS is corrupt: {e}")
                report.jwks_corrupt = True

        stored_set = set(report.stored_kids)
        published_set = set(report.published_kids)
        report.unpublished = [k for k in report.stored_kids if k not in published_set]
        report.orphaned = [k for k in report.published_kids if k not in stored_set]

        for kid in report.stored_kids:
            if await self._store.get_secret(private_key_entry(kid)) is None:
                report.missing_private.append(kid)

        for family in KeyFamily:
            kid = entries.get(current_kid_entry(family))
            if kid and (kid not in stored_set or family_of_kid(kid) is not family):
                report.dangling_pointers[family.value] = kid

        for name, value in entries.items():
            decoded = EntryName.decode(name)
            if decoded is None or decoded.kind is not EntryKind.ROTATION:
                continue
            try:
                report.incomplete_rotations.append(RotationCheckpoint.from_dict(json.loads(value)))
            except (ValueError, TypeError) as e:
                logger.warning(f"Skipping unreadable checkpoint {name}: {e}")

        if report.consistent:
            logger.info("Stored keys and published JWKS are consistent")
            return report

        logger.warning(
            f"Reconciliation found drift: unpublished={report.unpublished} "
            f"orphaned={report.orphaned} missing_private={report.missing_private} "
            f"dangling={report.dangling_pointers} "
            f"incomplete={[c.kid for c in report.incomplete_rotations]}"
        )
        if repair:
            await self._repair(entries, report)
            report.repaired = True
        return report

    async def _repair(self, entries: Dict[str, str], report: ReconciliationReport) -> None:
        rebuilt = jwks_builder.rebuild(entries, order=report.published_kids)
        await self._store.put_public(JWKS_ENTRY, jwks_builder.dumps_jwks(rebuilt))
        logger.info(f"Republished JWKS with {len(rebuilt['keys'])} keys")

        for family_value, kid in report.dangling_pointers.items():
            family = KeyFamily.parse(family_value)
            replacement = self._newest_stored(entries, family, report.stored_kids)
            if replacement:
                await self._store.put_public(current_kid_entry(family), replacement)
                logger.info(f"Re-pointed current {family.value} kid from {kid} to {replacement}")
            else:
                await self._store.remove_public(current_kid_entry(family))
                logger.info(f"Dropped current {family.value} kid {kid}: no stored keys left")

        for checkpoint in report.incomplete_rotations:
            await self._store.remove_public(rotation_entry(checkpoint.kid))
            logger.info(f"Cleared checkpoint for {checkpoint.kid} ({checkpoint.stage})")

    @staticmethod
    def _newest_stored(
        entries: Dict[str, str], family: KeyFamily, stored_kids: List[str]
    ) -> Optional[str]:
        candidates = [k for k in stored_kids if family_of_kid(k) is family]
        if not candidates:
            return None
        for record in reversed(parse_history(entries.get(kid_history_entry(family)))):
            if record.kid in candidates:
                return record.kid
        return candidates[-1]
