"""
Unit tests for public key maintenance and reconciliation.
"""

import json
import logging

import pytest

from jwksync import KeyFamily, PublicKeyMaintainer
from jwksync.jwks import dumps_jwks, parse_jwks, to_jwk


@pytest.fixture
def maintainer(store) -> PublicKeyMaintainer:
    return PublicKeyMaintainer(store)


class TestListKeys:
    """Tests for PublicKeyMaintainer.list_keys."""

    @pytest.mark.asyncio
    async def test_lists_stored_public_keys(self, store, maintainer, rsa_keypair, ec_keypair):
        await store.put_public(f"public__{rsa_keypair.kid}", rsa_keypair.public_key)
        await store.put_public(f"public__{ec_keypair.kid}", ec_keypair.public_key)
        await store.put_public("currentKid__rsa", rsa_keypair.kid)

        keys = await maintainer.list_keys()

        assert [k["kid"] for k in keys] == [rsa_keypair.kid, ec_keypair.kid]
        assert keys[0]["kty"] == "RSA"
        assert keys[1]["kty"] == "EC"

    @pytest.mark.asyncio
    async def test_skips_invalid_entries(self, store, maintainer, ec_keypair):
        await store.put_public("public__ec__broken0000000000000", "not a key")
        await store.put_public(f"public__{ec_keypair.kid}", ec_keypair.public_key)

        assert [k["kid"] for k in await maintainer.list_keys()] == [ec_keypair.kid]

    @pytest.mark.asyncio
    async def test_empty_store(self, maintainer):
        assert await maintainer.list_keys() == []


class TestRemove:
    """Tests for PublicKeyMaintainer.remove."""

    @pytest.mark.asyncio
    async def test_removes_public_only(self, store, maintainer, manager):
        """Removing a key leaves its private half and the JWKS untouched."""
        keypair = await manager.rotate(KeyFamily.EC)
        before = await store.get_public("jwks")

        removed = await maintainer.remove([keypair.kid])

        assert removed == [keypair.kid]
        assert await store.get_public(f"public__{keypair.kid}") is None
        assert await store.get_secret(f"private__{keypair.kid}") == keypair.private_key
        assert await store.get_public("jwks") == before

    @pytest.mark.asyncio
    async def test_absent_kid_not_reported(self, maintainer):
        assert await maintainer.remove(["ec__missing0000000000000"]) == []

    @pytest.mark.asyncio
    async def test_warns_when_removing_current_kid(self, store, maintainer, manager, caplog):
        """Removing the key a pointer names is logged as a warning."""
        first = await manager.rotate(KeyFamily.EC)
        second = await manager.rotate(KeyFamily.EC)

        caplog.clear()
        with caplog.at_level(logging.WARNING, logger="jwksync.maintenance"):
            await maintainer.remove([first.kid])
        assert not [r for r in caplog.records if r.name == "jwksync.maintenance"]

        caplog.clear()
        with caplog.at_level(logging.WARNING, logger="jwksync.maintenance"):
            await maintainer.remove([second.kid])
        warnings = [
            r.getMessage()
            for r in caplog.records
            if r.name == "jwksync.maintenance" and r.levelno == logging.WARNING
        ]
        assert len(warnings) == 1
        assert second.kid in warnings[0]
        assert "currentKid__ec" in warnings[0]
        assert await store.get_public("currentKid__ec") == second.kid


class TestUpdate:
    """Tests for rebuilding and publishing the JWKS."""

    @pytest.mark.asyncio
    async def test_remove_then_update(self, store, maintainer, manager):
        """A removed key disappears from the JWKS after update."""
        first = await manager.rotate(KeyFamily.EC)
        second = await manager.rotate(KeyFamily.EC)

        await maintainer.remove([first.kid])
        rebuilt = await maintainer.update()

        assert [k["kid"] for k in rebuilt["keys"]] == [second.kid]
        assert parse_jwks(await store.get_public("jwks")) == rebuilt

    @pytest.mark.asyncio
    async def test_update_is_idempotent(self, store, maintainer, manager):
        await manager.rotate(KeyFamily.EC)
        await manager.rotate(KeyFamily.EC)

        await maintainer.update()
        first = await store.get_public("jwks")
        await maintainer.update()

        assert await store.get_public("jwks") == first

    @pytest.mark.asyncio
    async def test_keeps_published_order(self, store, maintainer, manager):
        kids = [(await manager.rotate(KeyFamily.EC)).kid for _ in range(3)]

        rebuilt = await maintainer.rebuild()

        assert [k["kid"] for k in rebuilt["keys"]] == kids

    @pytest.mark.asyncio
    async def test_rebuild_over_corrupt_jwks(self, store, maintainer, ec_keypair):
        await store.put_public(f"public__{ec_keypair.kid}", ec_keypair.public_key)
        await store.put_public("jwks", "{broken")

        rebuilt = await maintainer.update()

        assert [k["kid"] for k in rebuilt["keys"]] == [ec_keypair.kid]

    @pytest.mark.asyncio
    async def test_rebuild_does_not_write(self, store, maintainer, ec_keypair):
        await store.put_public(f"public__{ec_keypair.kid}", ec_keypair.public_key)
        await maintainer.rebuild()
        assert await store.get_public("jwks") is None


class TestReconcile:
    """Tests for PublicKeyMaintainer.reconcile."""

    @pytest.mark.asyncio
    async def test_consistent_after_rotation(self, maintainer, manager):
        await manager.rotate(KeyFamily.EC)

        report = await maintainer.reconcile()

        assert report.consistent
        assert report.repaired is False

    @pytest.mark.asyncio
    async def test_detects_drift(self, store, maintainer, rsa_keypair, ec_keypair):
        """Unpublished, orphaned and dangling entries are all reported."""
        await store.put_public(f"public__{ec_keypair.kid}", ec_keypair.public_key)
        await store.put_public(
            "jwks", dumps_jwks({"keys": [to_jwk(rsa_keypair.public_key, rsa_keypair.kid)]})
        )
        await store.put_public("currentKid__rsa", rsa_keypair.kid)

        report = await maintainer.reconcile()

        assert report.unpublished == [ec_keypair.kid]
        assert report.orphaned == [rsa_keypair.kid]
        assert report.dangling_pointers == {"rsa": rsa_keypair.kid}
        assert not report.consistent
        assert await store.get_public("currentKid__rsa") == rsa_keypair.kid

    @pytest.mark.asyncio
    async def test_detects_corrupt_jwks(self, store, maintainer):
        await store.put_public("jwks", "[1, 2")
        report = await maintainer.reconcile()
        assert report.jwks_corrupt

    @pytest.mark.asyncio
    async def test_detects_incomplete_rotation(self, store, maintainer, ec_keypair):
        await store.put_public(f"public__{ec_keypair.kid}", ec_keypair.public_key)
        checkpoint = {
            "kid": ec_keypair.kid,
            "family": "ec",
            "stage": "public_written",
            "updated_at": 1700000000,
            "error": "write refused",
        }
        await store.put_public(f"rotation__{ec_keypair.kid}", json.dumps(checkpoint))

        report = await maintainer.reconcile()

        assert [c.kid for c in report.incomplete_rotations] == [ec_keypair.kid]
        assert report.incomplete_rotations[0].stage == "public_written"

    @pytest.mark.asyncio
    async def test_repair(self, store, maintainer, manager, ec_keypair):
        """Repair republishes stored keys, re-points and clears checkpoints."""
        rotated = await manager.rotate(KeyFamily.EC)

        # Stopped rotation: public key written, pointer and JWKS untouched
        await store.put_secret(f"private__{ec_keypair.kid}", ec_keypair.private_key)
        await store.put_public(f"public__{ec_keypair.kid}", ec_keypair.public_key)
        await store.put_public(
            f"rotation__{ec_keypair.kid}",
            json.dumps(
                {"kid": ec_keypair.kid, "family": "ec", "stage": "public_written", "updated_at": 1}
            ),
        )
        await store.put_public("currentKid__rsa", "rsa__gone00000000000000")

        report = await maintainer.reconcile(repair=True)
        assert report.repaired

        published = parse_jwks(await store.get_public("jwks"))
        assert [k["kid"] for k in published["keys"]] == [rotated.kid, ec_keypair.kid]
        assert await store.get_public("currentKid__ec") == rotated.kid
        assert await store.get_public("currentKid__rsa") is None
        assert await store.get_public(f"rotation__{ec_keypair.kid}") is None

        assert (await maintainer.reconcile()).consistent

    @pytest.mark.asyncio
    async def test_repair_repoints_to_newest(self, store, maintainer, manager):
        """A dangling pointer moves to the newest stored key of its family."""
        first = await manager.rotate(KeyFamily.EC)
        second = await manager.rotate(KeyFamily.EC)
        await maintainer.remove([second.kid])

        report = await maintainer.reconcile(repair=True)

        assert report.dangling_pointers == {"ec": second.kid}
        assert await store.get_public("currentKid__ec") == first.kid
        published = parse_jwks(await store.get_public("jwks"))
        assert [k["kid"] for k in published["keys"]] == [first.kid]

    @pytest.mark.asyncio
    async def test_detects_missing_private(self, store, maintainer, manager, ec_keypair):
        """A published public key without its private half is reported."""
        rotated = await manager.rotate(KeyFamily.EC)
        await store.put_public(f"public__{ec_keypair.kid}", ec_keypair.public_key)
        await maintainer.update()

        report = await maintainer.reconcile()

        assert report.missing_private == [ec_keypair.kid]
        assert rotated.kid not in report.missing_private
        assert report.unpublished == [] and report.orphaned == []
        assert not report.consistent
