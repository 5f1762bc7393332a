"""Tests for the legacy residue cleanup."""

from datetime import datetime, timedelta

import pytest

from schema_compat.core.exceptions import CleanupNotAllowed
from schema_compat.entities.trade import trade_codec
from schema_compat.migrations.cleanup import LegacyCleanup
from schema_compat.migrations.executor import BatchMigrationExecutor
from schema_compat.migrations.models import MigrationPhase


def later(hours):
    return lambda: datetime.utcnow() + timedelta(hours=hours)


class TestCleanupGate:
    """Tests for the conditions cleanup waits for."""

    @pytest.mark.asyncio
    async def test_closed_before_cutover(self, db, registry, move_to):
        await move_to(registry, MigrationPhase.DUAL_SCHEMA)
        cleanup = LegacyCleanup(db, registry)

        reasons = await cleanup.check_gate("trades")

        assert any("cutover" in reason for reason in reasons)
        assert "batch migration has not completed" in reasons
        with pytest.raises(CleanupNotAllowed):
            await cleanup.run("trades")

    @pytest.mark.asyncio
    async def test_observation_window(self, db, registry, move_to, legacy_trade):
        await migrate_and_cut_over(db, registry, move_to, legacy_trade)
        cleanup = LegacyCleanup(db, registry, observation_hours=72, clock=later(1))

        reasons = await cleanup.check_gate("trades")

        assert len(reasons) == 1
        assert reasons[0].startswith("observation window open until")

    @pytest.mark.asyncio
    async def test_legacy_documents_block_cleanup(self, db, registry, move_to, legacy_trade):
        await migrate_and_cut_over(db, registry, move_to, legacy_trade)
        db["trades"].seed([legacy_trade(50)])
        cleanup = LegacyCleanup(db, registry, observation_hours=72, clock=later(73))

        assert await cleanup.check_gate("trades") == ["1 documents are still on the legacy schema"]


class TestCleanupRun:
    """Tests for removing legacy fields."""

    @pytest.mark.asyncio
    async def test_removes_legacy_fields(self, db, registry, move_to, legacy_trade):
        await migrate_and_cut_over(db, registry, move_to, legacy_trade, count=5)
        before = {str(k): trade_codec.normalize(v).comparable() for k, v in db["trades"].documents.items()}
        cleanup = LegacyCleanup(db, registry, observation_hours=72, clock=later(73))

        counts = await cleanup.run("trades", batch_size=2)

        assert counts == {"cleaned": 5, "unchanged": 0, "conflicts": 0, "invalid": 0}
        for document in db["trades"].documents.values():
            assert not trade_codec.has_legacy_fields(document)
            assert document["_rev"] == 2
            assert trade_codec.normalize(document).comparable() == before[str(document["_id"])]

        again = await cleanup.run("trades")
        assert again["unchanged"] == 5

    @pytest.mark.asyncio
    async def test_mixed_id_types_are_all_cleaned(self, db, registry, move_to, legacy_trade):
        await move_to(registry, MigrationPhase.BACKFILLING)
        db["trades"].seed([legacy_trade(0, _id="t-1"), legacy_trade(1), legacy_trade(2)])
        await BatchMigrationExecutor(db, registry, batch_size=1).run("trades")
        await registry.set_phase(MigrationPhase.CUTOVER)
        cleanup = LegacyCleanup(db, registry, observation_hours=72, clock=later(73))

        counts = await cleanup.run("trades", batch_size=1)

        assert counts["cleaned"] == 3
        assert not any(trade_codec.has_legacy_fields(d) for d in db["trades"].documents.values())

    @pytest.mark.asyncio
    async def test_dry_run(self, db, registry, move_to, legacy_trade):
        await migrate_and_cut_over(db, registry, move_to, legacy_trade, count=3)
        cleanup = LegacyCleanup(db, registry, observation_hours=72, clock=later(73))

        counts = await cleanup.run("trades", dry_run=True)

        assert counts["cleaned"] == 3
        assert all(trade_codec.has_legacy_fields(d) for d in db["trades"].documents.values())

    @pytest.mark.asyncio
    async def test_invalid_documents_keep_legacy_fields(self, db, registry, move_to, legacy_trade):
        await migrate_and_cut_over(db, registry, move_to, legacy_trade, count=2)
        broken = trade_codec.upgrade(legacy_trade(9))
        del broken["skillsWanted"]
        db["trades"].seed([broken])
        cleanup = LegacyCleanup(db, registry, observation_hours=72, clock=later(73))

        counts = await cleanup.run("trades")

        assert counts["invalid"] == 1
        assert counts["cleaned"] == 2
        assert "requestedSkills" in db["trades"].raw(broken["_id"])


async def migrate_and_cut_over(db, registry, move_to, legacy_trade, count=3):
    await move_to(registry, MigrationPhase.BACKFILLING)
    db["trades"].seed([legacy_trade(i) for i in range(count)])
    await BatchMigrationExecutor(db, registry).run("trades")
    await registry.set_phase(MigrationPhase.CUTOVER)
