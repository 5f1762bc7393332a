"""Tests for rollback, integrity validation and snapshot restore."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from schema_compat.core.config import settings
from schema_compat.core.exceptions import PhaseTransitionError, SnapshotRestoreError
from schema_compat.entities.base import SchemaVersion
from schema_compat.entities.trade import trade_codec
from schema_compat.migrations.models import MigrationPhase
from schema_compat.migrations.rollback import RollbackManager


def restore_process(returncode=0, stderr=b""):
    process = MagicMock()
    process.communicate = AsyncMock(return_value=(b"", stderr))
    process.returncode = returncode
    return process


@pytest.fixture
def manager(db, registry):
    return RollbackManager(registry, db)


@pytest.fixture
def corrupted(db, legacy_trade):
    """A migrated trade whose new creator disagrees with its legacy creator."""
    document = trade_codec.upgrade(legacy_trade(1))
    document["participants"] = {"creator": "intruder", "participant": None}
    db["trades"].seed([document])
    return document


class TestRollbackTrigger:
    """Tests for RollbackManager.trigger."""

    @pytest.mark.asyncio
    async def test_rollback_without_corruption_keeps_data(self, db, registry, manager, move_to, legacy_trade):
        await move_to(registry, MigrationPhase.BACKFILLING)
        migrated = trade_codec.upgrade(legacy_trade(1))
        db["trades"].seed([migrated])

        with patch("schema_compat.migrations.rollback.asyncio.create_subprocess_exec") as spawn:
            outcome = await manager.trigger("p95 latency regression")

        spawn.assert_not_called()
        assert outcome.phase is MigrationPhase.ROLLED_BACK
        assert outcome.trigger == "manual"
        assert not outcome.corrupted
        assert outcome.restored_snapshot is None
        assert registry.get_policy("trades").write_schema is SchemaVersion.LEGACY
        assert db["trades"].raw(migrated["_id"])["schemaVersion"] == "2"

    @pytest.mark.asyncio
    async def test_corruption_restores_latest_snapshot(self, registry, manager, move_to, corrupted):
        await move_to(registry, MigrationPhase.DUAL_SCHEMA)
        await manager.register_snapshot("snap-1", "/backups/snap-1", ["trades"])

        with patch(
            "schema_compat.migrations.rollback.asyncio.create_subprocess_exec",
            new=AsyncMock(return_value=restore_process()),
        ) as spawn:
            outcome = await manager.trigger("inconsistencies", trigger="automatic")

        assert outcome.corrupted
        assert outcome.violations["trades"][0]["_id"] == str(corrupted["_id"])
        assert outcome.restored_snapshot == "snap-1"
        args = spawn.await_args.args
        assert args[0] == "mongorestore"
        assert f"{settings.mongodb_database}.trades" in args
        assert "/backups/snap-1" in args

    @pytest.mark.asyncio
    async def test_corruption_without_snapshot(self, registry, manager, move_to, corrupted):
        await move_to(registry, MigrationPhase.DUAL_SCHEMA)

        with pytest.raises(SnapshotRestoreError):
            await manager.trigger("inconsistencies")

        assert registry.phase is MigrationPhase.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_restore_can_be_forbidden(self, registry, manager, move_to, corrupted):
        await move_to(registry, MigrationPhase.DUAL_SCHEMA)

        outcome = await manager.trigger("operator decision", restore=False)

        assert outcome.violations == {}
        assert outcome.restored_snapshot is None

    @pytest.mark.asyncio
    async def test_restore_can_be_forced(self, registry, manager, move_to):
        await move_to(registry, MigrationPhase.DUAL_SCHEMA)
        await manager.register_snapshot("snap-2", "/backups/snap-2", ["trades", "conversations"])

        with patch(
            "schema_compat.migrations.rollback.asyncio.create_subprocess_exec",
            new=AsyncMock(return_value=restore_process()),
        ) as spawn:
            outcome = await manager.trigger("operator decision", restore=True)

        assert outcome.restored_snapshot == "snap-2"
        assert spawn.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_restore_command(self, registry, manager, move_to):
        await move_to(registry, MigrationPhase.DUAL_SCHEMA)
        await manager.register_snapshot("snap-3", "/backups/snap-3", ["trades"])

        with patch(
            "schema_compat.migrations.rollback.asyncio.create_subprocess_exec",
            new=AsyncMock(return_value=restore_process(returncode=1, stderr=b"auth failed")),
        ):
            with pytest.raises(SnapshotRestoreError) as exc:
                await manager.trigger("operator decision", restore=True)

        assert exc.value.context["stderr"] == "auth failed"

    @pytest.mark.asyncio
    async def test_cannot_roll_back_before_start(self, manager):
        with pytest.raises(PhaseTransitionError):
            await manager.trigger("too early")


class TestSnapshotsAndIntegrity:
    """Tests for snapshot registration and integrity validation."""

    @pytest.mark.asyncio
    async def test_duplicate_snapshot(self, manager):
        await manager.register_snapshot("snap-1", "/backups/a")

        with pytest.raises(SnapshotRestoreError):
            await manager.register_snapshot("snap-1", "/backups/b")

    @pytest.mark.asyncio
    async def test_snapshot_defaults_to_every_collection(self, manager):
        snapshot = await manager.register_snapshot("snap-1", "/backups/a")

        assert snapshot.collections == ("trades", "conversations")
        assert (await manager.latest_snapshot()).snapshot_id == "snap-1"

    @pytest.mark.asyncio
    async def test_latest_snapshot_when_none(self, manager):
        assert await manager.latest_snapshot() is None

    @pytest.mark.asyncio
    async def test_validate_integrity(self, db, manager, corrupted, new_trade, legacy_trade):
        incomplete = new_trade(2)
        del incomplete["skillsWanted"]
        db["trades"].seed([incomplete, new_trade(3), legacy_trade(4)])

        violations = await manager.validate_integrity(["trades"])

        found = {item["_id"]: item["issues"] for item in violations["trades"]}
        assert set(found) == {str(corrupted["_id"]), str(incomplete["_id"])}
        assert found[str(incomplete["_id"])] == ["Missing required field: skillsWanted"]
        assert "creator_id" in found[str(corrupted["_id"])][0]
