"""
Rollback of a migration attempt.

A rollback first flips the registry to ``rolled-back`` so every process goes
back to writing the legacy shape within one refresh interval. New-shape
documents stay readable through the adapters, so the backup snapshot is only
restored when integrity validation confirms corruption or the operator
explicitly asks for it.
"""

import asyncio
import shlex
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from schema_compat.core.alerts import raise_alert
from schema_compat.core.config import settings
from schema_compat.core.database import SNAPSHOT_COLLECTION
from schema_compat.core.exceptions import (
    IdentityViolation,
    MigrationLayerError,
    SnapshotRestoreError,
    TransformationError,
)
from schema_compat.core.metrics import ROLLBACKS
from schema_compat.core.retry import translate_store_errors
from schema_compat.entities import get_codec
from schema_compat.entities.base import SCHEMA_VERSION_FIELD, SchemaVersion
from schema_compat.log.logging import logger
from schema_compat.migrations.models import BackupSnapshot, MigrationPhase
from schema_compat.migrations.registry import MigrationRegistry


@dataclass
class RollbackOutcome:
    """Result of a rollback."""

    phase: MigrationPhase
    reason: str
    trigger: str
    violations: dict[str, list[dict]] = field(default_factory=dict)
    restored_snapshot: Optional[str] = None

    @property
    def corrupted(self) -> bool:
        return any(self.violations.values())

    def to_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "reason": self.reason,
            "trigger": self.trigger,
            "violations": {name: len(items) for name, items in self.violations.items()},
            "restored_snapshot": self.restored_snapshot,
        }


class RollbackManager:
    """
    Registers backup snapshots, validates migrated data and performs rollbacks.

    Usage:
        manager = RollbackManager(registry, db)
        await manager.register_snapshot("snap-42", "s3://backups/snap-42", ["trades"])
        outcome = await manager.trigger("error rate too high")
    """

    def __init__(self, registry: MigrationRegistry, db: AsyncIOMotorDatabase):
        self._registry = registry
        self._db = db
        self._snapshots = db[SNAPSHOT_COLLECTION]

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    @translate_store_errors
    async def register_snapshot(
        self, snapshot_id: str, location: str, collections: Optional[list[str]] = None
    ) -> BackupSnapshot:
        """Record the reference of a backup taken just before migration."""
        snapshot = BackupSnapshot(
            snapshot_id=snapshot_id,
            location=location,
            created_at=datetime.utcnow(),
            collections=tuple(collections or self._registry.collections),
        )
        try:
            await self._snapshots.insert_one(snapshot.to_dict())
        except DuplicateKeyError as e:
            raise SnapshotRestoreError(f"Snapshot {snapshot_id} is already registered") from e

        logger.info(
            "Backup snapshot {snapshot_id} registered",
            snapshot_id=snapshot_id,
            location=location,
            collections=list(snapshot.collections),
            event_type="snapshot_registered",
        )
        return snapshot

    @translate_store_errors
    async def latest_snapshot(self) -> Optional[BackupSnapshot]:
        documents = await self._snapshots.find({}).sort("created_at", -1).limit(1).to_list(length=1)
        return BackupSnapshot.from_dict(documents[0]) if documents else None

    async def restore_snapshot(self, snapshot: BackupSnapshot) -> None:
        """
        Restore every collection of a snapshot with the configured external command.

        Raises:
            SnapshotRestoreError: If the command fails for any collection.
        """
        for collection in snapshot.collections:
            command = settings.snapshot_restore_command.format(
                uri=shlex.quote(settings.mongodb),
                namespace=shlex.quote(f"{settings.mongodb_database}.{collection}"),
                location=shlex.quote(snapshot.location),
                collection=shlex.quote(collection),
                snapshot_id=shlex.quote(snapshot.snapshot_id),
            )
            logger.warning(
                "Restoring {collection} from snapshot {snapshot_id}",
                collection=collection,
                snapshot_id=snapshot.snapshot_id,
                event_type="snapshot_restore_started",
            )
            try:
                process = await asyncio.create_subprocess_exec(
                    *shlex.split(command),
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as e:
                raise SnapshotRestoreError(
                    f"Cannot start restore command: {e}", snapshot_id=snapshot.snapshot_id
                ) from e

            _, stderr = await process.communicate()
            if process.returncode != 0:
                raise SnapshotRestoreError(
                    f"Restore of {collection} exited with {process.returncode}",
                    snapshot_id=snapshot.snapshot_id,
                    stderr=stderr.decode(errors="replace")[-2000:],
                )

        logger.warning(
            "Snapshot {snapshot_id} restored",
            snapshot_id=snapshot.snapshot_id,
            event_type="snapshot_restored",
        )

    # ------------------------------------------------------------------
    # Integrity validation
    # ------------------------------------------------------------------

    @translate_store_errors
    async def validate_integrity(
        self, collections: Optional[list[str]] = None, limit: Optional[int] = None
    ) -> dict[str, list[dict]]:
        """
        Check documents tagged with the new schema for corruption.

        A document is corrupt when required new fields are missing or malformed,
        it cannot be normalized, or its identity differs between the legacy
        residue and the new fields.
        """
        violations: dict[str, list[dict]] = {}
        for collection in collections or self._registry.collections:
            codec = get_codec(collection)
            found: list[dict] = []
            cursor = self._db[collection].find({SCHEMA_VERSION_FIELD: SchemaVersion.NEW.value})
            if limit:
                cursor = cursor.limit(limit)

            async for raw in cursor:
                issues = codec.validate_new_shape(raw)
                try:
                    entity = codec.normalize(raw)
                    if codec.has_legacy_fields(raw):
                        codec.check_identity(entity, codec.normalize(codec.legacy_view(raw)))
                except (TransformationError, IdentityViolation) as e:
                    issues.append(e.message)
                if issues:
                    found.append({"_id": str(raw["_id"]), "issues": issues})

            violations[collection] = found
            log = logger.error if found else logger.info
            log(
                "Integrity validation of {collection}: {count} corrupt documents",
                collection=collection,
                count=len(found),
                event_type="integrity_validation_completed",
            )
        return violations

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    async def trigger(
        self,
        reason: str,
        trigger: str = "manual",
        restore: Optional[bool] = None,
    ) -> RollbackOutcome:
        """
        Roll the migration back.

        Args:
            reason: Why the rollback happens; logged and alerted.
            trigger: "manual" or "automatic".
            restore: True forces a snapshot restore, False forbids it, None
                restores only when integrity validation finds corruption.

        Raises:
            PhaseTransitionError: If the migration has not begun.
            SnapshotRestoreError: If a needed restore has no snapshot or fails.
        """
        state = await self._registry.set_phase(MigrationPhase.ROLLED_BACK, reason=reason)
        ROLLBACKS.labels(trigger=trigger).inc()
        await raise_alert(
            "rollback",
            f"Migration rolled back ({trigger}): {reason}",
            trigger=trigger,
            registry_version=state.version,
        )

        outcome = RollbackOutcome(phase=state.phase, reason=reason, trigger=trigger)
        if restore is not False:
            try:
                outcome.violations = await self.validate_integrity()
            except MigrationLayerError as e:
                logger.error(
                    "Integrity validation failed after rollback",
                    error=e.message,
                    event_type="integrity_validation_failed",
                )

        if restore or (restore is None and outcome.corrupted):
            snapshot = await self.latest_snapshot()
            if snapshot is None:
                await raise_alert("snapshot_missing", "Corruption confirmed but no backup snapshot is registered")
                raise SnapshotRestoreError("No backup snapshot registered")
            await self.restore_snapshot(snapshot)
            outcome.restored_snapshot = snapshot.snapshot_id

        logger.warning(
            "Rollback finished: {reason}",
            **outcome.to_dict(),
            event_type="rollback_completed",
        )
        return outcome
