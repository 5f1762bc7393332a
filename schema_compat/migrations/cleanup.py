"""
Legacy residue cleanup.

Migrated documents keep their legacy fields so the legacy read path keeps
working during the transition. Once a collection is fully migrated, has been
in cutover for the observation window, and holds no legacy documents, this
pass removes those fields.
"""

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from schema_compat.adapters.base import revision_filter
from schema_compat.core.config import settings
from schema_compat.core.database import PROGRESS_COLLECTION
from schema_compat.core.exceptions import CleanupNotAllowed
from schema_compat.core.queries import after_id
from schema_compat.core.retry import translate_store_errors, with_retry
from schema_compat.entities import get_codec
from schema_compat.entities.base import REVISION_FIELD, SCHEMA_VERSION_FIELD, SchemaVersion
from schema_compat.log.logging import logger
from schema_compat.migrations.models import MigrationPhase, ProgressRecord, RunStatus, progress_record_id
from schema_compat.migrations.registry import MigrationRegistry


class LegacyCleanup:
    """Removes legacy fields from migrated documents once it is safe."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        registry: MigrationRegistry,
        observation_hours: Optional[int] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._db = db
        self._registry = registry
        self._observation = timedelta(
            hours=settings.cleanup_observation_hours if observation_hours is None else observation_hours
        )
        self._clock = clock

    @translate_store_errors
    async def check_gate(self, collection: str) -> list[str]:
        """Reasons cleanup may not run yet; empty when it may."""
        reasons = []
        await self._registry.refresh()
        if self._registry.phase is not MigrationPhase.CUTOVER:
            reasons.append(f"phase is '{self._registry.phase.value}', cleanup requires 'cutover'")

        document = await self._db[PROGRESS_COLLECTION].find_one(
            {"_id": progress_record_id(collection, SchemaVersion.NEW)}
        )
        record = ProgressRecord.from_dict(document) if document else None
        if record is None or record.status is not RunStatus.COMPLETED or record.completed_at is None:
            reasons.append("batch migration has not completed")
        elif self._clock() - record.completed_at < self._observation:
            ready_at = record.completed_at + self._observation
            reasons.append(f"observation window open until {ready_at.isoformat()}")

        remaining = await self._db[collection].count_documents(
            {SCHEMA_VERSION_FIELD: {"$ne": SchemaVersion.NEW.value}}
        )
        if remaining:
            reasons.append(f"{remaining} documents are still on the legacy schema")
        return reasons

    async def run(self, collection: str, batch_size: Optional[int] = None, dry_run: bool = False) -> dict[str, Any]:
        """
        Remove legacy fields from every document of a collection.

        Documents changed concurrently are left for the next run.

        Raises:
            CleanupNotAllowed: If the gate is not satisfied.
        """
        reasons = await self.check_gate(collection)
        if reasons:
            raise CleanupNotAllowed(
                f"Cleanup of {collection} not allowed: " + "; ".join(reasons),
                collection=collection,
            )

        codec = get_codec(collection)
        batch_size = batch_size or settings.migration_batch_size
        counts = {"cleaned": 0, "unchanged": 0, "conflicts": 0, "invalid": 0}
        cursor = None

        logger.info(
            "Legacy cleanup of {collection} started",
            collection=collection,
            dry_run=dry_run,
            event_type="cleanup_started",
        )
        while True:
            batch = await self._read_batch(collection, cursor, batch_size)
            if not batch:
                break
            cursor = batch[-1]["_id"]

            for raw in batch:
                present = sorted(name for name in codec.legacy_fields if name in raw)
                if not present:
                    counts["unchanged"] += 1
                    continue
                if codec.validate_new_shape(raw):
                    counts["invalid"] += 1
                    logger.warning(
                        "Keeping legacy fields of invalid {collection} document {document_id}",
                        collection=collection,
                        document_id=str(raw["_id"]),
                        event_type="cleanup_document_invalid",
                    )
                    continue
                if dry_run:
                    counts["cleaned"] += 1
                    continue

                update = {
                    "$unset": {name: "" for name in present},
                    "$set": {"legacyCleanedAt": self._clock(), REVISION_FIELD: raw.get(REVISION_FIELD, 0) + 1},
                }
                if await self._update(collection, revision_filter(raw), update):
                    counts["cleaned"] += 1
                else:
                    counts["conflicts"] += 1

        logger.info(
            "Legacy cleanup of {collection} finished",
            collection=collection,
            dry_run=dry_run,
            **counts,
            event_type="cleanup_completed",
        )
        return counts

    @with_retry()
    @translate_store_errors
    async def _read_batch(self, collection: str, cursor: Any, batch_size: int) -> list[dict]:
        query = {SCHEMA_VERSION_FIELD: SchemaVersion.NEW.value, **after_id(cursor)}
        return await self._db[collection].find(query).sort("_id", 1).limit(batch_size).to_list(length=batch_size)

    @with_retry()
    @translate_store_errors
    async def _update(self, collection: str, condition: dict, update: dict) -> bool:
        result = await self._db[collection].update_one(condition, update)
        return result.matched_count == 1
