"""
Batch migration executor.

Walks a collection in ``_id`` order and rewrites each document into the target
shape with a conditional replace, so a document changed by application
traffic since it was read is never overwritten. Progress is persisted after
every batch; a run can pause, fail and resume without transforming any
document twice.
"""

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorDatabase

from schema_compat.adapters.base import revision_filter
from schema_compat.core.alerts import raise_alert
from schema_compat.core.config import settings
from schema_compat.core.database import PROGRESS_COLLECTION
from schema_compat.core.exceptions import (
    ConcurrentWriteConflict,
    IdentityViolation,
    PolicyViolation,
    StoreUnavailable,
    TransformationError,
)
from schema_compat.core.metrics import MIGRATION_BATCH_DURATION, MIGRATION_BATCH_RETRIES, MIGRATION_DOCUMENTS
from schema_compat.core.queries import after_id
from schema_compat.core.retry import MaxRetriesExceededError, retry_with_backoff, translate_store_errors
from schema_compat.entities import get_codec
from schema_compat.entities.base import (
    REVISION_FIELD,
    SCHEMA_VERSION_FIELD,
    EntityCodec,
    SchemaVersion,
    schema_version_of,
)
from schema_compat.log.logging import logger
from schema_compat.migrations.models import ProgressRecord, RunStatus, progress_record_id
from schema_compat.migrations.registry import MigrationRegistry

MIGRATED = "migrated"
SKIPPED = "skipped"
FAILED = "failed"
CONFLICT = "conflict"


class BatchMigrationExecutor:
    """
    Migrates (or reverts) the documents of a collection in resumable batches.

    Usage:
        executor = BatchMigrationExecutor(db, registry)
        record = await executor.run("trades")
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        registry: MigrationRegistry,
        batch_size: Optional[int] = None,
        workers: Optional[int] = None,
        max_batch_attempts: Optional[int] = None,
    ):
        self._db = db
        self._registry = registry
        self._progress = db[PROGRESS_COLLECTION]
        self._batch_size = batch_size or settings.migration_batch_size
        self._workers = max(1, workers or settings.migration_workers)
        self._max_batch_attempts = max_batch_attempts or settings.migration_max_batch_attempts
        self._pause_events: dict[str, asyncio.Event] = {}
        self._running: set[str] = set()

    # ------------------------------------------------------------------
    # Operator API
    # ------------------------------------------------------------------

    async def status(
        self, collection: str, target_version: SchemaVersion = SchemaVersion.NEW
    ) -> Optional[ProgressRecord]:
        """Persisted progress of the collection's run, if any."""
        document = await self._load_progress(progress_record_id(collection, target_version))
        return ProgressRecord.from_dict(document) if document else None

    async def remaining(self, collection: str, target_version: SchemaVersion = SchemaVersion.NEW) -> int:
        """Documents not yet on the target schema."""
        if target_version is SchemaVersion.NEW:
            condition = {SCHEMA_VERSION_FIELD: {"$ne": SchemaVersion.NEW.value}}
        else:
            condition = {SCHEMA_VERSION_FIELD: SchemaVersion.NEW.value}
        return await self._db[collection].count_documents(condition)

    async def request_pause(self, collection: str, target_version: SchemaVersion = SchemaVersion.NEW) -> bool:
        """
        Ask a run to stop after its current batch.

        Works for runs in this process and, through the progress record, in any
        other process.
        """
        record_id = progress_record_id(collection, target_version)
        if record_id in self._pause_events:
            self._pause_events[record_id].set()
        result = await self._progress.update_one(
            {"_id": record_id, "status": RunStatus.RUNNING.value},
            {"$set": {"pause_requested": True}},
        )
        logger.info(
            "Pause requested for {collection}",
            collection=collection,
            target_version=target_version.value,
            event_type="migration_pause_requested",
        )
        return result.matched_count == 1 or record_id in self._running

    async def run(
        self,
        collection: str,
        batch_size: Optional[int] = None,
        resume_from_cursor: Any = None,
        target_version: SchemaVersion = SchemaVersion.NEW,
        dry_run: bool = False,
    ) -> ProgressRecord:
        """
        Migrate a collection to ``target_version``.

        A paused, failed or interrupted run resumes from its persisted cursor;
        ``resume_from_cursor`` overrides that cursor. A dry run transforms and
        counts without writing documents or progress.

        Raises:
            PolicyViolation: If the collection's policy does not write the target schema.
            ConcurrentWriteConflict: If this process already runs the collection.
        """
        codec = get_codec(collection)
        batch_size = batch_size or self._batch_size
        if not dry_run:
            await self._registry.refresh()
            self._registry.assert_write_allowed(collection, target_version)

        record_id = progress_record_id(collection, target_version)
        if record_id in self._running:
            raise ConcurrentWriteConflict(f"A run for {record_id} is already in progress", collection=collection)
        self._running.add(record_id)
        pause_event = self._pause_events.setdefault(record_id, asyncio.Event())
        pause_event.clear()

        try:
            record = await self._start_record(collection, target_version, resume_from_cursor, dry_run)
            return await self._run_batches(codec, record, batch_size, pause_event)
        finally:
            self._running.discard(record_id)
            self._pause_events.pop(record_id, None)

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def _start_record(
        self, collection: str, target_version: SchemaVersion, resume_from_cursor: Any, dry_run: bool
    ) -> ProgressRecord:
        now = datetime.utcnow()
        existing = None if dry_run else await self.status(collection, target_version)

        if existing is not None and existing.resumable:
            record = existing
            logger.info(
                "Resuming {collection} migration from cursor {cursor}",
                collection=collection,
                cursor=str(resume_from_cursor if resume_from_cursor is not None else record.last_cursor),
                previous_status=record.status.value,
                event_type="migration_resumed",
            )
        else:
            record = ProgressRecord(collection=collection, target_version=target_version, started_at=now)

        if resume_from_cursor is not None:
            record.last_cursor = resume_from_cursor
        record.status = RunStatus.RUNNING
        record.dry_run = dry_run
        record.completed_at = None
        record.last_error = None
        record.pause_requested = False

        if not dry_run:
            await self._save_progress(record, clear_pause=True)
        logger.info(
            "Migration run started for {collection}",
            collection=collection,
            target_version=target_version.value,
            dry_run=dry_run,
            event_type="migration_started",
        )
        return record

    async def _run_batches(
        self, codec: EntityCodec, record: ProgressRecord, batch_size: int, pause_event: asyncio.Event
    ) -> ProgressRecord:
        run_id = uuid4().hex
        collection = record.collection

        while True:
            if pause_event.is_set() or await self._pause_flagged(record):
                record.status = RunStatus.PAUSED
                await self._save_progress(record, clear_pause=True)
                logger.info(
                    "Migration of {collection} paused at cursor {cursor}",
                    collection=collection,
                    cursor=str(record.last_cursor),
                    event_type="migration_paused",
                )
                return record

            if not record.dry_run and await self._policy_changed(record):
                record.status = RunStatus.PAUSED
                record.last_error = "Collection policy no longer writes the target schema"
                await self._save_progress(record, clear_pause=True)
                logger.warning(
                    "Migration of {collection} stopped: policy changed",
                    collection=collection,
                    event_type="migration_policy_changed",
                )
                return record

            outcomes: dict[str, tuple[str, Optional[str]]] = {}
            started = asyncio.get_running_loop().time()
            try:
                batch = await retry_with_backoff(
                    self._process_batch,
                    codec,
                    record,
                    batch_size,
                    run_id,
                    outcomes,
                    max_retries=self._max_batch_attempts - 1,
                    on_retry=lambda attempt, error: MIGRATION_BATCH_RETRIES.labels(collection=collection).inc(),
                )
            except MaxRetriesExceededError as e:
                return await self._fail(record, e)

            if batch is None:
                record.status = RunStatus.COMPLETED
                record.completed_at = datetime.utcnow()
                await self._save_progress(record)
                logger.info(
                    "Migration of {collection} completed",
                    collection=collection,
                    migrated=record.migrated,
                    skipped=record.skipped,
                    failed=record.failed,
                    conflicts=record.conflicts,
                    event_type="migration_completed",
                )
                return record

            MIGRATION_BATCH_DURATION.labels(collection=collection).observe(
                asyncio.get_running_loop().time() - started
            )
            logger.info(
                "Batch {batch} of {collection} committed",
                batch=record.batches,
                collection=collection,
                size=len(batch),
                processed=record.processed,
                event_type="migration_batch_committed",
            )

    async def _process_batch(
        self,
        codec: EntityCodec,
        record: ProgressRecord,
        batch_size: int,
        run_id: str,
        outcomes: dict[str, tuple[str, Optional[str]]],
    ) -> Optional[list[dict]]:
        """
        Read, transform and commit one batch, then persist progress.

        Retried as a unit on StoreUnavailable; ``outcomes`` survives retries so
        documents handled by an earlier attempt are not transformed again.
        """
        batch = await self._read_batch(record.collection, record.last_cursor, batch_size)
        if not batch:
            return None

        slices = self._slices(batch)
        results = await asyncio.gather(
            *(self._process_slice(codec, part, record, run_id, outcomes) for part in slices),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

        updated = replace(record, errors=list(record.errors))
        for raw in batch:
            outcome, error = outcomes[str(raw["_id"])]
            if outcome == MIGRATED:
                updated.migrated += 1
            elif outcome == SKIPPED:
                updated.skipped += 1
            elif outcome == CONFLICT:
                updated.conflicts += 1
            else:
                updated.failed += 1
                updated.errors.append({"_id": str(raw["_id"]), "error": error, "at": datetime.utcnow()})
        updated.errors = updated.errors[-settings.migration_error_sample_size :]
        updated.last_cursor = batch[-1]["_id"]
        updated.batches += 1

        # The record only advances once its progress is stored
        await self._save_progress(updated)
        vars(record).update(vars(updated))

        for raw in batch:
            MIGRATION_DOCUMENTS.labels(collection=record.collection, outcome=outcomes[str(raw["_id"])][0]).inc()
        return batch

    def _slices(self, batch: list[dict]) -> list[list[dict]]:
        """Split a batch into contiguous, disjoint slices, one per worker."""
        count = min(self._workers, len(batch))
        size, extra = divmod(len(batch), count)
        slices, start = [], 0
        for index in range(count):
            end = start + size + (1 if index < extra else 0)
            slices.append(batch[start:end])
            start = end
        return slices

    async def _process_slice(
        self,
        codec: EntityCodec,
        part: list[dict],
        record: ProgressRecord,
        run_id: str,
        outcomes: dict[str, tuple[str, Optional[str]]],
    ) -> None:
        for raw in part:
            key = str(raw["_id"])
            if key in outcomes:
                continue
            outcomes[key] = await self._migrate_document(codec, raw, record, run_id)

    async def _migrate_document(
        self, codec: EntityCodec, raw: dict, record: ProgressRecord, run_id: str
    ) -> tuple[str, Optional[str]]:
        target = record.target_version
        try:
            if schema_version_of(raw) is target:
                return SKIPPED, None
            if target is SchemaVersion.NEW:
                transformed = codec.upgrade(raw)
            else:
                transformed = codec.downgrade(raw)
        except (TransformationError, IdentityViolation) as e:
            logger.warning(
                "Cannot transform {collection} document {document_id}",
                collection=record.collection,
                document_id=str(raw.get("_id")),
                error=e.message,
                error_code=e.error_code,
                event_type="migration_transform_failed",
            )
            return FAILED, e.message

        if record.dry_run:
            return MIGRATED, None

        now = datetime.utcnow()
        transformed[REVISION_FIELD] = raw.get(REVISION_FIELD, 0) + 1
        transformed["migrationRun"] = run_id
        if target is SchemaVersion.NEW:
            transformed["migratedAt"] = now
            version_condition: Any = {"$ne": SchemaVersion.NEW.value}
        else:
            transformed["revertedAt"] = now
            version_condition = SchemaVersion.NEW.value

        condition = {**revision_filter(raw), SCHEMA_VERSION_FIELD: version_condition}
        if not await self._replace(record.collection, condition, transformed):
            logger.info(
                "{collection} document {document_id} changed during migration; skipped",
                collection=record.collection,
                document_id=str(raw["_id"]),
                event_type="migration_write_conflict",
            )
            return CONFLICT, None
        return MIGRATED, None

    async def _fail(self, record: ProgressRecord, error: MaxRetriesExceededError) -> ProgressRecord:
        record.status = RunStatus.FAILED
        record.last_error = str(error.last_error)
        logger.error(
            "Migration of {collection} failed after {attempts} attempts",
            collection=record.collection,
            attempts=error.attempts,
            cursor=str(record.last_cursor),
            error=record.last_error,
            event_type="migration_failed",
        )
        try:
            await self._save_progress(record)
        except StoreUnavailable as e:
            logger.error(
                "Could not persist failed status for {collection}",
                collection=record.collection,
                error=str(e),
                event_type="migration_progress_save_failed",
            )
        await raise_alert(
            "executor_failed",
            f"Batch migration of {record.collection} failed: {record.last_error}",
            collection=record.collection,
            cursor=record.last_cursor,
        )
        return record

    async def _policy_changed(self, record: ProgressRecord) -> bool:
        try:
            await self._registry.refresh()
        except StoreUnavailable as e:
            logger.warning(
                "Could not refresh registry during {collection} migration",
                collection=record.collection,
                error=str(e),
                event_type="migration_registry_refresh_failed",
            )
        try:
            self._registry.assert_write_allowed(record.collection, record.target_version)
        except PolicyViolation:
            return True
        return False

    # ------------------------------------------------------------------
    # Store access
    # ------------------------------------------------------------------

    @translate_store_errors
    async def _read_batch(self, collection: str, cursor: Any, batch_size: int) -> list[dict]:
        found = self._db[collection].find(after_id(cursor)).sort("_id", 1).limit(batch_size)
        return await found.to_list(length=batch_size)

    @translate_store_errors
    async def _replace(self, collection: str, condition: dict, document: dict) -> bool:
        result = await self._db[collection].replace_one(condition, document)
        return result.matched_count == 1

    @translate_store_errors
    async def _load_progress(self, record_id: str) -> Optional[dict]:
        return await self._progress.find_one({"_id": record_id})

    async def _pause_flagged(self, record: ProgressRecord) -> bool:
        if record.dry_run:
            return False
        try:
            document = await self._load_progress(record.record_id)
        except StoreUnavailable as e:
            logger.warning(
                "Could not read pause flag for {collection}",
                collection=record.collection,
                error=str(e),
                event_type="migration_pause_check_failed",
            )
            return False
        return bool(document and document.get("pause_requested"))

    @translate_store_errors
    async def _save_progress(self, record: ProgressRecord, clear_pause: bool = False) -> None:
        if record.dry_run:
            return
        record.updated_at = datetime.utcnow()
        document = record.to_dict()
        document.pop("_id")
        if not clear_pause:
            document.pop("pause_requested")
        await self._progress.update_one({"_id": record.record_id}, {"$set": document}, upsert=True)
