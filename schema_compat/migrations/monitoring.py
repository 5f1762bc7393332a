"""
Migration health monitoring.

This module provides:
- Rolling-window adapter operation stats (error rate, p95 latency)
- A consistency sampler comparing the legacy and new read paths
- The health monitor that evaluates both and triggers automatic rollback
"""

import math
import time
from collections import deque
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from schema_compat.core.config import settings
from schema_compat.core.exceptions import (
    ConcurrentWriteConflict,
    IdentityViolation,
    InconsistencyDetected,
    PhaseTransitionError,
    StoreUnavailable,
    TransformationError,
)
from schema_compat.core.metrics import INCONSISTENCIES
from schema_compat.core.retry import translate_store_errors
from schema_compat.entities import get_codec
from schema_compat.entities.base import EntityCodec
from schema_compat.log.logging import logger
from schema_compat.migrations.models import HealthReport, MigrationPhase
from schema_compat.migrations.registry import MigrationRegistry

if TYPE_CHECKING:
    from schema_compat.migrations.rollback import RollbackManager

MONITORED_PHASES = frozenset({MigrationPhase.DUAL_SCHEMA, MigrationPhase.BACKFILLING})


def percentile(values: list[float], pct: float) -> float:
    """Nearest-rank percentile; 0.0 for no values."""
    if not values:
        return 0.0
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100 * len(ordered)))
    return ordered[rank - 1]


class OperationStats:
    """
    Rolling window of adapter operations per collection.

    Adapters record every operation and the ids of documents they touched;
    the health monitor reads error rate and latency, and the sampler reads the
    recently touched ids.
    """

    def __init__(
        self,
        window_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        touched_capacity: int = 1000,
    ):
        self._window = settings.health_window_seconds if window_seconds is None else window_seconds
        self._clock = clock
        self._operations: dict[str, deque] = {}
        self._touched: dict[str, deque] = {}
        self._touched_capacity = touched_capacity

    def record(self, collection: str, operation: str, duration_ms: float, ok: bool) -> None:
        events = self._operations.setdefault(collection, deque())
        events.append((self._clock(), operation, duration_ms, ok))
        self._evict(events)

    def touch(self, collection: str, document_id: Any) -> None:
        touched = self._touched.setdefault(collection, deque(maxlen=self._touched_capacity))
        touched.append(document_id)

    def recent_ids(self, collection: str, limit: int) -> list[Any]:
        """Most recently touched document ids, newest first, without duplicates."""
        seen: set = set()
        ids = []
        for document_id in reversed(self._touched.get(collection, ())):
            key = str(document_id)
            if key in seen:
                continue
            seen.add(key)
            ids.append(document_id)
            if len(ids) >= limit:
                break
        return ids

    def summary(self, collection: str) -> dict[str, float]:
        """Operations, error rate and p95 latency within the window."""
        events = self._operations.get(collection, deque())
        self._evict(events)
        total = len(events)
        errors = sum(1 for event in events if not event[3])
        return {
            "operations": total,
            "errors": errors,
            "error_rate": errors / total if total else 0.0,
            "p95_latency_ms": percentile([event[2] for event in events], 95),
        }

    def reset(self, collection: Optional[str] = None) -> None:
        if collection is None:
            self._operations.clear()
            self._touched.clear()
        else:
            self._operations.pop(collection, None)
            self._touched.pop(collection, None)

    def _evict(self, events: deque) -> None:
        cutoff = self._clock() - self._window
        while events and events[0][0] < cutoff:
            events.popleft()


class ConsistencySampler:
    """
    Re-reads recently touched documents through both read paths.

    A document is consistent when normalizing what a legacy-only reader sees
    yields the same entity as normalizing what a new-shape-only reader sees.
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        stats: OperationStats,
        window_seconds: Optional[int] = None,
        sample_size: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._db = db
        self._stats = stats
        self._window = settings.health_window_seconds if window_seconds is None else window_seconds
        self._sample_size = settings.health_sample_size if sample_size is None else sample_size
        self._clock = clock
        self._samples: dict[str, deque] = {}

    def check_document(self, codec: EntityCodec, raw: dict) -> None:
        """
        Raises:
            InconsistencyDetected: If the two read paths disagree or one cannot read the document.
        """
        try:
            legacy = codec.normalize(codec.legacy_view(raw)).comparable()
            new = codec.normalize(codec.new_view(raw)).comparable()
        except (TransformationError, IdentityViolation) as e:
            raise InconsistencyDetected(
                f"{codec.collection} document {raw.get('_id')} unreadable on one path: {e.message}",
                collection=codec.collection,
                document_id=raw.get("_id"),
            ) from e

        if legacy != new:
            differing = sorted(k for k in set(legacy) | set(new) if legacy.get(k) != new.get(k))
            raise InconsistencyDetected(
                f"{codec.collection} document {raw.get('_id')} differs between read paths",
                collection=codec.collection,
                document_id=raw.get("_id"),
                fields=differing,
            )

    @translate_store_errors
    async def sample(self, collection: str) -> dict[str, int]:
        """Sample one round of documents; returns sampled and mismatched counts."""
        codec = get_codec(collection)
        coll = self._db[collection]
        documents: list[dict] = []

        ids = self._stats.recent_ids(collection, self._sample_size)
        if ids:
            documents = await coll.find({"_id": {"$in": ids}}).to_list(length=len(ids))

        remaining = self._sample_size - len(documents)
        if remaining > 0:
            since = datetime.utcnow() - timedelta(seconds=settings.health_recent_seconds)
            seen = {str(document["_id"]) for document in documents}
            cursor = coll.find({"updatedAt": {"$gte": since}}).sort("updatedAt", -1).limit(remaining)
            async for document in cursor:
                if str(document["_id"]) not in seen:
                    documents.append(document)

        mismatches = 0
        for raw in documents:
            try:
                self.check_document(codec, raw)
            except InconsistencyDetected as e:
                mismatches += 1
                INCONSISTENCIES.labels(collection=collection).inc()
                logger.warning(
                    "Read paths disagree: {detail}",
                    detail=e.message,
                    collection=collection,
                    document_id=str(raw.get("_id")),
                    fields=e.context.get("fields"),
                    event_type="inconsistency_detected",
                )

        samples = self._samples.setdefault(collection, deque())
        samples.append((self._clock(), len(documents), mismatches))
        self._evict(samples)
        return {"sampled": len(documents), "mismatches": mismatches}

    def window(self, collection: str) -> dict[str, float]:
        """Sampled documents, mismatches and mismatch rate within the window."""
        samples = self._samples.get(collection, deque())
        self._evict(samples)
        sampled = sum(entry[1] for entry in samples)
        mismatches = sum(entry[2] for entry in samples)
        return {
            "sampled": sampled,
            "mismatches": mismatches,
            "rate": mismatches / sampled if sampled else 0.0,
        }

    def _evict(self, samples: deque) -> None:
        cutoff = self._clock() - self._window
        while samples and samples[0][0] < cutoff:
            samples.popleft()


class HealthMonitor:
    """
    Evaluates collection health and triggers automatic rollback.

    Usage:
        monitor = HealthMonitor(registry, stats, sampler, rollback_manager)
        await monitor.evaluate()
    """

    def __init__(
        self,
        registry: MigrationRegistry,
        stats: OperationStats,
        sampler: ConsistencySampler,
        rollback: Optional["RollbackManager"] = None,
    ):
        self._registry = registry
        self._stats = stats
        self._sampler = sampler
        self._rollback = rollback

    async def check_health(self, collection: str) -> HealthReport:
        """Current health of a collection from operation stats and sampler results."""
        operations = self._stats.summary(collection)
        samples = self._sampler.window(collection)
        return HealthReport(
            collection=collection,
            error_rate=operations["error_rate"],
            p95_latency_ms=operations["p95_latency_ms"],
            inconsistency_count=int(samples["mismatches"]),
            inconsistency_rate=samples["rate"],
            operations=int(operations["operations"]),
            sampled=int(samples["sampled"]),
            checked_at=datetime.utcnow(),
        )

    def breaches(self, report: HealthReport) -> list[str]:
        """Threshold breaches in a report; empty when healthy."""
        reasons = []
        if report.operations >= settings.health_min_operations and (
            report.error_rate > settings.health_error_rate_threshold
        ):
            reasons.append(
                f"error rate {report.error_rate:.2%} over {settings.health_error_rate_threshold:.2%}"
            )
        if report.sampled and report.inconsistency_rate > settings.health_inconsistency_rate_threshold:
            reasons.append(
                f"inconsistency rate {report.inconsistency_rate:.2%} over "
                f"{settings.health_inconsistency_rate_threshold:.2%}"
            )
        if report.inconsistency_count >= settings.health_inconsistency_count_threshold:
            reasons.append(f"{report.inconsistency_count} inconsistencies in window")
        return reasons

    async def evaluate(self, collections: Optional[list[str]] = None) -> list[HealthReport]:
        """
        Check every collection, persist the reports and roll back on a breach.

        Rollback only fires while the migration is in dual-schema or
        backfilling; later phases need an operator decision.
        """
        reports = []
        for collection in collections or self._registry.collections:
            report = await self.check_health(collection)
            reports.append(report)
            try:
                await self._registry.record_health_check(report)
            except (ConcurrentWriteConflict, StoreUnavailable) as e:
                logger.warning(
                    "Could not persist health report for {collection}: {error}",
                    collection=collection,
                    error=e.message,
                    event_type="health_check_persist_failed",
                )

            reasons = self.breaches(report)
            if not reasons:
                logger.debug(
                    "Health check passed for {collection}",
                    collection=collection,
                    error_rate=report.error_rate,
                    p95_latency_ms=report.p95_latency_ms,
                    inconsistency_rate=report.inconsistency_rate,
                    event_type="health_check_ok",
                )
                continue

            logger.warning(
                "Health check failed for {collection}: {reasons}",
                collection=collection,
                reasons="; ".join(reasons),
                event_type="health_check_failed",
            )
            if self._rollback is not None and self._registry.phase in MONITORED_PHASES:
                try:
                    await self._rollback.trigger(
                        reason=f"{collection}: " + "; ".join(reasons),
                        trigger="automatic",
                    )
                except PhaseTransitionError as e:
                    logger.error(
                        "Automatic rollback refused: {error}",
                        error=e.message,
                        event_type="automatic_rollback_refused",
                    )
                break
        return reports
