"""
Index readiness verification.

Before any document is migrated, every secondary index the new-schema query
shapes depend on must exist, be fully built, and actually answer queries fast
in every deployment environment. Metadata alone is not trusted: each index is
also probed with a small query and its plan inspected for collection scans.
"""

import time
from collections.abc import Callable
from datetime import datetime
from typing import Any, Iterable, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from schema_compat.core.config import settings
from schema_compat.core.database import get_database
from schema_compat.core.exceptions import VerificationFailure
from schema_compat.core.retry import MaxRetriesExceededError, retry_with_backoff, translate_store_errors
from schema_compat.entities import CODECS
from schema_compat.entities.base import EntityCodec, IndexSpec
from schema_compat.log.logging import logger
from schema_compat.migrations.models import AGGREGATE_ENVIRONMENT, VerificationResult


def _plan_stages(plan: Any) -> Iterable[str]:
    """Every stage name in an explain() plan tree."""
    if isinstance(plan, dict):
        stage = plan.get("stage")
        if isinstance(stage, str):
            yield stage
        for value in plan.values():
            yield from _plan_stages(value)
    elif isinstance(plan, list):
        for item in plan:
            yield from _plan_stages(item)


def uses_collection_scan(explanation: dict) -> bool:
    """Whether the winning plan of an explain() result scans the collection."""
    planner = explanation.get("queryPlanner", explanation)
    return "COLLSCAN" in set(_plan_stages(planner.get("winningPlan", {})))


class IndexVerifier:
    """
    Verifies index readiness for every collection under migration.

    Usage:
        verifier = IndexVerifier()
        result = await verifier.verify_all()
        if not result.ready:
            ...
    """

    def __init__(
        self,
        database_factory: Callable[[Optional[str]], AsyncIOMotorDatabase] = get_database,
        codecs: Optional[list[EntityCodec]] = None,
        latency_threshold_ms: Optional[float] = None,
        probe_limit: Optional[int] = None,
    ):
        self._database_factory = database_factory
        if codecs is None:
            codecs = [CODECS[name] for name in settings.migration_collections if name in CODECS]
        self._codecs = codecs
        self._latency_threshold_ms = (
            settings.verify_latency_threshold_ms if latency_threshold_ms is None else latency_threshold_ms
        )
        self._probe_limit = settings.verify_probe_limit if probe_limit is None else probe_limit

    @property
    def required_indexes(self) -> list[IndexSpec]:
        return [spec for codec in self._codecs for spec in codec.required_indexes()]

    async def verify(self, environment: Optional[str] = None) -> VerificationResult:
        """
        Verify index readiness in one environment.

        An unreachable environment is reported as not ready with every
        required index missing.
        """
        environment = environment or settings.environment
        try:
            return await retry_with_backoff(self._verify, environment)
        except MaxRetriesExceededError as e:
            logger.error(
                "Index verification could not reach environment {environment}",
                environment=environment,
                error=str(e.last_error),
                event_type="index_verification_unreachable",
            )
            return VerificationResult(
                environment=environment,
                ready=False,
                missing_indexes=tuple(self.required_indexes),
            )

    async def verify_environments(self, environments: Optional[Iterable[str]] = None) -> dict[str, VerificationResult]:
        """Verify each configured environment in turn."""
        names = list(environments or settings.verify_environments)
        return {name: await self.verify(name) for name in names}

    async def verify_all(self, environments: Optional[Iterable[str]] = None) -> VerificationResult:
        """Aggregate verification: ready only if every environment is ready."""
        results = await self.verify_environments(environments)
        return aggregate_results(results)

    @translate_store_errors
    async def _verify(self, environment: str) -> VerificationResult:
        db = self._database_factory(environment)
        missing: list[IndexSpec] = []
        slow: list[str] = []
        latencies: dict[str, float] = {}

        by_collection: dict[str, list[IndexSpec]] = {}
        for spec in self.required_indexes:
            by_collection.setdefault(spec.collection, []).append(spec)

        for collection_name, specs in by_collection.items():
            collection = db[collection_name]
            deployed = [index async for index in collection.list_indexes()]
            ready_patterns = [dict(index["key"]) for index in deployed if "buildUUID" not in index]
            building_patterns = [dict(index["key"]) for index in deployed if "buildUUID" in index]

            for spec in specs:
                if not any(spec.matches(pattern) for pattern in ready_patterns):
                    state = "building" if any(spec.matches(p) for p in building_patterns) else "absent"
                    logger.warning(
                        "Required index {index} is {state} in {environment}",
                        index=spec.query_name,
                        state=state,
                        environment=environment,
                        event_type="index_missing",
                    )
                    missing.append(spec)
                    continue

                latency_ms, scanned = await self._probe(collection, spec)
                latencies[spec.query_name] = latency_ms
                if latency_ms > self._latency_threshold_ms:
                    slow.append(spec.query_name)
                if scanned or latency_ms > self._latency_threshold_ms:
                    logger.warning(
                        "Probe for {index} in {environment} took {latency_ms}ms",
                        index=spec.query_name,
                        environment=environment,
                        latency_ms=round(latency_ms, 1),
                        collection_scan=scanned,
                        event_type="index_probe_failed",
                    )
                    missing.append(spec)

            expected_names = {spec.name for spec in specs}
            unexpected = [index["name"] for index in deployed if index["name"] not in expected_names | {"_id_"}]
            if unexpected:
                logger.debug(
                    "Unexpected indexes on {collection}",
                    collection=collection_name,
                    indexes=unexpected,
                    event_type="index_unexpected",
                )

        result = VerificationResult(
            environment=environment,
            ready=not missing,
            missing_indexes=tuple(missing),
            slow_queries=tuple(slow),
            checked_at=datetime.utcnow(),
            latencies_ms=latencies,
        )
        logger.info(
            "Index verification for {environment}: ready={ready}",
            environment=environment,
            ready=result.ready,
            missing=[spec.query_name for spec in missing],
            slow_queries=slow,
            event_type="index_verification_completed",
        )
        return result

    async def _probe(self, collection, spec: IndexSpec) -> tuple[float, bool]:
        """Run the probe query; returns (latency ms, answered by a collection scan)."""
        cursor = collection.find(spec.probe_filter).limit(self._probe_limit)
        if spec.probe_sort:
            cursor = cursor.sort(list(spec.probe_sort))

        started = time.perf_counter()
        await cursor.to_list(length=self._probe_limit)
        latency_ms = (time.perf_counter() - started) * 1000

        plan_cursor = collection.find(spec.probe_filter).limit(self._probe_limit)
        if spec.probe_sort:
            plan_cursor = plan_cursor.sort(list(spec.probe_sort))
        explanation = await plan_cursor.explain()
        return latency_ms, uses_collection_scan(explanation)


def aggregate_results(results: dict[str, VerificationResult]) -> VerificationResult:
    """
    Combine per-environment results into one; missing specs are de-duplicated.

    Only a combination covering every configured environment is labelled
    ``AGGREGATE_ENVIRONMENT``, the label the dual-schema gate accepts.
    """
    missing: dict[tuple[str, str], IndexSpec] = {}
    slow: list[str] = []
    latencies: dict[str, float] = {}
    for environment, result in results.items():
        for spec in result.missing_indexes:
            missing.setdefault((spec.collection, spec.name), spec)
        slow.extend(f"{environment}:{name}" for name in result.slow_queries)
        latencies.update({f"{environment}:{name}": ms for name, ms in result.latencies_ms.items()})

    covered = bool(results) and set(results) >= set(settings.verify_environments)
    return VerificationResult(
        environment=AGGREGATE_ENVIRONMENT if covered else ",".join(sorted(results)),
        ready=bool(results) and all(result.ready for result in results.values()),
        missing_indexes=tuple(missing.values()),
        slow_queries=tuple(slow),
        checked_at=datetime.utcnow(),
        latencies_ms=latencies,
    )


def require_ready(result: VerificationResult) -> VerificationResult:
    """
    Raises:
        VerificationFailure: If the verification result is not ready.
    """
    if not result.ready:
        raise VerificationFailure(
            f"Index verification failed for {result.environment}",
            environment=result.environment,
            missing=[spec.query_name for spec in result.missing_indexes],
            slow_queries=list(result.slow_queries),
        )
    return result
