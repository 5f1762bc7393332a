"""
Migration monitoring jobs.

Jobs for registry refresh, consistency sampling, health checks with automatic
rollback, and redrive of pending side effects.
"""

from datetime import datetime

from schema_compat.log.logging import logger
from schema_compat.migrations.models import MigrationPhase
from schema_compat.services import MigrationServices

HEALTH_CHECKED_PHASES = frozenset(
    {MigrationPhase.DUAL_SCHEMA, MigrationPhase.BACKFILLING, MigrationPhase.CUTOVER}
)


def _elapsed_ms(start_time: datetime) -> int:
    return int((datetime.utcnow() - start_time).total_seconds() * 1000)


async def refresh_registry(services: MigrationServices) -> dict:
    """Pick up phase and policy changes made by other processes."""
    state = await services.registry.refresh()
    return {"phase": state.phase.value, "version": state.version}


async def sample_consistency(services: MigrationServices) -> dict:
    """Compare legacy and new read paths on recently touched documents."""
    start_time = datetime.utcnow()
    registry = services.registry
    results = {}

    try:
        for collection in registry.collections:
            if not registry.reads_both_shapes(collection):
                continue
            results[collection] = await services.sampler.sample(collection)

        logger.debug(
            "Consistency sampling finished",
            results=results,
            duration_ms=_elapsed_ms(start_time),
            event_type="consistency_sampling_ok",
        )
        return results

    except Exception as e:
        logger.error(
            "Consistency sampling failed: {error}",
            error=str(e),
            duration_ms=_elapsed_ms(start_time),
            event_type="consistency_sampling_failed",
        )
        raise


async def run_health_checks(services: MigrationServices) -> dict:
    """
    Evaluate collection health during the transition.

    A breach in dual-schema or backfilling triggers automatic rollback.
    """
    start_time = datetime.utcnow()
    phase = services.registry.phase
    if phase not in HEALTH_CHECKED_PHASES:
        return {"skipped": True, "phase": phase.value}

    try:
        reports = await services.monitor.evaluate()
        result = {
            "phase": services.registry.phase.value,
            "reports": [report.to_dict() for report in reports],
        }
        logger.info(
            "Health checks finished in phase {phase}",
            phase=result["phase"],
            collections=len(reports),
            duration_ms=_elapsed_ms(start_time),
            event_type="migration_health_checked",
        )
        return result

    except Exception as e:
        logger.error(
            "Health checks failed: {error}",
            error=str(e),
            duration_ms=_elapsed_ms(start_time),
            event_type="migration_health_check_failed",
        )
        raise


async def redrive_side_effects(services: MigrationServices) -> dict:
    """Retry side effects left pending by failed dispatches."""
    results = {}
    for collection in services.registry.collections:
        results[collection] = await services.dispatcher.redrive(collection)
    return results
