"""
Prometheus metrics for migration monitoring.

This module provides metrics collection for:
- Compatibility adapter operations (count, latency, errors)
- Batch migration executor outcomes and batch latency
- Registry phase, inconsistencies, rollbacks and side effects
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from schema_compat.core.config import settings

# =============================================================================
# Service Info
# =============================================================================

SERVICE_INFO = Info("schema_compat_service", "Information about the schema compatibility service")
SERVICE_INFO.info(
    {"version": "1.0.0", "service_name": settings.service_name, "environment": settings.environment}
)


# =============================================================================
# Adapter Metrics
# =============================================================================

ADAPTER_OPERATIONS = Counter(
    "adapter_operations_total",
    "Total compatibility adapter operations",
    ["collection", "operation", "status"],  # success, error
)

ADAPTER_OPERATION_DURATION = Histogram(
    "adapter_operation_duration_seconds",
    "Compatibility adapter operation duration in seconds",
    ["collection", "operation"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

LEGACY_NORMALIZATIONS = Counter(
    "legacy_normalizations_total",
    "Documents normalized from the legacy shape at read time",
    ["collection"],
)


# =============================================================================
# Executor Metrics
# =============================================================================

MIGRATION_DOCUMENTS = Counter(
    "migration_documents_total",
    "Documents processed by the batch migration executor",
    ["collection", "outcome"],  # migrated, skipped, failed, conflict
)

MIGRATION_BATCH_DURATION = Histogram(
    "migration_batch_duration_seconds",
    "Time taken to process one migration batch",
    ["collection"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

MIGRATION_BATCH_RETRIES = Counter(
    "migration_batch_retries_total", "Batch-level retries after store errors", ["collection"]
)


# =============================================================================
# Registry, Monitoring and Rollback Metrics
# =============================================================================

REGISTRY_PHASE = Gauge("migration_registry_phase", "Current migration phase (1 = active)", ["phase"])

INCONSISTENCIES = Counter(
    "migration_inconsistencies_total",
    "Legacy/new read path mismatches found by the sampler",
    ["collection"],
)

ROLLBACKS = Counter("migration_rollbacks_total", "Rollbacks triggered", ["trigger"])

ALERTS = Counter("migration_alerts_total", "Operator alerts raised", ["severity", "category"])

SIDE_EFFECT_FAILURES = Counter(
    "side_effect_failures_total", "Deferred side effects that failed to apply", ["effect"]
)


def set_phase_gauge(current: str, phases: list[str]) -> None:
    """Mark the current phase as active in the phase gauge."""
    for phase in phases:
        REGISTRY_PHASE.labels(phase=phase).set(1 if phase == current else 0)


def get_metrics() -> tuple[bytes, str]:
    """Render the metrics registry in Prometheus text format."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
