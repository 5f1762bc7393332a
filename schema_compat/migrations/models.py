"""
Migration data models and status tracking.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from schema_compat.entities.base import IndexSpec, SchemaVersion


class MigrationPhase(str, Enum):
    """Process-wide migration phase."""

    NOT_STARTED = "not-started"
    VERIFYING = "verifying"
    DUAL_SCHEMA = "dual-schema"
    BACKFILLING = "backfilling"
    CUTOVER = "cutover"
    LEGACY_ONLY = "legacy-only"
    ROLLED_BACK = "rolled-back"


class ReadPreference(str, Enum):
    LEGACY_FIRST = "legacy-first"
    NEW_FIRST = "new-first"


class RunStatus(str, Enum):
    """Status of a batch migration run for one collection."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class CollectionPolicy:
    """
    Schema-version policy of one collection.

    Attributes:
        write_schema: Shape every adapter write produces.
        read_preference: Which shape's query runs first.
    """

    write_schema: SchemaVersion = SchemaVersion.LEGACY
    read_preference: ReadPreference = ReadPreference.LEGACY_FIRST

    def to_dict(self) -> dict:
        return {"writeSchema": self.write_schema.value, "readPreference": self.read_preference.value}

    @classmethod
    def from_dict(cls, data: dict) -> "CollectionPolicy":
        return cls(
            write_schema=SchemaVersion(data.get("writeSchema", SchemaVersion.LEGACY.value)),
            read_preference=ReadPreference(data.get("readPreference", ReadPreference.LEGACY_FIRST.value)),
        )


PHASE_DEFAULT_POLICIES: dict[MigrationPhase, CollectionPolicy] = {
    MigrationPhase.NOT_STARTED: CollectionPolicy(SchemaVersion.LEGACY, ReadPreference.LEGACY_FIRST),
    MigrationPhase.VERIFYING: CollectionPolicy(SchemaVersion.LEGACY, ReadPreference.LEGACY_FIRST),
    MigrationPhase.DUAL_SCHEMA: CollectionPolicy(SchemaVersion.NEW, ReadPreference.LEGACY_FIRST),
    MigrationPhase.BACKFILLING: CollectionPolicy(SchemaVersion.NEW, ReadPreference.LEGACY_FIRST),
    MigrationPhase.CUTOVER: CollectionPolicy(SchemaVersion.NEW, ReadPreference.NEW_FIRST),
    MigrationPhase.LEGACY_ONLY: CollectionPolicy(SchemaVersion.LEGACY, ReadPreference.LEGACY_FIRST),
    MigrationPhase.ROLLED_BACK: CollectionPolicy(SchemaVersion.LEGACY, ReadPreference.LEGACY_FIRST),
}


# Environment name of a verification that covered every configured environment
AGGREGATE_ENVIRONMENT = "*"


@dataclass(frozen=True)
class VerificationResult:
    """
    Outcome of an index readiness verification.

    Attributes:
        environment: Environment checked; ``AGGREGATE_ENVIRONMENT`` for an aggregate
            over every configured environment, a comma-joined list for a partial one.
        ready: True only if every required index exists and answers fast.
        missing_indexes: Indexes absent, still building, or not used by the planner.
        slow_queries: Names of probe queries over the latency threshold.
        checked_at: When the verification ran.
        latencies_ms: Probe latency per query name.
    """

    environment: str
    ready: bool
    missing_indexes: tuple[IndexSpec, ...] = ()
    slow_queries: tuple[str, ...] = ()
    checked_at: datetime = field(default_factory=datetime.utcnow)
    latencies_ms: Mapping[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "environment": self.environment,
            "ready": self.ready,
            "missing_indexes": [spec.to_dict() for spec in self.missing_indexes],
            "slow_queries": list(self.slow_queries),
            "checked_at": self.checked_at,
            "latencies_ms": dict(self.latencies_ms),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "VerificationResult":
        return cls(
            environment=data["environment"],
            ready=data["ready"],
            missing_indexes=tuple(
                IndexSpec(
                    collection=spec["collection"],
                    name=spec["name"],
                    keys=tuple((k, int(v)) for k, v in spec["keys"]),
                )
                for spec in data.get("missing_indexes", [])
            ),
            slow_queries=tuple(data.get("slow_queries", [])),
            checked_at=data.get("checked_at") or datetime.utcnow(),
            latencies_ms=data.get("latencies_ms", {}),
        )


@dataclass(frozen=True)
class HealthReport:
    """
    Health of one collection over the rolling window.

    Attributes:
        collection: Collection checked.
        error_rate: Failed adapter operations / all adapter operations.
        p95_latency_ms: 95th percentile adapter operation latency.
        inconsistency_count: Sampler mismatches in the window.
        inconsistency_rate: Mismatches / sampled documents in the window.
        operations: Adapter operations in the window.
        sampled: Documents sampled in the window.
        checked_at: When the check ran.
    """

    collection: str
    error_rate: float
    p95_latency_ms: float
    inconsistency_count: int
    inconsistency_rate: float = 0.0
    operations: int = 0
    sampled: int = 0
    checked_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "collection": self.collection,
            "error_rate": self.error_rate,
            "p95_latency_ms": self.p95_latency_ms,
            "inconsistency_count": self.inconsistency_count,
            "inconsistency_rate": self.inconsistency_rate,
            "operations": self.operations,
            "sampled": self.sampled,
            "checked_at": self.checked_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HealthReport":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass(frozen=True)
class RegistryState:
    """
    Immutable snapshot of the migration registry.

    A new instance replaces the old one on every change or refresh, so readers
    never observe a partially updated state.
    """

    phase: MigrationPhase = MigrationPhase.NOT_STARTED
    policies: Mapping[str, CollectionPolicy] = field(default_factory=lambda: MappingProxyType({}))
    flags: Mapping[str, bool] = field(default_factory=lambda: MappingProxyType({}))
    last_verification: Optional[VerificationResult] = None
    last_health_check: Mapping[str, HealthReport] = field(default_factory=lambda: MappingProxyType({}))
    version: int = 0
    updated_at: Optional[datetime] = None

    def evolve(self, **changes: Any) -> "RegistryState":
        """Copy with changes; mappings are frozen."""
        for name in ("policies", "flags", "last_health_check"):
            if name in changes:
                changes[name] = MappingProxyType(dict(changes[name]))
        return replace(self, **changes)

    def to_dict(self) -> dict:
        """Convert to dictionary for MongoDB storage."""
        return {
            "phase": self.phase.value,
            "policies": {name: policy.to_dict() for name, policy in self.policies.items()},
            "flags": dict(self.flags),
            "last_verification": self.last_verification.to_dict() if self.last_verification else None,
            "last_health_check": {name: report.to_dict() for name, report in self.last_health_check.items()},
            "version": self.version,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RegistryState":
        """Create from MongoDB document."""
        verification = data.get("last_verification")
        return cls().evolve(
            phase=MigrationPhase(data.get("phase", MigrationPhase.NOT_STARTED.value)),
            policies={
                name: CollectionPolicy.from_dict(policy)
                for name, policy in (data.get("policies") or {}).items()
            },
            flags=data.get("flags") or {},
            last_verification=VerificationResult.from_dict(verification) if verification else None,
            last_health_check={
                name: HealthReport.from_dict(report)
                for name, report in (data.get("last_health_check") or {}).items()
            },
            version=data.get("version", 0),
            updated_at=data.get("updated_at"),
        )


@dataclass
class ProgressRecord:
    """
    Persisted progress of a batch migration run for one collection.

    Attributes:
        collection: Collection being migrated.
        target_version: Schema version documents are rewritten to.
        status: Current run status.
        last_cursor: ``_id`` of the last document of the last committed batch.
        migrated: Documents rewritten.
        failed: Documents whose transformation failed.
        skipped: Documents already on the target schema.
        conflicts: Documents changed concurrently; retried on the next run.
        batches: Batches committed.
        started_at: When the run started.
        completed_at: When the run completed.
        pause_requested: Operator asked the run to stop after its current batch.
        errors: Most recent per-document errors.
        last_error: Batch-level error that failed the run.
    """

    collection: str
    target_version: SchemaVersion = SchemaVersion.NEW
    status: RunStatus = RunStatus.IDLE
    last_cursor: Any = None
    migrated: int = 0
    failed: int = 0
    skipped: int = 0
    conflicts: int = 0
    batches: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    pause_requested: bool = False
    dry_run: bool = False
    errors: list[dict] = field(default_factory=list)
    last_error: Optional[str] = None

    @property
    def record_id(self) -> str:
        return progress_record_id(self.collection, self.target_version)

    @property
    def processed(self) -> int:
        return self.migrated + self.failed + self.skipped + self.conflicts

    @property
    def resumable(self) -> bool:
        return self.status in (RunStatus.RUNNING, RunStatus.PAUSED, RunStatus.FAILED)

    def to_dict(self) -> dict:
        """Convert to dictionary for MongoDB storage."""
        return {
            "_id": self.record_id,
            "collection": self.collection,
            "target_version": self.target_version.value,
            "status": self.status.value,
            "last_cursor": self.last_cursor,
            "migrated": self.migrated,
            "failed": self.failed,
            "skipped": self.skipped,
            "conflicts": self.conflicts,
            "batches": self.batches,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "updated_at": self.updated_at,
            "pause_requested": self.pause_requested,
            "dry_run": self.dry_run,
            "errors": self.errors,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProgressRecord":
        """Create from MongoDB document."""
        return cls(
            collection=data["collection"],
            target_version=SchemaVersion(data.get("target_version", SchemaVersion.NEW.value)),
            status=RunStatus(data.get("status", RunStatus.IDLE.value)),
            last_cursor=data.get("last_cursor"),
            migrated=data.get("migrated", 0),
            failed=data.get("failed", 0),
            skipped=data.get("skipped", 0),
            conflicts=data.get("conflicts", 0),
            batches=data.get("batches", 0),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            updated_at=data.get("updated_at"),
            pause_requested=data.get("pause_requested", False),
            dry_run=data.get("dry_run", False),
            errors=list(data.get("errors") or []),
            last_error=data.get("last_error"),
        )


def progress_record_id(collection: str, target_version: SchemaVersion) -> str:
    """One record per collection and direction; upgrades use the bare collection name."""
    if target_version is SchemaVersion.NEW:
        return collection
    return f"{collection}:revert"


@dataclass(frozen=True)
class BackupSnapshot:
    """
    Reference to an out-of-band backup taken before migration.

    Attributes:
        snapshot_id: Identifier assigned by the backup facility.
        location: Where the export lives (path or URL).
        created_at: When the snapshot was taken.
        collections: Collections the snapshot covers.
    """

    snapshot_id: str
    location: str
    created_at: datetime
    collections: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "_id": self.snapshot_id,
            "location": self.location,
            "created_at": self.created_at,
            "collections": list(self.collections),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BackupSnapshot":
        return cls(
            snapshot_id=data["_id"],
            location=data["location"],
            created_at=data["created_at"],
            collections=tuple(data.get("collections", [])),
        )
