"""
Migration registry: the process-wide owner of migration phase and policy.

The persisted document in ``_migration_registry`` is the single source of truth.
Each process keeps an immutable ``RegistryState`` snapshot that request paths
read without I/O; it is replaced wholesale after every committed change and on
periodic refresh.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from schema_compat.core.config import settings
from schema_compat.core.database import REGISTRY_COLLECTION
from schema_compat.core.exceptions import ConcurrentWriteConflict, PhaseTransitionError, PolicyViolation
from schema_compat.core.metrics import set_phase_gauge
from schema_compat.core.retry import translate_store_errors
from schema_compat.entities.base import SchemaVersion
from schema_compat.log.logging import logger
from schema_compat.migrations.models import (
    AGGREGATE_ENVIRONMENT,
    PHASE_DEFAULT_POLICIES,
    CollectionPolicy,
    HealthReport,
    MigrationPhase,
    RegistryState,
    VerificationResult,
)

# Set once anything may have written a new-shape document; never cleared
NEW_SHAPE_WRITTEN_FLAG = "new_shape_written"

FORWARD_TRANSITIONS: dict[MigrationPhase, frozenset[MigrationPhase]] = {
    MigrationPhase.NOT_STARTED: frozenset({MigrationPhase.VERIFYING}),
    MigrationPhase.VERIFYING: frozenset({MigrationPhase.DUAL_SCHEMA}),
    MigrationPhase.DUAL_SCHEMA: frozenset({MigrationPhase.BACKFILLING}),
    MigrationPhase.BACKFILLING: frozenset({MigrationPhase.CUTOVER}),
    MigrationPhase.CUTOVER: frozenset({MigrationPhase.LEGACY_ONLY}),
    MigrationPhase.ROLLED_BACK: frozenset({MigrationPhase.VERIFYING, MigrationPhase.LEGACY_ONLY}),
    MigrationPhase.LEGACY_ONLY: frozenset(),
}

LEGACY_PINNED_PHASES = frozenset({MigrationPhase.ROLLED_BACK, MigrationPhase.LEGACY_ONLY})


class MigrationRegistry:
    """
    Coordinates migration phase, per-collection policy and feature flags.

    Lookups (``phase``, ``get_policy``, ``is_dual_schema``) are O(1) reads of
    the current snapshot. Mutations are single conditional writes on the
    persisted document's ``version`` followed by a snapshot swap.
    """

    REGISTRY_ID = "registry"
    MAX_COMMIT_ATTEMPTS = 3

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        collections: Optional[list[str]] = None,
    ):
        """
        Initialize the registry.

        Args:
            db: MongoDB database holding the registry document.
            collections: Collections under migration (default from config).
        """
        self._collection = db[REGISTRY_COLLECTION]
        self._collections = list(collections or settings.migration_collections)
        self._state = RegistryState()
        self._lock = asyncio.Lock()
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self, persisted: Optional[RegistryState] = None) -> RegistryState:
        """
        Load the persisted state (or seed it) and make it the local snapshot.

        Args:
            persisted: Already-loaded persisted state; read from the store if None.
        """
        if persisted is None:
            persisted = await self._load()
        if persisted is None:
            persisted = self._with_default_policies(RegistryState(updated_at=datetime.utcnow()))
            try:
                await self._collection.insert_one({"_id": self.REGISTRY_ID, **persisted.to_dict()})
                logger.info("Registry document created", event_type="registry_seeded")
            except DuplicateKeyError:
                persisted = await self._load()

        self._swap(self._with_default_policies(persisted))
        self._initialized = True
        logger.info(
            "Migration registry initialized in phase {phase}",
            phase=self._state.phase.value,
            version=self._state.version,
            event_type="registry_initialized",
        )
        return self._state

    async def refresh(self) -> RegistryState:
        """Re-read the persisted state and swap it in if it is newer."""
        async with self._lock:
            persisted = await self._load()
            if persisted is not None and persisted.version >= self._state.version:
                if persisted.version != self._state.version:
                    logger.info(
                        "Registry refreshed to version {version}",
                        version=persisted.version,
                        phase=persisted.phase.value,
                        event_type="registry_refreshed",
                    )
                self._swap(self._with_default_policies(persisted))
        return self._state

    @property
    def initialized(self) -> bool:
        return self._initialized

    # ------------------------------------------------------------------
    # Lookups (no I/O)
    # ------------------------------------------------------------------

    @property
    def state(self) -> RegistryState:
        return self._state

    @property
    def phase(self) -> MigrationPhase:
        return self._state.phase

    @property
    def collections(self) -> list[str]:
        return list(self._collections)

    def get_policy(self, collection: str) -> CollectionPolicy:
        """Current policy of a collection."""
        state = self._state
        policy = state.policies.get(collection)
        if policy is None:
            policy = PHASE_DEFAULT_POLICIES[state.phase]
        return policy

    def is_dual_schema(self, collection: str) -> bool:
        """Whether adapters must dual-write (mirror legacy fields) for this collection."""
        state = self._state
        return (
            state.phase in (MigrationPhase.DUAL_SCHEMA, MigrationPhase.BACKFILLING)
            and self.get_policy(collection).write_schema is SchemaVersion.NEW
        )

    def reads_both_shapes(self, collection: str) -> bool:
        """Whether documents of the new shape may exist, so queries must cover both."""
        state = self._state
        if state.flags.get(NEW_SHAPE_WRITTEN_FLAG):
            return True
        return self.get_policy(collection).write_schema is SchemaVersion.NEW

    def assert_write_allowed(self, collection: str, version: SchemaVersion) -> None:
        """
        Raises:
            PolicyViolation: If the collection's policy does not write this version.
        """
        policy = self.get_policy(collection)
        if policy.write_schema is not version:
            raise PolicyViolation(
                f"Write of schema {version.value} to '{collection}' not allowed; "
                f"policy writes schema {policy.write_schema.value}",
                collection=collection,
                phase=self.phase.value,
            )

    # ------------------------------------------------------------------
    # Mutations (operator control flow only)
    # ------------------------------------------------------------------

    async def set_phase(self, new_phase: MigrationPhase, reason: Optional[str] = None) -> RegistryState:
        """
        Move to a new phase and apply that phase's default policies.

        Raises:
            PhaseTransitionError: If the transition is not allowed.
        """

        def transition(current: RegistryState) -> RegistryState:
            self._validate_transition(current, new_phase)
            flags = dict(current.flags)
            policies = {name: PHASE_DEFAULT_POLICIES[new_phase] for name in self._collections}
            if any(p.write_schema is SchemaVersion.NEW for p in policies.values()):
                flags[NEW_SHAPE_WRITTEN_FLAG] = True
            if new_phase is MigrationPhase.VERIFYING:
                # A verification from before this pass must not open the gate
                return current.evolve(phase=new_phase, policies=policies, flags=flags, last_verification=None)
            return current.evolve(phase=new_phase, policies=policies, flags=flags)

        previous = self._state.phase
        state = await self._commit(transition)
        logger.info(
            "Migration phase changed from {previous} to {phase}",
            previous=previous.value,
            phase=new_phase.value,
            reason=reason,
            event_type="registry_phase_changed",
        )
        return state

    async def set_policy(self, collection: str, policy: CollectionPolicy) -> RegistryState:
        """
        Override one collection's policy within the current phase.

        Raises:
            PolicyViolation: If the phase pins the collection to the legacy schema.
        """

        def override(current: RegistryState) -> RegistryState:
            if current.phase in LEGACY_PINNED_PHASES and policy.write_schema is not SchemaVersion.LEGACY:
                raise PolicyViolation(
                    f"Phase '{current.phase.value}' only allows writeSchema 1",
                    collection=collection,
                )
            policies = dict(current.policies)
            policies[collection] = policy
            flags = dict(current.flags)
            if policy.write_schema is SchemaVersion.NEW:
                flags[NEW_SHAPE_WRITTEN_FLAG] = True
            return current.evolve(policies=policies, flags=flags)

        state = await self._commit(override)
        logger.info(
            "Policy for {collection} set",
            collection=collection,
            write_schema=policy.write_schema.value,
            read_preference=policy.read_preference.value,
            event_type="registry_policy_changed",
        )
        return state

    async def set_flag(self, name: str, value: bool) -> RegistryState:
        def flag(current: RegistryState) -> RegistryState:
            return current.evolve(flags={**current.flags, name: value})

        return await self._commit(flag)

    async def record_verification(self, result: VerificationResult) -> RegistryState:
        """Persist the latest index verification result (the dual-schema gate)."""
        return await self._commit(lambda current: current.evolve(last_verification=result))

    async def record_health_check(self, report: HealthReport) -> RegistryState:
        def record(current: RegistryState) -> RegistryState:
            return current.evolve(last_health_check={**current.last_health_check, report.collection: report})

        return await self._commit(record)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _validate_transition(self, current: RegistryState, new_phase: MigrationPhase) -> None:
        if new_phase is MigrationPhase.ROLLED_BACK:
            if current.phase is MigrationPhase.NOT_STARTED:
                raise PhaseTransitionError(current.phase.value, new_phase.value, "migration has not begun")
            return

        if new_phase not in FORWARD_TRANSITIONS[current.phase]:
            raise PhaseTransitionError(current.phase.value, new_phase.value)

        if new_phase is MigrationPhase.DUAL_SCHEMA:
            verification = current.last_verification
            if verification is None or not verification.ready:
                raise PhaseTransitionError(
                    current.phase.value,
                    new_phase.value,
                    "last index verification was not ready",
                )
            if verification.environment != AGGREGATE_ENVIRONMENT:
                raise PhaseTransitionError(
                    current.phase.value,
                    new_phase.value,
                    f"last index verification covered only '{verification.environment}'",
                )

    def _with_default_policies(self, state: RegistryState) -> RegistryState:
        missing = [name for name in self._collections if name not in state.policies]
        if not missing:
            return state
        policies = dict(state.policies)
        for name in missing:
            policies[name] = PHASE_DEFAULT_POLICIES[state.phase]
        return state.evolve(policies=policies)

    @translate_store_errors
    async def _load(self) -> Optional[RegistryState]:
        document = await self._collection.find_one({"_id": self.REGISTRY_ID})
        if document is None:
            return None
        return RegistryState.from_dict(document)

    @translate_store_errors
    async def _commit(self, mutate: Callable[[RegistryState], RegistryState]) -> RegistryState:
        """
        Apply a mutation as one conditional write on the persisted version.

        The mutation always sees the persisted state, not the local cache, so
        a stale process cannot make a transition based on an outdated phase.
        """
        for _ in range(self.MAX_COMMIT_ATTEMPTS):
            current = await self._load()
            if current is None:
                current = self._with_default_policies(RegistryState())
                try:
                    await self._collection.insert_one({"_id": self.REGISTRY_ID, **current.to_dict()})
                except DuplicateKeyError:
                    continue
            current = self._with_default_policies(current)

            updated = mutate(current).evolve(version=current.version + 1, updated_at=datetime.utcnow())
            result = await self._collection.update_one(
                {"_id": self.REGISTRY_ID, "version": current.version},
                {"$set": updated.to_dict()},
            )
            if result.matched_count == 1:
                async with self._lock:
                    self._swap(updated)
                return updated

            logger.warning(
                "Registry write raced with another process, retrying",
                expected_version=current.version,
                event_type="registry_commit_conflict",
            )

        raise ConcurrentWriteConflict("Registry changed concurrently; giving up after retries")

    def _swap(self, state: RegistryState) -> None:
        self._state = state
        set_phase_gauge(state.phase.value, [phase.value for phase in MigrationPhase])
