"""
Schema-agnostic compatibility adapters.

Application code reads and writes entities through an adapter and never sees
which stored shape a document has. Reads normalize in memory and never write
back; writes follow the registry policy of the collection.
"""

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Generic, Iterable, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import ValidationError
from pymongo.errors import DuplicateKeyError

from schema_compat.adapters.side_effects import EffectDispatcher, SideEffect
from schema_compat.core.exceptions import (
    ConcurrentWriteConflict,
    EntityNotFound,
    IdentityViolation,
    InvalidChanges,
    InvalidFilter,
)
from schema_compat.core.metrics import ADAPTER_OPERATION_DURATION, ADAPTER_OPERATIONS, LEGACY_NORMALIZATIONS
from schema_compat.core.queries import id_filter
from schema_compat.core.retry import translate_store_errors
from schema_compat.entities.base import (
    META_FIELDS,
    PENDING_EFFECTS_FIELD,
    REVISION_FIELD,
    E,
    EntityCodec,
    SchemaVersion,
    schema_version_of,
)
from schema_compat.log.logging import logger
from schema_compat.migrations.models import ReadPreference
from schema_compat.migrations.monitoring import OperationStats
from schema_compat.migrations.registry import MigrationRegistry

# Caller mistakes; they do not count against collection health
CALLER_ERRORS = (EntityNotFound, IdentityViolation, InvalidChanges, InvalidFilter)

# Meta fields carried over from the stored document on replace
PRESERVED_META_FIELDS = META_FIELDS - {"_id", REVISION_FIELD, PENDING_EFFECTS_FIELD}


@dataclass(frozen=True)
class FilterSpec:
    """
    Entity-level query.

    Attributes:
        where: Equality conditions on entity attributes, AND-ed.
        sort: (attribute, direction) pairs; 1 ascending, -1 descending.
        limit: Maximum number of entities returned.
    """

    where: dict[str, Any] = field(default_factory=dict)
    sort: tuple[tuple[str, int], ...] = (("created_at", -1),)
    limit: Optional[int] = 50


def revision_filter(raw: dict) -> dict[str, Any]:
    """Condition matching the stored document only at the revision observed in ``raw``."""
    if REVISION_FIELD in raw:
        return {"_id": raw["_id"], REVISION_FIELD: raw[REVISION_FIELD]}
    return {"_id": raw["_id"], REVISION_FIELD: {"$exists": False}}


def sort_entities(entities: list[E], sort: Iterable[tuple[str, int]]) -> list[E]:
    """Stable multi-key sort; missing values sort last in either direction."""
    ordered = list(entities)
    for attr, direction in reversed(list(sort)):
        if direction < 0:
            ordered.sort(key=lambda e: (getattr(e, attr) is not None, getattr(e, attr)), reverse=True)
        else:
            ordered.sort(key=lambda e: (getattr(e, attr) is None, getattr(e, attr)))
    return ordered


class CompatibilityAdapter(Generic[E]):
    """
    Typed async CRUD over one entity collection, whichever shapes it holds.

    Usage:
        adapter = TradeAdapter(db, registry)
        trade = await adapter.get(trade_id)
    """

    codec: ClassVar[EntityCodec]
    MAX_UPDATE_ATTEMPTS = 3

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        registry: MigrationRegistry,
        stats: Optional[OperationStats] = None,
        dispatcher: Optional[EffectDispatcher] = None,
    ):
        self._collection = db[self.codec.collection]
        self._registry = registry
        self._stats = stats
        self._dispatcher = dispatcher or EffectDispatcher(db)

    @property
    def collection_name(self) -> str:
        return self.codec.collection

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, entity_id: Any) -> Optional[E]:
        """Entity by id, normalized from whichever shape is stored; None if absent."""
        async with self._track("get"):
            raw = await self._find_raw(entity_id)
            if raw is None:
                return None
            self._touch(raw["_id"])
            return self._normalize(raw)

    async def query(self, spec: FilterSpec) -> list[E]:
        """
        Entities matching an entity-level filter.

        Queries the shape named by the read preference first, then the other
        one, and merges the results by id.
        """
        async with self._track("query"):
            policy = self._registry.get_policy(self.collection_name)
            if not self._registry.reads_both_shapes(self.collection_name):
                versions = [SchemaVersion.LEGACY]
            elif policy.read_preference is ReadPreference.NEW_FIRST:
                versions = [SchemaVersion.NEW, SchemaVersion.LEGACY]
            else:
                versions = [SchemaVersion.LEGACY, SchemaVersion.NEW]

            merged: dict[str, E] = {}
            for version in versions:
                for raw in await self._find_shape(spec, version):
                    key = str(raw["_id"])
                    if key not in merged:
                        merged[key] = self._normalize(raw)

            entities = sort_entities(list(merged.values()), spec.sort)
            return entities[: spec.limit] if spec.limit is not None else entities

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, entity: E) -> E:
        """
        Store a new entity in the collection's write schema.

        Raises:
            ConcurrentWriteConflict: If a document with the same id exists.
        """
        async with self._track("create"):
            version = self._registry.get_policy(self.collection_name).write_schema
            now = datetime.utcnow()
            entity = entity.model_copy(
                update={"created_at": entity.created_at or now, "updated_at": entity.updated_at or now}
            )

            document = self.codec.to_document(
                entity, version, mirror_legacy=self._registry.is_dual_schema(self.collection_name)
            )
            if "_id" not in document:
                document["_id"] = ObjectId()
            document[REVISION_FIELD] = 1

            try:
                await self._insert(document)
            except DuplicateKeyError as e:
                raise ConcurrentWriteConflict(
                    f"{self.collection_name} entity already exists: {document['_id']}",
                    entity_id=document["_id"],
                ) from e

            self._touch(document["_id"])
            logger.debug(
                "Created {collection} entity",
                collection=self.collection_name,
                entity_id=str(document["_id"]),
                schema_version=version.value,
                event_type="adapter_create",
            )
            return self.codec.normalize(document)

    async def update(
        self,
        entity_id: Any,
        changes: dict[str, Any],
        effects: Iterable[SideEffect] = (),
    ) -> E:
        """
        Apply attribute changes as one conditional replace of the document.

        Requested side effects are stored on the document in the same write and
        dispatched only after it commits; their failure never undoes the update.

        Raises:
            EntityNotFound: If the entity does not exist.
            IdentityViolation: If the changes touch an identity attribute.
            ConcurrentWriteConflict: If the document kept changing underneath.
        """
        effects = list(effects)
        async with self._track("update"):
            for attempt in range(1, self.MAX_UPDATE_ATTEMPTS + 1):
                raw = await self._find_raw(entity_id)
                if raw is None:
                    raise EntityNotFound(self.collection_name, entity_id)

                document = self._updated_document(raw, changes, effects)
                if await self._replace(revision_filter(raw), document):
                    break

                logger.info(
                    "Concurrent write on {collection} {entity_id}, retrying update",
                    collection=self.collection_name,
                    entity_id=str(entity_id),
                    attempt=attempt,
                    event_type="adapter_update_conflict",
                )
            else:
                raise ConcurrentWriteConflict(
                    f"{self.collection_name} entity {entity_id} changed concurrently",
                    entity_id=entity_id,
                )

            self._touch(document["_id"])

        if effects:
            await self._dispatcher.dispatch(self.collection_name, document["_id"], effects)
        return self.codec.normalize(document)

    def _updated_document(self, raw: dict, changes: dict[str, Any], effects: list[SideEffect]) -> dict[str, Any]:
        codec = self.codec
        current = self._normalize(raw)

        unknown = sorted(set(changes) - set(codec.entity_type.model_fields))
        if unknown:
            raise InvalidChanges(f"Unknown {self.collection_name} attributes: {unknown}", attributes=unknown)
        for attr in codec.identity_fields:
            if attr in changes and changes[attr] != getattr(current, attr):
                raise IdentityViolation(
                    f"{self.collection_name} identity attribute '{attr}' cannot be changed",
                    entity_id=current.id,
                    field=attr,
                )

        try:
            updated = codec.entity_type.model_validate(
                {**current.model_dump(), **changes, "updated_at": datetime.utcnow()}
            )
        except ValidationError as e:
            raise InvalidChanges(f"Invalid {self.collection_name} changes: {e}") from e

        version = self._registry.get_policy(self.collection_name).write_schema
        mirror = self._registry.is_dual_schema(self.collection_name) or codec.has_legacy_fields(raw)
        document = codec.to_document(updated, version, mirror_legacy=mirror)
        document["_id"] = raw["_id"]
        for name in PRESERVED_META_FIELDS:
            if name in raw and name not in document:
                document[name] = raw[name]
        document[REVISION_FIELD] = raw.get(REVISION_FIELD, 0) + 1

        pending = list(raw.get(PENDING_EFFECTS_FIELD) or []) + [effect.to_dict() for effect in effects]
        if pending:
            document[PENDING_EFFECTS_FIELD] = pending
        return document

    # ------------------------------------------------------------------
    # Store access
    # ------------------------------------------------------------------

    @translate_store_errors
    async def _find_raw(self, entity_id: Any) -> Optional[dict]:
        return await self._collection.find_one(id_filter(entity_id))

    @translate_store_errors
    async def _find_shape(self, spec: FilterSpec, version: SchemaVersion) -> list[dict]:
        cursor = self._collection.find(self.codec.build_filter(spec.where, version))
        if spec.sort:
            cursor = cursor.sort([(self.codec.paths_for(attr, version)[0], direction) for attr, direction in spec.sort])
        if spec.limit is not None:
            cursor = cursor.limit(spec.limit)
        return await cursor.to_list(length=spec.limit)

    @translate_store_errors
    async def _insert(self, document: dict) -> None:
        await self._collection.insert_one(document)

    @translate_store_errors
    async def _replace(self, condition: dict, document: dict) -> bool:
        result = await self._collection.replace_one(condition, document)
        return result.matched_count == 1

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _normalize(self, raw: dict) -> E:
        if schema_version_of(raw) is SchemaVersion.LEGACY:
            LEGACY_NORMALIZATIONS.labels(collection=self.collection_name).inc()
        return self.codec.normalize(raw)

    def _touch(self, document_id: Any) -> None:
        if self._stats is not None:
            self._stats.touch(self.collection_name, document_id)

    @asynccontextmanager
    async def _track(self, operation: str):
        started = time.perf_counter()
        ok = True
        try:
            yield
        except CALLER_ERRORS:
            raise
        except Exception:
            ok = False
            raise
        finally:
            elapsed = time.perf_counter() - started
            ADAPTER_OPERATIONS.labels(
                collection=self.collection_name, operation=operation, status="success" if ok else "error"
            ).inc()
            ADAPTER_OPERATION_DURATION.labels(collection=self.collection_name, operation=operation).observe(elapsed)
            if self._stats is not None:
                self._stats.record(self.collection_name, operation, elapsed * 1000, ok)
