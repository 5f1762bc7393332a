"""
Entity codecs: the single place that knows both document shapes of an entity.

Every entity type has one codec. A codec decodes any stored document (legacy,
new, or dual-write residue carrying both) into the entity model, and encodes an
entity back into either shape. Everything else in the package goes through the
codec instead of checking field presence itself.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pymongo import IndexModel

from schema_compat.core.exceptions import IdentityViolation, InvalidFilter, TransformationError

SCHEMA_VERSION_FIELD = "schemaVersion"
REVISION_FIELD = "_rev"
PENDING_EFFECTS_FIELD = "_pendingEffects"
APPLIED_EFFECTS_FIELD = "appliedEffects"

# Bookkeeping fields owned by the compatibility layer, never part of an entity
META_FIELDS = frozenset(
    {
        "_id",
        SCHEMA_VERSION_FIELD,
        REVISION_FIELD,
        PENDING_EFFECTS_FIELD,
        APPLIED_EFFECTS_FIELD,
        "migratedAt",
        "migrationRun",
        "revertedAt",
        "legacyCleanedAt",
    }
)


class SchemaVersion(str, Enum):
    """Document layout tag stored in ``schemaVersion``."""

    LEGACY = "1"
    NEW = "2"


def schema_version_of(raw: dict) -> SchemaVersion:
    """Schema version of a stored document; an absent tag means legacy."""
    value = raw.get(SCHEMA_VERSION_FIELD)
    if value in (None, "", "1", "1.0"):
        return SchemaVersion.LEGACY
    if value in ("2", "2.0"):
        return SchemaVersion.NEW
    raise TransformationError(f"Unknown schema version: {value}", document_id=raw.get("_id"))


class Entity(BaseModel):
    """Base model for schema-agnostic entities handed to application callers."""

    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    extra: dict[str, Any] = Field(
        default_factory=dict, description="Stored fields neither shape knows about"
    )

    def comparable(self) -> dict[str, Any]:
        """Representation used to compare two normalizations of the same entity."""
        return self.model_dump(mode="json")


E = TypeVar("E", bound=Entity)


@dataclass(frozen=True)
class IndexSpec:
    """A secondary index a new-schema query shape depends on."""

    collection: str
    name: str
    keys: tuple[tuple[str, int], ...]
    probe_filter: dict[str, Any] = field(default_factory=dict)
    probe_sort: tuple[tuple[str, int], ...] = ()

    @property
    def query_name(self) -> str:
        return f"{self.collection}.{self.name}"

    def to_index_model(self) -> IndexModel:
        return IndexModel(list(self.keys), name=self.name)

    def matches(self, key_pattern: dict[str, Any]) -> bool:
        """Whether an index's key pattern (from list_indexes) covers this spec."""
        return [(k, int(v)) for k, v in key_pattern.items()] == list(self.keys)

    def to_dict(self) -> dict:
        return {"collection": self.collection, "name": self.name, "keys": [list(k) for k in self.keys]}


@dataclass(frozen=True)
class FieldPaths:
    """Where an entity attribute lives in each shape; several paths are OR-ed."""

    legacy: tuple[str, ...]
    new: tuple[str, ...]

    def for_version(self, version: SchemaVersion) -> tuple[str, ...]:
        return self.new if version is SchemaVersion.NEW else self.legacy


class EntityCodec(ABC, Generic[E]):
    """
    Tagged-union codec between stored document shapes and an entity model.

    Subclasses declare which stored fields are legacy-only, new-only and common,
    and implement the per-shape decode/encode functions.
    """

    collection: ClassVar[str]
    entity_type: ClassVar[type[Entity]]
    identity_fields: ClassVar[tuple[str, ...]] = ("id",)
    legacy_fields: ClassVar[frozenset[str]] = frozenset()
    new_fields: ClassVar[frozenset[str]] = frozenset()
    common_fields: ClassVar[dict[str, str]] = {
        "createdAt": "created_at",
        "updatedAt": "updated_at",
    }
    field_paths: ClassVar[dict[str, FieldPaths]] = {}

    # ------------------------------------------------------------------
    # Shape-specific hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def decode_payload(self, raw: dict) -> dict[str, Any]:
        """Entity attributes from the shape fields, preferring new-shape fields."""

    @abstractmethod
    def encode_legacy(self, entity: E) -> dict[str, Any]:
        """Legacy-only stored fields for an entity."""

    @abstractmethod
    def encode_new(self, entity: E) -> dict[str, Any]:
        """New-only stored fields for an entity."""

    @abstractmethod
    def required_indexes(self) -> list[IndexSpec]:
        """Indexes the new-schema query shapes of this entity need."""

    def validate_new_shape(self, raw: dict) -> list[str]:
        """Integrity issues of a document tagged with the new schema version."""
        issues = []
        for name in sorted(self.new_fields):
            if name not in raw:
                issues.append(f"Missing required field: {name}")
        return issues

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def has_legacy_fields(self, raw: dict) -> bool:
        return any(name in raw for name in self.legacy_fields)

    def has_new_fields(self, raw: dict) -> bool:
        return any(name in raw for name in self.new_fields)

    def normalize(self, raw: dict) -> E:
        """
        Decode any stored shape into the entity model.

        When both legacy and new fields are present the new ones win. This is a
        pure function of the document.

        Raises:
            TransformationError: If the document cannot be represented as an entity.
        """
        if raw is None:
            raise TransformationError(f"{self.collection} document is empty")

        document_id = raw.get("_id")
        try:
            schema_version_of(raw)
            attributes = {
                attr: raw[name]
                for name, attr in self.common_fields.items()
                if raw.get(name) is not None
            }
            attributes.update(self.decode_payload(raw))
            attributes["id"] = None if document_id is None else str(document_id)
            attributes["extra"] = {
                name: value
                for name, value in raw.items()
                if name not in META_FIELDS
                and name not in self.legacy_fields
                and name not in self.new_fields
                and name not in self.common_fields
            }
            return self.entity_type.model_validate(attributes)
        except TransformationError:
            raise
        except (ValidationError, TypeError, ValueError, KeyError, AttributeError) as e:
            raise TransformationError(
                f"Cannot normalize {self.collection} document {document_id}: {e}",
                document_id=document_id,
            ) from e

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    def _common_document(self, entity: E) -> dict[str, Any]:
        document: dict[str, Any] = dict(entity.extra)
        for name, attr in self.common_fields.items():
            document[name] = getattr(entity, attr)
        if entity.id is not None:
            document["_id"] = entity.id
        return document

    def to_document(
        self, entity: E, version: SchemaVersion, mirror_legacy: bool = False
    ) -> dict[str, Any]:
        """
        Full stored document for an entity in the given shape.

        Args:
            entity: Entity to encode.
            version: Shape to write.
            mirror_legacy: Also write legacy fields next to new ones (dual-write).
        """
        document = self._common_document(entity)
        if version is SchemaVersion.NEW:
            if mirror_legacy:
                document.update(self.encode_legacy(entity))
            document.update(self.encode_new(entity))
        else:
            document.update(self.encode_legacy(entity))
        document[SCHEMA_VERSION_FIELD] = version.value
        return document

    def upgrade(self, raw: dict) -> dict[str, Any]:
        """
        Migrate a stored document to the new shape.

        Legacy fields are kept as dual-write residue; removing them is the
        cleanup pass's job.
        """
        entity = self.normalize(raw)
        migrated = {**raw, **self.encode_new(entity)}
        migrated[SCHEMA_VERSION_FIELD] = SchemaVersion.NEW.value
        self.check_identity(entity, self.normalize(migrated))
        return migrated

    def downgrade(self, raw: dict) -> dict[str, Any]:
        """Rewrite a stored document in the legacy shape, dropping new-only fields."""
        entity = self.normalize(raw)
        reverted = {k: v for k, v in raw.items() if k not in self.new_fields}
        reverted.update(self.encode_legacy(entity))
        reverted[SCHEMA_VERSION_FIELD] = SchemaVersion.LEGACY.value
        self.check_identity(entity, self.normalize(reverted))
        return reverted

    def check_identity(self, before: E, after: E) -> None:
        """Raise IdentityViolation if any identity field differs."""
        for attr in self.identity_fields:
            if getattr(before, attr) != getattr(after, attr):
                raise IdentityViolation(
                    f"{self.collection} identity field '{attr}' changed",
                    document_id=before.id,
                    field=attr,
                )

    # ------------------------------------------------------------------
    # Read paths used by the consistency sampler
    # ------------------------------------------------------------------

    def legacy_view(self, raw: dict) -> dict[str, Any]:
        """The document as a legacy-only reader sees it."""
        if self.has_legacy_fields(raw):
            return {k: v for k, v in raw.items() if k not in self.new_fields}
        return self.downgrade(raw)

    def new_view(self, raw: dict) -> dict[str, Any]:
        """The document as a new-shape-only reader sees it."""
        if self.has_new_fields(raw):
            return {k: v for k, v in raw.items() if k not in self.legacy_fields}
        return {k: v for k, v in self.upgrade(raw).items() if k not in self.legacy_fields}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def paths_for(self, attr: str, version: SchemaVersion) -> tuple[str, ...]:
        if attr == "id":
            return ("_id",)
        for name, common_attr in self.common_fields.items():
            if common_attr == attr:
                return (name,)
        if attr not in self.field_paths:
            raise InvalidFilter(f"{self.collection} cannot be filtered by '{attr}'", field=attr)
        return self.field_paths[attr].for_version(version)

    def build_filter(self, where: dict[str, Any], version: SchemaVersion) -> dict[str, Any]:
        """Translate an entity-level equality filter into a query for one shape."""
        if version is SchemaVersion.NEW:
            clauses: list[dict[str, Any]] = [{SCHEMA_VERSION_FIELD: SchemaVersion.NEW.value}]
        else:
            clauses = [{SCHEMA_VERSION_FIELD: {"$ne": SchemaVersion.NEW.value}}]

        for attr, value in where.items():
            paths = self.paths_for(attr, version)
            if len(paths) == 1:
                clauses.append({paths[0]: value})
            else:
                clauses.append({"$or": [{path: value} for path in paths]})

        return clauses[0] if len(clauses) == 1 else {"$and": clauses}

