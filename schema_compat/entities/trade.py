"""
Trade entity and its legacy/new document codec.

Legacy shape (schemaVersion "1" or absent)::

    {"offeredSkills": ["python", {...}], "requestedSkills": [...],
     "creatorId": "u1", "participantId": "u2" | null}

New shape (schemaVersion "2")::

    {"skillsOffered": [{"id", "name", "level", "category"}], "skillsWanted": [...],
     "participants": {"creator": "u1", "participant": "u2" | null}}
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

from schema_compat.core.exceptions import TransformationError
from schema_compat.entities.base import Entity, EntityCodec, FieldPaths, IndexSpec

PROBE_VALUE = "__index_probe__"


class SkillLevel(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"
    EXPERT = "expert"


class TradeSkill(BaseModel):
    """A skill offered or wanted in a trade."""

    model_config = ConfigDict(extra="allow")

    id: str
    name: str
    level: SkillLevel = SkillLevel.INTERMEDIATE
    category: str | None = None


class Trade(Entity):
    """
    Schema-agnostic trade.

    ``id`` and ``creator_id`` identify the trade and its owner; neither may
    change through migration or updates.
    """

    title: str
    description: str | None = None
    status: str = "active"
    skills_offered: list[TradeSkill] = []
    skills_wanted: list[TradeSkill] = []
    creator_id: str
    participant_id: str | None = None


def normalize_skills(skills: Any) -> list[dict[str, Any]]:
    """
    Normalize skills given as strings, partial objects or anything else.

    Strings become ``{"id": s, "name": s, "level": "intermediate"}``; objects
    fill in a missing id/name from each other or from their position.
    """
    if not isinstance(skills, list):
        return []

    normalized = []
    for index, skill in enumerate(skills):
        if isinstance(skill, str):
            normalized.append({"id": skill, "name": skill, "level": SkillLevel.INTERMEDIATE.value})
        elif isinstance(skill, dict):
            normalized.append(
                {
                    **skill,
                    "id": skill.get("id") or skill.get("name") or f"skill_{index}",
                    "name": skill.get("name") or skill.get("id") or f"Skill {index + 1}",
                    "level": skill.get("level") or SkillLevel.INTERMEDIATE.value,
                }
            )
        else:
            normalized.append(
                {"id": f"unknown_skill_{index}", "name": str(skill), "level": SkillLevel.INTERMEDIATE.value}
            )
    return normalized


def _dump_skills(skills: list[TradeSkill]) -> list[dict[str, Any]]:
    return [skill.model_dump(mode="json", exclude_none=True) for skill in skills]


class TradeCodec(EntityCodec[Trade]):
    collection = "trades"
    entity_type = Trade
    identity_fields = ("id", "creator_id")
    legacy_fields = frozenset({"offeredSkills", "requestedSkills", "creatorId", "participantId"})
    new_fields = frozenset({"skillsOffered", "skillsWanted", "participants"})
    common_fields = {
        "title": "title",
        "description": "description",
        "status": "status",
        "createdAt": "created_at",
        "updatedAt": "updated_at",
    }
    field_paths = {
        "creator_id": FieldPaths(legacy=("creatorId",), new=("participants.creator",)),
        "participant_id": FieldPaths(legacy=("participantId",), new=("participants.participant",)),
        "skill_offered": FieldPaths(
            legacy=("offeredSkills", "offeredSkills.name"), new=("skillsOffered.name",)
        ),
        "skill_wanted": FieldPaths(
            legacy=("requestedSkills", "requestedSkills.name"), new=("skillsWanted.name",)
        ),
    }

    def decode_payload(self, raw: dict) -> dict[str, Any]:
        offered = raw["skillsOffered"] if "skillsOffered" in raw else raw.get("offeredSkills")
        wanted = raw["skillsWanted"] if "skillsWanted" in raw else raw.get("requestedSkills")

        participants = raw.get("participants")
        if isinstance(participants, dict):
            creator = participants.get("creator")
            participant = participants.get("participant")
        elif participants is not None:
            raise TransformationError(
                "Invalid participants structure: expected an object",
                document_id=raw.get("_id"),
            )
        else:
            creator = raw.get("creatorId")
            participant = raw.get("participantId")

        if not creator:
            raise TransformationError(
                "Invalid participants structure: missing creator", document_id=raw.get("_id")
            )

        return {
            "skills_offered": normalize_skills(offered),
            "skills_wanted": normalize_skills(wanted),
            "creator_id": creator,
            "participant_id": participant,
        }

    def encode_legacy(self, entity: Trade) -> dict[str, Any]:
        return {
            "offeredSkills": _dump_skills(entity.skills_offered),
            "requestedSkills": _dump_skills(entity.skills_wanted),
            "creatorId": entity.creator_id,
            "participantId": entity.participant_id,
        }

    def encode_new(self, entity: Trade) -> dict[str, Any]:
        return {
            "skillsOffered": _dump_skills(entity.skills_offered),
            "skillsWanted": _dump_skills(entity.skills_wanted),
            "participants": {"creator": entity.creator_id, "participant": entity.participant_id},
        }

    def validate_new_shape(self, raw: dict) -> list[str]:
        issues = super().validate_new_shape(raw)
        participants = raw.get("participants")
        if participants is not None and not (isinstance(participants, dict) and participants.get("creator")):
            issues.append("Invalid participants structure: missing creator")
        for name in ("skillsOffered", "skillsWanted"):
            if name in raw and not isinstance(raw[name], list):
                issues.append(f"Field {name} is not an array")
        return issues

    def required_indexes(self) -> list[IndexSpec]:
        return [
            IndexSpec(
                collection=self.collection,
                name="idx_v2_creator_status_created",
                keys=(("participants.creator", 1), ("status", 1), ("createdAt", -1)),
                probe_filter={"participants.creator": PROBE_VALUE, "status": "active"},
                probe_sort=(("createdAt", -1),),
            ),
            IndexSpec(
                collection=self.collection,
                name="idx_v2_participant_created",
                keys=(("participants.participant", 1), ("createdAt", -1)),
                probe_filter={"participants.participant": PROBE_VALUE},
                probe_sort=(("createdAt", -1),),
            ),
            IndexSpec(
                collection=self.collection,
                name="idx_v2_skills_offered_status",
                keys=(("skillsOffered.name", 1), ("status", 1)),
                probe_filter={"skillsOffered.name": PROBE_VALUE, "status": "active"},
            ),
            IndexSpec(
                collection=self.collection,
                name="idx_schema_version_id",
                keys=(("schemaVersion", 1), ("_id", 1)),
                probe_filter={"schemaVersion": PROBE_VALUE},
                probe_sort=(("_id", 1),),
            ),
        ]


trade_codec = TradeCodec()
