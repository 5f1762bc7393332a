"""
Conversation entity and its legacy/new document codec.

The legacy shape stores participants as a list of profile objects; the new
shape stores a plain id array for membership queries plus the profiles.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict

from schema_compat.core.exceptions import TransformationError
from schema_compat.entities.base import Entity, EntityCodec, FieldPaths, IndexSpec
from schema_compat.entities.trade import PROBE_VALUE


class ParticipantProfile(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: str = ""
    avatar: str = ""


class Conversation(Entity):
    title: str | None = None
    type: str = "direct"
    participant_ids: list[str]
    participant_profiles: list[ParticipantProfile] = []
    related_trade_id: str | None = None
    last_message: dict[str, Any] | None = None
    message_count: int = 0


def _profile_from_legacy(participant: Any) -> dict[str, Any] | None:
    if isinstance(participant, str):
        return {"id": participant, "name": "", "avatar": ""} if participant else None
    if not isinstance(participant, dict):
        return None
    participant_id = participant.get("id") or participant.get("userId")
    if not participant_id:
        return None
    profile = {k: v for k, v in participant.items() if k not in ("userId", "displayName", "photoURL")}
    profile["id"] = participant_id
    profile["name"] = participant.get("name") or participant.get("displayName") or ""
    profile["avatar"] = participant.get("avatar") or participant.get("photoURL") or ""
    return profile


class ConversationCodec(EntityCodec[Conversation]):
    collection = "conversations"
    entity_type = Conversation
    identity_fields = ("id", "related_trade_id")
    legacy_fields = frozenset({"participants"})
    new_fields = frozenset({"participantIds", "participantProfiles"})
    common_fields = {
        "title": "title",
        "type": "type",
        "relatedTradeId": "related_trade_id",
        "lastMessage": "last_message",
        "messageCount": "message_count",
        "createdAt": "created_at",
        "updatedAt": "updated_at",
    }
    field_paths = {
        "participant_id": FieldPaths(
            legacy=("participants.id", "participants.userId", "participants"),
            new=("participantIds",),
        ),
    }

    def decode_payload(self, raw: dict) -> dict[str, Any]:
        legacy_profiles = [
            profile
            for profile in (_profile_from_legacy(p) for p in raw.get("participants") or [])
            if profile is not None
        ]

        if isinstance(raw.get("participantIds"), list):
            participant_ids = [pid for pid in raw["participantIds"] if isinstance(pid, str) and pid]
            if isinstance(raw.get("participantProfiles"), list):
                profiles = raw["participantProfiles"]
            else:
                by_id = {profile["id"]: profile for profile in legacy_profiles}
                profiles = [by_id.get(pid, {"id": pid, "name": "", "avatar": ""}) for pid in participant_ids]
        else:
            profiles = legacy_profiles
            participant_ids = [profile["id"] for profile in profiles]

        if not participant_ids:
            raise TransformationError(
                "Conversation must have at least one participant", document_id=raw.get("_id")
            )

        return {"participant_ids": participant_ids, "participant_profiles": profiles}

    def encode_legacy(self, entity: Conversation) -> dict[str, Any]:
        profiles = {profile.id: profile for profile in entity.participant_profiles}
        return {
            "participants": [
                profiles[pid].model_dump(mode="json") if pid in profiles else {"id": pid, "name": "", "avatar": ""}
                for pid in entity.participant_ids
            ]
        }

    def encode_new(self, entity: Conversation) -> dict[str, Any]:
        return {
            "participantIds": list(entity.participant_ids),
            "participantProfiles": [p.model_dump(mode="json") for p in entity.participant_profiles],
        }

    def validate_new_shape(self, raw: dict) -> list[str]:
        issues = super().validate_new_shape(raw)
        participant_ids = raw.get("participantIds")
        if participant_ids is not None and (not isinstance(participant_ids, list) or not participant_ids):
            issues.append("participantIds must be a non-empty array")
        return issues

    def required_indexes(self) -> list[IndexSpec]:
        return [
            IndexSpec(
                collection=self.collection,
                name="idx_v2_participant_updated",
                keys=(("participantIds", 1), ("updatedAt", -1)),
                probe_filter={"participantIds": PROBE_VALUE},
                probe_sort=(("updatedAt", -1),),
            ),
            IndexSpec(
                collection=self.collection,
                name="idx_schema_version_id",
                keys=(("schemaVersion", 1), ("_id", 1)),
                probe_filter={"schemaVersion": PROBE_VALUE},
                probe_sort=(("_id", 1),),
            ),
        ]


conversation_codec = ConversationCodec()
