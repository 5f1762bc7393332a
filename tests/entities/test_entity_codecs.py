"""Tests for the trade and conversation codecs."""

import pytest
from bson import ObjectId

from schema_compat.core.exceptions import IdentityViolation, InvalidFilter, TransformationError
from schema_compat.entities import get_codec
from schema_compat.entities.base import SchemaVersion, schema_version_of
from schema_compat.entities.conversation import conversation_codec
from schema_compat.entities.trade import normalize_skills, trade_codec


class TestSchemaVersion:
    """Tests for schema version tagging."""

    def test_absent_tag_is_legacy(self):
        assert schema_version_of({"_id": 1}) is SchemaVersion.LEGACY

    def test_numeric_strings(self):
        assert schema_version_of({"schemaVersion": "1.0"}) is SchemaVersion.LEGACY
        assert schema_version_of({"schemaVersion": "2"}) is SchemaVersion.NEW

    def test_unknown_tag_raises(self):
        with pytest.raises(TransformationError):
            schema_version_of({"_id": 1, "schemaVersion": "3"})

    def test_get_codec_unknown_collection(self):
        with pytest.raises(KeyError):
            get_codec("users")


class TestTradeNormalization:
    """Tests for reading trades in either shape."""

    def test_legacy_document(self, legacy_trade):
        raw = legacy_trade(3)

        trade = trade_codec.normalize(raw)

        assert trade.id == str(raw["_id"])
        assert trade.creator_id == "user-3"
        assert trade.participant_id is None
        assert [s.name for s in trade.skills_offered] == ["python", "Django"]
        assert trade.skills_offered[1].level.value == "advanced"
        assert trade.skills_wanted[0].level.value == "intermediate"

    def test_new_document(self, new_trade):
        raw = new_trade(2, participants={"creator": "u1", "participant": "u2"})

        trade = trade_codec.normalize(raw)

        assert trade.creator_id == "u1"
        assert trade.participant_id == "u2"
        assert trade.skills_wanted[0].level.value == "beginner"

    def test_new_fields_win_on_dual_documents(self, legacy_trade):
        raw = legacy_trade(1)
        raw["skillsOffered"] = [{"id": "rust", "name": "Rust"}]
        raw["participants"] = {"creator": "user-1", "participant": None}

        trade = trade_codec.normalize(raw)

        assert [s.name for s in trade.skills_offered] == ["Rust"]

    def test_both_shapes_normalize_to_the_same_entity(self, legacy_trade):
        raw = legacy_trade(5)

        legacy = trade_codec.normalize(raw)
        migrated = trade_codec.normalize(trade_codec.upgrade(raw))

        assert legacy.comparable() == migrated.comparable()

    def test_normalize_does_not_mutate_document(self, legacy_trade):
        raw = legacy_trade(1)
        before = dict(raw)

        trade_codec.normalize(raw)

        assert raw == before

    def test_missing_creator(self, legacy_trade):
        raw = legacy_trade(1)
        del raw["creatorId"]

        with pytest.raises(TransformationError) as exc:
            trade_codec.normalize(raw)
        assert "missing creator" in exc.value.message

    def test_participants_must_be_an_object(self, new_trade):
        with pytest.raises(TransformationError):
            trade_codec.normalize(new_trade(1, participants=["u1"]))

    def test_unknown_fields_are_carried(self, legacy_trade):
        raw = legacy_trade(1, location="Lisbon")

        trade = trade_codec.normalize(raw)
        document = trade_codec.to_document(trade, SchemaVersion.NEW)

        assert trade.extra == {"location": "Lisbon"}
        assert document["location"] == "Lisbon"

    def test_skill_normalization(self):
        skills = normalize_skills(["go", {"name": "Rust"}, {"id": "c"}, {}, 42])

        assert skills[0] == {"id": "go", "name": "go", "level": "intermediate"}
        assert skills[1]["id"] == "Rust"
        assert skills[2]["name"] == "c"
        assert skills[3] == {"id": "skill_3", "name": "Skill 4", "level": "intermediate"}
        assert skills[4]["id"] == "unknown_skill_4"
        assert normalize_skills("python") == []


class TestTradeTransformation:
    """Tests for upgrade and downgrade."""

    def test_upgrade_keeps_legacy_residue(self, legacy_trade):
        raw = legacy_trade(1)

        migrated = trade_codec.upgrade(raw)

        assert migrated["schemaVersion"] == "2"
        assert migrated["participants"] == {"creator": "user-1", "participant": None}
        assert migrated["creatorId"] == "user-1"
        assert migrated["skillsOffered"][0] == {"id": "python", "name": "python", "level": "intermediate"}

    def test_downgrade_drops_new_fields(self, new_trade):
        raw = new_trade(4)

        reverted = trade_codec.downgrade(raw)

        assert reverted["schemaVersion"] == "1"
        assert "participants" not in reverted
        assert "skillsOffered" not in reverted
        assert reverted["creatorId"] == "user-4"
        assert trade_codec.normalize(reverted).comparable() == trade_codec.normalize(raw).comparable()

    def test_upgrade_of_unreadable_document(self, legacy_trade):
        raw = legacy_trade(1, creatorId="")

        with pytest.raises(TransformationError):
            trade_codec.upgrade(raw)

    def test_identity_check(self, legacy_trade):
        before = trade_codec.normalize(legacy_trade(1))
        after = before.model_copy(update={"creator_id": "someone-else"})

        with pytest.raises(IdentityViolation) as exc:
            trade_codec.check_identity(before, after)
        assert exc.value.context["field"] == "creator_id"

    def test_read_views(self, legacy_trade):
        dual = trade_codec.upgrade(legacy_trade(1))

        legacy_view = trade_codec.legacy_view(dual)
        new_view = trade_codec.new_view(dual)

        assert "participants" not in legacy_view
        assert "creatorId" not in new_view
        assert trade_codec.normalize(legacy_view).comparable() == trade_codec.normalize(new_view).comparable()

    def test_validate_new_shape(self, new_trade):
        raw = new_trade(1, participants={"participant": "u2"}, skillsWanted="guitar")
        del raw["skillsOffered"]

        issues = trade_codec.validate_new_shape(raw)

        assert "Missing required field: skillsOffered" in issues
        assert "Invalid participants structure: missing creator" in issues
        assert "Field skillsWanted is not an array" in issues


class TestTradeQueries:
    """Tests for entity-level filter translation."""

    def test_legacy_filter(self):
        query = trade_codec.build_filter({"skill_offered": "python"}, SchemaVersion.LEGACY)

        assert query == {
            "$and": [
                {"schemaVersion": {"$ne": "2"}},
                {"$or": [{"offeredSkills": "python"}, {"offeredSkills.name": "python"}]},
            ]
        }

    def test_new_filter(self):
        query = trade_codec.build_filter({"creator_id": "u1", "status": "active"}, SchemaVersion.NEW)

        assert query == {
            "$and": [
                {"schemaVersion": "2"},
                {"participants.creator": "u1"},
                {"status": "active"},
            ]
        }

    def test_empty_filter(self):
        assert trade_codec.build_filter({}, SchemaVersion.NEW) == {"schemaVersion": "2"}

    def test_unknown_attribute(self):
        with pytest.raises(InvalidFilter):
            trade_codec.build_filter({"price": 3}, SchemaVersion.NEW)

    def test_required_indexes_match_key_patterns(self):
        spec = trade_codec.required_indexes()[0]

        assert spec.matches({"participants.creator": 1, "status": 1, "createdAt": -1})
        assert not spec.matches({"participants.creator": 1, "createdAt": -1})
        assert spec.to_index_model().document["name"] == "idx_v2_creator_status_created"


class TestConversationCodec:
    """Tests for the conversation codec."""

    def test_legacy_profiles(self, legacy_conversation):
        conversation = conversation_codec.normalize(legacy_conversation(1))

        assert conversation.participant_ids == ["user-1", "user-2"]
        assert conversation.participant_profiles[1].name == "Grace"
        assert conversation.participant_profiles[1].avatar == "g.png"

    def test_string_participants(self, legacy_conversation):
        raw = legacy_conversation(1, participants=["user-1", "", None, {"name": "nobody"}])

        assert conversation_codec.normalize(raw).participant_ids == ["user-1"]

    def test_without_participants(self, legacy_conversation):
        with pytest.raises(TransformationError):
            conversation_codec.normalize(legacy_conversation(1, participants=[]))

    def test_ids_without_profiles(self):
        raw = {"_id": ObjectId(), "schemaVersion": "2", "participantIds": ["a", "b"]}

        conversation = conversation_codec.normalize(raw)

        assert [p.id for p in conversation.participant_profiles] == ["a", "b"]

    def test_upgrade_round_trip(self, legacy_conversation):
        raw = legacy_conversation(2, relatedTradeId="trade-9")

        migrated = conversation_codec.upgrade(raw)

        assert migrated["participantIds"] == ["user-1", "user-2"]
        assert conversation_codec.normalize(migrated).related_trade_id == "trade-9"
        assert (
            conversation_codec.normalize(migrated).comparable()
            == conversation_codec.normalize(raw).comparable()
        )

    def test_legacy_participant_filter(self):
        query = conversation_codec.build_filter({"participant_id": "u1"}, SchemaVersion.LEGACY)

        assert query["$and"][1] == {
            "$or": [{"participants.id": "u1"}, {"participants.userId": "u1"}, {"participants": "u1"}]
        }
