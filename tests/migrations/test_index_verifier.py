"""Tests for index readiness verification."""

import pytest
from pymongo.errors import ServerSelectionTimeoutError

from schema_compat.core.config import settings
from schema_compat.core.exceptions import VerificationFailure
from schema_compat.entities.conversation import conversation_codec
from schema_compat.entities.trade import trade_codec
from schema_compat.migrations.index_verifier import (
    IndexVerifier,
    aggregate_results,
    require_ready,
    uses_collection_scan,
)
from schema_compat.migrations.models import VerificationResult

CODECS = [trade_codec, conversation_codec]


async def create_required_indexes(db):
    for codec in CODECS:
        await db[codec.collection].create_indexes([spec.to_index_model() for spec in codec.required_indexes()])


def make_verifier(db, **kwargs) -> IndexVerifier:
    return IndexVerifier(database_factory=lambda environment: db, codecs=CODECS, **kwargs)


class TestIndexVerifier:
    """Tests for IndexVerifier."""

    @pytest.mark.asyncio
    async def test_ready_when_all_indexes_answer(self, db):
        await create_required_indexes(db)

        result = await make_verifier(db).verify("staging")

        assert result.ready
        assert result.environment == "staging"
        assert result.missing_indexes == ()
        assert set(result.latencies_ms) == {spec.query_name for spec in make_verifier(db).required_indexes}

    @pytest.mark.asyncio
    async def test_missing_index(self, db):
        await create_required_indexes(db)
        db["trades"].indexes = [i for i in db["trades"].indexes if i["name"] != "idx_v2_participant_created"]

        result = await make_verifier(db).verify("staging")

        assert not result.ready
        assert [spec.name for spec in result.missing_indexes] == ["idx_v2_participant_created"]

    @pytest.mark.asyncio
    async def test_index_still_building_is_not_ready(self, db):
        await create_required_indexes(db)
        for index in db["conversations"].indexes:
            if index["name"] == "idx_v2_participant_updated":
                index["buildUUID"] = "b1"

        result = await make_verifier(db).verify("staging")

        assert not result.ready
        assert [spec.query_name for spec in result.missing_indexes] == ["conversations.idx_v2_participant_updated"]

    @pytest.mark.asyncio
    async def test_collection_scan_counts_as_missing(self, db):
        await create_required_indexes(db)
        db["trades"].explain_result = {"queryPlanner": {"winningPlan": {"stage": "COLLSCAN"}}}

        result = await make_verifier(db).verify("staging")

        assert not result.ready
        assert {spec.collection for spec in result.missing_indexes} == {"trades"}
        assert len(result.missing_indexes) == len(trade_codec.required_indexes())

    @pytest.mark.asyncio
    async def test_slow_probe(self, db):
        await create_required_indexes(db)

        result = await make_verifier(db, latency_threshold_ms=-1).verify("staging")

        assert not result.ready
        assert "trades.idx_v2_creator_status_created" in result.slow_queries

    @pytest.mark.asyncio
    async def test_unreachable_environment(self):
        def unreachable(environment):
            raise ServerSelectionTimeoutError("no servers")

        verifier = IndexVerifier(database_factory=unreachable, codecs=CODECS)

        result = await verifier.verify("production")

        assert not result.ready
        assert len(result.missing_indexes) == len(verifier.required_indexes)

    @pytest.mark.asyncio
    async def test_verify_all_requires_every_environment(self, db):
        await create_required_indexes(db)
        empty = type(db)()
        verifier = IndexVerifier(
            database_factory=lambda environment: db if environment == "staging" else empty,
            codecs=CODECS,
        )

        result = await verifier.verify_all(["staging", "production"])

        assert result.environment == "production,staging"
        assert not result.ready
        assert len(result.missing_indexes) == len(verifier.required_indexes)


class TestVerificationHelpers:
    """Tests for plan inspection and aggregation helpers."""

    def test_nested_collection_scan(self):
        explanation = {
            "queryPlanner": {
                "winningPlan": {"stage": "SORT", "inputStage": {"stage": "COLLSCAN"}},
                "rejectedPlans": [{"stage": "IXSCAN"}],
            }
        }

        assert uses_collection_scan(explanation)
        assert not uses_collection_scan({"queryPlanner": {"winningPlan": {"stage": "IXSCAN"}}})

    def test_aggregate_of_nothing_is_not_ready(self):
        assert not aggregate_results({}).ready

    def test_aggregate_over_configured_environments(self, monkeypatch):
        monkeypatch.setenv("VERIFY_ENVIRONMENTS", "staging=mongodb://stg:27017")
        ready = VerificationResult(environment="staging", ready=True)
        results = {settings.environment: ready, "staging": ready}

        assert aggregate_results(results).environment == "*"

    def test_partial_aggregate_keeps_environment_names(self, monkeypatch):
        monkeypatch.setenv("VERIFY_ENVIRONMENTS", "staging=mongodb://stg:27017")
        monkeypatch.setattr(settings, "environment", "production")

        result = aggregate_results({"staging": VerificationResult(environment="staging", ready=True)})

        assert result.ready
        assert result.environment == "staging"

    def test_require_ready(self):
        assert require_ready(VerificationResult(environment="*", ready=True)).ready
        with pytest.raises(VerificationFailure):
            require_ready(VerificationResult(environment="*", ready=False))
