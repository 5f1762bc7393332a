"""Tests for the schema-compat CLI."""

from unittest.mock import AsyncMock

import pytest
from typer.testing import CliRunner

from schema_compat.cli import context
from schema_compat.cli.commands import indexes as indexes_command
from schema_compat.cli.main import __version__, app
from schema_compat.cli.output import set_output_format
from schema_compat.core.config import settings
from schema_compat.entities.conversation import conversation_codec
from schema_compat.entities.trade import trade_codec
from schema_compat.migrations.index_verifier import IndexVerifier
from schema_compat.services import build_services

runner = CliRunner()


def add_required_indexes(db):
    for codec in (trade_codec, conversation_codec):
        for spec in codec.required_indexes():
            document = spec.to_index_model().document
            db[codec.collection].indexes.append({"name": document["name"], "key": dict(document["key"])})


@pytest.fixture
def cli_db(db, monkeypatch):
    """Point every CLI command at the in-memory database."""
    verifier = IndexVerifier(database_factory=lambda environment: db, codecs=[trade_codec, conversation_codec])

    async def open_services():
        return await build_services(db=db, verifier=verifier)

    monkeypatch.setattr(context, "open_services", open_services)
    monkeypatch.setattr(context, "close_database", AsyncMock())
    yield db
    set_output_format("table")


def invoke(*args):
    return runner.invoke(app, list(args))


def reach_dual_schema(db):
    add_required_indexes(db)
    assert invoke("phase", "set", "verifying").exit_code == 0
    assert invoke("verify").exit_code == 0
    assert invoke("phase", "set", "dual-schema").exit_code == 0


class TestGeneral:
    """Tests for top-level options."""

    def test_version(self):
        result = invoke("--version")

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_no_args_shows_help(self):
        result = invoke()

        assert "backfill" in result.output


class TestPhaseCommands:
    """Tests for phase show/set and verify."""

    def test_show_initial_phase(self, cli_db):
        result = invoke("phase", "show")

        assert result.exit_code == 0
        assert "not-started" in result.output

    def test_show_as_json(self, cli_db):
        result = invoke("-o", "json", "phase", "show")

        assert result.exit_code == 0
        assert '"phase": "not-started"' in result.output

    def test_invalid_transition_exits_non_zero(self, cli_db):
        result = invoke("phase", "set", "cutover")

        assert result.exit_code == 1

    def test_dual_schema_requires_verification(self, cli_db):
        assert invoke("phase", "set", "verifying").exit_code == 0

        result = invoke("phase", "set", "dual-schema")

        assert result.exit_code == 1

    def test_verify_fails_without_indexes(self, cli_db):
        result = invoke("verify")

        assert result.exit_code == 1
        assert "not ready" in result.output

    def test_partial_verification_does_not_open_gate(self, cli_db, monkeypatch):
        monkeypatch.setattr(settings, "environment", "production")
        monkeypatch.setenv("VERIFY_ENVIRONMENTS", "staging=mongodb://stg:27017")
        add_required_indexes(cli_db)
        assert invoke("phase", "set", "verifying").exit_code == 0

        verified = invoke("verify", "-e", "staging")

        assert verified.exit_code == 0
        assert "not recorded" in verified.output
        assert invoke("phase", "set", "dual-schema").exit_code == 1
        assert invoke("verify").exit_code == 0
        assert invoke("phase", "set", "dual-schema").exit_code == 0

    def test_verified_migration_reaches_dual_schema(self, cli_db):
        reach_dual_schema(cli_db)

        assert "dual-schema" in invoke("phase", "show").output


class TestPolicyCommands:
    """Tests for policy show/set."""

    def test_show(self, cli_db):
        result = invoke("policy", "show", "trades")

        assert result.exit_code == 0
        assert "legacy-first" in result.output

    def test_override(self, cli_db):
        result = invoke("policy", "set", "trades", "--write", "2", "--read", "new-first")

        assert result.exit_code == 0
        assert "writeSchema 2" in result.output
        assert "new-first" in invoke("-o", "json", "policy", "show", "trades").output

    def test_rolled_back_pins_legacy_writes(self, cli_db):
        reach_dual_schema(cli_db)
        assert invoke("rollback", "trigger", "-r", "test", "--no-restore").exit_code == 0

        assert invoke("policy", "set", "trades", "-w", "2").exit_code == 1

    def test_unknown_collection(self, cli_db):
        assert invoke("policy", "set", "users", "-w", "1").exit_code == 1


class TestBackfillCommands:
    """Tests for backfill commands."""

    def test_start_migrates_and_enters_backfilling(self, cli_db, legacy_trade):
        reach_dual_schema(cli_db)
        cli_db["trades"].seed([legacy_trade(i) for i in range(5)])

        result = invoke("backfill", "start", "trades", "--batch-size", "2")

        assert result.exit_code == 0
        assert all(doc["schemaVersion"] == "2" for doc in cli_db["trades"].documents.values())
        assert "backfilling" in invoke("phase", "show").output

    def test_start_refused_before_dual_schema(self, cli_db, legacy_trade):
        cli_db["trades"].seed([legacy_trade(1)])

        result = invoke("backfill", "start", "trades")

        assert result.exit_code == 1
        assert all("schemaVersion" not in doc for doc in cli_db["trades"].documents.values())

    def test_dry_run_writes_nothing(self, cli_db, legacy_trade):
        reach_dual_schema(cli_db)
        cli_db["trades"].seed([legacy_trade(i) for i in range(3)])

        result = invoke("backfill", "start", "trades", "--dry-run")

        assert result.exit_code == 0
        assert all("schemaVersion" not in doc for doc in cli_db["trades"].documents.values())
        assert "dual-schema" in invoke("phase", "show").output

    def test_status_without_run(self, cli_db, legacy_trade):
        cli_db["trades"].seed([legacy_trade(1), legacy_trade(2)])

        result = invoke("backfill", "status", "trades")

        assert result.exit_code == 0
        assert "No backfill recorded" in result.output

    def test_pause_without_running_backfill(self, cli_db):
        assert invoke("backfill", "pause", "trades").exit_code == 1

    def test_resume_without_paused_backfill(self, cli_db):
        assert invoke("backfill", "resume", "trades").exit_code == 1


class TestRollbackCommands:
    """Tests for rollback, health, validate and snapshot commands."""

    def test_snapshot_then_trigger(self, cli_db):
        reach_dual_schema(cli_db)

        snapshot = invoke("rollback", "snapshot", "--id", "snap-1", "--location", "/backups/snap-1")
        rollback = invoke("rollback", "trigger", "--reason", "error spike", "--no-restore")

        assert snapshot.exit_code == 0
        assert "snap-1" in snapshot.output
        assert rollback.exit_code == 0
        assert "rolled-back" in invoke("phase", "show").output

    def test_duplicate_snapshot(self, cli_db):
        assert invoke("rollback", "snapshot", "--id", "snap-1", "-l", "/backups/a").exit_code == 0

        assert invoke("rollback", "snapshot", "--id", "snap-1", "-l", "/backups/b").exit_code == 1

    def test_validate_clean_collection(self, cli_db, legacy_trade):
        cli_db["trades"].seed([legacy_trade(1)])

        result = invoke("rollback", "validate", "trades")

        assert result.exit_code == 0
        assert "No corrupt documents" in result.output

    def test_validate_reports_corruption(self, cli_db, new_trade):
        cli_db["trades"].seed([new_trade(1, participants="broken")])

        assert invoke("rollback", "validate", "trades").exit_code == 1

    def test_health_without_traffic(self, cli_db):
        result = invoke("rollback", "health")

        assert result.exit_code == 0
        assert "trades" in result.output


class TestCleanupAndIndexCommands:
    """Tests for cleanup and index creation."""

    def test_cleanup_refused_before_cutover(self, cli_db):
        result = invoke("cleanup", "run", "trades")

        assert result.exit_code == 1

    def test_create_indexes(self, cli_db, monkeypatch):
        create = AsyncMock(return_value=["idx_a", "idx_b"])
        monkeypatch.setattr(indexes_command.db_manager, "create_indexes", create)

        result = invoke("indexes", "create", "-e", "staging")

        assert result.exit_code == 0
        assert "2 indexes" in result.output
        required, environment = create.call_args.args
        assert environment == "staging"
        assert [name for name, _ in required] == ["trades", "conversations"]
