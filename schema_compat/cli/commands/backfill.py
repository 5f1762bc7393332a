"""
Batch migration (backfill) commands.
"""

from typing import Annotated, Optional

import typer

from schema_compat.cli import context
from schema_compat.cli.output import print_key_values, print_success, print_warning
from schema_compat.entities.base import SchemaVersion
from schema_compat.migrations.models import MigrationPhase, ProgressRecord, RunStatus

app = typer.Typer(name="backfill", help="Run, pause, resume and revert batch migrations")

CollectionArg = Annotated[str, typer.Argument(help="Collection to migrate")]
BatchSizeOpt = Annotated[Optional[int], typer.Option("--batch-size", "-b", help="Documents per batch")]
DryRunOpt = Annotated[bool, typer.Option("--dry-run", "-n", help="Transform and count without writing")]


def _summary(record: ProgressRecord, remaining: Optional[int] = None) -> dict:
    summary = {
        "collection": record.collection,
        "target_version": record.target_version.value,
        "status": record.status.value,
        "migrated": record.migrated,
        "skipped": record.skipped,
        "failed": record.failed,
        "conflicts": record.conflicts,
        "batches": record.batches,
        "last_cursor": record.last_cursor,
        "started_at": record.started_at,
        "completed_at": record.completed_at,
        "dry_run": record.dry_run,
        "last_error": record.last_error,
    }
    if remaining is not None:
        summary["remaining"] = remaining
    return summary


def _report(record: ProgressRecord) -> None:
    print_key_values(_summary(record), "Backfill")
    if record.status is RunStatus.FAILED:
        print_warning(f"Run failed: {record.last_error}")
        raise typer.Exit(1)
    if record.status is RunStatus.PAUSED:
        print_warning("Run paused; resume with 'backfill resume'")
    elif record.failed:
        print_warning(f"{record.failed} documents could not be transformed; see 'backfill status'")


@app.command("start")
def start(
    collection: CollectionArg,
    batch_size: BatchSizeOpt = None,
    from_cursor: Annotated[
        Optional[str], typer.Option("--from-cursor", help="Start after this _id instead of the saved cursor")
    ] = None,
    dry_run: DryRunOpt = False,
):
    """Migrate a collection to the new schema."""

    async def _start():
        services = await context.open_services()
        if not dry_run and services.registry.phase is MigrationPhase.DUAL_SCHEMA:
            await services.registry.set_phase(MigrationPhase.BACKFILLING, reason=f"backfill of {collection}")
        return await services.executor.run(
            collection,
            batch_size=batch_size,
            resume_from_cursor=context.parse_cursor(from_cursor),
            dry_run=dry_run,
        )

    with context.handle_errors("Backfill"):
        record = context.run_async(_start())
    _report(record)


@app.command("resume")
def resume(collection: CollectionArg, batch_size: BatchSizeOpt = None):
    """Resume a paused or failed backfill from its saved cursor."""

    async def _resume():
        services = await context.open_services()
        existing = await services.executor.status(collection)
        if existing is None or not existing.resumable:
            raise typer.BadParameter(f"No paused or failed backfill for '{collection}'")
        return await services.executor.run(collection, batch_size=batch_size)

    with context.handle_errors("Resume"):
        record = context.run_async(_resume())
    _report(record)


@app.command("pause")
def pause(
    collection: CollectionArg,
    revert: Annotated[bool, typer.Option("--revert", help="Pause the revert run instead")] = False,
):
    """Ask a running backfill to stop after its current batch."""

    async def _pause():
        services = await context.open_services()
        target = SchemaVersion.LEGACY if revert else SchemaVersion.NEW
        return await services.executor.request_pause(collection, target)

    with context.handle_errors("Pause"):
        requested = context.run_async(_pause())

    if not requested:
        print_warning(f"No running backfill for '{collection}'")
        raise typer.Exit(1)
    print_success(f"Pause requested for {collection}; it stops after the current batch")


@app.command("status")
def status(
    collection: CollectionArg,
    revert: Annotated[bool, typer.Option("--revert", help="Show the revert run instead")] = False,
):
    """Show progress of a collection's backfill."""

    async def _status():
        services = await context.open_services()
        target = SchemaVersion.LEGACY if revert else SchemaVersion.NEW
        record = await services.executor.status(collection, target)
        remaining = await services.executor.remaining(collection, target)
        return record, remaining

    with context.handle_errors("Status"):
        record, remaining = context.run_async(_status())

    if record is None:
        print_warning(f"No backfill recorded for '{collection}' ({remaining} documents to migrate)")
        return
    print_key_values(_summary(record, remaining), "Backfill Status")
    if record.errors:
        print_key_values({error["_id"]: error["error"] for error in record.errors[-10:]}, "Recent Errors")


@app.command("revert")
def revert(collection: CollectionArg, batch_size: BatchSizeOpt = None, dry_run: DryRunOpt = False):
    """Rewrite migrated documents back to the legacy schema (after rollback)."""

    async def _revert():
        services = await context.open_services()
        return await services.executor.run(
            collection,
            batch_size=batch_size,
            target_version=SchemaVersion.LEGACY,
            dry_run=dry_run,
        )

    with context.handle_errors("Revert"):
        record = context.run_async(_revert())
    _report(record)
