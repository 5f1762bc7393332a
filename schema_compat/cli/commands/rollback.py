"""Rollback, health and snapshot commands."""

from typing import Annotated, Optional

import typer

from schema_compat.cli import context
from schema_compat.cli.output import print_key_values, print_rows, print_success, print_warning

app = typer.Typer(name="rollback", help="Roll back, check health and register snapshots")


@app.command("trigger")
def trigger(
    reason: Annotated[str, typer.Option("--reason", "-r", help="Why the migration is rolled back")],
    restore: Annotated[
        Optional[bool],
        typer.Option(
            "--restore/--no-restore",
            help="Force or forbid a snapshot restore (default: only if corruption is found)",
        ),
    ] = None,
):
    """Flip the registry to rolled-back; restore the snapshot if data is corrupt."""

    async def _trigger():
        services = await context.open_services()
        return await services.rollback.trigger(reason, trigger="manual", restore=restore)

    with context.handle_errors("Rollback"):
        outcome = context.run_async(_trigger())

    print_key_values(outcome.to_dict(), "Rollback")
    if outcome.corrupted and outcome.restored_snapshot is None:
        print_warning("Corrupt documents found but no restore was performed")
    print_success("Every collection now writes schema 1")


@app.command("health")
def health(
    collection: Annotated[Optional[str], typer.Argument(help="Collection (default all)")] = None,
):
    """Sample read-path consistency now and report health."""

    async def _health():
        services = await context.open_services()
        rows = []
        for name in [collection] if collection else services.registry.collections:
            await services.sampler.sample(name)
            report = await services.monitor.check_health(name)
            rows.append({
                "collection": name,
                "sampled": report.sampled,
                "inconsistencies": report.inconsistency_count,
                "inconsistency_rate": f"{report.inconsistency_rate:.2%}",
                "breaches": "; ".join(services.monitor.breaches(report)) or "-",
            })
        return rows

    with context.handle_errors("Health check"):
        rows = context.run_async(_health())

    print_rows(rows, ["collection", "sampled", "inconsistencies", "inconsistency_rate", "breaches"], "Health")
    if any(row["breaches"] != "-" for row in rows):
        raise typer.Exit(1)


@app.command("validate")
def validate(
    collection: Annotated[Optional[str], typer.Argument(help="Collection (default all)")] = None,
):
    """Check migrated documents for corruption."""

    async def _validate():
        services = await context.open_services()
        return await services.rollback.validate_integrity([collection] if collection else None)

    with context.handle_errors("Integrity validation"):
        violations = context.run_async(_validate())

    rows = [
        {"collection": name, "_id": item["_id"], "issues": "; ".join(item["issues"])}
        for name, items in violations.items()
        for item in items
    ]
    if rows:
        print_rows(rows, ["collection", "_id", "issues"], "Corrupt Documents")
        raise typer.Exit(1)
    print_success("No corrupt documents found")


@app.command("snapshot")
def snapshot(
    snapshot_id: Annotated[str, typer.Option("--id", help="Snapshot identifier")],
    location: Annotated[str, typer.Option("--location", "-l", help="Where the export lives")],
    collection: Annotated[
        Optional[list[str]], typer.Option("--collection", "-c", help="Covered collection (repeatable)")
    ] = None,
):
    """Register the backup snapshot taken before migration."""

    async def _register():
        services = await context.open_services()
        return await services.rollback.register_snapshot(snapshot_id, location, collection or None)

    with context.handle_errors("Snapshot registration"):
        registered = context.run_async(_register())

    print_success(f"Snapshot {registered.snapshot_id} registered for {', '.join(registered.collections)}")
