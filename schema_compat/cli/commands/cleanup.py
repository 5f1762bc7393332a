"""Legacy residue cleanup command."""

from typing import Annotated, Optional

import typer

from schema_compat.cli import context
from schema_compat.cli.output import print_key_values, print_warning

app = typer.Typer(name="cleanup", help="Remove legacy fields after cutover")


@app.command("run")
def run(
    collection: Annotated[str, typer.Argument(help="Collection to clean")],
    batch_size: Annotated[Optional[int], typer.Option("--batch-size", "-b", help="Documents per batch")] = None,
    dry_run: Annotated[bool, typer.Option("--dry-run", "-n", help="Count without writing")] = False,
):
    """Remove legacy fields once migration completed and the observation window passed."""

    async def _run():
        services = await context.open_services()
        return await services.cleanup.run(collection, batch_size=batch_size, dry_run=dry_run)

    with context.handle_errors("Cleanup"):
        counts = context.run_async(_run())

    print_key_values({"collection": collection, "dry_run": dry_run, **counts}, "Legacy Cleanup")
    if counts["conflicts"] or counts["invalid"]:
        print_warning("Some documents kept their legacy fields; run cleanup again later")
