"""CLI entry point for the schema compatibility layer."""

from typing import Annotated

import typer
from rich.console import Console

from schema_compat.cli.commands import backfill, cleanup, indexes, phase, policy, rollback
from schema_compat.cli.commands.verify import verify
from schema_compat.cli.output import set_output_format

__version__ = "1.0.0"

app = typer.Typer(
    name="schema-compat",
    help="Schema migration and compatibility layer - operate a zero-downtime migration",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

app.command("verify", help="Verify index readiness in every environment")(verify)
app.add_typer(phase.app, name="phase", help="Migration phase")
app.add_typer(policy.app, name="policy", help="Collection policies")
app.add_typer(backfill.app, name="backfill", help="Batch migration")
app.add_typer(rollback.app, name="rollback", help="Rollback, health and snapshots")
app.add_typer(cleanup.app, name="cleanup", help="Legacy residue cleanup")
app.add_typer(indexes.app, name="indexes", help="Index management")

console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"schema-compat version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-v",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit",
        ),
    ] = False,
    output_format: Annotated[
        str,
        typer.Option("--output", "-o", help="Output format (table, json)"),
    ] = "table",
) -> None:
    """
    Schema migration and compatibility layer.

    [bold]Typical flow:[/bold]

        schema-compat indexes create
        schema-compat phase set verifying
        schema-compat verify
        schema-compat rollback snapshot --id snap-1 --location s3://backups/snap-1
        schema-compat phase set dual-schema
        schema-compat backfill start trades
        schema-compat phase set cutover
        schema-compat cleanup run trades
    """
    set_output_format(output_format)


if __name__ == "__main__":
    app()
