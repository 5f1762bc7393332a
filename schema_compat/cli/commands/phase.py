"""Migration phase commands."""

from typing import Annotated, Optional

import typer

from schema_compat.cli import context
from schema_compat.cli.output import print_key_values, print_rows, print_success
from schema_compat.migrations.models import MigrationPhase

app = typer.Typer(name="phase", help="Show or change the migration phase")


@app.command("show")
def show():
    """Show the current phase and per-collection policies."""

    async def _show():
        services = await context.open_services()
        return services.registry.state

    with context.handle_errors("Reading registry"):
        state = context.run_async(_show())

    print_key_values(
        {
            "phase": state.phase.value,
            "version": state.version,
            "updated_at": state.updated_at,
            "verification": (
                "none" if state.last_verification is None
                else ("ready" if state.last_verification.ready else "not ready")
            ),
        },
        "Migration Registry",
    )
    print_rows(
        [{"collection": name, **policy.to_dict()} for name, policy in state.policies.items()],
        ["collection", "writeSchema", "readPreference"],
        "Collection Policies",
    )


@app.command("set")
def set_phase(
    phase: Annotated[MigrationPhase, typer.Argument(help="Target phase")],
    reason: Annotated[Optional[str], typer.Option("--reason", "-r", help="Reason for the change")] = None,
):
    """Move the migration to another phase."""

    async def _set():
        services = await context.open_services()
        return await services.registry.set_phase(phase, reason=reason)

    with context.handle_errors("Phase change"):
        state = context.run_async(_set())

    print_success(f"Phase is now [cyan]{state.phase.value}[/cyan] (registry version {state.version})")
