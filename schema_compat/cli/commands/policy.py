"""Collection policy commands."""

from typing import Annotated, Optional

import typer

from schema_compat.cli import context
from schema_compat.cli.output import print_rows, print_success
from schema_compat.entities.base import SchemaVersion
from schema_compat.migrations.models import CollectionPolicy, ReadPreference

app = typer.Typer(name="policy", help="Show or override collection policies")


@app.command("show")
def show(
    collection: Annotated[Optional[str], typer.Argument(help="Collection (default all)")] = None,
):
    """Show collection policies."""

    async def _show():
        services = await context.open_services()
        registry = services.registry
        names = [collection] if collection else registry.collections
        return [
            {
                "collection": name,
                **registry.get_policy(name).to_dict(),
                "dualWrite": registry.is_dual_schema(name),
            }
            for name in names
        ]

    with context.handle_errors("Reading policies"):
        rows = context.run_async(_show())
    print_rows(rows, ["collection", "writeSchema", "readPreference", "dualWrite"], "Collection Policies")


@app.command("set")
def set_policy(
    collection: Annotated[str, typer.Argument(help="Collection to override")],
    write_schema: Annotated[SchemaVersion, typer.Option("--write", "-w", help="Schema version written")],
    read_preference: Annotated[
        ReadPreference, typer.Option("--read", "-r", help="Which shape is queried first")
    ] = ReadPreference.LEGACY_FIRST,
):
    """Override one collection's policy until the next phase change."""

    async def _set():
        services = await context.open_services()
        if collection not in services.registry.collections:
            raise typer.BadParameter(f"'{collection}' is not under migration")
        return await services.registry.set_policy(collection, CollectionPolicy(write_schema, read_preference))

    with context.handle_errors("Policy change"):
        state = context.run_async(_set())

    policy = state.policies[collection]
    print_success(
        f"{collection}: writeSchema {policy.write_schema.value}, {policy.read_preference.value}"
    )
