"""Index creation command."""

from typing import Annotated, Optional

import typer

from schema_compat.cli import context
from schema_compat.cli.output import print_rows, print_success
from schema_compat.core.config import settings
from schema_compat.core.database import db_manager
from schema_compat.entities import CODECS

app = typer.Typer(name="indexes", help="Manage the indexes new-schema queries need")


@app.command("create")
def create(
    environment: Annotated[
        Optional[str], typer.Option("--environment", "-e", help="Environment (default current)")
    ] = None,
):
    """Create every index declared by the entity codecs."""
    required = [
        (name, [spec.to_index_model() for spec in CODECS[name].required_indexes()])
        for name in settings.migration_collections
        if name in CODECS
    ]

    with context.handle_errors("Index creation"):
        created = context.run_async(db_manager.create_indexes(required, environment))

    print_rows([{"index": name} for name in created], ["index"], "Indexes")
    print_success(f"{len(created)} indexes created or already present")
