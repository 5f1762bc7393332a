"""Index readiness verification command."""

from typing import Annotated, Optional

import typer

from schema_compat.cli import context
from schema_compat.cli.output import console, is_json, print_json, print_rows, print_success, print_warning
from schema_compat.migrations.index_verifier import aggregate_results
from schema_compat.migrations.models import AGGREGATE_ENVIRONMENT


def verify(
    environment: Annotated[
        Optional[list[str]],
        typer.Option("--environment", "-e", help="Environment to verify (repeatable; default all)"),
    ] = None,
    record: Annotated[
        bool,
        typer.Option("--record/--no-record", help="Store the aggregate result in the registry (full runs only)"),
    ] = True,
):
    """Verify that every index new-schema queries need is present and fast."""

    async def _verify():
        services = await context.open_services()
        results = await services.verifier.verify_environments(environment or None)
        aggregate = aggregate_results(results)
        recorded = record and aggregate.environment == AGGREGATE_ENVIRONMENT
        if recorded:
            await services.registry.record_verification(aggregate)
        return results, aggregate, recorded

    with context.handle_errors("Index verification"):
        results, aggregate, recorded = context.run_async(_verify())

    if is_json():
        print_json({
            "ready": aggregate.ready,
            "recorded": recorded,
            "environments": {name: result.to_dict() for name, result in results.items()},
        })
    else:
        rows = [
            {
                "environment": name,
                "ready": "yes" if result.ready else "NO",
                "missing": ", ".join(spec.query_name for spec in result.missing_indexes) or "-",
                "slow": ", ".join(result.slow_queries) or "-",
            }
            for name, result in results.items()
        ]
        print_rows(rows, ["environment", "ready", "missing", "slow"], "Index Verification")
        console.print()

    if record and not recorded:
        print_warning(
            f"Verified only {aggregate.environment}; result not recorded, "
            "the dual-schema gate needs every environment verified"
        )

    if not aggregate.ready:
        print_warning("Indexes are not ready; migration must not start")
        raise typer.Exit(1)
    print_success("All required indexes are ready")
