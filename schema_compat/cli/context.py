"""Shared plumbing for CLI commands: event loop, services and error exits."""

import asyncio
from collections.abc import Coroutine
from contextlib import contextmanager
from typing import Any, TypeVar

import typer
from bson import ObjectId

from schema_compat.cli.output import print_error
from schema_compat.core.database import close_database
from schema_compat.core.exceptions import MigrationLayerError
from schema_compat.core.retry import MaxRetriesExceededError
from schema_compat.services import MigrationServices, build_services

T = TypeVar("T")


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run a command coroutine and close database clients afterwards."""

    async def _run() -> T:
        try:
            return await coro
        finally:
            await close_database()

    return asyncio.run(_run())


async def open_services() -> MigrationServices:
    return await build_services()


def parse_cursor(value: str | None) -> Any:
    """Cursor given on the command line; ObjectId when it looks like one."""
    if value is None:
        return None
    return ObjectId(value) if ObjectId.is_valid(value) else value


@contextmanager
def handle_errors(action: str):
    """Print migration errors and exit non-zero."""
    try:
        yield
    except typer.Exit:
        raise
    except MigrationLayerError as e:
        print_error(f"{action} failed: {e.message}", {"code": e.error_code, **e.context})
        raise typer.Exit(1)
    except MaxRetriesExceededError as e:
        print_error(f"{action} failed after {e.attempts} attempts: {e.last_error}")
        raise typer.Exit(1)
    except Exception as e:
        print_error(f"{action} failed: {e}")
        raise typer.Exit(1)
