"""
Read-only operator endpoints for migration state.

Changing phase, policy or running backfills is done with the CLI.
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request

from schema_compat.entities.base import SchemaVersion
from schema_compat.migrations.executor import BatchMigrationExecutor
from schema_compat.services import MigrationServices

router = APIRouter(prefix="/migration", tags=["migration"])


def get_services(request: Request) -> MigrationServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Migration services not initialized")
    return services


def _known_collection(services: MigrationServices, collection: str) -> None:
    if collection not in services.registry.collections:
        raise HTTPException(status_code=404, detail=f"Collection '{collection}' is not under migration")


@router.get("/status", summary="Registry state")
async def registry_status(services: MigrationServices = Depends(get_services)) -> dict[str, Any]:
    state = services.registry.state
    return {
        "phase": state.phase.value,
        "version": state.version,
        "updated_at": state.updated_at,
        "flags": dict(state.flags),
        "policies": {name: policy.to_dict() for name, policy in state.policies.items()},
        "last_verification": state.last_verification.to_dict() if state.last_verification else None,
    }


@router.get("/progress/{collection}", summary="Batch migration progress")
async def progress(
    collection: str,
    revert: bool = False,
    services: MigrationServices = Depends(get_services),
) -> dict[str, Any]:
    _known_collection(services, collection)
    executor: BatchMigrationExecutor = services.executor
    target = SchemaVersion.LEGACY if revert else SchemaVersion.NEW
    record = await executor.status(collection, target)
    if record is None:
        raise HTTPException(status_code=404, detail=f"No migration run recorded for '{collection}'")

    body = record.to_dict()
    body["last_cursor"] = str(record.last_cursor) if record.last_cursor is not None else None
    body["remaining"] = await executor.remaining(collection, target)
    return body


@router.get("/health/{collection}", summary="Collection health")
async def collection_health(
    collection: str, services: MigrationServices = Depends(get_services)
) -> dict[str, Any]:
    _known_collection(services, collection)
    report = await services.monitor.check_health(collection)
    return {**report.to_dict(), "breaches": services.monitor.breaches(report)}
