"""
Health check endpoints for Kubernetes probes and monitoring.

Provides:
- /health/live: Liveness probe (is the service running?)
- /health/ready: Readiness probe (is MongoDB reachable and the registry loaded?)
"""

from datetime import datetime

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from schema_compat.core.database import check_mongodb_health

router = APIRouter(tags=["healthcheck"])


class LivenessResponse(BaseModel):
    """Liveness probe response."""

    status: str = "alive"
    timestamp: str


class ReadinessResponse(BaseModel):
    """Readiness probe response."""

    status: str  # "ready", "not_ready"
    timestamp: str
    checks: dict[str, str] = {}


@router.get("/health/live", summary="Liveness probe", response_model=LivenessResponse)
async def liveness():
    return LivenessResponse(timestamp=datetime.utcnow().isoformat() + "Z")


@router.get(
    "/health/ready",
    summary="Readiness probe",
    response_model=ReadinessResponse,
    responses={503: {"description": "Service is not ready"}},
)
async def readiness(request: Request):
    """Ready when MongoDB answers a ping and the migration registry is loaded."""
    services = getattr(request.app.state, "services", None)
    checks = {
        "mongodb": "healthy" if await check_mongodb_health() else "unhealthy",
        "registry": "loaded" if services is not None and services.registry.initialized else "not_loaded",
    }
    ready = checks["mongodb"] == "healthy" and checks["registry"] == "loaded"
    response = ReadinessResponse(
        status="ready" if ready else "not_ready",
        timestamp=datetime.utcnow().isoformat() + "Z",
        checks=checks,
    )
    return JSONResponse(status_code=200 if ready else 503, content=response.model_dump())
