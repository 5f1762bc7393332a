from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from schema_compat.core.database import close_database
from schema_compat.core.exceptions import ErrorCode, MigrationLayerError
from schema_compat.log.logging import logger
from schema_compat.routers.healthcheck_router import router as healthcheck_router
from schema_compat.routers.metrics_router import router as metrics_router
from schema_compat.routers.migration_router import router as migration_router
from schema_compat.scheduler.scheduler import start_scheduler, stop_scheduler
from schema_compat.services import build_services

ERROR_STATUS = {
    ErrorCode.ENTITY_NOT_FOUND: 404,
    ErrorCode.VALIDATION_ERROR: 422,
    ErrorCode.PHASE_TRANSITION_INVALID: 409,
    ErrorCode.CONCURRENT_WRITE_CONFLICT: 409,
    ErrorCode.STORE_UNAVAILABLE: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    logger.info("Starting schema compatibility service...")

    try:
        app.state.services = await build_services()
        await start_scheduler(app.state.services)
        logger.info(
            "Migration services initialized in phase {phase}",
            phase=app.state.services.registry.phase.value,
        )
    except MigrationLayerError as e:
        # Readiness reports not ready until a restart succeeds
        app.state.services = None
        logger.error("Failed to initialize migration services: {error}", error=e.message)

    yield

    logger.info("Shutting down schema compatibility service...")
    await stop_scheduler()
    await close_database()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Schema Compatibility Service",
    description="Operator surface for the zero-downtime schema migration layer",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(MigrationLayerError)
async def migration_error_handler(request: Request, exc: MigrationLayerError):
    return JSONResponse(
        status_code=ERROR_STATUS.get(exc.error_code, 500),
        content=exc.to_response().model_dump(),
    )


app.include_router(healthcheck_router)
app.include_router(metrics_router)
app.include_router(migration_router)
