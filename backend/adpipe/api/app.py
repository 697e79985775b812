"""FastAPI application setup with lifespan and exception handlers."""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from adpipe import __version__
from adpipe.config import settings
from adpipe.db import init_database, shutdown
from adpipe.orchestrator.errors import (
    ConcurrentModification,
    ConfirmationRequired,
    InvalidTransition,
    NotFound,
    StageLocked,
    StaleAdvance,
)
from adpipe.api.routes import router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Startup:
        - Initialize database schema

    Shutdown:
        - Close database connections
    """
    logger.info("Starting Ad Pipeline API...")
    await init_database()
    logger.info("API startup complete")

    yield

    logger.info("Shutting down Ad Pipeline API...")
    await shutdown()
    logger.info("API shutdown complete")


app = FastAPI(
    title="Ad Pipeline API",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.server.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"error": "Not found", "detail": str(exc)})


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition):
    logger.info(f"Rejected {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=409,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


@app.exception_handler(StageLocked)
async def stage_locked_handler(request: Request, exc: StageLocked):
    return JSONResponse(
        status_code=423,
        content={"error": "Stage locked", "detail": str(exc), "fields": exc.fields},
    )


@app.exception_handler(ConcurrentModification)
async def concurrent_modification_handler(request: Request, exc: ConcurrentModification):
    """Clients should refetch and re-decide, not resubmit the same body."""
    return JSONResponse(
        status_code=409,
        content={"error": "Concurrent modification", "detail": str(exc), "retryable": True},
    )


@app.exception_handler(ConfirmationRequired)
async def confirmation_required_handler(request: Request, exc: ConfirmationRequired):
    return JSONResponse(
        status_code=409,
        content={
            "error": "Confirmation required",
            "detail": str(exc),
            "impact": exc.report.model_dump(mode="json"),
        },
    )


@app.exception_handler(StaleAdvance)
async def stale_advance_handler(request: Request, exc: StaleAdvance):
    # Late worker callbacks are acknowledged so workers do not retry them.
    logger.info(f"Discarded stale callback {request.url.path}: {exc}")
    return JSONResponse(
        status_code=200,
        content={
            "discarded": True,
            "detail": str(exc),
            "stage": exc.project_stage,
            "generation_epoch": exc.project_epoch,
        },
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=422, content={"error": "Invalid value", "detail": str(exc)})


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Catch-all exception handler to prevent stack traces in API responses."""
    logger.error(f"Unhandled exception in {request.method} {request.url.path}: {type(exc).__name__}: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc),
        }
    )
