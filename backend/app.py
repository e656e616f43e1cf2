"""
Hestia Backend Application

FastAPI application running the recurring schedule jobs.
"""

import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from backend import api, log_config  # noqa: F401
from backend.api import router as api_router
from backend.container import build_container
from core.hestia.config import load_config
from core.hestia.coordinator import JobKind
from core.hestia.legacy_import import import_legacy_files


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan manager for startup/shutdown."""
    # Startup
    logger.info("Hestia starting")

    config = load_config()
    container = build_container(config)
    api.container = container

    if config.legacy_import_dir:
        report = import_legacy_files(config.legacy_import_dir, container.settings_repository, container.history_repository)
        logger.info(f"Legacy import: {report.to_dict()}")

    if config.run_initial_batch:
        try:
            await container.scheduler.run_once(JobKind.DAILY_BATCH, force=True)
        except Exception as e:
            logger.warning(f"Initial batch failed: {e}")

    await container.scheduler.start()
    logger.info(
        f"Hestia ready: {len(container.settings_repository.list_user_ids())} user(s), "
        f"zones {container.settings_repository.zones(config.default_zone)}"
    )

    yield

    # Shutdown
    logger.info("Hestia shutting down")
    await container.scheduler.stop()


# Create FastAPI application
app = FastAPI(
    title="Hestia API",
    description="Spot-price Comfort/TurnOff scheduling for domestic hot water heaters",
    version="0.1.0",
    lifespan=lifespan,
)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Handle all unhandled exceptions gracefully."""
    tb_str = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))

    logger.error(f"Unhandled exception: {exc}")
    logger.error(f"Request path: {request.url.path}")
    logger.error(f"Stack trace:\n{tb_str}")

    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc),
            "type": type(exc).__name__,
            "message": "Internal server error",
        },
    )


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


# For development
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8080)
