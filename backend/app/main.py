"""
FastAPI Application Entry Point
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.api.v1.routes import api_router
from app.core.config import get_settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan - startup and shutdown events.

    Startup:
    - Validates configuration
    - Builds store, queue and manager
    - Starts the audit worker pool in-process (QUEUE_WORKER_ENABLED)

    Shutdown:
    - Stops the worker, letting in-flight jobs finish
    - Closes Redis and HTTP clients
    """
    settings = get_settings()
    logger.info("Starting bulk audit campaign service...")

    strict_validation = settings.environment == "production"

    try:
        from app.core.validation import validate_config_on_startup
        validate_config_on_startup(strict=strict_validation)
    except RuntimeError as e:
        if strict_validation:
            logger.error(f"Startup failed: {e}")
            raise
        logger.warning(f"Configuration warnings (non-fatal in {settings.environment}): {e}")

    from app.core.container import ServiceContainer
    container = await ServiceContainer.get_instance()

    if settings.queue_worker_enabled and container.worker is not None:
        await container.worker.start()
    elif not settings.queue_worker_enabled:
        logger.info("Audit worker disabled (QUEUE_WORKER_ENABLED=false)")

    logger.info("Bulk audit campaign service started")

    yield

    logger.info("Shutting down bulk audit campaign service...")
    try:
        await container.shutdown()
    except Exception as e:
        logger.error(f"Error during shutdown: {e}")

    logger.info("Shutdown complete")


app = FastAPI(
    title="Bulk Audit Campaigns",
    description="Queue-backed bulk call auditing: transcription, AI scoring and campaign tracking",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=get_settings().api_prefix)


@app.get("/")
async def root():
    return {"message": "Bulk Audit Campaigns API", "status": "running"}


@app.get("/health")
async def health_check():
    """
    Health check endpoint.

    Reports queue availability and worker status. The service stays healthy
    while the queue is down; campaigns are accepted and left pending.
    """
    health = {"status": "healthy"}

    try:
        from app.core.container import ServiceContainer
        container = await ServiceContainer.get_instance()
        health["queue_available"] = container.queue.is_available()
        health["worker"] = await container.worker.get_status() if container.worker else None
    except Exception as e:
        health["services"] = f"error: {str(e)}"

    return health


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
