# app/main.py
"""
FastAPI application with database pool and job queue lifecycle management.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.config import settings
from app.db.helpers import DatabaseError
from app.db.pool import db_pool
from app.features.availability.api import InvalidLinkError
from app.features.availability.api import router as availability_router
from app.infrastructure.observability.logging import get_logger, log_request, setup_logging
from app.infrastructure.tasks import drain
from app.routes import health
from app.services.calendar.google_client import google_calendar_service
from app.services.infrastructure.job_queue import job_queue

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""

    # Startup sequence
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    startup_tasks = []

    try:
        # Initialize database pool first
        logger.info("Initializing database pool")
        await db_pool.initialize()
        startup_tasks.append("database_pool")

        # Job queue second
        logger.info("Initializing job queue")
        await job_queue.initialize()
        startup_tasks.append("job_queue")

        logger.info("All services initialized successfully", services=startup_tasks)

    except Exception as e:
        logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)

        # Clean up any successfully initialized services in reverse order
        if "job_queue" in startup_tasks:
            try:
                await job_queue.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up job queue", error=str(cleanup_error))

        if "database_pool" in startup_tasks:
            try:
                await db_pool.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up database pool", error=str(cleanup_error))

        raise

    yield

    # Shutdown sequence (reverse order)
    logger.info("Application shutting down")

    shutdown_errors = []

    # Let fire-and-forget work (analytics, emails, hold cleanup) finish first
    await drain()

    try:
        logger.info("Closing job queue")
        await job_queue.close()
    except Exception as e:
        logger.error("Error closing job queue", error=str(e))
        shutdown_errors.append(f"Job queue: {e}")

    try:
        await google_calendar_service.close()
    except Exception as e:
        logger.error("Error closing calendar client", error=str(e))
        shutdown_errors.append(f"Calendar client: {e}")

    # Close database pool last (may have active connections)
    try:
        logger.info("Closing database pool")
        await db_pool.close()
    except Exception as e:
        logger.error("Error closing database pool", error=str(e))
        shutdown_errors.append(f"Database: {e}")

    if shutdown_errors:
        logger.warning("Some services had shutdown errors", errors=shutdown_errors)
    else:
        logger.info("All services closed successfully")


app = FastAPI(
    title="Availability Consensus",
    description="Collects group availability, ranks candidate times and schedules the winner",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(health.router)
app.include_router(availability_router)


@app.exception_handler(InvalidLinkError)
async def invalid_link_handler(request: Request, exc: InvalidLinkError):
    return JSONResponse(status_code=400, content=InvalidLinkError.body)


@app.exception_handler(DatabaseError)
async def database_error_handler(request: Request, exc: DatabaseError):
    logger.error(
        "Unhandled database error",
        path=request.url.path,
        operation=exc.operation,
        error=str(exc),
    )
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    log_request(
        request.method,
        request.url.path,
        response.status_code,
        round(process_time, 2),
        user_id=request.headers.get("x-user-id"),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
