"""
FastAPI application with database pool lifecycle management.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from settlement_engine.config import settings
from settlement_engine.db.pool import db_pool
from settlement_engine.db.schema import ensure_schema
from settlement_engine.features.settlement.api.router import (
    router as settlement_router,
)
from settlement_engine.features.settlement.api.router import (
    settlement_error_handler,
    value_error_handler,
)
from settlement_engine.features.settlement.api.webhooks import router as webhook_router
from settlement_engine.features.settlement.domain import SettlementError
from settlement_engine.infrastructure.observability.logging import (
    get_logger,
    log_request,
    setup_logging,
)
from settlement_engine.middleware import RequestContextMiddleware
from settlement_engine.routes import health

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    try:
        logger.info("Initializing database pool")
        await db_pool.initialize()
        await ensure_schema()
        logger.info("All services initialized successfully", services=["database_pool"])

    except Exception as e:
        logger.error("Failed to initialize services", error=str(e))
        if db_pool.initialized:
            try:
                await db_pool.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up database pool", error=str(cleanup_error))
        raise

    yield

    logger.info("Application shutting down")
    try:
        logger.info("Closing database pool")
        await db_pool.close()
        logger.info("All services closed successfully")
    except Exception as e:
        logger.error("Error closing database pool", error=str(e))


app = FastAPI(
    title="Mentor Settlement Engine",
    description="Escrow, referral rewards and job-offer bonuses for the mentoring marketplace",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(health.router)
app.include_router(settlement_router)
app.include_router(webhook_router)

app.add_exception_handler(SettlementError, settlement_error_handler)
app.add_exception_handler(ValueError, value_error_handler)


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
        caller_id=request.headers.get("x-caller-id"),
    )
    return response


# Outermost middleware: request context is bound before log_requests runs.
app.add_middleware(RequestContextMiddleware)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
