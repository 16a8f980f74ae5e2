"""
Livestream Engagement API - Main Application Entry Point.

This module initializes and configures the FastAPI application for the
Livestream Engagement API. It sets up logging, the database, the
derived-attribute caches, middleware, exception handlers and routes.

The service backs a livestreaming platform: viewers comment, tip and react,
streamers moderate their livestreams with banned words, and the platform
serves engagement ranks and statistics.

Key Responsibilities:
- Configure and launch the FastAPI application.
- Set up middleware for correlation, error handling and performance.
- Initialize the storage tables and the icon hash / theme caches at startup.
- Mount the health, monitoring and `/api` routers.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from api.dependencies import get_storage
from api.endpoints import public_router, router
from api.health_router import health_router, monitoring_router
from core.cache import init_caches
from core.database import create_db_and_tables
from core.logging_config import get_logger, setup_logging
from core.middleware import (
    CorrelationMiddleware,
    ErrorHandlingMiddleware,
    PerformanceMiddleware,
    register_exception_handlers,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    setup_logging()
    logger = get_logger("api.startup")

    storage = get_storage()
    await create_db_and_tables(storage.engine)
    logger.info("Database initialized successfully")

    init_caches()
    logger.info("Derived attribute caches initialized")

    logger.info("Service startup completed")
    yield

    # Cleanup on shutdown
    logger.info("Shutting down Livestream Engagement API")
    await storage.engine.dispose()
    logger.info("Cleanup completed")


app = FastAPI(
    title="Livestream Engagement API",
    description="Rankings, moderation and statistics for livestreams",
    version="1.0.0",
    lifespan=lifespan,
)

# Added last runs first
app.add_middleware(PerformanceMiddleware)
app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(CorrelationMiddleware)

register_exception_handlers(app)

# Health routers FIRST (no caller identity required for monitoring)
app.include_router(health_router)
app.include_router(monitoring_router)

app.include_router(public_router)
app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8080,
        reload=True,
        log_level="info",
    )
