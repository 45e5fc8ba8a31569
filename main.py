"""
FastAPI application entrypoint for the Trip Sync backend.

- Primary: Expose create_app() factory for Uvicorn (--factory) in all environments.
- Convenience: Allow `python -m main` for local development runs, honoring $PORT.

Architecture:
- Service layer (services/) owns trip synchronization, locks and invites
- Document store (db/store.py) in memory or on PostgreSQL
- Thin HTTP routers (api/) over the service layer
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import Settings, get_settings
from utils.logging import RequestIdMiddleware, configure_logging

# Configure logging at import time
configure_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Async context manager for application lifespan events.

    Handles startup and shutdown tasks like:
    - Initializing the database connection pool (postgres backend)
    - Creating the shared document store
    - Cleanup on shutdown
    """
    settings: Settings = app.state.settings

    logger.info(
        "Starting Trip Sync API",
        extra={"env": settings.app_env, "store_backend": settings.store_backend},
    )

    try:
        if settings.store_backend == "postgres":
            from db import init_db

            init_db(settings)
            logger.info(
                "Database initialized",
                extra={
                    "host": settings.postgres_host,
                    "database": settings.postgres_db,
                    "pool_size": settings.postgres_pool_size,
                },
            )

        if getattr(app.state, "store", None) is None:
            from db import create_store

            app.state.store = create_store(settings)
        logger.info(
            "Document store ready",
            extra={"store": type(app.state.store).__name__},
        )

    except Exception as e:
        logger.error(f"Failed to initialize application: {e}", exc_info=True)
        raise

    yield  # Application is running

    # Shutdown: Cleanup
    logger.info("Shutting down Trip Sync API")
    store = getattr(app.state, "store", None)
    if store is not None:
        dropped = store.remove_all_listeners()
        logger.info("Document store listeners removed", extra={"count": dropped})
    if settings.store_backend == "postgres":
        from db import close_db

        await close_db()


def create_app(settings: Settings | None = None) -> FastAPI:
    """
    Application factory for FastAPI.

    Creates and configures the FastAPI application with:
    - Trip, module, lock and invite routes
    - CORS middleware for browser clients
    - Request ID tracking for observability

    Args:
        settings: Settings override (tests); defaults to get_settings()

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Trip Sync API",
        description="Collaborative trip planning with real-time module synchronization",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.is_dev else None,  # Disable in production
        redoc_url="/redoc" if settings.is_dev else None,
    )

    # Store settings in app state for access in lifespan and routes
    app.state.settings = settings
    app.state.store = None

    # --- Middleware ---

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request ID tracking (for correlation across logs)
    app.add_middleware(RequestIdMiddleware)

    # --- Routes ---

    from api.invites import router as invites_router
    from api.locks import router as locks_router
    from api.modules import router as modules_router
    from api.trips import router as trips_router

    app.include_router(trips_router, prefix="/api/trips", tags=["Trips"])
    app.include_router(modules_router, prefix="/api/trips", tags=["Modules"])
    app.include_router(locks_router, prefix="/api/trips", tags=["Locks"])
    app.include_router(invites_router, prefix="/api", tags=["Invites"])

    # Health check endpoint
    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint for load balancers and monitoring."""
        return {
            "status": "healthy",
            "env": settings.app_env,
            "store_backend": settings.store_backend,
        }

    logger.info(
        "FastAPI application created",
        extra={
            "env": settings.app_env,
            "routes_count": len(app.routes),
        },
    )

    return app


if __name__ == "__main__":
    """
    Development server entry point.

    Run with: python main.py

    In production, use:
        uvicorn main:create_app --factory --host 0.0.0.0 --port 8000
    """
    import os

    import uvicorn

    settings = get_settings()
    port = int(os.getenv("PORT", "8000"))

    logger.info(f"Starting development server on port {port}")

    uvicorn.run(
        "main:create_app",
        factory=True,
        host="0.0.0.0",
        port=port,
        reload=settings.is_dev,  # Auto-reload in development
        log_level=settings.log_level.lower(),
    )
