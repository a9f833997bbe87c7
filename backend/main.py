"""FastAPI application entry point for the dev server orchestrator.

This module initializes the FastAPI application with all middleware,
routers, and event handlers configured.

Usage:
    uv run uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router
from config import configure_logging, settings
from devserver import DevServerManager

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Creates the dev server manager, sweeps stale workspaces and starts the
    deferred-cleanup loop. On shutdown every running dev server is stopped.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    # Startup
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        host_prefix=settings.dev_server_host_prefix,
        port_range=f"{settings.dev_server_port_min}-{settings.dev_server_port_max - 1}",
        workspace_root=settings.workspace_root,
    )

    dev_server_manager = DevServerManager.from_settings(settings)
    await dev_server_manager.startup()

    # Store on app.state for access by the routes
    app.state.dev_server_manager = dev_server_manager

    logger.info("application_started")

    yield

    # Shutdown
    logger.info("application_shutting_down")

    await app.state.dev_server_manager.shutdown()

    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="Dev Server Orchestrator",
    description="Runs ephemeral per-session preview dev servers on a single node.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Include HTTP routes
app.include_router(router, tags=["dev-server"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint that points to the API documentation.

    Returns:
        A welcome message with documentation URL.
    """
    return {
        "message": "Dev Server Orchestrator API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
