"""TaskGate main application."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from taskgate import __version__
from taskgate.api import router
from taskgate.api.router import taskgate_error_handler
from taskgate.api.deps import validate_auth_config
from taskgate.audit import build_audit_sink
from taskgate.config import settings
from taskgate.db.base import close_db, init_db
from taskgate.engine import TaskGateError

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("taskgate")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting TaskGate server...")
    logger.info(f"Environment: {settings.env.value}")
    logger.info(f"Audit mode: {settings.audit_mode.value}")

    # Validate authentication configuration (fail fast if insecure)
    validate_auth_config()

    # Initialize database
    await init_db()
    logger.info("Database initialized")

    # Start the audit consumer
    app.state.audit_sink = build_audit_sink()
    await app.state.audit_sink.start()
    logger.info("Audit sink started")

    yield

    # Cleanup
    logger.info("Shutting down TaskGate server...")
    await app.state.audit_sink.stop()
    await close_db()
    logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="TaskGate",
    description="Role-gated kanban task lifecycle with a tamper-evident audit trail",
    version=__version__,
    lifespan=lifespan,
)

# Explicit CORS allowlist, no wildcards with credentials
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allowed_methods,
    allow_headers=settings.cors_allowed_headers,
)

# Domain errors render as ErrorResponse
app.add_exception_handler(TaskGateError, taskgate_error_handler)

# Include API router
app.include_router(router)


def main():
    """Entry point for the application."""
    uvicorn.run(
        "taskgate.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
