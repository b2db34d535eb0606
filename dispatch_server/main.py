"""
Dispatch API application.

Exposes the job producer and the readiness check over HTTP:
- /health and /ready for orchestration probes
- /jobs for enqueueing and inspecting jobs
- /debug for end-to-end smoke tests
"""

from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI

from dispatch_core.exceptions import BrokerError
from dispatch_core.utils.logging import setup_logging
from . import __version__
from .core.config import get_settings
from .core.dependencies import get_dependencies
from .core.exceptions import ServiceError, broker_error_handler, service_error_handler

# Import API routers
from .api.health import router as health_router
from .api.jobs import router as jobs_router
from .api.debug import router as debug_router


logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    logger.info("Starting dispatch API", version=__version__)

    deps = get_dependencies()
    await deps.initialize()

    logger.info("Application started successfully")

    yield

    await deps.cleanup()
    logger.info("Application shutdown completed")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Continuum Dispatch",
        version=__version__,
        description="Background job dispatch and dependency readiness",
        lifespan=lifespan
    )

    # Register exception handlers
    @app.exception_handler(ServiceError)
    async def service_exception_handler(request, exc: ServiceError):
        return service_error_handler(exc)

    @app.exception_handler(BrokerError)
    async def broker_exception_handler(request, exc: BrokerError):
        logger.error("broker_request_failed", path=request.url.path, error=str(exc))
        return broker_error_handler(exc)

    # Include API routers
    app.include_router(health_router)
    app.include_router(jobs_router)
    app.include_router(debug_router)

    return app


app = create_app()


def run():
    """Console entry point."""
    settings = get_settings()
    setup_logging(settings.log_level, service="dispatch_server")
    uvicorn.run(
        "dispatch_server.main:app",
        host=settings.host,
        port=settings.port,
        log_config=None  # Use our custom logging
    )


if __name__ == "__main__":
    run()
