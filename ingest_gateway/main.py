"""Main FastAPI application for the ingest gateway."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI

from ingest_gateway import __version__
from ingest_gateway.middleware.error_handler import setup_exception_handlers
from ingest_gateway.routes import api, hooks
from logging_module import LoggingConfig, setup_logging
from stream_fanout.config import get_settings
from stream_fanout.service import FanoutService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown.

    Args:
        app: FastAPI application instance.
    """
    service: Optional[FanoutService] = app.state.service
    if service is None:
        setup_logging()
        service = FanoutService(get_settings())
        app.state.service = service

    logger.info("Starting ingest gateway...")
    await service.start()
    logger.info("Ingest gateway ready")

    try:
        yield
    finally:
        logger.info("Shutting down ingest gateway...")
        await service.stop()


def create_app(service: Optional[FanoutService] = None, debug: bool = False) -> FastAPI:
    """Build the gateway application.

    Args:
        service: Pre-built fan-out service (one is created from settings on startup if not provided)
        debug: Include error details in 500 responses

    Returns:
        FastAPI: Configured application.
    """
    app = FastAPI(
        title="Stream Fan-out Ingest Gateway",
        description="Media server callbacks and control API for the stream fan-out engine",
        version=__version__,
        debug=debug,
        lifespan=lifespan,
    )
    app.state.service = service

    setup_exception_handlers(app)

    app.include_router(hooks.router, prefix="/hooks", tags=["Media Server Hooks"])
    app.include_router(api.router, prefix="/api", tags=["Control"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint.

        Returns:
            dict: Health status.
        """
        current = app.state.service
        return {
            "status": "healthy",
            "service": "ingest-gateway",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "active_sessions": len(current.registry.session_keys()) if current else 0,
        }

    return app


app = create_app()


def main() -> None:
    """Run the gateway with uvicorn."""
    import uvicorn

    logging_config = LoggingConfig.from_env()
    setup_logging(logging_config)
    settings = get_settings()

    uvicorn.run(
        create_app(debug=logging_config.debug),
        host=settings.api_host,
        port=settings.api_port,
        log_level="debug" if logging_config.debug else "info",
        log_config=None,
    )


if __name__ == "__main__":
    main()
