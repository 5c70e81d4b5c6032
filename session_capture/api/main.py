"""
FastAPI application factory.

LIFECYCLE:
- Startup: configure logging, initialize and start the capture service
- Shutdown: stop the active session and every encoder, save caches

The service is attached as app.state.capture_service and reached by the
routers through deps.get_service.
"""

import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from loguru import logger

from .. import __version__
from ..config import CaptureConfig, load_config
from ..service import CaptureServiceManager
from .routes import cameras_router, mqtt_router, sessions_router


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Route loguru to stderr and, optionally, a rotating file."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(log_file, level=level.upper(), rotation="10 MB", retention=5)


def create_app(
    config: Optional[CaptureConfig] = None,
    service: Optional[CaptureServiceManager] = None,
) -> FastAPI:
    """
    Build the API application.

    Args:
        config: Orchestrator configuration (loaded from file/env if None)
        service: Prebuilt service (tests inject one with fake clients)
    """
    if service is None:
        config = config or load_config()
        service = CaptureServiceManager(config)
    else:
        config = service.config

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(config.log_level, config.log_file)
        service.start()
        try:
            yield
        finally:
            service.stop()

    app = FastAPI(
        title="Session Capture Orchestrator",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.capture_service = service

    app.include_router(sessions_router)
    app.include_router(cameras_router)
    app.include_router(mqtt_router)

    @app.get("/health", tags=["health"])
    def health():
        return {
            "status": "ok" if service.is_running else "stopped",
            "broker_connected": service.broker.is_connected() if service.broker else False,
        }

    return app
