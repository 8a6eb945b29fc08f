# backend/chatline/main.py
"""
Chatline application entry point.

The lifespan creates the directory store and the RealtimeHub that owns all
realtime state, and tears both down on shutdown.
"""

from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator, Callable, Optional

from fastapi import FastAPI

from .core.config import is_running_tests, settings
from .routes import health, prometheus, websocket
from .services.realtime.hub import RealtimeHub
from .storage import DirectoryStore, build_directory_store

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


def create_app(store_factory: Optional[Callable[[], DirectoryStore]] = None) -> FastAPI:
    """Build the app. Tests pass ``store_factory`` to pick their own store."""

    @asynccontextmanager
    async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Chatline starting up...")
        logger.info(f"Environment: {settings.environment}")
        if is_running_tests():
            logger.info("Running under pytest (test mode active)")

        store = store_factory() if store_factory else build_directory_store(settings)
        app.state.hub = RealtimeHub(store, config=settings)
        try:
            yield
        finally:
            logger.info("Chatline shutting down...")
            await app.state.hub.shutdown()

    app = FastAPI(
        title="Chatline",
        description="Real-time messaging and presence backend",
        version="1.0.0",
        lifespan=app_lifespan,
    )
    app.include_router(health.router)
    app.include_router(prometheus.router)
    app.include_router(websocket.router)
    return app


app = create_app()
