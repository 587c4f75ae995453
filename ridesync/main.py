"""
RideSync API

Token lifecycle, backfill orchestration and webhook ingestion for
Garmin, WHOOP and Strava rides.
"""

from contextlib import asynccontextmanager
import logging
import sys
from typing import Optional

from fastapi import FastAPI

from ridesync.config import settings, Settings
from ridesync.db.session import AsyncSessionLocal
from ridesync.api.v1.router import api_router
from ridesync.services import build_services
from ridesync.shared.redis import get_redis_client, check_redis_health


# === Logging Setup ===
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
    ]
)
logger = logging.getLogger(__name__)


# === Lifespan ===
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    # Startup
    logger.info("Starting RideSync API...")
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(
            app.state.settings, AsyncSessionLocal, get_redis_client()
        )
    services = app.state.services

    if not await check_redis_health(services.redis):
        logger.warning("Redis unavailable at startup; locks will run in degraded mode")

    await services.start()

    yield

    # Shutdown
    await services.stop()
    logger.info("Shutting down...")


# === App Creation ===
def create_app(app_settings: Optional[Settings] = None) -> FastAPI:
    app_settings = app_settings or settings

    app = FastAPI(
        title="RideSync API",
        description="Ride import and sync for Garmin, WHOOP and Strava",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if app_settings.debug else None,
        redoc_url="/redoc" if app_settings.debug else None,
    )
    app.state.settings = app_settings
    app.state.services = None

    # === Routes ===
    app.include_router(api_router, prefix="/api/v1")

    # === Health Check ===
    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "version": "0.1.0"}

    return app


app = create_app()
