"""Main FastAPI application."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .config import settings
from .database import init_db, close_db, async_session
from .routers import devices_router, notifications_router, settings_router
from .services.dispatcher import push_dispatcher
from .services.providers import load_provider_settings
from .services.scheduler import scheduler_service

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    logger.info("Starting push notification service")

    # Initialize database
    await init_db()
    logger.info("Database initialized")

    # Build provider adapters from stored credentials
    async with async_session() as session:
        provider_settings = await load_provider_settings(session, settings.provider_timeout_seconds)
    await push_dispatcher.configure(provider_settings)

    # Deliver scheduled notifications in the background
    scheduler_service.start()

    yield

    # Shutdown
    scheduler_service.stop()
    await push_dispatcher.close()
    await close_db()
    logger.info("Shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="DevicePush",
        description="Push notification delivery over FCM, APNs and Web Push",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.include_router(devices_router)
    app.include_router(notifications_router)
    app.include_router(settings_router)

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "providers": push_dispatcher.get_status(),
            "scheduler": scheduler_service.running,
        }

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.web_port)
