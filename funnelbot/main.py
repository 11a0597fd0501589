from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from funnelbot.config.settings import settings
from funnelbot.db.db import create_tables
from funnelbot.utils.logging import get_logger
from funnelbot.routers import main_router
from funnelbot.utils.errors import setup_error_handlers
from funnelbot.middlewares import RequestIDMiddleware
from funnelbot.services.state_store import StateStore
from funnelbot.services.telegram import TelegramGateway

# Initialize the logger
logger = get_logger()


@asynccontextmanager
async def lifespan(application: FastAPI):
    logger.info("Funnelbot API is starting up...")
    if settings.ENVIRONMENT == "development":
        create_tables()
    application.state.store = StateStore.from_url()
    application.state.gateway = TelegramGateway(settings.require_bot_token())
    try:
        yield
    finally:
        await application.state.gateway.close()
        await application.state.store.close()
        logger.info("Funnelbot API is shutting down...")


def create_application() -> FastAPI:
    """Initialize the FastAPI application with settings and lifespan events."""
    application = FastAPI(
        title=settings.NAME, version=settings.VERSION, lifespan=lifespan
    )

    # Setup error handlers
    setup_error_handlers(application)

    # Add CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_HOSTS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "authorization"],
    )

    # Add custom middlewares
    application.add_middleware(RequestIDMiddleware)

    # Routers
    application.include_router(main_router, prefix=settings.API_PREFIX, tags=["APIs"])

    return application


app = create_application()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "funnelbot.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_config=None,
        log_level=None,
    )
