from fastapi import APIRouter, Request

from funnelbot.config.settings import settings
from funnelbot.utils.logging import get_logger
from funnelbot.utils.responses import ResponseBuilder

health_router = APIRouter()
logger = get_logger()


@health_router.get("/")
async def health_check(request: Request):
    """
    Basic health check endpoint

    Returns application status and whether the shared Redis store answers
    """
    redis_ok = False
    store = getattr(request.app.state, "store", None)
    if store is not None:
        try:
            redis_ok = await store.ping()
        except Exception as e:
            logger.warning(f"Health check: Redis ping failed: {e}")

    return ResponseBuilder.success(
        request=request,
        data={
            "status": "healthy" if redis_ok else "degraded",
            "service": settings.NAME,
            "version": settings.VERSION,
            "redis": redis_ok,
        },
        message="Service is running",
    )
