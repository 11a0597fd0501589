from fastapi import APIRouter

from .broadcast import broadcast_router
from .health import health_router
from .payments import payments_router

main_router = APIRouter()

# Include domain-based routers
main_router.include_router(broadcast_router, prefix="/broadcast", tags=["Broadcast"])
main_router.include_router(payments_router, prefix="/payments", tags=["Payments"])
main_router.include_router(health_router, prefix="/health", tags=["Health Checks"])
