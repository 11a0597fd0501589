import asyncio
from typing import Optional

from funnelbot.celery import celery
from funnelbot.config.queues import MAINTENANCE_QUEUE
from funnelbot.config.settings import settings
from funnelbot.container import build_container
from funnelbot.db.session import get_sync_session
from funnelbot.services.task_queue import ReachabilitySweepPayload
from funnelbot.utils.logging import get_logger


def repeat_key_for(mode: str) -> str:
    return f"blockcheck:daily:{mode}"


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def reachability_sweep_task(
    self, request_id: str, mode: str = "near", horizon_hours: Optional[int] = None
):
    """
    Daily trigger for the reachability sweep.

    Runs at 3:00 AM reference time. Registers the recurring sweep under its
    stable key (a no-op after the first run) and enqueues one occurrence on
    the maintenance queue; a sweep still pending from an earlier trigger is
    kept instead of doubled.

    Args:
        request_id: Request ID for tracking purposes
        mode: "near" (users with reminders due soon) or "all"
        horizon_hours: Look-ahead window for "near"
    """
    return asyncio.run(_async_reachability_sweep(request_id, mode, horizon_hours))


async def _async_reachability_sweep(
    request_id: str, mode: str, horizon_hours: Optional[int]
):
    logger = get_logger().bind(request_id=request_id)
    repeat_key = repeat_key_for(mode)

    for db_session in get_sync_session():
        container = build_container(db_session)
        try:
            payload = ReachabilitySweepPayload(
                mode=mode,
                horizon_hours=horizon_hours or settings.BLOCKCHECK_HORIZON_HOURS,
            )
            await container.queue.register_repeat(
                repeat_key, MAINTENANCE_QUEUE, payload, "0 3 * * *"
            )
            task_id = await container.queue.fire_repeat(repeat_key)
        finally:
            await container.aclose()

        logger.info(f"Reachability sweep {repeat_key} enqueued as task {task_id}")
        return {"success": True, "task_id": task_id, "request_id": request_id}
