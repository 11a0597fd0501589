import asyncio

from funnelbot.celery import celery
from funnelbot.config.queues import ALL_QUEUES
from funnelbot.container import build_container
from funnelbot.db.session import get_sync_session
from funnelbot.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def queue_recovery_task(self, request_id: str):
    """Re-publish durable tasks whose broker message may have been lost."""
    return asyncio.run(_async_queue_recovery(request_id))


async def _async_queue_recovery(request_id: str):
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        container = build_container(db_session)
        recovered = {}
        try:
            for queue_name in ALL_QUEUES:
                recovered[queue_name] = await container.queue.recover(queue_name)
        finally:
            await container.aclose()

        total = sum(recovered.values())
        if total:
            logger.info(f"Queue recovery re-published {total} tasks: {recovered}")
        return {"success": True, "recovered": recovered, "request_id": request_id}
