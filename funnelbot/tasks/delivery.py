import asyncio

from funnelbot.celery import celery
from funnelbot.config.settings import settings
from funnelbot.container import build_container
from funnelbot.db.session import get_sync_session
from funnelbot.services.broadcast import Pacer
from funnelbot.services.task_queue import DeliveryOutcome
from funnelbot.utils.context import set_request_id
from funnelbot.utils.logging import get_logger

# Shared by every delivery in this worker process
process_pacer = Pacer(settings.BROADCAST_MIN_DELAY_MS)


@celery.task(bind=True, max_retries=0, acks_late=True)
def deliver_task(self, task_id: str):
    """
    Deliver one durable task by id.

    The Celery message only carries the id; claiming, retries and dead
    lettering are decided by the task record in Redis, so Celery's own retry
    machinery is not used here.

    Args:
        task_id: Durable task id (also used as the Celery task id)
    """
    return asyncio.run(_async_deliver(task_id))


async def _async_deliver(task_id: str):
    set_request_id(task_id)
    logger = get_logger().bind(request_id=task_id)

    for db_session in get_sync_session():
        container = build_container(db_session, pacer=process_pacer)
        try:
            outcome = await container.queue.deliver(task_id)
        finally:
            await container.aclose()

        if outcome == DeliveryOutcome.DEAD:
            logger.error(f"Task {task_id} ended in the dead letter list")

        return {
            "success": outcome != DeliveryOutcome.DEAD,
            "outcome": outcome.value,
            "request_id": task_id,
        }
