from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import Session

from funnelbot.config.queues import OFFER_EXPIRE_QUEUE
from funnelbot.db.models import OfferInstance, OfferStatus
from funnelbot.db.repositories import OfferRepository
from funnelbot.scenario.registry import ScenarioRegistry
from funnelbot.services.task_queue import OfferExpirationPayload, TaskQueue
from funnelbot.services.telegram import TelegramGateway
from funnelbot.utils.clock import Clock, TimeScale
from funnelbot.utils.errors import ValidationError
from funnelbot.utils.logging import get_logger

logger = get_logger()


class OfferLifecycleManager:
    """
    One-shot timed offers.

    At most one instance ever exists per (user, offer key): re-entering the
    step that shows an offer returns the original instance whatever its
    status, so an expired offer cannot be restarted.
    """

    def __init__(
        self,
        db_session: Session,
        queue: TaskQueue,
        gateway: TelegramGateway,
        scenarios: ScenarioRegistry,
        clock: Optional[Clock] = None,
        time_scale: Optional[TimeScale] = None,
    ):
        self.db = db_session
        self.offers = OfferRepository(db_session)
        self.queue = queue
        self.gateway = gateway
        self.scenarios = scenarios
        self.clock = clock or Clock()
        self.time_scale = time_scale or TimeScale()

    async def ensure_instance_started(self, user_id: str, offer_key: str) -> OfferInstance:
        template = self.scenarios.offer(offer_key)
        if template is None:
            raise ValidationError(
                f"Offer template '{offer_key}' not found", error_code="UNKNOWN_OFFER"
            )

        existing = self.offers.get_latest(user_id, offer_key)
        if existing is not None:
            return existing

        now = self.clock.now()
        expires_at = None
        if template.lifetime_minutes and template.lifetime_minutes > 0:
            # Scaled here, not only at enqueue: the deadline is stored and the
            # expiration handler compares it with the real clock
            lifetime = self.time_scale.compress(
                timedelta(minutes=template.lifetime_minutes)
            )
            expires_at = now + lifetime

        instance = self.offers.create(
            user_id=user_id,
            offer_key=offer_key,
            created_at=now,
            expires_at=expires_at,
            initial_price=template.base_price,
            currency=template.currency,
        )
        logger.info(
            f"Offer {offer_key} started for user {user_id} "
            f"(instance {instance.id}, expires_at={expires_at})"
        )
        return instance

    async def latest_instance(
        self, user_id: str, offer_key: str
    ) -> Optional[OfferInstance]:
        return self.offers.get_latest(user_id, offer_key)

    async def arm_expiration(
        self, instance: OfferInstance, chat_id: str, message_id: int
    ) -> Optional[str]:
        """
        (Re)arm the expiration task after the offer message was shown.

        Returns:
            Optional[str]: New task id, or None when nothing was armed
        """
        if instance.expires_at is None:
            return None

        delay = instance.expires_at - self.clock.now()
        if delay <= timedelta(0):
            return None

        if instance.last_expiration_task_id:
            try:
                await self.queue.cancel(instance.last_expiration_task_id)
            except Exception as e:
                logger.warning(
                    f"Failed to cancel previous expiration task "
                    f"{instance.last_expiration_task_id}: {e}"
                )

        task_id = await self.queue.enqueue(
            OFFER_EXPIRE_QUEUE,
            OfferExpirationPayload(offer_instance_id=instance.id),
            delay=delay,
            dedupe_key=f"offer-expire:{instance.id}",
        )
        self.offers.record_display(instance.id, str(chat_id), message_id, task_id)
        return task_id

    async def handle_expiration(self, payload: OfferExpirationPayload) -> None:
        instance = self.offers.get(payload.offer_instance_id)
        if instance is None:
            logger.info(f"Offer instance {payload.offer_instance_id} not found, skipping")
            return

        if instance.status in (OfferStatus.PAID, OfferStatus.CANCELED):
            if instance.last_expiration_task_id:
                self.offers.clear_task_id(instance.id)
            return

        if instance.expires_at is None:
            return

        now = self.clock.now()
        if instance.expires_at > now:
            logger.debug(f"Offer instance {instance.id} not expired yet, skipping")
            return

        if instance.last_message_chat_id and instance.last_message_id:
            try:
                await self.gateway.delete_message(
                    instance.last_message_chat_id, instance.last_message_id
                )
            except Exception as e:
                logger.warning(
                    f"Failed to delete offer message {instance.last_message_id} "
                    f"in chat {instance.last_message_chat_id}: {e}"
                )

        if self.offers.expire(instance.id, now):
            logger.info(f"Offer instance {instance.id} ({instance.offer_key}) expired")
