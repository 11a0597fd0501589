from typing import Optional

from sqlalchemy.orm import Session

from funnelbot.db.models import OfferStatus, StepVisitSource, User
from funnelbot.db.repositories import UserRepository
from funnelbot.scenario.registry import ScenarioRegistry
from funnelbot.scenario.types import MediaType
from funnelbot.services.offers import OfferLifecycleManager
from funnelbot.services.telegram import MessageRef, TelegramGateway
from funnelbot.utils.errors import ValidationError
from funnelbot.utils.logging import get_logger

logger = get_logger()


class StepDeliveryService:
    """Delivers one scenario step to a user: visit bookkeeping, offer start, send."""

    def __init__(
        self,
        db_session: Session,
        gateway: TelegramGateway,
        scenarios: ScenarioRegistry,
        offers: OfferLifecycleManager,
    ):
        self.db = db_session
        self.users = UserRepository(db_session)
        self.gateway = gateway
        self.scenarios = scenarios
        self.offers = offers

    async def deliver(
        self,
        user: User,
        step_id: str,
        scenario_key: str,
        source: StepVisitSource,
    ) -> Optional[MessageRef]:
        step = self.scenarios.step(scenario_key, step_id)
        if step is None:
            raise ValidationError(
                f"Step '{step_id}' is not defined in scenario '{scenario_key}'",
                error_code="UNKNOWN_STEP",
            )

        self.users.enter_step(user.id, step_id, source)

        instance = None
        if step.offer_key:
            instance = await self.offers.ensure_instance_started(user.id, step.offer_key)

        chat_id = user.telegram_id
        last_ref: Optional[MessageRef] = None
        if step.media:
            refs = await self.gateway.send_media(chat_id, step.media, caption=step.text)
            last_ref = refs[-1] if refs else None
            # Video notes carry no caption
            if all(item.type == MediaType.VIDEO_NOTE for item in step.media):
                last_ref = await self.gateway.send_message(chat_id, step.text)
        else:
            last_ref = await self.gateway.send_message(chat_id, step.text)

        if instance is not None and instance.status == OfferStatus.ACTIVE and last_ref:
            await self.offers.arm_expiration(instance, last_ref.chat_id, last_ref.message_id)

        logger.info(f"Delivered step {step_id} to user {user.id} ({source.value})")
        return last_ref
