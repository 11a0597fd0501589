from decimal import Decimal
from typing import List, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.orm import Session

from funnelbot.config.settings import settings
from funnelbot.db.models import Payment, User
from funnelbot.db.repositories import OfferRepository, PaymentRepository, UserRepository
from funnelbot.services.reminders import ReminderChainScheduler
from funnelbot.services.telegram import TelegramGateway
from funnelbot.utils.clock import Clock
from funnelbot.utils.errors import NotFoundError, ValidationError
from funnelbot.utils.logging import get_logger

logger = get_logger()


class PaymentConfirmationService:
    """Manual payment confirmation (operator marks a user as paid)."""

    def __init__(
        self,
        db_session: Session,
        reminders: ReminderChainScheduler,
        gateway: Optional[TelegramGateway] = None,
        clock: Optional[Clock] = None,
        admin_ids: Optional[Sequence[str]] = None,
    ):
        self.db = db_session
        self.users = UserRepository(db_session)
        self.offers = OfferRepository(db_session)
        self.payments = PaymentRepository(db_session)
        self.reminders = reminders
        self.gateway = gateway
        self.clock = clock or Clock()
        self.admin_ids: List[str] = list(
            admin_ids if admin_ids is not None else settings.ADMIN_IDS
        )

    async def confirm_payment(
        self, telegram_id: str, amount: Decimal, currency: str = "RUB"
    ) -> Payment:
        """
        Record a manual payment and stop selling to the user.

        The payment, the `paid` flag and the forced PAID status of active offers
        are committed together; reminder cancellation runs afterwards and its
        failures are only logged, since the payment already stands.

        Raises:
            NotFoundError: No user with this telegram id
            ValidationError: Non-positive amount
        """
        amount = Decimal(str(amount))
        if amount <= 0:
            raise ValidationError("Payment amount must be positive", error_code="INVALID_AMOUNT")

        user = self.users.get_by_telegram_id(str(telegram_id))
        if user is None:
            raise NotFoundError(f"User with telegram id {telegram_id} not found")

        now = self.clock.now()
        try:
            payment = self.payments.add_manual(user.id, amount, currency, now)
            self.db.execute(update(User).where(User.id == user.id).values(paid=True))
            closed_offers = self.offers.mark_active_paid(user.id, now)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(payment)

        logger.info(
            f"Manual payment {payment.id} confirmed for user {user.id}: "
            f"{amount} {currency}, {closed_offers} offers closed"
        )

        try:
            await self.reminders.cancel_all_pending(user.id)
        except Exception as e:
            logger.error(f"Failed to cancel reminders after payment for user {user.id}: {e}")

        await self._notify_admins(user, amount, currency)
        return payment

    async def _notify_admins(self, user: User, amount: Decimal, currency: str) -> None:
        if self.gateway is None or not self.admin_ids:
            return

        text = (
            "Manual payment confirmed\n"
            f"telegramId: {user.telegram_id}\n"
            f"userId: {user.id}\n"
            f"Amount: {amount:.2f} {currency}"
        )
        for admin_id in self.admin_ids:
            try:
                await self.gateway.send_message(admin_id, text)
            except Exception as e:
                logger.warning(f"Failed to notify admin {admin_id} about payment: {e}")
