"""
Persistence gateway for the delivery engine.

Status transitions go through guarded UPDATE statements ("only if the row is
still in the expected status") so that two deliveries of the same task cannot
both move a row forward.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from funnelbot.db.models import (
    OfferInstance,
    OfferStatus,
    Payment,
    PaymentStatus,
    ReminderStatus,
    ReminderSubscription,
    StepVisit,
    StepVisitSource,
    User,
)


class UserRepository:
    def __init__(self, db_session: Session):
        self.db = db_session

    def get(self, user_id: str) -> Optional[User]:
        return self.db.get(User, user_id, populate_existing=True)

    def get_by_telegram_id(self, telegram_id: str) -> Optional[User]:
        return self.db.scalars(
            select(User).where(User.telegram_id == telegram_id)
        ).one_or_none()

    def blocked_flags_by_telegram_id(
        self, telegram_ids: Sequence[str]
    ) -> Dict[str, bool]:
        """Map known telegram ids to their `blocked_by_user` flag."""
        if not telegram_ids:
            return {}
        rows = self.db.execute(
            select(User.telegram_id, User.blocked_by_user).where(
                User.telegram_id.in_(list(telegram_ids))
            )
        ).all()
        return {telegram_id: blocked for telegram_id, blocked in rows}

    def count(self) -> int:
        return self.db.scalar(select(func.count()).select_from(User)) or 0

    def list_telegram_ids(self) -> List[str]:
        return list(self.db.scalars(select(User.telegram_id).order_by(User.id)))

    def page(self, after_id: Optional[str], limit: int) -> List[User]:
        stmt = select(User).order_by(User.id).limit(limit)
        if after_id is not None:
            stmt = stmt.where(User.id > after_id)
        return list(self.db.scalars(stmt))

    def get_many(self, user_ids: Sequence[str]) -> List[User]:
        if not user_ids:
            return []
        return list(
            self.db.scalars(
                select(User).where(User.id.in_(list(user_ids))).order_by(User.id)
            )
        )

    def mark_blocked(self, user_id: str, reason: str, at: datetime) -> None:
        self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(blocked_by_user=True, blocked_at=at, block_reason=reason[:500])
        )
        self.db.commit()

    def mark_unblocked(self, user_id: str) -> None:
        self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(blocked_by_user=False, blocked_at=None, block_reason=None)
        )
        self.db.commit()

    def enter_step(self, user_id: str, step_id: str, source: StepVisitSource) -> None:
        self.db.execute(
            update(User).where(User.id == user_id).values(current_step_id=step_id)
        )
        self.db.add(StepVisit(user_id=user_id, step_id=step_id, source=source))
        self.db.commit()

    def has_visited(self, user_id: str, step_id: str) -> bool:
        visit = self.db.scalars(
            select(StepVisit.id)
            .where(StepVisit.user_id == user_id, StepVisit.step_id == step_id)
            .limit(1)
        ).first()
        return visit is not None


class ReminderRepository:
    def __init__(self, db_session: Session):
        self.db = db_session

    def create(
        self,
        user_id: str,
        step_id: str,
        scenario_key: str,
        scheduled_at: datetime,
        condition: Optional[str] = None,
    ) -> ReminderSubscription:
        subscription = ReminderSubscription(
            user_id=user_id,
            step_id=step_id,
            scenario_key=scenario_key,
            status=ReminderStatus.PENDING,
            scheduled_at=scheduled_at,
            condition=condition,
        )
        self.db.add(subscription)
        self.db.commit()
        self.db.refresh(subscription)
        return subscription

    def set_task_id(self, subscription_id: str, task_id: str) -> None:
        self.db.execute(
            update(ReminderSubscription)
            .where(ReminderSubscription.id == subscription_id)
            .values(task_id=task_id)
        )
        self.db.commit()

    def get(self, subscription_id: str) -> Optional[ReminderSubscription]:
        return self.db.scalars(
            select(ReminderSubscription)
            .options(selectinload(ReminderSubscription.user))
            .where(ReminderSubscription.id == subscription_id)
            .execution_options(populate_existing=True)
        ).one_or_none()

    def transition(
        self,
        subscription_id: str,
        to_status: ReminderStatus,
        at: datetime,
        expected: ReminderStatus = ReminderStatus.PENDING,
    ) -> bool:
        """Move a subscription to `to_status` only if it is still `expected`."""
        values = {"status": to_status}
        if to_status == ReminderStatus.SENT:
            values["processed_at"] = at
        elif to_status == ReminderStatus.SKIPPED:
            values["skipped_at"] = at
        elif to_status == ReminderStatus.CANCELED:
            values["canceled_at"] = at

        result = self.db.execute(
            update(ReminderSubscription)
            .where(
                ReminderSubscription.id == subscription_id,
                ReminderSubscription.status == expected,
            )
            .values(**values)
        )
        self.db.commit()
        return result.rowcount == 1

    def list_pending_for_user(self, user_id: str) -> List[ReminderSubscription]:
        return list(
            self.db.scalars(
                select(ReminderSubscription)
                .where(
                    ReminderSubscription.user_id == user_id,
                    ReminderSubscription.status == ReminderStatus.PENDING,
                )
                .order_by(ReminderSubscription.scheduled_at)
            )
        )

    def list_for_user(self, user_id: str) -> List[ReminderSubscription]:
        return list(
            self.db.scalars(
                select(ReminderSubscription)
                .where(ReminderSubscription.user_id == user_id)
                .order_by(ReminderSubscription.scheduled_at)
                .execution_options(populate_existing=True)
            )
        )

    def pending_user_ids_between(self, start: datetime, end: datetime) -> List[str]:
        return list(
            self.db.scalars(
                select(ReminderSubscription.user_id)
                .where(
                    ReminderSubscription.status == ReminderStatus.PENDING,
                    ReminderSubscription.scheduled_at >= start,
                    ReminderSubscription.scheduled_at <= end,
                )
                .distinct()
                .order_by(ReminderSubscription.user_id)
            )
        )


class OfferRepository:
    def __init__(self, db_session: Session):
        self.db = db_session

    def get(self, instance_id: str) -> Optional[OfferInstance]:
        return self.db.scalars(
            select(OfferInstance)
            .where(OfferInstance.id == instance_id)
            .execution_options(populate_existing=True)
        ).one_or_none()

    def get_latest(self, user_id: str, offer_key: str) -> Optional[OfferInstance]:
        return self.db.scalars(
            select(OfferInstance)
            .where(OfferInstance.user_id == user_id, OfferInstance.offer_key == offer_key)
            .order_by(OfferInstance.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        ).first()

    def create(
        self,
        user_id: str,
        offer_key: str,
        created_at: datetime,
        expires_at: Optional[datetime],
        initial_price: Decimal,
        currency: str,
    ) -> OfferInstance:
        """Insert an ACTIVE instance; a concurrent insert for the same key wins."""
        instance = OfferInstance(
            user_id=user_id,
            offer_key=offer_key,
            status=OfferStatus.ACTIVE,
            created_at=created_at,
            expires_at=expires_at,
            initial_price=initial_price,
            currency=currency,
        )
        self.db.add(instance)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.get_latest(user_id, offer_key)
            if existing is None:
                raise
            return existing
        self.db.refresh(instance)
        return instance

    def record_display(
        self, instance_id: str, chat_id: str, message_id: int, task_id: str
    ) -> None:
        self.db.execute(
            update(OfferInstance)
            .where(OfferInstance.id == instance_id)
            .values(
                last_message_chat_id=chat_id,
                last_message_id=message_id,
                last_expiration_task_id=task_id,
            )
        )
        self.db.commit()

    def clear_task_id(self, instance_id: str) -> None:
        self.db.execute(
            update(OfferInstance)
            .where(OfferInstance.id == instance_id)
            .values(last_expiration_task_id=None)
        )
        self.db.commit()

    def expire(self, instance_id: str, at: datetime) -> bool:
        """ACTIVE -> EXPIRED; the stored task id is cleared either way."""
        result = self.db.execute(
            update(OfferInstance)
            .where(
                OfferInstance.id == instance_id,
                OfferInstance.status == OfferStatus.ACTIVE,
            )
            .values(
                status=OfferStatus.EXPIRED,
                finished_at=at,
                last_expiration_task_id=None,
            )
        )
        self.db.commit()
        if result.rowcount != 1:
            self.clear_task_id(instance_id)
            return False
        return True

    def mark_active_paid(self, user_id: str, at: datetime) -> int:
        """Force every ACTIVE instance of the user to PAID (no commit)."""
        result = self.db.execute(
            update(OfferInstance)
            .where(
                OfferInstance.user_id == user_id,
                OfferInstance.status == OfferStatus.ACTIVE,
            )
            .values(status=OfferStatus.PAID, finished_at=at)
        )
        return result.rowcount


class PaymentRepository:
    def __init__(self, db_session: Session):
        self.db = db_session

    def add_manual(
        self, user_id: str, amount: Decimal, currency: str, at: datetime
    ) -> Payment:
        """Stage a PAID manual payment (no commit)."""
        payment = Payment(
            user_id=user_id,
            amount=amount,
            currency=currency,
            status=PaymentStatus.PAID,
            paid_at=at,
        )
        self.db.add(payment)
        return payment
