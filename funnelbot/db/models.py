from typing import List, Optional
from datetime import datetime
from decimal import Decimal
import uuid
from sqlalchemy import (
    String,
    Boolean,
    Integer,
    Numeric,
    ForeignKey,
    Enum,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
import enum

from funnelbot.db.custom_types import StringUUID, UTCDateTime
from funnelbot.utils.datetime_utils import utc_now


class Base(DeclarativeBase):
    pass


def _new_id() -> str:
    return str(uuid.uuid4())


# Enums
class ReminderStatus(enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    SKIPPED = "skipped"
    CANCELED = "canceled"


class OfferStatus(enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    PAID = "paid"
    CANCELED = "canceled"


class StepVisitSource(enum.Enum):
    USER = "user"
    REMINDER = "reminder"
    ADMIN = "admin"


class PaymentStatus(enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


# Base model with common audit fields
class AuditMixin:
    """Mixin for common audit fields"""

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, onupdate=utc_now
    )


# Models
class User(Base, AuditMixin):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(StringUUID, primary_key=True, default=_new_id)
    telegram_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    username: Mapped[Optional[str]] = mapped_column(String(255))
    current_step_id: Mapped[Optional[str]] = mapped_column(String(100))
    paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Reachability flag, maintained from permanent delivery failures
    blocked_by_user: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    blocked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    block_reason: Mapped[Optional[str]] = mapped_column(String(500))

    # Relationships
    reminder_subscriptions: Mapped[List["ReminderSubscription"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )
    offer_instances: Mapped[List["OfferInstance"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )
    step_visits: Mapped[List["StepVisit"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("idx_users_telegram_id", "telegram_id"),
        Index("idx_users_blocked", "blocked_by_user"),
    )


class StepVisit(Base):
    __tablename__ = "step_visits"

    id: Mapped[str] = mapped_column(StringUUID, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(
        StringUUID, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    step_id: Mapped[str] = mapped_column(String(100), nullable=False)
    source: Mapped[StepVisitSource] = mapped_column(
        Enum(StepVisitSource), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, nullable=False
    )

    user: Mapped["User"] = relationship(back_populates="step_visits")

    __table_args__ = (Index("idx_step_visits_user_step", "user_id", "step_id"),)


class ReminderSubscription(Base, AuditMixin):
    __tablename__ = "reminder_subscriptions"

    id: Mapped[str] = mapped_column(StringUUID, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(
        StringUUID, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    step_id: Mapped[str] = mapped_column(String(100), nullable=False)
    scenario_key: Mapped[str] = mapped_column(
        String(100), default="default", nullable=False
    )
    status: Mapped[ReminderStatus] = mapped_column(
        Enum(ReminderStatus), default=ReminderStatus.PENDING, nullable=False
    )
    scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    # JSON snapshot of the binding condition, evaluated at delivery time
    condition: Mapped[Optional[str]] = mapped_column(String(255))
    task_id: Mapped[Optional[str]] = mapped_column(String(255))
    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    skipped_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    user: Mapped["User"] = relationship(back_populates="reminder_subscriptions")

    __table_args__ = (
        Index("idx_reminders_user_status", "user_id", "status"),
        Index("idx_reminders_status_scheduled", "status", "scheduled_at"),
    )


class OfferInstance(Base, AuditMixin):
    __tablename__ = "offer_instances"

    id: Mapped[str] = mapped_column(StringUUID, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(
        StringUUID, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    offer_key: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[OfferStatus] = mapped_column(
        Enum(OfferStatus), default=OfferStatus.ACTIVE, nullable=False
    )
    # NULL means the offer never expires
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    finished_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    initial_price: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=0, nullable=False
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    last_message_chat_id: Mapped[Optional[str]] = mapped_column(String(64))
    last_message_id: Mapped[Optional[int]] = mapped_column(Integer)
    last_expiration_task_id: Mapped[Optional[str]] = mapped_column(String(255))

    user: Mapped["User"] = relationship(back_populates="offer_instances")

    # One instance per (user, offer) for the lifetime of the user
    __table_args__ = (
        UniqueConstraint("user_id", "offer_key", name="uq_offer_instances_user_offer"),
        Index("idx_offer_instances_status", "status"),
    )


class Payment(Base, AuditMixin):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(StringUUID, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(
        StringUUID, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False
    )
    paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    __table_args__ = (Index("idx_payments_user", "user_id"),)
