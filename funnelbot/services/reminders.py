import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional
from zoneinfo import ZoneInfo

from pydantic import TypeAdapter
from sqlalchemy.orm import Session

from funnelbot.config.queues import REMINDER_QUEUE
from funnelbot.config.settings import settings
from funnelbot.db.models import (
    ReminderStatus,
    ReminderSubscription,
    StepVisitSource,
    User,
)
from funnelbot.db.repositories import ReminderRepository, UserRepository
from funnelbot.scenario.registry import ScenarioRegistry
from funnelbot.scenario.types import (
    NotPaidCondition,
    NotReachedStepCondition,
    ReminderBinding,
    ReminderCondition,
)
from funnelbot.services.steps import StepDeliveryService
from funnelbot.services.task_queue import ReminderPayload, TaskQueue
from funnelbot.utils.clock import Clock, TimeScale
from funnelbot.utils.datetime_utils import next_time_of_day
from funnelbot.utils.errors import NotFoundError, PermanentDeliveryError
from funnelbot.utils.logging import get_logger

logger = get_logger()

_condition_adapter = TypeAdapter(ReminderCondition)


@dataclass
class PlannedReminder:
    binding: ReminderBinding
    scheduled_at: datetime


class ReminderChainScheduler:
    """
    Schedules the reminders hung on a step as a chain.

    Bindings are walked in order with a running cursor: each reminder is
    offset from the previous one's real delivery time, and a delivered
    reminder schedules its own step's chain in turn.
    """

    def __init__(
        self,
        db_session: Session,
        queue: TaskQueue,
        scenarios: ScenarioRegistry,
        steps: StepDeliveryService,
        clock: Optional[Clock] = None,
        time_scale: Optional[TimeScale] = None,
        zone: Optional[ZoneInfo] = None,
    ):
        self.db = db_session
        self.reminders = ReminderRepository(db_session)
        self.users = UserRepository(db_session)
        self.queue = queue
        self.scenarios = scenarios
        self.steps = steps
        self.clock = clock or Clock()
        self.time_scale = time_scale or TimeScale()
        self.zone = zone or ZoneInfo(settings.REFERENCE_TIMEZONE)

    def plan_chain(
        self, step_id: str, scenario_key: str, start: datetime
    ) -> List[PlannedReminder]:
        """Compute delivery times for the step's bindings without side effects."""
        step = self.scenarios.step(scenario_key, step_id)
        if step is None or not step.reminders:
            return []

        planned = []
        cursor = start
        for binding in step.reminders:
            target = self.scenarios.step(scenario_key, binding.step_id)
            if target is None:
                logger.warning(
                    f"Reminder target step {binding.step_id} is not defined, skipping"
                )
                continue

            delay_minutes = binding.delay_minutes
            if delay_minutes is None:
                delay_minutes = target.default_delay_minutes
            if not delay_minutes or delay_minutes <= 0:
                continue

            candidate = cursor + timedelta(minutes=delay_minutes)
            if target.send_at_time_of_day is not None:
                candidate = next_time_of_day(
                    candidate,
                    target.send_at_time_of_day.hour,
                    target.send_at_time_of_day.minute,
                    self.zone,
                )

            cursor = candidate
            planned.append(PlannedReminder(binding=binding, scheduled_at=candidate))
        return planned

    async def schedule_chain(
        self, user_id: str, step_id: str, scenario_key: str = "default"
    ) -> List[ReminderSubscription]:
        now = self.clock.now()
        subscriptions = []

        for planned in self.plan_chain(step_id, scenario_key, now):
            condition = planned.binding.condition
            subscription = self.reminders.create(
                user_id=user_id,
                step_id=planned.binding.step_id,
                scenario_key=scenario_key,
                scheduled_at=planned.scheduled_at,
                condition=condition.model_dump_json() if condition else None,
            )

            delay = self.time_scale.compress(
                max(timedelta(0), planned.scheduled_at - now)
            )
            task_id = await self.queue.enqueue(
                REMINDER_QUEUE,
                ReminderPayload(subscription_id=subscription.id),
                delay=delay,
                dedupe_key=f"reminder:{subscription.id}",
            )
            self.reminders.set_task_id(subscription.id, task_id)
            subscription.task_id = task_id
            subscriptions.append(subscription)

            logger.info(
                f"Scheduled reminder {planned.binding.step_id} for user {user_id} "
                f"at {planned.scheduled_at.isoformat()} (subscription {subscription.id})"
            )

        return subscriptions

    async def enter_step(
        self,
        user_id: str,
        step_id: str,
        scenario_key: str = "default",
        source: StepVisitSource = StepVisitSource.USER,
    ) -> None:
        """A user reached a step: deliver it and hang its reminder chain."""
        user = self.users.get(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")

        await self.steps.deliver(user, step_id, scenario_key, source)
        await self.schedule_chain(user_id, step_id, scenario_key)

    async def handle_reminder(self, payload: ReminderPayload) -> None:
        subscription = self.reminders.get(payload.subscription_id)
        if subscription is None:
            logger.warning(f"Reminder subscription {payload.subscription_id} not found")
            return

        if subscription.status != ReminderStatus.PENDING:
            logger.debug(
                f"Reminder {subscription.id} is {subscription.status.value}, skipping"
            )
            return

        user = subscription.user
        skip_reason = self._skip_reason(subscription, user)
        if skip_reason:
            self.reminders.transition(
                subscription.id, ReminderStatus.SKIPPED, self.clock.now()
            )
            logger.info(f"Reminder {subscription.id} skipped: {skip_reason}")
            return

        try:
            await self.steps.deliver(
                user,
                subscription.step_id,
                subscription.scenario_key,
                StepVisitSource.REMINDER,
            )
        except PermanentDeliveryError as e:
            now = self.clock.now()
            logger.warning(
                f"User {user.id} is unreachable ({e.message}), cancelling reminders"
            )
            self.users.mark_blocked(user.id, e.message, now)
            self.reminders.transition(subscription.id, ReminderStatus.SKIPPED, now)
            await self.cancel_all_pending(user.id)
            return

        if not self.reminders.transition(
            subscription.id, ReminderStatus.SENT, self.clock.now()
        ):
            logger.info(f"Reminder {subscription.id} changed status during delivery")
            return

        await self.schedule_chain(
            user.id, subscription.step_id, subscription.scenario_key
        )

    def _skip_reason(self, subscription: ReminderSubscription, user: User) -> Optional[str]:
        if user.blocked_by_user:
            return "user is unreachable"
        if user.paid:
            return "user already paid"
        if subscription.condition:
            condition = _condition_adapter.validate_python(
                json.loads(subscription.condition)
            )
            if isinstance(condition, NotPaidCondition) and user.paid:
                return "condition not_paid failed"
            if isinstance(condition, NotReachedStepCondition) and self.users.has_visited(
                user.id, condition.step_id
            ):
                return f"condition not_reached_step({condition.step_id}) failed"
        return None

    async def cancel_all_pending(self, user_id: str) -> int:
        """
        Cancel every pending reminder of the user.

        Each subscription is handled on its own; a failure is logged and the
        sweep moves on.

        Returns:
            int: Number of subscriptions moved to CANCELED
        """
        cancelled = 0
        for subscription in self.reminders.list_pending_for_user(user_id):
            try:
                if self.reminders.transition(
                    subscription.id, ReminderStatus.CANCELED, self.clock.now()
                ):
                    cancelled += 1
            except Exception as e:
                self.db.rollback()
                logger.error(f"Failed to cancel reminder {subscription.id}: {e}")
                continue

            if subscription.task_id:
                try:
                    await self.queue.cancel(subscription.task_id)
                except Exception as e:
                    logger.warning(
                        f"Failed to remove task {subscription.task_id} "
                        f"of reminder {subscription.id}: {e}"
                    )

        if cancelled:
            logger.info(f"Cancelled {cancelled} pending reminders for user {user_id}")
        return cancelled
