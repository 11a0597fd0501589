"""
Service wiring.

Every service is constructed explicitly here and handed its collaborators;
the API lifespan and each Celery delivery build one container and close it
when done. A Redis client is bound to the event loop it was created on, so
tasks never share a container across `asyncio.run` calls.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import AsyncIterator, Dict, Optional
from zoneinfo import ZoneInfo

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from funnelbot.config.queues import (
    BROADCAST_QUEUE,
    MAINTENANCE_QUEUE,
    OFFER_EXPIRE_QUEUE,
    REMINDER_QUEUE,
)
from funnelbot.config.settings import settings
from funnelbot.db.session import get_sync_session
from funnelbot.scenario import DEFAULT_OFFERS, DEFAULT_SCENARIO_KEY, DEFAULT_SCENARIO
from funnelbot.scenario.registry import ScenarioRegistry
from funnelbot.services.broadcast import BroadcastDispatcher, Pacer
from funnelbot.services.offers import OfferLifecycleManager
from funnelbot.services.payments import PaymentConfirmationService
from funnelbot.services.reachability import ReachabilitySweeper
from funnelbot.services.reminders import ReminderChainScheduler
from funnelbot.services.state_store import StateStore
from funnelbot.services.steps import StepDeliveryService
from funnelbot.services.task_queue import (
    CeleryTransport,
    QueuePolicy,
    TaskQueue,
    TaskTransport,
)
from funnelbot.services.telegram import TelegramGateway
from funnelbot.utils.clock import Clock, TimeScale


def build_queue_policies() -> Dict[str, QueuePolicy]:
    return {
        REMINDER_QUEUE: QueuePolicy(
            name=REMINDER_QUEUE,
            max_attempts=settings.REMINDER_MAX_ATTEMPTS,
            backoff="exponential",
            retry_delay=timedelta(seconds=settings.REMINDER_RETRY_DELAY_SECONDS),
            concurrency=settings.REMINDER_QUEUE_CONCURRENCY,
        ),
        OFFER_EXPIRE_QUEUE: QueuePolicy(
            name=OFFER_EXPIRE_QUEUE,
            max_attempts=settings.OFFER_MAX_ATTEMPTS,
            backoff="exponential",
            retry_delay=timedelta(seconds=settings.OFFER_RETRY_DELAY_SECONDS),
            concurrency=settings.OFFER_QUEUE_CONCURRENCY,
        ),
        BROADCAST_QUEUE: QueuePolicy(
            name=BROADCAST_QUEUE,
            max_attempts=settings.BROADCAST_MAX_ATTEMPTS,
            backoff="exponential",
            retry_delay=timedelta(seconds=settings.BROADCAST_RETRY_DELAY_SECONDS),
            retry_delay_max=timedelta(
                seconds=settings.BROADCAST_RETRY_DELAY_MAX_SECONDS
            ),
            concurrency=settings.BROADCAST_QUEUE_CONCURRENCY,
        ),
        MAINTENANCE_QUEUE: QueuePolicy(
            name=MAINTENANCE_QUEUE,
            max_attempts=settings.MAINTENANCE_MAX_ATTEMPTS,
            concurrency=settings.MAINTENANCE_QUEUE_CONCURRENCY,
        ),
    }


def build_time_scale() -> TimeScale:
    return TimeScale(
        factor=settings.TIME_SCALE_FACTOR,
        min_delay=timedelta(milliseconds=settings.TIME_SCALE_MIN_DELAY_MS),
    )


@dataclass
class ServiceContainer:
    store: StateStore
    gateway: TelegramGateway
    queue: TaskQueue
    scenarios: ScenarioRegistry
    offers: OfferLifecycleManager
    steps: StepDeliveryService
    reminders: ReminderChainScheduler
    broadcast: BroadcastDispatcher
    sweeper: ReachabilitySweeper
    payments: PaymentConfirmationService
    _owned: list = field(default_factory=list, repr=False)

    async def aclose(self) -> None:
        self.queue.stop()
        for resource in self._owned:
            await resource.close()


def build_container(
    db_session: Session,
    store: Optional[StateStore] = None,
    gateway: Optional[TelegramGateway] = None,
    transport: Optional[TaskTransport] = None,
    clock: Optional[Clock] = None,
    pacer: Optional[Pacer] = None,
    sweep_pacer: Optional[Pacer] = None,
    scenarios: Optional[ScenarioRegistry] = None,
    time_scale: Optional[TimeScale] = None,
) -> ServiceContainer:
    """
    Build and start every service.

    Raises:
        ConfigurationError: Bot token missing, or a task kind left without a handler
    """
    owned = []
    if store is None:
        store = StateStore.from_url()
        owned.append(store)
    if gateway is None:
        gateway = TelegramGateway(settings.require_bot_token())
        owned.append(gateway)

    clock = clock or Clock()
    time_scale = time_scale or build_time_scale()
    scenarios = scenarios or ScenarioRegistry(
        {DEFAULT_SCENARIO_KEY: DEFAULT_SCENARIO}, DEFAULT_OFFERS
    )

    queue = TaskQueue(
        store,
        transport or CeleryTransport(),
        build_queue_policies(),
        clock=clock,
    )
    offers = OfferLifecycleManager(
        db_session, queue, gateway, scenarios, clock=clock, time_scale=time_scale
    )
    steps = StepDeliveryService(db_session, gateway, scenarios, offers)
    reminders = ReminderChainScheduler(
        db_session,
        queue,
        scenarios,
        steps,
        clock=clock,
        time_scale=time_scale,
        zone=ZoneInfo(settings.REFERENCE_TIMEZONE),
    )
    broadcast = BroadcastDispatcher(
        store, queue, gateway, db_session=db_session, clock=clock, pacer=pacer
    )
    sweeper = ReachabilitySweeper(
        db_session, store, gateway, reminders, clock=clock, pacer=sweep_pacer
    )
    payments = PaymentConfirmationService(db_session, reminders, gateway, clock=clock)

    queue.register("reminder", reminders.handle_reminder)
    queue.register("offer_expiration", offers.handle_expiration)
    queue.register("broadcast_batch", broadcast.handle_batch)
    queue.register("reachability_sweep", sweeper.sweep)
    queue.start()

    return ServiceContainer(
        store=store,
        gateway=gateway,
        queue=queue,
        scenarios=scenarios,
        offers=offers,
        steps=steps,
        reminders=reminders,
        broadcast=broadcast,
        sweeper=sweeper,
        payments=payments,
        _owned=owned,
    )


async def get_service_container(
    request: Request, db: Session = Depends(get_sync_session)
) -> AsyncIterator[ServiceContainer]:
    """Dependency: per-request services sharing the app-wide Redis and HTTP clients."""
    state = request.app.state
    container = build_container(
        db,
        store=state.store,
        gateway=state.gateway,
        transport=getattr(state, "transport", None),
    )
    try:
        yield container
    finally:
        await container.aclose()
