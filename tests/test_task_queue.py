from datetime import timedelta

import pytest

from funnelbot.config.queues import (
    BROADCAST_QUEUE,
    MAINTENANCE_QUEUE,
    OFFER_EXPIRE_QUEUE,
    REMINDER_QUEUE,
)
from funnelbot.container import build_queue_policies
from funnelbot.services.task_queue import (
    TASK_KINDS,
    BroadcastBatchPayload,
    DeliveryOutcome,
    OfferExpirationPayload,
    QueuePolicy,
    ReachabilitySweepPayload,
    ReminderPayload,
    TaskQueue,
    TaskState,
)
from funnelbot.utils.errors import (
    ConfigurationError,
    PermanentDeliveryError,
    PermanentTaskError,
    StateConflictError,
    TransientDeliveryError,
    ValidationError,
)

pytestmark = pytest.mark.unit


class HandlerRecorder:
    """Handler for every task kind; raises queued errors before succeeding."""

    def __init__(self):
        self.calls = []
        self.errors = []

    async def __call__(self, payload):
        self.calls.append(payload)
        if self.errors:
            raise self.errors.pop(0)


@pytest.fixture
def handler():
    return HandlerRecorder()


@pytest.fixture
def queue(store, transport, clock, handler):
    task_queue = TaskQueue(store, transport, build_queue_policies(), clock=clock)
    for kind in TASK_KINDS:
        task_queue.register(kind, handler)
    task_queue.start()
    return task_queue


def reminder(subscription_id="sub-1"):
    return ReminderPayload(subscription_id=subscription_id)


class TestQueueLifecycle:
    def test_start_requires_every_task_kind(self, store, transport, clock, handler):
        task_queue = TaskQueue(store, transport, build_queue_policies(), clock=clock)
        task_queue.register("reminder", handler)

        with pytest.raises(ConfigurationError) as exc_info:
            task_queue.start()

        assert "offer_expiration" in exc_info.value.message
        assert not task_queue.started

    def test_register_rejects_unknown_kind(self, store, transport, handler):
        task_queue = TaskQueue(store, transport, build_queue_policies())
        with pytest.raises(ConfigurationError):
            task_queue.register("newsletter", handler)

    async def test_deliver_before_start_raises(self, store, transport, clock):
        task_queue = TaskQueue(store, transport, build_queue_policies(), clock=clock)
        with pytest.raises(ConfigurationError):
            await task_queue.deliver("anything")

    async def test_enqueue_on_unknown_queue_is_rejected(self, queue):
        with pytest.raises(ValidationError):
            await queue.enqueue("nowhere", reminder())


class TestEnqueue:
    async def test_enqueue_stores_pending_record_and_publishes(
        self, queue, transport, clock
    ):
        task_id = await queue.enqueue(
            REMINDER_QUEUE, reminder(), delay=timedelta(minutes=5)
        )

        task = await queue.get(task_id)
        assert task.state == TaskState.PENDING
        assert task.not_before == clock.now() + timedelta(minutes=5)
        assert task.max_attempts == 3
        assert task.payload == reminder()

        [message] = transport.published
        assert message.task_id == task_id
        assert message.queue_name == REMINDER_QUEUE
        assert message.countdown == 300

    async def test_negative_delay_is_clamped(self, queue, transport, clock):
        task_id = await queue.enqueue(
            REMINDER_QUEUE, reminder(), delay=timedelta(seconds=-10)
        )
        task = await queue.get(task_id)
        assert task.not_before == clock.now()
        assert transport.published[0].countdown == 0

    async def test_keep_policy_returns_pending_task(self, queue, transport):
        first = await queue.enqueue(REMINDER_QUEUE, reminder(), dedupe_key="sub-1:0")
        second = await queue.enqueue(REMINDER_QUEUE, reminder(), dedupe_key="sub-1:0")

        assert first == second
        assert len(transport.published) == 1

    async def test_keep_policy_allows_new_task_after_delivery(self, queue):
        first = await queue.enqueue(REMINDER_QUEUE, reminder(), dedupe_key="sub-1:0")
        assert await queue.deliver(first) == DeliveryOutcome.DONE

        second = await queue.enqueue(REMINDER_QUEUE, reminder(), dedupe_key="sub-1:0")
        assert second != first

    async def test_replace_policy_cancels_previous_task(self, queue, transport):
        payload = OfferExpirationPayload(offer_instance_id="offer-1")
        first = await queue.enqueue(OFFER_EXPIRE_QUEUE, payload, dedupe_key="offer-1")
        second = await queue.enqueue(OFFER_EXPIRE_QUEUE, payload, dedupe_key="offer-1")

        assert first != second
        assert (await queue.get(first)).state == TaskState.CANCELLED
        assert (await queue.get(second)).state == TaskState.PENDING
        assert first in transport.revoked
        assert [t.id for t in await queue.pending(OFFER_EXPIRE_QUEUE)] == [second]


class TestCancel:
    async def test_cancel_pending_task(self, queue, handler):
        task_id = await queue.enqueue(REMINDER_QUEUE, reminder())

        assert await queue.cancel(task_id) is True
        assert await queue.cancel(task_id) is False
        assert await queue.deliver(task_id) == DeliveryOutcome.DROPPED
        assert handler.calls == []

    async def test_cancel_unknown_task(self, queue):
        assert await queue.cancel("missing") is False

    async def test_cancel_after_claim_loses(self, queue):
        task_id = await queue.enqueue(REMINDER_QUEUE, reminder())
        await queue.deliver(task_id)

        assert await queue.cancel(task_id) is False
        assert (await queue.get(task_id)).state == TaskState.DONE

    async def test_cancel_releases_dedupe_key(self, queue):
        first = await queue.enqueue(REMINDER_QUEUE, reminder(), dedupe_key="sub-1:0")
        await queue.cancel(first)

        second = await queue.enqueue(REMINDER_QUEUE, reminder(), dedupe_key="sub-1:0")
        assert second != first


class TestDeliver:
    async def test_successful_delivery(self, queue, handler):
        task_id = await queue.enqueue(REMINDER_QUEUE, reminder("sub-7"))

        assert await queue.deliver(task_id) == DeliveryOutcome.DONE
        assert handler.calls == [reminder("sub-7")]
        task = await queue.get(task_id)
        assert task.state == TaskState.DONE
        assert task.attempts == 1

    async def test_duplicate_message_runs_handler_once(self, queue, handler):
        task_id = await queue.enqueue(REMINDER_QUEUE, reminder())

        assert await queue.deliver(task_id) == DeliveryOutcome.DONE
        assert await queue.deliver(task_id) == DeliveryOutcome.DROPPED
        assert len(handler.calls) == 1

    async def test_unknown_task_is_dropped(self, queue):
        assert await queue.deliver("missing") == DeliveryOutcome.DROPPED

    async def test_early_message_is_republished_for_remainder(
        self, queue, transport, clock, handler
    ):
        task_id = await queue.enqueue(
            REMINDER_QUEUE, reminder(), delay=timedelta(minutes=10)
        )
        clock.advance(timedelta(minutes=4))

        assert await queue.deliver(task_id) == DeliveryOutcome.DEFERRED
        assert handler.calls == []
        assert transport.published[-1].countdown == pytest.approx(360)
        assert (await queue.get(task_id)).state == TaskState.PENDING

    async def test_transient_failure_retries_with_backoff_then_dies(
        self, queue, transport, clock, handler
    ):
        handler.errors = [TransientDeliveryError("Bad Gateway", status_code=502)] * 3
        task_id = await queue.enqueue(REMINDER_QUEUE, reminder())

        assert await queue.deliver(task_id) == DeliveryOutcome.RETRYING
        task = await queue.get(task_id)
        assert task.state == TaskState.PENDING
        assert task.not_before == clock.now() + timedelta(seconds=3)
        assert transport.published[-1].countdown == 3

        clock.advance(timedelta(seconds=3))
        assert await queue.deliver(task_id) == DeliveryOutcome.RETRYING
        task = await queue.get(task_id)
        assert task.not_before == clock.now() + timedelta(seconds=6)

        clock.advance(timedelta(seconds=6))
        assert await queue.deliver(task_id) == DeliveryOutcome.DEAD

        task = await queue.get(task_id)
        assert task.state == TaskState.DEAD
        assert task.attempts == 3
        assert "Bad Gateway" in task.last_error
        assert await queue.dead(REMINDER_QUEUE) == [task_id]

    async def test_retry_after_extends_backoff(self, queue, clock, handler):
        handler.errors = [TransientDeliveryError("Too Many Requests", retry_after=30)]
        task_id = await queue.enqueue(REMINDER_QUEUE, reminder())

        assert await queue.deliver(task_id) == DeliveryOutcome.RETRYING
        task = await queue.get(task_id)
        assert task.not_before == clock.now() + timedelta(seconds=30)

    async def test_retry_keeps_dedupe_key_pointing_at_task(self, queue, handler):
        handler.errors = [RuntimeError("boom")]
        task_id = await queue.enqueue(REMINDER_QUEUE, reminder(), dedupe_key="sub-1:0")
        await queue.deliver(task_id)

        again = await queue.enqueue(REMINDER_QUEUE, reminder(), dedupe_key="sub-1:0")
        assert again == task_id

    @pytest.mark.parametrize(
        "error",
        [
            PermanentTaskError("gone"),
            PermanentDeliveryError("blocked", status_code=403),
            ValidationError("bad payload"),
        ],
    )
    async def test_terminal_errors_are_not_retried(self, queue, handler, error):
        handler.errors = [error]
        task_id = await queue.enqueue(REMINDER_QUEUE, reminder())

        assert await queue.deliver(task_id) == DeliveryOutcome.DEAD
        task = await queue.get(task_id)
        assert task.attempts == 1
        assert task.state == TaskState.DEAD

    async def test_state_conflict_counts_as_done(self, queue, handler):
        handler.errors = [StateConflictError("already expired")]
        task_id = await queue.enqueue(REMINDER_QUEUE, reminder())

        assert await queue.deliver(task_id) == DeliveryOutcome.DONE
        assert (await queue.get(task_id)).state == TaskState.DONE
        assert await queue.dead(REMINDER_QUEUE) == []

    async def test_payload_kinds_round_trip_through_record(self, queue, handler):
        payloads = [
            (OFFER_EXPIRE_QUEUE, OfferExpirationPayload(offer_instance_id="o-1")),
            (
                BROADCAST_QUEUE,
                BroadcastBatchPayload(broadcast_id="b-1", batch_start=500, batch_size=500),
            ),
            (MAINTENANCE_QUEUE, ReachabilitySweepPayload(mode="all")),
        ]
        for queue_name, payload in payloads:
            task_id = await queue.enqueue(queue_name, payload)
            await queue.deliver(task_id)

        assert handler.calls == [payload for _, payload in payloads]


class TestPolicy:
    def test_fixed_backoff(self):
        policy = QueuePolicy(name="q", retry_delay=timedelta(seconds=5))
        assert policy.backoff_delay(1) == timedelta(seconds=5)
        assert policy.backoff_delay(4) == timedelta(seconds=5)

    def test_exponential_backoff_is_capped(self):
        policy = QueuePolicy(
            name="q",
            backoff="exponential",
            retry_delay=timedelta(seconds=5),
            retry_delay_max=timedelta(seconds=700),
        )
        assert policy.backoff_delay(1) == timedelta(seconds=5)
        assert policy.backoff_delay(3) == timedelta(seconds=20)
        assert policy.backoff_delay(10) == timedelta(seconds=700)


class TestRecovery:
    async def test_due_pending_task_is_republished(self, queue, transport, clock):
        task_id = await queue.enqueue(REMINDER_QUEUE, reminder())
        transport.published.clear()

        clock.advance(timedelta(minutes=5))
        assert await queue.recover(REMINDER_QUEUE) == 1
        assert transport.published[0].task_id == task_id

    async def test_fresh_pending_task_is_left_alone(self, queue, transport):
        await queue.enqueue(REMINDER_QUEUE, reminder())
        transport.published.clear()

        assert await queue.recover(REMINDER_QUEUE) == 0
        assert transport.published == []

    async def test_stale_claim_returns_to_pending(self, queue, store, transport, clock):
        task_id = await queue.enqueue(REMINDER_QUEUE, reminder())
        # Simulate a worker that claimed the task and died
        await store.zrem(f"tasks:pending:{REMINDER_QUEUE}", task_id)
        await store.hset(f"tasks:record:{task_id}", {"state": "running"})
        await store.zadd(
            f"tasks:inflight:{REMINDER_QUEUE}", task_id, clock.now().timestamp() * 1000
        )
        transport.published.clear()

        clock.advance(timedelta(hours=1))
        assert await queue.recover(REMINDER_QUEUE) >= 1
        assert (await queue.get(task_id)).state == TaskState.PENDING
        assert await queue.deliver(task_id) == DeliveryOutcome.DONE


class TestRepeat:
    async def test_register_repeat_is_idempotent(self, queue):
        payload = ReachabilitySweepPayload(mode="near")

        assert await queue.register_repeat(
            "blockcheck:daily:near", MAINTENANCE_QUEUE, payload, "0 3 * * *"
        )
        assert not await queue.register_repeat(
            "blockcheck:daily:near", MAINTENANCE_QUEUE, payload, "0 3 * * *"
        )

    async def test_fire_repeat_enqueues_once_while_pending(self, queue, handler):
        payload = ReachabilitySweepPayload(mode="near")
        await queue.register_repeat(
            "blockcheck:daily:near", MAINTENANCE_QUEUE, payload, "0 3 * * *"
        )

        first = await queue.fire_repeat("blockcheck:daily:near")
        second = await queue.fire_repeat("blockcheck:daily:near")
        assert first == second

        await queue.deliver(first)
        assert handler.calls == [payload]

    async def test_fire_unregistered_repeat(self, queue):
        assert await queue.fire_repeat("never:registered") is None
