"""
Durable delayed-task queue.

Task records and per-queue schedules live in Redis; Celery only carries
"deliver task <id> after <countdown>" messages. The Redis record is the
authority: a message whose record is cancelled, finished, dead or missing is
dropped, and a message that arrives early is re-published for the remainder.

Claiming a task is arbitrated by removing it from the queue's pending sorted
set, so a cancel racing a delivery (or two copies of the same message) resolve
to exactly one winner.
"""

import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import (
    Annotated,
    Awaitable,
    Callable,
    Dict,
    List,
    Literal,
    Mapping,
    Optional,
    Protocol,
    Union,
)

from pydantic import BaseModel, Field, TypeAdapter

from funnelbot.services.state_store import StateStore
from funnelbot.utils.clock import Clock
from funnelbot.utils.datetime_utils import from_epoch_ms, to_epoch_ms
from funnelbot.utils.errors import (
    ConfigurationError,
    PermanentDeliveryError,
    PermanentTaskError,
    StateConflictError,
    TransientDeliveryError,
    ValidationError,
)
from funnelbot.utils.logging import get_logger

logger = get_logger()

RECORD_TTL_SECONDS = 60 * 60 * 24 * 7
DEAD_LIST_LIMIT = 1000
# Claimed tasks older than this are assumed lost with their worker
STALE_CLAIM_AFTER = timedelta(minutes=35)
# Due tasks still pending after this grace period get their message re-published
RECOVERY_GRACE = timedelta(minutes=1)


# Payloads


class ReminderPayload(BaseModel):
    kind: Literal["reminder"] = "reminder"
    subscription_id: str


class OfferExpirationPayload(BaseModel):
    kind: Literal["offer_expiration"] = "offer_expiration"
    offer_instance_id: str


class BroadcastBatchPayload(BaseModel):
    kind: Literal["broadcast_batch"] = "broadcast_batch"
    broadcast_id: str
    batch_start: int = Field(ge=0)
    batch_size: int = Field(gt=0)


class ReachabilitySweepPayload(BaseModel):
    kind: Literal["reachability_sweep"] = "reachability_sweep"
    mode: Literal["near", "all"] = "near"
    horizon_hours: int = 48
    session_key: Optional[str] = None


TaskPayload = Annotated[
    Union[
        ReminderPayload,
        OfferExpirationPayload,
        BroadcastBatchPayload,
        ReachabilitySweepPayload,
    ],
    Field(discriminator="kind"),
]

TASK_KINDS = ("reminder", "offer_expiration", "broadcast_batch", "reachability_sweep")

_payload_adapter = TypeAdapter(TaskPayload)


def parse_payload(raw: str) -> BaseModel:
    return _payload_adapter.validate_json(raw)


# Records and policies


class TaskState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    DEAD = "dead"
    CANCELLED = "cancelled"


class DedupePolicy(str, Enum):
    KEEP = "keep"  # second enqueue returns the pending task id
    REPLACE = "replace"  # pending task is cancelled, a new one is created


DEFAULT_DEDUPE_POLICIES: Dict[str, DedupePolicy] = {
    "reminder": DedupePolicy.KEEP,
    "broadcast_batch": DedupePolicy.KEEP,
    "reachability_sweep": DedupePolicy.KEEP,
    "offer_expiration": DedupePolicy.REPLACE,
}


class DeliveryOutcome(str, Enum):
    DONE = "done"
    RETRYING = "retrying"
    DEAD = "dead"
    DEFERRED = "deferred"
    DROPPED = "dropped"


@dataclass
class QueuePolicy:
    name: str
    max_attempts: int = 3
    backoff: Literal["fixed", "exponential"] = "fixed"
    retry_delay: timedelta = timedelta(seconds=3)
    retry_delay_max: Optional[timedelta] = None
    concurrency: int = 1

    def backoff_delay(self, attempt: int) -> timedelta:
        """Delay before retry number `attempt` (1-based)."""
        if self.backoff == "exponential":
            delay = self.retry_delay * (2 ** max(0, attempt - 1))
        else:
            delay = self.retry_delay
        if self.retry_delay_max is not None:
            delay = min(delay, self.retry_delay_max)
        return delay


@dataclass
class Task:
    id: str
    queue_name: str
    payload: BaseModel
    not_before: datetime
    attempts: int
    max_attempts: int
    state: TaskState
    dedupe_key: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def kind(self) -> str:
        return self.payload.kind

    @classmethod
    def from_record(cls, record: Mapping[str, str]) -> "Task":
        return cls(
            id=record["id"],
            queue_name=record["queue"],
            payload=parse_payload(record["payload"]),
            not_before=from_epoch_ms(record["not_before"]),
            attempts=int(record.get("attempts") or 0),
            max_attempts=int(record["max_attempts"]),
            state=TaskState(record["state"]),
            dedupe_key=record.get("dedupe_key") or None,
            last_error=record.get("last_error") or None,
        )


class TaskTransport(Protocol):
    """Carries "deliver task <id>" messages to the workers of a queue."""

    def publish(self, task_id: str, queue_name: str, countdown: float) -> None: ...

    def revoke(self, task_id: str) -> None: ...


class CeleryTransport:
    """Publishes through the `deliver_task` Celery task, one queue per subsystem."""

    def publish(self, task_id: str, queue_name: str, countdown: float) -> None:
        # Import here to avoid circular imports
        from funnelbot.tasks.delivery import deliver_task

        deliver_task.apply_async(  # type: ignore
            args=[task_id],
            queue=queue_name,
            countdown=max(0.0, countdown),
            task_id=task_id,
        )

    def revoke(self, task_id: str) -> None:
        from funnelbot.celery import celery

        celery.control.revoke(task_id)


Handler = Callable[[BaseModel], Awaitable[None]]

TERMINAL_ERRORS = (PermanentTaskError, PermanentDeliveryError, ValidationError)


class TaskQueue:
    def __init__(
        self,
        store: StateStore,
        transport: TaskTransport,
        policies: Mapping[str, QueuePolicy],
        clock: Optional[Clock] = None,
        dedupe_policies: Optional[Mapping[str, DedupePolicy]] = None,
    ):
        self.store = store
        self.transport = transport
        self.policies = dict(policies)
        self.clock = clock or Clock()
        self.dedupe_policies = dict(dedupe_policies or DEFAULT_DEDUPE_POLICIES)
        self._handlers: Dict[str, Handler] = {}
        self._started = False

    # Keys

    @staticmethod
    def _record_key(task_id: str) -> str:
        return f"tasks:record:{task_id}"

    @staticmethod
    def _pending_key(queue_name: str) -> str:
        return f"tasks:pending:{queue_name}"

    @staticmethod
    def _inflight_key(queue_name: str) -> str:
        return f"tasks:inflight:{queue_name}"

    @staticmethod
    def _dead_key(queue_name: str) -> str:
        return f"tasks:dead:{queue_name}"

    @staticmethod
    def _dedupe_key(queue_name: str, dedupe_key: str) -> str:
        return f"tasks:dedupe:{queue_name}:{dedupe_key}"

    REPEAT_KEY = "tasks:repeat"

    # Lifecycle

    def register(self, kind: str, handler: Handler) -> None:
        if kind not in TASK_KINDS:
            raise ConfigurationError(f"Unknown task kind '{kind}'")
        self._handlers[kind] = handler

    def start(self) -> None:
        """Refuse to deliver anything until every task kind has a handler."""
        missing = [kind for kind in TASK_KINDS if kind not in self._handlers]
        if missing:
            raise ConfigurationError(
                f"No handler registered for task kinds: {', '.join(missing)}"
            )
        self._started = True

    def stop(self) -> None:
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def _policy(self, queue_name: str) -> QueuePolicy:
        policy = self.policies.get(queue_name)
        if policy is None:
            raise ValidationError(
                f"Unknown queue '{queue_name}'", error_code="UNKNOWN_QUEUE"
            )
        return policy

    # Producer side

    async def enqueue(
        self,
        queue_name: str,
        payload: BaseModel,
        delay: timedelta = timedelta(0),
        dedupe_key: Optional[str] = None,
        max_attempts: Optional[int] = None,
        on_duplicate: Optional[DedupePolicy] = None,
    ) -> str:
        """
        Schedule `payload` for delivery on `queue_name` no earlier than now + delay.

        With a dedupe key, a second enqueue while the first task is still
        pending either returns the existing id (KEEP) or cancels it and
        schedules a fresh task (REPLACE). The policy defaults per payload kind.

        Returns:
            str: Task id
        """
        policy = self._policy(queue_name)
        if delay < timedelta(0):
            delay = timedelta(0)

        task_id = uuid.uuid4().hex

        if dedupe_key:
            duplicate_policy = on_duplicate or self.dedupe_policies.get(
                payload.kind, DedupePolicy.KEEP
            )
            existing_id = await self._claim_dedupe(
                queue_name, dedupe_key, task_id, duplicate_policy
            )
            if existing_id is not None:
                logger.debug(
                    f"Dedupe hit on {queue_name}:{dedupe_key}, keeping task {existing_id}"
                )
                return existing_id

        not_before = self.clock.now() + delay
        record = {
            "id": task_id,
            "queue": queue_name,
            "kind": payload.kind,
            "payload": payload.model_dump_json(),
            "not_before": to_epoch_ms(not_before),
            "attempts": 0,
            "max_attempts": max_attempts or policy.max_attempts,
            "state": TaskState.PENDING.value,
            "dedupe_key": dedupe_key,
            "created_at": to_epoch_ms(self.clock.now()),
        }
        await self.store.hset(self._record_key(task_id), record)
        await self.store.zadd(
            self._pending_key(queue_name), task_id, to_epoch_ms(not_before)
        )
        self.transport.publish(task_id, queue_name, delay.total_seconds())

        logger.debug(
            f"Enqueued {payload.kind} task {task_id} on {queue_name} "
            f"(delay={delay.total_seconds():.1f}s)"
        )
        return task_id

    async def _claim_dedupe(
        self,
        queue_name: str,
        dedupe_key: str,
        task_id: str,
        policy: DedupePolicy,
    ) -> Optional[str]:
        """Point the dedupe key at `task_id`; return the id to keep instead, if any."""
        key = self._dedupe_key(queue_name, dedupe_key)

        if policy == DedupePolicy.KEEP:
            if await self.store.set_if_absent(key, task_id):
                return None
            existing_id = await self.store.get(key)
            if existing_id and await self._is_pending(existing_id):
                return existing_id
            await self.store.set(key, task_id)
            return None

        existing_id = await self.store.get(key)
        if existing_id:
            await self.cancel(existing_id)
        await self.store.set(key, task_id)
        return None

    async def _is_pending(self, task_id: str) -> bool:
        state = await self.store.hget(self._record_key(task_id), "state")
        return state == TaskState.PENDING.value

    async def cancel(self, task_id: str) -> bool:
        """Remove a task that has not been claimed yet; True only if it was pending."""
        record = await self.store.hgetall(self._record_key(task_id))
        if not record:
            return False

        if not await self.store.zrem(self._pending_key(record["queue"]), task_id):
            return False

        await self.store.hset(
            self._record_key(task_id), {"state": TaskState.CANCELLED.value}
        )
        await self.store.expire(self._record_key(task_id), RECORD_TTL_SECONDS)
        await self._release_dedupe(record)

        try:
            self.transport.revoke(task_id)
        except Exception as e:
            logger.warning(f"Failed to revoke transport message for {task_id}: {e}")

        logger.debug(f"Cancelled task {task_id} on {record['queue']}")
        return True

    async def get(self, task_id: str) -> Optional[Task]:
        record = await self.store.hgetall(self._record_key(task_id))
        return Task.from_record(record) if record else None

    async def pending(
        self,
        queue_name: str,
        predicate: Optional[Callable[[Task], bool]] = None,
    ) -> List[Task]:
        tasks = []
        for task_id in await self.store.zrange_by_score(self._pending_key(queue_name)):
            task = await self.get(task_id)
            if task is None or task.state != TaskState.PENDING:
                continue
            if predicate is None or predicate(task):
                tasks.append(task)
        return tasks

    async def dead(self, queue_name: str) -> List[str]:
        return await self.store.lrange(self._dead_key(queue_name))

    async def register_repeat(
        self,
        repeat_key: str,
        queue_name: str,
        payload: BaseModel,
        schedule: str,
    ) -> bool:
        """
        Record a recurring registration under a stable key.

        The trigger itself is a Celery beat entry of the same name; this record
        holds what it enqueues. Re-registering an existing key is a no-op.

        Returns:
            bool: True when the key was registered for the first time
        """
        self._policy(queue_name)
        registration = json.dumps(
            {
                "queue": queue_name,
                "payload": payload.model_dump(mode="json"),
                "schedule": schedule,
            }
        )
        created = await self.store.hsetnx(self.REPEAT_KEY, repeat_key, registration)
        if created:
            logger.info(f"Registered repeating task {repeat_key} ({schedule})")
        return created

    async def fire_repeat(self, repeat_key: str) -> Optional[str]:
        """Enqueue one occurrence of a registered repeat, deduplicated by its key."""
        raw = await self.store.hget(self.REPEAT_KEY, repeat_key)
        if raw is None:
            logger.warning(f"Repeating task {repeat_key} is not registered")
            return None
        registration = json.loads(raw)
        payload = _payload_adapter.validate_python(registration["payload"])
        return await self.enqueue(
            registration["queue"],
            payload,
            dedupe_key=repeat_key,
            on_duplicate=DedupePolicy.KEEP,
        )

    async def recover(self, queue_name: str) -> int:
        """
        Re-publish tasks whose transport message may have been lost.

        Due pending tasks older than a short grace period get a new message;
        claims older than the stale threshold go back to pending. Duplicate
        messages are harmless because claiming is arbitrated in Redis.

        Returns:
            int: Number of re-published tasks
        """
        now = self.clock.now()
        republished = 0

        stale_before = to_epoch_ms(now - STALE_CLAIM_AFTER)
        for task_id in await self.store.zrange_by_score(
            self._inflight_key(queue_name), max_score=stale_before
        ):
            await self.store.zrem(self._inflight_key(queue_name), task_id)
            if not await self.store.hgetall(self._record_key(task_id)):
                continue
            await self.store.hset(
                self._record_key(task_id),
                {"state": TaskState.PENDING.value, "not_before": to_epoch_ms(now)},
            )
            await self.store.zadd(
                self._pending_key(queue_name), task_id, to_epoch_ms(now)
            )
            self.transport.publish(task_id, queue_name, 0)
            republished += 1

        due_before = to_epoch_ms(now - RECOVERY_GRACE)
        for task_id in await self.store.zrange_by_score(
            self._pending_key(queue_name), max_score=due_before
        ):
            self.transport.publish(task_id, queue_name, 0)
            republished += 1

        if republished:
            logger.info(f"Recovered {republished} tasks on {queue_name}")
        return republished

    # Consumer side

    async def deliver(self, task_id: str) -> DeliveryOutcome:
        """Claim the task, run its handler and apply retry semantics."""
        if not self._started:
            raise ConfigurationError("Task queue is not started")

        record = await self.store.hgetall(self._record_key(task_id))
        if not record:
            logger.info(f"Dropping message for unknown task {task_id}")
            return DeliveryOutcome.DROPPED

        queue_name = record["queue"]
        if record["state"] != TaskState.PENDING.value:
            logger.debug(f"Dropping message for {record['state']} task {task_id}")
            return DeliveryOutcome.DROPPED

        now = self.clock.now()
        not_before = from_epoch_ms(record["not_before"])
        if not_before > now:
            remaining = (not_before - now).total_seconds()
            self.transport.publish(task_id, queue_name, remaining)
            logger.debug(f"Task {task_id} arrived early, re-published in {remaining:.1f}s")
            return DeliveryOutcome.DEFERRED

        if not await self.store.zrem(self._pending_key(queue_name), task_id):
            logger.debug(f"Task {task_id} already claimed or cancelled")
            return DeliveryOutcome.DROPPED

        attempts = await self.store.hincrby(self._record_key(task_id), "attempts", 1)
        await self.store.hset(
            self._record_key(task_id), {"state": TaskState.RUNNING.value}
        )
        await self.store.zadd(self._inflight_key(queue_name), task_id, to_epoch_ms(now))
        await self._release_dedupe(record)

        task = Task.from_record({**record, "attempts": attempts})
        handler = self._handlers.get(task.kind)
        if handler is None:
            raise ConfigurationError(f"No handler registered for task kind '{task.kind}'")

        try:
            await handler(task.payload)
        except StateConflictError as e:
            logger.info(f"Task {task_id} ({task.kind}) found state already moved on: {e.message}")
        except TERMINAL_ERRORS as e:
            await self._bury(task, f"{type(e).__name__}: {e}")
            return DeliveryOutcome.DEAD
        except Exception as e:
            return await self._retry_or_bury(task, e)

        await self._finish(task)
        return DeliveryOutcome.DONE

    async def _finish(self, task: Task) -> None:
        await self.store.hset(self._record_key(task.id), {"state": TaskState.DONE.value})
        await self.store.zrem(self._inflight_key(task.queue_name), task.id)
        await self.store.expire(self._record_key(task.id), RECORD_TTL_SECONDS)

    async def _bury(self, task: Task, error: str) -> None:
        logger.error(
            f"Task {task.id} ({task.kind}) on {task.queue_name} is dead "
            f"after {task.attempts} attempt(s): {error}"
        )
        await self.store.hset(
            self._record_key(task.id),
            {"state": TaskState.DEAD.value, "last_error": error},
        )
        await self.store.zrem(self._inflight_key(task.queue_name), task.id)
        await self.store.push_capped(
            self._dead_key(task.queue_name), task.id, DEAD_LIST_LIMIT
        )
        await self.store.expire(self._record_key(task.id), RECORD_TTL_SECONDS)

    async def _retry_or_bury(self, task: Task, error: Exception) -> DeliveryOutcome:
        message = f"{type(error).__name__}: {error}"
        if task.attempts >= task.max_attempts:
            await self._bury(task, message)
            return DeliveryOutcome.DEAD

        delay = self._policy(task.queue_name).backoff_delay(task.attempts)
        if isinstance(error, TransientDeliveryError) and error.retry_after:
            delay = max(delay, timedelta(seconds=error.retry_after))

        not_before = self.clock.now() + delay
        await self.store.hset(
            self._record_key(task.id),
            {
                "state": TaskState.PENDING.value,
                "not_before": to_epoch_ms(not_before),
                "last_error": message,
            },
        )
        await self.store.zrem(self._inflight_key(task.queue_name), task.id)
        await self.store.zadd(
            self._pending_key(task.queue_name), task.id, to_epoch_ms(not_before)
        )
        if task.dedupe_key:
            await self.store.set_if_absent(
                self._dedupe_key(task.queue_name, task.dedupe_key), task.id
            )
        self.transport.publish(task.id, task.queue_name, delay.total_seconds())

        logger.warning(
            f"Task {task.id} ({task.kind}) failed attempt {task.attempts}/"
            f"{task.max_attempts}, retrying in {delay.total_seconds():.1f}s: {message}"
        )
        return DeliveryOutcome.RETRYING

    async def _release_dedupe(self, record: Mapping[str, str]) -> None:
        dedupe_key = record.get("dedupe_key")
        if dedupe_key:
            await self.store.delete_if_equals(
                self._dedupe_key(record["queue"], dedupe_key), record["id"]
            )
