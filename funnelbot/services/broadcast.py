"""
Rate-limited broadcast dispatcher.

A broadcast session lives entirely in Redis under `broadcast:*:<id>` keys that
share one TTL. Counters are only ever changed with HINCRBY. Batches may run
in any order, so progress is also counted per slot, a `batch_size`-aligned
window of the contact list. A slot's counter decides what a redelivered or
resumed batch skips; `cursor` is the total over all slots. The stop flag is a
separate key checked before every contact.
"""

import asyncio
import json
import math
import re
import time
import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from pydantic import Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from funnelbot.config.queues import BROADCAST_QUEUE
from funnelbot.config.settings import settings
from funnelbot.db.repositories import UserRepository
from funnelbot.scenario.types import MediaConfig
from funnelbot.schemas.camel_base_model import CamelCaseBaseModel
from funnelbot.services.state_store import StateStore
from funnelbot.services.task_queue import BroadcastBatchPayload, TaskQueue
from funnelbot.services.telegram import TelegramGateway
from funnelbot.utils.clock import Clock
from funnelbot.utils.datetime_utils import to_epoch_ms
from funnelbot.utils.errors import (
    NotFoundError,
    PermanentDeliveryError,
    PermanentTaskError,
    StateConflictError,
    ValidationError,
)
from funnelbot.utils.logging import get_logger

logger = get_logger()

MAX_CAPTION_LENGTH = 1024
PREVIEW_LENGTH = 160
ACTIVE_BROADCAST_KEY = "broadcast:active"
LAST_BROADCAST_KEY = "broadcast:last"


class BroadcastState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    COMPLETED = "completed"


ACTIVE_STATES = (BroadcastState.QUEUED, BroadcastState.RUNNING, BroadcastState.STOPPING)


class CaptionMode(str, Enum):
    CAPTION = "caption"
    SEPARATE = "separate"
    NONE = "none"


class BroadcastMeta(CamelCaseBaseModel):
    message_html: str = ""
    media: List[MediaConfig] = Field(default_factory=list)
    caption_mode: CaptionMode = CaptionMode.NONE
    delay_ms: int


class BroadcastStatus(CamelCaseBaseModel):
    id: str
    state: BroadcastState
    total: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0
    cursor: int = 0
    created_at: Optional[int] = None
    started_at: Optional[int] = None
    finished_at: Optional[int] = None
    message_preview: str = ""
    actual_rate: float = 0.0
    eta_seconds: Optional[int] = None

    @property
    def done(self) -> int:
        return self.success + self.failed + self.skipped

    @classmethod
    def from_hash(cls, broadcast_id: str, raw: Mapping[str, str]) -> "BroadcastStatus":
        def _int(name: str) -> Optional[int]:
            value = raw.get(name)
            return int(float(value)) if value not in (None, "") else None

        return cls(
            id=broadcast_id,
            state=BroadcastState(raw.get("state", BroadcastState.QUEUED.value)),
            total=_int("total") or 0,
            success=_int("success") or 0,
            failed=_int("failed") or 0,
            skipped=_int("skipped") or 0,
            cursor=_int("cursor") or 0,
            created_at=_int("created_at"),
            started_at=_int("started_at"),
            finished_at=_int("finished_at"),
            message_preview=raw.get("message_preview", ""),
            actual_rate=float(raw.get("actual_rate") or 0),
            eta_seconds=_int("eta_seconds"),
        )


class RateEstimator:
    """
    Smoothed send rate from recent call durations.

    The median of the window gives an instantaneous rate (1000 / median ms),
    which is blended into the previous estimate with an EMA so a burst of
    slow calls does not make the ETA jump around.
    """

    def __init__(self, alpha: float = 0.2):
        self.alpha = alpha

    @staticmethod
    def median(durations: Sequence[float]) -> float:
        values = sorted(d for d in durations if d > 0)
        if not values:
            return 0.0
        return values[len(values) // 2]

    def next_rate(self, previous_rate: float, durations: Sequence[float]) -> float:
        median_ms = self.median(durations)
        instant = 1000.0 / median_ms if median_ms > 0 else 0.0
        if previous_rate > 0:
            return previous_rate * (1 - self.alpha) + instant * self.alpha
        return instant

    @staticmethod
    def eta_seconds(remaining: int, rate: float) -> Optional[int]:
        if rate <= 0:
            return None
        return math.ceil(remaining / rate)


class Pacer:
    """
    Enforces a minimum interval between external calls.

    One pacer is shared by everything that talks to the channel in a process;
    its lock is re-created when used from a new event loop, since Celery tasks
    run each delivery under its own `asyncio.run`.
    """

    def __init__(
        self,
        min_interval_ms: int = settings.BROADCAST_MIN_DELAY_MS,
        sleep: Callable[[float], Any] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.min_interval_ms = min_interval_ms
        self._sleep = sleep
        self._monotonic = monotonic
        self._last_call: Optional[float] = None
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None

    def _get_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    async def wait(self, interval_ms: Optional[int] = None) -> None:
        interval = max(interval_ms or 0, self.min_interval_ms) / 1000
        async with self._get_lock():
            if self._last_call is not None:
                elapsed = self._monotonic() - self._last_call
                if elapsed < interval:
                    await self._sleep(interval - elapsed)
            self._last_call = self._monotonic()


def strip_html(value: str) -> str:
    text = re.sub(r"<[^>]*>", "", value or "")
    return text.replace("&nbsp;", " ").replace("\u00a0", " ").strip()


def normalize_contacts(contacts: Sequence[str]) -> List[str]:
    """Strip blanks and drop duplicates, keeping first-seen order."""
    cleaned = (str(contact).strip() for contact in contacts if contact is not None)
    return list(dict.fromkeys(contact for contact in cleaned if contact))


class BroadcastDispatcher:
    def __init__(
        self,
        store: StateStore,
        queue: TaskQueue,
        gateway: TelegramGateway,
        db_session: Optional[Session] = None,
        clock: Optional[Clock] = None,
        pacer: Optional[Pacer] = None,
        monotonic: Callable[[], float] = time.monotonic,
        batch_size: int = settings.BROADCAST_BATCH_SIZE,
        min_delay_ms: int = settings.BROADCAST_MIN_DELAY_MS,
        ttl_seconds: int = settings.BROADCAST_TTL_SECONDS,
    ):
        self.store = store
        self.queue = queue
        self.gateway = gateway
        self.users = UserRepository(db_session) if db_session is not None else None
        self.clock = clock or Clock()
        self.pacer = pacer or Pacer(min_delay_ms)
        self._monotonic = monotonic
        self.batch_size = batch_size
        self.min_delay_ms = min_delay_ms
        self.ttl = ttl_seconds
        self.log_limit = settings.BROADCAST_LOG_LIMIT
        self.error_limit = settings.BROADCAST_ERROR_LIMIT
        self.rate_window = settings.BROADCAST_RATE_WINDOW_SIZE
        self.publish_interval = settings.BROADCAST_STATUS_PUBLISH_INTERVAL_MS / 1000
        self.estimator = RateEstimator(settings.BROADCAST_EMA_ALPHA)

    # Keys

    @staticmethod
    def status_key(broadcast_id: str) -> str:
        return f"broadcast:status:{broadcast_id}"

    @staticmethod
    def stop_key(broadcast_id: str) -> str:
        return f"broadcast:stop:{broadcast_id}"

    @staticmethod
    def logs_key(broadcast_id: str) -> str:
        return f"broadcast:logs:{broadcast_id}"

    @staticmethod
    def errors_key(broadcast_id: str) -> str:
        return f"broadcast:errors:{broadcast_id}"

    @staticmethod
    def contacts_key(broadcast_id: str) -> str:
        return f"broadcast:contacts:{broadcast_id}"

    @staticmethod
    def meta_key(broadcast_id: str) -> str:
        return f"broadcast:meta:{broadcast_id}"

    @staticmethod
    def progress_key(broadcast_id: str) -> str:
        return f"broadcast:progress:{broadcast_id}"

    @staticmethod
    def durations_key(broadcast_id: str) -> str:
        return f"broadcast:durations:{broadcast_id}"

    @staticmethod
    def events_channel(broadcast_id: str) -> str:
        return f"broadcast:events:{broadcast_id}"

    def _now_ms(self) -> int:
        return to_epoch_ms(self.clock.now())

    # Operator actions

    async def start(
        self,
        contacts: Sequence[str],
        message_html: str,
        media: Optional[Sequence[MediaConfig]] = None,
        caption_mode: Optional[CaptionMode] = None,
        delay_ms: Optional[int] = None,
        filter_blocked: Optional[bool] = None,
    ) -> BroadcastStatus:
        """
        Create a session and enqueue its batches.

        Raises:
            ValidationError: No contacts, nothing to send, or no contact left
                after filtering out blocked and unknown users
        """
        cleaned = normalize_contacts(contacts)
        if not cleaned:
            raise ValidationError("Contact list is empty", error_code="NO_CONTACTS")

        media = list(media or [])
        message_html = (message_html or "").strip()
        text = strip_html(message_html)
        if not text and not media:
            raise ValidationError("Message is empty", error_code="EMPTY_MESSAGE")

        if delay_ms is None:
            delay_ms = settings.BROADCAST_DEFAULT_DELAY_MS
        delay_ms = max(int(delay_ms), self.min_delay_ms)

        if caption_mode is None:
            if not media:
                caption_mode = CaptionMode.NONE
            elif text and len(text) <= MAX_CAPTION_LENGTH:
                caption_mode = CaptionMode.CAPTION
            elif text:
                caption_mode = CaptionMode.SEPARATE
            else:
                caption_mode = CaptionMode.NONE

        if filter_blocked is None:
            filter_blocked = settings.BROADCAST_FILTER_BLOCKED

        allowed, blocked, not_found = cleaned, [], []
        if filter_blocked and self.users is not None:
            allowed, blocked, not_found = self._filter_contacts(cleaned)

        if not allowed:
            logger.warning(
                f"Broadcast not started: {len(blocked)} blocked and {len(not_found)} "
                f"unknown of {len(cleaned)} contacts"
            )
            raise ValidationError(
                "No deliverable contacts left after filtering",
                error_code="NO_ALLOWED_CONTACTS",
            )

        broadcast_id = str(uuid.uuid4())
        await self._init_status(
            broadcast_id,
            total=len(cleaned),
            skipped=len(blocked) + len(not_found),
            preview=text[:PREVIEW_LENGTH],
        )

        await self.push_log(broadcast_id, "info", f"Contacts in list: {len(cleaned)}.")
        if blocked:
            await self.push_log(broadcast_id, "warn", f"Blocked by user: {len(blocked)}.")
            for contact_id in blocked:
                await self.push_error(broadcast_id, contact_id, "blocked_by_user")
        if not_found:
            await self.push_log(broadcast_id, "warn", f"Not found: {len(not_found)}.")
            for contact_id in not_found:
                await self.push_error(broadcast_id, contact_id, "not_found")

        meta = BroadcastMeta(
            message_html=message_html,
            media=media,
            caption_mode=caption_mode,
            delay_ms=delay_ms,
        )
        await self.store.set_json(self.contacts_key(broadcast_id), allowed, ttl=self.ttl)
        await self._init_progress(broadcast_id, len(allowed))
        await self.store.set(
            self.meta_key(broadcast_id), meta.model_dump_json(), ttl=self.ttl
        )
        await self.store.set(ACTIVE_BROADCAST_KEY, broadcast_id, ttl=self.ttl)
        await self.store.set(LAST_BROADCAST_KEY, broadcast_id, ttl=self.ttl)

        await self.push_log(
            broadcast_id, "info", f"To send: {len(allowed)}. Delay: {delay_ms}ms."
        )
        batches = await self._enqueue_batches(broadcast_id, 0, len(allowed))
        logger.info(
            f"Broadcast {broadcast_id} queued: {len(allowed)} contacts in {batches} batches"
        )

        await self.publish_status(broadcast_id)
        return await self._require_status(broadcast_id)

    def _filter_contacts(self, contacts: List[str]):
        flags = self.users.blocked_flags_by_telegram_id(contacts)
        allowed, blocked, not_found = [], [], []
        for contact_id in contacts:
            if contact_id not in flags:
                not_found.append(contact_id)
            elif flags[contact_id]:
                blocked.append(contact_id)
            else:
                allowed.append(contact_id)
        return allowed, blocked, not_found

    async def request_stop(self, broadcast_id: str) -> BroadcastStatus:
        status = await self._require_status(broadcast_id)
        if status.state == BroadcastState.COMPLETED:
            raise StateConflictError(f"Broadcast {broadcast_id} is already completed")

        await self.store.set(self.stop_key(broadcast_id), "1", ttl=self.ttl)
        await self._update_state(broadcast_id, BroadcastState.STOPPING)

        removed = await self._cancel_pending_batches(broadcast_id)
        if removed:
            await self.push_log(broadcast_id, "warn", f"Removed queued batches: {removed}.")
            await self.publish_status(broadcast_id)

        await self._update_state(broadcast_id, BroadcastState.STOPPED)
        await self.store.set(LAST_BROADCAST_KEY, broadcast_id, ttl=self.ttl)
        logger.info(f"Broadcast {broadcast_id} stopped ({removed} batches removed)")
        return await self._require_status(broadcast_id)

    async def resume(self, broadcast_id: str) -> BroadcastStatus:
        status = await self.get_status(broadcast_id)
        if status is None:
            raise NotFoundError(f"Broadcast {broadcast_id} not found")

        meta = await self.store.get(self.meta_key(broadcast_id))
        if meta is None:
            raise ValidationError(
                f"Broadcast {broadcast_id} has no stored message", error_code="NO_META"
            )

        if status.state == BroadcastState.COMPLETED:
            raise StateConflictError(f"Broadcast {broadcast_id} is already completed")

        contacts = await self.store.get_json(self.contacts_key(broadcast_id)) or []
        progress = await self.store.hgetall(self.progress_key(broadcast_id))

        await self.store.delete(self.stop_key(broadcast_id))
        await self._update_state(broadcast_id, BroadcastState.QUEUED)
        await self.store.set(ACTIVE_BROADCAST_KEY, broadcast_id, ttl=self.ttl)

        batches = 0
        for slot in range(0, len(contacts), self.batch_size):
            slot_end = min(slot + self.batch_size, len(contacts))
            processed = int(progress.get(str(slot)) or 0)
            batches += await self._enqueue_batches(broadcast_id, slot + processed, slot_end)
        await self.push_log(broadcast_id, "info", "Broadcast resumed.")
        logger.info(
            f"Broadcast {broadcast_id} resumed from {status.cursor} ({batches} batches)"
        )
        return await self._require_status(broadcast_id)

    async def finish(self, broadcast_id: str) -> None:
        """Stop the session if it is still live and forget the active/last markers."""
        status = await self.get_status(broadcast_id)
        if status is not None and status.state not in (
            BroadcastState.COMPLETED,
            BroadcastState.STOPPED,
        ):
            await self.request_stop(broadcast_id)

        await self.store.delete_if_equals(ACTIVE_BROADCAST_KEY, broadcast_id)
        await self.store.delete(LAST_BROADCAST_KEY)
        logger.info(f"Broadcast {broadcast_id} finished")

    # Reads

    async def get_status(self, broadcast_id: str) -> Optional[BroadcastStatus]:
        raw = await self.store.hgetall(self.status_key(broadcast_id))
        if not raw:
            return None
        return BroadcastStatus.from_hash(broadcast_id, raw)

    async def _require_status(self, broadcast_id: str) -> BroadcastStatus:
        status = await self.get_status(broadcast_id)
        if status is None:
            raise NotFoundError(f"Broadcast {broadcast_id} not found")
        return status

    async def get_logs(self, broadcast_id: str, limit: int = 200) -> List[Dict[str, Any]]:
        return _decode_entries(await self.store.lrange(self.logs_key(broadcast_id), -limit, -1))

    async def get_errors(self, broadcast_id: str) -> List[Dict[str, Any]]:
        return _decode_entries(await self.store.lrange(self.errors_key(broadcast_id)))

    async def get_active_id(self) -> Optional[str]:
        return await self.store.get(ACTIVE_BROADCAST_KEY)

    async def get_last_id(self) -> Optional[str]:
        return await self.store.get(LAST_BROADCAST_KEY)

    async def refresh_active_ttl(self) -> None:
        await self.store.expire(ACTIVE_BROADCAST_KEY, self.ttl)

    # Batch handler

    async def handle_batch(self, payload: BroadcastBatchPayload) -> None:
        broadcast_id = payload.broadcast_id
        status_key = self.status_key(broadcast_id)

        state = await self.store.hget(status_key, "state")
        if state is None:
            raise PermanentTaskError(f"Broadcast {broadcast_id} has no status (expired?)")
        if state == BroadcastState.COMPLETED.value:
            return
        if await self.store.exists(self.stop_key(broadcast_id)):
            logger.info(f"Broadcast {broadcast_id} is stopped, dropping batch {payload.batch_start}")
            return

        raw_meta = await self.store.get(self.meta_key(broadcast_id))
        if raw_meta is None:
            raise PermanentTaskError(f"Broadcast {broadcast_id} has no stored message")
        meta = BroadcastMeta.model_validate_json(raw_meta)

        await self._update_state(broadcast_id, BroadcastState.RUNNING)
        if not await self.store.hget(status_key, "started_at"):
            await self.store.hset(status_key, {"started_at": self._now_ms()})
            await self.push_log(broadcast_id, "info", "Broadcast started.")

        contacts = await self.store.get_json(self.contacts_key(broadcast_id)) or []
        batch = contacts[payload.batch_start : payload.batch_start + payload.batch_size]
        progress_key = self.progress_key(broadcast_id)
        slot = payload.batch_start - payload.batch_start % self.batch_size

        last_publish = self._monotonic()
        for index, contact_id in enumerate(batch):
            if await self.store.hget(status_key, "state") == BroadcastState.COMPLETED.value:
                return
            if await self.store.exists(self.stop_key(broadcast_id)):
                await self.push_log(broadcast_id, "warn", "Broadcast paused.")
                await self.publish_status(broadcast_id)
                return

            # Re-delivered or resumed batch: skip items its slot already counted
            processed = int(await self.store.hget(progress_key, str(slot)) or 0)
            if slot + processed > payload.batch_start + index:
                continue

            started = self._monotonic()
            error: Optional[Exception] = None
            try:
                await self._send(contact_id, meta)
            except Exception as e:
                error = e

            if error is None:
                await self.store.hincrby(status_key, "success", 1)
                await self.push_log(broadcast_id, "info", f"Sent to {contact_id}.")
            else:
                await self._record_failure(broadcast_id, contact_id, error)

            await self.store.hincrby(progress_key, str(slot), 1)
            await self.store.hincrby(status_key, "cursor", 1)
            duration_ms = (self._monotonic() - started) * 1000
            await self.store.push_capped(
                self.durations_key(broadcast_id),
                f"{duration_ms:.3f}",
                self.rate_window,
                ttl=self.ttl,
            )

            now = self._monotonic()
            if index == len(batch) - 1 or now - last_publish >= self.publish_interval:
                await self.publish_status(broadcast_id)
                last_publish = now

        await self._check_done(broadcast_id)

    async def _send(self, contact_id: str, meta: BroadcastMeta) -> None:
        interval = max(meta.delay_ms, self.min_delay_ms)
        caption = meta.message_html if meta.caption_mode == CaptionMode.CAPTION else None

        if not meta.media:
            if meta.message_html:
                await self.pacer.wait(interval)
                await self.gateway.send_message(contact_id, meta.message_html)
            return

        await self.pacer.wait(interval)
        if len(meta.media) == 1:
            await self.gateway.send_media(contact_id, meta.media, caption=caption)
        else:
            await self.gateway.send_media_group(contact_id, meta.media, caption=caption)

        if meta.caption_mode == CaptionMode.SEPARATE and meta.message_html:
            await self.pacer.wait(interval)
            await self.gateway.send_message(contact_id, meta.message_html)

    async def _record_failure(
        self, broadcast_id: str, contact_id: str, error: Exception
    ) -> None:
        detail = getattr(error, "message", None) or str(error)
        reason = "unreachable" if isinstance(error, PermanentDeliveryError) else "send_failed"

        await self.store.hincrby(self.status_key(broadcast_id), "failed", 1)
        await self.push_error(broadcast_id, contact_id, reason, detail)
        await self.push_log(broadcast_id, "error", f"Failed {contact_id}: {detail}")

        if isinstance(error, PermanentDeliveryError) and self.users is not None:
            try:
                user = self.users.get_by_telegram_id(contact_id)
                if user is not None and not user.blocked_by_user:
                    self.users.mark_blocked(user.id, detail, self.clock.now())
            except SQLAlchemyError as e:
                self.users.db.rollback()
                logger.warning(f"Failed to flag contact {contact_id} as blocked: {e}")

    async def _check_done(self, broadcast_id: str) -> None:
        status = await self.get_status(broadcast_id)
        if status is None or not status.total:
            return
        if status.done < status.total:
            return

        stopped = await self.store.exists(self.stop_key(broadcast_id))
        await self.store.hset(self.status_key(broadcast_id), {"finished_at": self._now_ms()})
        final_state = BroadcastState.STOPPED if stopped else BroadcastState.COMPLETED
        await self._update_state(broadcast_id, final_state)

        if not stopped:
            removed = await self._cancel_pending_batches(broadcast_id)
            if removed:
                logger.info(f"Broadcast {broadcast_id}: removed {removed} leftover batches")

        await self.store.set(LAST_BROADCAST_KEY, broadcast_id, ttl=self.ttl)
        logger.info(
            f"Broadcast {broadcast_id} {final_state.value}: "
            f"success={status.success} failed={status.failed} skipped={status.skipped}"
        )

    # Plumbing

    async def _init_status(
        self, broadcast_id: str, total: int, skipped: int, preview: str
    ) -> None:
        await self.store.hset(
            self.status_key(broadcast_id),
            {
                "state": BroadcastState.QUEUED.value,
                "total": total,
                "success": 0,
                "failed": 0,
                "skipped": skipped,
                "cursor": 0,
                "created_at": self._now_ms(),
                "started_at": "",
                "finished_at": "",
                "message_preview": preview,
                "actual_rate": 0,
                "eta_seconds": "",
            },
        )
        await self.store.expire(self.status_key(broadcast_id), self.ttl)
        await self.store.delete(self.durations_key(broadcast_id))

    async def _init_progress(self, broadcast_id: str, contact_count: int) -> None:
        slots = {str(slot): 0 for slot in range(0, contact_count, self.batch_size)}
        await self.store.hset(self.progress_key(broadcast_id), slots)
        await self.store.expire(self.progress_key(broadcast_id), self.ttl)

    async def _update_state(self, broadcast_id: str, state: BroadcastState) -> None:
        await self.store.hset(self.status_key(broadcast_id), {"state": state.value})
        await self.publish_status(broadcast_id)

    async def publish_status(self, broadcast_id: str) -> Optional[BroadcastStatus]:
        """Recompute rate and ETA, then publish the fresh status."""
        status_key = self.status_key(broadcast_id)
        raw = await self.store.hgetall(status_key)
        if not raw:
            return None
        status = BroadcastStatus.from_hash(broadcast_id, raw)

        durations = []
        for value in await self.store.lrange(
            self.durations_key(broadcast_id), -self.rate_window, -1
        ):
            try:
                durations.append(float(value))
            except ValueError:
                continue

        is_active = status.state in ACTIVE_STATES
        rate = self.estimator.next_rate(status.actual_rate, durations) if is_active else 0.0
        remaining = max(0, status.total - status.done)
        eta = self.estimator.eta_seconds(remaining, rate) if is_active else None

        await self.store.hset(
            status_key,
            {"actual_rate": f"{rate:.2f}", "eta_seconds": "" if eta is None else eta},
        )
        fresh = BroadcastStatus.from_hash(broadcast_id, await self.store.hgetall(status_key))
        await self.store.publish(
            self.events_channel(broadcast_id),
            {"type": "status", "payload": fresh.model_dump(by_alias=True)},
        )
        return fresh

    async def push_log(self, broadcast_id: str, level: str, message: str) -> None:
        entry = {"ts": self._now_ms(), "level": level, "message": message}
        await self.store.push_capped(
            self.logs_key(broadcast_id), _encode(entry), self.log_limit, ttl=self.ttl
        )
        await self.store.publish(
            self.events_channel(broadcast_id), {"type": "log", "payload": entry}
        )

    async def push_error(
        self,
        broadcast_id: str,
        contact_id: str,
        reason: str,
        detail: Optional[str] = None,
    ) -> None:
        entry = {
            "ts": self._now_ms(),
            "contactId": contact_id,
            "reason": reason,
            "detail": detail,
        }
        await self.store.push_capped(
            self.errors_key(broadcast_id), _encode(entry), self.error_limit, ttl=self.ttl
        )
        await self.store.publish(
            self.events_channel(broadcast_id), {"type": "issue", "payload": entry}
        )

    async def _enqueue_batches(self, broadcast_id: str, start_index: int, total: int) -> int:
        """Enqueue batches covering [start_index, total), aligned to batch boundaries."""
        index = start_index
        count = 0
        while index < total:
            remainder = index % self.batch_size
            size = min(self.batch_size - remainder, total - index)
            await self.queue.enqueue(
                BROADCAST_QUEUE,
                BroadcastBatchPayload(
                    broadcast_id=broadcast_id, batch_start=index, batch_size=size
                ),
                dedupe_key=f"{broadcast_id}:{index}",
            )
            index += size
            count += 1
        return count

    async def _cancel_pending_batches(self, broadcast_id: str) -> int:
        tasks = await self.queue.pending(
            BROADCAST_QUEUE,
            lambda task: getattr(task.payload, "broadcast_id", None) == broadcast_id,
        )
        removed = 0
        for task in tasks:
            if await self.queue.cancel(task.id):
                removed += 1
        return removed


def _encode(entry: Mapping[str, Any]) -> str:
    return json.dumps(entry, ensure_ascii=False)


def _decode_entries(raw_entries: Sequence[str]) -> List[Dict[str, Any]]:
    entries = []
    for raw in raw_entries:
        try:
            entries.append(json.loads(raw))
        except ValueError:
            entries.append({"raw": raw})
    return entries
