"""
Reachability sweep.

Probes users with a silent chat action to keep the `blocked_by_user` flag
fresh. The nightly `near` sweep only looks at users with reminders due soon,
so that reminder delivery does not run into freshly blocked chats.
"""

from datetime import timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from funnelbot.config.settings import settings
from funnelbot.db.models import User
from funnelbot.db.repositories import ReminderRepository, UserRepository
from funnelbot.schemas.camel_base_model import CamelCaseBaseModel
from funnelbot.services.broadcast import Pacer
from funnelbot.services.reminders import ReminderChainScheduler
from funnelbot.services.state_store import StateStore
from funnelbot.services.task_queue import ReachabilitySweepPayload
from funnelbot.services.telegram import TelegramGateway
from funnelbot.utils.clock import Clock
from funnelbot.utils.errors import PermanentDeliveryError, TransientDeliveryError
from funnelbot.utils.logging import get_logger

logger = get_logger()

SESSION_STATE_TTL_SECONDS = 60 * 60 * 24 * 2


class SweepProgress(CamelCaseBaseModel):
    mode: str
    total: int = 0
    processed: int = 0
    blocked: int = 0
    unblocked: int = 0
    started_at_iso: str
    done: bool = False
    stopped: bool = False

    @property
    def remaining(self) -> int:
        return max(0, self.total - self.processed)


class ReachabilitySweeper:
    def __init__(
        self,
        db_session: Session,
        store: StateStore,
        gateway: TelegramGateway,
        reminders: ReminderChainScheduler,
        clock: Optional[Clock] = None,
        pacer: Optional[Pacer] = None,
        page_size: int = settings.BLOCKCHECK_PAGE_SIZE,
    ):
        self.db = db_session
        self.users = UserRepository(db_session)
        self.subscriptions = ReminderRepository(db_session)
        self.store = store
        self.gateway = gateway
        self.reminders = reminders
        self.clock = clock or Clock()
        self.pacer = pacer or Pacer(settings.BLOCKCHECK_MIN_INTERVAL_MS)
        self.page_size = page_size

    @staticmethod
    def default_session_key(mode: str) -> str:
        return f"blockcheck:{mode}"

    @staticmethod
    def stop_key(session_key: str) -> str:
        return f"{session_key}:stop"

    @staticmethod
    def state_key(session_key: str) -> str:
        return f"{session_key}:state"

    async def request_stop(self, session_key: str) -> None:
        await self.store.set(
            self.stop_key(session_key), "1", ttl=SESSION_STATE_TTL_SECONDS
        )

    async def get_progress(self, session_key: str) -> Optional[SweepProgress]:
        raw = await self.store.get(self.state_key(session_key))
        if raw is None:
            return None
        return SweepProgress.model_validate_json(raw)

    async def _should_stop(self, session_key: str) -> bool:
        return await self.store.get(self.stop_key(session_key)) == "1"

    async def _save(self, session_key: str, progress: SweepProgress) -> None:
        await self.store.set(
            self.state_key(session_key),
            progress.model_dump_json(by_alias=True),
            ttl=SESSION_STATE_TTL_SECONDS,
        )

    async def sweep(self, payload: ReachabilitySweepPayload) -> SweepProgress:
        session_key = payload.session_key or self.default_session_key(payload.mode)
        now = self.clock.now()

        near_ids: Optional[List[str]] = None
        if payload.mode == "near":
            near_ids = self.subscriptions.pending_user_ids_between(
                now, now + timedelta(hours=payload.horizon_hours)
            )
            total = len(near_ids)
        else:
            total = self.users.count()

        progress = SweepProgress(
            mode=payload.mode, total=total, started_at_iso=now.isoformat()
        )
        await self._save(session_key, progress)
        logger.info(f"Reachability sweep {session_key} started: mode={payload.mode}, total={total}")

        for chunk in self._chunks(near_ids):
            for user in chunk:
                if await self._should_stop(session_key):
                    progress.stopped = True
                    await self._save(session_key, progress)
                    # A stop request applies to one run only
                    await self.store.delete(self.stop_key(session_key))
                    logger.info(
                        f"Reachability sweep {session_key} stopped at "
                        f"{progress.processed}/{progress.total}"
                    )
                    return progress

                await self._probe(user, progress)
                progress.processed += 1

            await self._save(session_key, progress)

        progress.done = True
        await self._save(session_key, progress)
        await self.store.delete(self.stop_key(session_key))
        logger.info(
            f"Reachability sweep {session_key} done: processed={progress.processed} "
            f"blocked={progress.blocked} unblocked={progress.unblocked}"
        )
        return progress

    def _chunks(self, near_ids: Optional[List[str]]):
        if near_ids is not None:
            for offset in range(0, len(near_ids), self.page_size):
                yield self.users.get_many(near_ids[offset : offset + self.page_size])
            return

        after_id = None
        while True:
            users = self.users.page(after_id, self.page_size)
            if not users:
                return
            yield users
            after_id = users[-1].id

    async def _probe(self, user: User, progress: SweepProgress) -> None:
        await self.pacer.wait()
        try:
            await self.gateway.send_chat_action(user.telegram_id, "typing")
        except PermanentDeliveryError as e:
            if not user.blocked_by_user:
                progress.blocked += 1
            self.users.mark_blocked(user.id, e.message or "Blocked", self.clock.now())
            await self.reminders.cancel_all_pending(user.id)
            logger.info(f"User {user.id} is unreachable: {e.message}")
            return
        except TransientDeliveryError as e:
            logger.warning(f"Probe of user {user.id} failed, leaving flag as is: {e.message}")
            return

        if user.blocked_by_user:
            self.users.mark_unblocked(user.id)
            progress.unblocked += 1
            logger.info(f"User {user.id} is reachable again")
