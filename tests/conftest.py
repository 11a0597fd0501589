import os

os.environ.setdefault("TELEGRAM_TOKEN", "test-token")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")

import itertools
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set

import fakeredis.aioredis
import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from funnelbot.container import build_container
from funnelbot.db.models import Base, User
from funnelbot.services.broadcast import Pacer
from funnelbot.services.state_store import StateStore
from funnelbot.services.task_queue import TaskState
from funnelbot.services.telegram import MessageRef
from funnelbot.utils.clock import TimeScale
from funnelbot.utils.errors import PermanentDeliveryError, TransientDeliveryError


# Test doubles


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, delta: timedelta) -> datetime:
        self.current = self.current + delta
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


@dataclass
class PublishedMessage:
    task_id: str
    queue_name: str
    countdown: float


class RecordingTransport:
    """Task transport that keeps published messages instead of sending them to Celery."""

    def __init__(self):
        self.published: List[PublishedMessage] = []
        self.revoked: List[str] = []

    def publish(self, task_id: str, queue_name: str, countdown: float) -> None:
        self.published.append(PublishedMessage(task_id, queue_name, countdown))

    def revoke(self, task_id: str) -> None:
        self.revoked.append(task_id)

    def for_queue(self, queue_name: str) -> List[PublishedMessage]:
        return [m for m in self.published if m.queue_name == queue_name]


class RecordingGateway:
    """Telegram gateway double; chats listed in `unreachable` or `flaky` fail."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.unreachable: Set[str] = set()
        self.flaky: Dict[str, int] = {}
        self._message_ids = itertools.count(100)

    def _check(self, chat_id: str) -> None:
        chat_id = str(chat_id)
        if chat_id in self.unreachable:
            raise PermanentDeliveryError(
                "Forbidden: bot was blocked by the user", status_code=403
            )
        if self.flaky.get(chat_id, 0) > 0:
            self.flaky[chat_id] -= 1
            raise TransientDeliveryError("Bad Gateway", status_code=502)

    def _ref(self, chat_id: str) -> MessageRef:
        return MessageRef(chat_id=str(chat_id), message_id=next(self._message_ids))

    async def send_message(self, chat_id, html, reply_markup=None):
        self._check(chat_id)
        self.calls.append(("send_message", str(chat_id), html))
        return self._ref(chat_id)

    async def send_media(self, chat_id, items, caption=None):
        self._check(chat_id)
        self.calls.append(("send_media", str(chat_id), caption))
        return [self._ref(chat_id) for _ in items]

    async def send_media_group(self, chat_id, items, caption=None):
        self._check(chat_id)
        self.calls.append(("send_media_group", str(chat_id), caption))
        return [self._ref(chat_id) for _ in items]

    async def delete_message(self, chat_id, message_id):
        self.calls.append(("delete_message", str(chat_id), message_id))
        return True

    async def send_chat_action(self, chat_id, action="typing"):
        self._check(chat_id)
        self.calls.append(("send_chat_action", str(chat_id), action))

    async def get_member_status(self, group_id, chat_id):
        return "member"

    async def close(self):
        return None

    def sent_to(self, chat_id: str, method: Optional[str] = None) -> List[tuple]:
        return [
            call
            for call in self.calls
            if call[1] == str(chat_id) and (method is None or call[0] == method)
        ]


async def _no_sleep(_seconds: float) -> None:
    return None


# Fixtures


@pytest.fixture
def start_time() -> datetime:
    # 10:00 Moscow time
    return datetime(2025, 3, 10, 7, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(start_time) -> FixedClock:
    return FixedClock(start_time)


@pytest.fixture
def test_engine():
    """In-memory database shared by every connection of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(test_engine):
    session = Session(bind=test_engine, expire_on_commit=False)
    yield session
    session.rollback()
    session.close()


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def store(redis_client) -> StateStore:
    return StateStore(redis_client)


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def pacer() -> Pacer:
    return Pacer(min_interval_ms=0, sleep=_no_sleep)


@pytest.fixture
def container(db_session, store, gateway, transport, clock, pacer):
    return build_container(
        db_session,
        store=store,
        gateway=gateway,
        transport=transport,
        clock=clock,
        pacer=pacer,
        sweep_pacer=pacer,
        time_scale=TimeScale(),
    )


@pytest.fixture
def make_user(db_session):
    counter = itertools.count(1)

    def _make_user(telegram_id: Optional[str] = None, **fields) -> User:
        user = User(telegram_id=telegram_id or f"10{next(counter):04d}", **fields)
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make_user


async def run_due(queue, transport: RecordingTransport, clock: FixedClock, queue_name=None):
    """Deliver every published task that is due at the clock's current time."""
    outcomes = []
    while True:
        due = []
        for message in list(transport.published):
            if queue_name and message.queue_name != queue_name:
                continue
            task = await queue.get(message.task_id)
            if (
                task is not None
                and task.state == TaskState.PENDING
                and task.not_before <= clock.now()
            ):
                due.append(message)
        if not due:
            return outcomes
        for message in due:
            transport.published.remove(message)
            outcomes.append(await queue.deliver(message.task_id))


@pytest.fixture
def drain(container, transport, clock):
    """Deliver due tasks through the container's queue."""

    async def _drain(queue_name=None):
        return await run_due(container.queue, transport, clock, queue_name)

    return _drain
