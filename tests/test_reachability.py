import json

import pytest

from funnelbot.config.queues import MAINTENANCE_QUEUE
from funnelbot.db.models import ReminderStatus
from funnelbot.db.repositories import ReminderRepository
from funnelbot.services.reachability import ReachabilitySweeper
from funnelbot.services.task_queue import ReachabilitySweepPayload

pytestmark = pytest.mark.integration


class TestSweepAll:
    async def test_flags_follow_probe_results(
        self, container, db_session, gateway, make_user
    ):
        reachable = make_user(telegram_id="111")
        gone = make_user(telegram_id="222")
        back = make_user(telegram_id="333", blocked_by_user=True, block_reason="old")
        gateway.unreachable.add("222")

        progress = await container.sweeper.sweep(ReachabilitySweepPayload(mode="all"))

        assert progress.done is True
        assert (progress.total, progress.processed) == (3, 3)
        assert (progress.blocked, progress.unblocked) == (1, 1)

        for user in (reachable, gone, back):
            db_session.refresh(user)
        assert reachable.blocked_by_user is False
        assert gone.blocked_by_user is True
        assert "blocked" in gone.block_reason
        assert back.blocked_by_user is False
        assert back.block_reason is None

        probes = [call for call in gateway.calls if call[0] == "send_chat_action"]
        assert sorted(call[1] for call in probes) == ["111", "333"]
        assert all(call[2] == "typing" for call in probes)

    async def test_unreachable_user_loses_pending_reminders(
        self, container, db_session, gateway, make_user
    ):
        user = make_user()
        await container.reminders.schedule_chain(user.id, "start")
        gateway.unreachable.add(user.telegram_id)

        await container.sweeper.sweep(ReachabilitySweepPayload(mode="all"))

        statuses = {s.status for s in ReminderRepository(db_session).list_for_user(user.id)}
        assert statuses == {ReminderStatus.CANCELED}

    async def test_transient_failure_leaves_flag_alone(
        self, container, db_session, gateway, make_user
    ):
        user = make_user(blocked_by_user=True)
        gateway.flaky[user.telegram_id] = 1

        progress = await container.sweeper.sweep(ReachabilitySweepPayload(mode="all"))

        db_session.refresh(user)
        assert user.blocked_by_user is True
        assert progress.processed == 1
        assert (progress.blocked, progress.unblocked) == (0, 0)

    async def test_pages_through_every_user(
        self, db_session, store, gateway, container, pacer, clock, make_user
    ):
        for _ in range(5):
            make_user()
        sweeper = ReachabilitySweeper(
            db_session,
            store,
            gateway,
            container.reminders,
            clock=clock,
            pacer=pacer,
            page_size=2,
        )

        progress = await sweeper.sweep(ReachabilitySweepPayload(mode="all"))

        assert progress.processed == 5
        assert len({call[1] for call in gateway.calls}) == 5


class TestSweepNear:
    async def test_only_users_with_reminders_due_soon(
        self, container, gateway, make_user
    ):
        soon = make_user(telegram_id="111")
        make_user(telegram_id="222")
        await container.reminders.schedule_chain(soon.id, "start")

        progress = await container.sweeper.sweep(
            ReachabilitySweepPayload(mode="near", horizon_hours=48)
        )

        assert progress.total == 1
        assert [call[1] for call in gateway.calls] == ["111"]

    async def test_horizon_excludes_later_reminders(self, container, gateway, make_user):
        user = make_user()
        await container.reminders.schedule_chain(user.id, "start")

        progress = await container.sweeper.sweep(
            ReachabilitySweepPayload(mode="near", horizon_hours=1)
        )

        assert progress.total == 0
        assert progress.done is True
        assert gateway.calls == []


class TestSweepSession:
    async def test_progress_is_stored_in_camel_case(self, container, store, make_user):
        make_user()

        await container.sweeper.sweep(ReachabilitySweepPayload(mode="all"))

        raw = json.loads(await store.get("blockcheck:all:state"))
        assert raw["startedAtIso"]
        assert raw["done"] is True
        progress = await container.sweeper.get_progress("blockcheck:all")
        assert progress.processed == 1
        assert progress.remaining == 0

    async def test_stop_request_halts_one_run(self, container, gateway, make_user):
        make_user()
        make_user()

        await container.sweeper.request_stop("blockcheck:all")
        stopped = await container.sweeper.sweep(ReachabilitySweepPayload(mode="all"))

        assert stopped.stopped is True
        assert stopped.processed == 0
        assert stopped.remaining == 2
        assert gateway.calls == []

        again = await container.sweeper.sweep(ReachabilitySweepPayload(mode="all"))
        assert again.done is True
        assert again.processed == 2

    async def test_custom_session_key(self, container, make_user):
        make_user()

        await container.sweeper.sweep(
            ReachabilitySweepPayload(mode="all", session_key="manual:1")
        )

        assert (await container.sweeper.get_progress("manual:1")).done is True
        assert await container.sweeper.get_progress("blockcheck:all") is None

    async def test_recurring_sweep_runs_through_maintenance_queue(
        self, container, drain, make_user
    ):
        make_user()
        payload = ReachabilitySweepPayload(mode="near")
        await container.queue.register_repeat(
            "blockcheck:daily:near", MAINTENANCE_QUEUE, payload, "0 3 * * *"
        )
        await container.queue.fire_repeat("blockcheck:daily:near")

        await drain(MAINTENANCE_QUEUE)

        progress = await container.sweeper.get_progress("blockcheck:near")
        assert progress.done is True
        assert progress.mode == "near"
