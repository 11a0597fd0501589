from datetime import timedelta
from decimal import Decimal

import pytest

from funnelbot.config.queues import OFFER_EXPIRE_QUEUE
from funnelbot.container import build_container
from funnelbot.db.models import OfferStatus, StepVisitSource
from funnelbot.services.task_queue import OfferExpirationPayload, TaskState
from funnelbot.utils.clock import TimeScale
from funnelbot.utils.errors import ValidationError

pytestmark = pytest.mark.integration


class TestEnsureInstanceStarted:
    async def test_creates_active_instance(self, container, clock, make_user):
        user = make_user()

        instance = await container.offers.ensure_instance_started(user.id, "discount_24h")

        assert instance.status == OfferStatus.ACTIVE
        assert instance.expires_at == clock.now() + timedelta(hours=24)
        assert instance.initial_price == Decimal("4990")
        assert instance.currency == "RUB"

    async def test_returns_existing_instance(self, container, clock, make_user):
        user = make_user()
        first = await container.offers.ensure_instance_started(user.id, "discount_24h")

        clock.advance(timedelta(hours=3))
        second = await container.offers.ensure_instance_started(user.id, "discount_24h")

        assert second.id == first.id
        assert second.expires_at == first.expires_at

    async def test_expired_offer_is_never_restarted(
        self, container, clock, make_user
    ):
        user = make_user()
        first = await container.offers.ensure_instance_started(user.id, "discount_24h")
        clock.advance(timedelta(hours=25))
        await container.offers.handle_expiration(
            OfferExpirationPayload(offer_instance_id=first.id)
        )

        again = await container.offers.ensure_instance_started(user.id, "discount_24h")

        assert again.id == first.id
        assert again.status == OfferStatus.EXPIRED

    async def test_unknown_offer_key(self, container, make_user):
        user = make_user()
        with pytest.raises(ValidationError) as exc_info:
            await container.offers.ensure_instance_started(user.id, "black_friday")
        assert exc_info.value.error_code == "UNKNOWN_OFFER"

    async def test_offer_without_lifetime_never_expires(self, container, make_user):
        user = make_user()
        instance = await container.offers.ensure_instance_started(user.id, "full_price")

        assert instance.expires_at is None
        assert await container.offers.arm_expiration(instance, user.telegram_id, 1) is None


class TestArmExpiration:
    async def test_step_with_offer_arms_expiration(
        self, container, transport, gateway, make_user
    ):
        user = make_user()

        ref = await container.steps.deliver(
            user, "discount_offer", "default", StepVisitSource.USER
        )

        [message] = transport.for_queue(OFFER_EXPIRE_QUEUE)
        assert message.countdown == 24 * 3600

        instance = await container.offers.latest_instance(user.id, "discount_24h")
        assert instance.last_message_chat_id == user.telegram_id
        assert instance.last_message_id == ref.message_id
        assert instance.last_expiration_task_id == message.task_id

    async def test_showing_offer_again_replaces_expiration_task(
        self, container, transport, clock, make_user
    ):
        user = make_user()
        await container.steps.deliver(user, "discount_offer", "default", StepVisitSource.USER)
        first_task = transport.for_queue(OFFER_EXPIRE_QUEUE)[0].task_id

        clock.advance(timedelta(hours=1))
        await container.steps.deliver(user, "discount_offer", "default", StepVisitSource.ADMIN)

        messages = transport.for_queue(OFFER_EXPIRE_QUEUE)
        assert len(messages) == 2
        assert messages[1].countdown == 23 * 3600
        assert (await container.queue.get(first_task)).state == TaskState.CANCELLED
        assert first_task in transport.revoked

        pending = await container.queue.pending(OFFER_EXPIRE_QUEUE)
        assert [task.id for task in pending] == [messages[1].task_id]

    async def test_time_scale_shortens_stored_deadline(
        self, db_session, store, gateway, transport, clock, pacer, make_user
    ):
        scaled = build_container(
            db_session,
            store=store,
            gateway=gateway,
            transport=transport,
            clock=clock,
            pacer=pacer,
            sweep_pacer=pacer,
            time_scale=TimeScale(factor=60),
        )
        user = make_user()

        await scaled.steps.deliver(user, "discount_offer", "default", StepVisitSource.USER)

        instance = await scaled.offers.latest_instance(user.id, "discount_24h")
        assert instance.expires_at == clock.now() + timedelta(minutes=24)
        [message] = transport.for_queue(OFFER_EXPIRE_QUEUE)
        assert message.countdown == 24 * 60

    async def test_past_deadline_arms_nothing(self, container, clock, make_user):
        user = make_user()
        instance = await container.offers.ensure_instance_started(user.id, "discount_24h")

        clock.advance(timedelta(hours=24))
        assert await container.offers.arm_expiration(instance, user.telegram_id, 5) is None


class TestHandleExpiration:
    async def test_expires_and_deletes_offer_message(
        self, container, gateway, clock, drain, make_user
    ):
        user = make_user()
        ref = await container.steps.deliver(
            user, "discount_offer", "default", StepVisitSource.USER
        )

        clock.advance(timedelta(hours=24))
        await drain(OFFER_EXPIRE_QUEUE)

        assert ("delete_message", user.telegram_id, ref.message_id) in gateway.calls
        instance = await container.offers.latest_instance(user.id, "discount_24h")
        assert instance.status == OfferStatus.EXPIRED
        assert instance.finished_at == clock.now()
        assert instance.last_expiration_task_id is None

    async def test_paid_offer_is_left_alone(
        self, container, db_session, gateway, clock, make_user
    ):
        user = make_user()
        instance = await container.offers.ensure_instance_started(user.id, "discount_24h")
        container.offers.offers.mark_active_paid(user.id, clock.now())
        db_session.commit()

        clock.advance(timedelta(hours=25))
        await container.offers.handle_expiration(
            OfferExpirationPayload(offer_instance_id=instance.id)
        )

        assert gateway.calls == []
        instance = await container.offers.latest_instance(user.id, "discount_24h")
        assert instance.status == OfferStatus.PAID

    async def test_early_expiration_task_is_a_no_op(
        self, container, gateway, clock, make_user
    ):
        user = make_user()
        instance = await container.offers.ensure_instance_started(user.id, "discount_24h")

        clock.advance(timedelta(hours=1))
        await container.offers.handle_expiration(
            OfferExpirationPayload(offer_instance_id=instance.id)
        )

        instance = await container.offers.latest_instance(user.id, "discount_24h")
        assert instance.status == OfferStatus.ACTIVE
        assert gateway.calls == []

    async def test_missing_instance_is_a_no_op(self, container):
        await container.offers.handle_expiration(
            OfferExpirationPayload(offer_instance_id="00000000-0000-0000-0000-000000000000")
        )

    async def test_duplicate_expiration_retries_message_cleanup(
        self, container, gateway, clock, make_user
    ):
        user = make_user()
        await container.steps.deliver(user, "discount_offer", "default", StepVisitSource.USER)
        instance = await container.offers.latest_instance(user.id, "discount_24h")
        payload = OfferExpirationPayload(offer_instance_id=instance.id)

        clock.advance(timedelta(hours=24))
        await container.offers.handle_expiration(payload)
        expired_at = clock.now()
        clock.advance(timedelta(minutes=5))
        await container.offers.handle_expiration(payload)

        # The message is deleted again best-effort, the status is not touched
        assert len(gateway.sent_to(user.telegram_id, "delete_message")) == 2
        instance = await container.offers.latest_instance(user.id, "discount_24h")
        assert instance.status == OfferStatus.EXPIRED
        assert instance.finished_at == expired_at
        assert instance.last_expiration_task_id is None

    async def test_canceled_offer_only_clears_task_id(
        self, container, db_session, gateway, clock, make_user
    ):
        user = make_user()
        await container.steps.deliver(user, "discount_offer", "default", StepVisitSource.USER)
        instance = await container.offers.latest_instance(user.id, "discount_24h")
        assert instance.last_expiration_task_id is not None
        instance.status = OfferStatus.CANCELED
        db_session.commit()
        gateway.calls.clear()

        clock.advance(timedelta(hours=25))
        await container.offers.handle_expiration(
            OfferExpirationPayload(offer_instance_id=instance.id)
        )

        assert gateway.calls == []
        instance = await container.offers.latest_instance(user.id, "discount_24h")
        assert instance.status == OfferStatus.CANCELED
        assert instance.last_expiration_task_id is None
