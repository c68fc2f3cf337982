"""
Effect dispatcher tests: notifications per status, settlement checks,
refunds, payment webhooks and the retrying inline publisher.
"""
import pytest

from orderflow.core.config import EffectsBackend, Settings
from orderflow.core.exceptions import EffectDeliveryError, NotFound
from orderflow.models import ClaimRole, OrderStatus, PaymentStatus
from orderflow.services.effects import (
    CeleryEffectPublisher,
    EffectDispatcher,
    InlineEffectPublisher,
    TransitionEvent,
    build_effect_publisher,
)
from orderflow.services.order_store import OrderStore
from orderflow.services.notifications import Audience, MockNotificationService, NotificationType
from orderflow.services.payment import MockPaymentService, PaymentEvent

from conftest import ITEMS


@pytest.fixture
def notifications():
    return MockNotificationService()


@pytest.fixture
def payments():
    return MockPaymentService()


@pytest.fixture
def dispatcher(store, notifications, payments):
    return EffectDispatcher(store, notifications, payments)


async def _complete(manager, order, chef, waiter):
    await manager.claim(order.id, ClaimRole.KITCHEN, chef, 0)
    await manager.advance(order.id, OrderStatus.READY_TO_SERVE, chef, 1)
    await manager.claim(order.id, ClaimRole.SERVICE, waiter, 2)
    return await manager.advance(order.id, OrderStatus.COMPLETED, waiter, 3)


# ─── Notifications ─────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_preparing_notifies_customer(manager, publisher, dispatcher, notifications, order, chef_a):
    await manager.claim(order.id, ClaimRole.KITCHEN, chef_a, 0)

    report = await dispatcher.dispatch(publisher.events[0])

    assert report.notifications_sent == 1
    sent = notifications.delivered[0]
    assert sent.audience == Audience.CUSTOMER
    assert sent.recipient == "customer-1"
    assert sent.type == NotificationType.ORDER_PREPARING
    assert sent.email == "guest@example.com"


@pytest.mark.asyncio
async def test_ready_notifies_service_pool_and_customer(manager, publisher, dispatcher, notifications, order, chef_a):
    await manager.claim(order.id, ClaimRole.KITCHEN, chef_a, 0)
    await manager.advance(order.id, OrderStatus.READY_TO_SERVE, chef_a, 1)

    await dispatcher.dispatch(publisher.events[-1])

    audiences = {n.audience for n in notifications.delivered}
    assert audiences == {Audience.CUSTOMER, Audience.SERVICE_STAFF}
    pool = next(n for n in notifications.delivered if n.audience == Audience.SERVICE_STAFF)
    assert pool.type == NotificationType.ORDER_READY


@pytest.mark.asyncio
async def test_cancel_notifies_released_chef(manager, publisher, dispatcher, notifications, order, chef_a, owner):
    await manager.claim(order.id, ClaimRole.KITCHEN, chef_a, 0)
    await manager.cancel(order.id, owner, 1)

    await dispatcher.dispatch(publisher.events[-1])

    recipients = {(n.audience, n.recipient) for n in notifications.delivered}
    assert (Audience.CUSTOMER, "customer-1") in recipients
    assert (Audience.STAFF_MEMBER, "chef-a") in recipients


@pytest.mark.asyncio
async def test_release_notifies_released_worker(manager, publisher, dispatcher, notifications, order, chef_a, admin):
    await manager.claim(order.id, ClaimRole.KITCHEN, chef_a, 0)
    await manager.release(order.id, ClaimRole.KITCHEN, admin)

    await dispatcher.dispatch(publisher.events[-1])

    released = [n for n in notifications.delivered if n.type == NotificationType.CLAIM_RELEASED]
    assert any(n.recipient == "chef-a" for n in released)
    assert not any(n.audience == Audience.CUSTOMER for n in notifications.delivered)


@pytest.mark.asyncio
async def test_reassign_notifies_old_and_new_holder(manager, publisher, dispatcher, notifications, order, chef_a, admin):
    await manager.claim(order.id, ClaimRole.KITCHEN, chef_a, 0)
    await manager.reassign(order.id, ClaimRole.KITCHEN, "chef-b", admin)

    report = await dispatcher.dispatch(publisher.events[-1])

    assert report.notifications_sent == 2
    by_recipient = {n.recipient: n.type for n in notifications.delivered}
    assert by_recipient == {
        "chef-a": NotificationType.CLAIM_RELEASED,
        "chef-b": NotificationType.CLAIM_ASSIGNED,
    }
    assert all(n.audience == Audience.STAFF_MEMBER for n in notifications.delivered)


@pytest.mark.asyncio
async def test_notification_failure_raises_for_retry(manager, publisher, store, payments, order, chef_a):
    failing = EffectDispatcher(store, MockNotificationService(failure_rate=1.0), payments)
    await manager.claim(order.id, ClaimRole.KITCHEN, chef_a, 0)

    with pytest.raises(EffectDeliveryError) as exc_info:
        await failing.dispatch(publisher.events[0])
    assert exc_info.value.event_id == f"{order.id}:1"
    # The transition itself is untouched
    assert (await store.get(order.id)).version == 1


# ─── Payment sync ──────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_completion_checks_settlement_once(manager, publisher, dispatcher, payments, store, order, chef_a, waiter_c):
    await _complete(manager, order, chef_a, waiter_c)

    for event in publisher.events:
        await dispatcher.dispatch(event)
    assert payments.settlement_checks == ["pi_test_123"]
    assert (await store.get(order.id)).payment_status == PaymentStatus.PAID

    # Redelivery of the same event is harmless
    report = await dispatcher.dispatch(publisher.events[-1])
    assert report.payment_action == "already_settled"
    assert payments.settlement_checks == ["pi_test_123"]


@pytest.mark.asyncio
async def test_completion_with_unsettled_payment(manager, publisher, dispatcher, payments, store, order, chef_a, waiter_c):
    payments.mark_pending("pi_test_123")
    await _complete(manager, order, chef_a, waiter_c)

    report = await dispatcher.dispatch(publisher.events[-1])
    assert report.payment_action == "settlement_checked:pending"
    assert (await store.get(order.id)).payment_status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_completion_without_payment_intent(manager, publisher, dispatcher, payments, store, chef_a, waiter_c):
    cash_order = await store.create(owner_id="customer-1", items=ITEMS)
    await _complete(manager, cash_order, chef_a, waiter_c)

    report = await dispatcher.dispatch(publisher.events[-1])
    assert report.payment_action == "awaiting_payment"
    assert payments.settlement_checks == []


@pytest.mark.asyncio
async def test_cancel_refunds_settled_payment_once(manager, publisher, dispatcher, payments, store, order, owner):
    await store.set_payment_status(order.id, PaymentStatus.PAID)
    await manager.cancel(order.id, owner, 0)

    report = await dispatcher.dispatch(publisher.events[-1])
    assert report.payment_action == "refund_requested"
    assert payments.refunds == ["pi_test_123"]
    assert (await store.get(order.id)).payment_status == PaymentStatus.REFUNDED

    await dispatcher.dispatch(publisher.events[-1])
    assert payments.refunds == ["pi_test_123"]


@pytest.mark.asyncio
async def test_cancel_of_unpaid_order_skips_refund(manager, publisher, dispatcher, payments, order, owner):
    await manager.cancel(order.id, owner, 0)

    report = await dispatcher.dispatch(publisher.events[-1])
    assert report.payment_action == "no_refund_needed"
    assert payments.refunds == []


@pytest.mark.asyncio
async def test_failed_refund_stays_pending_for_retry(manager, publisher, dispatcher, store, owner):
    odd_order = await store.create(owner_id="customer-1", items=ITEMS, payment_intent_id="ch_legacy_1")
    await store.set_payment_status(odd_order.id, PaymentStatus.PAID)
    await manager.cancel(odd_order.id, owner, 0)

    with pytest.raises(EffectDeliveryError):
        await dispatcher.dispatch(publisher.events[-1])
    assert (await store.get(odd_order.id)).payment_status == PaymentStatus.REFUND_PENDING


# ─── Payment events ────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_payment_event_marks_paid(dispatcher, store, order):
    updated = await dispatcher.apply_payment_event(
        PaymentEvent(order.id, PaymentStatus.PAID, "pi_test_123"),
    )
    assert updated
    current = await store.get(order.id)
    assert current.payment_status == PaymentStatus.PAID
    assert current.version == 0


@pytest.mark.asyncio
async def test_out_of_order_payment_event_is_ignored(dispatcher, store, order):
    await store.set_payment_status(order.id, PaymentStatus.REFUNDED)
    updated = await dispatcher.apply_payment_event(PaymentEvent(order.id, PaymentStatus.PAID))
    assert not updated
    assert (await store.get(order.id)).payment_status == PaymentStatus.REFUNDED


@pytest.mark.asyncio
async def test_payment_event_for_unknown_order(dispatcher):
    with pytest.raises(NotFound):
        await dispatcher.apply_payment_event(PaymentEvent("missing", PaymentStatus.PAID))


# ─── Publishers ────────────────────────────────────────────────────────────────
class FlakyDispatcher:
    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    async def dispatch(self, event):
        self.calls += 1
        if self.calls <= self.failures:
            raise EffectDeliveryError(event.event_id, ["smtp timeout"])
        return None


@pytest.mark.asyncio
async def test_inline_publisher_retries_until_success(manager, publisher, order, chef_a):
    await manager.claim(order.id, ClaimRole.KITCHEN, chef_a, 0)
    flaky = FlakyDispatcher(failures=2)
    inline = InlineEffectPublisher(flaky, max_retries=5, base_delay=0.001, max_delay=0.01)

    await inline.publish(publisher.events[0])
    await inline.drain()

    assert flaky.calls == 3


@pytest.mark.asyncio
async def test_inline_publisher_gives_up_after_max_retries(manager, publisher, order, chef_a):
    await manager.claim(order.id, ClaimRole.KITCHEN, chef_a, 0)
    flaky = FlakyDispatcher(failures=100)
    inline = InlineEffectPublisher(flaky, max_retries=2, base_delay=0.001, max_delay=0.01)

    await inline.publish(publisher.events[0])
    await inline.drain()

    assert flaky.calls == 3


@pytest.mark.asyncio
async def test_event_survives_the_broker(manager, publisher, order, chef_a):
    await manager.claim(order.id, ClaimRole.KITCHEN, chef_a, 0)
    event = publisher.events[0]

    restored = TransitionEvent.from_dict(event.to_dict())
    assert restored == event


def test_publisher_follows_settings():
    store = OrderStore(session_factory=None)
    inline = build_effect_publisher(store, Settings(effects_backend=EffectsBackend.INLINE))
    celery = build_effect_publisher(store, Settings(effects_backend=EffectsBackend.CELERY))
    assert isinstance(inline, InlineEffectPublisher)
    assert isinstance(celery, CeleryEffectPublisher)
