"""
External service adapters: factory switching, the Stripe settlement
mapping and the Twilio/SendGrid delivery routing. No network is touched.
"""
from types import SimpleNamespace

import pytest
import stripe

from orderflow.core.config import get_settings
from orderflow.models import PaymentStatus
from orderflow.services.notifications import (
    Audience,
    MockNotificationService,
    Notification,
    NotificationType,
    get_notification_service,
    reset_notification_service,
)
from orderflow.services.notifications.real import RealNotificationService
from orderflow.services.payment import (
    MockPaymentService,
    get_payment_service,
    reset_payment_service,
)
from orderflow.services.payment.stripe import StripePaymentService


def _notification(audience, **contact):
    return Notification(
        recipient="customer-1" if audience == Audience.CUSTOMER else "chef-a",
        audience=audience,
        title="Order Update",
        message="Your order is being prepared.",
        type=NotificationType.ORDER_PREPARING,
        order_id="order-1",
        data={"role": "kitchen"},
        **contact,
    )


class FakeSendGrid:
    def __init__(self, status_code=202):
        self.status_code = status_code
        self.sent = []

    def send(self, message):
        self.sent.append(message)
        return SimpleNamespace(status_code=self.status_code, headers={"X-Message-Id": "sg-1"})


# ─── Factories ─────────────────────────────────────────────────────────────────
def test_development_mode_uses_mocks():
    reset_payment_service()
    reset_notification_service()

    payments = get_payment_service()
    notifications = get_notification_service()
    assert isinstance(payments, MockPaymentService)
    assert isinstance(notifications, MockNotificationService)
    assert get_payment_service() is payments

    reset_payment_service()
    assert get_payment_service() is not payments


# ─── Stripe ────────────────────────────────────────────────────────────────────
@pytest.fixture
def stripe_service(monkeypatch):
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_dummy")
    get_settings.cache_clear()
    yield StripePaymentService()
    get_settings.cache_clear()


def test_stripe_requires_secret_key():
    get_settings.cache_clear()
    with pytest.raises(ValueError):
        StripePaymentService()


@pytest.mark.asyncio
async def test_stripe_settled_intent_maps_to_paid(stripe_service, monkeypatch):
    intent = SimpleNamespace(id="pi_1", status="succeeded", amount_received=2450, amount=2450)
    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", lambda intent_id: intent)

    result = await stripe_service.check_settlement("pi_1")
    assert result.success
    assert result.payment_status == PaymentStatus.PAID
    assert result.amount == 24.5


@pytest.mark.asyncio
async def test_stripe_processing_intent_stays_pending(stripe_service, monkeypatch):
    intent = SimpleNamespace(id="pi_2", status="processing", amount_received=0, amount=1000)
    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", lambda intent_id: intent)

    result = await stripe_service.check_settlement("pi_2")
    assert result.payment_status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_stripe_unknown_intent_is_failed(stripe_service, monkeypatch):
    def _missing(intent_id):
        raise stripe.InvalidRequestError("No such payment_intent", "id")

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", _missing)

    result = await stripe_service.check_settlement("pi_gone")
    assert result.success
    assert result.payment_status == PaymentStatus.FAILED


@pytest.mark.asyncio
async def test_stripe_outage_is_not_a_settlement_answer(stripe_service, monkeypatch):
    def _down(intent_id):
        raise stripe.APIConnectionError("connection reset")

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", _down)

    result = await stripe_service.check_settlement("pi_1")
    assert not result.success
    assert result.payment_status is None


@pytest.mark.asyncio
async def test_stripe_refund_is_full_and_idempotent(stripe_service, monkeypatch):
    calls = []

    def _create(**params):
        calls.append(params)
        return SimpleNamespace(id="re_1", status="succeeded", amount=2450)

    monkeypatch.setattr(stripe.Refund, "create", _create)

    result = await stripe_service.refund_payment("pi_1", reason="requested_by_customer")
    assert result.success
    assert result.amount == 24.5
    assert calls == [{
        "payment_intent": "pi_1",
        "reason": "requested_by_customer",
        "idempotency_key": "refund-pi_1",
    }]


def test_refund_webhook_is_keyed_by_intent(stripe_service):
    event = stripe_service.parse_payment_event({
        "type": "charge.refunded",
        "data": {"object": {"id": "ch_1", "payment_intent": "pi_9", "metadata": {"order_id": "order-9"}}},
    })
    assert event.order_id == "order-9"
    assert event.payment_status == PaymentStatus.REFUNDED
    assert event.payment_intent_id == "pi_9"


def test_webhook_without_order_metadata_is_ignored(stripe_service):
    assert stripe_service.parse_payment_event({
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_1", "metadata": {}}},
    }) is None


# ─── Twilio / SendGrid ─────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_customer_without_contact_details_is_skipped():
    service = RealNotificationService()
    result = await service.deliver(_notification(Audience.CUSTOMER))
    assert result.success


@pytest.mark.asyncio
async def test_unconfigured_sms_channel_fails():
    service = RealNotificationService()
    result = await service.deliver(_notification(Audience.CUSTOMER, phone="555-123-4567"))
    assert not result.success
    assert "Twilio not configured" in result.error_message


@pytest.mark.asyncio
async def test_one_working_channel_is_enough():
    service = RealNotificationService()
    service.sendgrid_client = FakeSendGrid()
    service.sendgrid_from_email = "orders@restaurant.com"

    result = await service.deliver(
        _notification(Audience.CUSTOMER, phone="555-123-4567", email="guest@example.com"),
    )
    assert result.success
    assert result.message_id == "sg-1"
    assert len(service.sendgrid_client.sent) == 1


@pytest.mark.asyncio
async def test_staff_member_goes_to_pool_list():
    service = RealNotificationService()
    service.sendgrid_client = FakeSendGrid()
    service.sendgrid_from_email = "orders@restaurant.com"

    result = await service.deliver(_notification(Audience.STAFF_MEMBER))
    assert result.success
    assert service._staff_address(_notification(Audience.STAFF_MEMBER)) == "kitchen@restaurant.com"
    assert service._staff_address(_notification(Audience.SERVICE_STAFF)) == "floor@restaurant.com"
