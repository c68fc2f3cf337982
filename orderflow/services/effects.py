"""
Effect Dispatcher

Side effects of committed order transitions: customer/staff notifications
and payment-status synchronization. Effects run strictly after the
transition has committed and can never undo it:

    - order-state commits happen exactly once (transition engine)
    - effects are at-least-once: a failed dispatch raises
      EffectDeliveryError and the transport retries it with backoff

Publishers decide where dispatch runs:
    - CeleryEffectPublisher: Celery task on the Redis broker (default)
    - InlineEffectPublisher: background asyncio task in this process
    - RecordingEffectPublisher: keeps events in memory (tests)

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from orderflow.core.config import EffectsBackend, Settings, get_settings
from orderflow.core.exceptions import EffectDeliveryError
from orderflow.models import ActorRole, OrderStatus, PaymentStatus
from orderflow.services.notifications import (
    Audience,
    BaseNotificationService,
    Notification,
    NotificationType,
)
from orderflow.services.order_store import OrderStore
from orderflow.services.payment import BasePaymentService, PaymentEvent

logger = logging.getLogger(__name__)


# =============================================================================
# EVENTS
# =============================================================================

@dataclass
class TransitionEvent:
    """
    A committed transition, as handed to the effect dispatcher.

    ``event_id`` is ``<order_id>:<version>``; versions are unique per
    order, so the id identifies exactly one commit.
    """
    event_id: str
    order_id: str
    kind: str
    from_status: OrderStatus
    to_status: OrderStatus
    version: int
    actor_id: str
    actor_role: ActorRole
    occurred_at: datetime
    owner_id: str
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    released_claims: dict[str, str] = field(default_factory=dict)
    assigned_claims: dict[str, str] = field(default_factory=dict)
    note: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe form for the Celery broker."""
        return {
            "event_id": self.event_id,
            "order_id": self.order_id,
            "kind": self.kind,
            "from_status": self.from_status.value,
            "to_status": self.to_status.value,
            "version": self.version,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role.value,
            "occurred_at": self.occurred_at.isoformat(),
            "owner_id": self.owner_id,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "released_claims": dict(self.released_claims),
            "assigned_claims": dict(self.assigned_claims),
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransitionEvent":
        return cls(
            event_id=data["event_id"],
            order_id=data["order_id"],
            kind=data["kind"],
            from_status=OrderStatus(data["from_status"]),
            to_status=OrderStatus(data["to_status"]),
            version=data["version"],
            actor_id=data["actor_id"],
            actor_role=ActorRole(data["actor_role"]),
            occurred_at=datetime.fromisoformat(data["occurred_at"]),
            owner_id=data["owner_id"],
            customer_email=data.get("customer_email"),
            customer_phone=data.get("customer_phone"),
            released_claims=dict(data.get("released_claims") or {}),
            assigned_claims=dict(data.get("assigned_claims") or {}),
            note=data.get("note"),
        )


@dataclass
class DispatchReport:
    """What a successful dispatch did."""
    event_id: str
    notifications_sent: int = 0
    payment_action: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "notifications_sent": self.notifications_sent,
            "payment_action": self.payment_action,
        }


# =============================================================================
# DISPATCHER
# =============================================================================

CUSTOMER_MESSAGES = {
    OrderStatus.PREPARING: (
        NotificationType.ORDER_PREPARING,
        "Your order is being prepared",
        "Good news! The kitchen has started preparing order #{short_id}.",
    ),
    OrderStatus.READY_TO_SERVE: (
        NotificationType.ORDER_READY,
        "Your order is ready",
        "Order #{short_id} is ready and will be brought to you shortly.",
    ),
    OrderStatus.SERVED: (
        NotificationType.ORDER_SERVED,
        "Enjoy your meal",
        "Order #{short_id} has been served. Enjoy!",
    ),
    OrderStatus.COMPLETED: (
        NotificationType.ORDER_COMPLETED,
        "Thank you for dining with us",
        "Order #{short_id} is complete. We hope to see you again soon.",
    ),
    OrderStatus.CANCELLED: (
        NotificationType.ORDER_CANCELLED,
        "Your order was cancelled",
        "Order #{short_id} has been cancelled.",
    ),
}


class EffectDispatcher:
    """
    Performs the side effects of one committed transition.

    Payment synchronization is idempotent on the stored payment status,
    so re-running a dispatch after a partial failure is safe. Notifications
    may be delivered more than once when a retry follows a partial failure.
    """

    def __init__(
        self,
        store: OrderStore,
        notifications: BaseNotificationService,
        payments: BasePaymentService,
    ):
        self.store = store
        self.notifications = notifications
        self.payments = payments

    async def dispatch(self, event: TransitionEvent) -> DispatchReport:
        """
        Run every effect for ``event``.

        Raises:
            EffectDeliveryError: At least one effect failed; retry later
        """
        report = DispatchReport(event_id=event.event_id)
        failures = []

        for notification in self.build_notifications(event):
            result = await self.notifications.deliver(notification)
            if result.success:
                report.notifications_sent += 1
            else:
                failures.append(
                    f"{notification.type.value} to {notification.recipient}: "
                    f"{result.error_message}"
                )

        try:
            report.payment_action = await self._sync_payment(event)
        except EffectDeliveryError as e:
            failures.extend(e.failures)

        if failures:
            logger.warning(f"Effects for {event.event_id} incomplete: {failures}")
            raise EffectDeliveryError(event.event_id, failures)

        logger.info(
            f"Effects for {event.event_id} ({event.to_status.value}) done: "
            f"{report.notifications_sent} notifications, payment={report.payment_action}"
        )
        return report

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    def build_notifications(self, event: TransitionEvent) -> list[Notification]:
        short_id = event.order_id[:8]
        data = {
            "status": event.to_status.value,
            "version": event.version,
            "actor_id": event.actor_id,
        }
        notifications = []

        if event.kind == "reassign":
            for role, holder_id in event.released_claims.items():
                notifications.append(Notification(
                    recipient=holder_id,
                    audience=Audience.STAFF_MEMBER,
                    title="Order reassigned",
                    message=f"Order #{short_id} was reassigned to another worker by an administrator.",
                    type=NotificationType.CLAIM_RELEASED,
                    order_id=event.order_id,
                    data={**data, "role": role},
                ))
            for role, holder_id in event.assigned_claims.items():
                notifications.append(Notification(
                    recipient=holder_id,
                    audience=Audience.STAFF_MEMBER,
                    title="Order assigned to you",
                    message=f"Order #{short_id} has been assigned to you by an administrator.",
                    type=NotificationType.CLAIM_ASSIGNED,
                    order_id=event.order_id,
                    data={**data, "role": role},
                ))
            return notifications

        if event.kind == "release":
            for role, holder_id in event.released_claims.items():
                notifications.append(Notification(
                    recipient=holder_id,
                    audience=Audience.STAFF_MEMBER,
                    title="Order released by admin",
                    message=f"Order #{short_id} was released from you by an administrator.",
                    type=NotificationType.CLAIM_RELEASED,
                    order_id=event.order_id,
                    data={**data, "role": role},
                ))
            if event.to_status == OrderStatus.PENDING:
                notifications.append(self._pool_notification(
                    event, Audience.KITCHEN_STAFF, "Order available",
                    f"Order #{short_id} is waiting for a chef.", NotificationType.CLAIM_RELEASED, data,
                ))
            elif event.to_status == OrderStatus.READY_TO_SERVE:
                notifications.append(self._pool_notification(
                    event, Audience.SERVICE_STAFF, "Order Ready to Serve",
                    f"Order #{short_id} is ready to serve. Please pick it up.",
                    NotificationType.ORDER_READY, data,
                ))
            return notifications

        template = CUSTOMER_MESSAGES.get(event.to_status)
        if template is not None:
            ntype, title, message = template
            notifications.append(Notification(
                recipient=event.owner_id,
                audience=Audience.CUSTOMER,
                title=title,
                message=message.format(short_id=short_id),
                type=ntype,
                order_id=event.order_id,
                data=data,
                email=event.customer_email,
                phone=event.customer_phone,
            ))

        if event.to_status == OrderStatus.READY_TO_SERVE:
            # No service claim exists yet: tell the whole pool
            notifications.append(self._pool_notification(
                event, Audience.SERVICE_STAFF, "Order Ready to Serve",
                f"Order #{short_id} is ready to serve. Please pick it up.",
                NotificationType.ORDER_READY, data,
            ))

        if event.to_status == OrderStatus.CANCELLED:
            for role, holder_id in event.released_claims.items():
                notifications.append(Notification(
                    recipient=holder_id,
                    audience=Audience.STAFF_MEMBER,
                    title="Order cancelled",
                    message=f"Order #{short_id} was cancelled. Stop working on it.",
                    type=NotificationType.ORDER_CANCELLED,
                    order_id=event.order_id,
                    data={**data, "role": role},
                ))

        return notifications

    @staticmethod
    def _pool_notification(
        event: TransitionEvent,
        audience: Audience,
        title: str,
        message: str,
        ntype: NotificationType,
        data: dict[str, Any],
    ) -> Notification:
        return Notification(
            recipient=audience.value,
            audience=audience,
            title=title,
            message=message,
            type=ntype,
            order_id=event.order_id,
            data=data,
        )

    # -------------------------------------------------------------------------
    # Payment synchronization
    # -------------------------------------------------------------------------

    async def _sync_payment(self, event: TransitionEvent) -> Optional[str]:
        if event.to_status == OrderStatus.COMPLETED:
            return await self._check_settlement(event)
        if event.to_status == OrderStatus.CANCELLED:
            return await self._refund_if_settled(event)
        return None

    async def _check_settlement(self, event: TransitionEvent) -> str:
        order = await self.store.get(event.order_id)

        if order.payment_status == PaymentStatus.PAID:
            return "already_settled"
        if not order.payment_intent_id:
            # Cash or pay-at-counter: settlement arrives as a payment event
            logger.info(f"Order #{order.id} completed without payment intent, awaiting payment event")
            return "awaiting_payment"

        result = await self.payments.check_settlement(order.payment_intent_id)
        if not result.success:
            raise EffectDeliveryError(
                event.event_id,
                [f"settlement check for {order.payment_intent_id}: {result.error_message}"],
            )

        if result.payment_status != order.payment_status:
            await self.store.set_payment_status(
                order.id,
                result.payment_status,
                only_from=(PaymentStatus.PENDING, PaymentStatus.FAILED),
            )
        return f"settlement_checked:{result.payment_status.value}"

    async def _refund_if_settled(self, event: TransitionEvent) -> str:
        order = await self.store.get(event.order_id)

        if order.payment_status not in (PaymentStatus.PAID, PaymentStatus.REFUND_PENDING):
            return "no_refund_needed"
        if not order.payment_intent_id:
            logger.warning(f"Order #{order.id} is paid but has no payment intent, refund manually")
            return "manual_refund_required"

        await self.store.set_payment_status(
            order.id,
            PaymentStatus.REFUND_PENDING,
            only_from=(PaymentStatus.PAID,),
        )

        result = await self.payments.refund_payment(
            order.payment_intent_id,
            reason="requested_by_customer",
        )
        if not result.success:
            raise EffectDeliveryError(
                event.event_id,
                [f"refund for {order.payment_intent_id}: {result.error_message}"],
            )

        await self.store.set_payment_status(
            order.id,
            PaymentStatus.REFUNDED,
            only_from=(PaymentStatus.REFUND_PENDING,),
        )
        return "refund_requested"

    # -------------------------------------------------------------------------
    # External payment events
    # -------------------------------------------------------------------------

    PAYMENT_EVENT_SOURCES = {
        PaymentStatus.PAID: (PaymentStatus.PENDING, PaymentStatus.FAILED),
        PaymentStatus.FAILED: (PaymentStatus.PENDING,),
        PaymentStatus.REFUNDED: (PaymentStatus.PAID, PaymentStatus.REFUND_PENDING),
        PaymentStatus.PENDING: (PaymentStatus.FAILED,),
    }

    async def apply_payment_event(self, payment_event: PaymentEvent) -> bool:
        """
        Mirror a provider-side payment change onto the order.

        Out-of-order events (e.g. "succeeded" after "refunded") are ignored.

        Returns:
            True if the stored payment status changed

        Raises:
            NotFound: Unknown order id
        """
        await self.store.get(payment_event.order_id)

        allowed_from = self.PAYMENT_EVENT_SOURCES.get(payment_event.payment_status, ())
        updated = await self.store.set_payment_status(
            payment_event.order_id,
            payment_event.payment_status,
            payment_intent_id=payment_event.payment_intent_id,
            only_from=allowed_from,
        )
        if not updated:
            logger.info(
                f"Order #{payment_event.order_id}: ignored payment event "
                f"{payment_event.payment_status.value}"
            )
        return updated


# =============================================================================
# PUBLISHERS
# =============================================================================

class EffectPublisher(ABC):
    """Hands committed transition events to wherever effects run."""

    @abstractmethod
    async def publish(self, event: TransitionEvent) -> None:
        pass


class RecordingEffectPublisher(EffectPublisher):
    """Keeps published events in memory."""

    def __init__(self):
        self.events: list[TransitionEvent] = []

    async def publish(self, event: TransitionEvent) -> None:
        self.events.append(event)


class CeleryEffectPublisher(EffectPublisher):
    """Queues ``dispatch_transition_effects`` on the Celery broker."""

    async def publish(self, event: TransitionEvent) -> None:
        from orderflow.tasks import dispatch_transition_effects

        result = dispatch_transition_effects.delay(event.to_dict())
        logger.debug(f"Queued effects for {event.event_id} (task {result.id})")


class InlineEffectPublisher(EffectPublisher):
    """
    Runs the dispatcher in a background asyncio task of this process,
    retrying failures with exponential backoff and jitter.
    """

    def __init__(
        self,
        dispatcher: EffectDispatcher,
        max_retries: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 300.0,
    ):
        self.dispatcher = dispatcher
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._tasks: set[asyncio.Task] = set()

    async def publish(self, event: TransitionEvent) -> None:
        task = asyncio.create_task(self._run(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, event: TransitionEvent) -> Optional[DispatchReport]:
        for attempt in range(1, self.max_retries + 2):
            try:
                return await self.dispatcher.dispatch(event)
            except Exception as e:
                if attempt > self.max_retries:
                    logger.error(
                        f"Giving up on effects for {event.event_id} "
                        f"after {attempt} attempts: {e}"
                    )
                    return None
                # Exponential backoff: base * 2^(attempt-1) + jitter
                delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
                delay += random.uniform(0, self.base_delay)
                logger.warning(
                    f"Effects for {event.event_id} failed on attempt "
                    f"{attempt}/{self.max_retries + 1}, retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)
        return None

    async def drain(self) -> None:
        """Wait for every in-flight dispatch (shutdown, tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks))


def build_effect_dispatcher(store: OrderStore) -> EffectDispatcher:
    """Dispatcher wired to the configured notification/payment services."""
    from orderflow.services.notifications import get_notification_service
    from orderflow.services.payment import get_payment_service

    return EffectDispatcher(
        store=store,
        notifications=get_notification_service(),
        payments=get_payment_service(),
    )


def build_effect_publisher(store: OrderStore, settings: Optional[Settings] = None) -> EffectPublisher:
    settings = settings or get_settings()

    if settings.effects_backend == EffectsBackend.INLINE:
        logger.info("Effects: dispatching inline with in-process retries")
        return InlineEffectPublisher(
            build_effect_dispatcher(store),
            max_retries=settings.effect_max_retries,
            base_delay=settings.effect_retry_base_delay,
            max_delay=float(settings.effect_retry_backoff_max),
        )

    logger.info("Effects: dispatching through Celery")
    return CeleryEffectPublisher()
