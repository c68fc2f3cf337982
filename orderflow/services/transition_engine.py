"""
Transition Engine

Validates and applies order status transitions:

    1. Load the order (NotFound)
    2. Holder re-asserting its own claim -> return the order unchanged
    3. expected_version != order.version -> StaleVersion
    4. Guards: terminal status first, then the state machine and the
       claim windows
    5. Compare-and-write through the OrderStore (status, claims, version + 1,
       history row in one transaction)
    6. Publish a TransitionEvent for the effect dispatcher

Nothing is written on any error path, and a failure to publish never
undoes a committed transition.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from typing import Any, Optional

from orderflow.core.exceptions import InvalidTransition, StaleVersion
from orderflow.models import (
    Actor,
    ClaimRole,
    Order,
    OrderStatus,
    claim_columns,
    Claim,
)
from orderflow.services.effects import EffectPublisher, TransitionEvent
from orderflow.services.order_store import OrderStore, utcnow
from orderflow.services.state_machine import (
    ClaimWindow,
    TransitionKind,
    TransitionRule,
    find_rule,
    rejection_reason,
    targets_from,
    window_for_held_status,
)

logger = logging.getLogger(__name__)

ATTRIBUTION_COLUMNS = {
    ClaimRole.KITCHEN: "prepared_by",
    ClaimRole.SERVICE: "served_by",
}


class TransitionEngine:
    """Applies validated transitions to orders held in an ``OrderStore``."""

    def __init__(self, store: OrderStore, publisher: EffectPublisher):
        self.store = store
        self.publisher = publisher

    # =========================================================================
    # READS
    # =========================================================================

    async def get_order(self, order_id: str) -> Order:
        return await self.store.get(order_id)

    async def list_orders(self, **filters) -> tuple[int, list[Order]]:
        return await self.store.list_orders(**filters)

    @staticmethod
    def allowed_targets(order: Order, actor: Actor) -> list[OrderStatus]:
        """
        Statuses ``actor`` could move ``order`` to right now, for dashboards.

        Purely advisory: every request is validated again on write.
        """
        allowed = []
        for to_status in targets_from(order.status):
            rule = find_rule(order.status, to_status)
            window = rule.window
            if rule.kind == TransitionKind.CLAIM:
                if actor.role == window.role.actor_role and order.claim_for(window.role) is None:
                    allowed.append(to_status)
            elif rule.kind == TransitionKind.HOLDER_ADVANCE:
                claim = order.claim_for(window.role)
                if claim is not None and claim.holder_id == actor.actor_id:
                    allowed.append(to_status)
            elif rule.kind == TransitionKind.CANCEL:
                if actor.is_admin or order.owner_id == actor.actor_id:
                    allowed.append(to_status)
        return allowed

    # =========================================================================
    # WRITES
    # =========================================================================

    async def apply(
        self,
        order_id: str,
        expected_version: int,
        to_status: OrderStatus,
        actor: Actor,
    ) -> Order:
        """
        Move an order to ``to_status`` on behalf of ``actor``.

        Targeting a claim window's held status (PREPARING, SERVED) is a claim
        request. Release edges are not reachable here; use
        ``ClaimManager.release``.

        Raises:
            NotFound: Unknown order id
            StaleVersion: ``expected_version`` is not the current version
            ClaimDenied: Another worker holds the role's claim
            InvalidTransition: The state machine or an actor guard refuses
        """
        return await self._apply(order_id, expected_version, to_status, actor)

    async def advance(
        self,
        order_id: str,
        to_status: OrderStatus,
        actor: Actor,
        expected_version: int,
    ) -> Order:
        """Argument order used by the HTTP layer; claim targets take the claim path."""
        return await self._apply(order_id, expected_version, to_status, actor)

    async def cancel(
        self,
        order_id: str,
        actor: Actor,
        expected_version: int,
        reason: Optional[str] = None,
    ) -> Order:
        """Cancel a PENDING or PREPARING order (owner or administrator)."""
        return await self._apply(
            order_id,
            expected_version,
            OrderStatus.CANCELLED,
            actor,
            note=reason or "Cancelled",
        )

    async def _apply(
        self,
        order_id: str,
        expected_version: Optional[int],
        to_status: OrderStatus,
        actor: Actor,
        note: Optional[str] = None,
        allow_release: bool = False,
    ) -> Order:
        order = await self.store.get(order_id)

        window = window_for_held_status(to_status)
        if window is not None and window.is_reasserted_by(order, actor):
            logger.info(f"Order #{order.id}: {actor.actor_id} re-asserted {window.role.value} claim")
            return order

        if expected_version is None:
            expected_version = order.version
        if expected_version != order.version:
            raise StaleVersion(order.id, expected_version, order.version)

        self._check_not_terminal(order)

        now = utcnow()
        released: dict[str, str] = {}

        if window is not None:
            window.check_acquire(order, actor)
            rule = find_rule(order.status, to_status)
            changes = self._claim_changes(window, actor, now)
        else:
            rule = find_rule(order.status, to_status)
            if rule is None:
                reason = rejection_reason(order.status, to_status)
                raise InvalidTransition(
                    order.id,
                    reason,
                    f"Order {order.id} cannot move from {order.status.value} "
                    f"to {to_status.value}",
                )
            changes = self._guarded_changes(order, rule, actor, allow_release, released)

        try:
            return await self._commit(
                order, expected_version, to_status, changes, actor, rule.kind, now,
                note=note, released=released,
            )
        except StaleVersion:
            # Lost the race; a retried claim by the same holder is still a success
            current = await self.store.get(order.id)
            if window is not None and window.is_reasserted_by(current, actor):
                return current
            raise

    async def _commit(
        self,
        order: Order,
        expected_version: int,
        to_status: OrderStatus,
        changes: dict[str, Any],
        actor: Actor,
        kind: TransitionKind,
        now,
        note: Optional[str] = None,
        released: Optional[dict[str, str]] = None,
        assigned: Optional[dict[str, str]] = None,
    ) -> Order:
        """Compare-and-write one validated change, then publish its event."""
        changes["status"] = to_status
        changes["updated_at"] = now

        history = {
            "from_status": order.status,
            "to_status": to_status,
            "actor_id": actor.actor_id,
            "actor_role": actor.role,
            "note": note,
            "timestamp": now,
        }

        committed = await self.store.commit_transition(
            order.id, expected_version, changes, history,
        )

        logger.info(
            f"Order #{committed.id}: {order.status.value} -> {to_status.value} "
            f"by {actor.role.value}:{actor.actor_id} (v{committed.version})"
        )

        await self._publish(
            committed, order.status, kind, actor, released or {}, note, assigned or {},
        )
        return committed

    # =========================================================================
    # GUARDS
    # =========================================================================

    @staticmethod
    def _check_not_terminal(order: Order) -> None:
        if order.status.is_terminal:
            raise InvalidTransition(
                order.id,
                "terminal",
                f"Order {order.id} is {order.status.value} and can no longer change",
            )

    @staticmethod
    def _claim_changes(window: ClaimWindow, actor: Actor, now) -> dict[str, Any]:
        changes = claim_columns(window.role, Claim(holder_id=actor.actor_id, claimed_at=now))
        changes[ATTRIBUTION_COLUMNS[window.role]] = actor.actor_id
        return changes

    @staticmethod
    def _guarded_changes(
        order: Order,
        rule: TransitionRule,
        actor: Actor,
        allow_release: bool,
        released: dict[str, str],
    ) -> dict[str, Any]:
        """Check the actor guard of a non-claim rule and build its column changes."""
        changes: dict[str, Any] = {}

        if rule.kind == TransitionKind.HOLDER_ADVANCE:
            rule.window.check_holder(order, actor)
            released[rule.role.value] = actor.actor_id
            changes.update(claim_columns(rule.role, None))

        elif rule.kind == TransitionKind.CANCEL:
            if not actor.is_admin and order.owner_id != actor.actor_id:
                raise InvalidTransition(
                    order.id,
                    "not_owner",
                    f"Only the customer who placed order {order.id} or an "
                    f"administrator can cancel it",
                )
            for role in ClaimRole:
                claim = order.claim_for(role)
                if claim is not None:
                    released[role.value] = claim.holder_id
                    changes.update(claim_columns(role, None))

        elif rule.kind == TransitionKind.RELEASE:
            if not allow_release or not actor.is_admin:
                raise InvalidTransition(
                    order.id,
                    "wrong_role",
                    f"Only an administrator can release the {rule.role.value} "
                    f"claim on order {order.id}",
                )
            claim = order.claim_for(rule.role)
            if claim is not None:
                released[rule.role.value] = claim.holder_id
            changes.update(claim_columns(rule.role, None))
            changes[ATTRIBUTION_COLUMNS[rule.role]] = None

        else:
            # Claim edges are routed through the claim windows above
            raise InvalidTransition(
                order.id,
                "wrong_status",
                f"Order {order.id} cannot be claimed from {order.status.value}",
            )

        return changes

    # =========================================================================
    # EFFECTS
    # =========================================================================

    async def _publish(
        self,
        order: Order,
        from_status: OrderStatus,
        kind: TransitionKind,
        actor: Actor,
        released: dict[str, str],
        note: Optional[str],
        assigned: dict[str, str],
    ) -> None:
        event = TransitionEvent(
            event_id=f"{order.id}:{order.version}",
            order_id=order.id,
            kind=kind.value,
            from_status=from_status,
            to_status=order.status,
            version=order.version,
            actor_id=actor.actor_id,
            actor_role=actor.role,
            occurred_at=order.updated_at or utcnow(),
            owner_id=order.owner_id,
            customer_email=order.customer_email,
            customer_phone=order.customer_phone,
            released_claims=released,
            assigned_claims=assigned,
            note=note,
        )
        try:
            await self.publisher.publish(event)
        except Exception:
            # The transition is committed; effects will be missing for this event
            logger.exception(f"Failed to publish effects for {event.event_id}")
