"""
Claim Manager

Kitchen and service claims on top of the transition engine. Claiming is
the status transition itself (PENDING -> PREPARING for the kitchen,
READY_TO_SERVE -> SERVED for service), so an order can never be claimed
without being in the claimed-for status.

Race outcome for two workers claiming the same order and role: the first
committed write wins. The loser gets ClaimDenied when it presents the
current version, StaleVersion when its snapshot is older.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from typing import Optional

from orderflow.core.exceptions import InvalidTransition, StaleVersion
from orderflow.models import Actor, ClaimRole, Order
from orderflow.services.order_store import utcnow
from orderflow.services.state_machine import CLAIM_WINDOWS, ClaimWindow, TransitionKind
from orderflow.services.transition_engine import TransitionEngine

logger = logging.getLogger(__name__)


class ClaimManager(TransitionEngine):
    """Transition engine with the claim-lock entry points."""

    async def claim(
        self,
        order_id: str,
        role: ClaimRole,
        actor: Actor,
        expected_version: int,
    ) -> Order:
        """
        Take the ``role`` claim on an order and move it into that role's
        working status.

        Repeating a claim you already hold succeeds and returns the order
        unchanged, whatever ``expected_version`` says.

        Raises:
            NotFound: Unknown order id
            StaleVersion: ``expected_version`` is outdated
            ClaimDenied: Another worker holds the claim
            InvalidTransition: Wrong role, or the window for ``role`` is closed
        """
        window = CLAIM_WINDOWS[role]
        return await self._apply(order_id, expected_version, window.held_status, actor)

    async def release(
        self,
        order_id: str,
        role: ClaimRole,
        actor: Actor,
        expected_version: Optional[int] = None,
    ) -> Order:
        """
        Administrative override: drop the ``role`` claim and reopen the
        order for that role's pool.

        PREPARING goes back to PENDING, SERVED back to READY_TO_SERVE.
        Without ``expected_version`` the current version is used; the write
        is still compare-and-set, so a racing commit surfaces as StaleVersion.

        Raises:
            StaleVersion: ``expected_version`` is outdated
            InvalidTransition: Actor is not an administrator, or no claim
                for ``role`` is currently held
        """
        if not actor.is_admin:
            raise InvalidTransition(
                order_id,
                "wrong_role",
                f"Only an administrator can release the {role.value} claim on order {order_id}",
            )

        window = CLAIM_WINDOWS[role]
        order = await self._load_held(order_id, window, expected_version, "release")

        holder = order.claim_for(role).holder_id
        released = await self._apply(
            order_id,
            expected_version,
            window.open_status,
            actor,
            note=f"Released {role.value} claim held by {holder}",
            allow_release=True,
        )
        logger.warning(f"Order #{order_id}: admin {actor.actor_id} released {role.value} claim of {holder}")
        return released

    async def reassign(
        self,
        order_id: str,
        role: ClaimRole,
        new_holder_id: str,
        actor: Actor,
        expected_version: Optional[int] = None,
    ) -> Order:
        """
        Administrative override: hand the ``role`` claim straight to
        ``new_holder_id``.

        One compare-and-write keeps the held status, swaps holder and
        attribution and bumps the version, so no other worker can take the
        claim in between. Reassigning to the current holder returns the
        order unchanged.

        Raises:
            StaleVersion: ``expected_version`` is outdated
            InvalidTransition: Actor is not an administrator, or no claim
                for ``role`` is currently held
        """
        if not actor.is_admin:
            raise InvalidTransition(
                order_id,
                "wrong_role",
                f"Only an administrator can reassign the {role.value} claim on order {order_id}",
            )

        window = CLAIM_WINDOWS[role]
        order = await self._load_held(order_id, window, expected_version, "reassign")

        holder = order.claim_for(role).holder_id
        if holder == new_holder_id:
            return order

        now = utcnow()
        changes = self._claim_changes(window, Actor(new_holder_id, role.actor_role), now)

        committed = await self._commit(
            order,
            order.version,
            window.held_status,
            changes,
            actor,
            TransitionKind.REASSIGN,
            now,
            note=f"Reassigned {role.value} claim from {holder} to {new_holder_id}",
            released={role.value: holder},
            assigned={role.value: new_holder_id},
        )
        logger.warning(
            f"Order #{order_id}: admin {actor.actor_id} reassigned {role.value} claim "
            f"from {holder} to {new_holder_id}"
        )
        return committed

    async def available_for(
        self,
        role: ClaimRole,
        skip: int = 0,
        limit: int = 50,
    ) -> tuple[int, list[Order]]:
        """Orders whose claim window for ``role`` is open, oldest first."""
        window = CLAIM_WINDOWS[role]
        return await self.store.list_orders(
            status=window.open_status,
            unclaimed_role=role,
            skip=skip,
            limit=limit,
        )

    async def _load_held(
        self,
        order_id: str,
        window: ClaimWindow,
        expected_version: Optional[int],
        action: str,
    ) -> Order:
        """Load an order whose ``window`` claim is currently held, version first."""
        order = await self.store.get(order_id)
        if expected_version is not None and expected_version != order.version:
            raise StaleVersion(order.id, expected_version, order.version)

        self._check_not_terminal(order)
        if order.status != window.held_status or order.claim_for(window.role) is None:
            raise InvalidTransition(
                order.id,
                "wrong_status",
                f"Order {order.id} has no {window.role.value} claim to {action} "
                f"while {order.status.value}",
            )
        return order
