"""
Order Status State Machine

Static description of every legal edge between order statuses and of the
two claim windows (kitchen, service). The transition engine looks rules up
here; nothing in this module touches storage.

    PENDING --claim(kitchen)--> PREPARING --holder--> READY_TO_SERVE
    READY_TO_SERVE --claim(service)--> SERVED --holder--> COMPLETED
    PENDING | PREPARING --owner/admin--> CANCELLED
    PREPARING --admin release--> PENDING
    SERVED --admin release--> READY_TO_SERVE

Author: Khalil Bannouri
Version: 4.0.0
"""

import enum
from dataclasses import dataclass
from typing import Optional

from orderflow.core.exceptions import ClaimDenied, InvalidTransition
from orderflow.models import Actor, ClaimRole, Order, OrderStatus


class TransitionKind(str, enum.Enum):
    """How an edge is triggered."""
    CLAIM = "claim"
    HOLDER_ADVANCE = "holder_advance"
    CANCEL = "cancel"
    RELEASE = "release"
    REASSIGN = "reassign"


@dataclass(frozen=True)
class ClaimWindow:
    """
    The status range one staff role owns.

    A claim for ``role`` can only be taken while the order is in
    ``open_status``; taking it moves the order to ``held_status``, and the
    holder releases it by advancing to ``release_status``.
    """
    role: ClaimRole
    open_status: OrderStatus
    held_status: OrderStatus
    release_status: OrderStatus

    def check_acquire(self, order: Order, actor: Actor) -> None:
        if actor.role != self.role.actor_role:
            raise InvalidTransition(
                order.id,
                "wrong_role",
                f"Only {self.role.value} staff can claim order {order.id} "
                f"for {self.role.value} work",
            )
        claim = order.claim_for(self.role)
        if claim is not None:
            raise ClaimDenied(order.id, self.role.value, claim.holder_id)
        if order.status != self.open_status:
            raise InvalidTransition(
                order.id,
                "wrong_status",
                f"Order {order.id} cannot be claimed for {self.role.value} work "
                f"while {order.status.value}",
            )

    def check_holder(self, order: Order, actor: Actor) -> None:
        claim = order.claim_for(self.role)
        if claim is None or claim.holder_id != actor.actor_id:
            raise InvalidTransition(
                order.id,
                "wrong_actor",
                f"Only the {self.role.value} worker holding order {order.id} "
                f"can move it to {self.release_status.value}",
            )

    def is_reasserted_by(self, order: Order, actor: Actor) -> bool:
        """True when ``actor`` already holds this claim and the order sits in the held status."""
        claim = order.claim_for(self.role)
        return (
            order.status == self.held_status
            and claim is not None
            and claim.holder_id == actor.actor_id
        )


CLAIM_WINDOWS: dict[ClaimRole, ClaimWindow] = {
    ClaimRole.KITCHEN: ClaimWindow(
        role=ClaimRole.KITCHEN,
        open_status=OrderStatus.PENDING,
        held_status=OrderStatus.PREPARING,
        release_status=OrderStatus.READY_TO_SERVE,
    ),
    ClaimRole.SERVICE: ClaimWindow(
        role=ClaimRole.SERVICE,
        open_status=OrderStatus.READY_TO_SERVE,
        held_status=OrderStatus.SERVED,
        release_status=OrderStatus.COMPLETED,
    ),
}


@dataclass(frozen=True)
class TransitionRule:
    from_status: OrderStatus
    to_status: OrderStatus
    kind: TransitionKind
    role: Optional[ClaimRole] = None

    @property
    def window(self) -> Optional[ClaimWindow]:
        return CLAIM_WINDOWS[self.role] if self.role else None


# Forward order of the non-cancelled statuses
LIFECYCLE = (
    OrderStatus.PENDING,
    OrderStatus.PREPARING,
    OrderStatus.READY_TO_SERVE,
    OrderStatus.SERVED,
    OrderStatus.COMPLETED,
)

# Cancellation is refused from READY_TO_SERVE onwards
CANCELLABLE_STATUSES = (OrderStatus.PENDING, OrderStatus.PREPARING)


def _build_rules() -> dict[tuple[OrderStatus, OrderStatus], TransitionRule]:
    rules = []
    for window in CLAIM_WINDOWS.values():
        rules.append(TransitionRule(
            window.open_status, window.held_status, TransitionKind.CLAIM, window.role,
        ))
        rules.append(TransitionRule(
            window.held_status, window.release_status, TransitionKind.HOLDER_ADVANCE, window.role,
        ))
        rules.append(TransitionRule(
            window.held_status, window.open_status, TransitionKind.RELEASE, window.role,
        ))
    for status in CANCELLABLE_STATUSES:
        rules.append(TransitionRule(status, OrderStatus.CANCELLED, TransitionKind.CANCEL))
    return {(rule.from_status, rule.to_status): rule for rule in rules}


TRANSITIONS = _build_rules()


def find_rule(from_status: OrderStatus, to_status: OrderStatus) -> Optional[TransitionRule]:
    return TRANSITIONS.get((from_status, to_status))


def is_adjacent(from_status: OrderStatus, to_status: OrderStatus) -> bool:
    return (from_status, to_status) in TRANSITIONS


def window_for_held_status(status: OrderStatus) -> Optional[ClaimWindow]:
    """Claim window whose held status is ``status`` (PREPARING, SERVED)."""
    for window in CLAIM_WINDOWS.values():
        if window.held_status == status:
            return window
    return None


def targets_from(status: OrderStatus, include_release: bool = False) -> list[OrderStatus]:
    """Statuses reachable in one step, for dashboards that render action buttons."""
    return [
        rule.to_status
        for rule in TRANSITIONS.values()
        if rule.from_status == status
        and (include_release or rule.kind != TransitionKind.RELEASE)
    ]


def rejection_reason(from_status: OrderStatus, to_status: OrderStatus) -> str:
    """
    Reason code for a request with no matching rule.

    Skipping ahead or moving backwards along the lifecycle is "not_adjacent";
    anything else (cancelling too late, repeating the current status) is
    "wrong_status".
    """
    if from_status.is_terminal:
        return "terminal"
    if from_status in LIFECYCLE and to_status in LIFECYCLE:
        step = LIFECYCLE.index(to_status) - LIFECYCLE.index(from_status)
        if step not in (0, 1):
            return "not_adjacent"
    return "wrong_status"
