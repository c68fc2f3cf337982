"""
Order lifecycle error taxonomy.

Every failed transition request raises exactly one of these. They are
returned to the caller synchronously; callers recover differently:

    StaleVersion       -> refetch the order and retry
    ClaimDenied        -> pick a different order ("already taken")
    InvalidTransition  -> the action is not allowed, retrying won't help
    NotFound           -> unknown order id

Effect failures use EffectDeliveryError, which never reaches the caller
of the transition that produced the effect.
"""

from typing import Optional


class TransitionError(Exception):
    """Base class for errors returned by the transition engine."""

    code = "transition_error"
    status_code = 400

    def __init__(self, order_id: str, message: str):
        super().__init__(message)
        self.order_id = order_id
        self.message = message

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": self.code,
            "detail": self.message,
            "order_id": self.order_id,
        }


class NotFound(TransitionError):
    code = "not_found"
    status_code = 404

    def __init__(self, order_id: str):
        super().__init__(order_id, f"Order {order_id} not found")


class StaleVersion(TransitionError):
    """The caller's snapshot is outdated: someone else committed since."""

    code = "stale_version"
    status_code = 412

    def __init__(self, order_id: str, expected_version: int, current_version: int):
        super().__init__(
            order_id,
            f"Order {order_id} is at version {current_version}, "
            f"request was based on version {expected_version}",
        )
        self.expected_version = expected_version
        self.current_version = current_version

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["current_version"] = self.current_version
        return data


class ClaimDenied(TransitionError):
    """The role's claim is held by another staff member."""

    code = "claim_denied"
    status_code = 409

    def __init__(self, order_id: str, role: str, holder_id: str):
        super().__init__(
            order_id,
            f"Order {order_id} is already taken by another {role} worker",
        )
        self.role = role
        self.holder_id = holder_id

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["role"] = self.role
        data["holder_id"] = self.holder_id
        return data


class InvalidTransition(TransitionError):
    """
    Requested change violates the state machine or an actor guard.

    Reason codes:
        terminal      order is COMPLETED or CANCELLED
        not_adjacent  no edge from the current status to the target
        wrong_status  the action exists but not from the current status
        wrong_role    actor role may not perform this action
        wrong_actor   actor is not the current claim holder
        not_owner     cancellation by someone other than owner/admin
    """

    code = "invalid_transition"
    status_code = 400

    def __init__(self, order_id: str, reason: str, detail: Optional[str] = None):
        super().__init__(order_id, detail or reason)
        self.reason = reason

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["reason"] = self.reason
        return data


class EffectDeliveryError(Exception):
    """A side effect of a committed transition failed and should be retried."""

    def __init__(self, event_id: str, failures: list[str]):
        super().__init__(f"Effects for {event_id} failed: {'; '.join(failures)}")
        self.event_id = event_id
        self.failures = failures
