"""
Transition engine tests: full lifecycle scenarios, guards, version checks
and effect publishing.
"""
import pytest

from orderflow.core.exceptions import ClaimDenied, InvalidTransition, NotFound, StaleVersion
from orderflow.models import ClaimRole, OrderStatus
from orderflow.services.effects import EffectPublisher
from orderflow.services.transition_engine import TransitionEngine


class ExplodingPublisher(EffectPublisher):
    async def publish(self, event):
        raise ConnectionError("broker down")


# ─── Scenarios ─────────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_two_chefs_and_a_waiter(manager, publisher, order, chef_a, chef_b, waiter_c):
    claimed = await manager.claim(order.id, ClaimRole.KITCHEN, chef_a, expected_version=0)
    assert claimed.status == OrderStatus.PREPARING
    assert claimed.version == 1
    assert claimed.kitchen_claim.holder_id == "chef-a"

    # Chef B still looks at v0
    with pytest.raises(StaleVersion):
        await manager.claim(order.id, ClaimRole.KITCHEN, chef_b, expected_version=0)

    # Chef B refetched
    with pytest.raises(ClaimDenied) as exc_info:
        await manager.claim(order.id, ClaimRole.KITCHEN, chef_b, expected_version=1)
    assert exc_info.value.holder_id == "chef-a"
    assert "already taken" in exc_info.value.message

    ready = await manager.advance(order.id, OrderStatus.READY_TO_SERVE, chef_a, expected_version=1)
    assert ready.status == OrderStatus.READY_TO_SERVE
    assert ready.version == 2
    assert ready.kitchen_claim is None
    assert ready.prepared_by == "chef-a"

    served = await manager.claim(order.id, ClaimRole.SERVICE, waiter_c, expected_version=2)
    assert served.status == OrderStatus.SERVED
    assert served.version == 3
    assert served.service_claim.holder_id == "waiter-c"

    completed = await manager.advance(order.id, OrderStatus.COMPLETED, waiter_c, expected_version=3)
    assert completed.status == OrderStatus.COMPLETED
    assert completed.version == 4
    assert completed.service_claim is None
    assert completed.served_by == "waiter-c"

    assert [e.version for e in publisher.events] == [1, 2, 3, 4]
    assert [e.to_status for e in publisher.events].count(OrderStatus.COMPLETED) == 1
    assert [h.version for h in completed.history] == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_owner_cancels_pending_order(manager, publisher, order, owner, chef_a):
    cancelled = await manager.cancel(order.id, owner, expected_version=0, reason="Changed my mind")
    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.version == 1
    assert cancelled.history[-1].note == "Changed my mind"

    with pytest.raises(InvalidTransition) as exc_info:
        await manager.claim(order.id, ClaimRole.KITCHEN, chef_a, expected_version=1)
    assert exc_info.value.reason == "terminal"
    assert len(publisher.events) == 1


@pytest.mark.asyncio
async def test_snapshot_from_before_cancel_is_stale(manager, order, owner, chef_a):
    await manager.cancel(order.id, owner, expected_version=0)

    # Chef still looks at v0: re-poll, not "pick another order"
    with pytest.raises(StaleVersion) as exc_info:
        await manager.claim(order.id, ClaimRole.KITCHEN, chef_a, expected_version=0)
    assert exc_info.value.current_version == 1


@pytest.mark.asyncio
async def test_snapshot_from_before_completion_is_stale(manager, order, chef_a, waiter_c, owner):
    await manager.claim(order.id, ClaimRole.KITCHEN, chef_a, 0)
    await manager.advance(order.id, OrderStatus.READY_TO_SERVE, chef_a, 1)
    await manager.claim(order.id, ClaimRole.SERVICE, waiter_c, 2)
    await manager.advance(order.id, OrderStatus.COMPLETED, waiter_c, 3)

    with pytest.raises(StaleVersion):
        await manager.cancel(order.id, owner, expected_version=3)
    with pytest.raises(InvalidTransition) as exc_info:
        await manager.cancel(order.id, owner, expected_version=4)
    assert exc_info.value.reason == "terminal"


# ─── Guards ────────────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_only_the_holder_marks_ready(manager, order, chef_a, chef_b):
    await manager.claim(order.id, ClaimRole.KITCHEN, chef_a, 0)
    with pytest.raises(InvalidTransition) as exc_info:
        await manager.advance(order.id, OrderStatus.READY_TO_SERVE, chef_b, 1)
    assert exc_info.value.reason == "wrong_actor"
    assert (await manager.get_order(order.id)).version == 1


@pytest.mark.asyncio
async def test_wrong_role_cannot_claim(manager, order, waiter_c):
    with pytest.raises(InvalidTransition) as exc_info:
        await manager.advance(order.id, OrderStatus.PREPARING, waiter_c, 0)
    assert exc_info.value.reason == "wrong_role"


@pytest.mark.asyncio
async def test_service_cannot_claim_before_ready(manager, order, waiter_c):
    with pytest.raises(InvalidTransition) as exc_info:
        await manager.claim(order.id, ClaimRole.SERVICE, waiter_c, 0)
    assert exc_info.value.reason == "wrong_status"


@pytest.mark.asyncio
async def test_skipping_a_status_is_not_adjacent(manager, order, owner):
    with pytest.raises(InvalidTransition) as exc_info:
        await manager.advance(order.id, OrderStatus.COMPLETED, owner, 0)
    assert exc_info.value.reason == "not_adjacent"


@pytest.mark.asyncio
async def test_release_edge_is_not_reachable_by_advance(manager, order, chef_a, admin):
    await manager.claim(order.id, ClaimRole.KITCHEN, chef_a, 0)
    with pytest.raises(InvalidTransition) as exc_info:
        await manager.advance(order.id, OrderStatus.PENDING, admin, 1)
    assert exc_info.value.reason == "wrong_role"


@pytest.mark.asyncio
async def test_stranger_cannot_cancel(manager, order, chef_a):
    with pytest.raises(InvalidTransition) as exc_info:
        await manager.cancel(order.id, chef_a, 0)
    assert exc_info.value.reason == "not_owner"


@pytest.mark.asyncio
async def test_admin_cancels_while_preparing(manager, publisher, order, chef_a, admin):
    await manager.claim(order.id, ClaimRole.KITCHEN, chef_a, 0)
    cancelled = await manager.cancel(order.id, admin, 1)
    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.kitchen_claim is None
    assert publisher.events[-1].released_claims == {"kitchen": "chef-a"}


@pytest.mark.asyncio
async def test_no_cancellation_once_ready(manager, order, chef_a, owner):
    await manager.claim(order.id, ClaimRole.KITCHEN, chef_a, 0)
    await manager.advance(order.id, OrderStatus.READY_TO_SERVE, chef_a, 1)
    with pytest.raises(InvalidTransition) as exc_info:
        await manager.cancel(order.id, owner, 2)
    assert exc_info.value.reason == "wrong_status"


@pytest.mark.asyncio
async def test_stale_version_wins_over_guard_failure(manager, order, chef_a, waiter_c):
    await manager.claim(order.id, ClaimRole.KITCHEN, chef_a, 0)
    with pytest.raises(StaleVersion):
        await manager.advance(order.id, OrderStatus.READY_TO_SERVE, waiter_c, 0)


@pytest.mark.asyncio
async def test_unknown_order(manager, chef_a):
    with pytest.raises(NotFound):
        await manager.claim("nope", ClaimRole.KITCHEN, chef_a, 0)


# ─── Effects ───────────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_event_describes_the_commit(manager, publisher, order, chef_a):
    await manager.claim(order.id, ClaimRole.KITCHEN, chef_a, 0)
    event = publisher.events[0]
    assert event.event_id == f"{order.id}:1"
    assert event.kind == "claim"
    assert event.from_status == OrderStatus.PENDING
    assert event.to_status == OrderStatus.PREPARING
    assert event.owner_id == "customer-1"
    assert event.customer_email == "guest@example.com"


@pytest.mark.asyncio
async def test_publish_failure_keeps_the_commit(store, order, chef_a):
    engine = TransitionEngine(store, ExplodingPublisher())
    claimed = await engine.apply(order.id, 0, OrderStatus.PREPARING, chef_a)
    assert claimed.version == 1
    assert (await store.get(order.id)).status == OrderStatus.PREPARING


@pytest.mark.asyncio
async def test_allowed_targets(manager, order, chef_a, waiter_c, owner):
    assert TransitionEngine.allowed_targets(order, chef_a) == [OrderStatus.PREPARING]
    assert TransitionEngine.allowed_targets(order, waiter_c) == []
    assert TransitionEngine.allowed_targets(order, owner) == [OrderStatus.CANCELLED]

    claimed = await manager.claim(order.id, ClaimRole.KITCHEN, chef_a, 0)
    assert TransitionEngine.allowed_targets(claimed, chef_a) == [OrderStatus.READY_TO_SERVE]
    assert TransitionEngine.allowed_targets(claimed, owner) == [OrderStatus.CANCELLED]
