"""
Order Store with optimistic concurrency

The authoritative, versioned record of every order. The store knows nothing
about the state machine; it only guarantees that a transition is written
as one atomic unit and only against the version the caller last saw:

    READ:   fetch the order (and its version)
    WRITE:  UPDATE orders SET ..., version = v + 1
            WHERE id = :id AND version = :v
            + INSERT the status history row, same transaction
    If another transaction committed first the UPDATE matches no row and
    the caller receives StaleVersion.

No row locks are taken up front, and contention on one order never
blocks writes to another.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Union

from sqlalchemy import select, update, func, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orderflow.core.exceptions import NotFound, StaleVersion
from orderflow.models import (
    ActorRole,
    ClaimRole,
    Order,
    OrderStatus,
    OrderStatusHistory,
    PaymentStatus,
)

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStore:
    """
    Versioned order persistence.

    Every public method opens its own session, so the returned ``Order``
    objects are detached snapshots: reading them never hits the database
    and mutating them changes nothing. All writes go through
    ``commit_transition`` or ``set_payment_status``.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # =========================================================================
    # CREATION (order creation subsystem)
    # =========================================================================

    async def create(
        self,
        owner_id: str,
        items: list[dict[str, Any]],
        customer_email: Optional[str] = None,
        customer_phone: Optional[str] = None,
        special_instructions: Optional[str] = None,
        table_number: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        payment_status: PaymentStatus = PaymentStatus.PENDING,
    ) -> Order:
        """Insert a new PENDING order at version 0 with its creation history row."""
        now = utcnow()

        async with self._session_factory() as session:
            order = Order(
                owner_id=owner_id,
                items=items,
                customer_email=customer_email,
                customer_phone=customer_phone,
                special_instructions=special_instructions,
                table_number=table_number,
                status=OrderStatus.PENDING,
                version=0,
                payment_status=payment_status,
                payment_intent_id=payment_intent_id,
                created_at=now,
                updated_at=now,
            )
            session.add(order)
            await session.flush()

            session.add(OrderStatusHistory(
                order_id=order.id,
                version=0,
                from_status=None,
                to_status=OrderStatus.PENDING,
                actor_id=owner_id,
                actor_role=ActorRole.CUSTOMER,
                note="Order created",
                timestamp=now,
            ))
            await session.commit()

            logger.info(f"Order #{order.id} created for {owner_id} ({len(items)} items)")
            return await self._load(session, order.id)

    # =========================================================================
    # READS
    # =========================================================================

    async def find(self, order_id: str) -> Optional[Order]:
        async with self._session_factory() as session:
            return await self._load(session, order_id)

    async def get(self, order_id: str) -> Order:
        """Fetch an order or raise NotFound."""
        order = await self.find(order_id)
        if order is None:
            raise NotFound(order_id)
        return order

    async def list_orders(
        self,
        status: Union[OrderStatus, Iterable[OrderStatus], None] = None,
        holder_id: Optional[str] = None,
        role: Optional[ClaimRole] = None,
        handled_by: Optional[str] = None,
        unclaimed_role: Optional[ClaimRole] = None,
        owner_id: Optional[str] = None,
        payment_status: Optional[PaymentStatus] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> tuple[int, list[Order]]:
        """
        Filtered, paginated order listing.

        Args:
            status: One status or several
            holder_id: Current claim holder (restricted to ``role`` if given)
            role: Claim role used with ``holder_id``
            handled_by: Staff member who prepared or served the order
            unclaimed_role: Only orders with no claim for this role
            owner_id: Customer who placed the order
            payment_status: Mirrored settlement state
            skip: Offset for pagination
            limit: Page size

        Returns:
            (total matching, page of orders), oldest first
        """
        conditions = []

        if status is not None:
            statuses = [status] if isinstance(status, OrderStatus) else list(status)
            conditions.append(Order.status.in_(statuses))

        if holder_id is not None:
            if role == ClaimRole.KITCHEN:
                conditions.append(Order.kitchen_holder_id == holder_id)
            elif role == ClaimRole.SERVICE:
                conditions.append(Order.service_holder_id == holder_id)
            else:
                conditions.append(or_(
                    Order.kitchen_holder_id == holder_id,
                    Order.service_holder_id == holder_id,
                ))

        if handled_by is not None:
            conditions.append(or_(
                Order.prepared_by == handled_by,
                Order.served_by == handled_by,
            ))

        if unclaimed_role == ClaimRole.KITCHEN:
            conditions.append(Order.kitchen_holder_id.is_(None))
        elif unclaimed_role == ClaimRole.SERVICE:
            conditions.append(Order.service_holder_id.is_(None))

        if owner_id is not None:
            conditions.append(Order.owner_id == owner_id)

        if payment_status is not None:
            conditions.append(Order.payment_status == payment_status)

        async with self._session_factory() as session:
            total = await session.scalar(
                select(func.count(Order.id)).where(*conditions)
            ) or 0

            result = await session.execute(
                select(Order)
                .where(*conditions)
                .order_by(Order.created_at.asc(), Order.id.asc())
                .offset(skip)
                .limit(limit)
            )
            return total, list(result.scalars().all())

    # =========================================================================
    # WRITES
    # =========================================================================

    async def commit_transition(
        self,
        order_id: str,
        expected_version: int,
        changes: dict[str, Any],
        history: dict[str, Any],
    ) -> Order:
        """
        Atomically apply ``changes`` and append ``history`` if the order is
        still at ``expected_version``.

        Args:
            order_id: Order to write
            expected_version: Version the caller validated against
            changes: Column values (status, claim columns, ...)
            history: OrderStatusHistory fields except order_id/version

        Returns:
            The order as committed, at ``expected_version + 1``

        Raises:
            StaleVersion: Another transition committed first
            NotFound: The order does not exist
        """
        new_version = expected_version + 1

        async with self._session_factory() as session:
            result = await session.execute(
                update(Order)
                .where(Order.id == order_id, Order.version == expected_version)
                .values(**changes, version=new_version)
                .execution_options(synchronize_session=False)
            )

            if result.rowcount == 0:
                # Another transaction won the race
                await session.rollback()
                current = await session.scalar(
                    select(Order.version).where(Order.id == order_id)
                )
                if current is None:
                    raise NotFound(order_id)
                logger.info(
                    f"Order #{order_id}: version conflict "
                    f"(expected v{expected_version}, found v{current})"
                )
                raise StaleVersion(order_id, expected_version, current)

            session.add(OrderStatusHistory(
                order_id=order_id,
                version=new_version,
                **history,
            ))
            await session.commit()

            return await self._load(session, order_id)

    async def set_payment_status(
        self,
        order_id: str,
        payment_status: PaymentStatus,
        payment_intent_id: Optional[str] = None,
        only_from: Optional[Iterable[PaymentStatus]] = None,
    ) -> bool:
        """
        Write the synchronized payment status.

        Payment status is a mirror of the payment subsystem, not an order
        transition, so ``version`` is left untouched and staff holding a
        snapshot are not invalidated.

        Args:
            order_id: Order to update
            payment_status: New settlement state
            payment_intent_id: Provider reference to store alongside
            only_from: Apply only if the current payment status is one of these

        Returns:
            True if a row was updated
        """
        values: dict[str, Any] = {"payment_status": payment_status}
        if payment_intent_id is not None:
            values["payment_intent_id"] = payment_intent_id

        conditions = [Order.id == order_id]
        if only_from is not None:
            conditions.append(Order.payment_status.in_(list(only_from)))

        async with self._session_factory() as session:
            result = await session.execute(
                update(Order)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        updated = result.rowcount > 0
        if updated:
            logger.info(f"Order #{order_id}: payment status -> {payment_status.value}")
        return updated

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    async def _load(session: AsyncSession, order_id: str) -> Optional[Order]:
        result = await session.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
