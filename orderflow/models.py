"""
SQLAlchemy Database Models

Order lifecycle with role-scoped claim locks:
- Versioned orders (optimistic concurrency)
- Kitchen and service claims sharing one Claim shape
- Append-only status history for audit
- Payment status synchronized by the effect dispatcher

Author: Khalil Bannouri
Version: 4.0.0
"""

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Text,
    Enum,
    JSON,
    ForeignKey,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from orderflow.database import Base


class OrderStatus(str, enum.Enum):
    """Order status workflow."""
    PENDING = "pending"
    PREPARING = "preparing"
    READY_TO_SERVE = "ready_to_serve"
    SERVED = "served"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.COMPLETED, OrderStatus.CANCELLED)


class PaymentStatus(str, enum.Enum):
    """Settlement state mirrored from the payment subsystem."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUND_PENDING = "refund_pending"
    REFUNDED = "refunded"


class ActorRole(str, enum.Enum):
    """Roles supplied by the identity provider."""
    CUSTOMER = "customer"
    KITCHEN = "kitchen"
    SERVICE = "service"
    ADMIN = "admin"


class ClaimRole(str, enum.Enum):
    """The two staff pools that take exclusive claims on an order."""
    KITCHEN = "kitchen"
    SERVICE = "service"

    @property
    def actor_role(self) -> ActorRole:
        return ActorRole(self.value)


@dataclass(frozen=True)
class Claim:
    """Exclusive role-scoped lock held by one staff member."""
    holder_id: str
    claimed_at: datetime


@dataclass(frozen=True)
class Actor:
    """Identity of whoever issued a request, as supplied by the session layer."""
    actor_id: str
    role: ActorRole

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN


def _new_order_id() -> str:
    return uuid.uuid4().hex


class Order(Base):
    """
    Main Order table.

    Rows are only ever changed through a compare-and-write on ``version``
    (see ``OrderStore.commit_transition``). Claim columns come in
    holder/claimed_at pairs; use ``claim_for(role)`` to read them.
    """
    __tablename__ = "orders"

    id = Column(String(32), primary_key=True, default=_new_order_id)

    # =========================================================================
    # CUSTOMER
    # =========================================================================
    owner_id = Column(String(64), nullable=False, index=True)
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(20), nullable=True)

    # =========================================================================
    # ORDER DETAILS
    # =========================================================================
    items = Column(JSON, nullable=False)
    special_instructions = Column(Text, nullable=True)
    table_number = Column(String(10), nullable=True)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================
    status = Column(
        Enum(OrderStatus),
        default=OrderStatus.PENDING,
        nullable=False,
        index=True
    )
    version = Column(Integer, nullable=False, default=0)

    # =========================================================================
    # CLAIMS
    # =========================================================================
    kitchen_holder_id = Column(String(64), nullable=True, index=True)
    kitchen_claimed_at = Column(DateTime(timezone=True), nullable=True)
    service_holder_id = Column(String(64), nullable=True, index=True)
    service_claimed_at = Column(DateTime(timezone=True), nullable=True)

    # Attribution survives claim release
    prepared_by = Column(String(64), nullable=True, index=True)
    served_by = Column(String(64), nullable=True, index=True)

    # =========================================================================
    # PAYMENT
    # =========================================================================
    payment_status = Column(
        Enum(PaymentStatus),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    payment_intent_id = Column(String(100), nullable=True)

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)

    history = relationship(
        "OrderStatusHistory",
        order_by="OrderStatusHistory.id",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    def claim_for(self, role: ClaimRole) -> Optional[Claim]:
        if role == ClaimRole.KITCHEN:
            holder, at = self.kitchen_holder_id, self.kitchen_claimed_at
        else:
            holder, at = self.service_holder_id, self.service_claimed_at
        if holder is None:
            return None
        return Claim(holder_id=holder, claimed_at=at)

    @property
    def kitchen_claim(self) -> Optional[Claim]:
        return self.claim_for(ClaimRole.KITCHEN)

    @property
    def service_claim(self) -> Optional[Claim]:
        return self.claim_for(ClaimRole.SERVICE)

    def __repr__(self):
        return f"<Order #{self.id} - v{self.version} - {self.status.value}>"


def claim_columns(role: ClaimRole, claim: Optional[Claim]) -> dict:
    """Column values that store ``claim`` (or clear it) for ``role``."""
    prefix = role.value
    return {
        f"{prefix}_holder_id": claim.holder_id if claim else None,
        f"{prefix}_claimed_at": claim.claimed_at if claim else None,
    }


class OrderStatusHistory(Base):
    """Append-only audit trail, one row per committed transition."""
    __tablename__ = "order_status_history"
    __table_args__ = (
        UniqueConstraint("order_id", "version", name="uq_history_order_version"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=False, index=True)

    # Version the order reached with this transition; unique per order
    version = Column(Integer, nullable=False)
    from_status = Column(Enum(OrderStatus), nullable=True)
    to_status = Column(Enum(OrderStatus), nullable=False)
    actor_id = Column(String(64), nullable=False)
    actor_role = Column(Enum(ActorRole), nullable=False)
    note = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        from_value = self.from_status.value if self.from_status else "-"
        return f"<History {self.order_id} v{self.version} {from_value}->{self.to_status.value}>"
