"""
Pydantic Schemas for Request/Response Validation

Order lifecycle API:
- Claim / advance / cancel / release requests, all carrying the
  version the client last saw
- Order snapshots with claims, history and allowed actions
- Uniform error body shared by every transition error

Author: Khalil Bannouri
Version: 4.0.0
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Any
from datetime import datetime
import re

from orderflow.models import ActorRole, ClaimRole, OrderStatus, PaymentStatus


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class OrderItemCreate(BaseModel):
    """Single line item; not checked against any menu."""
    menu_item_id: str = Field(..., min_length=1, max_length=64, examples=["pizza-margherita"])
    name: str = Field(..., min_length=1, max_length=100, examples=["Pizza Margherita"])
    quantity: int = Field(..., ge=1, le=99, examples=[2])
    modifiers: List[str] = Field(default_factory=list, examples=[["extra basil"]])


class OrderCreate(BaseModel):
    """Request schema for creating a new order (order creation hook)."""
    items: List[OrderItemCreate] = Field(..., min_length=1)
    customer_email: Optional[str] = Field(None, examples=["john@example.com"])
    customer_phone: Optional[str] = Field(None, max_length=20, examples=["555-123-4567"])
    special_instructions: Optional[str] = Field(None, max_length=500)
    table_number: Optional[str] = Field(None, max_length=10, examples=["12"])
    payment_intent_id: Optional[str] = Field(None, max_length=100, examples=["pi_3Nxyz"])

    @field_validator('customer_phone')
    @classmethod
    def validate_phone(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        cleaned = re.sub(r'[^\d]', '', v)
        if len(cleaned) < 10:
            raise ValueError('Phone number must have at least 10 digits')
        return v

    @field_validator('customer_email')
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        if not re.match(r'^[\w\.-]+@[\w\.-]+\.\w+$', v):
            raise ValueError('Invalid email format')
        return v


class ClaimRequest(BaseModel):
    role: ClaimRole
    expected_version: int = Field(..., ge=0)


class AdvanceRequest(BaseModel):
    to_status: OrderStatus
    expected_version: int = Field(..., ge=0)


class CancelRequest(BaseModel):
    expected_version: int = Field(..., ge=0)
    reason: Optional[str] = Field(None, max_length=500)


class ReleaseRequest(BaseModel):
    """Admin override; without a version the current one is used."""
    role: ClaimRole
    expected_version: Optional[int] = Field(None, ge=0)


class ReassignRequest(BaseModel):
    """Admin override: move a held claim to ``new_holder_id``."""
    role: ClaimRole
    new_holder_id: str = Field(..., min_length=1, max_length=64, examples=["chef-b"])
    expected_version: Optional[int] = Field(None, ge=0)


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class ClaimResponse(BaseModel):
    holder_id: str
    claimed_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class HistoryEntryResponse(BaseModel):
    version: int
    from_status: Optional[OrderStatus]
    to_status: OrderStatus
    actor_id: str
    actor_role: ActorRole
    note: Optional[str]
    timestamp: datetime

    model_config = ConfigDict(from_attributes=True)


class OrderResponse(BaseModel):
    """Response schema for a single order."""
    id: str
    owner_id: str
    items: List[dict[str, Any]]
    special_instructions: Optional[str]
    table_number: Optional[str]
    status: OrderStatus
    version: int
    kitchen_claim: Optional[ClaimResponse]
    service_claim: Optional[ClaimResponse]
    prepared_by: Optional[str]
    served_by: Optional[str]
    payment_status: PaymentStatus
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    history: List[HistoryEntryResponse] = Field(default_factory=list)
    allowed_actions: List[OrderStatus] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class OrderListResponse(BaseModel):
    """Response for listing multiple orders."""
    total: int
    orders: List[OrderResponse]
    poll_interval_seconds: int


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None
    order_id: Optional[str] = None
    reason: Optional[str] = None
    current_version: Optional[int] = None
    role: Optional[str] = None
    holder_id: Optional[str] = None


class PaymentWebhookResponse(BaseModel):
    received: bool
    order_id: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None
    updated: bool = False


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    redis: str
    payment_service: str
    notification_service: str
    effects_backend: str
    timestamp: datetime
