"""
Order, order item and dispute records.

Status fields are normalized on the way in, so records loaded from older
storage with legacy spellings come out canonical.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from pydantic import BaseModel, Field, field_validator

from .order_state_machine import (
    ActorRole,
    FulfillmentStatus,
    OrderStatus,
    PaymentStatus,
    normalize_actor_role,
    normalize_fulfillment_status,
    normalize_order_status,
    normalize_payment_status,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_order_id() -> str:
    return f"order_{uuid.uuid4().hex[:16]}"


def new_order_item_id() -> str:
    return f"oi_{uuid.uuid4().hex[:20]}"


def new_dispute_id() -> str:
    return f"dsp_{uuid.uuid4().hex[:16]}"


class DisputeStatus(str, Enum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    ESCALATED = "escalated"
    CLOSED = "closed"


CLOSED_DISPUTE_STATUSES = frozenset({DisputeStatus.RESOLVED, DisputeStatus.CLOSED})


# ============================================================================
# SNAPSHOTS
# ============================================================================

class ShippingAddress(BaseModel):
    """Delivery address captured at checkout."""
    full_name: str
    phone: str
    address: str
    city: str
    region: str
    digital_address: Optional[str] = None


class LineItem(BaseModel):
    """Denormalized line item as submitted at checkout."""
    product_id: str
    product_name: str
    vendor_id: str
    vendor_name: str
    quantity: int = Field(..., gt=0)
    price: float = Field(..., ge=0, description="Unit price")
    applied_discount: float = 0.0
    final_price: Optional[float] = None
    category_id: Optional[str] = None
    image: Optional[str] = None
    variations: Optional[Dict[str, str]] = None

    def resolved_final_price(self) -> float:
        if self.final_price is not None:
            return self.final_price
        return round(self.price * self.quantity - self.applied_discount, 2)


# ============================================================================
# AGGREGATES
# ============================================================================

class Order(BaseModel):
    """One checkout across any number of vendors."""
    id: str
    buyer_id: str
    buyer_name: str
    buyer_email: str
    items: List[LineItem] = Field(default_factory=list)
    subtotal: float
    discount_total: float = 0.0
    shipping_fee: float = 0.0
    tax: float = 0.0
    total: float
    currency: str = "GHS"
    status: OrderStatus = OrderStatus.CREATED
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    payment_provider: Optional[str] = None
    paid_at: Optional[datetime] = None
    shipping_address: ShippingAddress
    tracking_number: Optional[str] = None
    courier_provider: Optional[str] = None
    courier_reference: Optional[str] = None
    delivered_at: Optional[datetime] = None
    disputed_at: Optional[datetime] = None
    dispute_reason: Optional[str] = None
    notes: Optional[str] = None
    coupon_code: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> OrderStatus:
        return normalize_order_status(value)

    @field_validator("payment_status", mode="before")
    @classmethod
    def _normalize_payment_status(cls, value: Any) -> PaymentStatus:
        return normalize_payment_status(value)

    def vendor_ids(self) -> List[str]:
        """Distinct vendors in checkout order."""
        seen: List[str] = []
        for item in self.items:
            if item.vendor_id not in seen:
                seen.append(item.vendor_id)
        return seen


class OrderItem(BaseModel):
    """One (order, vendor, product) row; the unit of per-vendor fulfillment."""
    id: str
    order_id: str
    product_id: str
    product_name: str
    vendor_id: str
    vendor_name: str
    category_id: Optional[str] = None
    quantity: int
    unit_price: float
    applied_discount: float = 0.0
    final_price: float
    fulfillment_status: FulfillmentStatus = FulfillmentStatus.PENDING
    fulfilled_at: Optional[datetime] = None
    image: Optional[str] = None
    variations: Optional[Dict[str, str]] = None
    commission_rate: Optional[float] = None
    commission_amount: Optional[float] = None
    vendor_earnings: Optional[float] = None
    # set once the item quantity has been handed back to inventory
    stock_restored: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("fulfillment_status", mode="before")
    @classmethod
    def _normalize_fulfillment_status(cls, value: Any) -> FulfillmentStatus:
        return normalize_fulfillment_status(value)


class Dispute(BaseModel):
    """Opened when a buyer moves a delivered order to disputed."""
    id: str
    order_id: str
    buyer_id: str
    reason: str
    status: DisputeStatus = DisputeStatus.OPEN
    resolution: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    resolved_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status not in CLOSED_DISPUTE_STATUSES


# ============================================================================
# INPUTS
# ============================================================================

class CreateOrderInput(BaseModel):
    buyer_id: str
    buyer_name: str
    buyer_email: str
    items: List[LineItem] = Field(..., min_length=1)
    subtotal: float
    discount_total: float = 0.0
    shipping_fee: float = 0.0
    tax: float = 0.0
    total: float
    currency: Optional[str] = None
    payment_method: Optional[str] = None
    shipping_address: ShippingAddress
    coupon_code: Optional[str] = None
    notes: Optional[str] = None


class Actor(BaseModel):
    """Whoever triggers a lifecycle operation."""
    id: str
    role: ActorRole
    name: Optional[str] = None
    email: Optional[str] = None

    @field_validator("role", mode="before")
    @classmethod
    def _normalize_role(cls, value: Any) -> ActorRole:
        return normalize_actor_role(value)

    @property
    def display_name(self) -> str:
        return self.name or self.role.value


SYSTEM_ACTOR = Actor(id="system", role=ActorRole.SYSTEM, name="System")


# ============================================================================
# RESULTS
# ============================================================================

@dataclass
class LifecycleResult:
    """
    Structured outcome of a lifecycle operation

    status_code follows HTTP semantics: 404 not found, 409 invalid transition,
    403 not authorized, 400 failed precondition.
    """
    success: bool
    error: Optional[str] = None
    status_code: Optional[int] = None
    order: Optional[Order] = None

    @classmethod
    def ok(cls, order: Optional[Order] = None) -> "LifecycleResult":
        return cls(success=True, order=order)

    @classmethod
    def fail(cls, error: str, status_code: int, order: Optional[Order] = None) -> "LifecycleResult":
        return cls(success=False, error=error, status_code=status_code, order=order)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error,
            "status_code": self.status_code,
            "order": self.order.model_dump(mode="json") if self.order else None,
        }


@dataclass
class InventoryDelta:
    product_id: str
    quantity: int

    def to_dict(self) -> Dict[str, Any]:
        return {"product_id": self.product_id, "quantity": self.quantity}


@dataclass
class CancellationResult(LifecycleResult):
    restored_items: List[InventoryDelta] = field(default_factory=list)
    pending_items: List[InventoryDelta] = field(default_factory=list)  # restore failed, retry later
    refund_required: bool = False

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["restored_items"] = [delta.to_dict() for delta in self.restored_items]
        payload["pending_items"] = [delta.to_dict() for delta in self.pending_items]
        payload["refund_required"] = self.refund_required
        return payload
