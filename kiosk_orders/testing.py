"""
Builders shared by the test modules: a controllable clock, order inputs and
a lifecycle wired to in-memory collaborators.
"""
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from .commission import CommissionCalculator, StaticCommissionRates
from .db.repositories.inventory_repo import InMemoryInventory
from .lifecycle import OrderLifecycle
from .models import Actor, CreateOrderInput, LineItem, Order, ShippingAddress
from .notifications import Notifier
from .order_state_machine import ActorRole, OrderStatus, PaymentStatus
from .orders_repository import InMemoryOrderStore
from .transaction_trust import AuditLogger


class FixedClock:
    """Callable clock that only moves when told to"""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FlakyInventory(InMemoryInventory):
    """Raises on the first `failing[product_id]` restores of each listed product"""

    def __init__(self, quantities: Optional[Dict[str, int]] = None, failing: Optional[Dict[str, int]] = None):
        super().__init__(quantities)
        self.failing = dict(failing or {})
        self.calls: List[str] = []

    def restore_quantity(self, product_id: str, quantity: int) -> bool:
        self.calls.append(product_id)
        if self.failing.get(product_id, 0) > 0:
            self.failing[product_id] -= 1
            raise ConnectionError(f"inventory service unreachable for {product_id}")
        return super().restore_quantity(product_id, quantity)


def make_line_item(
    product_id: str = "prod_1",
    vendor_id: str = "vendor_a",
    quantity: int = 1,
    price: float = 50.0,
    **overrides,
) -> LineItem:
    fields = {
        "product_id": product_id,
        "product_name": f"Product {product_id}",
        "vendor_id": vendor_id,
        "vendor_name": f"Store {vendor_id}",
        "quantity": quantity,
        "price": price,
    }
    fields.update(overrides)
    return LineItem(**fields)


def make_order_input(
    items: Optional[List[LineItem]] = None,
    buyer_id: str = "buyer_1",
    shipping_fee: float = 0.0,
) -> CreateOrderInput:
    items = items or [make_line_item()]
    subtotal = round(sum(item.resolved_final_price() for item in items), 2)
    return CreateOrderInput(
        buyer_id=buyer_id,
        buyer_name="Ama Mensah",
        buyer_email="ama@example.com",
        items=items,
        subtotal=subtotal,
        shipping_fee=shipping_fee,
        total=round(subtotal + shipping_fee, 2),
        payment_method="mobile_money",
        shipping_address=ShippingAddress(
            full_name="Ama Mensah",
            phone="+233200000000",
            address="12 Oxford Street",
            city="Accra",
            region="Greater Accra",
        ),
    )


def make_lifecycle(
    clock: Optional[FixedClock] = None,
    stock: Optional[Dict[str, int]] = None,
    rates: Optional[StaticCommissionRates] = None,
    inventory: Optional[InMemoryInventory] = None,
) -> OrderLifecycle:
    return OrderLifecycle(
        InMemoryOrderStore(),
        audit=AuditLogger(mirror_to_supabase=False),
        notifier=Notifier(webhook_url=""),
        inventory=inventory or InMemoryInventory(stock or {}),
        commission=CommissionCalculator(rates or StaticCommissionRates()),
        clock=clock or FixedClock(),
    )


def seed_order(
    lifecycle: OrderLifecycle,
    status: OrderStatus = OrderStatus.CREATED,
    payment_status: PaymentStatus = PaymentStatus.PENDING,
    items: Optional[List[LineItem]] = None,
    buyer_id: str = "buyer_1",
    **fields,
) -> Order:
    """Create an order and force it into a given state, bypassing validation"""
    order = lifecycle.create_order(make_order_input(items, buyer_id=buyer_id)).order
    if status == OrderStatus.CREATED and payment_status == PaymentStatus.PENDING and not fields:
        return order
    return lifecycle.store.update(order.id, status=status, payment_status=payment_status, **fields)


def vendor(vendor_id: str = "vendor_a") -> Actor:
    return Actor(id=vendor_id, role=ActorRole.VENDOR)


def buyer(buyer_id: str = "buyer_1") -> Actor:
    return Actor(id=buyer_id, role=ActorRole.BUYER)


ADMIN = Actor(id="admin_1", role=ActorRole.ADMIN, name="Ops Admin")
