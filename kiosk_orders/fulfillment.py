"""
Fulfillment Tracker - per-vendor item actions and order roll-up

Vendors move their own items through pending -> packed -> handed_to_courier
-> delivered. After every item change the parent order is re-evaluated and,
once every item has reached a milestone, walked forward one validated edge at
a time through the lifecycle commit step.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
import logging

from .lifecycle import OrderLifecycle
from .models import Actor, LifecycleResult, OrderItem
from .notifications import NotificationType
from .order_state_machine import (
    ActorRole,
    FulfillmentStatus,
    FulfillmentTransition,
    OrderStatus,
    normalize_fulfillment_status,
)

logger = logging.getLogger(__name__)


# Forward path the roll-up may walk; a failed delivery re-enters before out_for_delivery
FORWARD_PATH: List[OrderStatus] = [
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.READY_FOR_PICKUP,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
]

# Orders in these statuses accept no item changes
CLOSED_FOR_FULFILLMENT = frozenset({
    OrderStatus.CREATED,
    OrderStatus.CANCELLED,
    OrderStatus.COMPLETED,
})

ITEM_AUDIT_ACTIONS: Dict[FulfillmentStatus, str] = {
    FulfillmentStatus.PACKED: "ORDER_ITEM_PACKED",
    FulfillmentStatus.HANDED_TO_COURIER: "ORDER_ITEM_HANDED_TO_COURIER",
    FulfillmentStatus.DELIVERED: "ORDER_ITEM_DELIVERED",
}

# Action names accepted over HTTP; 'ship' and 'fulfill' are older client spellings
ITEM_ACTIONS: Dict[str, FulfillmentStatus] = {
    "pack": FulfillmentStatus.PACKED,
    "hand_to_courier": FulfillmentStatus.HANDED_TO_COURIER,
    "ship": FulfillmentStatus.HANDED_TO_COURIER,
    "mark_delivered": FulfillmentStatus.DELIVERED,
    "fulfill": FulfillmentStatus.DELIVERED,
}


@dataclass
class ItemUpdateResult(LifecycleResult):
    item: Optional[OrderItem] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["item"] = self.item.model_dump(mode="json") if self.item else None
        return payload


def rollup_target(items: List[OrderItem]) -> Optional[OrderStatus]:
    """Furthest order status the item set supports, if any"""
    if not items:
        return None
    if all(item.fulfillment_status == FulfillmentStatus.DELIVERED for item in items):
        return OrderStatus.DELIVERED
    if all(
        FulfillmentTransition.has_reached(item.fulfillment_status, FulfillmentStatus.HANDED_TO_COURIER)
        for item in items
    ):
        return OrderStatus.OUT_FOR_DELIVERY
    if all(
        FulfillmentTransition.has_reached(item.fulfillment_status, FulfillmentStatus.PACKED)
        for item in items
    ):
        return OrderStatus.PREPARING
    return None


def forward_steps(current: OrderStatus, target: OrderStatus) -> List[OrderStatus]:
    """Statuses between current (exclusive) and target (inclusive); empty if at or past target"""
    if current == OrderStatus.DELIVERY_FAILED:
        position = FORWARD_PATH.index(OrderStatus.READY_FOR_PICKUP)
    elif current in FORWARD_PATH:
        position = FORWARD_PATH.index(current)
    else:
        return []
    return FORWARD_PATH[position + 1:FORWARD_PATH.index(target) + 1]


class FulfillmentTracker:
    """Item-level actions for vendors, plus the order roll-up"""

    def __init__(self, lifecycle: OrderLifecycle):
        self.lifecycle = lifecycle
        self.store = lifecycle.store

    def pack_item(self, order_id: str, item_id: str, actor: Actor) -> ItemUpdateResult:
        return self.update_item_status(order_id, item_id, FulfillmentStatus.PACKED, actor)

    def hand_item_to_courier(
        self,
        order_id: str,
        item_id: str,
        actor: Actor,
        courier_provider: Optional[str] = None,
        courier_reference: Optional[str] = None,
    ) -> ItemUpdateResult:
        return self.update_item_status(
            order_id, item_id, FulfillmentStatus.HANDED_TO_COURIER, actor,
            courier_provider=courier_provider,
            courier_reference=courier_reference,
        )

    def mark_item_delivered(self, order_id: str, item_id: str, actor: Actor) -> ItemUpdateResult:
        return self.update_item_status(order_id, item_id, FulfillmentStatus.DELIVERED, actor)

    def update_item_status(
        self,
        order_id: str,
        item_id: str,
        target: Union[str, FulfillmentStatus],
        actor: Actor,
        courier_provider: Optional[str] = None,
        courier_reference: Optional[str] = None,
    ) -> ItemUpdateResult:
        """
        Move one item forward, then roll the order up

        Returns:
            ItemUpdateResult carrying the item and the order after roll-up
        """
        target = normalize_fulfillment_status(target)
        if actor.role != ActorRole.VENDOR:
            return ItemUpdateResult.fail("Only vendors can fulfill items", 403)

        with self.store.lock(order_id):
            order = self.store.get(order_id)
            if order is None:
                return ItemUpdateResult.fail("Order not found", 404)
            if order.status in CLOSED_FOR_FULFILLMENT:
                return ItemUpdateResult.fail(
                    f"Cannot fulfill items on order with status: {order.status.value}", 400, order
                )

            item = self.store.get_item(item_id)
            if item is None or item.order_id != order_id:
                return ItemUpdateResult.fail("Order item not found", 404, order)
            if item.vendor_id != actor.id:
                return ItemUpdateResult.fail("Not authorized to fulfill this item", 403, order)

            check = FulfillmentTransition.validate(item.fulfillment_status, target)
            if not check.valid:
                return ItemUpdateResult.fail(check.reason, 409, order)

            now = self.lifecycle.clock()
            fields: Dict[str, Any] = {"fulfillment_status": target, "updated_at": now}
            if target == FulfillmentStatus.DELIVERED:
                fields["fulfilled_at"] = now
            previous = item.fulfillment_status
            item = self.store.update_item(item_id, **fields)

        logger.info(f"Item {item_id} of order {order_id}: {previous.value} -> {target.value}")
        self.lifecycle.record_audit(
            ITEM_AUDIT_ACTIONS[target],
            actor,
            item_id,
            {"order_id": order_id, "previous_status": previous.value, "new_status": target.value},
            target_type="order_item",
        )
        self._notify_buyer(order.buyer_id, order_id, item, actor)

        rollup = self.roll_up_order_status(
            order_id, actor,
            courier_provider=courier_provider,
            courier_reference=courier_reference,
        )
        return ItemUpdateResult(success=True, order=rollup.order, item=item)

    def roll_up_order_status(
        self,
        order_id: str,
        actor: Actor,
        courier_provider: Optional[str] = None,
        courier_reference: Optional[str] = None,
    ) -> LifecycleResult:
        """
        Advance the order to the furthest milestone every item has reached

        Each intermediate edge goes through the validated commit step with the
        acting vendor; an order already at or past the milestone is left alone.
        """
        order = self.store.get(order_id)
        if order is None:
            return LifecycleResult.fail("Order not found", 404)

        target = rollup_target(self.store.get_items(order_id))
        if target is None:
            return LifecycleResult.ok(order)

        steps = forward_steps(order.status, target)
        result = LifecycleResult.ok(order)
        for step in steps:
            result = self.lifecycle.transition_order_status(
                order_id, step, actor,
                courier_provider=courier_provider,
                courier_reference=courier_reference,
            )
            if not result.success:
                logger.warning(f"Roll-up of order {order_id} stopped before {step.value}: {result.error}")
                return result
        return result

    def _notify_buyer(self, buyer_id: str, order_id: str, item: OrderItem, actor: Actor) -> None:
        vendor_name = item.vendor_name or actor.display_name
        if item.fulfillment_status == FulfillmentStatus.PACKED:
            title = "Order Being Prepared"
            message = f"{vendor_name} is preparing your order for shipping!"
        elif item.fulfillment_status == FulfillmentStatus.HANDED_TO_COURIER:
            title = "Order Handed to Courier"
            message = f"{vendor_name} has handed your order to the courier. It's on its way!"
        else:
            title = "Item Delivered"
            message = f"Your item from {vendor_name} has been delivered."
        self.lifecycle.send_notification(
            buyer_id, "buyer", NotificationType.ORDER_FULFILLED, title, message,
            {"order_id": order_id, "item_id": item.id, "vendor_name": vendor_name},
        )
