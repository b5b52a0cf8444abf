"""
Dispute Window Enforcer

Buyers may dispute a delivered order for DISPUTE_WINDOW_HOURS after delivery.
Delivered orders older than that with no open dispute are completed by a
periodic, stateless sweep.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from . import config
from .lifecycle import OrderLifecycle
from .models import SYSTEM_ACTOR, Actor, LifecycleResult, Order
from .order_state_machine import ActorRole, OrderStatus
from .orders_repository import OrderLockTimeoutError

logger = logging.getLogger(__name__)


def dispute_window() -> timedelta:
    return timedelta(hours=config.DISPUTE_WINDOW_HOURS)


def is_within_dispute_window(order: Order, now: datetime) -> bool:
    """True while now is no later than delivered_at plus the window"""
    if order.delivered_at is None:
        return False
    return now - order.delivered_at <= dispute_window()


class DisputeWindowEnforcer:
    def __init__(self, lifecycle: OrderLifecycle):
        self.lifecycle = lifecycle
        self.store = lifecycle.store

    def raise_dispute(self, order_id: str, buyer_id: str, reason: str) -> LifecycleResult:
        """
        Move a delivered order to disputed on behalf of its buyer

        Preconditions are checked here for precise errors; the commit step
        re-validates under the order lock.
        """
        order = self.store.get(order_id)
        if order is None:
            return LifecycleResult.fail("Order not found", 404)
        if order.buyer_id != buyer_id:
            return LifecycleResult.fail("Not authorized to dispute this order", 403)
        if order.status != OrderStatus.DELIVERED:
            return LifecycleResult.fail("Can only dispute delivered orders", 400, order)
        if not is_within_dispute_window(order, self.lifecycle.clock()):
            return LifecycleResult.fail(
                f"Dispute window has expired ({config.DISPUTE_WINDOW_HOURS} hours after delivery)",
                400,
                order,
            )

        buyer = Actor(id=buyer_id, role=ActorRole.BUYER, name=order.buyer_name, email=order.buyer_email)
        return self.lifecycle.transition_order_status(
            order_id, OrderStatus.DISPUTED, buyer, dispute_reason=reason
        )

    def get_orders_eligible_for_completion(self, now: Optional[datetime] = None) -> List[Order]:
        """Delivered orders past the window with no open dispute, oldest delivery first"""
        now = now or self.lifecycle.clock()
        cutoff = now - dispute_window()
        return [
            order for order in self.store.list_delivered_before(cutoff)
            if self.store.get_open_dispute(order.id) is None
        ]

    def auto_complete_delivered_orders(self, now: Optional[datetime] = None) -> int:
        """
        Complete every eligible order as the system actor

        Each order is handled on its own: a rejection (for example a dispute
        opened since the query) or an order lock held elsewhere is logged and
        the sweep moves on; the next sweep picks the order up again.

        Returns:
            Number of orders completed
        """
        eligible = self.get_orders_eligible_for_completion(now)
        completed = []
        for order in eligible:
            try:
                result = self.lifecycle.transition_order_status(
                    order.id, OrderStatus.COMPLETED, SYSTEM_ACTOR
                )
            except OrderLockTimeoutError as exc:
                logger.warning(f"Auto-complete skipped order {order.id}: {exc}")
                continue
            if result.success:
                completed.append(order.id)
            else:
                logger.warning(f"Auto-complete skipped order {order.id}: {result.error}")

        logger.info(f"Auto-complete sweep: {len(completed)} of {len(eligible)} eligible orders completed")
        if completed:
            self.lifecycle.record_audit(
                "ORDERS_AUTO_COMPLETED",
                SYSTEM_ACTOR,
                "batch",
                {"completed_count": len(completed), "order_ids": completed},
                target_type="orders",
            )
        return len(completed)
