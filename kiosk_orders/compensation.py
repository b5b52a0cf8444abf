"""
Cancellation / Compensation Engine

Cancelling an order gives its stock back, reverses the commission snapshot
on its items and, when the buyer had paid, flags the payment as refunded.

The cancellation itself is committed under the order lock. Stock is handed
back afterwards, one claim per item, so a restore that fails can be retried
without giving any item back twice.
"""
import logging

from .lifecycle import OrderLifecycle
from .models import Actor, CancellationResult
from .notifications import NotificationType
from .order_state_machine import ActorRole, CancellationRules, OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)


class CompensationEngine:
    def __init__(self, lifecycle: OrderLifecycle):
        self.lifecycle = lifecycle
        self.store = lifecycle.store

    def cancel_order_with_compensation(self, order_id: str, actor: Actor) -> CancellationResult:
        """
        Cancel an order and undo its side effects

        Args:
            order_id: Order to cancel
            actor: admin or system

        Returns:
            CancellationResult with the inventory given back, any items whose
            restore failed, and whether a refund is owed
        """
        if actor.role not in (ActorRole.ADMIN, ActorRole.SYSTEM):
            return CancellationResult.fail("Only admins can cancel orders", 403)

        with self.store.lock(order_id):
            order = self.store.get(order_id)
            if order is None:
                return CancellationResult.fail("Order not found", 404)
            if not CancellationRules.can_cancel(order.status):
                return CancellationResult.fail(
                    f"Cannot cancel order with status: {order.status.value}", 400, order
                )

            for item in self.store.get_items(order_id):
                if item.commission_amount is not None:
                    self.store.update_item(item.id, commission_amount=0.0, vendor_earnings=0.0)

            refund_required = CancellationRules.refund_required(order.payment_status)
            fields = {"status": OrderStatus.CANCELLED, "updated_at": self.lifecycle.clock()}
            if refund_required:
                fields["payment_status"] = PaymentStatus.REFUNDED
            previous = order.status
            cancelled = self.store.update(order_id, **fields)
            if previous == OrderStatus.DISPUTED:
                self.lifecycle.resolve_open_dispute(order_id, OrderStatus.CANCELLED, actor)

        restored, pending = self.lifecycle.restore_order_inventory(order_id)

        logger.info(
            f"Order {order_id} cancelled from {previous.value}; "
            f"{len(restored)} items restored, {len(pending)} pending, refund required: {refund_required}"
        )
        self.lifecycle.record_audit(
            "ORDER_CANCELLED",
            actor,
            order_id,
            {
                "previous_status": previous.value,
                "restored_items": [delta.to_dict() for delta in restored],
                "pending_items": [delta.to_dict() for delta in pending],
                "refund_required": refund_required,
            },
            severity="warning" if pending else "info",
        )
        self.lifecycle.send_notification(
            cancelled.buyer_id, "buyer", NotificationType.ORDER_CANCELLED,
            "Order Cancelled",
            f"Your order #{order_id} has been cancelled. "
            "If you made a payment, a refund will be processed.",
            {"order_id": order_id, "refund_required": refund_required},
        )
        self.lifecycle.notify_vendors(
            cancelled, NotificationType.ORDER_CANCELLED,
            "Order Cancelled",
            f"Order #{order_id} has been cancelled.",
        )
        return CancellationResult(
            success=True,
            order=cancelled,
            restored_items=restored,
            pending_items=pending,
            refund_required=refund_required,
        )

    def retry_inventory_restore(self, order_id: str, actor: Actor) -> CancellationResult:
        """
        Hand back stock still owed by a cancelled or payment-failed order

        Items already restored are skipped, so this is safe to call repeatedly.
        """
        if actor.role not in (ActorRole.ADMIN, ActorRole.SYSTEM):
            return CancellationResult.fail("Only admins can restore inventory", 403)

        order = self.store.get(order_id)
        if order is None:
            return CancellationResult.fail("Order not found", 404)
        if order.status != OrderStatus.CANCELLED and order.payment_status != PaymentStatus.FAILED:
            return CancellationResult.fail(
                f"Stock is only given back for cancelled or failed orders, not {order.status.value}",
                400,
                order,
            )

        restored, pending = self.lifecycle.restore_order_inventory(order_id)
        if restored:
            self.lifecycle.record_audit(
                "INVENTORY_RESTORED",
                actor,
                order_id,
                {
                    "restored_items": [delta.to_dict() for delta in restored],
                    "pending_items": [delta.to_dict() for delta in pending],
                },
            )
        return CancellationResult(
            success=True,
            order=order,
            restored_items=restored,
            pending_items=pending,
        )
