"""
Order Lifecycle Service - the validated commit step

Every order status change goes through `OrderLifecycle.transition_order_status`:
lock the order, re-read it, validate, persist, release, then report to the
audit trail and notify buyer/vendors. Audit and notification failures are
logged and never undo a committed change.

Commission rate lookups and inventory restores may call out over the network
and always run outside the order lock.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from . import config
from .commission import CommissionCalculation, CommissionCalculator
from .db.repositories.inventory_repo import InMemoryInventory
from .models import (
    Actor,
    CreateOrderInput,
    Dispute,
    DisputeStatus,
    InventoryDelta,
    LifecycleResult,
    Order,
    OrderItem,
    new_dispute_id,
    new_order_id,
    new_order_item_id,
    utc_now,
)
from .notifications import NotificationType, notifier as default_notifier
from .order_state_machine import (
    ActorRole,
    OrderStatus,
    PaymentStatus,
    TransitionResult,
    normalize_order_status,
    normalize_payment_status,
    validate_transition,
)
from .orders_repository import OrderStore
from .transaction_trust import audit_logger as default_audit_logger

logger = logging.getLogger(__name__)


@dataclass
class AppliedTransition:
    """What happened under the lock, kept for reporting once it is released"""
    order: Order
    target: OrderStatus
    actor: Actor
    check: TransitionResult
    updated: Optional[Order] = None
    resolved_dispute: Optional[Dispute] = None


class OrderLifecycle:
    """
    Owns the order store and the collaborators every lifecycle operation uses

    Args:
        store: OrderStore implementation
        audit: object with record(action, actor_id, actor_role, target_id, target_type, details, severity)
        notifier: object with notify(user_id, role, type, title, message, payload)
        inventory: object with restore_quantity(product_id, quantity)
        commission: CommissionCalculator
        clock: returns the current timezone-aware datetime
    """

    def __init__(
        self,
        store: OrderStore,
        audit=None,
        notifier=None,
        inventory=None,
        commission: Optional[CommissionCalculator] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.audit = audit or default_audit_logger
        self.notifier = notifier or default_notifier
        self.inventory = inventory or InMemoryInventory()
        self.commission = commission or CommissionCalculator()
        self.clock = clock

    # ========================================================================
    # COLLABORATORS (best-effort)
    # ========================================================================

    def record_audit(
        self,
        action: str,
        actor: Actor,
        target_id: str,
        details: Dict[str, Any],
        target_type: str = "order",
        severity: str = "info",
    ) -> None:
        try:
            self.audit.record(
                action=action,
                actor_id=actor.id,
                actor_role=actor.role.value,
                target_id=target_id,
                target_type=target_type,
                details=details,
                severity=severity,
            )
        except Exception as exc:
            logger.error(f"Audit record {action} for {target_id} failed: {exc}")

    def send_notification(
        self,
        user_id: str,
        role: str,
        type: NotificationType,
        title: str,
        message: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            self.notifier.notify(
                user_id=user_id,
                role=role,
                type=type.value,
                title=title,
                message=message,
                payload=payload,
            )
        except Exception as exc:
            logger.error(f"Notification {type.value} to {role}:{user_id} failed: {exc}")

    def notify_vendors(
        self,
        order: Order,
        type: NotificationType,
        title: str,
        message: str,
    ) -> None:
        for vendor_id in order.vendor_ids():
            self.send_notification(vendor_id, "vendor", type, title, message, {"order_id": order.id})

    # ========================================================================
    # AUTHORIZATION
    # ========================================================================

    def check_actor_scope(self, order: Order, actor: Actor) -> Optional[str]:
        """Buyers act only on their own orders, vendors only on orders holding their items."""
        if actor.role == ActorRole.BUYER and order.buyer_id != actor.id:
            return "Not authorized to modify this order"
        if actor.role == ActorRole.VENDOR and actor.id not in order.vendor_ids():
            return "Not authorized to modify this order"
        return None

    # ========================================================================
    # COMMIT STEP
    # ========================================================================

    def transition_order_status(
        self,
        order_id: str,
        new_status: Union[str, OrderStatus],
        actor: Actor,
        courier_provider: Optional[str] = None,
        courier_reference: Optional[str] = None,
        dispute_reason: Optional[str] = None,
    ) -> LifecycleResult:
        """
        Validate and persist one order status change

        Returns:
            LifecycleResult; 404 missing order, 403 actor out of scope,
            409 rejected transition (audited), 400 unknown status
        """
        try:
            target = normalize_order_status(new_status)
        except ValueError:
            return LifecycleResult.fail(f"Unknown order status: {new_status}", 400)

        # rate lookups may hit the network, so they happen before the lock
        commission = self.price_commission(order_id) if target == OrderStatus.CONFIRMED else None

        with self.store.lock(order_id):
            order = self.store.get(order_id)
            if order is None:
                return LifecycleResult.fail("Order not found", 404)

            scope_error = self.check_actor_scope(order, actor)
            if scope_error:
                logger.warning(f"{actor.role.value}:{actor.id} out of scope for order {order_id}")
                return LifecycleResult.fail(scope_error, 403, order)

            applied = self.apply_transition(
                order, target, actor,
                courier_provider=courier_provider,
                courier_reference=courier_reference,
                dispute_reason=dispute_reason,
                commission=commission,
            )

        return self.report_transition(applied)

    def apply_transition(
        self,
        order: Order,
        target: OrderStatus,
        actor: Actor,
        courier_provider: Optional[str] = None,
        courier_reference: Optional[str] = None,
        dispute_reason: Optional[str] = None,
        commission: Optional[Dict[str, CommissionCalculation]] = None,
    ) -> AppliedTransition:
        """
        Validate and persist; the caller must hold store.lock(order.id)

        commission maps item id to a snapshot from price_commission and is
        written when the order enters confirmed.
        """
        check = validate_transition(order.status, target, actor.role)
        applied = AppliedTransition(order=order, target=target, actor=actor, check=check)
        if not check.valid:
            return applied

        applied.updated = self._commit(
            order, target, courier_provider, courier_reference, dispute_reason, commission or {}
        )
        if order.status == OrderStatus.DISPUTED:
            applied.resolved_dispute = self.resolve_open_dispute(order.id, target, actor)
        return applied

    def report_transition(self, applied: AppliedTransition) -> LifecycleResult:
        """Audit, log and notify for an applied transition; call after releasing the lock"""
        order, target, actor = applied.order, applied.target, applied.actor
        previous = order.status

        if not applied.check.valid:
            logger.warning(f"Rejected transition for order {order.id}: {applied.check.reason}")
            self.record_audit(
                "ORDER_TRANSITION_REJECTED",
                actor,
                order.id,
                {
                    "previous_status": previous.value,
                    "attempted_status": target.value,
                    "reason": applied.check.reason,
                },
                severity="warning",
            )
            return LifecycleResult.fail(applied.check.reason, 409, order)

        logger.info(f"Order {order.id}: {previous.value} -> {target.value} by {actor.role.value}")
        details = {"previous_status": previous.value, "new_status": target.value}
        if applied.resolved_dispute is not None:
            details["resolved_dispute_id"] = applied.resolved_dispute.id
        self.record_audit("ORDER_STATUS_CHANGED", actor, order.id, details)
        self._notify_status_change(applied.updated, actor)
        return LifecycleResult.ok(applied.updated)

    def _commit(
        self,
        order: Order,
        target: OrderStatus,
        courier_provider: Optional[str],
        courier_reference: Optional[str],
        dispute_reason: Optional[str],
        commission: Dict[str, CommissionCalculation],
    ) -> Order:
        now = self.clock()
        fields: Dict[str, Any] = {"status": target, "updated_at": now}

        if target == OrderStatus.DELIVERED:
            fields["delivered_at"] = now
        elif target == OrderStatus.DISPUTED:
            fields["disputed_at"] = now
            fields["dispute_reason"] = dispute_reason
        elif target == OrderStatus.OUT_FOR_DELIVERY:
            if courier_provider:
                fields["courier_provider"] = courier_provider
            if courier_reference:
                fields["courier_reference"] = courier_reference

        updated = self.store.update(order.id, **fields)

        if target == OrderStatus.CONFIRMED:
            self.stamp_commission(commission)
        elif target == OrderStatus.DISPUTED:
            self.store.create_dispute(Dispute(
                id=new_dispute_id(),
                order_id=order.id,
                buyer_id=order.buyer_id,
                reason=dispute_reason or "",
                created_at=now,
            ))
        return updated

    def resolve_open_dispute(self, order_id: str, target: OrderStatus, actor: Actor) -> Optional[Dispute]:
        dispute = self.store.get_open_dispute(order_id)
        if dispute is None:
            return None
        return self.store.update_dispute(
            dispute.id,
            status=DisputeStatus.RESOLVED,
            resolution=f"Order {target.value} by {actor.role.value}",
            resolved_at=self.clock(),
        )

    # ========================================================================
    # COMMISSION & INVENTORY
    # ========================================================================

    def price_commission(self, order_id: str) -> Dict[str, CommissionCalculation]:
        """Commission snapshot per item id; call without holding the order lock"""
        priced: Dict[str, CommissionCalculation] = {}
        for item in self.store.get_items(order_id):
            try:
                priced[item.id] = self.commission.calculate_commission(
                    item.final_price, item.vendor_id, item.category_id
                )
            except ValueError as exc:
                logger.error(f"Commission not stamped on item {item.id}: {exc}")
        return priced

    def stamp_commission(self, commission: Dict[str, CommissionCalculation]) -> List[OrderItem]:
        return [
            self.store.update_item(
                item_id,
                commission_rate=calc.rate,
                commission_amount=calc.commission_amount,
                vendor_earnings=calc.vendor_earnings,
            )
            for item_id, calc in commission.items()
        ]

    def restore_order_inventory(self, order_id: str) -> Tuple[List[InventoryDelta], List[InventoryDelta]]:
        """
        Give back the stock of every item of the order not restored yet

        Items are claimed (stock_restored=True) under the order lock and the
        inventory calls run after it is released. A failed restore drops the
        claim so the next call picks the item up again; an item is never
        handed back twice. Must not be called with the order lock held.

        Returns:
            (restored, pending) inventory deltas
        """
        with self.store.lock(order_id):
            claimed = [item for item in self.store.get_items(order_id) if not item.stock_restored]
            for item in claimed:
                self.store.update_item(item.id, stock_restored=True)

        restored: List[InventoryDelta] = []
        pending: List[InventoryDelta] = []
        for item in claimed:
            delta = InventoryDelta(product_id=item.product_id, quantity=item.quantity)
            try:
                done = self.inventory.restore_quantity(item.product_id, item.quantity)
            except Exception as exc:
                logger.error(f"Restoring {item.quantity} x {item.product_id} for order {order_id} failed: {exc}")
                done = False
            if done:
                restored.append(delta)
            else:
                self.store.update_item(item.id, stock_restored=False)
                pending.append(delta)

        if pending:
            logger.warning(f"Order {order_id}: {len(pending)} item(s) still waiting for a stock restore")
        return restored, pending

    def _notify_status_change(self, order: Order, actor: Actor) -> None:
        status = order.status
        if status == OrderStatus.OUT_FOR_DELIVERY:
            courier = f" via {order.courier_provider}" if order.courier_provider else ""
            self.send_notification(
                order.buyer_id, "buyer", NotificationType.ORDER_SHIPPED,
                "Order on its way",
                f"Your order #{order.id} is out for delivery{courier}.",
                {"order_id": order.id, "courier_reference": order.courier_reference},
            )
        elif status == OrderStatus.DELIVERED:
            self.send_notification(
                order.buyer_id, "buyer", NotificationType.ORDER_DELIVERED,
                "Order delivered",
                f"Your order #{order.id} has been delivered. You have "
                f"{config.DISPUTE_WINDOW_HOURS} hours to report a problem.",
                {"order_id": order.id},
            )
        elif status == OrderStatus.DISPUTED:
            self.notify_vendors(
                order, NotificationType.ORDER_DISPUTED,
                "Order disputed",
                f"The buyer has opened a dispute on order #{order.id}.",
            )
        elif status == OrderStatus.COMPLETED:
            self.notify_vendors(
                order, NotificationType.ORDER_FULFILLED,
                "Order completed",
                f"Order #{order.id} is complete and earnings are released.",
            )
        elif status == OrderStatus.CANCELLED:
            self.send_notification(
                order.buyer_id, "buyer", NotificationType.ORDER_CANCELLED,
                "Order cancelled",
                f"Your order #{order.id} has been cancelled by {actor.display_name}.",
                {"order_id": order.id},
            )

    # ========================================================================
    # CREATION & ADMINISTRATION
    # ========================================================================

    def create_order(self, data: CreateOrderInput) -> LifecycleResult:
        """
        Persist a new order in created/pending with one item row per line item

        Stock is decremented at checkout before this is called.
        """
        now = self.clock()
        order_id = new_order_id()
        order = Order(
            id=order_id,
            buyer_id=data.buyer_id,
            buyer_name=data.buyer_name,
            buyer_email=data.buyer_email,
            items=data.items,
            subtotal=data.subtotal,
            discount_total=data.discount_total,
            shipping_fee=data.shipping_fee,
            tax=data.tax,
            total=data.total,
            currency=data.currency or config.DEFAULT_CURRENCY,
            status=OrderStatus.CREATED,
            payment_status=PaymentStatus.PENDING,
            payment_method=data.payment_method,
            shipping_address=data.shipping_address,
            coupon_code=data.coupon_code,
            notes=data.notes,
            created_at=now,
            updated_at=now,
        )
        items = [
            OrderItem(
                id=new_order_item_id(),
                order_id=order_id,
                product_id=line.product_id,
                product_name=line.product_name,
                vendor_id=line.vendor_id,
                vendor_name=line.vendor_name,
                category_id=line.category_id,
                quantity=line.quantity,
                unit_price=line.price,
                applied_discount=line.applied_discount,
                final_price=line.resolved_final_price(),
                image=line.image,
                variations=line.variations,
                created_at=now,
                updated_at=now,
            )
            for line in data.items
        ]
        created = self.store.create(order, items)

        buyer = Actor(id=data.buyer_id, role=ActorRole.BUYER, name=data.buyer_name)
        self.record_audit(
            "ORDER_CREATED", buyer, order_id,
            {"total": created.total, "currency": created.currency, "item_count": len(items)},
        )
        self.send_notification(
            created.buyer_id, "buyer", NotificationType.ORDER_PLACED,
            "Order placed",
            f"Your order #{order_id} has been placed and is awaiting payment.",
            {"order_id": order_id, "total": created.total},
        )
        return LifecycleResult.ok(created)

    def update_order_details(
        self,
        order_id: str,
        actor: Actor,
        tracking_number: Optional[str] = None,
        notes: Optional[str] = None,
        payment_status: Optional[Union[str, PaymentStatus]] = None,
    ) -> LifecycleResult:
        """Admin patch of side fields; order status is never touched here"""
        if actor.role not in (ActorRole.ADMIN, ActorRole.SYSTEM):
            return LifecycleResult.fail("Only admins can update orders", 403)

        fields: Dict[str, Any] = {}
        if payment_status is not None:
            try:
                new_payment_status = normalize_payment_status(payment_status)
            except ValueError:
                return LifecycleResult.fail(f"Unknown payment status: {payment_status}", 400)
            if new_payment_status == PaymentStatus.PAID:
                return LifecycleResult.fail(
                    "Payment status cannot be manually set to paid. "
                    "Payment confirmation must come from the payment gateway.",
                    403,
                )
            fields["payment_status"] = new_payment_status
        if tracking_number is not None:
            fields["tracking_number"] = tracking_number
        if notes is not None:
            fields["notes"] = notes

        with self.store.lock(order_id):
            order = self.store.get(order_id)
            if order is None:
                return LifecycleResult.fail("Order not found", 404)
            if not fields:
                return LifecycleResult.ok(order)
            fields["updated_at"] = self.clock()
            updated = self.store.update(order_id, **fields)

        changes = {
            key: value.value if isinstance(value, PaymentStatus) else value
            for key, value in fields.items()
            if key != "updated_at"
        }
        self.record_audit("ORDER_UPDATED", actor, order_id, {"changes": changes})
        return LifecycleResult.ok(updated)

    def delete_order(self, order_id: str, actor: Actor) -> LifecycleResult:
        if actor.role != ActorRole.ADMIN:
            return LifecycleResult.fail("Only admins can delete orders", 403)
        with self.store.lock(order_id):
            order = self.store.get(order_id)
            if order is None:
                return LifecycleResult.fail("Order not found", 404)
            self.store.delete(order_id)
        self.record_audit(
            "ORDER_DELETED", actor, order_id,
            {"status": order.status.value, "payment_status": order.payment_status.value},
            severity="warning",
        )
        return LifecycleResult.ok(order)
