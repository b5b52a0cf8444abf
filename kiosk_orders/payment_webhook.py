"""
Payment Webhook Handler - reconciles provider callbacks with order state

Providers retry and reorder callbacks, so every event is checked against the
stored payment state under the order lock:
- paid twice with the same reference is a no-op
- paid again with a new reference is ignored and audited
- a paid order is never downgraded
- promotion created -> confirmed happens at most once, as the system actor
- a payment landing on a cancelled order is recorded and flagged for refund
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, field_validator

from .lifecycle import AppliedTransition, OrderLifecycle
from .models import SYSTEM_ACTOR, Order
from .notifications import NotificationType
from .order_state_machine import OrderStatus, PaymentStatus, normalize_payment_status

logger = logging.getLogger(__name__)

# Paid amount may differ from the order total by rounding only
AMOUNT_TOLERANCE = 0.01


class PaymentWebhook(BaseModel):
    """Provider-neutral payment callback"""
    order_id: str
    payment_status: PaymentStatus
    reference: str
    provider: str = "paystack"
    paid_at: Optional[datetime] = None
    amount: Optional[float] = None
    method: Optional[str] = None
    currency: Optional[str] = None

    @field_validator("payment_status", mode="before")
    @classmethod
    def _normalize_payment_status(cls, value: Any) -> PaymentStatus:
        return normalize_payment_status(value)


class WebhookAction(str, Enum):
    CONFIRMED = "confirmed"  # Payment recorded and order promoted
    PAYMENT_RECORDED = "payment_recorded"  # Payment recorded, order status untouched
    DUPLICATE = "duplicate"
    DUPLICATE_IGNORED = "duplicate_ignored"  # Already paid under another reference
    AMOUNT_MISMATCH = "amount_mismatch"
    FAILURE_RECORDED = "failure_recorded"
    REFUND_RECORDED = "refund_recorded"
    REFUND_REQUIRED = "refund_required"  # Paid after cancellation; money must go back
    IGNORED = "ignored"
    ORDER_NOT_FOUND = "order_not_found"


@dataclass
class WebhookOutcome:
    action: WebhookAction
    order: Optional[Order] = None
    detail: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.action in (
            WebhookAction.CONFIRMED,
            WebhookAction.PAYMENT_RECORDED,
            WebhookAction.FAILURE_RECORDED,
            WebhookAction.REFUND_RECORDED,
            WebhookAction.REFUND_REQUIRED,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "detail": self.detail,
            "order": self.order.model_dump(mode="json") if self.order else None,
        }


def verify_signature(payload: bytes, signature: str, secret: str) -> bool:
    """
    Check an HMAC-SHA512 hex signature over the raw request body

    Returns False when no secret is configured.
    """
    if not secret:
        logger.warning("No payment webhook secret configured")
        return False
    if isinstance(payload, str):
        payload = payload.encode()
    expected = hmac.new(secret.encode(), payload, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature or "")


def parse_paystack_event(event: Dict[str, Any]) -> Optional[PaymentWebhook]:
    """
    Map a Paystack charge event to a PaymentWebhook

    Amounts arrive in minor units. Returns None for events other than
    charge.success / charge.failed, or when the order id is missing.
    """
    event_type = event.get("event")
    status_by_event = {
        "charge.success": PaymentStatus.PAID,
        "charge.failed": PaymentStatus.FAILED,
    }
    if event_type not in status_by_event:
        logger.info(f"Unhandled Paystack event type: {event_type}")
        return None

    data = event.get("data") or {}
    order_id = (data.get("metadata") or {}).get("orderId") or (data.get("metadata") or {}).get("order_id")
    if not order_id:
        logger.error(f"No order id in Paystack metadata for reference {data.get('reference')}")
        return None

    amount = data.get("amount")
    return PaymentWebhook(
        order_id=order_id,
        payment_status=status_by_event[event_type],
        reference=data.get("reference", ""),
        provider="paystack",
        paid_at=data.get("paid_at"),
        amount=amount / 100 if amount is not None else None,
        method=data.get("channel"),
        currency=data.get("currency"),
    )


class PaymentWebhookHandler:
    def __init__(self, lifecycle: OrderLifecycle):
        self.lifecycle = lifecycle
        self.store = lifecycle.store

    def handle_payment_webhook(self, webhook: PaymentWebhook) -> WebhookOutcome:
        """
        Apply one payment callback idempotently

        Args:
            webhook: Normalized provider callback

        Returns:
            WebhookOutcome naming the action taken
        """
        if webhook.payment_status == PaymentStatus.PAID:
            return self._handle_paid(webhook)
        if webhook.payment_status == PaymentStatus.FAILED:
            return self._handle_failed(webhook)
        if webhook.payment_status == PaymentStatus.REFUNDED:
            return self._handle_refunded(webhook)

        logger.warning(f"Ignoring '{webhook.payment_status.value}' callback for order {webhook.order_id}")
        return WebhookOutcome(WebhookAction.IGNORED, detail="Pending callbacks carry no state change")

    def _handle_paid(self, webhook: PaymentWebhook) -> WebhookOutcome:
        # rate lookups may hit the network, so the snapshot is taken before the lock
        current = self.store.get(webhook.order_id)
        commission = None
        if current is not None and current.status == OrderStatus.CREATED:
            commission = self.lifecycle.price_commission(webhook.order_id)

        applied: Optional[AppliedTransition] = None
        with self.store.lock(webhook.order_id):
            order = self.store.get(webhook.order_id)
            if order is None:
                logger.error(f"Payment callback for unknown order {webhook.order_id}")
                return WebhookOutcome(WebhookAction.ORDER_NOT_FOUND, detail="Order not found")

            if order.payment_status == PaymentStatus.PAID:
                if order.payment_reference == webhook.reference:
                    logger.info(f"Duplicate webhook: order {order.id} already paid with {webhook.reference}")
                    return WebhookOutcome(WebhookAction.DUPLICATE, order)
                outcome = WebhookOutcome(
                    WebhookAction.DUPLICATE_IGNORED, order,
                    detail="Order already paid, ignoring duplicate payment attempt",
                )
            elif webhook.amount is not None and abs(webhook.amount - order.total) > AMOUNT_TOLERANCE:
                outcome = WebhookOutcome(
                    WebhookAction.AMOUNT_MISMATCH, order,
                    detail=f"Paid {webhook.amount}, expected {order.total}",
                )
            else:
                paid = self.store.update(
                    order.id,
                    payment_status=PaymentStatus.PAID,
                    payment_reference=webhook.reference,
                    payment_provider=webhook.provider,
                    payment_method=webhook.method or order.payment_method,
                    paid_at=webhook.paid_at or self.lifecycle.clock(),
                )
                outcome = WebhookOutcome(WebhookAction.PAYMENT_RECORDED, paid)
                if paid.status == OrderStatus.CREATED:
                    applied = self.lifecycle.apply_transition(
                        paid, OrderStatus.CONFIRMED, SYSTEM_ACTOR, commission=commission
                    )
                elif paid.status == OrderStatus.CANCELLED:
                    outcome = WebhookOutcome(
                        WebhookAction.REFUND_REQUIRED, paid,
                        detail="Payment received for a cancelled order",
                    )

        if outcome.action == WebhookAction.DUPLICATE_IGNORED:
            logger.warning(
                f"Order {order.id} already paid (ref: {order.payment_reference}), "
                f"ignoring new reference {webhook.reference}"
            )
            self.lifecycle.record_audit(
                "PAYMENT_DUPLICATE_IGNORED", SYSTEM_ACTOR, order.id,
                {
                    "existing_reference": order.payment_reference,
                    "new_reference": webhook.reference,
                    "reason": outcome.detail,
                },
                severity="warning",
            )
            return outcome

        if outcome.action == WebhookAction.AMOUNT_MISMATCH:
            logger.error(f"Amount mismatch for order {order.id}: {outcome.detail}")
            self.lifecycle.record_audit(
                "PAYMENT_AMOUNT_MISMATCH", SYSTEM_ACTOR, order.id,
                {
                    "reference": webhook.reference,
                    "paid_amount": webhook.amount,
                    "expected_amount": order.total,
                    "currency": webhook.currency or order.currency,
                },
                severity="warning",
            )
            return outcome

        if outcome.action == WebhookAction.REFUND_REQUIRED:
            logger.error(f"Order {order.id} was cancelled before payment {webhook.reference} arrived; refund needed")
            self.lifecycle.record_audit(
                "PAYMENT_ON_CANCELLED_ORDER", SYSTEM_ACTOR, order.id,
                {
                    "reference": webhook.reference,
                    "amount": webhook.amount,
                    "currency": webhook.currency or order.currency,
                    "provider": webhook.provider,
                },
                severity="warning",
            )
            return outcome

        logger.info(f"Order {order.id} marked as paid ({webhook.provider} {webhook.reference})")
        self.lifecycle.record_audit(
            "PAYMENT_RECEIVED", SYSTEM_ACTOR, order.id,
            {
                "reference": webhook.reference,
                "amount": webhook.amount,
                "currency": webhook.currency or order.currency,
                "provider": webhook.provider,
                "method": webhook.method,
            },
        )
        if applied is not None:
            result = self.lifecycle.report_transition(applied)
            if result.success:
                outcome = WebhookOutcome(WebhookAction.CONFIRMED, result.order)

        self._notify_paid(outcome.order)
        return outcome

    def _handle_failed(self, webhook: PaymentWebhook) -> WebhookOutcome:
        with self.store.lock(webhook.order_id):
            order = self.store.get(webhook.order_id)
            if order is None:
                logger.error(f"Payment failure for unknown order {webhook.order_id}")
                return WebhookOutcome(WebhookAction.ORDER_NOT_FOUND, detail="Order not found")

            if order.payment_status == PaymentStatus.PAID:
                logger.warning(f"Ignoring failure callback for paid order {order.id}")
                return WebhookOutcome(WebhookAction.IGNORED, order, detail="Order already paid")
            if order.payment_status == PaymentStatus.FAILED:
                if order.payment_reference == webhook.reference:
                    return WebhookOutcome(WebhookAction.DUPLICATE, order)
                failed = self.store.update(order.id, payment_reference=webhook.reference)
                return WebhookOutcome(WebhookAction.FAILURE_RECORDED, failed)
            if order.payment_status == PaymentStatus.REFUNDED:
                return WebhookOutcome(WebhookAction.IGNORED, order, detail="Order already refunded")

            failed = self.store.update(
                order.id,
                payment_status=PaymentStatus.FAILED,
                payment_reference=webhook.reference,
                payment_provider=webhook.provider,
            )

        # first pending -> failed change gives the checkout stock back
        restored, pending = self.lifecycle.restore_order_inventory(order.id)

        logger.warning(f"Payment failed for order {order.id} ({webhook.reference})")
        self.lifecycle.record_audit(
            "PAYMENT_FAILED", SYSTEM_ACTOR, order.id,
            {
                "reference": webhook.reference,
                "provider": webhook.provider,
                "restored_items": [delta.to_dict() for delta in restored],
                "pending_items": [delta.to_dict() for delta in pending],
            },
            severity="warning",
        )
        return WebhookOutcome(WebhookAction.FAILURE_RECORDED, failed)

    def _handle_refunded(self, webhook: PaymentWebhook) -> WebhookOutcome:
        with self.store.lock(webhook.order_id):
            order = self.store.get(webhook.order_id)
            if order is None:
                return WebhookOutcome(WebhookAction.ORDER_NOT_FOUND, detail="Order not found")
            if order.payment_status == PaymentStatus.REFUNDED:
                return WebhookOutcome(WebhookAction.DUPLICATE, order)
            if order.payment_status != PaymentStatus.PAID:
                logger.warning(
                    f"Ignoring refund for order {order.id} in payment status {order.payment_status.value}"
                )
                return WebhookOutcome(WebhookAction.IGNORED, order, detail="Only paid orders can be refunded")
            refunded = self.store.update(order.id, payment_status=PaymentStatus.REFUNDED)

        self.lifecycle.record_audit(
            "PAYMENT_REFUNDED", SYSTEM_ACTOR, order.id,
            {"reference": webhook.reference, "provider": webhook.provider},
        )
        return WebhookOutcome(WebhookAction.REFUND_RECORDED, refunded)

    def _notify_paid(self, order: Order) -> None:
        self.lifecycle.send_notification(
            order.buyer_id, "buyer", NotificationType.ORDER_PAID,
            "Payment Received",
            f"We received your payment for order #{order.id}.",
            {"order_id": order.id, "total": order.total},
        )
        self.lifecycle.notify_vendors(
            order, NotificationType.ORDER_PAID,
            "New Order",
            f"You have a new paid order #{order.id}.",
        )
