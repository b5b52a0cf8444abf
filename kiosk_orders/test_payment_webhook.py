"""
Payment webhook tests
Idempotent paid/failed/refunded callbacks and signature checks
"""
import hashlib
import hmac
import threading
import unittest
from contextlib import contextmanager
from unittest import mock

from kiosk_orders.compensation import CompensationEngine
from kiosk_orders.models import SYSTEM_ACTOR
from kiosk_orders.order_state_machine import OrderStatus, PaymentStatus
from kiosk_orders.payment_webhook import (
    PaymentWebhook,
    PaymentWebhookHandler,
    WebhookAction,
    parse_paystack_event,
    verify_signature,
)
from kiosk_orders.testing import FixedClock, FlakyInventory, make_lifecycle, make_line_item, seed_order


def paid(order, reference="ref_1", amount=None):
    return PaymentWebhook(
        order_id=order.id,
        payment_status="paid",
        reference=reference,
        provider="paystack",
        amount=order.total if amount is None else amount,
        method="mobile_money",
    )


class TestPaidWebhook(unittest.TestCase):

    def setUp(self):
        self.clock = FixedClock()
        self.lifecycle = make_lifecycle(self.clock, stock={"p1": 3})
        self.handler = PaymentWebhookHandler(self.lifecycle)
        self.order = seed_order(self.lifecycle, items=[make_line_item("p1", "vendor_a", quantity=2, price=50.0)])

    def _confirmations(self, order_id):
        return [
            log for log in self.lifecycle.audit.query_logs({"action": "ORDER_STATUS_CHANGED", "target_id": order_id})
            if log["details"]["new_status"] == "confirmed"
        ]

    def test_paid_promotes_created_order(self):
        outcome = self.handler.handle_payment_webhook(paid(self.order))

        self.assertEqual(outcome.action, WebhookAction.CONFIRMED)
        stored = self.lifecycle.store.get(self.order.id)
        self.assertEqual(stored.status, OrderStatus.CONFIRMED)
        self.assertEqual(stored.payment_status, PaymentStatus.PAID)
        self.assertEqual(stored.payment_reference, "ref_1")
        self.assertEqual(stored.paid_at, self.clock())
        self.assertEqual(self._confirmations(self.order.id)[0]["actor_role"], "system")

        item = self.lifecycle.store.get_items(self.order.id)[0]
        self.assertEqual(item.commission_amount, 8.0)
        self.assertEqual(item.vendor_earnings, 92.0)

        types = [n["type"] for n in self.lifecycle.notifier.sent]
        self.assertIn("order_paid", types)

    def test_same_reference_is_duplicate(self):
        self.handler.handle_payment_webhook(paid(self.order))
        outcome = self.handler.handle_payment_webhook(paid(self.order))

        self.assertEqual(outcome.action, WebhookAction.DUPLICATE)
        self.assertFalse(outcome.changed)
        self.assertEqual(len(self._confirmations(self.order.id)), 1)

    def test_two_references_in_either_order_confirm_once(self):
        other = seed_order(self.lifecycle, items=[make_line_item("p1", "vendor_a", quantity=2, price=50.0)])
        for order, references in ((self.order, ("ref_a", "ref_b")), (other, ("ref_b", "ref_a"))):
            first = self.handler.handle_payment_webhook(paid(order, references[0]))
            second = self.handler.handle_payment_webhook(paid(order, references[1]))

            self.assertEqual(first.action, WebhookAction.CONFIRMED)
            self.assertEqual(second.action, WebhookAction.DUPLICATE_IGNORED)
            stored = self.lifecycle.store.get(order.id)
            self.assertEqual(stored.status, OrderStatus.CONFIRMED)
            self.assertEqual(stored.payment_reference, references[0])
            self.assertEqual(len(self._confirmations(order.id)), 1)

        ignored = self.lifecycle.audit.query_logs({"action": "PAYMENT_DUPLICATE_IGNORED"})
        self.assertEqual(len(ignored), 2)
        self.assertEqual(ignored[0]["severity"], "warning")

    def test_retry_never_regresses_order(self):
        self.handler.handle_payment_webhook(paid(self.order))
        self.lifecycle.store.update(self.order.id, status=OrderStatus.PREPARING)

        self.handler.handle_payment_webhook(paid(self.order))
        self.handler.handle_payment_webhook(paid(self.order, "ref_2"))
        self.assertEqual(self.lifecycle.store.get(self.order.id).status, OrderStatus.PREPARING)

    def test_concurrent_duplicates_confirm_once(self):
        outcomes = []

        def deliver():
            outcomes.append(self.handler.handle_payment_webhook(paid(self.order)).action)

        threads = [threading.Thread(target=deliver) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(outcomes.count(WebhookAction.CONFIRMED), 1)
        self.assertEqual(outcomes.count(WebhookAction.DUPLICATE), 7)
        self.assertEqual(len(self._confirmations(self.order.id)), 1)

    def test_amount_mismatch_changes_nothing(self):
        outcome = self.handler.handle_payment_webhook(paid(self.order, amount=99.0))

        self.assertEqual(outcome.action, WebhookAction.AMOUNT_MISMATCH)
        stored = self.lifecycle.store.get(self.order.id)
        self.assertEqual(stored.status, OrderStatus.CREATED)
        self.assertEqual(stored.payment_status, PaymentStatus.PENDING)
        logs = self.lifecycle.audit.query_logs({"action": "PAYMENT_AMOUNT_MISMATCH"})
        self.assertEqual(logs[0]["details"]["expected_amount"], 100.0)

    def test_amount_within_tolerance_is_accepted(self):
        outcome = self.handler.handle_payment_webhook(paid(self.order, amount=100.005))
        self.assertEqual(outcome.action, WebhookAction.CONFIRMED)

    def test_paid_on_cancelled_order_requires_refund(self):
        self.lifecycle.store.update(self.order.id, status=OrderStatus.CANCELLED)
        outcome = self.handler.handle_payment_webhook(paid(self.order))

        self.assertEqual(outcome.action, WebhookAction.REFUND_REQUIRED)
        self.assertTrue(outcome.changed)
        stored = self.lifecycle.store.get(self.order.id)
        self.assertEqual(stored.status, OrderStatus.CANCELLED)
        self.assertEqual(stored.payment_status, PaymentStatus.PAID)

        logs = self.lifecycle.audit.query_logs({"action": "PAYMENT_ON_CANCELLED_ORDER"})
        self.assertEqual(logs[0]["severity"], "warning")
        self.assertEqual(logs[0]["details"]["reference"], "ref_1")
        self.assertEqual(self.lifecycle.audit.query_logs({"action": "PAYMENT_RECEIVED"}), [])
        self.assertFalse([n for n in self.lifecycle.notifier.sent if n["type"] == "order_paid"])

    def test_commission_rates_are_read_outside_the_order_lock(self):
        held = []
        lookups = []
        store = self.lifecycle.store
        real_lock = store.lock

        @contextmanager
        def tracking_lock(order_id):
            with real_lock(order_id):
                held.append(order_id)
                try:
                    yield
                finally:
                    held.remove(order_id)

        rates = self.lifecycle.commission.rates

        def vendor_rate(vendor_id):
            lookups.append(bool(held))
            return None

        with mock.patch.object(store, "lock", tracking_lock), \
                mock.patch.object(rates, "get_vendor_rate", side_effect=vendor_rate):
            outcome = self.handler.handle_payment_webhook(paid(self.order))

        self.assertEqual(outcome.action, WebhookAction.CONFIRMED)
        self.assertEqual(lookups, [False])
        self.assertEqual(self.lifecycle.store.get_items(self.order.id)[0].commission_amount, 8.0)

    def test_unknown_order(self):
        webhook = PaymentWebhook(order_id="order_missing", payment_status="paid", reference="r")
        self.assertEqual(self.handler.handle_payment_webhook(webhook).action, WebhookAction.ORDER_NOT_FOUND)


class TestFailedAndRefundedWebhooks(unittest.TestCase):

    def setUp(self):
        self.lifecycle = make_lifecycle(FixedClock(), stock={"p1": 3})
        self.handler = PaymentWebhookHandler(self.lifecycle)
        self.order = seed_order(self.lifecycle, items=[make_line_item("p1", "vendor_a", quantity=2, price=50.0)])

    def _failed(self, reference="ref_f"):
        return PaymentWebhook(order_id=self.order.id, payment_status="failed", reference=reference)

    def test_first_failure_restores_inventory_once(self):
        first = self.handler.handle_payment_webhook(self._failed())
        second = self.handler.handle_payment_webhook(self._failed())
        third = self.handler.handle_payment_webhook(self._failed("ref_other"))

        self.assertEqual(first.action, WebhookAction.FAILURE_RECORDED)
        self.assertEqual(second.action, WebhookAction.DUPLICATE)
        self.assertEqual(third.action, WebhookAction.FAILURE_RECORDED)
        self.assertEqual(self.lifecycle.inventory.get_quantity("p1"), 5)
        self.assertEqual(self.lifecycle.store.get(self.order.id).payment_status, PaymentStatus.FAILED)
        self.assertEqual(len(self.lifecycle.audit.query_logs({"action": "PAYMENT_FAILED"})), 1)

    def test_failed_restore_is_left_for_retry(self):
        inventory = FlakyInventory({"p1": 3}, failing={"p1": 1})
        lifecycle = make_lifecycle(FixedClock(), inventory=inventory)
        handler = PaymentWebhookHandler(lifecycle)
        order = seed_order(lifecycle, items=[make_line_item("p1", "vendor_a", quantity=2, price=50.0)])
        failed = PaymentWebhook(order_id=order.id, payment_status="failed", reference="ref_f")

        outcome = handler.handle_payment_webhook(failed)
        self.assertEqual(outcome.action, WebhookAction.FAILURE_RECORDED)
        self.assertEqual(outcome.order.payment_status, PaymentStatus.FAILED)
        self.assertEqual(inventory.get_quantity("p1"), 3)
        logs = lifecycle.audit.query_logs({"action": "PAYMENT_FAILED"})
        self.assertEqual(logs[0]["details"]["pending_items"], [{"product_id": "p1", "quantity": 2}])

        self.assertEqual(handler.handle_payment_webhook(failed).action, WebhookAction.DUPLICATE)
        engine = CompensationEngine(lifecycle)
        engine.retry_inventory_restore(order.id, SYSTEM_ACTOR)
        engine.retry_inventory_restore(order.id, SYSTEM_ACTOR)
        self.assertEqual(inventory.get_quantity("p1"), 5)

    def test_failure_after_payment_is_ignored(self):
        self.handler.handle_payment_webhook(
            PaymentWebhook(order_id=self.order.id, payment_status="paid", reference="ref_p", amount=100.0)
        )
        outcome = self.handler.handle_payment_webhook(self._failed())

        self.assertEqual(outcome.action, WebhookAction.IGNORED)
        self.assertEqual(self.lifecycle.store.get(self.order.id).payment_status, PaymentStatus.PAID)
        self.assertEqual(self.lifecycle.inventory.get_quantity("p1"), 3)

    def test_refund_only_when_paid(self):
        refund = PaymentWebhook(order_id=self.order.id, payment_status="refunded", reference="ref_r")
        self.assertEqual(self.handler.handle_payment_webhook(refund).action, WebhookAction.IGNORED)

        self.lifecycle.store.update(self.order.id, payment_status=PaymentStatus.PAID)
        outcome = self.handler.handle_payment_webhook(refund)
        self.assertEqual(outcome.action, WebhookAction.REFUND_RECORDED)
        self.assertEqual(outcome.order.payment_status, PaymentStatus.REFUNDED)
        self.assertEqual(outcome.order.status, OrderStatus.CREATED)

    def test_pending_callback_is_ignored(self):
        pending = PaymentWebhook(order_id=self.order.id, payment_status="pending", reference="ref")
        self.assertEqual(self.handler.handle_payment_webhook(pending).action, WebhookAction.IGNORED)


class TestSignatureAndParsing(unittest.TestCase):

    def test_verify_signature(self):
        body = b'{"event": "charge.success"}'
        signature = hmac.new(b"sk_test", body, hashlib.sha512).hexdigest()
        self.assertTrue(verify_signature(body, signature, "sk_test"))
        self.assertFalse(verify_signature(body, signature, "sk_other"))
        self.assertFalse(verify_signature(body, "", "sk_test"))
        self.assertFalse(verify_signature(body, signature, ""))

    def test_parse_charge_success_in_minor_units(self):
        webhook = parse_paystack_event({
            "event": "charge.success",
            "data": {
                "reference": "PSK_123",
                "amount": 12550,
                "currency": "GHS",
                "channel": "mobile_money",
                "paid_at": "2026-03-02T09:15:00Z",
                "metadata": {"orderId": "order_0123456789abcdef"},
            },
        })
        self.assertEqual(webhook.order_id, "order_0123456789abcdef")
        self.assertEqual(webhook.payment_status, PaymentStatus.PAID)
        self.assertEqual(webhook.amount, 125.5)
        self.assertEqual(webhook.method, "mobile_money")

    def test_parse_charge_failed(self):
        webhook = parse_paystack_event({
            "event": "charge.failed",
            "data": {"reference": "PSK_9", "metadata": {"order_id": "order_x"}},
        })
        self.assertEqual(webhook.payment_status, PaymentStatus.FAILED)
        self.assertIsNone(webhook.amount)

    def test_unhandled_events(self):
        self.assertIsNone(parse_paystack_event({"event": "transfer.success", "data": {}}))
        self.assertIsNone(parse_paystack_event({"event": "charge.success", "data": {"reference": "r"}}))


if __name__ == "__main__":
    unittest.main()
