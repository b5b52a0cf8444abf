"""
Lifecycle commit step tests
Validated transitions, audit reporting, notifications and admin operations
"""
import unittest
from contextlib import contextmanager
from unittest import mock

from kiosk_orders.models import SYSTEM_ACTOR, DisputeStatus
from kiosk_orders.order_state_machine import OrderStatus, PaymentStatus
from kiosk_orders.testing import (
    ADMIN,
    FixedClock,
    buyer,
    make_lifecycle,
    make_line_item,
    make_order_input,
    seed_order,
    vendor,
)


class TestCreateOrder(unittest.TestCase):

    def setUp(self):
        self.lifecycle = make_lifecycle()

    def test_new_order_starts_created_and_pending(self):
        result = self.lifecycle.create_order(make_order_input([
            make_line_item("p1", "vendor_a", quantity=2, price=20.0, applied_discount=5.0),
            make_line_item("p2", "vendor_b", quantity=1, price=15.0),
        ]))
        self.assertTrue(result.success)
        order = result.order
        self.assertEqual(order.status, OrderStatus.CREATED)
        self.assertEqual(order.payment_status, PaymentStatus.PENDING)
        self.assertEqual(order.currency, "GHS")
        self.assertEqual(order.vendor_ids(), ["vendor_a", "vendor_b"])

        items = self.lifecycle.store.get_items(order.id)
        self.assertEqual([item.final_price for item in items], [35.0, 15.0])

    def test_creation_is_audited_and_buyer_notified(self):
        order = self.lifecycle.create_order(make_order_input()).order
        logs = self.lifecycle.audit.query_logs({"action": "ORDER_CREATED", "target_id": order.id})
        self.assertEqual(len(logs), 1)
        self.assertEqual(self.lifecycle.notifier.sent[-1]["type"], "order_placed")
        self.assertEqual(self.lifecycle.notifier.sent[-1]["user_id"], "buyer_1")


class TestTransitionOrderStatus(unittest.TestCase):

    def setUp(self):
        self.clock = FixedClock()
        self.lifecycle = make_lifecycle(self.clock)

    def test_unknown_order(self):
        result = self.lifecycle.transition_order_status("order_missing", "confirmed", SYSTEM_ACTOR)
        self.assertFalse(result.success)
        self.assertEqual(result.status_code, 404)

    def test_successful_transition_is_audited(self):
        order = seed_order(self.lifecycle, OrderStatus.CONFIRMED, PaymentStatus.PAID)
        result = self.lifecycle.transition_order_status(order.id, "preparing", vendor())

        self.assertTrue(result.success)
        self.assertEqual(result.order.status, OrderStatus.PREPARING)
        logs = self.lifecycle.audit.query_logs({"action": "ORDER_STATUS_CHANGED", "target_id": order.id})
        self.assertEqual(logs[-1]["details"], {"previous_status": "confirmed", "new_status": "preparing"})
        self.assertEqual(logs[-1]["actor_role"], "vendor")

    def test_rejected_transition_is_audited_and_leaves_state(self):
        order = seed_order(self.lifecycle, OrderStatus.CONFIRMED, PaymentStatus.PAID)
        result = self.lifecycle.transition_order_status(order.id, "delivered", vendor())

        self.assertFalse(result.success)
        self.assertEqual(result.status_code, 409)
        self.assertEqual(result.error, "Invalid transition from 'confirmed' to 'delivered'")
        self.assertEqual(self.lifecycle.store.get(order.id).status, OrderStatus.CONFIRMED)

        logs = self.lifecycle.audit.query_logs({"action": "ORDER_TRANSITION_REJECTED"})
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0]["severity"], "warning")
        self.assertEqual(logs[0]["details"]["attempted_status"], "delivered")

    def test_completing_twice_is_rejected(self):
        order = seed_order(self.lifecycle, OrderStatus.DELIVERED, PaymentStatus.PAID,
                           delivered_at=self.clock())
        first = self.lifecycle.transition_order_status(order.id, "completed", SYSTEM_ACTOR)
        second = self.lifecycle.transition_order_status(order.id, "completed", SYSTEM_ACTOR)

        self.assertTrue(first.success)
        self.assertFalse(second.success)
        self.assertEqual(second.status_code, 409)
        self.assertEqual(self.lifecycle.store.get(order.id).status, OrderStatus.COMPLETED)

    def test_delivery_stamps_delivered_at(self):
        order = seed_order(self.lifecycle, OrderStatus.OUT_FOR_DELIVERY, PaymentStatus.PAID)
        result = self.lifecycle.transition_order_status(order.id, "delivered", vendor())
        self.assertEqual(result.order.delivered_at, self.clock())
        self.assertEqual(self.lifecycle.notifier.sent[-1]["type"], "order_delivered")

    def test_dispatch_records_courier(self):
        order = seed_order(self.lifecycle, OrderStatus.READY_FOR_PICKUP, PaymentStatus.PAID)
        result = self.lifecycle.transition_order_status(
            order.id, "out_for_delivery", vendor(),
            courier_provider="Bolt", courier_reference="BOLT-7781",
        )
        self.assertEqual(result.order.courier_provider, "Bolt")
        self.assertEqual(result.order.courier_reference, "BOLT-7781")
        self.assertEqual(self.lifecycle.notifier.sent[-1]["type"], "order_shipped")

    def test_vendor_outside_order_is_refused(self):
        order = seed_order(self.lifecycle, OrderStatus.CONFIRMED, PaymentStatus.PAID)
        result = self.lifecycle.transition_order_status(order.id, "preparing", vendor("vendor_z"))
        self.assertEqual(result.status_code, 403)
        self.assertEqual(self.lifecycle.store.get(order.id).status, OrderStatus.CONFIRMED)

    def test_other_buyer_is_refused(self):
        order = seed_order(self.lifecycle, OrderStatus.DELIVERED, PaymentStatus.PAID,
                           delivered_at=self.clock())
        result = self.lifecycle.transition_order_status(order.id, "disputed", buyer("buyer_2"))
        self.assertEqual(result.status_code, 403)

    def test_confirmation_stamps_commission(self):
        order = seed_order(self.lifecycle, items=[make_line_item("p1", "vendor_a", quantity=2, price=50.0)])
        self.lifecycle.transition_order_status(order.id, "confirmed", SYSTEM_ACTOR)

        item = self.lifecycle.store.get_items(order.id)[0]
        self.assertEqual(item.commission_rate, 0.08)
        self.assertEqual(item.commission_amount, 8.0)
        self.assertEqual(item.vendor_earnings, 92.0)

    def test_commission_rates_are_read_before_locking(self):
        order = seed_order(self.lifecycle, items=[make_line_item("p1", "vendor_a", quantity=2, price=50.0)])
        held = []
        real_lock = self.lifecycle.store.lock

        @contextmanager
        def tracking_lock(order_id):
            with real_lock(order_id):
                held.append(order_id)
                try:
                    yield
                finally:
                    held.remove(order_id)

        def vendor_rate(vendor_id):
            self.assertEqual(held, [])
            return 0.1

        with mock.patch.object(self.lifecycle.store, "lock", tracking_lock), \
                mock.patch.object(self.lifecycle.commission.rates, "get_vendor_rate", side_effect=vendor_rate):
            result = self.lifecycle.transition_order_status(order.id, "confirmed", SYSTEM_ACTOR)

        self.assertTrue(result.success)
        self.assertEqual(self.lifecycle.store.get_items(order.id)[0].commission_amount, 10.0)

    def test_admin_leaving_disputed_resolves_dispute(self):
        order = seed_order(self.lifecycle, OrderStatus.DELIVERED, PaymentStatus.PAID,
                           delivered_at=self.clock())
        self.lifecycle.transition_order_status(order.id, "disputed", buyer(), dispute_reason="Wrong size")
        dispute = self.lifecycle.store.get_open_dispute(order.id)
        self.assertEqual(dispute.reason, "Wrong size")

        result = self.lifecycle.transition_order_status(order.id, "completed", ADMIN)
        self.assertTrue(result.success)
        self.assertIsNone(self.lifecycle.store.get_open_dispute(order.id))
        resolved = self.lifecycle.store.get_disputes(order.id)[0]
        self.assertEqual(resolved.status, DisputeStatus.RESOLVED)
        self.assertEqual(resolved.resolved_at, self.clock())

    def test_audit_failure_does_not_undo_commit(self):
        order = seed_order(self.lifecycle, OrderStatus.CONFIRMED, PaymentStatus.PAID)
        with mock.patch.object(self.lifecycle.audit, "record", side_effect=RuntimeError("audit down")):
            result = self.lifecycle.transition_order_status(order.id, "preparing", vendor())
        self.assertTrue(result.success)
        self.assertEqual(self.lifecycle.store.get(order.id).status, OrderStatus.PREPARING)


class TestAdministrativeOperations(unittest.TestCase):

    def setUp(self):
        self.lifecycle = make_lifecycle()
        self.order = seed_order(self.lifecycle)

    def test_update_side_fields(self):
        result = self.lifecycle.update_order_details(
            self.order.id, ADMIN, tracking_number="TRK-1", notes="Leave at gate",
        )
        self.assertTrue(result.success)
        self.assertEqual(result.order.tracking_number, "TRK-1")
        self.assertEqual(result.order.status, OrderStatus.CREATED)

    def test_payment_cannot_be_set_to_paid_manually(self):
        result = self.lifecycle.update_order_details(self.order.id, ADMIN, payment_status="paid")
        self.assertFalse(result.success)
        self.assertEqual(result.status_code, 403)
        self.assertEqual(self.lifecycle.store.get(self.order.id).payment_status, PaymentStatus.PENDING)

    def test_non_admin_cannot_update(self):
        result = self.lifecycle.update_order_details(self.order.id, buyer(), notes="hi")
        self.assertEqual(result.status_code, 403)

    def test_delete_order(self):
        result = self.lifecycle.delete_order(self.order.id, ADMIN)
        self.assertTrue(result.success)
        self.assertIsNone(self.lifecycle.store.get(self.order.id))
        self.assertEqual(self.lifecycle.delete_order(self.order.id, ADMIN).status_code, 404)
        self.assertEqual(self.lifecycle.delete_order("order_x", vendor()).status_code, 403)


class TestInventoryRestore(unittest.TestCase):

    def setUp(self):
        self.lifecycle = make_lifecycle()
        self.order = seed_order(self.lifecycle, items=[
            make_line_item("p1", "vendor_a", quantity=2),
            make_line_item("p2", "vendor_b", quantity=3),
        ])

    def test_each_item_is_restored_once(self):
        restored, pending = self.lifecycle.restore_order_inventory(self.order.id)
        self.assertEqual([(d.product_id, d.quantity) for d in restored], [("p1", 2), ("p2", 3)])
        self.assertEqual(pending, [])

        restored, pending = self.lifecycle.restore_order_inventory(self.order.id)
        self.assertEqual((restored, pending), ([], []))
        self.assertEqual(self.lifecycle.inventory.quantities, {"p1": 2, "p2": 3})

    def test_refused_restore_stays_pending(self):
        original = self.lifecycle.inventory.restore_quantity

        def refuse_p2(product_id, quantity):
            if product_id == "p2":
                return False
            return original(product_id, quantity)

        with mock.patch.object(self.lifecycle.inventory, "restore_quantity", side_effect=refuse_p2):
            restored, pending = self.lifecycle.restore_order_inventory(self.order.id)

        self.assertEqual([d.product_id for d in restored], ["p1"])
        self.assertEqual([d.product_id for d in pending], ["p2"])
        flags = {item.product_id: item.stock_restored for item in self.lifecycle.store.get_items(self.order.id)}
        self.assertEqual(flags, {"p1": True, "p2": False})

        restored, pending = self.lifecycle.restore_order_inventory(self.order.id)
        self.assertEqual([d.product_id for d in restored], ["p2"])
        self.assertEqual(self.lifecycle.inventory.quantities, {"p1": 2, "p2": 3})


if __name__ == "__main__":
    unittest.main()
