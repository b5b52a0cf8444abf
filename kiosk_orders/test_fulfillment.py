"""
Fulfillment tracker tests
Per-vendor item actions and the order roll-up
"""
import unittest

from kiosk_orders.fulfillment import FulfillmentTracker, forward_steps
from kiosk_orders.order_state_machine import FulfillmentStatus, OrderStatus, PaymentStatus
from kiosk_orders.testing import ADMIN, FixedClock, buyer, make_lifecycle, make_line_item, seed_order, vendor


class TestFulfillmentTracker(unittest.TestCase):

    def setUp(self):
        self.clock = FixedClock()
        self.lifecycle = make_lifecycle(self.clock)
        self.tracker = FulfillmentTracker(self.lifecycle)
        self.store = self.lifecycle.store

    def _paid_order(self, items, status=OrderStatus.CONFIRMED):
        order = seed_order(self.lifecycle, status, PaymentStatus.PAID, items=items)
        return order, self.store.get_items(order.id)

    def test_pack_item(self):
        order, items = self._paid_order([make_line_item("p1", "vendor_a")])
        result = self.tracker.pack_item(order.id, items[0].id, vendor("vendor_a"))

        self.assertTrue(result.success)
        self.assertEqual(result.item.fulfillment_status, FulfillmentStatus.PACKED)
        logs = self.lifecycle.audit.query_logs({"action": "ORDER_ITEM_PACKED"})
        self.assertEqual(logs[-1]["target_id"], items[0].id)
        self.assertEqual(logs[-1]["target_type"], "order_item")

    def test_all_packed_moves_order_to_preparing(self):
        order, items = self._paid_order([
            make_line_item("p1", "vendor_a"),
            make_line_item("p2", "vendor_b"),
        ])
        first = self.tracker.pack_item(order.id, items[0].id, vendor("vendor_a"))
        self.assertEqual(first.order.status, OrderStatus.CONFIRMED)

        second = self.tracker.pack_item(order.id, items[1].id, vendor("vendor_b"))
        self.assertEqual(second.order.status, OrderStatus.PREPARING)

    def test_handoff_walks_forward_one_edge_at_a_time(self):
        order, items = self._paid_order([make_line_item("p1", "vendor_a")])
        result = self.tracker.hand_item_to_courier(
            order.id, items[0].id, vendor("vendor_a"),
            courier_provider="Bolt", courier_reference="BOLT-1",
        )

        self.assertEqual(result.order.status, OrderStatus.OUT_FOR_DELIVERY)
        self.assertEqual(result.order.courier_provider, "Bolt")
        changes = [
            log["details"]["new_status"]
            for log in self.lifecycle.audit.query_logs({"action": "ORDER_STATUS_CHANGED", "target_id": order.id})
        ]
        self.assertEqual(changes, ["preparing", "ready_for_pickup", "out_for_delivery"])

    def test_three_item_rollup(self):
        order, items = self._paid_order([
            make_line_item("p1", "vendor_a"),
            make_line_item("p2", "vendor_b"),
            make_line_item("p3", "vendor_c"),
        ])
        for item in items:
            self.tracker.hand_item_to_courier(order.id, item.id, vendor(item.vendor_id))
        self.assertEqual(self.store.get(order.id).status, OrderStatus.OUT_FOR_DELIVERY)

        self.tracker.mark_item_delivered(order.id, items[0].id, vendor("vendor_a"))
        result = self.tracker.mark_item_delivered(order.id, items[1].id, vendor("vendor_b"))
        self.assertEqual(result.order.status, OrderStatus.OUT_FOR_DELIVERY)
        self.assertIsNone(result.order.delivered_at)

        self.clock.advance(minutes=30)
        result = self.tracker.mark_item_delivered(order.id, items[2].id, vendor("vendor_c"))
        self.assertEqual(result.order.status, OrderStatus.DELIVERED)
        self.assertEqual(result.order.delivered_at, self.clock())
        self.assertEqual(result.item.fulfilled_at, self.clock())

    def test_rollup_is_noop_at_or_past_target(self):
        order, items = self._paid_order([make_line_item("p1", "vendor_a")], status=OrderStatus.PREPARING)
        self.store.update_item(items[0].id, fulfillment_status=FulfillmentStatus.PACKED)

        result = self.tracker.roll_up_order_status(order.id, vendor("vendor_a"))
        self.assertTrue(result.success)
        self.assertEqual(result.order.status, OrderStatus.PREPARING)
        self.assertEqual(self.lifecycle.audit.query_logs({"action": "ORDER_STATUS_CHANGED", "target_id": order.id}), [])

    def test_legacy_item_status_is_normalized(self):
        order, items = self._paid_order([make_line_item("p1", "vendor_a")], status=OrderStatus.OUT_FOR_DELIVERY)
        self.store.update_item(items[0].id, fulfillment_status="shipped")

        result = self.tracker.mark_item_delivered(order.id, items[0].id, vendor("vendor_a"))
        self.assertTrue(result.success)
        self.assertEqual(result.order.status, OrderStatus.DELIVERED)

    def test_vendor_cannot_touch_another_vendors_item(self):
        order, items = self._paid_order([
            make_line_item("p1", "vendor_a"),
            make_line_item("p2", "vendor_b"),
        ])
        result = self.tracker.pack_item(order.id, items[1].id, vendor("vendor_a"))
        self.assertEqual(result.status_code, 403)
        self.assertEqual(self.store.get_item(items[1].id).fulfillment_status, FulfillmentStatus.PENDING)

    def test_only_vendors_fulfill(self):
        order, items = self._paid_order([make_line_item("p1", "vendor_a")])
        self.assertEqual(self.tracker.pack_item(order.id, items[0].id, ADMIN).status_code, 403)
        self.assertEqual(self.tracker.pack_item(order.id, items[0].id, buyer()).status_code, 403)

    def test_unpaid_order_cannot_be_fulfilled(self):
        order = seed_order(self.lifecycle, items=[make_line_item("p1", "vendor_a")])
        item = self.store.get_items(order.id)[0]
        result = self.tracker.pack_item(order.id, item.id, vendor("vendor_a"))
        self.assertEqual(result.status_code, 400)

    def test_invalid_item_transition(self):
        order, items = self._paid_order([make_line_item("p1", "vendor_a")])
        result = self.tracker.mark_item_delivered(order.id, items[0].id, vendor("vendor_a"))
        self.assertEqual(result.status_code, 409)
        self.assertEqual(result.error, "Item cannot move from 'pending' to 'delivered'")

    def test_item_from_other_order(self):
        order, _ = self._paid_order([make_line_item("p1", "vendor_a")])
        _, other_items = self._paid_order([make_line_item("p2", "vendor_a")])
        result = self.tracker.pack_item(order.id, other_items[0].id, vendor("vendor_a"))
        self.assertEqual(result.status_code, 404)

    def test_buyer_notified_on_item_progress(self):
        order, items = self._paid_order([make_line_item("p1", "vendor_a")])
        self.tracker.pack_item(order.id, items[0].id, vendor("vendor_a"))
        notification = self.lifecycle.notifier.sent[-1]
        self.assertEqual(notification["type"], "order_fulfilled")
        self.assertEqual(notification["user_id"], "buyer_1")


class TestForwardSteps(unittest.TestCase):

    def test_steps(self):
        self.assertEqual(
            forward_steps(OrderStatus.CONFIRMED, OrderStatus.OUT_FOR_DELIVERY),
            [OrderStatus.PREPARING, OrderStatus.READY_FOR_PICKUP, OrderStatus.OUT_FOR_DELIVERY],
        )
        self.assertEqual(
            forward_steps(OrderStatus.DELIVERY_FAILED, OrderStatus.DELIVERED),
            [OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED],
        )
        self.assertEqual(forward_steps(OrderStatus.DELIVERED, OrderStatus.OUT_FOR_DELIVERY), [])
        self.assertEqual(forward_steps(OrderStatus.DISPUTED, OrderStatus.DELIVERED), [])


if __name__ == "__main__":
    unittest.main()
