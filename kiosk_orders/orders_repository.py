"""Order store interface and the in-process implementation.

The store persists orders, their exploded item rows and disputes. It does not
validate transitions: callers serialize read-validate-write through
``store.lock(order_id)`` and use ``update`` as the commit step.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from .models import Dispute, Order, OrderItem, utc_now
from .order_state_machine import OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)


class OrderLifecycleError(Exception):
    """Base class for infrastructure errors raised by the lifecycle engine."""


class StorageUnavailableError(OrderLifecycleError):
    """The backing store could not be reached; never retried by the engine."""


class OrderLockTimeoutError(OrderLifecycleError):
    """Another writer held the order lock for longer than the lock timeout."""


def is_visible_to_vendor(order: Order) -> bool:
    """Vendors never see unpaid orders, nor orders cancelled before payment."""
    if order.status == OrderStatus.CREATED:
        return False
    if order.status == OrderStatus.CANCELLED:
        return order.payment_status == PaymentStatus.REFUNDED
    return True


class OrderStore(ABC):
    """Persistence for orders, order items and disputes."""

    @abstractmethod
    def create(self, order: Order, items: List[OrderItem]) -> Order:
        """Persist an order together with its item rows."""

    @abstractmethod
    def get(self, order_id: str) -> Optional[Order]:
        ...

    @abstractmethod
    def get_items(self, order_id: str) -> List[OrderItem]:
        ...

    @abstractmethod
    def get_item(self, item_id: str) -> Optional[OrderItem]:
        ...

    @abstractmethod
    def list_orders(
        self,
        buyer_id: Optional[str] = None,
        vendor_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        payment_status: Optional[PaymentStatus] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Order]:
        """Newest first. The vendor filter matches on item rows."""

    @abstractmethod
    def list_delivered_before(self, cutoff: datetime) -> List[Order]:
        """Orders in ``delivered`` whose delivered_at is older than cutoff, oldest first."""

    @abstractmethod
    def update(self, order_id: str, **fields: Any) -> Optional[Order]:
        """Field-level patch without transition validation."""

    @abstractmethod
    def update_item(self, item_id: str, **fields: Any) -> Optional[OrderItem]:
        ...

    @abstractmethod
    def delete(self, order_id: str) -> bool:
        ...

    @abstractmethod
    def create_dispute(self, dispute: Dispute) -> Dispute:
        ...

    @abstractmethod
    def get_disputes(self, order_id: str) -> List[Dispute]:
        ...

    @abstractmethod
    def update_dispute(self, dispute_id: str, **fields: Any) -> Optional[Dispute]:
        ...

    @abstractmethod
    def lock(self, order_id: str):
        """Context manager that serializes writers of a single order."""

    def list_orders_by_buyer(self, buyer_id: str) -> List[Order]:
        return self.list_orders(buyer_id=buyer_id)

    def list_orders_for_vendor(
        self,
        vendor_id: str,
        status: Optional[OrderStatus] = None,
        payment_status: Optional[PaymentStatus] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Order]:
        """Orders a vendor may act on (see ``is_visible_to_vendor``), paginated after filtering."""
        orders = [
            order
            for order in self.list_orders(vendor_id=vendor_id, status=status, payment_status=payment_status)
            if is_visible_to_vendor(order)
        ]
        end = offset + limit if limit is not None else None
        return orders[offset:end]

    def get_vendor_items(self, order_id: str, vendor_id: str) -> List[OrderItem]:
        return [item for item in self.get_items(order_id) if item.vendor_id == vendor_id]

    def get_open_dispute(self, order_id: str) -> Optional[Dispute]:
        for dispute in self.get_disputes(order_id):
            if dispute.is_open:
                return dispute
        return None


def _patched(model, **fields: Any):
    """Re-validate a record with the patch applied so status aliases still normalize."""
    payload = model.model_dump()
    payload.update(fields)
    payload["updated_at"] = fields.get("updated_at") or utc_now()
    return type(model).model_validate(payload)


class InMemoryOrderStore(OrderStore):
    """Thread-safe store held in process memory.

    A single write lock guards the dictionaries; a per-order re-entrant lock
    serializes read-validate-write sequences on one order.
    """

    def __init__(self) -> None:
        self._orders: Dict[str, Order] = {}
        self._items: Dict[str, OrderItem] = {}
        self._items_by_order: Dict[str, List[str]] = {}
        self._disputes: Dict[str, Dispute] = {}
        self._write_lock = threading.Lock()
        self._order_locks: Dict[str, threading.RLock] = {}

    @contextmanager
    def lock(self, order_id: str) -> Iterator[None]:
        with self._write_lock:
            order_lock = self._order_locks.setdefault(order_id, threading.RLock())
        with order_lock:
            yield

    def create(self, order: Order, items: List[OrderItem]) -> Order:
        with self._write_lock:
            if order.id in self._orders:
                raise ValueError(f"order {order.id} already exists")
            self._orders[order.id] = order.model_copy(deep=True)
            self._items_by_order[order.id] = []
            for item in items:
                self._items[item.id] = item.model_copy(deep=True)
                self._items_by_order[order.id].append(item.id)
        logger.info("Stored order %s with %d items", order.id, len(items))
        return order.model_copy(deep=True)

    def get(self, order_id: str) -> Optional[Order]:
        with self._write_lock:
            order = self._orders.get(order_id)
            return order.model_copy(deep=True) if order else None

    def get_items(self, order_id: str) -> List[OrderItem]:
        with self._write_lock:
            return [
                self._items[item_id].model_copy(deep=True)
                for item_id in self._items_by_order.get(order_id, [])
            ]

    def get_item(self, item_id: str) -> Optional[OrderItem]:
        with self._write_lock:
            item = self._items.get(item_id)
            return item.model_copy(deep=True) if item else None

    def list_orders(
        self,
        buyer_id: Optional[str] = None,
        vendor_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        payment_status: Optional[PaymentStatus] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Order]:
        with self._write_lock:
            orders = list(self._orders.values())
            if vendor_id is not None:
                vendor_order_ids = {
                    item.order_id for item in self._items.values() if item.vendor_id == vendor_id
                }
                orders = [order for order in orders if order.id in vendor_order_ids]
            if buyer_id is not None:
                orders = [order for order in orders if order.buyer_id == buyer_id]
            if status is not None:
                orders = [order for order in orders if order.status == status]
            if payment_status is not None:
                orders = [order for order in orders if order.payment_status == payment_status]
            orders.sort(key=lambda order: order.created_at, reverse=True)
            end = offset + limit if limit is not None else None
            return [order.model_copy(deep=True) for order in orders[offset:end]]

    def list_delivered_before(self, cutoff: datetime) -> List[Order]:
        with self._write_lock:
            eligible = [
                order for order in self._orders.values()
                if order.status == OrderStatus.DELIVERED
                and order.delivered_at is not None
                and order.delivered_at < cutoff
            ]
        eligible.sort(key=lambda order: order.delivered_at)
        return [order.model_copy(deep=True) for order in eligible]

    def update(self, order_id: str, **fields: Any) -> Optional[Order]:
        with self._write_lock:
            current = self._orders.get(order_id)
            if current is None:
                return None
            updated = _patched(current, **fields)
            self._orders[order_id] = updated
            return updated.model_copy(deep=True)

    def update_item(self, item_id: str, **fields: Any) -> Optional[OrderItem]:
        with self._write_lock:
            current = self._items.get(item_id)
            if current is None:
                return None
            updated = _patched(current, **fields)
            self._items[item_id] = updated
            return updated.model_copy(deep=True)

    def delete(self, order_id: str) -> bool:
        with self._write_lock:
            if self._orders.pop(order_id, None) is None:
                return False
            for item_id in self._items_by_order.pop(order_id, []):
                self._items.pop(item_id, None)
            for dispute_id in [d.id for d in self._disputes.values() if d.order_id == order_id]:
                del self._disputes[dispute_id]
            self._order_locks.pop(order_id, None)
        logger.info("Deleted order %s", order_id)
        return True

    def create_dispute(self, dispute: Dispute) -> Dispute:
        with self._write_lock:
            self._disputes[dispute.id] = dispute.model_copy(deep=True)
        return dispute.model_copy(deep=True)

    def get_disputes(self, order_id: str) -> List[Dispute]:
        with self._write_lock:
            disputes = [d for d in self._disputes.values() if d.order_id == order_id]
        disputes.sort(key=lambda dispute: dispute.created_at)
        return [dispute.model_copy(deep=True) for dispute in disputes]

    def update_dispute(self, dispute_id: str, **fields: Any) -> Optional[Dispute]:
        with self._write_lock:
            current = self._disputes.get(dispute_id)
            if current is None:
                return None
            payload = current.model_dump()
            payload.update(fields)
            updated = Dispute.model_validate(payload)
            self._disputes[dispute_id] = updated
            return updated.model_copy(deep=True)
