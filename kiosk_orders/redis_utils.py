# Redis utilities for the order store

import functools
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional

import redis

from . import config
from .models import Dispute, Order, OrderItem
from .order_state_machine import OrderStatus, PaymentStatus
from .orders_repository import OrderLockTimeoutError, OrderStore, StorageUnavailableError, _patched

logger = logging.getLogger(__name__)

# Initialize Redis client
redis_client = redis.from_url(
    config.REDIS_URL,
    decode_responses=True,
    socket_connect_timeout=5
) if config.REDIS_URL else None


def _order_key(order_id: str) -> str:
    return f"order:{order_id}"


def _order_items_key(order_id: str) -> str:
    return f"order:{order_id}:items"


def _order_disputes_key(order_id: str) -> str:
    return f"order:{order_id}:disputes"


def _item_key(item_id: str) -> str:
    return f"order_item:{item_id}"


def _dispute_key(dispute_id: str) -> str:
    return f"dispute:{dispute_id}"


def _buyer_index(buyer_id: str) -> str:
    return f"orders:by_buyer:{buyer_id}"


def _vendor_index(vendor_id: str) -> str:
    return f"orders:by_vendor:{vendor_id}"


def _status_index(status: OrderStatus) -> str:
    return f"orders:by_status:{status.value}"


ALL_ORDERS_INDEX = "orders:all"
DELIVERED_AT_INDEX = "orders:delivered_at"


def _storage_guard(func):
    """Surface Redis connectivity problems as StorageUnavailableError."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as exc:
            logger.error("Redis unavailable during %s: %s", func.__name__, exc)
            raise StorageUnavailableError(str(exc)) from exc
    return wrapper


class RedisOrderStore(OrderStore):
    """
    Orders, items and disputes kept as JSON documents in Redis.

    Secondary indexes are sorted sets scored by creation time (buyer, vendor,
    all) or delivery time; status membership is a plain set.
    """

    def __init__(self, client: Optional[redis.Redis] = None, lock_timeout: Optional[int] = None):
        self.client = client if client is not None else redis_client
        if self.client is None:
            raise RuntimeError("Redis client not initialized")
        self.lock_timeout = lock_timeout or config.ORDER_LOCK_TIMEOUT_SECONDS

    @contextmanager
    def lock(self, order_id: str) -> Iterator[None]:
        order_lock = self.client.lock(
            f"lock:order:{order_id}",
            timeout=self.lock_timeout,
            blocking_timeout=self.lock_timeout,
        )
        try:
            acquired = order_lock.acquire()
        except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as exc:
            raise StorageUnavailableError(str(exc)) from exc
        if not acquired:
            raise OrderLockTimeoutError(f"Could not lock order {order_id} within {self.lock_timeout}s")
        try:
            yield
        finally:
            try:
                order_lock.release()
            except redis.exceptions.LockError:
                logger.warning("Lock for order %s expired before release", order_id)

    @_storage_guard
    def create(self, order: Order, items: List[OrderItem]) -> Order:
        score = order.created_at.timestamp()
        pipe = self.client.pipeline(transaction=True)
        pipe.set(_order_key(order.id), order.model_dump_json())
        for item in items:
            pipe.set(_item_key(item.id), item.model_dump_json())
            pipe.rpush(_order_items_key(order.id), item.id)
            pipe.zadd(_vendor_index(item.vendor_id), {order.id: score})
        pipe.zadd(_buyer_index(order.buyer_id), {order.id: score})
        pipe.zadd(ALL_ORDERS_INDEX, {order.id: score})
        pipe.sadd(_status_index(order.status), order.id)
        pipe.execute()
        logger.info("Stored order %s with %d items in Redis", order.id, len(items))
        return order

    @_storage_guard
    def get(self, order_id: str) -> Optional[Order]:
        raw = self.client.get(_order_key(order_id))
        return Order.model_validate_json(raw) if raw else None

    def _get_orders(self, order_ids: List[str]) -> List[Order]:
        if not order_ids:
            return []
        raws = self.client.mget([_order_key(order_id) for order_id in order_ids])
        return [Order.model_validate_json(raw) for raw in raws if raw]

    @_storage_guard
    def get_items(self, order_id: str) -> List[OrderItem]:
        item_ids = self.client.lrange(_order_items_key(order_id), 0, -1)
        if not item_ids:
            return []
        raws = self.client.mget([_item_key(item_id) for item_id in item_ids])
        return [OrderItem.model_validate_json(raw) for raw in raws if raw]

    @_storage_guard
    def get_item(self, item_id: str) -> Optional[OrderItem]:
        raw = self.client.get(_item_key(item_id))
        return OrderItem.model_validate_json(raw) if raw else None

    @_storage_guard
    def list_orders(
        self,
        buyer_id: Optional[str] = None,
        vendor_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        payment_status: Optional[PaymentStatus] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Order]:
        if vendor_id is not None:
            index = _vendor_index(vendor_id)
        elif buyer_id is not None:
            index = _buyer_index(buyer_id)
        else:
            index = ALL_ORDERS_INDEX
        orders = self._get_orders(self.client.zrevrange(index, 0, -1))

        if buyer_id is not None:
            orders = [order for order in orders if order.buyer_id == buyer_id]
        if status is not None:
            orders = [order for order in orders if order.status == status]
        if payment_status is not None:
            orders = [order for order in orders if order.payment_status == payment_status]
        end = offset + limit if limit is not None else None
        return orders[offset:end]

    @_storage_guard
    def list_delivered_before(self, cutoff: datetime) -> List[Order]:
        # exclusive upper bound
        order_ids = self.client.zrangebyscore(DELIVERED_AT_INDEX, "-inf", f"({cutoff.timestamp()}")
        orders = self._get_orders(order_ids)
        return [
            order for order in orders
            if order.status == OrderStatus.DELIVERED
            and order.delivered_at is not None
            and order.delivered_at < cutoff
        ]

    @_storage_guard
    def update(self, order_id: str, **fields: Any) -> Optional[Order]:
        current = self.get(order_id)
        if current is None:
            return None
        updated = _patched(current, **fields)

        pipe = self.client.pipeline(transaction=True)
        pipe.set(_order_key(order_id), updated.model_dump_json())
        if updated.status != current.status:
            pipe.srem(_status_index(current.status), order_id)
            pipe.sadd(_status_index(updated.status), order_id)
        if updated.delivered_at is not None:
            pipe.zadd(DELIVERED_AT_INDEX, {order_id: updated.delivered_at.timestamp()})
        else:
            pipe.zrem(DELIVERED_AT_INDEX, order_id)
        pipe.execute()
        return updated

    @_storage_guard
    def update_item(self, item_id: str, **fields: Any) -> Optional[OrderItem]:
        current = self.get_item(item_id)
        if current is None:
            return None
        updated = _patched(current, **fields)
        self.client.set(_item_key(item_id), updated.model_dump_json())
        return updated

    @_storage_guard
    def delete(self, order_id: str) -> bool:
        order = self.get(order_id)
        if order is None:
            return False
        item_ids = self.client.lrange(_order_items_key(order_id), 0, -1)
        dispute_ids = self.client.smembers(_order_disputes_key(order_id))

        pipe = self.client.pipeline(transaction=True)
        for item_id in item_ids:
            pipe.delete(_item_key(item_id))
        for dispute_id in dispute_ids:
            pipe.delete(_dispute_key(dispute_id))
        for vendor_id in order.vendor_ids():
            pipe.zrem(_vendor_index(vendor_id), order_id)
        pipe.zrem(_buyer_index(order.buyer_id), order_id)
        pipe.zrem(ALL_ORDERS_INDEX, order_id)
        pipe.zrem(DELIVERED_AT_INDEX, order_id)
        pipe.srem(_status_index(order.status), order_id)
        pipe.delete(_order_items_key(order_id), _order_disputes_key(order_id), _order_key(order_id))
        pipe.execute()
        logger.info("Deleted order %s from Redis", order_id)
        return True

    @_storage_guard
    def create_dispute(self, dispute: Dispute) -> Dispute:
        pipe = self.client.pipeline(transaction=True)
        pipe.set(_dispute_key(dispute.id), dispute.model_dump_json())
        pipe.sadd(_order_disputes_key(dispute.order_id), dispute.id)
        pipe.execute()
        return dispute

    @_storage_guard
    def get_disputes(self, order_id: str) -> List[Dispute]:
        dispute_ids = list(self.client.smembers(_order_disputes_key(order_id)))
        if not dispute_ids:
            return []
        raws = self.client.mget([_dispute_key(dispute_id) for dispute_id in dispute_ids])
        disputes = [Dispute.model_validate_json(raw) for raw in raws if raw]
        disputes.sort(key=lambda dispute: dispute.created_at)
        return disputes

    @_storage_guard
    def update_dispute(self, dispute_id: str, **fields: Any) -> Optional[Dispute]:
        raw = self.client.get(_dispute_key(dispute_id))
        if not raw:
            return None
        payload = Dispute.model_validate_json(raw).model_dump()
        payload.update(fields)
        updated = Dispute.model_validate(payload)
        self.client.set(_dispute_key(dispute_id), updated.model_dump_json())
        return updated


def check_redis_health() -> bool:
    """Check if Redis is available."""
    if not redis_client:
        return False

    try:
        redis_client.ping()
        return True
    except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError):
        return False
