# Notification dispatch for buyer/vendor facing order events

import logging
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import requests

from . import config

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    ORDER_PLACED = "order_placed"
    ORDER_PAID = "order_paid"
    ORDER_FULFILLED = "order_fulfilled"
    ORDER_SHIPPED = "order_shipped"
    ORDER_DELIVERED = "order_delivered"
    ORDER_CANCELLED = "order_cancelled"
    ORDER_DISPUTED = "order_disputed"


class Notifier:
    """
    Fire-and-forget notifications

    Every notification is logged and kept in `sent`; when a webhook URL is
    configured it is also POSTed there. Delivery failures are logged only.
    """

    def __init__(self, webhook_url: Optional[str] = None, timeout: int = 5):
        self.webhook_url = webhook_url if webhook_url is not None else config.NOTIFICATION_WEBHOOK_URL
        self.timeout = timeout
        self.sent: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def notify(
        self,
        user_id: str,
        role: str,
        type: str,
        title: str,
        message: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        notification = {
            "user_id": user_id,
            "role": role,
            "type": type.value if isinstance(type, NotificationType) else type,
            "title": title,
            "message": message,
            "payload": payload or {},
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        with self._lock:
            self.sent.append(notification)
        logger.info(f"Notify {role}:{user_id} [{notification['type']}] {title}")

        if not self.webhook_url:
            return True

        try:
            response = requests.post(self.webhook_url, json=notification, timeout=self.timeout)
            response.raise_for_status()
            return True
        except requests.exceptions.RequestException as exc:
            logger.error(f"Failed to deliver notification to {role}:{user_id}: {exc}")
            return False


notifier = Notifier()
