"""
Webhook notifications for order events.

Allows external systems (the email service among them) to subscribe to
``order.confirmed`` and ``order.shipped``. Delivery failures are logged and
reported to the caller as ``False``; they never undo the order change that
triggered them.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from .. import config
from ..models import Order

logger = logging.getLogger(__name__)


def order_payload(order: Order) -> Dict[str, Any]:
    """Serializable summary of an order for notification payloads."""
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "user_id": order.user_id,
        "customer_email": order.customer_email,
        "status": order.status,
        "payment_status": order.payment_status,
        "total": str(order.total),
        "currency": order.currency,
        "tracking_number": order.tracking_number,
        "tracking_url": order.tracking_url,
        "items": [
            {
                "product_id": item.product_id,
                "name": (item.product_snapshot or {}).get("name"),
                "quantity": item.quantity,
                "unit_price": str(item.unit_price),
            }
            for item in order.items
        ],
    }


class WebhookNotifier:
    """
    Posts order events to every registered webhook URL.

    Args:
        urls: Subscriber URLs (defaults to ``NOTIFICATION_WEBHOOK_URLS``)
        timeout: Per-request timeout in seconds
    """

    def __init__(self, urls: Optional[List[str]] = None, timeout: Optional[float] = None):
        self.urls = list(config.NOTIFICATION_WEBHOOK_URLS if urls is None else urls)
        self.timeout = config.NOTIFICATION_TIMEOUT if timeout is None else timeout

    def send(self, event_type: str, data: Dict[str, Any]) -> bool:
        """
        Send one event to all subscribers.

        Returns:
            True if every subscriber accepted the event (or there are none)
        """
        if not self.urls:
            return True

        payload = {"event": event_type, "data": data}
        delivered = True
        with httpx.Client(timeout=self.timeout) as client:
            for url in self.urls:
                delivered = self._send_single(client, url, payload) and delivered
        return delivered

    def _send_single(self, client: httpx.Client, url: str, payload: Dict[str, Any]) -> bool:
        try:
            response = client.post(url, json=payload, headers={"Content-Type": "application/json"})
        except httpx.HTTPError as e:
            logger.error(f"Webhook error for {url}: {e}")
            return False
        if response.status_code >= 400:
            logger.error(f"Webhook failed for {url}: HTTP {response.status_code}")
            return False
        return True

    def notify_order_confirmed(self, order: Order) -> bool:
        logger.info(f"Sending order.confirmed for {order.order_number}")
        return self.send("order.confirmed", order_payload(order))

    def notify_order_shipped(self, order: Order) -> bool:
        logger.info(f"Sending order.shipped for {order.order_number} ({order.tracking_number})")
        return self.send("order.shipped", order_payload(order))
