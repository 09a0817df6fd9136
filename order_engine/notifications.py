"""Customer and merchant notifications for lifecycle events.

Dispatchers are best effort: the services call them after their transaction
has committed and only log a failure.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import requests

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderPlaced:
    order_id: str
    order_number: str
    total: Decimal
    customer_name: str
    customer_phone: str
    merchant_phone: Optional[str] = None


@dataclass(frozen=True)
class OrderStatusChanged:
    order_id: str
    order_number: str
    new_status: str
    note: Optional[str]
    customer_phone: str


@dataclass(frozen=True)
class PaymentConfirmed:
    order_id: str
    order_number: str
    payment_ref: str
    amount: Decimal
    customer_phone: str


STATUS_MESSAGES = {
    "ACCEPTED": "has been accepted",
    "PREPARING": "is being prepared",
    "READY_FOR_PICKUP": "is ready for pickup",
    "OUT_FOR_DELIVERY": "is out for delivery",
    "DELIVERED": "has been delivered",
    "COMPLETED": "is complete. Thank you!",
    "CANCELLED": "has been cancelled",
    "FAILED": "could not be delivered",
}


def render_messages(event, currency: str = "GHS"):
    """Yield (recipient, text) pairs for an event."""
    if isinstance(event, OrderPlaced):
        yield event.customer_phone, (
            f"Hi {event.customer_name}, your order {event.order_number} "
            f"({currency} {event.total}) has been placed."
        )
        if event.merchant_phone:
            yield event.merchant_phone, (
                f"New Order {event.order_number}: {currency} {event.total} "
                f"- {event.customer_name} ({event.customer_phone})"
            )
    elif isinstance(event, OrderStatusChanged):
        text = f"Your order {event.order_number} {STATUS_MESSAGES.get(event.new_status, 'was updated')}."
        if event.note:
            text = f"{text} {event.note}"
        yield event.customer_phone, text
    elif isinstance(event, PaymentConfirmed):
        yield event.customer_phone, (
            f"Payment of {currency} {event.amount} received for order {event.order_number}. "
            f"Ref: {event.payment_ref}"
        )


class NotificationDispatcher:
    def dispatch(self, event) -> None:
        raise NotImplementedError


class LoggingNotificationDispatcher(NotificationDispatcher):
    def dispatch(self, event) -> None:
        for recipient, text in render_messages(event):
            logger.info("Notification to %s: %s", recipient, text)


class SmsNotificationDispatcher(NotificationDispatcher):
    """Sends each message through the SMS HTTP API from a small worker pool."""

    def __init__(self, api_url: str, client_id: str, client_secret: str, sender: str,
                 currency: str = "GHS", timeout: float = 10, executor=None, http=None):
        self.api_url = api_url
        self.auth = (client_id, client_secret)
        self.sender = sender
        self.currency = currency
        self.timeout = timeout
        self.executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="sms")
        self.http = http or requests

    @classmethod
    def from_settings(cls, settings) -> "SmsNotificationDispatcher":
        return cls(settings.sms_api_url, settings.sms_client_id, settings.sms_client_secret,
                   settings.sms_sender_id, currency=settings.currency)

    def dispatch(self, event) -> None:
        for recipient, text in render_messages(event, self.currency):
            self.executor.submit(self.send, recipient, text)

    def send(self, to: str, text: str) -> None:
        try:
            response = self.http.post(
                self.api_url,
                json={"From": self.sender, "To": to, "Content": text},
                auth=self.auth,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException:
            logger.exception("Failed to send SMS to %s", to)
            return
        logger.info("SMS sent to %s", to)

    def close(self) -> None:
        self.executor.shutdown(wait=True)


def build_dispatcher(settings) -> NotificationDispatcher:
    if settings.sms_enabled:
        return SmsNotificationDispatcher.from_settings(settings)
    return LoggingNotificationDispatcher()
