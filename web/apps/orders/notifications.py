"""Customer notifications for order lifecycle events.

Delivery is fire-and-forget: ``notify_safely`` runs the notifier after
the surrounding transaction commits and only logs failures.
"""

import logging
from typing import Optional

from django.conf import settings
from django.core.mail import send_mail
from django.db import transaction

from .domain import NotificationEvent, NotificationPort

logger = logging.getLogger("orders.notifications")

SUBJECTS = {
    NotificationEvent.ORDER_CONFIRMATION: "Order Confirmation - {order_number}",
    NotificationEvent.ORDER_STATUS_UPDATE: "Order {order_number} - {status_description}",
    NotificationEvent.ORDER_CANCELLED: "Order {order_number} has been cancelled",
    NotificationEvent.PAYMENT_FAILED: "Payment failed for order {order_number}",
}

BODIES = {
    NotificationEvent.ORDER_CONFIRMATION: (
        "Hi {customer_name},\n\nThank you for your order {order_number}.\n"
        "Total paid: {currency} {total}.\n\nTrack it at {tracking_url}\n"
    ),
    NotificationEvent.ORDER_STATUS_UPDATE: (
        "Hi {customer_name},\n\n{status_description}.\n\nTrack it at {tracking_url}\n"
    ),
    NotificationEvent.ORDER_CANCELLED: (
        "Hi {customer_name},\n\nYour order {order_number} has been cancelled.\nReason: {reason}\n"
    ),
    NotificationEvent.PAYMENT_FAILED: (
        "Hi {customer_name},\n\nWe could not confirm the payment for order {order_number}.\n"
    ),
}


class _Defaults(dict):
    def __missing__(self, key):
        return ""


class EmailNotifier(NotificationPort):
    """Sends plain-text order e-mails through Django's mail backend."""

    def __init__(self, from_email: Optional[str] = None):
        self.from_email = from_email or getattr(settings, "DEFAULT_FROM_EMAIL", "orders@bareloft.com")

    def send(self, event: NotificationEvent, recipient: str, variables: dict) -> None:
        event = NotificationEvent(event)
        values = _Defaults(variables)
        if not values.get("customer_name"):
            values["customer_name"] = "there"
        send_mail(
            SUBJECTS[event].format_map(values),
            BODIES[event].format_map(values),
            self.from_email,
            [recipient],
            fail_silently=False,
        )
        logger.info("notification sent", extra={"event": event.value, "order_number": values["order_number"]})


def notify_safely(notifier: NotificationPort, event: NotificationEvent, recipient: str, variables: dict) -> None:
    """Schedule a notification for after the current transaction commits.

    Outside a transaction the callback runs immediately. Failures are
    logged and never reach the caller.
    """
    if not recipient:
        logger.info("notification skipped, no recipient", extra={"event": NotificationEvent(event).value})
        return

    def _send():
        try:
            notifier.send(event, recipient, variables)
        except Exception:
            logger.exception(
                "notification failed",
                extra={"event": NotificationEvent(event).value, "order_number": variables.get("order_number")},
            )

    transaction.on_commit(_send)
