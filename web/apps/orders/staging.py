"""Pending order staging: order intents waiting for payment confirmation.

An intent is written under ``pending_order:<order_number>`` with a 24h
expiry before the customer is sent to the gateway, and consumed once
when the payment is confirmed. Writes are set-if-absent so an intent is
never overwritten by a colliding order number.
"""

import logging
from typing import Optional

from django.conf import settings
from django.core.cache import caches
from django.utils import timezone

from .domain import OrderIntent
from .errors import StagingUnavailable

logger = logging.getLogger("orders.staging")

STAGING_KEY = "pending_order:{order_number}"


def staging_key(order_number: str) -> str:
    return STAGING_KEY.format(order_number=order_number)


class PendingOrderStaging:
    """Keyed store of ``OrderIntent`` payloads with a TTL.

    Args:
        cache: Django cache holding the intents. Defaults to ``default``.
        ttl: Expiry of a staged intent in seconds.
    """

    def __init__(self, cache=None, ttl: int | None = None):
        self.cache = cache if cache is not None else caches["default"]
        self.ttl = ttl or getattr(settings, "ORDERS_STAGING_TTL_SECS", 24 * 60 * 60)

    def stage(self, intent: OrderIntent) -> bool:
        """Store an intent unless one already exists for its order number.

        Returns:
            bool: True when stored, False when the order number is taken.

        Raises:
            StagingUnavailable: When the store cannot be written.
        """
        intent.staged_at = intent.staged_at or timezone.now().isoformat()
        try:
            stored = self.cache.add(staging_key(intent.order_number), intent.to_payload(), timeout=self.ttl)
        except Exception as exc:
            logger.error("staging write failed", extra={"order_number": intent.order_number}, exc_info=True)
            raise StagingUnavailable("Could not stage the pending order") from exc
        if stored:
            logger.info("order intent staged", extra={"order_number": intent.order_number, "ttl": self.ttl})
        return bool(stored)

    def load(self, order_number: str) -> Optional[OrderIntent]:
        """Return the staged intent, or None when absent or expired.

        Raises:
            StagingUnavailable: When the store cannot be read.
        """
        try:
            payload = self.cache.get(staging_key(order_number))
        except Exception as exc:
            logger.error("staging read failed", extra={"order_number": order_number}, exc_info=True)
            raise StagingUnavailable("Could not read the pending order") from exc
        if payload is None:
            return None
        return OrderIntent.from_payload(payload)

    def consume(self, order_number: str) -> None:
        """Remove an intent after it has been materialized."""
        try:
            self.cache.delete(staging_key(order_number))
        except Exception:
            # the intent expires on its own; materialization already committed
            logger.warning("staging delete failed", extra={"order_number": order_number}, exc_info=True)

    discard = consume
