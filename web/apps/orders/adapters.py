"""In-process adapters for the orders domain ports.

These adapters implement ``PaymentGatewayPort``, ``CartPort`` and
``NotificationPort`` without any network calls. They are used in unit
tests and local development where deterministic behavior is useful and
Paystack is not reachable.
"""

import logging
from typing import Dict, List, Optional, Tuple

from django.core.cache import caches

from .domain import (
    Cart,
    CartLine,
    CartPort,
    NotificationEvent,
    NotificationPort,
    PaymentGatewayPort,
    PaymentOutcome,
    PaymentSession,
    PaymentVerification,
)
from .errors import NotFound, PaymentFailed

logger = logging.getLogger("orders.adapters")


class PaymentGatewayStub(PaymentGatewayPort):
    """Stub implementation of ``PaymentGatewayPort``.

    Opens a session for any positive amount and remembers it. Verification
    reports the remembered amount with the outcome set through
    ``set_outcome`` (``SUCCESS`` by default).
    """

    def __init__(self, checkout_base: str = "https://checkout.local/pay"):
        self.checkout_base = checkout_base.rstrip("/")
        self.sessions: Dict[str, dict] = {}
        self.outcomes: Dict[str, PaymentOutcome] = {}

    def initialize_payment(
        self,
        email: str,
        amount_minor: int,
        reference: str,
        currency: str = "NGN",
        callback_url: str = "",
        metadata: Optional[dict] = None,
    ) -> PaymentSession:
        if amount_minor <= 0:
            raise PaymentFailed("Amount must be positive", details={"reference": reference})
        self.sessions[reference] = {
            "email": email,
            "amount_minor": amount_minor,
            "currency": currency,
            "callback_url": callback_url,
            "metadata": metadata or {},
        }
        return PaymentSession(
            authorization_url=f"{self.checkout_base}/{reference}",
            reference=reference,
            access_code=f"stub-{reference}",
        )

    def set_outcome(self, reference: str, outcome: PaymentOutcome) -> None:
        self.outcomes[reference] = PaymentOutcome(outcome)

    def verify_payment(self, reference: str) -> PaymentVerification:
        session = self.sessions.get(reference)
        if session is None:
            raise NotFound("Transaction not found", details={"reference": reference})
        return PaymentVerification(
            reference=reference,
            outcome=self.outcomes.get(reference, PaymentOutcome.SUCCESS),
            amount_minor=session["amount_minor"],
            gateway_response="Approved",
        )


class CacheCartStore(CartPort):
    """Carts of authenticated customers kept in the Django cache.

    A cart is stored under ``cart:<user_id>`` as a list of
    ``(product_id, quantity)`` pairs.
    """

    def __init__(self, cache=None):
        self.cache = cache if cache is not None else caches["default"]

    def _key(self, user_id: str) -> str:
        return f"cart:{user_id}"

    def put(self, user_id: str, items: List[Tuple[str, int]]) -> None:
        self.cache.set(self._key(user_id), [[str(pid), int(qty)] for pid, qty in items], timeout=None)

    def get_cart(self, user_id: str) -> Cart:
        raw = self.cache.get(self._key(user_id)) or []
        return Cart(lines=[CartLine(product_id=pid, quantity=qty) for pid, qty in raw])

    def clear_cart(self, user_id: str) -> None:
        self.cache.delete(self._key(user_id))


class RecordingNotifier(NotificationPort):
    """Keeps every notification in memory instead of delivering it."""

    def __init__(self):
        self.sent: List[Tuple[NotificationEvent, str, dict]] = []

    def send(self, event: NotificationEvent, recipient: str, variables: dict) -> None:
        logger.info("notification recorded", extra={"event": NotificationEvent(event).value})
        self.sent.append((NotificationEvent(event), recipient, dict(variables)))
