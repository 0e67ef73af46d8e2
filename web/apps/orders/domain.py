"""Domain models, ports and lifecycle rules for orders.

This module contains the enums and dataclasses used as DTOs across the
orders engine, protocol definitions (ports) for the external
collaborators (product catalog, payment gateway, cart, notifications),
and the order state machine rules. It does not touch the database or
the network.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from .errors import InvalidTransition, TerminalState


# ---- Enums ----
class OrderStatus(str, Enum):
    """Fulfilment status of an order."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentStatus(str, Enum):
    """Payment status of an order, driven by the gateway and refunds."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    PARTIAL_REFUND = "PARTIAL_REFUND"


class PaymentMethod(str, Enum):
    CARD = "CARD"
    BANK_TRANSFER = "BANK_TRANSFER"
    USSD = "USSD"
    WALLET = "WALLET"


class PaymentOutcome(str, Enum):
    """Outcome of a transaction as reported by the payment gateway."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    ABANDONED = "ABANDONED"
    # still ongoing at the gateway; only returned by verification
    PENDING = "PENDING"


class TimelineEventType(str, Enum):
    ORDER_CREATED = "ORDER_CREATED"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_STATUS_UPDATED = "PAYMENT_STATUS_UPDATED"
    STATUS_UPDATED = "STATUS_UPDATED"
    ORDER_CANCELLED = "ORDER_CANCELLED"


class NotificationEvent(str, Enum):
    ORDER_CONFIRMATION = "ORDER_CONFIRMATION"
    ORDER_STATUS_UPDATE = "ORDER_STATUS_UPDATE"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    PAYMENT_FAILED = "PAYMENT_FAILED"


STATUS_DESCRIPTIONS = {
    OrderStatus.PENDING: "Order placed and awaiting confirmation",
    OrderStatus.CONFIRMED: "Order confirmed and being prepared",
    OrderStatus.PROCESSING: "Order is being processed",
    OrderStatus.SHIPPED: "Order has been shipped",
    OrderStatus.DELIVERED: "Order has been delivered",
    OrderStatus.CANCELLED: "Order has been cancelled",
    OrderStatus.REFUNDED: "Order has been refunded",
}


def describe_status(status: OrderStatus) -> str:
    status = OrderStatus(status)
    return STATUS_DESCRIPTIONS.get(status, f"Order status updated to {status.value}")


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class CartLine:
    """A single line of a shopping cart as handed to checkout.

    Only ``product_id`` and ``quantity`` are trusted; names, SKU, image
    and price are re-read from the catalog when the order is priced.
    """

    product_id: str
    quantity: int
    product_name: str = ""
    product_sku: str = ""
    product_image: str = ""
    unit_price: Optional[Decimal] = None


@dataclass
class Cart:
    lines: List[CartLine] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.lines


@dataclass(frozen=True)
class ProductSnapshot:
    """Catalog view of a product at the moment it was read."""

    id: str
    name: str
    sku: str
    price: Decimal
    stock: int
    is_active: bool = True
    image_url: str = ""


@dataclass(frozen=True)
class GuestInfo:
    email: str
    first_name: str
    last_name: str
    phone: str = ""


@dataclass(frozen=True)
class ShippingInfo:
    first_name: str
    last_name: str
    address_line1: str
    city: str
    state: str
    phone_number: str = ""
    address_line2: str = ""
    postal_code: str = ""
    country: str = "NG"

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class OrderLine:
    """An order line with the product data captured at checkout time.

    Attributes:
        product_id: Catalog identifier of the product.
        product_name: Product name at checkout time.
        product_sku: Product SKU at checkout time.
        product_image: First product image at checkout time.
        quantity: Units ordered.
        unit_price: Price per unit in naira.
        total_price: ``unit_price * quantity``.
    """

    product_id: str
    product_name: str
    product_sku: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    product_image: str = ""

    def to_payload(self) -> dict:
        return {
            "product_id": self.product_id,
            "product_name": self.product_name,
            "product_sku": self.product_sku,
            "product_image": self.product_image,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "total_price": str(self.total_price),
        }

    @classmethod
    def from_payload(cls, data: dict) -> "OrderLine":
        return cls(
            product_id=data["product_id"],
            product_name=data.get("product_name", ""),
            product_sku=data.get("product_sku", ""),
            product_image=data.get("product_image", ""),
            quantity=int(data["quantity"]),
            unit_price=Decimal(data["unit_price"]),
            total_price=Decimal(data["total_price"]),
        )


@dataclass(frozen=True)
class Pricing:
    """Money summary of an order, in major units (naira).

    ``total`` is always ``subtotal + shipping_cost - discount``.
    """

    subtotal: Decimal
    shipping_cost: Decimal
    discount: Decimal
    total: Decimal
    currency: str = "NGN"
    coupon_code: Optional[str] = None

    def to_payload(self) -> dict:
        return {
            "subtotal": str(self.subtotal),
            "shipping_cost": str(self.shipping_cost),
            "discount": str(self.discount),
            "total": str(self.total),
            "currency": self.currency,
            "coupon_code": self.coupon_code,
        }

    @classmethod
    def from_payload(cls, data: dict) -> "Pricing":
        return cls(
            subtotal=Decimal(data["subtotal"]),
            shipping_cost=Decimal(data["shipping_cost"]),
            discount=Decimal(data["discount"]),
            total=Decimal(data["total"]),
            currency=data.get("currency", "NGN"),
            coupon_code=data.get("coupon_code"),
        )


@dataclass
class OrderIntent:
    """A fully formed order that has not been written to order storage.

    This is the payload kept by the pending staging store between payment
    initialization and gateway confirmation.
    """

    order_number: str
    customer_id: str
    customer_email: str
    payment_method: PaymentMethod
    pricing: Pricing
    lines: List[OrderLine]
    notes: Dict[str, Any] = field(default_factory=dict)
    shipping_address: Dict[str, Any] = field(default_factory=dict)
    is_guest: bool = True
    staged_at: Optional[str] = None

    def to_payload(self) -> dict:
        return {
            "order_data": {
                "order_number": self.order_number,
                "customer_id": self.customer_id,
                "customer_email": self.customer_email,
                "payment_method": PaymentMethod(self.payment_method).value,
                "pricing": self.pricing.to_payload(),
                "notes": self.notes,
                "shipping_address": self.shipping_address,
                "is_guest": self.is_guest,
                "staged_at": self.staged_at,
            },
            "order_items": [line.to_payload() for line in self.lines],
        }

    @classmethod
    def from_payload(cls, payload: dict) -> "OrderIntent":
        data = payload["order_data"]
        return cls(
            order_number=data["order_number"],
            customer_id=data["customer_id"],
            customer_email=data.get("customer_email", ""),
            payment_method=PaymentMethod(data.get("payment_method", PaymentMethod.CARD.value)),
            pricing=Pricing.from_payload(data["pricing"]),
            lines=[OrderLine.from_payload(i) for i in payload.get("order_items", [])],
            notes=data.get("notes") or {},
            shipping_address=data.get("shipping_address") or {},
            is_guest=data.get("is_guest", True),
            staged_at=data.get("staged_at"),
        )


@dataclass(frozen=True)
class PaymentSession:
    authorization_url: str
    reference: str
    access_code: str = ""


@dataclass(frozen=True)
class PaymentVerification:
    """Transaction outcome for a reference, from a webhook or a verify call.

    Attributes:
        reference: Gateway reference (the order number).
        outcome: ``PaymentOutcome`` reported by the gateway.
        amount_minor: Amount in kobo, when the gateway reported it.
        gateway_response: Free text returned by the gateway.
    """

    reference: str
    outcome: PaymentOutcome
    amount_minor: Optional[int] = None
    gateway_response: str = ""


@dataclass(frozen=True)
class TimelineEvent:
    order_id: str
    type: TimelineEventType
    message: str
    actor: str
    data: Optional[dict] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class CheckoutResult:
    """What Phase 1 hands back to the customer-facing caller."""

    order_number: str
    payment_url: str
    reference: str
    pricing: Pricing
    amount_minor: int
    staged: bool
    order_id: Optional[str] = None


# ---- Ports (DIP) ----
class ProductCatalogPort(Protocol):
    """Port describing the product/stock source used by the engine."""

    def find_by_id(self, product_id: str) -> Optional[ProductSnapshot]:
        """Return the current catalog view of a product, or None."""
        raise NotImplementedError()

    def lock_for_update(self, product_ids: List[str]) -> Dict[str, ProductSnapshot]:
        """Lock the product rows for the current transaction and return them.

        Must be called inside a database transaction. Missing products are
        simply absent from the returned mapping.
        """
        raise NotImplementedError()

    def adjust_stock(self, product_id: str, delta: int) -> None:
        """Add ``delta`` (negative to deduct) to the product's stock."""
        raise NotImplementedError()


class PaymentGatewayPort(Protocol):
    """Port describing the hosted payment gateway."""

    def initialize_payment(
        self,
        email: str,
        amount_minor: int,
        reference: str,
        currency: str,
        callback_url: str,
        metadata: Optional[dict] = None,
    ) -> PaymentSession:
        """Open a hosted payment session and return where to send the customer.

        Raises:
            ExternalServiceError: If the gateway cannot be reached or refuses.
        """
        raise NotImplementedError()

    def verify_payment(self, reference: str) -> PaymentVerification:
        """Ask the gateway for the authoritative outcome of a reference."""
        raise NotImplementedError()


class CartPort(Protocol):
    """Port describing the cart service of authenticated customers."""

    def get_cart(self, user_id: str) -> Cart:
        raise NotImplementedError()

    def clear_cart(self, user_id: str) -> None:
        raise NotImplementedError()


class NotificationPort(Protocol):
    """Port describing customer notifications (fire-and-forget)."""

    def send(self, event: NotificationEvent, recipient: str, variables: dict) -> None:
        raise NotImplementedError()


# ---- State machine ----
_FULFILMENT_CHAIN = [
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
]

TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REFUNDED})

_PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PROCESSING, PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED},
    PaymentStatus.PROCESSING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED, PaymentStatus.PARTIAL_REFUND},
    PaymentStatus.PARTIAL_REFUND: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.CANCELLED: set(),
    PaymentStatus.REFUNDED: set(),
}


class OrderStateMachine:
    """Rules for order status and payment status transitions.

    The fulfilment chain only moves forward
    (``PENDING < CONFIRMED < PROCESSING < SHIPPED < DELIVERED``), skipping
    ahead is allowed. ``CANCELLED`` and ``REFUNDED`` are reachable from any
    non-terminal status. Nothing leaves a terminal status. When the payment
    status is supplied, a ``PENDING`` order whose payment has not completed
    can only be cancelled.
    """

    @staticmethod
    def is_terminal(status: OrderStatus) -> bool:
        return OrderStatus(status) in TERMINAL_STATUSES

    @classmethod
    def can_transition(
        cls, current: OrderStatus, target: OrderStatus, payment_status: Optional[PaymentStatus] = None
    ) -> bool:
        current, target = OrderStatus(current), OrderStatus(target)
        if current in TERMINAL_STATUSES:
            return False
        if target is OrderStatus.CANCELLED:
            return True
        if cls.awaits_payment(current, payment_status):
            return False
        if target is OrderStatus.REFUNDED:
            return True
        return _FULFILMENT_CHAIN.index(target) > _FULFILMENT_CHAIN.index(current)

    @staticmethod
    def awaits_payment(current: OrderStatus, payment_status: Optional[PaymentStatus]) -> bool:
        """True for a pending order whose payment has not completed.

        Such an order only leaves ``PENDING`` through payment confirmation
        or cancellation. ``payment_status=None`` skips the check.
        """
        return (
            payment_status is not None
            and OrderStatus(current) is OrderStatus.PENDING
            and PaymentStatus(payment_status) is not PaymentStatus.COMPLETED
        )

    @classmethod
    def assert_status_transition(
        cls, current: OrderStatus, target: OrderStatus, payment_status: Optional[PaymentStatus] = None
    ) -> None:
        """Validate a status transition.

        Raises:
            TerminalState: If ``current`` is terminal.
            InvalidTransition: If the move goes backwards or stays put, or
                moves an unpaid pending order anywhere but ``CANCELLED``.
        """
        current, target = OrderStatus(current), OrderStatus(target)
        if current in TERMINAL_STATUSES:
            raise TerminalState(
                f"Order is {current.value} and can no longer change status",
                details={"status": current.value},
            )
        if target is not OrderStatus.CANCELLED and cls.awaits_payment(current, payment_status):
            raise InvalidTransition(
                f"Order is awaiting payment and cannot move to {target.value}",
                details={"from": current.value, "to": target.value, "payment_status": PaymentStatus(payment_status).value},
            )
        if not cls.can_transition(current, target):
            raise InvalidTransition(
                f"Cannot transition order from {current.value} to {target.value}",
                details={"from": current.value, "to": target.value},
            )

    @staticmethod
    def can_transition_payment(current: PaymentStatus, target: PaymentStatus) -> bool:
        return PaymentStatus(target) in _PAYMENT_TRANSITIONS[PaymentStatus(current)]

    @classmethod
    def assert_payment_transition(cls, current: PaymentStatus, target: PaymentStatus) -> None:
        current, target = PaymentStatus(current), PaymentStatus(target)
        if not cls.can_transition_payment(current, target):
            raise InvalidTransition(
                f"Cannot move payment from {current.value} to {target.value}",
                details={"from": current.value, "to": target.value},
            )
