"""Order lifecycle service: checkout, payment reconciliation and status changes.

``OrderService`` is the single entry point the HTTP layer talks to. It
wires the leaf components together:

- Phase 1 (``initialize_order``) prices the cart, checks stock
  optimistically, issues an order number and opens a hosted payment
  session. Guest orders are only staged; authenticated orders are written
  immediately with a pending payment.
- Phase 2 (``materialize_order``) runs when the gateway confirms the
  payment. It re-checks stock on locked rows, deducts it and writes the
  order, its items and the first timeline event in one transaction.
  Duplicate confirmations converge on the existing order.
- Status changes (``transition_order_status``, ``cancel_order``,
  ``transition_payment_status``) go through ``OrderStateMachine`` and
  append exactly one timeline event each.

Captured payments that cannot become an order are written to the
reconciliation queue before the error is raised.
"""

import logging
from typing import Iterable, List, Optional
from urllib.parse import urlencode

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.db import IntegrityError, transaction
from django.utils import timezone

from .domain import (
    Cart,
    CheckoutResult,
    GuestInfo,
    NotificationEvent,
    OrderIntent,
    OrderLine,
    OrderStateMachine,
    OrderStatus,
    PaymentMethod,
    PaymentOutcome,
    PaymentStatus,
    ShippingInfo,
    TimelineEvent,
    TimelineEventType,
    describe_status,
)
from .errors import (
    AmountMismatch,
    EmptyCart,
    ExternalServiceError,
    Forbidden,
    InvalidTransition,
    NotFound,
    OrderError,
    PaymentFailed,
    StagingExpired,
    TerminalState,
    ValidationFailed,
)
from .models import OrderModel, ReconciliationCase
from .notifications import notify_safely
from .pricing import round_money, to_minor_units
from .stock import StockCheck
from .timeline import status_change_data

logger = logging.getLogger("orders.service")

# reconciliation reasons
STOCK_UNAVAILABLE = "STOCK_UNAVAILABLE"
STAGING_EXPIRED = "STAGING_EXPIRED"
AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
ORDER_NOT_PAYABLE = "ORDER_NOT_PAYABLE"


class _StockRejected(Exception):
    """Aborts the materialization transaction when locked stock is short."""

    def __init__(self, check: StockCheck):
        super().__init__("stock rejected")
        self.check = check


class OrderService:
    """Orchestrates the order lifecycle over injected collaborators.

    Every collaborator is required; a missing one raises
    ``ImproperlyConfigured`` at construction time.

    Args:
        catalog: ``ProductCatalogPort`` used for enrichment and stock changes.
        gateway: ``PaymentGatewayPort`` opening and verifying payments.
        cart: ``CartPort`` of authenticated customers.
        notifier: ``NotificationPort`` for customer messages.
        staging: ``PendingOrderStaging`` for guest order intents.
        sequence: ``OrderNumberGenerator``.
        pricing: ``PricingCalculator``.
        stock: ``StockValidator``.
        repository: ``OrderRepository``.
        ledger: ``TimelineLedger``.
    """

    def __init__(
        self,
        catalog,
        gateway,
        cart,
        notifier,
        staging,
        sequence,
        pricing,
        stock,
        repository,
        ledger,
        guest_customer_id: str | None = None,
        frontend_url: str | None = None,
        number_attempts: int | None = None,
    ):
        collaborators = {
            "catalog": catalog,
            "gateway": gateway,
            "cart": cart,
            "notifier": notifier,
            "staging": staging,
            "sequence": sequence,
            "pricing": pricing,
            "stock": stock,
            "repository": repository,
            "ledger": ledger,
        }
        missing = sorted(name for name, dep in collaborators.items() if dep is None)
        if missing:
            raise ImproperlyConfigured(f"OrderService is missing collaborators: {', '.join(missing)}")

        self.catalog = catalog
        self.gateway = gateway
        self.cart = cart
        self.notifier = notifier
        self.staging = staging
        self.sequence = sequence
        self.pricing = pricing
        self.stock = stock
        self.repository = repository
        self.ledger = ledger
        self.guest_customer_id = guest_customer_id or getattr(settings, "ORDERS_GUEST_CUSTOMER_ID", "guest")
        self.frontend_url = (frontend_url or getattr(settings, "FRONTEND_URL", "http://localhost:3000")).rstrip("/")
        self.number_attempts = number_attempts or getattr(settings, "ORDERS_NUMBER_ATTEMPTS", 5)

    # ---- Phase 1 ----
    def initialize_order(
        self,
        cart: Optional[Cart],
        shipping: ShippingInfo,
        payment_method: PaymentMethod = PaymentMethod.CARD,
        guest: Optional[GuestInfo] = None,
        customer_id: str | None = None,
        customer_email: str | None = None,
        coupon_code: str | None = None,
        customer_notes: str | None = None,
    ) -> CheckoutResult:
        """Price a cart and open a hosted payment session for it.

        Without ``customer_id`` the checkout is a guest checkout: the order
        intent is staged and no order row is written until the payment is
        confirmed. With ``customer_id`` the order is written immediately with
        a pending payment. The customer's cart is cleared once the payment
        session opens. For authenticated checkouts ``cart`` may be omitted
        and is read from the cart service.

        Args:
            cart: Items to buy. Only product ids and quantities are trusted.
            shipping: Delivery address.
            payment_method: Method shown on the order.
            guest: Contact details of a guest buyer.
            customer_id: Authenticated customer, if any.
            customer_email: E-mail of the authenticated customer.
            coupon_code: Optional coupon.
            customer_notes: Free text from the buyer.

        Returns:
            CheckoutResult: Order number, payment URL and priced totals.

        Raises:
            ValidationFailed: Empty cart, bad quantities or missing contact.
            InsufficientStock: A product does not have enough stock.
            ProductUnavailable: A product is inactive.
            NotFound: A product does not exist.
            StagingUnavailable: The intent could not be staged.
            ExternalServiceError: The gateway could not open a session.
        """
        is_guest = customer_id is None
        if is_guest:
            if guest is None or not guest.email:
                raise ValidationFailed("Guest contact information is required for guest checkout")
            email = guest.email
        else:
            if not customer_email:
                raise ValidationFailed("Customer e-mail is required to initialize a payment")
            email = customer_email
            if cart is None:
                cart = self.cart.get_cart(customer_id)

        if cart is None or cart.is_empty:
            raise EmptyCart("Cart is empty")
        if any(line.quantity <= 0 for line in cart.lines):
            raise ValidationFailed("Quantities must be positive")

        check = self.stock.validate([(line.product_id, line.quantity) for line in cart.lines])
        check.raise_for_problems()

        lines = []
        for line in cart.lines:
            product = check.products[str(line.product_id)]
            unit_price = round_money(product.price)
            lines.append(
                OrderLine(
                    product_id=product.id,
                    product_name=product.name,
                    product_sku=product.sku,
                    product_image=product.image_url,
                    quantity=line.quantity,
                    unit_price=unit_price,
                    total_price=round_money(unit_price * line.quantity),
                )
            )
        pricing = self.pricing.price(lines, coupon_code)

        notes = {"is_guest_order": is_guest}
        if is_guest:
            notes.update(
                {
                    "guest_email": guest.email,
                    "guest_first_name": guest.first_name,
                    "guest_last_name": guest.last_name,
                    "guest_phone": guest.phone,
                }
            )
        if customer_notes:
            notes["customer_notes"] = customer_notes

        intent = OrderIntent(
            order_number="",
            customer_id=self.guest_customer_id if is_guest else str(customer_id),
            customer_email=email,
            payment_method=PaymentMethod(payment_method),
            pricing=pricing,
            lines=lines,
            notes=notes,
            shipping_address=shipping.as_dict(),
            is_guest=is_guest,
        )

        order = None
        if is_guest:
            self._stage_with_fresh_number(intent)
        else:
            order = self._create_pending_order(intent)

        amount_minor = to_minor_units(pricing.total)
        try:
            session = self.gateway.initialize_payment(
                email=email,
                amount_minor=amount_minor,
                reference=intent.order_number,
                currency=pricing.currency,
                callback_url=self._callback_url(intent.order_number, email),
                metadata={
                    "order_number": intent.order_number,
                    "customer_id": intent.customer_id,
                    "is_guest": is_guest,
                },
            )
        except Exception as exc:
            if is_guest:
                self.staging.discard(intent.order_number)
            logger.error(
                "payment initialization failed",
                extra={"order_number": intent.order_number, "guest": is_guest},
                exc_info=True,
            )
            if isinstance(exc, OrderError):
                raise
            raise ExternalServiceError("Payment gateway is unavailable") from exc

        if not is_guest:
            self._clear_cart(customer_id)
        logger.info(
            "checkout initialized",
            extra={"order_number": intent.order_number, "amount_minor": amount_minor, "guest": is_guest},
        )
        return CheckoutResult(
            order_number=intent.order_number,
            payment_url=session.authorization_url,
            reference=session.reference or intent.order_number,
            pricing=pricing,
            amount_minor=amount_minor,
            staged=is_guest,
            order_id=str(order.id) if order is not None else None,
        )

    def _stage_with_fresh_number(self, intent: OrderIntent) -> None:
        for attempt in range(1, self.number_attempts + 1):
            issued = self.sequence.issue()
            intent.order_number = issued.order_number
            if self.repository.find_by_number(issued.order_number) is None and self.staging.stage(intent):
                return
            logger.warning(
                "order number collision",
                extra={"order_number": issued.order_number, "attempt": attempt, "fallback": issued.fallback},
            )
        raise ExternalServiceError("Could not allocate an order number")

    def _create_pending_order(self, intent: OrderIntent) -> OrderModel:
        for attempt in range(1, self.number_attempts + 1):
            issued = self.sequence.issue()
            intent.order_number = issued.order_number
            try:
                with transaction.atomic():
                    order = self.repository.create_with_items(intent, OrderStatus.PENDING, PaymentStatus.PENDING)
                    self.ledger.append(
                        order.id,
                        TimelineEventType.ORDER_CREATED,
                        "Order created and awaiting payment",
                        actor=intent.customer_id,
                        data=status_change_data(None, OrderStatus.PENDING),
                    )
                return order
            except IntegrityError:
                logger.warning(
                    "order number collision",
                    extra={"order_number": issued.order_number, "attempt": attempt, "fallback": issued.fallback},
                )
        raise ExternalServiceError("Could not allocate an order number")

    def _clear_cart(self, customer_id: str) -> None:
        try:
            self.cart.clear_cart(customer_id)
        except Exception:
            # the payment session is open; a stale cart is harmless
            logger.exception("cart clear failed", extra={"customer_id": customer_id})

    def _callback_url(self, order_number: str, email: str) -> str:
        return f"{self.frontend_url}/orders/track?{urlencode({'orderNumber': order_number, 'email': email})}"

    # ---- Phase 2 ----
    def materialize_order(
        self,
        order_number: str,
        gateway_reference: str | None = None,
        outcome: PaymentOutcome = PaymentOutcome.SUCCESS,
        amount_minor: int | None = None,
        actor: str = "PAYMENT_SYSTEM",
    ) -> OrderModel:
        """Turn a gateway confirmation into a durable order.

        Safe to call any number of times for the same order number: once an
        order exists with a completed payment it is returned unchanged.

        Args:
            order_number: Order number the payment was opened for.
            gateway_reference: Gateway reference, defaults to the order number.
            outcome: Outcome reported by the gateway.
            amount_minor: Amount reported by the gateway, in kobo.
            actor: Recorded on the timeline.

        Returns:
            OrderModel: The created or already existing order.

        Raises:
            StagingExpired: No order and no staged intent for the number.
            PaymentFailed: A staged order whose payment did not succeed.
            AmountMismatch: The captured amount differs from the order total.
            ValidationFailed: Stock can no longer cover the order.
        """
        reference = gateway_reference or order_number
        outcome = PaymentOutcome(outcome)
        if outcome is PaymentOutcome.PENDING:
            raise ValidationFailed("A pending payment cannot be reconciled", details={"order_number": order_number})

        existing = self.repository.find_by_number(order_number)
        if existing is not None:
            return self._settle_existing(existing, reference, outcome, amount_minor, actor)

        intent = self.staging.load(order_number)
        if intent is None:
            existing = self.repository.find_by_number(order_number)
            if existing is not None:
                return self._settle_existing(existing, reference, outcome, amount_minor, actor)
            details = {"order_number": order_number}
            if outcome is PaymentOutcome.SUCCESS:
                case = self.repository.open_reconciliation_case(
                    reference,
                    STAGING_EXPIRED,
                    detail="Payment confirmed but no pending order was found",
                    order_number=order_number,
                    amount_minor=amount_minor,
                )
                details["reconciliation_case"] = case.id
                logger.error("paid order has no staged intent", extra={"order_number": order_number, "reference": reference})
            raise StagingExpired("Pending order not found or expired", details=details)

        if outcome is not PaymentOutcome.SUCCESS:
            logger.info(
                "staged order payment unsuccessful",
                extra={"order_number": order_number, "outcome": outcome.value},
            )
            notify_safely(
                self.notifier,
                NotificationEvent.PAYMENT_FAILED,
                intent.customer_email,
                {"order_number": order_number, "customer_name": intent.notes.get("guest_first_name", "")},
            )
            raise PaymentFailed("Payment was not successful", details={"order_number": order_number})

        expected = to_minor_units(intent.pricing.total)
        if amount_minor is not None and int(amount_minor) != expected:
            case = self.repository.open_reconciliation_case(
                reference,
                AMOUNT_MISMATCH,
                detail=f"Expected {expected} kobo, gateway reported {amount_minor}",
                order_number=order_number,
                amount_minor=amount_minor,
                payload=intent.to_payload(),
            )
            raise AmountMismatch(
                "Paid amount does not match the order total",
                details={"expected_minor": expected, "received_minor": int(amount_minor), "reconciliation_case": case.id},
            )

        try:
            with transaction.atomic():
                check = self.stock.validate([(line.product_id, line.quantity) for line in intent.lines], lock=True)
                # a concurrent confirmation may have committed while we waited for the locks
                existing = self.repository.find_by_number(order_number)
                if existing is not None:
                    return existing
                if not check.ok:
                    raise _StockRejected(check)
                self._deduct_stock(intent.lines)
                order = self.repository.create_with_items(
                    intent,
                    OrderStatus.CONFIRMED,
                    PaymentStatus.COMPLETED,
                    payment_reference=reference,
                    stock_committed=True,
                )
                self.ledger.append(
                    order.id,
                    TimelineEventType.PAYMENT_CONFIRMED,
                    "Payment confirmed and order created",
                    actor=actor,
                    data=status_change_data(None, OrderStatus.CONFIRMED, reference=reference, amount_minor=expected),
                )
                notify_safely(
                    self.notifier, NotificationEvent.ORDER_CONFIRMATION, order.customer_email, self._notify_vars(order)
                )
        except IntegrityError:
            existing = self.repository.find_by_number(order_number) or self.repository.find_by_reference(reference)
            if existing is None:
                raise
            logger.info("order already materialized", extra={"order_number": order_number})
            return existing
        except _StockRejected as rejected:
            case = self.repository.open_reconciliation_case(
                reference,
                STOCK_UNAVAILABLE,
                detail="; ".join(p.describe() for p in rejected.check.problems),
                order_number=order_number,
                amount_minor=expected,
                payload=intent.to_payload(),
            )
            logger.error(
                "paid order blocked by stock",
                extra={"order_number": order_number, "reference": reference, "reconciliation_case": case.id},
            )
            error = rejected.check.as_validation_error()
            error.details["reconciliation_case"] = case.id
            raise error

        self.staging.consume(order_number)
        logger.info("order materialized", extra={"order_number": order_number, "reference": reference})
        return order

    def _settle_existing(
        self,
        order: OrderModel,
        reference: str,
        outcome: PaymentOutcome,
        amount_minor: int | None,
        actor: str,
    ) -> OrderModel:
        """Apply a gateway outcome to an order row that already exists."""
        if order.payment_status == PaymentStatus.COMPLETED.value:
            logger.info("payment already confirmed", extra={"order_number": order.order_number})
            return order

        if outcome is PaymentOutcome.SUCCESS:
            expected = to_minor_units(order.total)
            if amount_minor is not None and int(amount_minor) != expected:
                case = self.repository.open_reconciliation_case(
                    reference,
                    AMOUNT_MISMATCH,
                    detail=f"Expected {expected} kobo, gateway reported {amount_minor}",
                    order_number=order.order_number,
                    amount_minor=amount_minor,
                )
                raise AmountMismatch(
                    "Paid amount does not match the order total",
                    details={"expected_minor": expected, "received_minor": int(amount_minor), "reconciliation_case": case.id},
                )
            try:
                return self._confirm_pending(order.id, reference, expected, actor)
            except (TerminalState, InvalidTransition) as exc:
                case = self.repository.open_reconciliation_case(
                    reference,
                    ORDER_NOT_PAYABLE,
                    detail=exc.message,
                    order_number=order.order_number,
                    amount_minor=amount_minor,
                )
                exc.details["reconciliation_case"] = case.id
                raise
            except _StockRejected as rejected:
                case = self.repository.open_reconciliation_case(
                    reference,
                    STOCK_UNAVAILABLE,
                    detail="; ".join(p.describe() for p in rejected.check.problems),
                    order_number=order.order_number,
                    amount_minor=expected,
                )
                error = rejected.check.as_validation_error()
                error.details["reconciliation_case"] = case.id
                raise error

        with transaction.atomic():
            locked = self.repository.lock(order_id=order.id)
            if locked.payment_status == PaymentStatus.FAILED.value:
                return locked
            OrderStateMachine.assert_payment_transition(locked.payment_status, PaymentStatus.FAILED)
            previous = locked.payment_status
            locked.payment_status = PaymentStatus.FAILED.value
            self.repository.save(locked, ["payment_status"])
            self.ledger.append(
                locked.id,
                TimelineEventType.PAYMENT_FAILED,
                f"Payment {outcome.value.lower()}",
                actor=actor,
                data={"from_payment_status": previous, "to_payment_status": PaymentStatus.FAILED.value, "reference": reference},
            )
            notify_safely(
                self.notifier, NotificationEvent.PAYMENT_FAILED, locked.customer_email, self._notify_vars(locked)
            )
        logger.info("order payment failed", extra={"order_number": locked.order_number, "outcome": outcome.value})
        return locked

    def _confirm_pending(self, order_id, reference: str, amount_minor: int, actor: str) -> OrderModel:
        with transaction.atomic():
            order = self.repository.lock(order_id=order_id)
            if order.payment_status == PaymentStatus.COMPLETED.value:
                return order
            OrderStateMachine.assert_payment_transition(order.payment_status, PaymentStatus.COMPLETED)
            previous = OrderStatus(order.status)
            if OrderStateMachine.is_terminal(previous):
                OrderStateMachine.assert_status_transition(previous, OrderStatus.CONFIRMED)
            # only a PENDING order moves; one already further along keeps its status
            target = OrderStatus.CONFIRMED if previous is OrderStatus.PENDING else previous

            if not order.stock_committed:
                items = [(item.product_id, item.quantity) for item in order.items.all()]
                check = self.stock.validate(items, lock=True)
                if not check.ok:
                    raise _StockRejected(check)
                self._deduct_stock(items)

            order.payment_status = PaymentStatus.COMPLETED.value
            order.payment_reference = reference
            order.status = target.value
            order.stock_committed = True
            self.repository.save(order, ["payment_status", "payment_reference", "status", "stock_committed"])
            self.ledger.append(
                order.id,
                TimelineEventType.PAYMENT_CONFIRMED,
                "Payment confirmed",
                actor=actor,
                data=status_change_data(previous, target, reference=reference, amount_minor=amount_minor),
            )
            notify_safely(
                self.notifier, NotificationEvent.ORDER_CONFIRMATION, order.customer_email, self._notify_vars(order)
            )
        logger.info("pending order confirmed", extra={"order_number": order.order_number, "reference": reference})
        return order

    def _deduct_stock(self, lines: Iterable) -> None:
        for line in lines:
            product_id, quantity = line if isinstance(line, tuple) else (line.product_id, line.quantity)
            self.catalog.adjust_stock(product_id, -int(quantity))

    def verify_and_materialize(self, reference: str, actor: str = "PAYMENT_SYSTEM") -> OrderModel:
        """Ask the gateway for the outcome of ``reference`` and materialize it.

        Raises:
            ExternalServiceError: The gateway could not be reached.
        """
        try:
            verification = self.gateway.verify_payment(reference)
        except OrderError:
            raise
        except Exception as exc:
            logger.error("payment verification failed", extra={"reference": reference}, exc_info=True)
            raise ExternalServiceError("Payment gateway is unavailable") from exc
        if verification.outcome is PaymentOutcome.PENDING:
            raise PaymentFailed(
                "Payment has not completed yet", details={"reference": reference}, code="PAYMENT_PENDING"
            )
        return self.materialize_order(
            verification.reference or reference,
            gateway_reference=reference,
            outcome=verification.outcome,
            amount_minor=verification.amount_minor,
            actor=actor,
        )

    # ---- State machine ----
    def transition_order_status(
        self, order_id, new_status: OrderStatus, actor: str, notes: str | None = None
    ) -> OrderModel:
        """Move an order to ``new_status`` and record the change.

        Moving to ``CANCELLED`` is treated as a cancellation with ``notes`` as
        the reason.

        Raises:
            NotFound: Unknown order.
            TerminalState: The order is delivered, cancelled or refunded.
            InvalidTransition: The move is not allowed, or the order is still
                awaiting payment.
        """
        try:
            new_status = OrderStatus(new_status)
        except ValueError:
            raise ValidationFailed(f"Unknown order status {new_status!r}") from None
        if new_status is OrderStatus.CANCELLED:
            return self.cancel_order(order_id, notes or f"Cancelled by {actor}", actor)

        with transaction.atomic():
            order = self._lock_or_404(order_id)
            previous = OrderStatus(order.status)
            OrderStateMachine.assert_status_transition(previous, new_status, payment_status=order.payment_status)

            fields = ["status"]
            now = timezone.now()
            if new_status is OrderStatus.SHIPPED:
                order.shipped_at = now
                fields.append("shipped_at")
            elif new_status is OrderStatus.DELIVERED:
                order.delivered_at = now
                fields.append("delivered_at")
            if notes:
                order.admin_notes = notes
                fields.append("admin_notes")
            order.status = new_status.value
            self.repository.save(order, fields)

            self.ledger.append(
                order.id,
                TimelineEventType.STATUS_UPDATED,
                describe_status(new_status),
                actor=actor,
                data=status_change_data(previous, new_status, notes=notes),
            )
            notify_safely(
                self.notifier, NotificationEvent.ORDER_STATUS_UPDATE, order.customer_email, self._notify_vars(order)
            )
        logger.info(
            "order status updated",
            extra={"order_number": order.order_number, "from_status": previous.value, "to_status": new_status.value},
        )
        return order

    def cancel_order(self, order_id, reason: str, actor: str) -> OrderModel:
        """Cancel an order that has not reached a terminal status.

        Committed stock is returned to the catalog in the same transaction.

        Raises:
            ValidationFailed: ``reason`` is blank.
            NotFound: Unknown order.
            TerminalState: The order is delivered, cancelled or refunded.
        """
        if not reason or not reason.strip():
            raise ValidationFailed("A cancellation reason is required")

        with transaction.atomic():
            order = self._lock_or_404(order_id)
            previous = OrderStatus(order.status)
            OrderStateMachine.assert_status_transition(previous, OrderStatus.CANCELLED)

            fields = ["status", "cancelled_at"]
            if order.stock_committed:
                for item in order.items.all():
                    self.catalog.adjust_stock(item.product_id, item.quantity)
                order.stock_committed = False
                fields.append("stock_committed")
            if OrderStateMachine.can_transition_payment(order.payment_status, PaymentStatus.CANCELLED):
                order.payment_status = PaymentStatus.CANCELLED.value
                fields.append("payment_status")
            order.status = OrderStatus.CANCELLED.value
            order.cancelled_at = timezone.now()
            self.repository.save(order, fields)

            self.ledger.append(
                order.id,
                TimelineEventType.ORDER_CANCELLED,
                f"Order cancelled: {reason}",
                actor=actor,
                data=status_change_data(previous, OrderStatus.CANCELLED, reason=reason),
            )
            notify_safely(
                self.notifier,
                NotificationEvent.ORDER_CANCELLED,
                order.customer_email,
                self._notify_vars(order, reason=reason),
            )
        logger.info("order cancelled", extra={"order_number": order.order_number, "from_status": previous.value})
        return order

    def transition_payment_status(
        self, order_id, new_payment_status: PaymentStatus, actor: str, notes: str | None = None
    ) -> OrderModel:
        """Move the payment status, typically for refunds.

        Raises:
            NotFound: Unknown order.
            InvalidTransition: The payment move is not allowed.
        """
        try:
            new_payment_status = PaymentStatus(new_payment_status)
        except ValueError:
            raise ValidationFailed(f"Unknown payment status {new_payment_status!r}") from None

        with transaction.atomic():
            order = self._lock_or_404(order_id)
            previous = order.payment_status
            OrderStateMachine.assert_payment_transition(previous, new_payment_status)
            order.payment_status = new_payment_status.value
            self.repository.save(order, ["payment_status"])
            data = {"from_payment_status": previous, "to_payment_status": new_payment_status.value}
            if notes:
                data["notes"] = notes
            self.ledger.append(
                order.id,
                TimelineEventType.PAYMENT_STATUS_UPDATED,
                f"Payment status updated to {new_payment_status.value}",
                actor=actor,
                data=data,
            )
        return order

    def resolve_reconciliation_case(self, case_id, actor: str, resolution: str = "") -> ReconciliationCase:
        """Close a reconciliation case once staff have refunded or fulfilled it.

        Raises:
            NotFound: Unknown case.
        """
        case = self.repository.resolve_reconciliation_case(case_id, resolved_by=actor, resolution=resolution)
        if case is None:
            raise NotFound("Reconciliation case not found", details={"case_id": case_id})
        logger.info(
            "reconciliation case resolved",
            extra={"case_id": case.id, "reference": case.reference, "reason": case.reason, "actor": case.resolved_by},
        )
        return case

    def _lock_or_404(self, order_id) -> OrderModel:
        order = self.repository.lock(order_id=order_id)
        if order is None:
            raise NotFound("Order not found", details={"order_id": str(order_id)})
        return order

    # ---- Reads ----
    def get_order_timeline(
        self, order_id, newest_first: bool = True, caller_id: str | None = None
    ) -> List[TimelineEvent]:
        """Return the timeline of an order the caller may read.

        Raises:
            NotFound: Unknown order.
            Forbidden: The order belongs to someone else.
        """
        order = self.get_order_by_id(order_id, caller_id=caller_id)
        return self.ledger.list_for(order.id, newest_first=newest_first)

    def get_order_by_id(self, order_id, caller_id: str | None = None) -> OrderModel:
        order = self.repository.find_by_id(order_id)
        if order is None:
            raise NotFound("Order not found", details={"order_id": str(order_id)})
        self._check_owner(order, caller_id)
        return order

    def get_order_by_number(self, order_number: str, caller_id: str | None = None) -> OrderModel:
        """Return an order by its number, checking ownership when ``caller_id`` is given.

        Raises:
            NotFound: Unknown order number.
            Forbidden: The order belongs to someone else.
        """
        order = self.repository.find_by_number(order_number)
        if order is None:
            raise NotFound("Order not found", details={"order_number": order_number})
        self._check_owner(order, caller_id)
        return order

    def _check_owner(self, order: OrderModel, caller_id: str | None) -> None:
        if caller_id is not None and order.customer_id != str(caller_id):
            raise Forbidden("You do not have access to this order")

    def track_guest_order(self, order_number: str, email: str) -> OrderModel:
        """Look up a guest order by number and the e-mail used at checkout.

        A wrong e-mail is reported exactly like an unknown order.
        """
        email = (email or "").strip().lower()
        order = self.repository.find_by_number(order_number)
        if order is None:
            intent = self.staging.load(order_number)
            if intent is not None and intent.customer_email.lower() == email:
                raise NotFound(
                    "Order is still being processed. Please wait for payment confirmation",
                    details={"order_number": order_number, "pending": True},
                )
            raise NotFound("Order not found", details={"order_number": order_number})

        owner_email = (order.notes or {}).get("guest_email") or order.customer_email
        if owner_email.lower() != email:
            raise NotFound("Order not found", details={"order_number": order_number})
        return order

    def list_orders(self, customer_id: str | None = None, status: str | None = None, page: int = 1, page_size: int = 20):
        if status:
            try:
                status = OrderStatus(status).value
            except ValueError:
                raise ValidationFailed(f"Unknown order status {status!r}") from None
        return self.repository.list_orders(customer_id=customer_id, status=status, page=page, page_size=page_size)

    def _notify_vars(self, order: OrderModel, **extra) -> dict:
        notes = order.notes or {}
        address = order.shipping_address or {}
        variables = {
            "order_number": order.order_number,
            "customer_name": notes.get("guest_first_name") or address.get("first_name", ""),
            "status": order.status,
            "status_description": describe_status(order.status),
            "total": str(order.total),
            "currency": order.currency,
            "tracking_url": self._callback_url(order.order_number, order.customer_email),
        }
        variables.update(extra)
        return variables
