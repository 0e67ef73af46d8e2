"""Repository layer for persisting orders.

This module keeps the ORM details of orders, their items and the
reconciliation queue out of the service layer. Writes that must be
atomic together are expected to run inside the caller's
``transaction.atomic`` block.
"""

from typing import Optional

from django.core.exceptions import ValidationError
from django.core.paginator import Page, Paginator
from django.db import IntegrityError, transaction
from django.utils import timezone

from .domain import OrderIntent, OrderStatus, PaymentStatus
from .models import OrderItemModel, OrderModel, ReconciliationCase


class OrderRepository:
    """Repository that persists orders using the Django ORM."""

    def find_by_id(self, order_id) -> Optional[OrderModel]:
        try:
            return OrderModel.objects.prefetch_related("items").get(id=order_id)
        except (OrderModel.DoesNotExist, ValueError, ValidationError):
            # malformed UUIDs are reported by the field as ValidationError
            return None

    def find_by_number(self, order_number: str) -> Optional[OrderModel]:
        return OrderModel.objects.prefetch_related("items").filter(order_number=order_number).first()

    def find_by_reference(self, reference: str) -> Optional[OrderModel]:
        return OrderModel.objects.prefetch_related("items").filter(payment_reference=reference).first()

    def lock(self, order_id=None, order_number: str | None = None) -> Optional[OrderModel]:
        """Fetch an order with ``SELECT ... FOR UPDATE``; needs an open transaction."""
        qs = OrderModel.objects.select_for_update()
        if order_number is not None:
            return qs.filter(order_number=order_number).first()
        if self.find_by_id(order_id) is None:
            return None
        return qs.filter(id=order_id).first()

    def create_with_items(
        self,
        intent: OrderIntent,
        status: OrderStatus,
        payment_status: PaymentStatus,
        payment_reference: str | None = None,
        stock_committed: bool = False,
    ) -> OrderModel:
        """Persist an order and all its items.

        The insert runs in a savepoint: a unique-constraint violation on
        ``order_number`` or ``payment_reference`` rolls back only this block
        and is re-raised as ``IntegrityError`` for the caller to resolve.

        Args:
            intent: Fully priced order intent.
            status: Initial order status.
            payment_status: Initial payment status.
            payment_reference: Gateway reference, when already confirmed.
            stock_committed: Whether stock was deducted for this order.

        Returns:
            The persisted ``OrderModel``.

        Raises:
            IntegrityError: When an order with the same number or reference
                already exists.
        """
        pricing = intent.pricing
        with transaction.atomic():
            order = OrderModel.objects.create(
                order_number=intent.order_number,
                customer_id=intent.customer_id,
                customer_email=intent.customer_email,
                status=OrderStatus(status).value,
                payment_status=PaymentStatus(payment_status).value,
                payment_method=intent.payment_method.value,
                payment_reference=payment_reference,
                subtotal=pricing.subtotal,
                shipping_cost=pricing.shipping_cost,
                discount=pricing.discount,
                total=pricing.total,
                currency=pricing.currency,
                coupon_code=pricing.coupon_code or "",
                notes=intent.notes,
                shipping_address=intent.shipping_address,
                stock_committed=stock_committed,
            )
            OrderItemModel.objects.bulk_create(
                [
                    OrderItemModel(
                        order=order,
                        product_id=line.product_id,
                        product_name=line.product_name,
                        product_sku=line.product_sku,
                        product_image=line.product_image,
                        quantity=line.quantity,
                        unit_price=line.unit_price,
                        total_price=line.total_price,
                    )
                    for line in intent.lines
                ]
            )
        return order

    def save(self, order: OrderModel, fields: list[str]) -> OrderModel:
        order.save(update_fields=[*fields, "updated_at"])
        return order

    def list_orders(
        self,
        customer_id: str | None = None,
        status: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Page:
        qs = OrderModel.objects.prefetch_related("items").order_by("-created_at")
        if customer_id:
            qs = qs.filter(customer_id=customer_id)
        if status:
            qs = qs.filter(status=status)
        return Paginator(qs, page_size).get_page(page)

    def open_reconciliation_case(
        self,
        reference: str,
        reason: str,
        detail: str = "",
        order_number: str = "",
        amount_minor: int | None = None,
        payload: dict | None = None,
    ) -> ReconciliationCase:
        """Open a case for a captured payment, or return the one already open.

        Duplicate webhook deliveries for the same failure land on the same
        row thanks to the (reference, reason) unique constraint.
        """
        try:
            with transaction.atomic():
                case, _ = ReconciliationCase.objects.get_or_create(
                    reference=reference,
                    reason=reason,
                    defaults={
                        "order_number": order_number,
                        "detail": detail,
                        "amount_minor": amount_minor,
                        "payload": payload,
                    },
                )
        except IntegrityError:
            case = ReconciliationCase.objects.get(reference=reference, reason=reason)
        return case

    def resolve_reconciliation_case(
        self, case_id, resolved_by: str, resolution: str = ""
    ) -> Optional[ReconciliationCase]:
        """Mark a case resolved; a case that is already resolved is returned unchanged."""
        with transaction.atomic():
            case = ReconciliationCase.objects.select_for_update().filter(id=case_id).first()
            if case is None or case.status == ReconciliationCase.Status.RESOLVED:
                return case
            case.status = ReconciliationCase.Status.RESOLVED
            case.resolved_at = timezone.now()
            case.resolved_by = resolved_by
            case.resolution = resolution
            case.save(update_fields=["status", "resolved_at", "resolved_by", "resolution"])
        return case
