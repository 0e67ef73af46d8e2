"""HTTP views for the orders app.

Views are kept intentionally small: they validate requests (via
Pydantic), map them to domain objects, delegate to ``OrderService`` and
return an HTTP response. Domain errors are translated in one place,
``OrdersAPIView.handle_exception``, into ``{"detail": <code>, ...}`` with
the error's HTTP status.

Caller identity is provided by the upstream authentication layer in the
``X-Customer-Id`` / ``X-Customer-Email`` headers (customers) and
``X-Actor-Id`` (staff). Guests have neither and use the track endpoint.

Idempotency: the checkout endpoint honours an ``Idempotency-Key`` header.
The first request creates a record and stores its response; retries with
the same payload replay it with ``Idempotent-Replay: true``; reusing the
key with a different payload returns HTTP 409. Keys are kept per customer, so
``X-Customer-Id`` is part of the record key.
"""

import json
import logging

from pydantic import ValidationError as PydanticValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from .domain import Cart, CartLine, GuestInfo, ShippingInfo
from .errors import ExternalServiceError, Forbidden, OrderError
from .http_adapters import parse_webhook_event, validate_webhook_signature
from .idempotency import finalize, get_or_create_idempotent
from .providers import get_order_service
from .schemas import (
    CancelOrderDTO,
    CheckoutDTO,
    OrderReadDTO,
    PaymentStatusTransitionDTO,
    ResolveCaseDTO,
    StatusTransitionDTO,
    TimelineEventDTO,
    TrackOrderDTO,
    VerifyPaymentDTO,
)

logger = logging.getLogger("orders.api")

CUSTOMER_HEADER = "X-Customer-Id"
CUSTOMER_EMAIL_HEADER = "X-Customer-Email"
ACTOR_HEADER = "X-Actor-Id"
SIGNATURE_HEADER = "x-paystack-signature"


def _order_body(order) -> dict:
    return OrderReadDTO.from_model(order).model_dump(mode="json")


def _validation_body(exc: PydanticValidationError) -> dict:
    return {"detail": "VALIDATION_ERROR", "errors": json.loads(exc.json(include_url=False))}


class OrdersAPIView(APIView):
    """Base view translating domain and validation errors into responses."""

    throttle_classes = [ScopedRateThrottle]

    def handle_exception(self, exc):
        if isinstance(exc, OrderError):
            return Response(exc.as_dict(), status=exc.http_status)
        if isinstance(exc, PydanticValidationError):
            return Response(_validation_body(exc), status=status.HTTP_400_BAD_REQUEST)
        return super().handle_exception(exc)

    def customer_id(self, request):
        return request.headers.get(CUSTOMER_HEADER) or None

    def actor_id(self, request):
        return request.headers.get(ACTOR_HEADER) or None

    def require_caller(self, request):
        """Return ``(customer_id, actor_id)``; staff calls have no customer scope."""
        customer_id, actor_id = self.customer_id(request), self.actor_id(request)
        if not customer_id and not actor_id:
            raise Forbidden("Authentication required")
        return (None if actor_id else customer_id), actor_id

    def require_staff(self, request) -> str:
        actor_id = self.actor_id(request)
        if not actor_id:
            raise Forbidden("Staff access required")
        return actor_id


class CheckoutView(OrdersAPIView):
    """Start a checkout and return the hosted payment URL (Phase 1)."""

    throttle_scope = "orders_checkout"

    def post(self, request):
        """Create a payment session for a cart.

        Returns:
            Response: One of the following responses.
            - 201 with order number, payment URL and totals.
            - 200 with the stored body when an idempotent request is replayed.
            - 409 with {detail: "IDEMPOTENCY_CONFLICT"} on key reuse.
            - 400 / 404 / 422 for validation and stock errors.
            - 503 when the staging store or the gateway is unavailable.
        """
        idem_key = request.headers.get("Idempotency-Key")

        dto = CheckoutDTO.model_validate(request.data)
        customer_id = self.customer_id(request)

        rec = None
        if idem_key:
            existing, rec = get_or_create_idempotent(idem_key, request.data, scope=customer_id)
            if existing:
                if not rec.response_status:
                    return Response({"detail": "IDEMPOTENCY_IN_PROGRESS"}, status=status.HTTP_409_CONFLICT)
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        cart = None
        if dto.items or customer_id is None:
            cart = Cart(lines=[CartLine(product_id=str(i.product_id), quantity=i.quantity) for i in dto.items])
        guest = GuestInfo(**dto.guest_info.model_dump()) if dto.guest_info and customer_id is None else None

        service = get_order_service()
        try:
            result = service.initialize_order(
                cart,
                ShippingInfo(**dto.shipping_address.model_dump()),
                payment_method=dto.payment_method,
                guest=guest,
                customer_id=customer_id,
                customer_email=request.headers.get(CUSTOMER_EMAIL_HEADER),
                coupon_code=dto.coupon_code,
                customer_notes=dto.customer_notes,
            )
        except OrderError as e:
            if rec:
                finalize(rec, e.http_status, e.as_dict())
            raise
        except Exception:
            logger.exception("checkout failed")
            body = {"detail": "UPSTREAM_UNAVAILABLE"}
            if rec:
                finalize(rec, 503, body)
            return Response(body, status=503)

        pricing = result.pricing
        body = {
            "order_number": result.order_number,
            "order_id": result.order_id,
            "payment_url": result.payment_url,
            "reference": result.reference,
            "amount_minor": result.amount_minor,
            "subtotal": str(pricing.subtotal),
            "shipping_cost": str(pricing.shipping_cost),
            "discount": str(pricing.discount),
            "total": str(pricing.total),
            "currency": pricing.currency,
            "coupon_code": pricing.coupon_code,
            "staged": result.staged,
        }
        if rec:
            finalize(rec, status.HTTP_201_CREATED, body, order_number=result.order_number)
        return Response(body, status=status.HTTP_201_CREATED)


class PaymentWebhookView(OrdersAPIView):
    """Paystack webhook receiver (Phase 2).

    A validly signed event is acknowledged with 200 once it has been
    handled, including domain refusals (they are already recorded in the
    reconciliation queue). Only an unavailable store answers 503 so the
    gateway redelivers.
    """

    throttle_scope = "payments"

    def post(self, request):
        raw = request.body
        if not validate_webhook_signature(raw, request.headers.get(SIGNATURE_HEADER)):
            logger.warning("webhook signature rejected")
            return Response({"detail": "INVALID_SIGNATURE"}, status=status.HTTP_401_UNAUTHORIZED)

        try:
            payload = json.loads(raw)
        except ValueError:
            return Response({"detail": "VALIDATION_ERROR"}, status=status.HTTP_400_BAD_REQUEST)

        event = parse_webhook_event(payload)
        if event is None:
            logger.info("webhook event ignored", extra={"event": payload.get("event")})
            return Response({"received": True, "handled": False})

        try:
            order = get_order_service().materialize_order(
                event.reference,
                gateway_reference=event.reference,
                outcome=event.outcome,
                amount_minor=event.amount_minor,
            )
        except ExternalServiceError:
            raise
        except OrderError as e:
            logger.warning(
                "webhook event refused",
                extra={"reference": event.reference, "code": e.code, "details": e.details},
            )
            return Response({"received": True, "handled": False, "detail": e.code})

        return Response({"received": True, "handled": True, "order_number": order.order_number})


class VerifyPaymentView(OrdersAPIView):
    """Verify a payment with the gateway and materialize its order."""

    throttle_scope = "payments"

    def post(self, request):
        dto = VerifyPaymentDTO.model_validate(request.data)
        order = get_order_service().verify_and_materialize(dto.reference)
        return Response(_order_body(order), status=status.HTTP_200_OK)


class OrdersCollectionView(OrdersAPIView):
    """Paginated order listing, newest first."""

    throttle_scope = "orders_list"

    def get(self, request):
        customer_id, _ = self.require_caller(request)
        try:
            page = int(request.GET.get("page", 1))
            page_size = min(int(request.GET.get("page_size", 20)), 100)
        except ValueError:
            return Response({"detail": "VALIDATION_ERROR"}, status=status.HTTP_400_BAD_REQUEST)

        page_obj = get_order_service().list_orders(
            customer_id=customer_id,
            status=request.GET.get("status") or None,
            page=page,
            page_size=page_size,
        )
        return Response(
            {
                "count": page_obj.paginator.count,
                "page": page_obj.number,
                "page_size": page_size,
                "results": [_order_body(o) for o in page_obj.object_list],
            },
            status=200,
        )


class OrderDetailView(OrdersAPIView):
    throttle_scope = "orders_detail"

    def get(self, request, order_number: str):
        customer_id, _ = self.require_caller(request)
        order = get_order_service().get_order_by_number(order_number, caller_id=customer_id)
        return Response(_order_body(order), status=200)


class OrderTimelineView(OrdersAPIView):
    throttle_scope = "orders_detail"

    def get(self, request, order_number: str):
        customer_id, _ = self.require_caller(request)
        service = get_order_service()
        order = service.get_order_by_number(order_number, caller_id=customer_id)
        newest_first = request.GET.get("order", "desc") != "asc"
        events = service.get_order_timeline(order.id, newest_first=newest_first)
        return Response(
            {
                "order_number": order.order_number,
                "status": order.status,
                "events": [TimelineEventDTO.model_validate(e).model_dump(mode="json") for e in events],
            }
        )


class OrderStatusView(OrdersAPIView):
    """Staff-driven status transition."""

    throttle_scope = "orders_admin"

    def post(self, request, order_number: str):
        actor_id = self.require_staff(request)
        dto = StatusTransitionDTO.model_validate(request.data)
        service = get_order_service()
        order = service.get_order_by_number(order_number)
        order = service.transition_order_status(order.id, dto.status, actor=actor_id, notes=dto.notes)
        return Response(_order_body(order))


class OrderPaymentStatusView(OrdersAPIView):
    """Staff-driven payment status transition (refunds)."""

    throttle_scope = "orders_admin"

    def post(self, request, order_number: str):
        actor_id = self.require_staff(request)
        dto = PaymentStatusTransitionDTO.model_validate(request.data)
        service = get_order_service()
        order = service.get_order_by_number(order_number)
        order = service.transition_payment_status(order.id, dto.payment_status, actor=actor_id, notes=dto.notes)
        return Response(_order_body(order))


class CancelOrderView(OrdersAPIView):
    throttle_scope = "orders_admin"

    def post(self, request, order_number: str):
        customer_id, actor_id = self.require_caller(request)
        dto = CancelOrderDTO.model_validate(request.data)
        service = get_order_service()
        order = service.get_order_by_number(order_number, caller_id=customer_id)
        order = service.cancel_order(order.id, dto.reason, actor=actor_id or customer_id)
        return Response(_order_body(order))


class TrackOrderView(OrdersAPIView):
    """Guest order lookup by order number and checkout e-mail."""

    throttle_scope = "orders_track"

    def post(self, request):
        dto = TrackOrderDTO.model_validate(request.data)
        service = get_order_service()
        order = service.track_guest_order(dto.order_number, dto.email)
        events = service.get_order_timeline(order.id)
        body = _order_body(order)
        body["timeline"] = [TimelineEventDTO.model_validate(e).model_dump(mode="json") for e in events]
        return Response(body)


class ResolveReconciliationCaseView(OrdersAPIView):
    """Staff close a reconciliation case after refunding or fulfilling it."""

    throttle_scope = "orders_admin"

    def post(self, request, case_id: int):
        actor_id = self.require_staff(request)
        dto = ResolveCaseDTO.model_validate(request.data)
        case = get_order_service().resolve_reconciliation_case(case_id, actor=actor_id, resolution=dto.resolution)
        return Response(
            {
                "id": case.id,
                "reference": case.reference,
                "reason": case.reason,
                "status": case.status,
                "resolved_by": case.resolved_by,
                "resolved_at": case.resolved_at.isoformat(),
            }
        )
