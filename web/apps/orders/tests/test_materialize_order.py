"""Phase 2: turning a confirmed payment into exactly one durable order."""

from decimal import Decimal

import pytest

from apps.orders.domain import NotificationEvent, OrderStatus, PaymentOutcome, PaymentStatus, TimelineEventType
from apps.orders.errors import (
    AmountMismatch,
    InvalidTransition,
    NotFound,
    PaymentFailed,
    StagingExpired,
    ValidationFailed,
)
from apps.orders.models import OrderModel, ReconciliationCase


@pytest.fixture
def staged(service, make_product, cart_of, shipping, guest):
    def _staged(*pairs):
        return service.initialize_order(cart_of(*pairs), shipping, guest=guest)

    return _staged


def test_confirmed_payment_scenario(service, staged, make_product, notifier, django_capture_on_commit_callbacks):
    a = make_product(price="24000.00", stock=5)
    b = make_product(price="12000.00", stock=5)
    checkout = staged((a, 1), (b, 2))
    assert checkout.pricing.total == Decimal("50500.00")

    with django_capture_on_commit_callbacks(execute=True):
        order = service.materialize_order(checkout.order_number, checkout.order_number, PaymentOutcome.SUCCESS, 5_050_000)

    assert order.total == Decimal("50500.00")
    assert order.payment_status == PaymentStatus.COMPLETED.value
    assert order.status == OrderStatus.CONFIRMED.value
    assert order.payment_reference == checkout.order_number
    assert order.items.count() == 2
    events = list(order.timeline.all())
    assert [e.type for e in events] == [TimelineEventType.PAYMENT_CONFIRMED.value]

    a.refresh_from_db()
    b.refresh_from_db()
    assert (a.stock, b.stock) == (4, 3)
    assert service.staging.load(checkout.order_number) is None
    assert [n[0] for n in notifier.sent] == [NotificationEvent.ORDER_CONFIRMATION]
    assert notifier.sent[0][1] == "ada@example.com"


def test_materialization_is_at_most_once(service, staged, make_product):
    p = make_product(price="1000.00", stock=5)
    checkout = staged((p, 2))

    first = service.materialize_order(checkout.order_number, outcome=PaymentOutcome.SUCCESS)
    second = service.materialize_order(checkout.order_number, outcome=PaymentOutcome.SUCCESS)

    assert first.id == second.id
    assert OrderModel.objects.filter(order_number=checkout.order_number).count() == 1
    assert first.timeline.count() == 1
    p.refresh_from_db()
    assert p.stock == 3


def test_abandoned_checkout_leaves_no_order(service, staged, make_product):
    checkout = staged((make_product(), 1))
    assert not OrderModel.objects.filter(order_number=checkout.order_number).exists()
    assert service.staging.load(checkout.order_number) is not None


def test_stock_drop_blocks_materialization_and_opens_a_case(service, staged, make_product):
    p = make_product(stock=5)
    checkout = staged((p, 5))
    p.stock = 2
    p.save()

    with pytest.raises(ValidationFailed) as exc:
        service.materialize_order(checkout.order_number, outcome=PaymentOutcome.SUCCESS)

    assert exc.value.code == "VALIDATION_ERROR"
    assert not OrderModel.objects.filter(order_number=checkout.order_number).exists()
    case = ReconciliationCase.objects.get(id=exc.value.details["reconciliation_case"])
    assert case.reason == "STOCK_UNAVAILABLE"
    assert case.order_number == checkout.order_number
    assert case.payload["order_data"]["order_number"] == checkout.order_number
    p.refresh_from_db()
    assert p.stock == 2
    # kept for whoever resolves the case
    assert service.staging.load(checkout.order_number) is not None


def test_missing_staging_record_fails_closed(service):
    with pytest.raises(StagingExpired) as exc:
        service.materialize_order("BL250815999", outcome=PaymentOutcome.SUCCESS, amount_minor=100_000)

    assert exc.value.code == "RESOURCE_NOT_FOUND"
    assert not OrderModel.objects.exists()
    case = ReconciliationCase.objects.get(reference="BL250815999")
    assert case.reason == "STAGING_EXPIRED"
    assert case.amount_minor == 100_000


def test_duplicate_expired_deliveries_share_one_case(service):
    for _ in range(2):
        with pytest.raises(StagingExpired):
            service.materialize_order("BL250815999", outcome=PaymentOutcome.SUCCESS)
    assert ReconciliationCase.objects.filter(reference="BL250815999").count() == 1


def test_reconciliation_case_is_resolved_once(service):
    with pytest.raises(StagingExpired) as exc:
        service.materialize_order("BL250815999", outcome=PaymentOutcome.SUCCESS, amount_minor=100_000)
    case_id = exc.value.details["reconciliation_case"]

    case = service.resolve_reconciliation_case(case_id, actor="admin-1", resolution="Refunded on Paystack")

    assert case.status == ReconciliationCase.Status.RESOLVED
    assert case.resolved_at is not None
    stored = ReconciliationCase.objects.get(id=case_id)
    assert (stored.status, stored.resolved_by, stored.resolution) == ("RESOLVED", "admin-1", "Refunded on Paystack")

    again = service.resolve_reconciliation_case(case_id, actor="admin-2", resolution="late")
    assert again.resolved_at == stored.resolved_at
    assert again.resolved_by == "admin-1"

    with pytest.raises(NotFound):
        service.resolve_reconciliation_case(case_id + 1000, actor="admin-1")


def test_amount_mismatch_creates_no_order(service, staged, make_product):
    checkout = staged((make_product(price="1000.00"), 1))

    with pytest.raises(AmountMismatch) as exc:
        service.materialize_order(checkout.order_number, outcome=PaymentOutcome.SUCCESS, amount_minor=100)

    assert exc.value.details["expected_minor"] == 350_000
    assert not OrderModel.objects.exists()
    assert ReconciliationCase.objects.filter(reason="AMOUNT_MISMATCH").count() == 1


def test_failed_payment_for_staged_order_creates_nothing(service, staged, make_product):
    checkout = staged((make_product(), 1))
    with pytest.raises(PaymentFailed):
        service.materialize_order(checkout.order_number, outcome=PaymentOutcome.FAILED)
    assert not OrderModel.objects.exists()
    assert not ReconciliationCase.objects.exists()


def test_authenticated_order_is_confirmed_through_the_same_call(service, make_product, shipping, cart_of):
    p = make_product(price="5000.00", stock=4)
    checkout = service.initialize_order(
        cart_of((p, 1)), shipping, customer_id="cust-9", customer_email="cust9@example.com"
    )

    order = service.materialize_order(checkout.order_number, outcome=PaymentOutcome.SUCCESS, amount_minor=750_000)
    again = service.materialize_order(checkout.order_number, outcome=PaymentOutcome.SUCCESS)

    assert order.id == again.id
    assert order.status == OrderStatus.CONFIRMED.value
    assert order.payment_status == PaymentStatus.COMPLETED.value
    types = [e.type for e in OrderModel.objects.get(id=order.id).timeline.all()]
    assert types == [TimelineEventType.ORDER_CREATED.value, TimelineEventType.PAYMENT_CONFIRMED.value]
    p.refresh_from_db()
    assert p.stock == 3


def test_staff_cannot_advance_an_unpaid_order_before_confirmation(service, make_product, shipping, cart_of):
    p = make_product(price="5000.00", stock=4)
    checkout = service.initialize_order(
        cart_of((p, 1)), shipping, customer_id="cust-9", customer_email="cust9@example.com"
    )

    for target in (OrderStatus.CONFIRMED, OrderStatus.DELIVERED):
        with pytest.raises(InvalidTransition) as exc:
            service.transition_order_status(checkout.order_id, target, actor="admin-1")
        assert exc.value.details["payment_status"] == PaymentStatus.PENDING.value
    assert OrderModel.objects.get(id=checkout.order_id).status == OrderStatus.PENDING.value

    order = service.materialize_order(checkout.order_number, outcome=PaymentOutcome.SUCCESS, amount_minor=750_000)

    assert order.status == OrderStatus.CONFIRMED.value
    assert order.payment_status == PaymentStatus.COMPLETED.value
    assert order.stock_committed is True
    p.refresh_from_db()
    assert p.stock == 3


def test_confirmation_keeps_the_status_of_an_order_already_past_pending(service, make_product, shipping, cart_of):
    p = make_product(price="5000.00", stock=4)
    checkout = service.initialize_order(
        cart_of((p, 2)), shipping, customer_id="cust-9", customer_email="cust9@example.com"
    )
    OrderModel.objects.filter(id=checkout.order_id).update(status=OrderStatus.PROCESSING.value)

    order = service.materialize_order(checkout.order_number, outcome=PaymentOutcome.SUCCESS)
    service.materialize_order(checkout.order_number, outcome=PaymentOutcome.SUCCESS)

    stored = OrderModel.objects.get(id=checkout.order_id)
    assert order.status == OrderStatus.PROCESSING.value
    assert stored.payment_status == PaymentStatus.COMPLETED.value
    assert stored.stock_committed is True
    assert ReconciliationCase.objects.count() == 0
    p.refresh_from_db()
    assert p.stock == 2


def test_unpaid_order_can_still_be_cancelled(service, make_product, shipping, cart_of):
    p = make_product(stock=4)
    checkout = service.initialize_order(
        cart_of((p, 1)), shipping, customer_id="cust-9", customer_email="cust9@example.com"
    )

    order = service.cancel_order(checkout.order_id, "changed my mind", actor="cust-9")

    assert order.status == OrderStatus.CANCELLED.value
    p.refresh_from_db()
    assert p.stock == 4


def test_authenticated_order_payment_failure_is_recorded(service, make_product, shipping, cart_of):
    checkout = service.initialize_order(
        cart_of((make_product(), 1)), shipping, customer_id="cust-9", customer_email="cust9@example.com"
    )

    order = service.materialize_order(checkout.order_number, outcome=PaymentOutcome.FAILED)

    assert order.payment_status == PaymentStatus.FAILED.value
    assert order.status == OrderStatus.PENDING.value
    assert order.timeline.filter(type=TimelineEventType.PAYMENT_FAILED.value).count() == 1


def test_verify_and_materialize_uses_gateway_outcome(service, gateway, staged, make_product):
    checkout = staged((make_product(price="2000.00"), 1))

    order = service.verify_and_materialize(checkout.order_number)
    assert order.payment_status == PaymentStatus.COMPLETED.value

    second = staged((make_product(), 1))
    gateway.set_outcome(second.order_number, PaymentOutcome.PENDING)
    with pytest.raises(PaymentFailed) as exc:
        service.verify_and_materialize(second.order_number)
    assert exc.value.code == "PAYMENT_PENDING"


def test_failing_notifier_does_not_undo_materialization(service, staged, make_product, notifier, monkeypatch, django_capture_on_commit_callbacks):
    def explode(*args, **kwargs):
        raise RuntimeError("smtp down")

    monkeypatch.setattr(notifier, "send", explode)
    checkout = staged((make_product(), 1))

    with django_capture_on_commit_callbacks(execute=True):
        order = service.materialize_order(checkout.order_number, outcome=PaymentOutcome.SUCCESS)

    assert OrderModel.objects.get(id=order.id).payment_status == PaymentStatus.COMPLETED.value


def test_failing_ledger_does_not_undo_materialization(service, staged, make_product, monkeypatch):
    from django.db import DatabaseError

    from apps.orders.models import TimelineEventModel

    def broken_create(*args, **kwargs):
        raise DatabaseError("disk full")

    monkeypatch.setattr(TimelineEventModel.objects, "create", broken_create)
    checkout = staged((make_product(), 1))

    order = service.materialize_order(checkout.order_number, outcome=PaymentOutcome.SUCCESS)
    assert OrderModel.objects.filter(id=order.id).exists()
