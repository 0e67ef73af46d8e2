import hashlib
import hmac
import json

import pytest

from apps.orders.models import OrderModel, ReconciliationCase

CHECKOUT_URL = "/api/orders/checkout/"
WEBHOOK_URL = "/api/orders/payments/webhook/"
VERIFY_URL = "/api/orders/payments/verify/"
TRACK_URL = "/api/orders/track/"
STAFF = {"HTTP_X_ACTOR_ID": "admin-1"}


def _signed_post(client, payload, secret="sk_test_secret"):
    raw = json.dumps(payload).encode()
    signature = hmac.new(secret.encode(), raw, hashlib.sha512).hexdigest()
    return client.post(WEBHOOK_URL, data=raw, content_type="application/json", HTTP_X_PAYSTACK_SIGNATURE=signature)


def _charge(reference, amount_minor, event="charge.success"):
    return {"event": event, "data": {"reference": reference, "amount": amount_minor, "status": "success"}}


@pytest.fixture
def checkout(client, make_product):
    def _checkout(price="24000.00", qty=1, stock=5, **headers):
        p = make_product(price=price, stock=stock)
        body = {
            "items": [{"product_id": str(p.id), "quantity": qty}],
            "shipping_address": {
                "first_name": "Ada",
                "last_name": "Obi",
                "address_line1": "12 Admiralty Way",
                "city": "Lekki",
                "state": "Lagos",
            },
        }
        if not headers:
            body["guest_info"] = {"email": "ada@example.com", "first_name": "Ada", "last_name": "Obi"}
        r = client.post(CHECKOUT_URL, data=body, content_type="application/json", **headers)
        assert r.status_code == 201, r.content
        return r.json(), p

    return _checkout


@pytest.fixture
def paid(client, checkout):
    def _paid(**kwargs):
        body, product = checkout(**kwargs)
        r = _signed_post(client, _charge(body["order_number"], body["amount_minor"]))
        assert r.json()["handled"] is True
        return body["order_number"], product

    return _paid


@pytest.mark.django_db
def test_signed_webhook_materializes_the_staged_order(client, checkout):
    body, product = checkout(qty=2)

    r = _signed_post(client, _charge(body["order_number"], body["amount_minor"]))

    assert r.status_code == 200
    assert r.json() == {"received": True, "handled": True, "order_number": body["order_number"]}
    order = OrderModel.objects.get(order_number=body["order_number"])
    assert order.status == "CONFIRMED"
    assert order.payment_status == "COMPLETED"
    product.refresh_from_db()
    assert product.stock == 3

    # redelivery converges on the same order
    again = _signed_post(client, _charge(body["order_number"], body["amount_minor"]))
    assert again.json()["handled"] is True
    assert OrderModel.objects.count() == 1
    product.refresh_from_db()
    assert product.stock == 3


@pytest.mark.django_db
def test_webhook_rejects_bad_signature_and_body(client, checkout):
    body, _ = checkout()
    raw = json.dumps(_charge(body["order_number"], body["amount_minor"])).encode()

    r = client.post(WEBHOOK_URL, data=raw, content_type="application/json", HTTP_X_PAYSTACK_SIGNATURE="deadbeef")
    assert r.status_code == 401
    assert r.json()["detail"] == "INVALID_SIGNATURE"
    r = _signed_post(client, _charge(body["order_number"], body["amount_minor"]), secret="sk_other")
    assert r.status_code == 401
    assert not OrderModel.objects.exists()

    bad = b"{not json"
    signature = hmac.new(b"sk_test_secret", bad, hashlib.sha512).hexdigest()
    r = client.post(WEBHOOK_URL, data=bad, content_type="application/json", HTTP_X_PAYSTACK_SIGNATURE=signature)
    assert r.status_code == 400


@pytest.mark.django_db
def test_webhook_acknowledges_ignored_and_refused_events(client, checkout):
    r = _signed_post(client, {"event": "transfer.success", "data": {"reference": "TRF-1"}})
    assert r.json() == {"received": True, "handled": False}

    body, _ = checkout()
    r = _signed_post(client, _charge(body["order_number"], body["amount_minor"], event="charge.failed"))
    assert r.status_code == 200
    assert r.json()["detail"] == "PAYMENT_FAILED"

    r = _signed_post(client, _charge("BL250101999", 100_000))
    assert r.status_code == 200
    assert r.json()["handled"] is False
    assert ReconciliationCase.objects.filter(reference="BL250101999", reason="STAGING_EXPIRED").exists()


@pytest.mark.django_db
def test_staff_resolve_reconciliation_cases(client):
    _signed_post(client, _charge("BL250101997", 100_000))
    case = ReconciliationCase.objects.get(reference="BL250101997")
    url = f"/api/orders/reconciliation/{case.id}/resolve/"

    r = client.post(url, data={"resolution": "refunded"}, content_type="application/json")
    assert r.status_code == 403

    r = client.post(url, data={"resolution": "refunded"}, content_type="application/json", **STAFF)
    assert r.status_code == 200
    assert r.json()["status"] == "RESOLVED"
    assert r.json()["resolved_by"] == "admin-1"
    case.refresh_from_db()
    assert case.resolution == "refunded"

    r = client.post(f"/api/orders/reconciliation/{case.id + 1000}/resolve/", data={}, content_type="application/json", **STAFF)
    assert r.status_code == 404


@pytest.mark.django_db
def test_verify_endpoint_materializes_through_the_gateway(client, checkout):
    body, _ = checkout(price="1500.00")

    r = client.post(VERIFY_URL, data={"reference": body["order_number"]}, content_type="application/json")

    assert r.status_code == 200
    assert r.json()["order_number"] == body["order_number"]
    assert r.json()["payment_status"] == "COMPLETED"
    assert r.json()["total"] == "4000.00"

    r = client.post(VERIFY_URL, data={"reference": "BL250101998"}, content_type="application/json")
    assert r.status_code == 404


@pytest.mark.django_db
def test_reads_require_an_identity_and_respect_ownership(client, checkout):
    body, _ = checkout(HTTP_X_CUSTOMER_ID="cust-1", HTTP_X_CUSTOMER_EMAIL="c1@example.com")
    url = f"/api/orders/{body['order_number']}/"

    assert client.get(url).status_code == 403
    assert client.get(url, HTTP_X_CUSTOMER_ID="cust-2").status_code == 403

    mine = client.get(url, HTTP_X_CUSTOMER_ID="cust-1")
    assert mine.status_code == 200
    assert mine.json()["status"] == "PENDING"
    assert len(mine.json()["items"]) == 1

    assert client.get(url, **STAFF).status_code == 200
    assert client.get("/api/orders/BL000000001/", **STAFF).status_code == 404


@pytest.mark.django_db
def test_listing_is_scoped_to_the_customer(client, checkout):
    checkout(HTTP_X_CUSTOMER_ID="cust-1", HTTP_X_CUSTOMER_EMAIL="c1@example.com")
    checkout(HTTP_X_CUSTOMER_ID="cust-1", HTTP_X_CUSTOMER_EMAIL="c1@example.com")
    checkout(HTTP_X_CUSTOMER_ID="cust-2", HTTP_X_CUSTOMER_EMAIL="c2@example.com")

    r = client.get("/api/orders/?page_size=1", HTTP_X_CUSTOMER_ID="cust-1")
    assert r.status_code == 200
    assert r.json()["count"] == 2
    assert len(r.json()["results"]) == 1

    r = client.get("/api/orders/?status=PENDING", **STAFF)
    assert r.json()["count"] == 3

    r = client.get("/api/orders/?status=LOST", **STAFF)
    assert r.status_code == 400


@pytest.mark.django_db
def test_staff_drive_the_lifecycle_and_the_timeline_records_it(client, paid):
    number, product = paid(qty=2)
    base = f"/api/orders/{number}"

    r = client.post(f"{base}/status/", data={"status": "PROCESSING"}, content_type="application/json")
    assert r.status_code == 403

    r = client.post(f"{base}/status/", data={"status": "SHIPPED", "notes": "GIG #99"}, content_type="application/json", **STAFF)
    assert r.status_code == 200
    assert r.json()["status"] == "SHIPPED"
    assert r.json()["shipped_at"] is not None

    r = client.post(f"{base}/status/", data={"status": "PROCESSING"}, content_type="application/json", **STAFF)
    assert r.status_code == 409
    assert r.json()["detail"] == "INVALID_STATUS_TRANSITION"

    r = client.post(f"{base}/cancel/", data={"reason": "Lost in transit"}, content_type="application/json", **STAFF)
    assert r.status_code == 200
    assert r.json()["status"] == "CANCELLED"
    product.refresh_from_db()
    assert product.stock == 5

    r = client.post(f"{base}/cancel/", data={"reason": "again"}, content_type="application/json", **STAFF)
    assert r.status_code == 409
    assert r.json()["detail"] == "ORDER_CANNOT_BE_CANCELLED"

    timeline = client.get(f"{base}/timeline/?order=asc", **STAFF).json()
    assert [e["type"] for e in timeline["events"]] == ["PAYMENT_CONFIRMED", "STATUS_UPDATED", "ORDER_CANCELLED"]
    assert timeline["events"][-1]["data"]["reason"] == "Lost in transit"
    assert timeline["status"] == "CANCELLED"


@pytest.mark.django_db
def test_refund_through_payment_status(client, paid):
    number, _ = paid()
    r = client.post(
        f"/api/orders/{number}/payment-status/",
        data={"payment_status": "REFUNDED", "notes": "customer returned goods"},
        content_type="application/json",
        **STAFF,
    )
    assert r.status_code == 200
    assert r.json()["payment_status"] == "REFUNDED"

    r = client.post(
        f"/api/orders/{number}/payment-status/",
        data={"payment_status": "BOUNCED"},
        content_type="application/json",
        **STAFF,
    )
    assert r.status_code == 400


@pytest.mark.django_db
def test_cancel_requires_a_reason(client, paid):
    number, _ = paid()
    r = client.post(f"/api/orders/{number}/cancel/", data={"reason": "  "}, content_type="application/json", **STAFF)
    assert r.status_code == 400


@pytest.mark.django_db
def test_guest_tracking(client, checkout):
    body, _ = checkout()
    track = {"order_number": body["order_number"].lower(), "email": "ada@example.com"}

    pending = client.post(TRACK_URL, data=track, content_type="application/json")
    assert pending.status_code == 404
    assert pending.json()["pending"] is True

    _signed_post(client, _charge(body["order_number"], body["amount_minor"]))

    r = client.post(TRACK_URL, data=track, content_type="application/json")
    assert r.status_code == 200
    assert r.json()["order_number"] == body["order_number"]
    assert [e["type"] for e in r.json()["timeline"]] == ["PAYMENT_CONFIRMED"]

    r = client.post(TRACK_URL, data={**track, "email": "eve@example.com"}, content_type="application/json")
    assert r.status_code == 404

    r = client.post(TRACK_URL, data={**track, "order_number": "ORD-1"}, content_type="application/json")
    assert r.status_code == 400


@pytest.mark.django_db
def test_response_carries_request_id(client):
    r = client.get("/api/orders/", HTTP_X_REQUEST_ID="req-123", **STAFF)
    assert r.status_code == 200
    assert r["X-Request-ID"] == "req-123"
