import uuid
from django.db import models
from django.utils import timezone


class OrderModel(models.Model):
    # UUID PK exposed in the API
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Human order number, e.g. BL250815023
    order_number = models.CharField(max_length=32, unique=True, editable=False)

    class Status(models.TextChoices):
        PENDING = "PENDING"
        CONFIRMED = "CONFIRMED"
        PROCESSING = "PROCESSING"
        SHIPPED = "SHIPPED"
        DELIVERED = "DELIVERED"
        CANCELLED = "CANCELLED"
        REFUNDED = "REFUNDED"

    class PaymentStatus(models.TextChoices):
        PENDING = "PENDING"
        PROCESSING = "PROCESSING"
        COMPLETED = "COMPLETED"
        FAILED = "FAILED"
        CANCELLED = "CANCELLED"
        REFUNDED = "REFUNDED"
        PARTIAL_REFUND = "PARTIAL_REFUND"

    # Guest orders point at the sentinel guest account; the real buyer is in `notes`
    customer_id = models.CharField(max_length=64, db_index=True)
    customer_email = models.EmailField(blank=True, default="")

    status = models.CharField(max_length=32, choices=Status.choices, default=Status.PENDING, db_index=True)
    payment_status = models.CharField(max_length=32, choices=PaymentStatus.choices, default=PaymentStatus.PENDING)
    payment_method = models.CharField(max_length=32, default="CARD")
    # At most one order per gateway transaction
    payment_reference = models.CharField(max_length=64, unique=True, null=True, blank=True)

    subtotal = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    shipping_cost = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    discount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    total = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    currency = models.CharField(max_length=3, default="NGN")
    coupon_code = models.CharField(max_length=32, blank=True, default="")

    notes = models.JSONField(default=dict, blank=True)
    shipping_address = models.JSONField(default=dict, blank=True)
    admin_notes = models.TextField(blank=True, default="")

    # Set once the ordered quantities were deducted from catalog stock
    stock_committed = models.BooleanField(default=False)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    shipped_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "orders"
        ordering = ["-created_at"]

    def __str__(self):
        return self.order_number


class OrderItemModel(models.Model):
    order = models.ForeignKey(OrderModel, related_name="items", on_delete=models.PROTECT)

    product_id = models.CharField(max_length=64, db_index=True)
    product_name = models.CharField(max_length=255)
    product_sku = models.CharField(max_length=64, blank=True, default="")
    product_image = models.CharField(max_length=500, blank=True, default="")

    quantity = models.PositiveIntegerField()
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    total_price = models.DecimalField(max_digits=12, decimal_places=2)

    class Meta:
        db_table = "order_items"
        ordering = ["id"]


class TimelineEventModel(models.Model):
    """Append-only lifecycle history of an order."""

    order = models.ForeignKey(OrderModel, related_name="timeline", on_delete=models.PROTECT)
    type = models.CharField(max_length=32)
    message = models.CharField(max_length=500)
    data = models.JSONField(null=True, blank=True)
    actor = models.CharField(max_length=64, default="SYSTEM")
    created_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        db_table = "order_timeline_events"
        ordering = ["created_at", "id"]


class ReconciliationCase(models.Model):
    """A captured payment that could not be turned into an order.

    Rows are opened by the payment confirmation path and resolved by a
    person (refund or manual fulfilment).
    """

    class Status(models.TextChoices):
        OPEN = "OPEN"
        RESOLVED = "RESOLVED"

    reference = models.CharField(max_length=64, db_index=True)
    order_number = models.CharField(max_length=32, blank=True, default="")
    reason = models.CharField(max_length=64)
    detail = models.TextField(blank=True, default="")
    amount_minor = models.BigIntegerField(null=True, blank=True)
    payload = models.JSONField(null=True, blank=True)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.OPEN)
    created_at = models.DateTimeField(auto_now_add=True)
    resolved_at = models.DateTimeField(null=True, blank=True)
    resolved_by = models.CharField(max_length=64, blank=True, default="")
    resolution = models.TextField(blank=True, default="")

    class Meta:
        db_table = "order_reconciliation_cases"
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(fields=["reference", "reason"], name="ux_reconciliation_reference_reason"),
        ]


class IdempotencyKey(models.Model):
    key = models.CharField(max_length=200, primary_key=True)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order_number = models.CharField(max_length=32, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
