"""Pydantic schemas for the orders API.

Request DTOs validate and normalize incoming payloads before they are
mapped to domain objects; read DTOs shape the JSON returned to clients.
"""

import re
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from .domain import OrderStatus, PaymentMethod, PaymentStatus, TimelineEventType

ORDER_NUMBER_RE = re.compile(r"^BL\d{9,}$")
PHONE_RE = re.compile(r"^\+?[0-9 ()-]{7,20}$")


class CartItemIn(BaseModel):
    """A single cart line sent by the client.

    Attributes:
        product_id: Catalog id of the product.
        quantity: Positive number of units.
    """

    product_id: UUID
    quantity: int = Field(gt=0, le=1000)


class GuestInfoIn(BaseModel):
    email: EmailStr
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    phone: str = ""

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        if v and not PHONE_RE.match(v):
            raise ValueError("Invalid phone number")
        return v


class ShippingAddressIn(BaseModel):
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    address_line1: str = Field(min_length=1, max_length=255)
    address_line2: str = ""
    city: str = Field(min_length=1, max_length=100)
    state: str = Field(min_length=1, max_length=100)
    postal_code: str = ""
    country: str = Field(default="NG", min_length=2, max_length=2)
    phone_number: str = ""


class CheckoutDTO(BaseModel):
    """Schema for starting a checkout.

    Attributes:
        items: Cart lines. Optional for authenticated customers, whose cart
            is then read from the cart service.
        guest_info: Contact details, required when no customer is known.
        shipping_address: Delivery address.
        payment_method: One of ``PaymentMethod``.
        coupon_code: Optional coupon.
        customer_notes: Free text shown to fulfilment.
    """

    items: list[CartItemIn] = Field(default_factory=list)
    guest_info: Optional[GuestInfoIn] = None
    shipping_address: ShippingAddressIn
    payment_method: PaymentMethod = PaymentMethod.CARD
    coupon_code: Optional[str] = Field(default=None, max_length=32)
    customer_notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("coupon_code")
    @classmethod
    def normalize_coupon(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().upper() if v and v.strip() else None


class VerifyPaymentDTO(BaseModel):
    reference: str = Field(min_length=1, max_length=64)


class StatusTransitionDTO(BaseModel):
    status: OrderStatus
    notes: Optional[str] = Field(default=None, max_length=1000)


class PaymentStatusTransitionDTO(BaseModel):
    payment_status: PaymentStatus
    notes: Optional[str] = Field(default=None, max_length=1000)


class CancelOrderDTO(BaseModel):
    reason: str = Field(min_length=1, max_length=500)

    @field_validator("reason")
    @classmethod
    def strip_reason(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Reason must not be blank")
        return v


class ResolveCaseDTO(BaseModel):
    resolution: str = Field(default="", max_length=1000)


class TrackOrderDTO(BaseModel):
    order_number: str
    email: EmailStr

    @field_validator("order_number")
    @classmethod
    def validate_order_number(cls, v: str) -> str:
        v2 = v.strip().upper()
        if not ORDER_NUMBER_RE.match(v2):
            raise ValueError("Invalid order number format")
        return v2


class OrderItemReadDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: str
    product_name: str
    product_sku: str
    product_image: str = ""
    quantity: int
    unit_price: Decimal
    total_price: Decimal


class OrderReadDTO(BaseModel):
    """Order as returned by the read endpoints."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    status: OrderStatus
    payment_status: PaymentStatus
    payment_method: str
    payment_reference: Optional[str] = None
    subtotal: Decimal
    shipping_cost: Decimal
    discount: Decimal
    total: Decimal
    currency: str
    coupon_code: str = ""
    shipping_address: dict = Field(default_factory=dict)
    items: list[OrderItemReadDTO] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, order) -> "OrderReadDTO":
        return cls.model_validate(
            {
                **{name: getattr(order, name) for name in cls.model_fields if name != "items"},
                "items": [OrderItemReadDTO.model_validate(i) for i in order.items.all()],
            }
        )


class TimelineEventDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    type: TimelineEventType
    message: str
    actor: str
    data: Optional[dict] = None
    created_at: Optional[datetime] = None
