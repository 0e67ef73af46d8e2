import uuid
from decimal import Decimal

import pytest
from django.core.cache import cache

from apps.catalog.models import Product
from apps.catalog.repository import DjangoProductCatalog
from apps.orders import providers
from apps.orders.adapters import CacheCartStore, PaymentGatewayStub, RecordingNotifier
from apps.orders.domain import Cart, CartLine, GuestInfo, ShippingInfo
from apps.orders.pricing import PricingCalculator
from apps.orders.repository import OrderRepository
from apps.orders.sequence import OrderNumberGenerator
from apps.orders.services import OrderService
from apps.orders.staging import PendingOrderStaging
from apps.orders.stock import StockValidator
from apps.orders.timeline import TimelineLedger


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    settings.USE_HTTP_ADAPTERS = False
    settings.PAYSTACK_SECRET_KEY = "sk_test_secret"
    settings.EMAIL_BACKEND = "django.core.mail.backends.locmem.EmailBackend"
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0
    settings.ORDERS_SHIPPING_FEE = 2500
    settings.FRONTEND_URL = "https://shop.test"


@pytest.fixture(autouse=True)
def clear_cache():
    cache.clear()
    providers._stub_gateway = None
    yield
    cache.clear()


@pytest.fixture
def make_product(db):
    def _make(price="10000.00", stock=10, is_active=True, name=None, sku=None):
        suffix = uuid.uuid4().hex[:6].upper()
        return Product.objects.create(
            name=name or f"Ankara Dress {suffix}",
            sku=sku or f"SKU-{suffix}",
            price=Decimal(price),
            stock=stock,
            is_active=is_active,
            image_url=f"https://cdn.test/{suffix}.jpg",
        )

    return _make


@pytest.fixture
def gateway():
    return PaymentGatewayStub()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def staging():
    return PendingOrderStaging()


@pytest.fixture
def service(db, gateway, notifier, staging):
    catalog = DjangoProductCatalog()
    return OrderService(
        catalog=catalog,
        gateway=gateway,
        cart=CacheCartStore(),
        notifier=notifier,
        staging=staging,
        sequence=OrderNumberGenerator(),
        pricing=PricingCalculator(),
        stock=StockValidator(catalog),
        repository=OrderRepository(),
        ledger=TimelineLedger(),
    )


@pytest.fixture
def shipping():
    return ShippingInfo(
        first_name="Ada",
        last_name="Obi",
        address_line1="12 Admiralty Way",
        city="Lekki",
        state="Lagos",
        phone_number="+2348012345678",
    )


@pytest.fixture
def guest():
    return GuestInfo(email="ada@example.com", first_name="Ada", last_name="Obi", phone="+2348012345678")


@pytest.fixture
def cart_of():
    def _cart(*pairs):
        return Cart(lines=[CartLine(product_id=str(p.id), quantity=q) for p, q in pairs])

    return _cart
