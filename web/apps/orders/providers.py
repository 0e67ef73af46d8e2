"""Service provider helpers for wiring OrderService with its collaborators.

``get_order_service`` builds every collaborator explicitly and hands it
to ``OrderService``. ``settings.USE_HTTP_ADAPTERS`` picks the Paystack
client; otherwise the in-process gateway stub is used, which is what
tests and local development run against.
"""

from django.conf import settings

from apps.catalog.repository import DjangoProductCatalog

from .adapters import CacheCartStore, PaymentGatewayStub
from .http_adapters import PaystackClient
from .notifications import EmailNotifier
from .pricing import PricingCalculator
from .repository import OrderRepository
from .sequence import OrderNumberGenerator
from .services import OrderService
from .staging import PendingOrderStaging
from .stock import StockValidator
from .timeline import TimelineLedger

_stub_gateway = None


def get_payment_gateway():
    """Return the Paystack client or the process-wide gateway stub."""
    global _stub_gateway
    if getattr(settings, "USE_HTTP_ADAPTERS", True):
        return PaystackClient()
    if _stub_gateway is None:
        _stub_gateway = PaymentGatewayStub()
    return _stub_gateway


def get_order_service(**overrides) -> OrderService:
    """Return a configured OrderService instance.

    Keyword arguments replace individual collaborators, which is how tests
    inject stubs.

    Returns:
        OrderService: A service instance with every collaborator wired.
    """
    catalog = overrides.pop("catalog", None) or DjangoProductCatalog()
    collaborators = {
        "catalog": catalog,
        "gateway": get_payment_gateway(),
        "cart": CacheCartStore(),
        "notifier": EmailNotifier(),
        "staging": PendingOrderStaging(),
        "sequence": OrderNumberGenerator(),
        "pricing": PricingCalculator(),
        "stock": StockValidator(catalog),
        "repository": OrderRepository(),
        "ledger": TimelineLedger(),
    }
    collaborators.update(overrides)
    return OrderService(**collaborators)
