"""Django ORM adapter exposing catalog products to the order engine.

Implements ``ProductCatalogPort``: plain reads for the optimistic stock
check, ``SELECT ... FOR UPDATE`` reads for the authoritative one, and
atomic stock adjustments with ``F`` expressions.
"""

import uuid
from typing import Dict, List, Optional

from django.db.models import F

from apps.orders.domain import ProductCatalogPort, ProductSnapshot
from .models import Product


def _valid_ids(product_ids: List[str]) -> List[uuid.UUID]:
    ids = []
    for pid in product_ids:
        try:
            ids.append(uuid.UUID(str(pid)))
        except ValueError:
            continue
    return ids


def _snapshot(p: Product) -> ProductSnapshot:
    return ProductSnapshot(
        id=str(p.id),
        name=p.name,
        sku=p.sku,
        price=p.price,
        stock=p.stock,
        is_active=p.is_active,
        image_url=p.image_url,
    )


class DjangoProductCatalog(ProductCatalogPort):
    """Product catalog backed by the ``products`` table."""

    def find_by_id(self, product_id: str) -> Optional[ProductSnapshot]:
        ids = _valid_ids([product_id])
        if not ids:
            return None
        p = Product.objects.filter(id=ids[0]).first()
        return _snapshot(p) if p else None

    def lock_for_update(self, product_ids: List[str]) -> Dict[str, ProductSnapshot]:
        """Lock the rows in primary-key order so concurrent callers cannot deadlock."""
        rows = Product.objects.select_for_update().filter(id__in=_valid_ids(product_ids)).order_by("id")
        return {str(p.id): _snapshot(p) for p in rows}

    def adjust_stock(self, product_id: str, delta: int) -> None:
        Product.objects.filter(id=product_id).update(stock=F("stock") + delta)
