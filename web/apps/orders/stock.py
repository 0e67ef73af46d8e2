"""Stock validation against the product catalog.

``StockValidator`` is a pure read-then-decide check: it never changes
stock. It runs twice in the checkout flow, optimistically when the
payment is initialized and authoritatively, on locked rows, right before
an order is materialized.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from .domain import ProductCatalogPort, ProductSnapshot
from .errors import InsufficientStock, NotFound, ProductUnavailable, ValidationFailed


class StockProblemKind(str, Enum):
    PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"
    PRODUCT_INACTIVE = "PRODUCT_INACTIVE"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"


@dataclass(frozen=True)
class StockProblem:
    kind: StockProblemKind
    product_id: str
    requested: int
    available: int = 0
    product_name: str = ""

    def describe(self) -> str:
        if self.kind is StockProblemKind.PRODUCT_NOT_FOUND:
            return f"Product with ID {self.product_id} not found"
        if self.kind is StockProblemKind.PRODUCT_INACTIVE:
            return f"Product {self.product_name or self.product_id} is no longer available"
        return (
            f"Insufficient stock for {self.product_name or self.product_id}. "
            f"Only {self.available} available, but {self.requested} requested"
        )

    def as_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "product_id": self.product_id,
            "requested": self.requested,
            "available": self.available,
        }


@dataclass
class StockCheck:
    """Result of a stock validation.

    Attributes:
        problems: One entry per product that failed, in request order.
        products: Snapshots of every product that was found.
    """

    problems: List[StockProblem] = field(default_factory=list)
    products: Dict[str, ProductSnapshot] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.problems

    def raise_for_problems(self) -> None:
        """Raise the domain error matching the first problem, if any.

        Raises:
            NotFound: A product does not exist.
            ProductUnavailable: A product is inactive.
            InsufficientStock: A product does not have enough stock.
        """
        if self.ok:
            return
        first = self.problems[0]
        details = {"problems": [p.as_dict() for p in self.problems]}
        if first.kind is StockProblemKind.PRODUCT_NOT_FOUND:
            raise NotFound(first.describe(), details=details)
        if first.kind is StockProblemKind.PRODUCT_INACTIVE:
            raise ProductUnavailable(first.describe(), details=details)
        raise InsufficientStock(first.describe(), details=details)

    def as_validation_error(self) -> ValidationFailed:
        """Collapse every problem into a single ``VALIDATION_ERROR``.

        Used after payment, where "not found" must not be confused with an
        unknown order.
        """
        return ValidationFailed(
            "; ".join(p.describe() for p in self.problems),
            details={"problems": [p.as_dict() for p in self.problems]},
        )


def _merge_quantities(items: Iterable[Tuple[str, int]]) -> "OrderedDict[str, int]":
    merged: "OrderedDict[str, int]" = OrderedDict()
    for product_id, quantity in items:
        merged[str(product_id)] = merged.get(str(product_id), 0) + int(quantity)
    return merged


class StockValidator:
    """Confirms each requested product exists, is active and has enough stock."""

    def __init__(self, catalog: ProductCatalogPort):
        self.catalog = catalog

    def validate(self, items: Iterable[Tuple[str, int]], lock: bool = False) -> StockCheck:
        """Check ``(product_id, quantity)`` pairs against current stock.

        Quantities for the same product are added together before checking.

        Args:
            items: Pairs of product id and requested quantity.
            lock: Read through ``lock_for_update`` so the rows stay locked
                until the surrounding transaction ends. Requires an open
                transaction.

        Returns:
            StockCheck: Empty ``problems`` when every item can be fulfilled.
        """
        wanted = _merge_quantities(items)
        check = StockCheck()
        if lock:
            found = self.catalog.lock_for_update(list(wanted.keys()))
        else:
            found = {}
            for pid in wanted:
                snap = self.catalog.find_by_id(pid)
                if snap is not None:
                    found[pid] = snap

        for pid, qty in wanted.items():
            product: Optional[ProductSnapshot] = found.get(pid)
            if product is None:
                check.problems.append(StockProblem(StockProblemKind.PRODUCT_NOT_FOUND, pid, qty))
                continue
            check.products[pid] = product
            if not product.is_active:
                check.problems.append(
                    StockProblem(StockProblemKind.PRODUCT_INACTIVE, pid, qty, product.stock, product.name)
                )
            elif product.stock < qty:
                check.problems.append(
                    StockProblem(StockProblemKind.INSUFFICIENT_STOCK, pid, qty, product.stock, product.name)
                )
        return check
