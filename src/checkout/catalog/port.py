"""Catalog port (abstract interface).

The product catalog lives outside checkout. Checkout needs a per-size stock
and price lookup, the list of a product's sizes, and a way to record a
completed sale so the catalog can move units from "configured" to "sold".
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class SizeInfo:
    """Stock and price facts for one (product, size) pair.

    ``price`` is the effective selling price. ``list_price`` is the
    undiscounted price; an item selling below it is already discounted, which
    matters for coupons that refuse to stack on top of a sale.
    """

    product_id: str
    size: str
    configured_qty: int
    sold_qty: int
    price: float
    name: str = ""
    slug: str = ""
    image: str = ""
    category_id: str | None = None
    list_price: float | None = None

    @property
    def is_discounted(self) -> bool:
        return self.list_price is not None and self.price < self.list_price


class Catalog(ABC):
    """Abstract catalog interface."""

    @abstractmethod
    def get_size_info(self, product_id: str, size: str) -> SizeInfo:
        """Return stock and price for a size; raise NotFoundError when absent."""
        ...

    @abstractmethod
    def list_sizes(self, product_id: str) -> list[SizeInfo]:
        """Return every size of a product; raise NotFoundError for an unknown product."""
        ...

    @abstractmethod
    def record_sale(self, product_id: str, size: str, quantity: int) -> None:
        """Move ``quantity`` units of a size to sold on a completed checkout."""
        ...
