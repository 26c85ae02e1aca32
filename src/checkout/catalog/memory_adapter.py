"""In-memory catalog for development and testing.

Products are registered with ``add_product`` and sizes carry their own
configured and sold quantities. ``record_sale`` calls are kept in ``sales`` so
tests can assert on the commit path.
"""

from dataclasses import replace

from checkout.catalog.port import Catalog, SizeInfo
from checkout.errors import NotFoundError


class InMemoryCatalog(Catalog):
    """Dictionary-backed catalog."""

    def __init__(self) -> None:
        self._products: dict[str, dict] = {}
        self._sizes: dict[tuple[str, str], SizeInfo] = {}
        self.sales: list[dict] = []

    def add_product(
        self,
        product_id: str,
        price: float,
        sizes: dict[str, int],
        name: str = "",
        slug: str = "",
        image: str = "",
        category_id: str | None = None,
        list_price: float | None = None,
        sold: dict[str, int] | None = None,
    ) -> None:
        """Register a product with per-size configured quantities."""
        self._products[product_id] = {"name": name, "slug": slug}
        sold = sold or {}
        for size, configured_qty in sizes.items():
            self._sizes[(product_id, size)] = SizeInfo(
                product_id=product_id,
                size=size,
                configured_qty=configured_qty,
                sold_qty=sold.get(size, 0),
                price=price,
                name=name or product_id,
                slug=slug,
                image=image,
                category_id=category_id,
                list_price=list_price,
            )

    def set_price(self, product_id: str, price: float) -> None:
        """Reprice every size of a product (simulates a catalog price change)."""
        for key, info in list(self._sizes.items()):
            if key[0] == product_id:
                self._sizes[key] = replace(info, price=price)

    def get_size_info(self, product_id: str, size: str) -> SizeInfo:
        if product_id not in self._products:
            raise NotFoundError(f"Product {product_id} not found", extra_info={"missing": "product"})
        info = self._sizes.get((product_id, size))
        if info is None:
            raise NotFoundError(f"Size {size} not available for product {product_id}", extra_info={"missing": "size"})
        return info

    def list_sizes(self, product_id: str) -> list[SizeInfo]:
        if product_id not in self._products:
            raise NotFoundError(f"Product {product_id} not found", extra_info={"missing": "product"})
        return [info for key, info in self._sizes.items() if key[0] == product_id]

    def record_sale(self, product_id: str, size: str, quantity: int) -> None:
        info = self.get_size_info(product_id, size)
        self._sizes[(product_id, size)] = replace(info, sold_qty=info.sold_qty + quantity)
        self.sales.append({"product_id": product_id, "size": size, "quantity": quantity})
