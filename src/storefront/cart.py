"""Client-held cart and favorites state.

Neither holder talks to storage. The stock cap in Cart uses the last stock
value the client saw; order placement re-checks against live storage.
"""

import json
import logging

from .models import CartLine, Product
from .utils import lines_subtotal, shipping_fee

logger = logging.getLogger(__name__)


class Cart:
    """In-memory list of cart lines for a single owner."""

    def __init__(self) -> None:
        self.lines: list[CartLine] = []

    def _find(self, product_id: int) -> CartLine | None:
        for line in self.lines:
            if line.product.id == product_id:
                return line
        return None

    def add_item(self, product: Product) -> None:
        """Add one unit, capped at the given snapshot's stock. Out-of-stock products are ignored."""
        if product.stock <= 0:
            return

        line = self._find(product.id)
        if line is None:
            self.lines.append(CartLine(product=product, quantity=1))
            return

        line.product = product
        line.quantity = min(line.quantity + 1, product.stock)

    def remove_item(self, product_id: int) -> None:
        self.lines = [line for line in self.lines if line.product.id != product_id]

    def set_quantity(self, product_id: int, quantity: int) -> None:
        """Set a line's quantity, removing at <= 0 and clamping to stock."""
        if quantity <= 0:
            self.remove_item(product_id)
            return

        line = self._find(product_id)
        if line is None:
            return
        line.quantity = min(quantity, line.product.stock)
        if line.quantity <= 0:
            self.remove_item(product_id)

    def clear(self) -> None:
        self.lines = []

    def snapshot(self) -> list[CartLine]:
        """Copy of the lines, safe to hand to checkout."""
        return [CartLine(product=line.product, quantity=line.quantity) for line in self.lines]

    @property
    def total_price(self) -> int:
        return lines_subtotal(self.lines)

    @property
    def total_item_count(self) -> int:
        return sum(line.quantity for line in self.lines)

    @property
    def shipping_fee(self) -> int:
        if not self.lines:
            return 0
        return shipping_fee(self.total_price)

    @property
    def grand_total(self) -> int:
        return self.total_price + self.shipping_fee


class Favorites:
    """Set of favorite products in insertion order."""

    def __init__(self, products: list[Product] | None = None):
        self.products: list[Product] = []
        for product in products or []:
            self.add(product)

    def add(self, product: Product) -> None:
        if not self.contains(product.id):
            self.products.append(product)

    def remove(self, product_id: int) -> None:
        self.products = [p for p in self.products if p.id != product_id]

    def contains(self, product_id: int) -> bool:
        return any(p.id == product_id for p in self.products)

    def clear(self) -> None:
        self.products = []

    @property
    def count(self) -> int:
        return len(self.products)

    def dumps(self) -> str:
        """Serialize for client-side persistence."""
        return json.dumps([p.to_dict() for p in self.products], ensure_ascii=False)

    @classmethod
    def loads(cls, raw: str | None) -> "Favorites":
        """Restore from dumps() output. Unreadable data yields an empty holder."""
        if not raw:
            return cls()
        try:
            data = json.loads(raw)
            if not isinstance(data, list):
                raise ValueError("favorites payload is not a list")
            return cls([Product.from_dict(item) for item in data])
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding unreadable favorites payload", exc_info=True)
            return cls()
