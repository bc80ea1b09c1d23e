"""Product catalog reads."""

import locale
import logging

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError

from .database import Database, ProductRow
from .errors import (
    CatalogUnavailableError,
    InvalidProductIdError,
    InvalidQueryError,
    ProductNotFoundError,
)
from .models import PRODUCT_CATEGORIES, Product

logger = logging.getLogger(__name__)

ALL_CATEGORIES = "all"
SORT_OPTIONS = ("default", "price_asc", "price_desc", "title")


def parse_product_id(raw_id: str | int) -> int:
    """
    Parse a product ID from a path segment or query value.

    Raises:
        InvalidProductIdError: If the value is not a positive integer.
    """
    if isinstance(raw_id, bool):
        raise InvalidProductIdError(str(raw_id))
    try:
        product_id = int(raw_id)
    except (TypeError, ValueError):
        raise InvalidProductIdError(str(raw_id))
    if product_id <= 0:
        raise InvalidProductIdError(str(raw_id))
    return product_id


def title_sort_key(title: str) -> str:
    """Case-insensitive collation key under the process LC_COLLATE (see config.setup_locale)."""
    return locale.strxfrm(title.casefold())


class Catalog:
    """Read-only access to the product table."""

    def __init__(self, database: Database):
        self.database = database

    def list_categories(self) -> list[str]:
        return [ALL_CATEGORIES, *PRODUCT_CATEGORIES]

    def list_products(
        self,
        category: str | None = None,
        search: str | None = None,
        sort: str = "default",
    ) -> list[Product]:
        """
        List products, optionally filtered and sorted.

        Args:
            category: Exact category match. None or "all" disables the filter.
            search: Case-insensitive substring of title or description.
            sort: One of SORT_OPTIONS. "title" uses locale-aware collation.

        Raises:
            InvalidQueryError: If sort is not a known option.
            CatalogUnavailableError: If storage cannot be read.
        """
        if sort not in SORT_OPTIONS:
            raise InvalidQueryError("sort", sort)

        stmt = select(ProductRow)
        if category and category != ALL_CATEGORIES:
            stmt = stmt.where(ProductRow.category == category)
        if search:
            stmt = stmt.where(
                or_(
                    ProductRow.title.icontains(search, autoescape=True),
                    ProductRow.description.icontains(search, autoescape=True),
                )
            )

        if sort == "price_asc":
            stmt = stmt.order_by(ProductRow.price.asc(), ProductRow.id.asc())
        elif sort == "price_desc":
            stmt = stmt.order_by(ProductRow.price.desc(), ProductRow.id.asc())
        else:
            stmt = stmt.order_by(ProductRow.id.asc())

        try:
            with self.database.session() as session:
                products = [row.to_model() for row in session.scalars(stmt)]
        except SQLAlchemyError:
            logger.exception("Failed to list products (category=%r, search=%r)", category, search)
            raise CatalogUnavailableError()

        if sort == "title":
            # Stable sort keeps id order for equal titles
            products.sort(key=lambda p: title_sort_key(p.title))
        return products

    def get_product(self, product_id: str | int) -> Product:
        """
        Look up a single product.

        Raises:
            InvalidProductIdError: If the ID is not a positive integer.
            ProductNotFoundError: If no product has that ID.
            CatalogUnavailableError: If storage cannot be read.
        """
        pid = parse_product_id(product_id)
        try:
            with self.database.session() as session:
                row = session.get(ProductRow, pid)
                product = row.to_model() if row is not None else None
        except SQLAlchemyError:
            logger.exception("Failed to load product %s", pid)
            raise CatalogUnavailableError()

        if product is None:
            raise ProductNotFoundError(pid)
        return product

    def count_products(self) -> int:
        try:
            with self.database.session() as session:
                return session.scalar(select(func.count()).select_from(ProductRow)) or 0
        except SQLAlchemyError:
            logger.exception("Failed to count products")
            raise CatalogUnavailableError()
