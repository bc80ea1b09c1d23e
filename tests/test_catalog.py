"""Tests for the product catalog."""

import pytest
from sqlalchemy.exc import OperationalError

from storefront.catalog import Catalog, parse_product_id, title_sort_key
from storefront.config import setup_locale
from storefront.database import ProductRow
from storefront.errors import (
    CatalogUnavailableError,
    InvalidProductIdError,
    InvalidQueryError,
    ProductNotFoundError,
)
from storefront.seed import SAMPLE_PRODUCTS


class TestListProducts:
    def test_default_order_is_by_id(self, catalog):
        products = catalog.list_products()

        assert [p.id for p in products] == sorted(p["id"] for p in SAMPLE_PRODUCTS)

    def test_category_filter(self, catalog):
        products = catalog.list_products(category="books")

        assert products
        assert all(p.category == "books" for p in products)

    def test_all_category_disables_filter(self, catalog):
        assert len(catalog.list_products(category="all")) == len(SAMPLE_PRODUCTS)

    def test_unknown_category_matches_nothing(self, catalog):
        assert catalog.list_products(category="garden") == []

    def test_search_is_case_insensitive_on_title(self, catalog):
        titles = [p.title for p in catalog.list_products(search="DENIM")]

        assert titles == ["Denim Jacket"]

    def test_search_matches_description(self, catalog):
        products = catalog.list_products(search="power bank")

        assert [p.id for p in products] == [9]

    def test_search_and_category_combine(self, catalog):
        products = catalog.list_products(category="books", search="next")

        assert [p.id for p in products] == [12]

    def test_search_treats_wildcards_literally(self, catalog):
        assert catalog.list_products(search="_") == []

    def test_sort_by_price(self, catalog):
        ascending = [p.price for p in catalog.list_products(sort="price_asc")]
        descending = [p.price for p in catalog.list_products(sort="price_desc")]

        assert ascending == sorted(ascending)
        assert descending == sorted(descending, reverse=True)

    def test_sort_by_title(self, catalog):
        titles = [p.title for p in catalog.list_products(sort="title")]

        assert titles[0] == "Classic Sneakers"
        assert len(titles) == len(SAMPLE_PRODUCTS)

    def test_sort_by_title_ignores_case(self, database, catalog):
        with database.transaction() as session:
            session.add_all([
                ProductRow(id=13, title="apple pie", price=800, category="food", stock=4),
                ProductRow(id=14, title="Banana bread", price=900, category="food", stock=4),
            ])

        titles = [p.title for p in catalog.list_products(category="food", sort="title")]

        assert titles == [
            "apple pie", "Banana bread", "Matcha Chocolate Set", "Organic Coffee Beans",
        ]

    def test_unknown_sort_rejected(self, catalog):
        with pytest.raises(InvalidQueryError):
            catalog.list_products(sort="popularity")


class TestGetProduct:
    def test_found(self, catalog):
        product = catalog.get_product(2)

        assert product.title == "Wireless Earbuds Pro"
        assert product.stock == 8

    def test_accepts_numeric_string(self, catalog):
        assert catalog.get_product("3").id == 3

    def test_not_found(self, catalog):
        with pytest.raises(ProductNotFoundError):
            catalog.get_product(999)

    @pytest.mark.parametrize("raw", ["abc", "", "0", "-4", "1.5"])
    def test_invalid_id_is_client_error(self, catalog, raw):
        with pytest.raises(InvalidProductIdError):
            catalog.get_product(raw)

    def test_storage_failure_is_distinct(self, catalog, monkeypatch):
        def broken_session():
            raise OperationalError("SELECT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(catalog.database, "session", broken_session)

        with pytest.raises(CatalogUnavailableError):
            catalog.get_product(1)
        with pytest.raises(CatalogUnavailableError):
            catalog.list_products()


class TestHelpers:
    def test_title_sort_key_folds_case(self):
        assert title_sort_key("apple") < title_sort_key("Banana")
        assert title_sort_key("ZEBRA") == title_sort_key("zebra")

    def test_missing_collation_locale_falls_back_to_c(self):
        assert setup_locale("no_SUCH.locale") == "C"

    def test_parse_product_id(self):
        assert parse_product_id("12") == 12
        assert parse_product_id(5) == 5

    def test_categories(self, catalog):
        assert catalog.list_categories() == [
            "all", "clothing", "electronics", "books", "food", "other",
        ]

    def test_count(self, catalog):
        assert catalog.count_products() == len(SAMPLE_PRODUCTS)

    def test_empty_catalog(self):
        from storefront.database import Database

        db = Database.in_memory()
        assert Catalog(db).list_products() == []
