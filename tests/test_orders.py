"""Tests for order placement and order history."""

import itertools
import threading

import pytest
from sqlalchemy import func, select

from storefront.accounts import AccountService
from storefront.catalog import Catalog
from storefront.database import Database, OrderRow
from storefront.errors import (
    DuplicateOrderIdError,
    EmptyCartError,
    InsufficientStockError,
    InvalidQuantityError,
    InvalidShippingInfoError,
    OrderNotFoundError,
    StockShortage,
    UnauthenticatedError,
)
from storefront.models import CartLine, Order, Product
from storefront.orders import OrderService, deserialize_items, serialize_items
from storefront.seed import seed_products

from .conftest import cart_line, make_shipping, set_stock, stock_of


def sequential_ids(prefix: str = "ORD-TEST"):
    counter = itertools.count(1)
    return lambda: f"{prefix}-{next(counter):04d}"


def order_count(database: Database) -> int:
    with database.session() as session:
        return session.scalar(select(func.count()).select_from(OrderRow))


class TestPlaceOrder:
    def test_success_decrements_stock(self, database, catalog, order_service, user):
        lines = [cart_line(catalog, 1, 2), cart_line(catalog, 4, 3)]

        order = order_service.place_order(user, lines, make_shipping())

        assert order.user_id == user.id
        assert order.status == "confirmed"
        assert order.total_price == 3980 * 2 + 1580 * 3
        assert order.id.startswith("ORD-")
        assert order.created_at.endswith("Z")
        assert stock_of(database, 1) == 13
        assert stock_of(database, 4) == 27

    def test_total_excludes_shipping_fee(self, catalog, order_service, user):
        order = order_service.place_order(user, [cart_line(catalog, 4, 1)], make_shipping())

        assert order.total_price == 1580

    def test_prices_come_from_storage(self, database, order_service, user):
        stale = Product(id=2, title="Wireless Earbuds Pro", price=1, stock=999)

        order = order_service.place_order(
            user, [CartLine(product=stale, quantity=1)], make_shipping()
        )

        assert order.total_price == 12800
        assert order.items[0].product.price == 12800
        assert order.items[0].product.stock == 8

    def test_exact_stock_can_be_bought(self, database, catalog, order_service, user):
        order_service.place_order(user, [cart_line(catalog, 9, 3)], make_shipping())

        assert stock_of(database, 9) == 0

    def test_client_order_id_is_used(self, catalog, order_service, user):
        order = order_service.place_order(
            user, [cart_line(catalog, 1, 1)], make_shipping(), client_order_id="ORD-CLIENT-1"
        )

        assert order.id == "ORD-CLIENT-1"


class TestPreconditions:
    def test_unauthenticated_checked_first(self, order_service):
        with pytest.raises(UnauthenticatedError):
            order_service.place_order(None, [], None)

    def test_empty_cart_before_shipping(self, order_service, user):
        with pytest.raises(EmptyCartError):
            order_service.place_order(user, [], None)

    def test_missing_shipping_info(self, catalog, order_service, user):
        with pytest.raises(InvalidShippingInfoError) as exc_info:
            order_service.place_order(user, [cart_line(catalog, 1, 1)], None)

        assert "shipping_info" in exc_info.value.errors

    def test_shipping_errors_name_fields(self, database, catalog, order_service, user):
        shipping = make_shipping(name="A", email="bad", postal_code="12", payment_method="cash")

        with pytest.raises(InvalidShippingInfoError) as exc_info:
            order_service.place_order(user, [cart_line(catalog, 7, 1)], shipping)

        assert set(exc_info.value.errors) == {"name", "email", "postal_code", "payment_method"}
        assert order_count(database) == 0


class TestQuantities:
    @pytest.mark.parametrize("quantity", [0, -3])
    def test_non_positive_quantity_rejected(
        self, database, catalog, order_service, user, quantity
    ):
        lines = [cart_line(catalog, 2, 1), cart_line(catalog, 1, quantity)]

        with pytest.raises(InvalidQuantityError) as exc_info:
            order_service.place_order(user, lines, make_shipping())

        assert exc_info.value.product_ids == [1]
        assert order_count(database) == 0
        assert stock_of(database, 1) == 15
        assert stock_of(database, 2) == 8

    def test_check_stock_rejects_before_reading_stock(self, catalog, order_service):
        with pytest.raises(InvalidQuantityError):
            order_service.check_stock([cart_line(catalog, 7, 0)])

    def test_paid_order_with_zero_quantity_rejected(self, database, catalog, order_service, user):
        with pytest.raises(InvalidQuantityError):
            order_service.record_paid_order(
                user.id, [cart_line(catalog, 1, 0)], make_shipping(), "ORD-PAID"
            )

        assert order_count(database) == 0


class TestStockCheck:
    def test_out_of_stock_product(self, database, catalog, order_service, user):
        with pytest.raises(InsufficientStockError) as exc_info:
            order_service.place_order(user, [cart_line(catalog, 7, 1)], make_shipping())

        assert exc_info.value.shortages == [
            StockShortage(product_id=7, title="Introduction to TypeScript", stock=0, requested=1)
        ]
        assert "Introduction to TypeScript" in str(exc_info.value)
        assert order_count(database) == 0

    def test_every_shortage_reported_and_nothing_written(
        self, database, catalog, order_service, user
    ):
        lines = [
            cart_line(catalog, 1, 1),
            cart_line(catalog, 9, 5),
            cart_line(catalog, 5, 6),
        ]

        with pytest.raises(InsufficientStockError) as exc_info:
            order_service.place_order(user, lines, make_shipping())

        assert [s.product_id for s in exc_info.value.shortages] == [9, 5]
        assert order_count(database) == 0
        assert stock_of(database, 1) == 15
        assert stock_of(database, 9) == 3
        assert stock_of(database, 5) == 5

    def test_quantities_summed_per_product(self, database, catalog, order_service, user):
        lines = [cart_line(catalog, 9, 2), cart_line(catalog, 9, 2)]

        with pytest.raises(InsufficientStockError) as exc_info:
            order_service.place_order(user, lines, make_shipping())

        assert exc_info.value.shortages[0].requested == 4
        assert stock_of(database, 9) == 3

    def test_missing_product_reported_with_zero_stock(self, order_service, user):
        ghost = Product(id=999, title="Ghost Product", price=100, stock=5)

        with pytest.raises(InsufficientStockError) as exc_info:
            order_service.place_order(user, [CartLine(ghost, 1)], make_shipping())

        assert exc_info.value.shortages == [StockShortage(999, "Ghost Product", 0, 1)]

    def test_uses_live_stock_not_snapshot(self, database, catalog, order_service, user):
        line = cart_line(catalog, 6, 2)
        set_stock(database, 6, 1)

        with pytest.raises(InsufficientStockError) as exc_info:
            order_service.place_order(user, [line], make_shipping())

        assert exc_info.value.shortages[0].stock == 1

    def test_stock_change_after_check_rolls_back(
        self, database, catalog, order_service, user, monkeypatch
    ):
        lines = [cart_line(catalog, 1, 1), cart_line(catalog, 9, 2)]

        # Check passes against the current rows, then another buyer takes stock
        def check_then_lose_race(check_lines):
            products = order_service._load_products(line.product.id for line in check_lines)
            set_stock(database, 9, 1)
            return products

        monkeypatch.setattr(order_service, "check_stock", check_then_lose_race)

        with pytest.raises(InsufficientStockError) as exc_info:
            order_service.place_order(user, lines, make_shipping())

        assert exc_info.value.shortages == [
            StockShortage(9, "Portable Charger 20000mAh", 1, 2)
        ]
        assert order_count(database) == 0
        assert stock_of(database, 1) == 15
        assert stock_of(database, 9) == 1


class TestConcurrentOrders:
    def test_only_one_order_gets_the_last_units(self, temp_dir):
        database = Database(f"sqlite:///{temp_dir / 'shop.db'}")
        database.create_schema()
        seed_products(database)
        catalog = Catalog(database)
        service = OrderService(database)
        accounts = AccountService(database)
        buyer = accounts.register("race@example.com", "secret123")

        barrier = threading.Barrier(2)
        outcomes = []
        lock = threading.Lock()

        def buy():
            line = cart_line(catalog, 9, 2)
            barrier.wait()
            try:
                result = service.place_order(buyer, [line], make_shipping())
            except InsufficientStockError as e:
                result = e
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=buy) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        successes = [o for o in outcomes if isinstance(o, Order)]
        assert len(outcomes) == 2
        assert all(isinstance(o, (Order, InsufficientStockError)) for o in outcomes)
        assert len(successes) == 1
        assert stock_of(database, 9) == 3 - 2 * len(successes)
        assert order_count(database) == len(successes)
        database.dispose()


class TestOrderIds:
    def test_collision_retried_with_new_id(self, database, catalog, user):
        ids = iter(["ORD-SAME", "ORD-SAME", "ORD-FRESH"])
        service = OrderService(database, id_factory=lambda: next(ids))

        first = service.place_order(user, [cart_line(catalog, 1, 1)], make_shipping())
        second = service.place_order(user, [cart_line(catalog, 1, 1)], make_shipping())

        assert first.id == "ORD-SAME"
        assert second.id == "ORD-FRESH"
        assert stock_of(database, 1) == 13

    def test_repeated_collision_is_reported(self, database, catalog, user):
        service = OrderService(database, id_factory=lambda: "ORD-SAME")
        service.place_order(user, [cart_line(catalog, 1, 1)], make_shipping())

        with pytest.raises(DuplicateOrderIdError):
            service.place_order(user, [cart_line(catalog, 1, 1)], make_shipping())

        assert order_count(database) == 1
        assert stock_of(database, 1) == 14

    def test_duplicate_client_id_gets_generated_id(self, database, catalog, user):
        service = OrderService(database, id_factory=sequential_ids())
        service.place_order(
            user, [cart_line(catalog, 1, 1)], make_shipping(), client_order_id="ORD-CLIENT"
        )

        second = service.place_order(
            user, [cart_line(catalog, 1, 1)], make_shipping(), client_order_id="ORD-CLIENT"
        )

        assert second.id == "ORD-TEST-0001"


class TestOrderHistory:
    def test_requires_user(self, order_service):
        with pytest.raises(UnauthenticatedError):
            order_service.list_orders(None)

    def test_empty_history(self, order_service, user):
        history = order_service.list_orders(user)

        assert history.orders == []
        assert history.unreadable == []

    def test_newest_first_and_scoped_to_user(self, database, catalog, user, other_user):
        service = OrderService(database, id_factory=sequential_ids())
        first = service.place_order(user, [cart_line(catalog, 1, 1)], make_shipping())
        service.place_order(other_user, [cart_line(catalog, 3, 1)], make_shipping())
        third = service.place_order(user, [cart_line(catalog, 4, 2)], make_shipping())

        history = service.list_orders(user)

        assert [o.id for o in history.orders] == [third.id, first.id]

    def test_listing_is_repeatable(self, catalog, order_service, user):
        order_service.place_order(user, [cart_line(catalog, 1, 1)], make_shipping())

        first = order_service.list_orders(user)
        second = order_service.list_orders(user)

        assert first == second

    def test_stored_payload_matches_placed_order(self, catalog, order_service, user):
        shipping = make_shipping(name="Hanako", city="Osaka", payment_method="bank")
        placed = order_service.place_order(
            user, [cart_line(catalog, 2, 1), cart_line(catalog, 8, 2)], shipping
        )

        stored = order_service.list_orders(user).orders[0]

        assert stored.items == placed.items
        assert stored.shipping_info == shipping
        assert stored.total_price == placed.total_price
        assert stored.created_at == placed.created_at

    def test_malformed_row_reported_not_fatal(self, database, catalog, order_service, user):
        order_service.place_order(user, [cart_line(catalog, 1, 1)], make_shipping())
        with database.transaction() as session:
            session.add(
                OrderRow(
                    id="ORD-BROKEN",
                    user_id=user.id,
                    items="{not json",
                    shipping_info="{}",
                    total_price=0,
                )
            )

        history = order_service.list_orders(user)

        assert len(history.orders) == 1
        assert history.unreadable == ["ORD-BROKEN"]


class TestGetOrder:
    def test_owner_can_read(self, catalog, order_service, user):
        placed = order_service.place_order(user, [cart_line(catalog, 1, 1)], make_shipping())

        assert order_service.get_order(user, placed.id) == placed

    def test_other_user_gets_not_found(self, catalog, order_service, user, other_user):
        placed = order_service.place_order(user, [cart_line(catalog, 1, 1)], make_shipping())

        with pytest.raises(OrderNotFoundError):
            order_service.get_order(other_user, placed.id)

    def test_unknown_id(self, order_service, user):
        with pytest.raises(OrderNotFoundError):
            order_service.get_order(user, "ORD-NOPE")


class TestRecordPaidOrder:
    def test_stock_untouched(self, database, catalog, order_service, user):
        lines = [cart_line(catalog, 7, 2), cart_line(catalog, 1, 1)]

        order = order_service.record_paid_order(user.id, lines, make_shipping(), "ORD-PAID")

        assert order.id == "ORD-PAID"
        assert order.total_price == 3200 * 2 + 3980
        assert stock_of(database, 7) == 0
        assert stock_of(database, 1) == 15

    def test_redelivery_returns_existing(self, database, catalog, order_service, user):
        lines = [cart_line(catalog, 1, 1)]
        first = order_service.record_paid_order(user.id, lines, make_shipping(), "ORD-PAID")

        again = order_service.record_paid_order(user.id, lines, make_shipping(), "ORD-PAID")

        assert again.id == first.id
        assert order_count(database) == 1

    def test_id_owned_by_other_user(self, catalog, order_service, user, other_user):
        lines = [cart_line(catalog, 1, 1)]
        order_service.record_paid_order(user.id, lines, make_shipping(), "ORD-PAID")

        with pytest.raises(DuplicateOrderIdError):
            order_service.record_paid_order(other_user.id, lines, make_shipping(), "ORD-PAID")

    def test_unknown_product_keeps_snapshot(self, order_service, user):
        ghost = Product(id=999, title="Retired Item", price=700)

        order = order_service.record_paid_order(user.id, [CartLine(ghost, 2)], make_shipping())

        assert order.items[0].product.title == "Retired Item"
        assert order.total_price == 1400


class TestSerialization:
    def test_items_payload(self, catalog):
        lines = [cart_line(catalog, 1, 2), cart_line(catalog, 12, 1)]

        assert deserialize_items(serialize_items(lines)) == lines

    def test_items_payload_must_be_list(self):
        with pytest.raises(ValueError):
            deserialize_items('{"product": {}}')
