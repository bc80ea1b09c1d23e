"""Order placement and order history.

Placement re-reads live stock, then inserts the order and decrements stock in
one transaction. Each decrement is a conditional UPDATE (stock >= quantity)
whose affected-row count is checked, so two concurrent orders cannot both
spend the same units even when both passed the initial read.
"""

import json
import logging
from typing import Callable, Iterable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .database import Database, OrderRow, ProductRow
from .errors import (
    DuplicateOrderIdError,
    EmptyCartError,
    InsufficientStockError,
    OrderNotFoundError,
    OrderStorageError,
    StockShortage,
    UnauthenticatedError,
)
from .models import (
    CartLine,
    Order,
    OrderHistory,
    Product,
    ShippingInfo,
    User,
    _format_timestamp,
    _utc_now,
)
from .utils import aggregate_quantities, generate_order_id, lines_subtotal
from .validation import validate_quantities, validate_shipping_info

logger = logging.getLogger(__name__)

CONFIRMED = "confirmed"


class _StockRace(Exception):
    """A conditional decrement matched no row: stock changed after the check."""

    def __init__(self, product_ids: list[int]):
        self.product_ids = product_ids
        super().__init__(f"Stock changed for products {product_ids}")


def serialize_items(lines: Iterable[CartLine]) -> str:
    return json.dumps([line.to_dict() for line in lines], ensure_ascii=False)


def deserialize_items(raw: str) -> list[CartLine]:
    data = json.loads(raw)
    if not isinstance(data, list):
        raise ValueError("items payload is not a list")
    return [CartLine.from_dict(item) for item in data]


def serialize_shipping_info(info: ShippingInfo) -> str:
    return json.dumps(info.to_dict(), ensure_ascii=False)


def deserialize_shipping_info(raw: str) -> ShippingInfo:
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("shipping payload is not an object")
    return ShippingInfo.from_dict(data)


def order_from_row(row: OrderRow) -> Order:
    """
    Decode a stored order.

    Raises:
        ValueError, KeyError, TypeError: If a stored payload is malformed.
    """
    return Order(
        id=row.id,
        user_id=row.user_id,
        items=deserialize_items(row.items),
        shipping_info=deserialize_shipping_info(row.shipping_info),
        total_price=row.total_price,
        status=row.status,
        created_at=_format_timestamp(row.created_at),
    )


def _order_to_row(order: Order) -> OrderRow:
    return OrderRow(
        id=order.id,
        user_id=order.user_id,
        items=serialize_items(order.items),
        shipping_info=serialize_shipping_info(order.shipping_info),
        total_price=order.total_price,
        status=order.status,
    )


class OrderService:
    """Places orders against live stock and reads order history."""

    def __init__(
        self,
        database: Database,
        id_factory: Callable[[], str] = generate_order_id,
    ):
        """
        Initialize OrderService.

        Args:
            database: Storage handle.
            id_factory: Order ID generator (overridable for testing).
        """
        self.database = database
        self.id_factory = id_factory

    # --- Stock ---

    def _load_products(self, product_ids: Iterable[int]) -> dict[int, Product]:
        ids = list(product_ids)
        with self.database.session() as session:
            rows = session.scalars(select(ProductRow).where(ProductRow.id.in_(ids)))
            return {row.id: row.to_model() for row in rows}

    def _shortages(
        self,
        demand: dict[int, int],
        products: dict[int, Product],
        titles: dict[int, str],
    ) -> list[StockShortage]:
        shortages = []
        for product_id, requested in demand.items():
            product = products.get(product_id)
            if product is None:
                shortages.append(
                    StockShortage(product_id, titles.get(product_id, ""), 0, requested)
                )
            elif product.stock < requested:
                shortages.append(
                    StockShortage(product_id, product.title, product.stock, requested)
                )
        return shortages

    def check_stock(self, lines: list[CartLine]) -> dict[int, Product]:
        """
        Compare requested quantities against stock read from storage.

        Quantities are summed per product. The client-side snapshot is only
        used for titles of products that no longer exist.

        Returns:
            Live products keyed by ID.

        Raises:
            InvalidQuantityError: If any line asks for zero or fewer units.
            InsufficientStockError: Naming every product that falls short.
            OrderStorageError: On storage failure.
        """
        validate_quantities(lines)
        demand = aggregate_quantities(lines)
        titles = {line.product.id: line.product.title for line in lines}
        try:
            products = self._load_products(demand)
        except SQLAlchemyError:
            logger.exception("Failed to read stock for products %s", list(demand))
            raise OrderStorageError("check stock")

        shortages = self._shortages(demand, products, titles)
        if shortages:
            raise InsufficientStockError(shortages)
        return products

    # --- Placement ---

    def place_order(
        self,
        user: User | None,
        lines: list[CartLine],
        shipping_info: ShippingInfo | None,
        client_order_id: str | None = None,
    ) -> Order:
        """
        Validate a checkout and atomically persist the order with stock decrements.

        Args:
            user: Signed-in user, or None.
            lines: Cart lines; product snapshots are not trusted for price or stock.
            shipping_info: Contact and delivery details.
            client_order_id: Order ID chosen by the client, if any.

        Returns:
            The stored order, with item snapshots taken from live product rows.

        Raises:
            UnauthenticatedError: If user is None.
            EmptyCartError: If lines is empty.
            InvalidShippingInfoError: With per-field messages.
            InvalidQuantityError: If any line asks for zero or fewer units.
            InsufficientStockError: Naming every short product. Nothing is written.
            DuplicateOrderIdError: If the ID collides twice in a row.
            OrderStorageError: On other storage failures. Nothing is written.
        """
        if user is None:
            raise UnauthenticatedError()
        if not lines:
            raise EmptyCartError()
        validate_shipping_info(shipping_info)

        products = self.check_stock(lines)
        items = [
            CartLine(product=products[line.product.id], quantity=line.quantity)
            for line in lines
        ]
        demand = aggregate_quantities(items)
        titles = {pid: p.title for pid, p in products.items()}

        order_id = client_order_id or self.id_factory()
        for attempt in range(2):
            order = Order(
                id=order_id,
                user_id=user.id,
                items=items,
                shipping_info=shipping_info,
                total_price=lines_subtotal(items),
                status=CONFIRMED,
                created_at=_utc_now(),
            )
            try:
                self._commit_order(order, demand)
            except DuplicateOrderIdError:
                if attempt:
                    raise
                logger.warning("Order id %s already exists; retrying with a new id", order_id)
                order_id = self.id_factory()
                continue
            except _StockRace as race:
                logger.info("Stock changed during checkout for products %s", race.product_ids)
                raise self._race_error(race, demand, titles)
            except SQLAlchemyError:
                logger.exception("Failed to store order %s", order_id)
                raise OrderStorageError("create order")

            logger.info(
                "Created order %s for user %s (%d lines, total %d)",
                order.id,
                user.id,
                len(items),
                order.total_price,
            )
            return order

        raise DuplicateOrderIdError(order_id)

    def _commit_order(self, order: Order, demand: dict[int, int]) -> None:
        """Insert the order and decrement stock in one transaction."""
        with self.database.transaction() as session:
            row = _order_to_row(order)
            session.add(row)
            try:
                session.flush()
            except IntegrityError:
                raise DuplicateOrderIdError(order.id)

            failed = []
            # Ascending ID order so concurrent transactions lock rows in the same order
            for product_id in sorted(demand):
                quantity = demand[product_id]
                result = session.execute(
                    update(ProductRow)
                    .where(ProductRow.id == product_id, ProductRow.stock >= quantity)
                    .values(stock=ProductRow.stock - quantity)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    failed.append(product_id)
            if failed:
                raise _StockRace(failed)

            order.created_at = _format_timestamp(row.created_at)

    def _race_error(
        self,
        race: _StockRace,
        demand: dict[int, int],
        titles: dict[int, str],
    ) -> InsufficientStockError:
        """Build the shortage report after a lost race, from a fresh read."""
        try:
            products = self._load_products(demand)
        except SQLAlchemyError:
            logger.exception("Failed to re-read stock after checkout race")
            products = {}

        shortages = self._shortages(demand, products, titles)
        if not shortages:
            # Stock recovered since the failed write; report what the write saw
            shortages = [
                StockShortage(
                    pid,
                    titles.get(pid, ""),
                    products[pid].stock if pid in products else 0,
                    demand[pid],
                )
                for pid in race.product_ids
            ]
        return InsufficientStockError(shortages)

    def record_paid_order(
        self,
        user_id: str,
        lines: list[CartLine],
        shipping_info: ShippingInfo,
        order_id: str | None = None,
    ) -> Order:
        """
        Store an order confirmed by the payment gateway.

        Stock is neither checked nor decremented on this path. Product
        snapshots from the gateway metadata are replaced by live rows where
        the product still exists. Recording the same order ID twice for the
        same user returns the stored order.

        Raises:
            InvalidQuantityError: If any line asks for zero or fewer units.
            DuplicateOrderIdError: If the ID belongs to another user's order.
            OrderStorageError: On storage failure.
        """
        validate_quantities(lines)
        try:
            products = self._load_products(line.product.id for line in lines)
        except SQLAlchemyError:
            logger.exception("Failed to read products for paid order")
            raise OrderStorageError("create order")

        items = []
        for line in lines:
            product = products.get(line.product.id)
            if product is None:
                logger.warning(
                    "Paid order references unknown product %s; keeping snapshot",
                    line.product.id,
                )
                product = line.product
            items.append(CartLine(product=product, quantity=line.quantity))

        order = Order(
            id=order_id or self.id_factory(),
            user_id=user_id,
            items=items,
            shipping_info=shipping_info,
            total_price=lines_subtotal(items),
            status=CONFIRMED,
        )
        try:
            with self.database.transaction() as session:
                row = _order_to_row(order)
                session.add(row)
                try:
                    session.flush()
                except IntegrityError:
                    raise DuplicateOrderIdError(order.id)
                order.created_at = _format_timestamp(row.created_at)
        except DuplicateOrderIdError:
            existing = self._find_order(order.id)
            if existing is not None and existing.user_id == user_id:
                logger.info("Paid order %s already recorded", order.id)
                return existing
            raise
        except SQLAlchemyError:
            logger.exception("Failed to store paid order %s", order.id)
            raise OrderStorageError("create order")

        logger.info("Created paid order %s for user %s", order.id, user_id)
        return order

    # --- History ---

    def list_orders(self, user: User | None) -> OrderHistory:
        """
        List a user's orders, newest first.

        Rows whose payload cannot be decoded are logged and reported by ID in
        OrderHistory.unreadable; the remaining orders are still returned.

        Raises:
            UnauthenticatedError: If user is None.
            OrderStorageError: On storage failure.
        """
        if user is None:
            raise UnauthenticatedError()

        stmt = (
            select(OrderRow)
            .where(OrderRow.user_id == user.id)
            .order_by(OrderRow.created_at.desc(), OrderRow.id.desc())
        )
        try:
            with self.database.session() as session:
                rows = list(session.scalars(stmt))
        except SQLAlchemyError:
            logger.exception("Failed to list orders for user %s", user.id)
            raise OrderStorageError("retrieve orders")

        history = OrderHistory(orders=[])
        for row in rows:
            try:
                history.orders.append(order_from_row(row))
            except (ValueError, KeyError, TypeError):
                logger.exception("Order %s has a malformed payload", row.id)
                history.unreadable.append(row.id)
        return history

    def _find_order(self, order_id: str) -> Order | None:
        try:
            with self.database.session() as session:
                row = session.get(OrderRow, order_id)
        except SQLAlchemyError:
            logger.exception("Failed to load order %s", order_id)
            raise OrderStorageError("retrieve order")
        if row is None:
            return None
        try:
            return order_from_row(row)
        except (ValueError, KeyError, TypeError):
            logger.exception("Order %s has a malformed payload", row.id)
            raise OrderStorageError("retrieve order")

    def get_order(self, user: User | None, order_id: str) -> Order:
        """
        Look up one of the user's orders.

        Raises:
            UnauthenticatedError: If user is None.
            OrderNotFoundError: If the order doesn't exist or belongs to someone else.
        """
        if user is None:
            raise UnauthenticatedError()
        order = self._find_order(order_id)
        if order is None or order.user_id != user.id:
            raise OrderNotFoundError(order_id)
        return order
