"""Pytest fixtures for storefront tests."""

import tempfile
from pathlib import Path

import pytest
from sqlalchemy import update

from storefront import accounts as accounts_module
from storefront.accounts import AccountService
from storefront.catalog import Catalog
from storefront.database import Database, ProductRow
from storefront.models import CartLine, ShippingInfo
from storefront.orders import OrderService
from storefront.seed import seed_products

# Minimum bcrypt cost keeps registration fast in tests
TEST_BCRYPT_ROUNDS = 4


@pytest.fixture(autouse=True)
def fast_password_hashing(monkeypatch):
    monkeypatch.setattr(accounts_module, "BCRYPT_ROUNDS", TEST_BCRYPT_ROUNDS)


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def database():
    """In-memory database with the sample catalog loaded."""
    db = Database.in_memory()
    seed_products(db)
    yield db
    db.dispose()


@pytest.fixture
def catalog(database):
    return Catalog(database)


@pytest.fixture
def accounts(database):
    return AccountService(database)


@pytest.fixture
def order_service(database):
    return OrderService(database)


@pytest.fixture
def user(accounts):
    """A registered customer."""
    return accounts.register("buyer@example.com", "secret123", name="Buyer")


@pytest.fixture
def other_user(accounts):
    return accounts.register("other@example.com", "secret456", name="Other")


def make_shipping(**overrides) -> ShippingInfo:
    """Valid shipping info, with optional field overrides."""
    data = {
        "name": "Taro Yamada",
        "email": "taro@example.com",
        "address": "1-2-3 Chiyoda",
        "city": "Tokyo",
        "postal_code": "100-0001",
        "payment_method": "cod",
    }
    data.update(overrides)
    return ShippingInfo(**data)


def cart_line(catalog: Catalog, product_id: int, quantity: int) -> CartLine:
    """A cart line holding the product as currently stored."""
    return CartLine(product=catalog.get_product(product_id), quantity=quantity)


def set_stock(database: Database, product_id: int, stock: int) -> None:
    with database.transaction() as session:
        session.execute(
            update(ProductRow).where(ProductRow.id == product_id).values(stock=stock)
        )


def stock_of(database: Database, product_id: int) -> int:
    with database.session() as session:
        return session.get(ProductRow, product_id).stock
