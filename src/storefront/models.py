"""Data models for storefront."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
import uuid

PRODUCT_CATEGORIES = ("clothing", "electronics", "books", "food", "other")
PAYMENT_METHODS = ("credit", "bank", "cod")
ORDER_STATUSES = ("pending", "confirmed", "shipped", "delivered", "cancelled")


def _utc_now() -> str:
    """Return current UTC time as ISO 8601 string."""
    return _format_timestamp(datetime.now(timezone.utc))


def _format_timestamp(value: datetime) -> str:
    """Format a datetime as ISO 8601 UTC with a trailing Z. Naive values are UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _generate_id() -> str:
    """Generate a new user ID."""
    return str(uuid.uuid4())


@dataclass
class Product:
    """A sellable product. Price is in the smallest currency unit."""

    id: int
    title: str
    price: int
    description: str = ""
    image_url: str = ""
    category: str = "other"
    stock: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "price": self.price,
            "description": self.description,
            "image_url": self.image_url,
            "category": self.category,
            "stock": self.stock,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Product":
        return cls(
            id=int(data["id"]),
            title=data["title"],
            price=int(data["price"]),
            description=data.get("description", ""),
            image_url=data.get("image_url", ""),
            category=data.get("category", "other"),
            stock=int(data.get("stock", 0)),
        )


@dataclass
class CartLine:
    """A product snapshot paired with a quantity."""

    product: Product
    quantity: int

    @property
    def subtotal(self) -> int:
        return self.product.price * self.quantity

    def to_dict(self) -> dict[str, Any]:
        return {"product": self.product.to_dict(), "quantity": self.quantity}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CartLine":
        return cls(
            product=Product.from_dict(data["product"]),
            quantity=int(data["quantity"]),
        )


@dataclass
class ShippingInfo:
    """Contact, delivery address and payment method captured at checkout."""

    name: str
    email: str
    address: str
    city: str
    postal_code: str
    payment_method: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "email": self.email,
            "address": self.address,
            "city": self.city,
            "postal_code": self.postal_code,
            "payment_method": self.payment_method,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ShippingInfo":
        return cls(
            name=data.get("name", ""),
            email=data.get("email", ""),
            address=data.get("address", ""),
            city=data.get("city", ""),
            postal_code=data.get("postal_code", ""),
            payment_method=data.get("payment_method", ""),
        )


@dataclass
class Order:
    """A placed order. Items and shipping info are snapshots taken at purchase time."""

    id: str
    user_id: str
    items: list[CartLine]
    shipping_info: ShippingInfo
    total_price: int
    status: str = "confirmed"
    created_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "items": [line.to_dict() for line in self.items],
            "shipping_info": self.shipping_info.to_dict(),
            "total_price": self.total_price,
            "status": self.status,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Order":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            items=[CartLine.from_dict(line) for line in data.get("items", [])],
            shipping_info=ShippingInfo.from_dict(data["shipping_info"]),
            total_price=int(data["total_price"]),
            status=data.get("status", "confirmed"),
            created_at=data.get("created_at", ""),
        )


@dataclass
class OrderHistory:
    """Orders for one user, newest first, plus IDs of rows that could not be decoded."""

    orders: list[Order]
    unreadable: list[str] = field(default_factory=list)


@dataclass
class User:
    """A registered customer. The password hash never leaves the accounts layer."""

    id: str
    email: str
    name: str | None = None
    created_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "created_at": self.created_at,
        }
