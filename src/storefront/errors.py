"""Custom exceptions for storefront."""

from dataclasses import dataclass
from typing import Any


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    def extra(self) -> dict[str, Any]:
        """Structured details returned to API clients alongside the message."""
        return {}


class UnauthenticatedError(StorefrontError):
    """Raised when an operation needs a signed-in user and none is present."""

    def __init__(self) -> None:
        super().__init__("Authentication required")


class InvalidCredentialsError(StorefrontError):
    """Raised when an email/password pair does not match a user."""

    def __init__(self) -> None:
        super().__init__("Invalid email or password")


class EmptyCartError(StorefrontError):
    """Raised when checking out with no cart lines."""

    def __init__(self) -> None:
        super().__init__("Cart is empty")


class InvalidQuantityError(StorefrontError):
    """Raised when a cart line asks for zero or fewer units."""

    def __init__(self, product_ids: list[int]):
        self.product_ids = product_ids
        super().__init__(f"Quantity must be at least 1 for products {product_ids}")

    def extra(self) -> dict[str, Any]:
        return {"product_ids": self.product_ids}


class InvalidShippingInfoError(StorefrontError):
    """Raised when shipping info is missing or fails field validation."""

    def __init__(self, errors: dict[str, str]):
        self.errors = errors
        fields = ", ".join(sorted(errors))
        super().__init__(f"Invalid shipping info: {fields}")

    def extra(self) -> dict[str, Any]:
        return {"errors": self.errors}


@dataclass
class StockShortage:
    """One product that cannot cover the requested quantity."""

    product_id: int
    title: str
    stock: int  # 0 when the product no longer exists
    requested: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "title": self.title,
            "stock": self.stock,
            "requested": self.requested,
        }


class InsufficientStockError(StorefrontError):
    """Raised when one or more cart lines exceed current stock."""

    def __init__(self, shortages: list[StockShortage]):
        self.shortages = shortages
        titles = ", ".join(s.title for s in shortages)
        super().__init__(f"Insufficient stock: {titles}")

    def extra(self) -> dict[str, Any]:
        return {"shortages": [s.to_dict() for s in self.shortages]}


class DuplicateOrderIdError(StorefrontError):
    """Raised when an order id collides with an existing order."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order id already exists: {order_id}")


class InvalidProductIdError(StorefrontError):
    """Raised when a product id is not a positive integer."""

    def __init__(self, raw_id: str):
        self.raw_id = raw_id
        super().__init__(f"Invalid product id: {raw_id}")


class InvalidQueryError(StorefrontError):
    """Raised when a catalog query parameter has an unsupported value."""

    def __init__(self, name: str, value: str):
        self.name = name
        self.value = value
        super().__init__(f"Unsupported value for {name}: {value}")


class ProductNotFoundError(StorefrontError):
    """Raised when a product ID doesn't exist."""

    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class OrderNotFoundError(StorefrontError):
    """Raised when an order ID doesn't exist for the requesting user."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class InvalidRegistrationError(StorefrontError):
    """Raised when registration input fails validation."""

    def __init__(self, errors: dict[str, str]):
        self.errors = errors
        super().__init__("; ".join(errors.values()))

    def extra(self) -> dict[str, Any]:
        return {"errors": self.errors}


class EmailAlreadyRegisteredError(StorefrontError):
    """Raised when registering an email that already has an account."""

    def __init__(self, email: str):
        self.email = email
        super().__init__(f"Email already registered: {email}")


class InvalidWebhookSignatureError(StorefrontError):
    """Raised when a gateway event fails signature verification."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Webhook signature verification failed ({reason})")


class InvalidWebhookPayloadError(StorefrontError):
    """Raised when a verified gateway event lacks data needed to record an order."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid webhook payload: {reason}")


class PaymentSessionNotFoundError(StorefrontError):
    """Raised when a checkout session ID is unknown to the gateway."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Checkout session not found: {session_id}")


class PaymentNotCompletedError(StorefrontError):
    """Raised when reading a checkout session that has not been paid."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Payment not completed for session {session_id}")


# Unexpected failures. Messages stay generic; the cause is logged where raised.


class UnexpectedFailureError(StorefrontError):
    """Base for storage or gateway failures not otherwise classified."""

    def __init__(self, message: str = "Unexpected failure"):
        super().__init__(message)


class CatalogUnavailableError(UnexpectedFailureError):
    """Raised when products cannot be read from storage."""

    def __init__(self) -> None:
        super().__init__("Failed to retrieve products")


class OrderStorageError(UnexpectedFailureError):
    """Raised when orders cannot be read from or written to storage."""

    def __init__(self, action: str = "process order"):
        self.action = action
        super().__init__(f"Failed to {action}")


class AccountStorageError(UnexpectedFailureError):
    """Raised when user accounts cannot be read or written."""

    def __init__(self) -> None:
        super().__init__("Failed to access user accounts")


class PaymentGatewayError(UnexpectedFailureError):
    """Raised when the payment gateway call fails."""

    def __init__(self) -> None:
        super().__init__("Payment gateway request failed")
