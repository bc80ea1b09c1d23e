"""Utility functions for storefront."""

import secrets
import time
from typing import Iterable

from .models import CartLine

BASE36_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"

# Orders at or above the threshold ship free
FREE_SHIPPING_THRESHOLD = 10_000
SHIPPING_FEE = 500

ORDER_ID_PREFIX = "ORD"
ORDER_ID_RANDOM_LENGTH = 4


def to_base36(value: int) -> str:
    """Encode a non-negative integer in upper-case base 36."""
    if value < 0:
        raise ValueError(f"Cannot encode negative value {value}")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(BASE36_ALPHABET[rem])
    return "".join(reversed(digits))


def generate_order_id(now_ms: int | None = None) -> str:
    """
    Generate an order ID of the form ORD-<base36 ms timestamp>-<base36 random>.

    Uniqueness is probabilistic. Callers rely on the primary key to detect
    the rare collision.
    """
    if now_ms is None:
        now_ms = time.time_ns() // 1_000_000
    suffix = "".join(secrets.choice(BASE36_ALPHABET) for _ in range(ORDER_ID_RANDOM_LENGTH))
    return f"{ORDER_ID_PREFIX}-{to_base36(now_ms)}-{suffix}"


def shipping_fee(subtotal: int) -> int:
    """Shipping fee for an order subtotal."""
    return 0 if subtotal >= FREE_SHIPPING_THRESHOLD else SHIPPING_FEE


def lines_subtotal(lines: Iterable[CartLine]) -> int:
    """Sum of unit price x quantity over cart lines."""
    return sum(line.subtotal for line in lines)


def aggregate_quantities(lines: Iterable[CartLine]) -> dict[int, int]:
    """
    Total requested quantity per product ID.

    A product appearing on several lines is checked against its combined demand.
    Insertion order follows first appearance.
    """
    demand: dict[int, int] = {}
    for line in lines:
        demand[line.product.id] = demand.get(line.product.id, 0) + line.quantity
    return demand
