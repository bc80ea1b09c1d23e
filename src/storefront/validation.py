"""Field validation for checkout and registration input."""

import re
from typing import Iterable

from .errors import InvalidQuantityError, InvalidRegistrationError, InvalidShippingInfoError
from .models import PAYMENT_METHODS, CartLine, ShippingInfo

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
POSTAL_CODE_PATTERN = re.compile(r"^\d{3}-?\d{4}$")

MIN_NAME_LENGTH = 2
MIN_ADDRESS_LENGTH = 5
MIN_PASSWORD_LENGTH = 6
# bcrypt only reads the first 72 bytes
MAX_PASSWORD_BYTES = 72


def is_valid_email(value: str | None) -> bool:
    return bool(value) and EMAIL_PATTERN.match(value) is not None


def is_valid_postal_code(value: str | None) -> bool:
    return bool(value) and POSTAL_CODE_PATTERN.match(value) is not None


def shipping_info_errors(info: ShippingInfo) -> dict[str, str]:
    """Return a field -> message map; empty when the info is valid."""
    errors: dict[str, str] = {}

    if len((info.name or "").strip()) < MIN_NAME_LENGTH:
        errors["name"] = f"Name must be at least {MIN_NAME_LENGTH} characters"

    if not is_valid_email(info.email):
        errors["email"] = "Enter a valid email address"

    if not is_valid_postal_code(info.postal_code):
        errors["postal_code"] = "Postal code must look like 123-4567"

    if not (info.city or "").strip():
        errors["city"] = "City is required"

    if len((info.address or "").strip()) < MIN_ADDRESS_LENGTH:
        errors["address"] = f"Address must be at least {MIN_ADDRESS_LENGTH} characters"

    if info.payment_method not in PAYMENT_METHODS:
        errors["payment_method"] = f"Payment method must be one of: {', '.join(PAYMENT_METHODS)}"

    return errors


def validate_shipping_info(info: ShippingInfo | None) -> ShippingInfo:
    """
    Check shipping info and return it unchanged.

    Raises:
        InvalidShippingInfoError: If info is missing or any field is invalid.
    """
    if info is None:
        raise InvalidShippingInfoError({"shipping_info": "Shipping info is required"})
    errors = shipping_info_errors(info)
    if errors:
        raise InvalidShippingInfoError(errors)
    return info


def validate_quantities(lines: Iterable[CartLine]) -> None:
    """
    Check every line asks for at least one unit.

    Raises:
        InvalidQuantityError: Naming the products with a zero or negative quantity.
    """
    bad = [line.product.id for line in lines if line.quantity <= 0]
    if bad:
        raise InvalidQuantityError(bad)


def validate_registration(email: str | None, password: str | None) -> None:
    """
    Check registration input.

    Raises:
        InvalidRegistrationError: If email or password is unacceptable.
    """
    errors: dict[str, str] = {}
    if not email or not password:
        errors["required"] = "Email and password are required"
    else:
        if not is_valid_email(email):
            errors["email"] = "Enter a valid email address"
        if len(password) < MIN_PASSWORD_LENGTH:
            errors["password"] = f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
        elif len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            errors["password"] = f"Password must be at most {MAX_PASSWORD_BYTES} bytes"
    if errors:
        raise InvalidRegistrationError(errors)
