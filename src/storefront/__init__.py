"""storefront - catalog, cart, checkout and order history backend."""

__version__ = "0.1.0"
