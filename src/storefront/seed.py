"""Sample catalog for local development and demos."""

import logging

from sqlalchemy import delete, func, select

from .database import Database, ProductRow

logger = logging.getLogger(__name__)

SAMPLE_PRODUCTS = [
    {
        "id": 1,
        "title": "Premium T-Shirt",
        "price": 3980,
        "description": "Soft 100% cotton tee with a simple cut that goes with anything.",
        "image_url": "/images/products/product-1.png",
        "category": "clothing",
        "stock": 15,
    },
    {
        "id": 2,
        "title": "Wireless Earbuds Pro",
        "price": 12800,
        "description": "Bluetooth earbuds with noise cancelling and up to 24 hours of playback.",
        "image_url": "/images/products/product-2.png",
        "category": "electronics",
        "stock": 8,
    },
    {
        "id": 3,
        "title": "Practical React Guide",
        "price": 2980,
        "description": "Covers React from the basics to advanced patterns with plenty of sample code.",
        "image_url": "/images/products/product-3.png",
        "category": "books",
        "stock": 25,
    },
    {
        "id": 4,
        "title": "Organic Coffee Beans",
        "price": 1580,
        "description": "Carefully selected organic beans with a deep, rich aroma. 200g bag.",
        "image_url": "/images/products/product-4.png",
        "category": "food",
        "stock": 30,
    },
    {
        "id": 5,
        "title": "Smartwatch X1",
        "price": 24800,
        "description": "Tracks heart rate, sleep and workouts. Water resistant to 50m.",
        "image_url": "/images/products/product-5.png",
        "category": "electronics",
        "stock": 5,
    },
    {
        "id": 6,
        "title": "Denim Jacket",
        "price": 8900,
        "description": "Classic denim jacket in a washed indigo finish.",
        "image_url": "/images/products/product-6.png",
        "category": "clothing",
        "stock": 12,
    },
    {
        "id": 7,
        "title": "Introduction to TypeScript",
        "price": 3200,
        "description": "A beginner-friendly book on TypeScript's type system.",
        "image_url": "/images/products/product-7.png",
        "category": "books",
        "stock": 0,
    },
    {
        "id": 8,
        "title": "Matcha Chocolate Set",
        "price": 2480,
        "description": "Assorted chocolates made with stone-ground matcha.",
        "image_url": "/images/products/product-8.png",
        "category": "food",
        "stock": 20,
    },
    {
        "id": 9,
        "title": "Portable Charger 20000mAh",
        "price": 4980,
        "description": "High-capacity power bank that charges two devices at once.",
        "image_url": "/images/products/product-9.png",
        "category": "electronics",
        "stock": 3,
    },
    {
        "id": 10,
        "title": "Leather Wallet",
        "price": 6800,
        "description": "Genuine leather bifold wallet that ages beautifully.",
        "image_url": "/images/products/product-10.png",
        "category": "other",
        "stock": 18,
    },
    {
        "id": 11,
        "title": "Classic Sneakers",
        "price": 7900,
        "description": "Everyday canvas sneakers with a cushioned sole.",
        "image_url": "/images/products/product-11.png",
        "category": "clothing",
        "stock": 10,
    },
    {
        "id": 12,
        "title": "Next.js in Practice",
        "price": 3500,
        "description": "Building production apps with Next.js, step by step.",
        "image_url": "/images/products/product-12.png",
        "category": "books",
        "stock": 15,
    },
]


def seed_products(database: Database, force: bool = False) -> int:
    """
    Load SAMPLE_PRODUCTS.

    Args:
        database: Target database (schema must exist).
        force: Replace existing products instead of skipping a non-empty table.

    Returns:
        Number of products inserted (0 when skipped).
    """
    with database.transaction() as session:
        existing = session.scalar(select(func.count()).select_from(ProductRow)) or 0
        if existing and not force:
            logger.info("Products already seeded (%d rows); skipping", existing)
            return 0
        if existing:
            session.execute(delete(ProductRow))
        session.add_all(ProductRow(**data) for data in SAMPLE_PRODUCTS)

    logger.info("Seeded %d products", len(SAMPLE_PRODUCTS))
    return len(SAMPLE_PRODUCTS)
