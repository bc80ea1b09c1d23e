"""Command-line interface for storefront."""

import argparse
import json
import sys

from . import __version__
from .accounts import AccountService
from .catalog import SORT_OPTIONS, Catalog
from .config import Settings, setup_locale, setup_logging
from .database import Database
from .errors import StorefrontError
from .orders import OrderService
from .seed import seed_products


def get_database(settings: Settings) -> Database:
    """Open the configured database, creating tables if needed."""
    database = Database(settings.database_url)
    database.create_schema()
    return database


def cmd_init_db(args: argparse.Namespace) -> int:
    """Create database tables."""
    settings = Settings.from_env()
    database = get_database(settings)
    print(f"Initialized database at {database.url}")
    return 0


def cmd_seed(args: argparse.Namespace) -> int:
    """Load the sample catalog."""
    settings = Settings.from_env()
    database = get_database(settings)
    inserted = seed_products(database, force=args.force)
    if inserted:
        print(f"Seeded {inserted} products")
    else:
        print("Products already present. Use --force to replace them.")
    return 0


def cmd_products(args: argparse.Namespace) -> int:
    """List products."""
    try:
        catalog = Catalog(get_database(Settings.from_env()))
        products = catalog.list_products(
            category=args.category, search=args.search, sort=args.sort
        )

        if args.json:
            print(json.dumps([p.to_dict() for p in products], indent=2, ensure_ascii=False))
            return 0

        if not products:
            print("No products found.")
            return 0

        for p in products:
            stock = f"{p.stock} in stock" if p.stock else "sold out"
            print(f"{p.id:>4}  {p.title:<32} {p.price:>8,}  [{p.category}] {stock}")
        print(f"\n{len(products)} product(s)")
        return 0

    except StorefrontError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_orders(args: argparse.Namespace) -> int:
    """List orders for a user."""
    try:
        database = get_database(Settings.from_env())
        user = AccountService(database).find_by_email(args.email)
        if user is None:
            print(f"Error: No user registered with {args.email}", file=sys.stderr)
            return 1

        history = OrderService(database).list_orders(user)

        if args.json:
            output = {
                "orders": [o.to_dict() for o in history.orders],
                "unreadable": history.unreadable,
            }
            print(json.dumps(output, indent=2, ensure_ascii=False))
            return 0

        if not history.orders:
            print("No orders found.")
        for order in history.orders:
            count = sum(line.quantity for line in order.items)
            print(f"{order.id}  {order.created_at}  {order.status:<10} {count:>3} item(s)  {order.total_price:>8,}")
        for order_id in history.unreadable:
            print(f"{order_id}  (unreadable)")
        return 0

    except StorefrontError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the API server."""
    try:
        import uvicorn

        settings = Settings.from_env()
        print("Starting storefront API server...")
        print(f"Database: {settings.database_url}")
        print(f"API docs: http://{args.host}:{args.port}/docs")
        print()

        uvicorn.run(
            "storefront.api:create_app",
            factory=True,
            host=args.host,
            port=args.port,
            reload=args.reload,
        )
        return 0

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="storefront",
        description="Storefront backend: catalog, checkout and order history.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # init-db
    subparsers.add_parser("init-db", help="Create database tables")

    # seed
    seed_parser = subparsers.add_parser("seed", help="Load the sample catalog")
    seed_parser.add_argument(
        "--force", "-f", action="store_true", help="Replace existing products"
    )

    # products
    products_parser = subparsers.add_parser("products", help="List products")
    products_parser.add_argument("--category", "-c", help="Category filter ('all' for none)")
    products_parser.add_argument("--search", "-s", help="Search title and description")
    products_parser.add_argument(
        "--sort", choices=SORT_OPTIONS, default="default", help="Sort order (default: by id)"
    )
    products_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # orders
    orders_parser = subparsers.add_parser("orders", help="List a user's orders")
    orders_parser.add_argument("email", help="Account email")
    orders_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument(
        "--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)"
    )
    serve_parser.add_argument(
        "--port", "-p", type=int, default=8000, help="Port to bind to (default: 8000)"
    )
    serve_parser.add_argument(
        "--reload", action="store_true", help="Enable auto-reload for development"
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    settings = Settings.from_env()
    setup_logging(settings.log_level)
    setup_locale(settings.collation_locale)

    commands = {
        "init-db": cmd_init_db,
        "seed": cmd_seed,
        "products": cmd_products,
        "orders": cmd_orders,
        "serve": cmd_serve,
    }

    cmd_func = commands.get(args.command)
    if cmd_func:
        return cmd_func(args)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
