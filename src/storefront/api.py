"""FastAPI REST API for the storefront."""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from . import __version__
from .accounts import AccountService
from .catalog import Catalog
from .config import Settings, setup_locale, setup_logging
from .database import Database
from .errors import (
    AccountStorageError,
    CatalogUnavailableError,
    DuplicateOrderIdError,
    EmailAlreadyRegisteredError,
    EmptyCartError,
    InsufficientStockError,
    InvalidCredentialsError,
    InvalidProductIdError,
    InvalidQuantityError,
    InvalidQueryError,
    InvalidRegistrationError,
    InvalidShippingInfoError,
    InvalidWebhookPayloadError,
    InvalidWebhookSignatureError,
    OrderNotFoundError,
    OrderStorageError,
    PaymentGatewayError,
    PaymentNotCompletedError,
    PaymentSessionNotFoundError,
    ProductNotFoundError,
    StorefrontError,
    UnauthenticatedError,
    UnexpectedFailureError,
)
from .models import CartLine, Order, Product, ShippingInfo, User
from .orders import OrderService
from .payments import CheckoutService, PaymentGateway, gateway_from_settings

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Webhook-Signature"


# --- Pydantic Schemas ---


class ProductSchema(BaseModel):
    id: int
    title: str
    price: int
    description: str = ""
    image_url: str = ""
    category: str = "other"
    stock: int = 0


class ProductListResponse(BaseModel):
    products: list[ProductSchema]
    total: int


class CategoryListResponse(BaseModel):
    categories: list[str]


class CartLineSchema(BaseModel):
    product: ProductSchema
    quantity: int = Field(..., ge=1)


class ShippingInfoSchema(BaseModel):
    # Field rules live in validation.py so errors come back per field
    name: str = ""
    email: str = ""
    address: str = ""
    city: str = ""
    postal_code: str = ""
    payment_method: str = ""


class OrderCreateRequest(BaseModel):
    """Request body for placing an order."""

    id: Optional[str] = Field(
        None, max_length=64, description="Client-chosen order ID (generated when omitted)"
    )
    items: list[CartLineSchema] = Field(default_factory=list)
    shipping_info: Optional[ShippingInfoSchema] = None


class OrderSchema(BaseModel):
    id: str
    user_id: str
    items: list[CartLineSchema]
    shipping_info: ShippingInfoSchema
    total_price: int
    status: str
    created_at: str


class OrderListResponse(BaseModel):
    orders: list[OrderSchema]
    total: int
    unreadable: list[str] = Field(
        default_factory=list, description="IDs of stored orders that could not be decoded"
    )


class UserSchema(BaseModel):
    id: str
    email: str
    name: Optional[str] = None


class RegisterRequest(BaseModel):
    email: str = ""
    password: str = ""
    name: Optional[str] = None


class LoginRequest(BaseModel):
    email: str = ""
    password: str = ""


class LoginResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    user: UserSchema


class CheckoutSessionRequest(BaseModel):
    items: list[CartLineSchema] = Field(default_factory=list)
    shipping_info: Optional[ShippingInfoSchema] = None


class CheckoutSessionResponse(BaseModel):
    session_id: str
    url: str
    order_id: str
    amount_total: int


class PaidSessionResponse(BaseModel):
    session_id: str
    order_id: str
    user_id: str
    items: list[CartLineSchema]
    shipping_info: Optional[ShippingInfoSchema]
    total_price: int
    payment_status: str
    status: str


class ErrorResponse(BaseModel):
    detail: str
    error_type: str


# --- Helper Functions ---


@dataclass
class Services:
    """Everything the endpoints need, built once per application."""

    database: Database
    catalog: Catalog
    accounts: AccountService
    orders: OrderService
    checkout: CheckoutService
    gateway: PaymentGateway


def build_services(settings: Settings, database: Database, gateway: PaymentGateway) -> Services:
    orders = OrderService(database)
    return Services(
        database=database,
        catalog=Catalog(database),
        accounts=AccountService(database),
        orders=orders,
        checkout=CheckoutService(
            orders, gateway, base_url=settings.base_url, currency=settings.currency
        ),
        gateway=gateway,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


_bearer = HTTPBearer(auto_error=False)


def current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    services: Services = Depends(get_services),
) -> Optional[User]:
    """Resolve the bearer token to a user; None when absent or unknown."""
    if credentials is None:
        return None
    return services.accounts.resolve_token(credentials.credentials)


def require_user(user: Optional[User] = Depends(current_user)) -> User:
    if user is None:
        raise UnauthenticatedError()
    return user


def lines_from_schema(items: list[CartLineSchema]) -> list[CartLine]:
    return [
        CartLine(product=Product(**item.product.model_dump()), quantity=item.quantity)
        for item in items
    ]


def shipping_from_schema(info: Optional[ShippingInfoSchema]) -> Optional[ShippingInfo]:
    if info is None:
        return None
    return ShippingInfo(**info.model_dump())


def order_to_schema(order: Order) -> OrderSchema:
    return OrderSchema(**order.to_dict())


def user_to_schema(user: User) -> UserSchema:
    return UserSchema(id=user.id, email=user.email, name=user.name)


# --- Global Exception Handler ---


# Map exception types to HTTP status codes
ERROR_STATUS_CODES: dict[type, int] = {
    UnauthenticatedError: 401,
    InvalidCredentialsError: 401,
    EmptyCartError: 400,
    InvalidQuantityError: 400,
    InvalidShippingInfoError: 400,
    InsufficientStockError: 400,
    DuplicateOrderIdError: 409,
    InvalidProductIdError: 400,
    InvalidQueryError: 400,
    ProductNotFoundError: 404,
    OrderNotFoundError: 404,
    InvalidRegistrationError: 400,
    EmailAlreadyRegisteredError: 400,
    InvalidWebhookSignatureError: 400,
    InvalidWebhookPayloadError: 400,
    PaymentSessionNotFoundError: 404,
    PaymentNotCompletedError: 400,
    UnexpectedFailureError: 500,
    CatalogUnavailableError: 500,
    OrderStorageError: 500,
    AccountStorageError: 500,
    PaymentGatewayError: 500,
}


async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    """Map StorefrontError subclasses to appropriate HTTP responses."""
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    content = {"detail": str(exc), "error_type": type(exc).__name__}
    content.update(exc.extra())
    return JSONResponse(status_code=status_code, content=content)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies are client errors like any other validation failure."""
    return JSONResponse(
        status_code=400,
        content={
            "detail": "Invalid request",
            "error_type": "RequestValidationError",
            "errors": jsonable_encoder(exc.errors()),
        },
    )


# --- Endpoints ---


router = APIRouter(prefix="/api")


@router.get("/health")
def health_check(services: Services = Depends(get_services)):
    """
    Health check endpoint.

    Reports whether the product table can be read; 503 when it cannot.
    """
    try:
        return {
            "status": "ok",
            "version": __version__,
            "product_count": services.catalog.count_products(),
        }
    except StorefrontError as e:
        logger.warning("Health check failed: %s", e)
        return JSONResponse(status_code=503, content={"status": "error", "detail": str(e)})


# --- Catalog Endpoints ---


@router.get("/categories", response_model=CategoryListResponse)
def list_categories(services: Services = Depends(get_services)):
    return CategoryListResponse(categories=services.catalog.list_categories())


@router.get("/products", response_model=ProductListResponse)
def list_products(
    category: Optional[str] = Query(default=None, description="Category, or 'all'"),
    search: Optional[str] = Query(default=None, description="Substring of title or description"),
    sort: str = Query(default="default", description="default | price_asc | price_desc | title"),
    services: Services = Depends(get_services),
):
    """List products with optional filtering and sorting."""
    products = services.catalog.list_products(category=category, search=search, sort=sort)
    return ProductListResponse(
        products=[ProductSchema(**p.to_dict()) for p in products],
        total=len(products),
    )


@router.get("/products/{product_id}", response_model=ProductSchema)
def get_product(product_id: str, services: Services = Depends(get_services)):
    product = services.catalog.get_product(product_id)
    return ProductSchema(**product.to_dict())


# --- Account Endpoints ---


@router.post("/auth/register", response_model=UserSchema, status_code=201)
def register(request: RegisterRequest, services: Services = Depends(get_services)):
    """Create an account. Passwords need at least 6 characters."""
    user = services.accounts.register(request.email, request.password, name=request.name)
    return user_to_schema(user)


@router.post("/auth/login", response_model=LoginResponse)
def login(request: LoginRequest, services: Services = Depends(get_services)):
    token, user = services.accounts.login(request.email, request.password)
    return LoginResponse(token=token, user=user_to_schema(user))


@router.post("/auth/logout", status_code=204)
def logout(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    services: Services = Depends(get_services),
):
    if credentials is None:
        raise UnauthenticatedError()
    services.accounts.logout(credentials.credentials)
    return Response(status_code=204)


@router.get("/user", response_model=UserSchema)
def get_current_user(user: User = Depends(require_user)):
    return user_to_schema(user)


# --- Order Endpoints ---


@router.get("/orders", response_model=OrderListResponse)
def list_orders(
    user: Optional[User] = Depends(current_user),
    services: Services = Depends(get_services),
):
    """List the signed-in user's orders, newest first."""
    history = services.orders.list_orders(user)
    return OrderListResponse(
        orders=[order_to_schema(o) for o in history.orders],
        total=len(history.orders),
        unreadable=history.unreadable,
    )


@router.post("/orders", response_model=OrderSchema, status_code=201)
def create_order(
    request: OrderCreateRequest,
    user: Optional[User] = Depends(current_user),
    services: Services = Depends(get_services),
):
    """
    Place an order.

    Stock is re-read from storage; client-side prices and stock in the
    request are ignored.
    """
    order = services.orders.place_order(
        user,
        lines_from_schema(request.items),
        shipping_from_schema(request.shipping_info),
        client_order_id=request.id or None,
    )
    return order_to_schema(order)


@router.get("/orders/{order_id}", response_model=OrderSchema)
def get_order(
    order_id: str,
    user: Optional[User] = Depends(current_user),
    services: Services = Depends(get_services),
):
    return order_to_schema(services.orders.get_order(user, order_id))


# --- Payment Endpoints ---


@router.post("/payments/checkout-session", response_model=CheckoutSessionResponse)
def create_checkout_session(
    request: CheckoutSessionRequest,
    user: Optional[User] = Depends(current_user),
    services: Services = Depends(get_services),
):
    """Start card checkout. Returns the gateway page to redirect to."""
    session = services.checkout.start_checkout(
        user,
        lines_from_schema(request.items),
        shipping_from_schema(request.shipping_info),
    )
    return CheckoutSessionResponse(
        session_id=session.id,
        url=session.url,
        order_id=session.metadata.get("order_id", ""),
        amount_total=session.amount_total,
    )


@router.get("/payments/session/{session_id}", response_model=PaidSessionResponse)
def get_paid_session(
    session_id: str,
    user: Optional[User] = Depends(current_user),
    services: Services = Depends(get_services),
):
    summary = services.checkout.session_summary(user, session_id)
    return PaidSessionResponse(**summary.to_dict())


@router.post("/payments/webhook")
async def payment_webhook(
    request: Request,
    signature: Optional[str] = Header(default=None, alias=SIGNATURE_HEADER),
):
    """Receive gateway notifications. The raw body is needed for signature checks."""
    services = get_services(request)
    payload = await request.body()
    order = await run_in_threadpool(services.checkout.handle_webhook, payload, signature)
    if order is not None:
        return {"received": True, "order_id": order.id}
    return {"received": True}


# --- Application Factory ---


def create_app(
    settings: Settings | None = None,
    database: Database | None = None,
    gateway: PaymentGateway | None = None,
    services: Services | None = None,
) -> FastAPI:
    """
    Build the application and its collaborators.

    Args:
        settings: Defaults to Settings.from_env().
        database: Defaults to a Database for settings.database_url.
        gateway: Defaults to the gateway named by settings.payment_gateway.
        services: Pre-built services (tests); overrides database and gateway.
    """
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level)
    setup_locale(settings.collation_locale)

    if services is None:
        database = database or Database(settings.database_url)
        database.create_schema()
        gateway = gateway or gateway_from_settings(settings)
        services = build_services(settings, database, gateway)

    app = FastAPI(
        title="storefront API",
        description="Catalog, checkout and order history for the storefront",
        version=__version__,
    )
    app.state.services = services

    # CORS for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            settings.base_url,
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(StorefrontError, storefront_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(router)
    return app
