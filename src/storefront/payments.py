"""Payment gateway boundary and the card checkout flow.

Card checkout creates a gateway session carrying the cart and shipping info as
metadata. When the gateway reports the session completed, the order is
recorded from that metadata without re-checking stock; the stock check runs
when the session is created.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import stripe

from .config import Settings
from .errors import (
    EmptyCartError,
    InvalidWebhookPayloadError,
    InvalidWebhookSignatureError,
    PaymentGatewayError,
    PaymentNotCompletedError,
    PaymentSessionNotFoundError,
    StorefrontError,
    UnauthenticatedError,
)
from .models import CartLine, Order, ShippingInfo, User
from .orders import OrderService
from .utils import lines_subtotal, shipping_fee
from .validation import validate_shipping_info

logger = logging.getLogger(__name__)

SESSION_COMPLETED = "checkout.session.completed"
DEFAULT_TOLERANCE_SECONDS = 300


@dataclass
class GatewayLineItem:
    """One priced line sent to the gateway."""

    name: str
    unit_amount: int
    quantity: int
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "unit_amount": self.unit_amount,
            "quantity": self.quantity,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GatewayLineItem:
        return cls(
            name=data["name"],
            unit_amount=int(data["unit_amount"]),
            quantity=int(data["quantity"]),
            description=data.get("description", ""),
        )


@dataclass
class CheckoutSession:
    """A hosted payment page created by the gateway."""

    id: str
    url: str
    currency: str
    customer_email: str
    line_items: list[GatewayLineItem]
    metadata: dict[str, str]
    success_url: str
    cancel_url: str
    payment_status: str = "unpaid"  # "unpaid" | "paid"
    reported_total: int | None = None

    @property
    def amount_total(self) -> int:
        if self.reported_total is not None:
            return self.reported_total
        return sum(item.unit_amount * item.quantity for item in self.line_items)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "currency": self.currency,
            "customer_email": self.customer_email,
            "line_items": [item.to_dict() for item in self.line_items],
            "metadata": dict(self.metadata),
            "success_url": self.success_url,
            "cancel_url": self.cancel_url,
            "payment_status": self.payment_status,
            "amount_total": self.amount_total,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CheckoutSession:
        return cls(
            id=data["id"],
            url=data.get("url") or "",
            currency=data.get("currency") or "",
            customer_email=data.get("customer_email") or "",
            line_items=[GatewayLineItem.from_dict(i) for i in data.get("line_items") or []],
            metadata=dict(data.get("metadata") or {}),
            success_url=data.get("success_url") or "",
            cancel_url=data.get("cancel_url") or "",
            payment_status=data.get("payment_status") or "unpaid",
            reported_total=data.get("amount_total"),
        )


@dataclass
class GatewayEvent:
    """A verified notification from the gateway."""

    id: str
    type: str
    session: CheckoutSession
    created: int = 0


class PaymentGateway(Protocol):
    """Protocol for payment gateways.

    Implementations host the payment page and deliver signed events once
    the customer has paid.
    """

    def create_checkout_session(
        self,
        line_items: list[GatewayLineItem],
        customer_email: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        currency: str,
    ) -> CheckoutSession:
        """Create a payment session and return it with its redirect URL."""
        ...

    def retrieve_session(self, session_id: str) -> CheckoutSession:
        """Fetch a session.

        Raises:
            PaymentSessionNotFoundError: If the gateway does not know the ID.
        """
        ...

    def construct_event(self, payload: bytes, signature: str | None) -> GatewayEvent:
        """Verify a webhook delivery and decode it.

        Raises:
            InvalidWebhookSignatureError: If the signature is missing, stale or wrong.
        """
        ...


def _parse_signature_header(header: str) -> tuple[int, list[str]]:
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = int(value)
        elif key == "v1":
            signatures.append(value)
    if timestamp is None or not signatures:
        raise ValueError("malformed signature header")
    return timestamp, signatures


def _decode_event(payload: bytes, timestamp: int) -> GatewayEvent:
    try:
        data = json.loads(payload)
        return GatewayEvent(
            id=data["id"],
            type=data["type"],
            session=CheckoutSession.from_dict(data["data"]["object"]),
            created=int(data.get("created", timestamp)),
        )
    except (ValueError, KeyError, TypeError):
        raise InvalidWebhookPayloadError("event body is not a checkout session event")


class LocalGateway:
    """In-process gateway with HMAC-SHA256 signed events.

    Signature header format: ``t=<unix seconds>,v1=<hex hmac of "t.payload">``.
    Sessions live in memory; complete_session() plays the customer paying.
    """

    def __init__(
        self,
        secret: str,
        checkout_base_url: str = "https://checkout.local",
        tolerance: int = DEFAULT_TOLERANCE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.secret = secret.encode("utf-8")
        self.checkout_base_url = checkout_base_url.rstrip("/")
        self.tolerance = tolerance
        self.clock = clock
        self._sessions: dict[str, CheckoutSession] = {}
        self._lock = threading.Lock()

    def create_checkout_session(
        self,
        line_items: list[GatewayLineItem],
        customer_email: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        currency: str,
    ) -> CheckoutSession:
        session_id = f"cs_{secrets.token_hex(12)}"
        session = CheckoutSession(
            id=session_id,
            url=f"{self.checkout_base_url}/pay/{session_id}",
            currency=currency,
            customer_email=customer_email,
            line_items=list(line_items),
            metadata=dict(metadata),
            success_url=success_url.replace("{CHECKOUT_SESSION_ID}", session_id),
            cancel_url=cancel_url,
        )
        with self._lock:
            self._sessions[session_id] = session
        return session

    def retrieve_session(self, session_id: str) -> CheckoutSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise PaymentSessionNotFoundError(session_id)
        return session

    def sign(self, payload: bytes, timestamp: int | None = None) -> str:
        """Signature header for a payload."""
        if timestamp is None:
            timestamp = int(self.clock())
        signed = f"{timestamp}.".encode("utf-8") + payload
        digest = hmac.new(self.secret, signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={digest}"

    def complete_session(self, session_id: str) -> tuple[bytes, str]:
        """
        Mark a session paid and build the completion event.

        Returns:
            (payload, signature header) as they would arrive at the webhook.
        """
        session = self.retrieve_session(session_id)
        with self._lock:
            session.payment_status = "paid"
        created = int(self.clock())
        event = {
            "id": f"evt_{secrets.token_hex(12)}",
            "type": SESSION_COMPLETED,
            "created": created,
            "data": {"object": session.to_dict()},
        }
        payload = json.dumps(event, ensure_ascii=False).encode("utf-8")
        return payload, self.sign(payload, created)

    def construct_event(self, payload: bytes, signature: str | None) -> GatewayEvent:
        if not signature:
            raise InvalidWebhookSignatureError("missing signature header")
        try:
            timestamp, candidates = _parse_signature_header(signature)
        except ValueError:
            raise InvalidWebhookSignatureError("malformed signature header")

        expected = self.sign(payload, timestamp).split("v1=", 1)[1]
        if not any(hmac.compare_digest(expected, c) for c in candidates):
            raise InvalidWebhookSignatureError("signature mismatch")
        if abs(self.clock() - timestamp) > self.tolerance:
            raise InvalidWebhookSignatureError("timestamp outside tolerance")

        return _decode_event(payload, timestamp)


def _plain(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class StripeGateway:
    """Gateway backed by Stripe Checkout.

    Sessions use "payment" mode with inline price data per line item.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    ):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    def create_checkout_session(
        self,
        line_items: list[GatewayLineItem],
        customer_email: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        currency: str,
    ) -> CheckoutSession:
        params = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {
                            "name": item.name,
                            **({"description": item.description} if item.description else {}),
                        },
                        "unit_amount": item.unit_amount,
                    },
                    "quantity": item.quantity,
                }
                for item in line_items
            ],
            "customer_email": customer_email,
            "metadata": metadata,
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        try:
            created = stripe.checkout.Session.create(api_key=self.api_key, **params)
        except stripe.StripeError as e:
            logger.error("Stripe rejected checkout session: %s", e)
            raise PaymentGatewayError()
        session = self._to_session(created)
        session.line_items = list(line_items)
        return session

    def retrieve_session(self, session_id: str) -> CheckoutSession:
        try:
            found = stripe.checkout.Session.retrieve(session_id, api_key=self.api_key)
        except stripe.InvalidRequestError:
            raise PaymentSessionNotFoundError(session_id)
        except stripe.StripeError as e:
            logger.error("Stripe failed to retrieve session %s: %s", session_id, e)
            raise PaymentGatewayError()
        return self._to_session(found)

    def construct_event(self, payload: bytes, signature: str | None) -> GatewayEvent:
        if not signature:
            raise InvalidWebhookSignatureError("missing signature header")
        body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        try:
            stripe.WebhookSignature.verify_header(
                body, signature, self.webhook_secret, self.tolerance
            )
        except stripe.SignatureVerificationError as e:
            raise InvalidWebhookSignatureError(str(e))
        return _decode_event(payload, int(time.time()))

    @staticmethod
    def _to_session(obj: Any) -> CheckoutSession:
        return CheckoutSession(
            id=obj.id,
            url=getattr(obj, "url", None) or "",
            currency=getattr(obj, "currency", None) or "",
            customer_email=getattr(obj, "customer_email", None) or "",
            line_items=[],
            metadata={k: str(v) for k, v in _plain(getattr(obj, "metadata", None)).items()},
            success_url=getattr(obj, "success_url", None) or "",
            cancel_url=getattr(obj, "cancel_url", None) or "",
            payment_status=getattr(obj, "payment_status", None) or "unpaid",
            reported_total=getattr(obj, "amount_total", None),
        )


def gateway_from_settings(settings: Settings) -> PaymentGateway:
    """Build the gateway named by settings.payment_gateway.

    Raises:
        ValueError: On an unknown gateway name or a Stripe gateway without a key.
    """
    if settings.payment_gateway == "local":
        return LocalGateway(settings.webhook_secret)
    if settings.payment_gateway == "stripe":
        if not settings.stripe_secret_key:
            raise ValueError("STOREFRONT_STRIPE_SECRET_KEY is required for the stripe gateway")
        return StripeGateway(settings.stripe_secret_key, settings.webhook_secret)
    raise ValueError(f"Unknown payment gateway: {settings.payment_gateway!r}")


@dataclass
class PaidSessionSummary:
    """What the checkout completion page shows for a paid session."""

    session_id: str
    order_id: str
    user_id: str
    items: list[CartLine]
    shipping_info: ShippingInfo | None
    total_price: int
    payment_status: str
    status: str = "confirmed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "items": [line.to_dict() for line in self.items],
            "shipping_info": self.shipping_info.to_dict() if self.shipping_info else None,
            "total_price": self.total_price,
            "payment_status": self.payment_status,
            "status": self.status,
        }


def _decode_lines(raw: str | None) -> list[CartLine]:
    if not raw:
        return []
    data = json.loads(raw)
    if not isinstance(data, list):
        raise ValueError("cart_items metadata is not a list")
    return [CartLine.from_dict(item) for item in data]


def _decode_shipping_info(raw: str | None) -> ShippingInfo | None:
    if not raw:
        return None
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("shipping_info metadata is not an object")
    return ShippingInfo.from_dict(data)


class CheckoutService:
    """Card checkout through a payment gateway."""

    def __init__(
        self,
        orders: OrderService,
        gateway: PaymentGateway,
        base_url: str = "http://localhost:3000",
        currency: str = "jpy",
    ):
        self.orders = orders
        self.gateway = gateway
        self.base_url = base_url.rstrip("/")
        self.currency = currency

    def start_checkout(
        self,
        user: User | None,
        lines: list[CartLine],
        shipping_info: ShippingInfo | None,
    ) -> CheckoutSession:
        """
        Create a gateway session for a cart.

        Runs the same checks as direct order placement, including live stock.
        Line prices come from storage; a shipping line is added when the fee
        applies. The order ID is reserved here and carried in the metadata.

        Raises:
            UnauthenticatedError, EmptyCartError, InvalidShippingInfoError,
            InsufficientStockError: As for OrderService.place_order.
            PaymentGatewayError: If the gateway call fails.
        """
        if user is None:
            raise UnauthenticatedError()
        if not lines:
            raise EmptyCartError()
        validate_shipping_info(shipping_info)

        products = self.orders.check_stock(lines)
        items = [CartLine(product=products[line.product.id], quantity=line.quantity) for line in lines]

        line_items = [
            GatewayLineItem(
                name=line.product.title,
                unit_amount=line.product.price,
                quantity=line.quantity,
                description=line.product.description[:500],
            )
            for line in items
        ]
        fee = shipping_fee(lines_subtotal(items))
        if fee > 0:
            line_items.append(GatewayLineItem(name="Shipping", unit_amount=fee, quantity=1))

        order_id = self.orders.id_factory()
        metadata = {
            "user_id": user.id,
            "order_id": order_id,
            "shipping_info": json.dumps(shipping_info.to_dict(), ensure_ascii=False),
            "cart_items": json.dumps([line.to_dict() for line in items], ensure_ascii=False),
        }
        try:
            session = self.gateway.create_checkout_session(
                line_items=line_items,
                customer_email=user.email,
                metadata=metadata,
                success_url=f"{self.base_url}/checkout/complete?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{self.base_url}/checkout?canceled=true",
                currency=self.currency,
            )
        except StorefrontError:
            raise
        except Exception:
            logger.exception("Gateway failed to create checkout session for user %s", user.id)
            raise PaymentGatewayError()

        logger.info("Created checkout session %s for order %s", session.id, order_id)
        return session

    def handle_webhook(self, payload: bytes, signature: str | None) -> Order | None:
        """
        Process a gateway notification.

        Returns:
            The recorded order for a completed session, None for ignored events.

        Raises:
            InvalidWebhookSignatureError: If verification fails.
            InvalidWebhookPayloadError: If a completed session lacks usable metadata.
        """
        event = self.gateway.construct_event(payload, signature)
        if event.type != SESSION_COMPLETED:
            logger.info("Ignoring gateway event %s of type %s", event.id, event.type)
            return None

        metadata = event.session.metadata
        user_id = metadata.get("user_id")
        if not user_id:
            logger.error("Completed session %s has no user_id metadata", event.session.id)
            raise InvalidWebhookPayloadError("missing user id")

        try:
            lines = _decode_lines(metadata.get("cart_items"))
            shipping_info = _decode_shipping_info(metadata.get("shipping_info"))
        except (ValueError, KeyError, TypeError):
            logger.exception("Completed session %s has malformed metadata", event.session.id)
            raise InvalidWebhookPayloadError("malformed metadata")
        if not lines or shipping_info is None:
            raise InvalidWebhookPayloadError("missing cart items or shipping info")

        return self.orders.record_paid_order(
            user_id=user_id,
            lines=lines,
            shipping_info=shipping_info,
            order_id=metadata.get("order_id") or None,
        )

    def session_summary(self, user: User | None, session_id: str) -> PaidSessionSummary:
        """
        Summarize a paid session for the completion page.

        Raises:
            UnauthenticatedError: If user is None.
            PaymentSessionNotFoundError: If unknown or owned by another user.
            PaymentNotCompletedError: If the session is not paid.
        """
        if user is None:
            raise UnauthenticatedError()
        try:
            session = self.gateway.retrieve_session(session_id)
        except StorefrontError:
            raise
        except Exception:
            logger.exception("Gateway failed to retrieve session %s", session_id)
            raise PaymentGatewayError()

        if session.metadata.get("user_id") != user.id:
            raise PaymentSessionNotFoundError(session_id)
        if session.payment_status != "paid":
            raise PaymentNotCompletedError(session_id)

        try:
            lines = _decode_lines(session.metadata.get("cart_items"))
            shipping_info = _decode_shipping_info(session.metadata.get("shipping_info"))
        except (ValueError, KeyError, TypeError):
            logger.exception("Session %s has malformed metadata", session_id)
            raise PaymentGatewayError()

        return PaidSessionSummary(
            session_id=session.id,
            order_id=session.metadata.get("order_id", ""),
            user_id=user.id,
            items=lines,
            shipping_info=shipping_info,
            total_price=session.amount_total,
            payment_status=session.payment_status,
        )
