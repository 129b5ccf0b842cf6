from __future__ import annotations
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple, TypedDict
import base64
import hashlib
import hmac
import json
import logging
import time
import uuid

import stripe
from starlette.concurrency import run_in_threadpool

from .config import Settings
from .errors import UpstreamError, ValidationError
from .helpers import ct_equal

logger = logging.getLogger(__name__)


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreateSessionResult(TypedDict):
    payment_session_id: str
    redirect_url: str


class SessionLine(TypedDict):
    name: str
    description: Optional[str]
    unit_amount: int
    quantity: int


class PaymentAdapter(ABC):
    name: str = ""

    @abstractmethod
    async def create_session(
        self, order_id: str, customer_email: str, lines: List[SessionLine]
    ) -> CreateSessionResult: ...

    # raises ValidationError when the signature does not check out
    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # "succeeded" | "failed" | "canceled" | "ignored"
    @abstractmethod
    def event_kind(self, event: dict) -> str:
        ...

    # (order_id, idempotency_key)
    @abstractmethod
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        ...

    def payment_reference(self, event: dict) -> Optional[str]:
        return None


def _parse_json(payload: bytes) -> dict:
    try:
        event = json.loads(payload.decode())
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationError("Invalid JSON")
    if not isinstance(event, dict):
        raise ValidationError("Invalid JSON")
    return event


# ----------------------------
# MockPay implementation
# ----------------------------
MOCK_SIGNATURE_HEADER = "x-mockpay-signature"


class MockPay(PaymentAdapter):
    name = "mock"

    def __init__(self, secret: str, base_url: str = "", currency="usd"):
        self.secret = secret
        self.base_url = base_url.rstrip("/")
        self.currency = currency

    async def create_session(
        self, order_id: str, customer_email: str, lines: List[SessionLine]
    ) -> CreateSessionResult:
        psid = f"mock_{uuid.uuid4().hex}"
        redirect_url = f"{self.base_url}/mockpay/{psid}"
        return {"payment_session_id": psid, "redirect_url": redirect_url}

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def build_event(
        self, kind: str, psid: str, order_id: str, amount: int
    ) -> dict:
        return {
            "type": f"payment.{kind}",
            "payment_session_id": psid,
            "order_id": order_id,
            "payment_reference": f"mockpi_{uuid.uuid4().hex[:16]}",
            "amount": amount,
            "currency": self.currency,
            "created_at": int(time.time()),
            "idempotency_key": f"evt_{uuid.uuid4().hex}",
        }

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        # no secret configured: development mode, accept unsigned bodies
        if self.secret:
            sig = headers.get(MOCK_SIGNATURE_HEADER)
            if not sig or not ct_equal(self.sign(payload), sig):
                raise ValidationError("Invalid signature")
        return _parse_json(payload)

    def event_kind(self, event: dict) -> str:
        kind = event.get("type", "").split(".")[-1]
        if kind in ("succeeded", "failed", "canceled"):
            return kind
        return "ignored"

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        return (
                event.get("order_id", ""),
                event.get("idempotency_key")
        )

    def payment_reference(self, event: dict) -> Optional[str]:
        return event.get("payment_reference")


# ----------------------------
# Stripe Checkout implementation
# ----------------------------
STRIPE_KINDS = {
    "checkout.session.completed": "succeeded",
    "checkout.session.async_payment_succeeded": "succeeded",
    "checkout.session.async_payment_failed": "failed",
    "checkout.session.expired": "canceled",
}


class StripePay(PaymentAdapter):
    name = "stripe"

    def __init__(self, secret_key: str, webhook_secret: str,
                 base_url: str, currency: str = "usd"):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.base_url = base_url.rstrip("/")
        self.currency = currency

    async def create_session(
        self, order_id: str, customer_email: str, lines: List[SessionLine]
    ) -> CreateSessionResult:
        params = {
            "payment_method_types": ["card"],
            "mode": "payment",
            "customer_email": customer_email,
            "line_items": [
                {
                    "price_data": {
                        "currency": self.currency,
                        "product_data": {
                            k: v for k, v in (
                                ("name", ln["name"]),
                                ("description", ln.get("description")),
                            ) if v
                        },
                        "unit_amount": ln["unit_amount"],
                    },
                    "quantity": ln["quantity"],
                }
                for ln in lines
            ],
            "success_url": (
                f"{self.base_url}/success?session_id={{CHECKOUT_SESSION_ID}}"
            ),
            "cancel_url": f"{self.base_url}/cancel?order_id={order_id}",
            "metadata": {"order_id": order_id},
        }
        try:
            session = await run_in_threadpool(
                stripe.checkout.Session.create,
                api_key=self.secret_key, **params
            )
        except stripe.StripeError as e:
            logger.error("stripe session for order %s failed: %s",
                         order_id, e)
            raise UpstreamError("Payment provider unavailable") from e
        return {"payment_session_id": session.id, "redirect_url": session.url}

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        if self.webhook_secret:
            sig = headers.get("stripe-signature", "")
            try:
                stripe.Webhook.construct_event(
                    payload, sig, self.webhook_secret
                )
            except ValueError:
                raise ValidationError("Invalid payload")
            except stripe.SignatureVerificationError:
                raise ValidationError("Invalid signature")
        return _parse_json(payload)

    @staticmethod
    def _session(event: dict) -> dict:
        return (event.get("data") or {}).get("object") or {}

    def event_kind(self, event: dict) -> str:
        return STRIPE_KINDS.get(event.get("type", ""), "ignored")

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        metadata = self._session(event).get("metadata") or {}
        return metadata.get("order_id", ""), event.get("id")

    def payment_reference(self, event: dict) -> Optional[str]:
        return self._session(event).get("payment_intent")


def new_adapter(settings: Settings) -> PaymentAdapter:
    if settings.payment_gateway == "stripe":
        return StripePay(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            base_url=settings.base_url,
            currency=settings.currency,
        )
    if settings.payment_gateway == "mock":
        return MockPay(
            secret=settings.mock_secret,
            base_url=settings.base_url,
            currency=settings.currency,
        )
    raise RuntimeError(f"unknown payment gateway: {settings.payment_gateway}")
