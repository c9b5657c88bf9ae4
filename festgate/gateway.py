from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple, TypedDict
import base64
import hashlib
import hmac
import uuid

import httpx
import orjson
import structlog

from .config import (
    MOCK_SECRET, PAYMENT_GATEWAY, RAZORPAY_BASE_URL, RAZORPAY_KEY_ID,
    RAZORPAY_KEY_SECRET, RAZORPAY_WEBHOOK_SECRET,
)
from .errors import GatewayError, NotFound, SignatureInvalid
from .helpers import ct_equal, hmac_sha256_hex, now_ts
from .infra.timings import timeit

logger = structlog.get_logger(__name__)


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class GatewayOrder(TypedDict):
    id: str
    amount: int
    currency: str
    receipt: str
    status: str


class PaymentGateway(ABC):
    name = "gateway"
    key_id = ""

    @abstractmethod
    async def create_order(
        self, amount: int, currency: str, receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> GatewayOrder: ...

    @abstractmethod
    def verify_payment_signature(
        self, order_id: str, payment_id: str, signature: str
    ) -> bool: ...

    # raises SignatureInvalid
    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # ("paid" | "attempted" | "created" | "failed", payment_id | None)
    @abstractmethod
    async def fetch_order_status(
        self, order_id: str
    ) -> Tuple[str, Optional[str]]: ...

    async def aclose(self) -> None:
        return None

    # "captured" | "failed" | "authorized" | ...
    def event_kind(self, event: dict) -> str:
        return (event.get("event") or "").split(".")[-1]

    # (order_id, payment_id)
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        entity = (
            ((event.get("payload") or {}).get("payment") or {})
            .get("entity") or {}
        )
        return entity.get("order_id", ""), entity.get("id")


def _payment_event(kind: str, order_id: str, payment_id: str,
                   amount: int, currency: str) -> dict:
    return {
        "event": f"payment.{kind}",
        "created_at": int(now_ts()),
        "payload": {
            "payment": {
                "entity": {
                    "id": payment_id,
                    "order_id": order_id,
                    "amount": amount,
                    "currency": currency,
                    "status": kind,
                }
            }
        },
    }


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentGateway):
    """In-process gateway for development and tests.

    Orders live in a dict; ``emit`` plays the part of the hosted checkout
    and produces both a signed webhook body and the client-side
    ``(order_id, payment_id, signature)`` triple.
    """
    name = "mock"
    key_id = "mock_key"

    def __init__(self, secret: str = MOCK_SECRET) -> None:
        self.secret = secret
        self.orders: Dict[str, Dict[str, Any]] = {}

    async def create_order(self, amount, currency, receipt, notes=None):
        order_id = f"order_mock_{uuid.uuid4().hex[:14]}"
        self.orders[order_id] = {
            "id": order_id,
            "amount": int(amount),
            "currency": currency,
            "receipt": receipt,
            "notes": dict(notes or {}),
            "status": "created",
            "payment_id": None,
        }
        return {
            "id": order_id, "amount": int(amount), "currency": currency,
            "receipt": receipt, "status": "created",
        }

    def sign_payment(self, order_id: str, payment_id: str) -> str:
        return hmac_sha256_hex(self.secret, f"{order_id}|{payment_id}")

    def sign_webhook(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def verify_payment_signature(self, order_id, payment_id, signature):
        if not signature:
            return False
        return ct_equal(self.sign_payment(order_id, payment_id), signature)

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-mockpay-signature")
        if not sig or not ct_equal(self.sign_webhook(payload), sig):
            raise SignatureInvalid("invalid webhook signature")
        try:
            return orjson.loads(payload)
        except orjson.JSONDecodeError:
            raise SignatureInvalid("invalid webhook body")

    async def fetch_order_status(self, order_id):
        o = self.orders.get(order_id)
        if o is None:
            raise GatewayError(f"unknown order {order_id}")
        return o["status"], o["payment_id"]

    def emit(self, order_id: str, kind: str) -> Dict[str, Any]:
        """Settle an order as ``captured`` or ``failed``."""
        o = self.orders.get(order_id)
        if o is None:
            raise NotFound("order not found")
        payment_id = o["payment_id"] or f"pay_mock_{uuid.uuid4().hex[:14]}"
        o["payment_id"] = payment_id
        o["status"] = "paid" if kind == "captured" else "failed"

        event = _payment_event(kind, order_id, payment_id,
                               o["amount"], o["currency"])
        payload = orjson.dumps(event)
        return {
            "payload": payload,
            "headers": {
                "x-mockpay-signature": self.sign_webhook(payload),
                "content-type": "application/json",
            },
            "checkout": {
                "razorpay_order_id": order_id,
                "razorpay_payment_id": payment_id,
                "razorpay_signature": self.sign_payment(order_id,
                                                        payment_id),
            },
        }


# ----------------------------
# Razorpay implementation
# ----------------------------
class Razorpay(PaymentGateway):
    name = "razorpay"

    def __init__(
        self,
        key_id: str = RAZORPAY_KEY_ID,
        key_secret: str = RAZORPAY_KEY_SECRET,
        webhook_secret: str = RAZORPAY_WEBHOOK_SECRET,
        base_url: str = RAZORPAY_BASE_URL,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.http = http or httpx.AsyncClient(
            base_url=base_url,
            auth=(key_id, key_secret),
            timeout=10.0,
        )

    async def aclose(self) -> None:
        await self.http.aclose()

    async def _call(self, method: str, path: str, **kw) -> dict:
        try:
            async with timeit(f"gateway.{method.lower()}"):
                resp = await self.http.request(method, path, **kw)
        except httpx.HTTPError as e:
            logger.error("gateway_unreachable", path=path, error=str(e))
            raise GatewayError("payment gateway unreachable")
        if resp.status_code >= 400:
            logger.error("gateway_error", path=path,
                         status=resp.status_code, body=resp.text[:500])
            raise GatewayError(
                "payment gateway rejected the request",
                {"status": resp.status_code},
            )
        return resp.json()

    async def create_order(self, amount, currency, receipt, notes=None):
        body = await self._call("POST", "/orders", json={
            "amount": int(amount),
            "currency": currency,
            "receipt": receipt[:40],
            "notes": dict(notes or {}),
        })
        return {
            "id": body["id"],
            "amount": int(body.get("amount", amount)),
            "currency": body.get("currency", currency),
            "receipt": body.get("receipt", receipt),
            "status": body.get("status", "created"),
        }

    def verify_payment_signature(self, order_id, payment_id, signature):
        if not signature or not self.key_secret:
            return False
        expected = hmac_sha256_hex(self.key_secret,
                                   f"{order_id}|{payment_id}")
        return ct_equal(expected, signature)

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-razorpay-signature")
        if not sig or not self.webhook_secret:
            raise SignatureInvalid("invalid webhook signature")
        if not ct_equal(hmac_sha256_hex(self.webhook_secret, payload), sig):
            raise SignatureInvalid("invalid webhook signature")
        try:
            return orjson.loads(payload)
        except orjson.JSONDecodeError:
            raise SignatureInvalid("invalid webhook body")

    async def fetch_order_status(self, order_id):
        body = await self._call("GET", f"/orders/{order_id}/payments")
        items = body.get("items") or []
        for p in items:
            if p.get("status") == "captured":
                return "paid", p.get("id")
        if items and all(p.get("status") == "failed" for p in items):
            return "failed", items[-1].get("id")
        return ("attempted" if items else "created"), None


def make_gateway(name: str = PAYMENT_GATEWAY) -> PaymentGateway:
    if name == "razorpay":
        return Razorpay()
    return MockPay()
