"""
Processor Gateway - PayPal REST API client

`ProcessorGateway` is the interface the billing core depends on;
`PayPalGateway` implements it over the shared async BaseHTTPClient.
Every non-2xx response surfaces as GatewayError, every transport failure
or timeout as a retryable GatewayError.
"""

from __future__ import annotations

import base64
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from FinalRound.config.settings import PayPalConfig, get_settings
from FinalRound.infrastructure.http.base_client import BaseHTTPClient
from FinalRound.observability.logging import LogModule, get_module_logger
from FinalRound.utils.exceptions import ConfigException, GatewayError
from FinalRound.utils.time import parse_timestamp

logger = get_module_logger(LogModule.GATEWAY)

DEFAULT_CANCEL_REASON = "User requested cancellation"
DEFAULT_ORDER_AMOUNT = "100.00"
DEFAULT_ORDER_CURRENCY = "USD"
TOKEN_REFRESH_MARGIN_SECONDS = 60


@dataclass
class ProcessorSubscription:
    id: str
    status: str
    plan_id: Optional[str] = None
    subscriber_email: Optional[str] = None
    next_billing_time: Optional[datetime] = None
    status_update_time: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "ProcessorSubscription":
        subscriber = data.get("subscriber") or {}
        billing_info = data.get("billing_info") or {}
        return cls(
            id=str(data.get("id") or "").strip(),
            status=str(data.get("status") or "").strip().upper(),
            plan_id=str(data.get("plan_id") or "").strip() or None,
            subscriber_email=subscriber.get("email_address") or None,
            next_billing_time=parse_timestamp(billing_info.get("next_billing_time")),
            status_update_time=parse_timestamp(data.get("status_update_time") or data.get("update_time")),
            raw=data,
        )


@dataclass
class RefundResult:
    id: str
    status: str
    amount_value: Optional[Decimal] = None
    currency: Optional[str] = None
    create_time: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookSignature:
    """Transport-level headers PayPal attaches to every webhook delivery."""
    transmission_id: str = ""
    transmission_time: str = ""
    transmission_sig: str = ""
    cert_url: str = ""
    auth_algo: str = ""

    HEADER_NAMES = {
        "transmission_id": "paypal-transmission-id",
        "transmission_time": "paypal-transmission-time",
        "transmission_sig": "paypal-transmission-sig",
        "cert_url": "paypal-cert-url",
        "auth_algo": "paypal-auth-algo",
    }

    @classmethod
    def from_headers(cls, headers: Any) -> "WebhookSignature":
        return cls(**{
            attr: str(headers.get(name) or "").strip()
            for attr, name in cls.HEADER_NAMES.items()
        })

    def is_complete(self) -> bool:
        return all([self.transmission_id, self.transmission_time, self.transmission_sig, self.cert_url, self.auth_algo])


class ProcessorGateway(ABC):
    """Operations the billing core consumes from the payment processor."""

    @abstractmethod
    async def fetch_subscription(self, subscription_id: str) -> ProcessorSubscription:
        ...

    @abstractmethod
    async def verify_webhook_signature(self, signature: WebhookSignature, event: Dict[str, Any]) -> bool:
        ...

    @abstractmethod
    async def cancel_subscription(self, subscription_id: str, reason: Optional[str] = None) -> None:
        ...

    @abstractmethod
    async def refund_capture(
        self,
        capture_id: str,
        amount: Optional[Decimal] = None,
        currency_code: str = DEFAULT_ORDER_CURRENCY,
        note: Optional[str] = None,
    ) -> RefundResult:
        ...

    @abstractmethod
    async def create_order(
        self,
        cart: Optional[List[Dict[str, Any]]] = None,
        custom_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def capture_order(self, order_id: str) -> Dict[str, Any]:
        ...

    async def aclose(self) -> None:
        return None


def _require_id(value: str, name: str) -> str:
    value = str(value or "").strip()
    if not value:
        raise ValueError(f"{name} is required")
    return quote(value, safe="")


def _request_id_header() -> Dict[str, str]:
    """PayPal-Request-Id for one logical POST; PayPal replays the first result for a repeated id."""
    return {"PayPal-Request-Id": str(uuid.uuid4())}


class PayPalGateway(BaseHTTPClient, ProcessorGateway):
    """PayPal REST client (Subscriptions v1, Orders v2, Payments v2, Notifications v1)."""

    def __init__(
        self,
        config: Optional[PayPalConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or get_settings().paypal
        super().__init__(
            timeout=self.config.timeout,
            retries=self.config.retries,
            transport=transport,
        )
        self._access_token: Optional[str] = None
        self._token_expires_at: float = 0.0

    def _get_base_url(self) -> str:
        return self.config.base_url

    # ==================== auth ====================

    async def _get_access_token(self) -> str:
        now = time.monotonic()
        if self._access_token and self._token_expires_at - now > TOKEN_REFRESH_MARGIN_SECONDS:
            return self._access_token

        if not self.config.client_id or not self.config.client_secret:
            raise ConfigException("PayPal is not configured (PAYPAL_CLIENT_ID / PAYPAL_CLIENT_SECRET missing)")

        basic = base64.b64encode(
            f"{self.config.client_id}:{self.config.client_secret}".encode("utf-8")
        ).decode("ascii")
        response = await self._send(
            "POST",
            "/v1/oauth2/token",
            headers={
                "Authorization": f"Basic {basic}",
                "Content-Type": "application/x-www-form-urlencoded",
            },
            content="grant_type=client_credentials",
        )
        data = self._json(response)
        token = str(data.get("access_token") or "")
        if not token:
            raise GatewayError("PayPal token error (missing access_token)", status_code=response.status_code)

        self._access_token = token
        self._token_expires_at = now + float(data.get("expires_in") or 0)
        logger.debug("Obtained PayPal access token (expires_in=%s)", data.get("expires_in"))
        return token

    # ==================== transport ====================

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self.arequest(method, path, **kwargs)
        except httpx.TransportError as e:
            raise GatewayError(f"PayPal unreachable: {e}", retryable=True) from e

        if response.is_success:
            return response

        data = self._json(response)
        message = (
            data.get("message")
            or data.get("error_description")
            or data.get("name")
            or data.get("error")
            or f"PayPal API error (HTTP {response.status_code})"
        )
        logger.warning("PayPal %s %s failed: HTTP %s %s", method, path, response.status_code, message)
        raise GatewayError(
            str(message),
            status_code=response.status_code,
            retryable=response.status_code >= 500,
            details={"debug_id": data.get("debug_id"), "path": path},
        )

    async def _api(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        token = await self._get_access_token()
        kwargs: Dict[str, Any] = {"headers": {"Authorization": f"Bearer {token}", **(headers or {})}}
        if body is not None:
            kwargs["json"] = body
        response = await self._send(method, path, **kwargs)
        return self._json(response)

    # ==================== operations ====================

    async def fetch_subscription(self, subscription_id: str) -> ProcessorSubscription:
        path = f"/v1/billing/subscriptions/{_require_id(subscription_id, 'subscriptionId')}"
        return ProcessorSubscription.from_payload(await self._api("GET", path))

    async def verify_webhook_signature(self, signature: WebhookSignature, event: Dict[str, Any]) -> bool:
        if not self.config.webhook_id:
            raise ConfigException("PAYPAL_WEBHOOK_ID is required to verify webhooks")
        data = await self._api(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            {
                "auth_algo": signature.auth_algo,
                "cert_url": signature.cert_url,
                "transmission_id": signature.transmission_id,
                "transmission_sig": signature.transmission_sig,
                "transmission_time": signature.transmission_time,
                "webhook_id": self.config.webhook_id,
                "webhook_event": event,
            },
        )
        return str(data.get("verification_status") or "").upper() == "SUCCESS"

    async def cancel_subscription(self, subscription_id: str, reason: Optional[str] = None) -> None:
        path = f"/v1/billing/subscriptions/{_require_id(subscription_id, 'subscriptionId')}/cancel"
        await self._api("POST", path, {"reason": reason or DEFAULT_CANCEL_REASON})
        logger.info("Cancelled PayPal subscription %s", subscription_id)

    async def refund_capture(
        self,
        capture_id: str,
        amount: Optional[Decimal] = None,
        currency_code: str = DEFAULT_ORDER_CURRENCY,
        note: Optional[str] = None,
    ) -> RefundResult:
        path = f"/v2/payments/captures/{_require_id(capture_id, 'captureId')}/refund"
        body: Dict[str, Any] = {}
        if amount is not None:
            body["amount"] = {"value": f"{Decimal(amount):.2f}", "currency_code": currency_code.upper()}
        if note:
            body["note_to_payer"] = note
        # full representation includes create_time, used for the ledger id;
        # one request id per refund, reused by every retry
        headers = {"Prefer": "return=representation", **_request_id_header()}
        data = await self._api("POST", path, body, headers=headers)
        refunded = data.get("amount") or {}
        value = refunded.get("value")
        return RefundResult(
            id=str(data.get("id") or ""),
            status=str(data.get("status") or ""),
            amount_value=Decimal(str(value)) if value is not None else (Decimal(amount) if amount is not None else None),
            currency=refunded.get("currency_code") or currency_code.upper(),
            create_time=parse_timestamp(data.get("create_time")),
            raw=data,
        )

    async def create_order(
        self,
        cart: Optional[List[Dict[str, Any]]] = None,
        custom_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a CAPTURE-intent order priced from the first cart item.

        `custom_id` is echoed back on the capture webhook and attributes the
        payment to a user.
        """
        first = cart[0] if cart else {}
        amount = str(first.get("amount") or DEFAULT_ORDER_AMOUNT)
        currency = str(first.get("currency_code") or DEFAULT_ORDER_CURRENCY).upper()
        unit: Dict[str, Any] = {"amount": {"currency_code": currency, "value": amount}}
        if custom_id:
            unit["custom_id"] = custom_id
        order = await self._api(
            "POST",
            "/v2/checkout/orders",
            {"intent": "CAPTURE", "purchase_units": [unit]},
            headers=_request_id_header(),
        )
        logger.info("Created PayPal order %s (%s %s)", order.get("id"), amount, currency)
        return order

    async def capture_order(self, order_id: str) -> Dict[str, Any]:
        path = f"/v2/checkout/orders/{_require_id(order_id, 'orderId')}/capture"
        return await self._api("POST", path, headers=_request_id_header())


__all__ = [
    "DEFAULT_CANCEL_REASON",
    "PayPalGateway",
    "ProcessorGateway",
    "ProcessorSubscription",
    "RefundResult",
    "WebhookSignature",
]
