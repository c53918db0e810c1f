"""Payment gateway contract and the Cashfree implementation."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol

import httpx

from app.core.config import Settings, get_settings
from app.core.enums import GatewayAttemptStatusEnum
from app.shared.exceptions import GatewayUnavailableException
from app.shared.utils import to_money

logger = logging.getLogger(__name__)

_CASHFREE_BASE_URLS = {
    "sandbox": "https://sandbox.cashfree.com/pg",
    "production": "https://api.cashfree.com/pg",
}
_DEFAULT_BUYER_PHONE = "9999999999"


@dataclass(slots=True, frozen=True)
class BuyerInfo:
    email: str
    name: str
    phone: str | None = None


@dataclass(slots=True, frozen=True)
class GatewayOrder:
    gateway_order_id: str
    gateway_internal_id: str | None
    client_session_token: str


@dataclass(slots=True, frozen=True)
class GatewayPaymentAttempt:
    attempt_status: str
    gateway_payment_id: str | None = None
    paid_amount: Decimal | None = None
    method_label: str | None = None
    failure_message: str | None = None


@dataclass(slots=True, frozen=True)
class GatewayCallback:
    """Parsed server-to-server payment notification."""

    gateway_order_id: str
    attempt: GatewayPaymentAttempt | None
    order_amount: Decimal | None = None

    @property
    def claimed_amount(self) -> Decimal | None:
        if self.attempt is not None and self.attempt.paid_amount is not None:
            return self.attempt.paid_amount
        return self.order_amount


class PaymentGateway(Protocol):
    """Operations the payment core needs from a gateway provider."""

    environment: str

    async def create_order(
        self,
        order_ref: str,
        amount: Decimal,
        currency: str,
        buyer: BuyerInfo,
        return_url: str,
        callback_url: str,
    ) -> GatewayOrder:
        """Create remote order; raise GatewayUnavailableException on failure."""

    async def query_order_status(self, gateway_order_id: str) -> list[GatewayPaymentAttempt]:
        """Return all payment attempts recorded for the order."""

    def verify_callback_authenticity(self, timestamp: str, raw_body: bytes, signature: str) -> bool:
        """Return True only for callbacks signed with the shared secret."""

    def parse_callback(self, raw_body: bytes) -> GatewayCallback | None:
        """Parse callback body; None when it is not a usable payment notification."""


def select_decisive_attempt(
    attempts: Sequence[GatewayPaymentAttempt],
) -> GatewayPaymentAttempt | None:
    """Pick the attempt that decides the order: any SUCCESS, else any FAILED."""
    for attempt in attempts:
        if attempt.attempt_status == GatewayAttemptStatusEnum.SUCCESS:
            return attempt
    for attempt in attempts:
        if attempt.attempt_status == GatewayAttemptStatusEnum.FAILED:
            return attempt
    return None


def compute_callback_signature(secret: str, timestamp: str, raw_body: bytes) -> str:
    """Return base64 HMAC-SHA256 over ``timestamp || raw_body``."""
    digest = hmac.new(secret.encode("utf-8"), timestamp.encode("utf-8") + raw_body, hashlib.sha256)
    return base64.b64encode(digest.digest()).decode("ascii")


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _optional_money(value: Any) -> Decimal | None:
    """Absent amounts are None; present but unparseable ones raise ValueError."""
    if value is None or value == "":
        return None
    return to_money(value)


def _attempt_from_payload(payload: dict[str, Any]) -> GatewayPaymentAttempt:
    return GatewayPaymentAttempt(
        attempt_status=str(payload.get("payment_status") or "").upper(),
        gateway_payment_id=_optional_str(payload.get("cf_payment_id")),
        paid_amount=_optional_money(payload.get("payment_amount")),
        method_label=_optional_str(payload.get("payment_group")),
        failure_message=_optional_str(payload.get("payment_message")),
    )


class CashfreeGateway:
    """Cashfree PG client over httpx."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.environment = settings.cashfree_env
        self.base_url = _CASHFREE_BASE_URLS[settings.cashfree_env]
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        if not self.settings.cashfree_app_id or not self.settings.cashfree_secret_key:
            raise GatewayUnavailableException("Payment gateway credentials are not configured")
        return {
            "x-client-id": self.settings.cashfree_app_id,
            "x-client-secret": self.settings.cashfree_secret_key,
            "x-api-version": self.settings.cashfree_api_version,
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
    ) -> Any:
        headers = self._headers()
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.settings.payment_gateway_timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, headers=headers, json=json_body)
        except httpx.HTTPError as exc:
            logger.error("Cashfree %s %s transport error: %s", method, path, exc)
            raise GatewayUnavailableException("Payment gateway is unavailable") from exc

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.is_error:
            message = data.get("message") if isinstance(data, dict) else None
            logger.error(
                "Cashfree %s %s failed with %s: %s",
                method,
                path,
                response.status_code,
                data if data is not None else response.text,
            )
            raise GatewayUnavailableException(message or "Payment gateway request failed")
        if data is None:
            raise GatewayUnavailableException("Payment gateway returned malformed response")
        return data

    async def create_order(
        self,
        order_ref: str,
        amount: Decimal,
        currency: str,
        buyer: BuyerInfo,
        return_url: str,
        callback_url: str,
    ) -> GatewayOrder:
        payload = {
            "order_id": order_ref,
            "order_amount": float(amount),
            "order_currency": currency,
            "customer_details": {
                "customer_id": re.sub(r"[^a-zA-Z0-9]", "_", buyer.email),
                "customer_email": buyer.email,
                "customer_name": buyer.name,
                "customer_phone": buyer.phone or _DEFAULT_BUYER_PHONE,
            },
            "order_meta": {
                "return_url": return_url,
                "notify_url": callback_url,
            },
        }
        data = await self._request("POST", "/orders", json_body=payload)
        session_token = data.get("payment_session_id") if isinstance(data, dict) else None
        if not session_token:
            raise GatewayUnavailableException("Payment gateway did not return a payment session")
        return GatewayOrder(
            gateway_order_id=str(data.get("order_id") or order_ref),
            gateway_internal_id=_optional_str(data.get("cf_order_id")),
            client_session_token=str(session_token),
        )

    async def query_order_status(self, gateway_order_id: str) -> list[GatewayPaymentAttempt]:
        data = await self._request("GET", f"/orders/{gateway_order_id}/payments")
        if not isinstance(data, list):
            raise GatewayUnavailableException("Payment gateway returned malformed payment list")
        try:
            return [_attempt_from_payload(item) for item in data if isinstance(item, dict)]
        except ValueError as exc:
            logger.error("Cashfree payment list for %s has malformed amount: %s", gateway_order_id, exc)
            raise GatewayUnavailableException("Payment gateway returned malformed payment amount") from exc

    def verify_callback_authenticity(self, timestamp: str, raw_body: bytes, signature: str) -> bool:
        secret = self.settings.cashfree_webhook_secret
        if not secret:
            if self.settings.payment_webhook_allow_unsigned and not self.settings.is_production:
                logger.warning("CASHFREE_WEBHOOK_SECRET is not set; accepting unsigned callback")
                return True
            logger.error("CASHFREE_WEBHOOK_SECRET is not set; rejecting callback")
            return False

        expected = compute_callback_signature(secret, timestamp, raw_body)
        return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))

    def parse_callback(self, raw_body: bytes) -> GatewayCallback | None:
        try:
            payload = json.loads(raw_body)
        except ValueError:
            logger.warning("Callback body is not valid JSON")
            return None
        if not isinstance(payload, dict):
            return None

        data = payload.get("data")
        if not isinstance(data, dict):
            return None
        order_data = data.get("order")
        if not isinstance(order_data, dict) or not order_data.get("order_id"):
            return None

        payment_data = data.get("payment")
        try:
            attempt = _attempt_from_payload(payment_data) if isinstance(payment_data, dict) else None
            order_amount = _optional_money(order_data.get("order_amount"))
        except ValueError as exc:
            logger.warning("Callback for order %s has malformed amount: %s", order_data["order_id"], exc)
            return None
        return GatewayCallback(
            gateway_order_id=str(order_data["order_id"]),
            attempt=attempt,
            order_amount=order_amount,
        )


def get_payment_gateway() -> PaymentGateway:
    """Dependency provider for the configured payment gateway."""
    return CashfreeGateway(get_settings())
