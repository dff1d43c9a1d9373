"""PayMongo payment gateway client and webhook signature verification.

Only the three calls the escrow engine needs are wrapped: create a hosted
checkout session, read it back, and refund a captured payment.
See: https://developers.paymongo.com
"""

import asyncio
import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

import httpx

from marketplace.config import settings
from marketplace.errors import GatewayError

logger = logging.getLogger(__name__)

DEFAULT_PAYMENT_METHODS = ["gcash", "paymaya", "card"]


@dataclass
class CheckoutSession:
    id: str
    checkout_url: str
    status: str  # "active" or "expired"; a session is never itself "paid"
    reference_number: str | None = None
    payment_intent_id: str | None = None
    paid_payment_id: str | None = None
    payment_method: str | None = None


@dataclass
class Refund:
    id: str
    status: str
    amount_centavos: int


@dataclass
class CheckoutRequest:
    amount: Decimal
    description: str
    line_item_name: str
    success_url: str
    cancel_url: str
    currency: str = "PHP"
    metadata: dict[str, str] = field(default_factory=dict)
    payment_methods: list[str] = field(default_factory=lambda: list(DEFAULT_PAYMENT_METHODS))


class PaymentGateway(Protocol):
    async def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession: ...

    async def get_checkout_session(self, session_id: str) -> CheckoutSession: ...

    async def create_refund(
        self, payment_id: str, amount: Decimal, reason: str, notes: str | None = None
    ) -> Refund: ...


def to_centavos(amount: Decimal) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _session_from_resource(data: dict) -> CheckoutSession:
    attrs = data.get("attributes", {})
    intent = attrs.get("payment_intent") or {}
    paid = next(
        (p for p in attrs.get("payments") or [] if p.get("attributes", {}).get("status") == "paid"),
        None,
    )
    method = None
    if paid is not None:
        method = (paid["attributes"].get("source") or {}).get("type")
    return CheckoutSession(
        id=data["id"],
        checkout_url=attrs.get("checkout_url", ""),
        status=attrs.get("status", ""),
        reference_number=attrs.get("reference_number"),
        payment_intent_id=intent.get("id"),
        paid_payment_id=paid["id"] if paid is not None else None,
        payment_method=method or attrs.get("payment_method_used"),
    )


class PayMongoGateway:
    """PayMongo REST client on ``httpx``.

    Reads are retried on transport errors and 5xx responses with exponential
    backoff. Writes are retried only when the connection was never
    established, since PayMongo may already have acted on a request that
    timed out mid-flight.
    """

    def __init__(
        self,
        secret_key: str,
        api_url: str = "https://api.paymongo.com/v1",
        timeout: float = 15,
        max_retries: int = 3,
        backoff: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.secret_key = secret_key
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff = backoff
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        token = base64.b64encode(f"{self.secret_key}:".encode()).decode()
        return {
            "Authorization": f"Basic {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request(self, method: str, path: str, body: dict | None = None) -> dict:
        if not self.secret_key:
            raise GatewayError("PayMongo secret key is not configured")

        idempotent = method == "GET"
        attempt = 0
        while True:
            attempt += 1
            try:
                async with httpx.AsyncClient(
                    timeout=self.timeout, transport=self._transport
                ) as client:
                    resp = await client.request(
                        method, f"{self.api_url}{path}", headers=self._headers(), json=body
                    )
            except httpx.ConnectError as e:
                if attempt <= self.max_retries:
                    logger.warning("PayMongo %s %s connect failed (attempt %d): %s", method, path, attempt, e)
                    await asyncio.sleep(self.backoff * 2 ** (attempt - 1))
                    continue
                raise GatewayError("Failed to reach PayMongo") from e
            except httpx.TransportError as e:
                if idempotent and attempt <= self.max_retries:
                    logger.warning("PayMongo %s %s failed (attempt %d): %s", method, path, attempt, e)
                    await asyncio.sleep(self.backoff * 2 ** (attempt - 1))
                    continue
                logger.error("PayMongo %s %s request failed: %s", method, path, e)
                raise GatewayError("PayMongo request failed") from e

            if resp.status_code >= 500 and idempotent and attempt <= self.max_retries:
                logger.warning(
                    "PayMongo %s %s returned %d (attempt %d)", method, path, resp.status_code, attempt
                )
                await asyncio.sleep(self.backoff * 2 ** (attempt - 1))
                continue
            break

        if resp.status_code >= 400:
            detail = None
            try:
                errors = resp.json().get("errors") or []
                if errors:
                    detail = errors[0].get("detail")
            except ValueError:
                pass
            logger.error("PayMongo %s %s returned %d: %s", method, path, resp.status_code, resp.text[:500])
            raise GatewayError(detail or f"PayMongo error {resp.status_code}", resp.status_code)

        return resp.json()

    async def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession:
        payload = {
            "data": {
                "attributes": {
                    "billing": None,
                    "send_email_receipt": False,
                    "show_description": True,
                    "show_line_items": True,
                    "cancel_url": request.cancel_url,
                    "success_url": request.success_url,
                    "description": request.description,
                    "payment_method_types": request.payment_methods,
                    "line_items": [
                        {
                            "currency": request.currency,
                            "amount": to_centavos(request.amount),
                            "description": request.description,
                            "name": request.line_item_name,
                            "quantity": 1,
                        }
                    ],
                    "metadata": request.metadata,
                }
            }
        }
        data = await self._request("POST", "/checkout_sessions", payload)
        return _session_from_resource(data["data"])

    async def get_checkout_session(self, session_id: str) -> CheckoutSession:
        data = await self._request("GET", f"/checkout_sessions/{session_id}")
        return _session_from_resource(data["data"])

    async def create_refund(
        self, payment_id: str, amount: Decimal, reason: str, notes: str | None = None
    ) -> Refund:
        attributes: dict = {
            "payment_id": payment_id,
            "amount": to_centavos(amount),
            "reason": reason,
        }
        if notes:
            attributes["notes"] = notes
        data = await self._request("POST", "/refunds", {"data": {"attributes": attributes}})
        resource = data["data"]
        return Refund(
            id=resource["id"],
            status=resource["attributes"]["status"],
            amount_centavos=resource["attributes"]["amount"],
        )


def get_gateway() -> PayMongoGateway:
    return PayMongoGateway(
        secret_key=settings.paymongo_secret_key,
        api_url=settings.paymongo_api_url,
        timeout=settings.gateway_timeout_seconds,
        max_retries=settings.gateway_max_retries,
        backoff=settings.gateway_retry_backoff_seconds,
    )


# ---------------------------------------------------------------------------
# Webhook signatures
# ---------------------------------------------------------------------------

def parse_signature_header(header: str) -> dict[str, str]:
    """Split ``t=<ts>,te=<test_sig>,li=<live_sig>`` into its fields."""
    parts: dict[str, str] = {}
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if sep and key:
            parts[key] = value
    return parts


def sign_payload(secret: str, timestamp: str, body: bytes | str) -> str:
    """HMAC-SHA256 over ``{timestamp}.{body}``, hex encoded."""
    if isinstance(body, str):
        body = body.encode()
    message = timestamp.encode("utf-8", "replace") + b"." + body
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    raw_body: bytes | str, header: str, secret: str, live: bool
) -> bool:
    """Check a ``Paymongo-Signature`` header.

    ``live`` selects the ``li`` signature, otherwise ``te``. Missing fields or
    an empty secret fail verification.
    """
    if not secret or not header:
        return False
    parts = parse_signature_header(header)
    timestamp = parts.get("t")
    signature = parts.get("li" if live else "te")
    if not timestamp or not signature:
        return False

    # Compare bytes: the header is untrusted and may hold non-ASCII text
    expected = sign_payload(secret, timestamp, raw_body)
    return hmac.compare_digest(expected.encode(), signature.encode("utf-8", "replace"))
