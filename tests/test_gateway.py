"""Tests for the PayMongo client and webhook signature verification."""

import json
from decimal import Decimal

import httpx
import pytest

from marketplace.errors import GatewayError
from marketplace.services.gateway import (
    CheckoutRequest,
    PayMongoGateway,
    parse_signature_header,
    sign_payload,
    to_centavos,
    verify_webhook_signature,
)

SECRET = "whsk_test_secret"
BODY = '{"data":{"id":"evt_1"}}'


def _gateway(handler, max_retries: int = 2) -> PayMongoGateway:  # type: ignore[no-untyped-def]
    return PayMongoGateway(
        secret_key="sk_test_123",
        api_url="https://api.paymongo.test/v1",
        max_retries=max_retries,
        backoff=0,
        transport=httpx.MockTransport(handler),
    )


def _session_resource(paid: bool = False) -> dict:
    payments = []
    if paid:
        payments.append({"id": "pay_1", "attributes": {"status": "paid", "source": {"type": "gcash"}}})
    return {
        "data": {
            "id": "cs_1",
            "attributes": {
                "checkout_url": "https://checkout.paymongo.test/cs_1",
                "status": "active",
                "reference_number": "REF1",
                "payment_intent": {"id": "pi_1"},
                "payments": payments,
            },
        }
    }


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------

def test_parse_signature_header() -> None:
    assert parse_signature_header("t=1700000000,te=abc,li=") == {"t": "1700000000", "te": "abc", "li": ""}


def test_valid_test_signature() -> None:
    sig = sign_payload(SECRET, "1700000000", BODY)
    header = f"t=1700000000,te={sig},li="
    assert verify_webhook_signature(BODY.encode(), header, SECRET, live=False)


def test_live_mode_uses_live_signature() -> None:
    sig = sign_payload(SECRET, "1700000000", BODY)
    assert not verify_webhook_signature(BODY, f"t=1700000000,te={sig},li=", SECRET, live=True)
    assert verify_webhook_signature(BODY, f"t=1700000000,te=,li={sig}", SECRET, live=True)


def test_tampered_body_rejected() -> None:
    sig = sign_payload(SECRET, "1700000000", BODY)
    assert not verify_webhook_signature(BODY.replace("evt_1", "evt_2"), f"t=1700000000,te={sig}", SECRET, live=False)


def test_missing_fields_rejected() -> None:
    sig = sign_payload(SECRET, "1700000000", BODY)
    assert not verify_webhook_signature(BODY, f"te={sig}", SECRET, live=False)
    assert not verify_webhook_signature(BODY, "t=1700000000", SECRET, live=False)
    assert not verify_webhook_signature(BODY, "", SECRET, live=False)
    assert not verify_webhook_signature(BODY, f"t=1700000000,te={sig}", "", live=False)


def test_non_utf8_body_fails_verification() -> None:
    assert not verify_webhook_signature(b"\xff\xfe", "t=1,te=abc", SECRET, live=False)


def test_non_utf8_body_with_valid_signature_verifies() -> None:
    body = b"\xff\xfe{}"
    sig = sign_payload(SECRET, "1", body)
    assert verify_webhook_signature(body, f"t=1,te={sig}", SECRET, live=False)


def test_non_ascii_signature_fails_verification() -> None:
    assert not verify_webhook_signature(BODY, "t=1,te=\u00e9abc", SECRET, live=False)
    sig = sign_payload(SECRET, "1", BODY)
    assert not verify_webhook_signature(BODY, f"t=1,te=\u00e9{sig}", SECRET, live=False)


def test_to_centavos() -> None:
    assert to_centavos(Decimal("1500.00")) == 150000
    assert to_centavos(Decimal("0.015")) == 2


# ---------------------------------------------------------------------------
# REST client
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_checkout_session_payload() -> None:
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["url"] = str(request.url)
        captured["auth"] = request.headers["authorization"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json=_session_resource())

    session = await _gateway(handler).create_checkout_session(CheckoutRequest(
        amount=Decimal("1500.00"),
        description="Escrow for: Fix sink",
        line_item_name="Fix sink",
        success_url="https://app.test/ok",
        cancel_url="https://app.test/cancel",
        metadata={"jobId": "j1"},
    ))

    assert session.id == "cs_1"
    assert session.checkout_url == "https://checkout.paymongo.test/cs_1"
    assert session.payment_intent_id == "pi_1"
    assert captured["method"] == "POST"
    assert captured["url"] == "https://api.paymongo.test/v1/checkout_sessions"
    assert captured["auth"].startswith("Basic ")
    attrs = captured["body"]["data"]["attributes"]
    assert attrs["line_items"][0]["amount"] == 150000
    assert attrs["line_items"][0]["currency"] == "PHP"
    assert attrs["metadata"] == {"jobId": "j1"}


@pytest.mark.asyncio
async def test_get_checkout_session_reads_paid_payment() -> None:
    gateway = _gateway(lambda request: httpx.Response(200, json=_session_resource(paid=True)))

    session = await gateway.get_checkout_session("cs_1")

    assert session.status == "active"
    assert session.paid_payment_id == "pay_1"
    assert session.payment_method == "gcash"


@pytest.mark.asyncio
async def test_get_retries_server_errors() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] < 3:
            return httpx.Response(503, json={"errors": [{"detail": "unavailable"}]})
        return httpx.Response(200, json=_session_resource())

    session = await _gateway(handler, max_retries=2).get_checkout_session("cs_1")

    assert session.id == "cs_1"
    assert calls["n"] == 3


@pytest.mark.asyncio
async def test_get_gives_up_after_max_retries() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(502, json={"errors": [{"detail": "bad gateway"}]})

    with pytest.raises(GatewayError) as exc:
        await _gateway(handler, max_retries=2).get_checkout_session("cs_1")
    assert exc.value.status_code == 502
    assert str(exc.value) == "bad gateway"
    assert calls["n"] == 3


@pytest.mark.asyncio
async def test_post_not_retried_on_server_error() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(500, json={"errors": [{"detail": "internal"}]})

    with pytest.raises(GatewayError):
        await _gateway(handler).create_refund("pay_1", Decimal("100"), "requested_by_customer")
    assert calls["n"] == 1


@pytest.mark.asyncio
async def test_post_retried_on_connect_error() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"data": {"id": "ref_1", "attributes": {"status": "pending", "amount": 10000}}})

    refund = await _gateway(handler).create_refund("pay_1", Decimal("100"), "requested_by_customer")

    assert refund.id == "ref_1"
    assert refund.amount_centavos == 10000
    assert calls["n"] == 2


@pytest.mark.asyncio
async def test_client_error_surfaces_detail() -> None:
    gateway = _gateway(
        lambda request: httpx.Response(400, json={"errors": [{"code": "parameter_invalid", "detail": "amount is invalid"}]})
    )
    with pytest.raises(GatewayError) as exc:
        await gateway.create_refund("pay_1", Decimal("-1"), "requested_by_customer")
    assert exc.value.status_code == 400
    assert str(exc.value) == "amount is invalid"


@pytest.mark.asyncio
async def test_missing_secret_key_fails_fast() -> None:
    gateway = PayMongoGateway(secret_key="", transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    with pytest.raises(GatewayError):
        await gateway.get_checkout_session("cs_1")
