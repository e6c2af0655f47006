"""Tests for the settlement facilitator client."""

import json
from decimal import Decimal

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from shroud.facilitator import (
    FacilitatorClient,
    PaymentRequirements,
    base_units_to_usd,
)
from shroud.facilitator_auth import FacilitatorAuth

MERCHANT = "0x209693Bc6afc0C5328bA36FaF03C514EF312287C"


def _requirements() -> PaymentRequirements:
    return PaymentRequirements(
        scheme="exact",
        network="eip155:84532",
        max_amount_required="10000",
        resource="/ai/completion",
        pay_to=MERCHANT,
        asset="0x036CbD53842c5426634e7929541eC2318f3dCF7e",
        description="AI text completion",
    )


def _client(handler, **kwargs) -> FacilitatorClient:
    return FacilitatorClient(
        "https://facilitator.example/",
        http=httpx.Client(transport=httpx.MockTransport(handler)),
        **kwargs,
    )


def test_requirements_wire_shape():
    data = _requirements().to_dict()
    assert data["maxAmountRequired"] == "10000"
    assert data["payTo"] == MERCHANT
    assert data["description"] == "AI text completion"


class TestVerify:
    def test_valid(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"valid": True, "payer": "0xabc", "amount": 10000})

        result = _client(handler).verify("token", _requirements())
        assert result.valid
        assert result.payer == "0xabc"
        assert result.amount == "10000"
        assert seen["path"] == "/verify"
        assert seen["body"]["paymentHeader"] == "token"
        assert seen["body"]["paymentRequirements"]["resource"] == "/ai/completion"
        assert seen["body"]["network"] == "eip155:84532"

    def test_is_valid_alias_and_reason(self):
        client = _client(lambda r: httpx.Response(200, json={"isValid": False, "invalidReason": "bad sig"}))
        result = client.verify("token", _requirements())
        assert not result.valid
        assert result.error == "bad sig"

    def test_non_2xx(self):
        result = _client(lambda r: httpx.Response(503, text="busy")).verify("token", _requirements())
        assert not result.valid
        assert result.error == "Verification failed: 503"

    def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        result = _client(handler).verify("token", _requirements())
        assert not result.valid
        assert result.error.startswith("Facilitator unreachable")

    @pytest.mark.parametrize("body", [b"not json", b"[1, 2]"])
    def test_malformed_body(self, body):
        result = _client(lambda r: httpx.Response(200, content=body)).verify("token", _requirements())
        assert not result.valid
        assert result.error == "Verification failed: malformed response"


class TestSettle:
    def test_settled(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"settled": True, "txSignature": "abc123"})

        result = _client(handler).settle("token", MERCHANT, extra={"paymentId": "p1"})
        assert result.settled
        assert result.tx_signature == "abc123"
        assert result.raw_response == {"settled": True, "txSignature": "abc123"}
        assert seen["body"] == {
            "paymentHeader": "token",
            "merchantAddress": MERCHANT,
            "network": "eip155:84532",
            "paymentId": "p1",
        }

    def test_success_and_transaction_aliases(self):
        client = _client(lambda r: httpx.Response(200, json={"success": True, "transaction": "0xtx"}))
        result = client.settle("token", MERCHANT)
        assert result.settled
        assert result.tx_signature == "0xtx"

    def test_rejected(self):
        result = _client(lambda r: httpx.Response(200, json={"settled": False})).settle("token", MERCHANT)
        assert not result.settled
        assert result.error == "Settlement rejected"

    def test_non_2xx(self):
        result = _client(lambda r: httpx.Response(500)).settle("token", MERCHANT)
        assert not result.settled
        assert result.error == "Settlement failed: 500"

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        result = _client(handler).settle("token", MERCHANT)
        assert not result.settled
        assert "ReadTimeout" in result.error


class TestListAndInfo:
    def test_list_merchants(self):
        merchants = [{"address": MERCHANT, "name": "demo"}]
        assert _client(lambda r: httpx.Response(200, json=merchants)).list_merchants() == merchants

    @pytest.mark.parametrize(
        "response",
        [httpx.Response(500), httpx.Response(200, content=b"{"), httpx.Response(200, json={"a": 1})],
    )
    def test_list_failures_are_empty(self, response):
        assert _client(lambda r: response).list_merchants() == []

    def test_list_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        assert _client(handler).list_merchants() == []

    def test_info(self):
        info = _client(lambda r: httpx.Response(200)).info()
        assert info == {
            "url": "https://facilitator.example",
            "network": "eip155:84532",
            "authenticated": False,
        }


def test_auth_headers_attached():
    key = ec.generate_private_key(ec.SECP256R1())
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    auth = FacilitatorAuth("kid", pem, "https://facilitator.example")
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        seen["ctx"] = request.headers.get("Correlation-Context")
        return httpx.Response(200, json={"valid": True})

    client = _client(handler, auth=auth)
    client.verify("token", _requirements())
    assert seen["auth"].startswith("Bearer ")
    assert "source=shroud" in seen["ctx"]
    assert client.info()["authenticated"] is True


def test_base_units_to_usd_defaults_to_six_decimals():
    assert base_units_to_usd(10_000, "unknown:network", "0xasset") == Decimal("0.01")
