"""Tests for the HTTP surface."""

import base64
import json

import httpx
import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from fastapi.testclient import TestClient

from shroud.encryption import LocalEncryptionProvider, attestation_message
from shroud.facilitator import FacilitatorClient
from shroud.gateway import PaymentGateway
from shroud.ledger import ActivityLedger
from shroud.protocol import HEADER_NAME, REQUIRED_HEADER, RESPONSE_HEADER, ProtectedResource, decode_challenge
from shroud.scheduler import ManualScheduler
from shroud.server import OWNER_HEADER, create_app
from shroud.stealth import EphemeralIdentity, build_signed_payment, encode_stealth_header

MERCHANT = "0x209693Bc6afc0C5328bA36FaF03C514EF312287C"
USDC = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"


def _facilitator_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/verify":
        return httpx.Response(200, json={"valid": True})
    return httpx.Response(200, json={"settled": True, "txSignature": "abc123"})


def _attest(account) -> str:
    signed = account.sign_message(encode_defunct(text=attestation_message(account.address)))
    return "0x" + bytes(signed.signature).hex().removeprefix("0x")


@pytest.fixture
def ledger():
    return ActivityLedger(LocalEncryptionProvider(key=b"\x05" * 32), scheduler=ManualScheduler())


@pytest.fixture
def gateway(ledger):
    facilitator = FacilitatorClient(
        "https://facilitator.example",
        http=httpx.Client(transport=httpx.MockTransport(_facilitator_handler)),
    )
    return PaymentGateway(
        MERCHANT,
        "eip155:84532",
        USDC,
        facilitator,
        ledger=ledger,
        resources=[
            ProtectedResource("/ai/completion", "0.05", "AI text completion", handler=lambda body: {"text": "ok"}),
        ],
    )


@pytest.fixture
def client(gateway):
    return TestClient(create_app(gateway))


def _paid_headers(client: TestClient, path: str, owner: str) -> dict:
    challenge = decode_challenge(client.get(path).headers[REQUIRED_HEADER])
    signed = build_signed_payment(EphemeralIdentity.generate(), challenge)
    return {HEADER_NAME: encode_stealth_header(signed), OWNER_HEADER: owner}


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["ledger"] is True
    assert body["facilitator"]["url"] == "https://facilitator.example"


def test_services(client):
    body = client.get("/x402/services").json()
    assert [s["endpoint"] for s in body["services"]] == ["/ai/completion"]
    assert body["services"][0]["priceRaw"] == "50000"


def test_unpaid_is_402_with_challenge(client):
    response = client.get("/ai/completion")
    assert response.status_code == 402
    assert response.headers["WWW-Authenticate"].startswith("X402 ")
    challenge = decode_challenge(response.headers[REQUIRED_HEADER])
    assert response.json()["paymentRequired"]["paymentId"] == challenge.payment_id


def test_malformed_header_is_400(client):
    response = client.get("/ai/completion", headers={HEADER_NAME: "!!"})
    assert response.status_code == 400
    assert response.json()["error"] == "malformed_payment_header"


def test_paid_request_and_audit_trail(client):
    owner = Account.create()
    response = client.post(
        "/ai/completion", json={"prompt": "hi"}, headers=_paid_headers(client, "/ai/completion", owner.address)
    )
    assert response.status_code == 200
    assert response.json()["data"] == {"text": "ok"}
    receipt = json.loads(base64.b64decode(response.headers[RESPONSE_HEADER]))
    assert receipt["txSignature"] == "abc123"

    audit = client.get(f"/audit/{owner.address}").json()
    assert audit["count"] == 1
    assert "amount" not in audit["entries"][0]
    assert audit["entries"][0]["handle"]

    stats = client.get(f"/audit/{owner.address}/stats").json()
    assert stats["payments"] == 1

    total = client.get(f"/audit/{owner.address}/total").json()
    assert total["payment_count"] == 1

    decrypted = client.post(f"/audit/{owner.address}/decrypt", json={"signature": _attest(owner)}).json()
    assert decrypted["success"] is True
    assert decrypted["entries"][0]["amount"] == 50_000
    assert decrypted["entries"][0]["amount_usdc"] == "0.050000"


def test_decrypt_with_wrong_signature_is_403(client):
    owner = Account.create()
    response = client.post(
        f"/audit/{owner.address}/decrypt", json={"signature": _attest(Account.create())}
    )
    assert response.status_code == 403
    assert response.json()["error"] == "attestation_failed"


def test_pool_balance(client, gateway):
    pool = "0x1111111111111111111111111111111111111111"
    gateway.fund_pool(pool, "3.5", "pool-1")
    body = client.get(f"/pools/{pool}/balance", params={"pool_id": "pool-1"}).json()
    assert body == {"poolAddress": pool, "amount": "3.5", "source": "shield_tx", "trusted": True}


def test_audit_without_ledger_is_404(gateway):
    gateway.ledger = None
    client = TestClient(create_app(gateway))
    assert client.get("/audit/0x1111111111111111111111111111111111111111").status_code == 404


@pytest.mark.parametrize("route", ["", "/stats", "/total"])
def test_audit_rejects_non_address_owner(client, route):
    response = client.get(f"/audit/0xabc_x{route}")
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_owner"


def test_decrypt_rejects_non_address_owner(client):
    response = client.post("/audit/not-an-owner/decrypt", json={"signature": "0x00"})
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_owner"


def test_invalid_owner_header_rejected_before_payment(client, gateway):
    headers = _paid_headers(client, "/ai/completion", "0xabc/x")
    pending = gateway.pending_count
    response = client.post("/ai/completion", json={"prompt": "hi"}, headers=headers)
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_owner"
    assert gateway.pending_count == pending
