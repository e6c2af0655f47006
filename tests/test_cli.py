"""CLI tests."""

import base64
import json

import pytest
from click.testing import CliRunner
from eth_account import Account

from shroud.cli import _build_ledger, main
from shroud.config import (
    SHROUD_ENCRYPTION_KEY_PATH_ENV,
    SHROUD_ENCRYPTION_URL_ENV,
    SHROUD_LEDGER_DIR_ENV,
    GatewayConfig,
)
from shroud.encryption import SHROUD_ENCRYPTION_KEY_ENV
from shroud.ledger import Activity, ActivityKind
from shroud.protocol import PaymentHeader, encode_header

MERCHANT = "0x209693Bc6afc0C5328bA36FaF03C514EF312287C"


@pytest.fixture
def ledger_env(tmp_path, monkeypatch):
    monkeypatch.setenv(SHROUD_LEDGER_DIR_ENV, str(tmp_path / "ledger"))
    monkeypatch.setenv(SHROUD_ENCRYPTION_KEY_PATH_ENV, str(tmp_path / "secrets" / "ledger.key"))
    monkeypatch.delenv(SHROUD_ENCRYPTION_URL_ENV, raising=False)
    monkeypatch.delenv(SHROUD_ENCRYPTION_KEY_ENV, raising=False)
    return tmp_path


@pytest.fixture
def owner(ledger_env):
    account = Account.create()
    ledger = _build_ledger(GatewayConfig.from_env())
    ledger.append(
        account.address,
        Activity(kind=ActivityKind.AGENT_PAYMENT, amount=50_000, resource="/ai/completion", tx_signature="abc123"),
    )
    ledger.append(account.address, Activity(kind=ActivityKind.PAYMENT_CONFIRMED))
    ledger.close()
    return account


def test_challenge_prints_402_headers():
    result = CliRunner().invoke(main, ["challenge", "/ai/image", "--pay-to", MERCHANT])
    assert result.exit_code == 0
    data = json.loads(result.output)
    assert data["status"] == 402
    assert data["challenge"]["maxAmountRequired"] == "0.05"
    assert data["challenge"]["payTo"] == MERCHANT
    assert "X-Payment-Required" in data["headers"]


def test_challenge_unknown_resource():
    result = CliRunner().invoke(main, ["challenge", "/nope", "--pay-to", MERCHANT])
    assert result.exit_code != 0
    assert "Unknown resource" in result.output


def test_decode_header():
    token = encode_header(PaymentHeader(signature="0xsig", payment_id="p1", payer="0xpayer", timestamp=5))
    result = CliRunner().invoke(main, ["decode-header", token])
    assert result.exit_code == 0
    assert json.loads(result.output)["paymentId"] == "p1"


def test_decode_header_rejects_missing_fields():
    token = base64.b64encode(json.dumps({"paymentId": "p1"}).encode()).decode()
    result = CliRunner().invoke(main, ["decode-header", token])
    assert result.exit_code != 0
    assert "signature" in result.output


def test_identity_new_hides_key_by_default():
    result = CliRunner().invoke(main, ["identity", "new"])
    assert result.exit_code == 0
    assert result.output.startswith("Address: 0x")
    assert "Key:" not in result.output

    shown = CliRunner().invoke(main, ["identity", "new", "--show-key"])
    assert "Key:" in shown.output


def test_ledger_list_is_masked(owner):
    result = CliRunner().invoke(main, ["ledger", "list", owner.address, "--json-output"])
    assert result.exit_code == 0
    entries = json.loads(result.output)
    assert [e["kind"] for e in entries] == ["payment_confirmed", "agent_payment"]
    assert all("amount" not in e for e in entries)


def test_ledger_list_empty(ledger_env):
    result = CliRunner().invoke(main, ["ledger", "list", Account.create().address])
    assert result.exit_code == 0
    assert "No activity recorded." in result.output


def test_ledger_stats(owner):
    result = CliRunner().invoke(main, ["ledger", "stats", owner.address])
    assert json.loads(result.output) == {"total": 2, "payments": 1, "confirmations": 1}


def test_ledger_total_prints_handle_only(owner):
    result = CliRunner().invoke(main, ["ledger", "total", owner.address])
    assert result.exit_code == 0
    data = json.loads(result.output)
    assert data["payment_count"] == 1
    assert data["handle"]


def test_ledger_decrypt_rejects_raw_key_on_argv(ledger_env):
    owner = Account.create()
    result = CliRunner().invoke(main, ["ledger", "decrypt", "--owner-key", owner.key.hex()])
    assert result.exit_code != 0
    assert "Refusing --owner-key from argv" in result.output


def test_ledger_decrypt_from_prompt(owner):
    result = CliRunner().invoke(main, ["ledger", "decrypt"], input=owner.key.hex() + "\n")
    assert result.exit_code == 0
    assert "agent_payment: 0.050000 USDC" in result.output
    assert "Proof: attest-" in result.output


def test_ledger_decrypt_with_other_key_sees_nothing(owner):
    intruder = Account.create()
    result = CliRunner().invoke(main, ["ledger", "decrypt"], input=intruder.key.hex() + "\n")
    assert result.exit_code == 0
    assert "No activity recorded." in result.output


def test_ledger_decrypt_invalid_key(ledger_env):
    result = CliRunner().invoke(main, ["ledger", "decrypt"], input="nothex\n")
    assert result.exit_code != 0
    assert "Invalid owner key" in result.output
