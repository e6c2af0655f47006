"""Tests for gateway configuration."""

from pathlib import Path

import pytest

from shroud import config as cfg
from shroud.config import GatewayConfig, Network, usdc_asset


def _clear_env(monkeypatch):
    for name in dir(cfg):
        if name.startswith("SHROUD_") and name.endswith("_ENV"):
            monkeypatch.delenv(getattr(cfg, name), raising=False)


def test_defaults(monkeypatch):
    _clear_env(monkeypatch)
    config = GatewayConfig.from_env()
    assert config.network == Network.BASE_SEPOLIA
    assert config.pay_to is None
    assert config.facilitator_url == cfg.DEFAULT_FACILITATOR_URL
    assert config.flush_delay_seconds == 1.0
    assert config.encryption_service_url is None
    assert config.asset == cfg.USDC_ASSETS[Network.BASE_SEPOLIA.value]


def test_reads_environment(monkeypatch, tmp_path):
    _clear_env(monkeypatch)
    monkeypatch.setenv(cfg.SHROUD_NETWORK_ENV, "eip155:8453")
    monkeypatch.setenv(cfg.SHROUD_PAY_TO_ENV, "0x1111111111111111111111111111111111111111")
    monkeypatch.setenv(cfg.SHROUD_LEDGER_DIR_ENV, str(tmp_path / "ledger"))
    monkeypatch.setenv(cfg.SHROUD_FLUSH_DELAY_ENV, "0.25")
    monkeypatch.setenv(cfg.SHROUD_FACILITATOR_TIMEOUT_ENV, "5")

    config = GatewayConfig.from_env()
    assert config.network == Network.BASE_MAINNET
    assert config.pay_to == "0x1111111111111111111111111111111111111111"
    assert config.ledger_dir == Path(tmp_path / "ledger")
    assert config.flush_delay_seconds == 0.25
    assert config.facilitator_timeout_seconds == 5.0
    assert config.asset == "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"


def test_overrides_win_over_environment(monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv(cfg.SHROUD_PAY_TO_ENV, "0x1111111111111111111111111111111111111111")
    config = GatewayConfig.from_env(pay_to="0x2222222222222222222222222222222222222222", network="eip155:8453")
    assert config.pay_to == "0x2222222222222222222222222222222222222222"
    assert config.network == Network.BASE_MAINNET


def test_none_override_keeps_environment(monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv(cfg.SHROUD_PAY_TO_ENV, "0x1111111111111111111111111111111111111111")
    assert GatewayConfig.from_env(pay_to=None).pay_to == "0x1111111111111111111111111111111111111111"


def test_secrets_hidden_from_repr():
    config = GatewayConfig(facilitator_api_key_secret="super-secret")
    assert "super-secret" not in repr(config)


def test_unknown_network_rejected():
    with pytest.raises(ValueError, match="Unsupported network"):
        usdc_asset("eip155:1")
