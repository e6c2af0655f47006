"""
Gateway configuration.

Values come from explicit arguments or ``SHROUD_*`` environment variables.
Collaborators are built once from a config and passed down; nothing here
is a process-wide singleton.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional


SHROUD_NETWORK_ENV = "SHROUD_NETWORK"
SHROUD_PAY_TO_ENV = "SHROUD_PAY_TO"
SHROUD_FACILITATOR_URL_ENV = "SHROUD_FACILITATOR_URL"
SHROUD_FACILITATOR_TIMEOUT_ENV = "SHROUD_FACILITATOR_TIMEOUT"
SHROUD_FACILITATOR_KEY_ID_ENV = "SHROUD_FACILITATOR_KEY_ID"
SHROUD_FACILITATOR_KEY_SECRET_ENV = "SHROUD_FACILITATOR_KEY_SECRET"
SHROUD_BALANCE_RPC_URL_ENV = "SHROUD_BALANCE_RPC_URL"
SHROUD_LEDGER_DIR_ENV = "SHROUD_LEDGER_DIR"
SHROUD_ENCRYPTION_KEY_PATH_ENV = "SHROUD_ENCRYPTION_KEY_PATH"
SHROUD_ENCRYPTION_URL_ENV = "SHROUD_ENCRYPTION_URL"
SHROUD_FLUSH_DELAY_ENV = "SHROUD_FLUSH_DELAY"

DEFAULT_FACILITATOR_URL = "https://facilitator.payai.network"
DEFAULT_LEDGER_DIR = Path.home() / ".shroud" / "ledger"
DEFAULT_ENCRYPTION_KEY_PATH = Path.home() / ".shroud-secrets" / "ledger.key"


class Network(str, Enum):
    BASE_MAINNET = "eip155:8453"
    BASE_SEPOLIA = "eip155:84532"


# USDC token contracts per network
USDC_ASSETS = {
    Network.BASE_MAINNET.value: "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    Network.BASE_SEPOLIA.value: "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
}


def usdc_asset(network: str) -> str:
    try:
        return USDC_ASSETS[network]
    except KeyError:
        raise ValueError(f"Unsupported network: {network}") from None


@dataclass
class GatewayConfig:
    network: Network = Network.BASE_SEPOLIA
    pay_to: Optional[str] = None
    facilitator_url: str = DEFAULT_FACILITATOR_URL
    facilitator_timeout_seconds: float = 30.0
    facilitator_api_key_id: Optional[str] = field(default=None, repr=False)
    facilitator_api_key_secret: Optional[str] = field(default=None, repr=False)
    balance_rpc_url: Optional[str] = None
    ledger_dir: Path = DEFAULT_LEDGER_DIR
    encryption_key_path: Path = DEFAULT_ENCRYPTION_KEY_PATH
    encryption_service_url: Optional[str] = None
    flush_delay_seconds: float = 1.0

    @property
    def asset(self) -> str:
        return usdc_asset(self.network.value)

    @classmethod
    def from_env(cls, **overrides) -> "GatewayConfig":
        """Build a config from the environment; keyword overrides win."""
        values = {
            "network": Network(os.getenv(SHROUD_NETWORK_ENV, Network.BASE_SEPOLIA.value)),
            "pay_to": os.getenv(SHROUD_PAY_TO_ENV),
            "facilitator_url": os.getenv(SHROUD_FACILITATOR_URL_ENV, DEFAULT_FACILITATOR_URL),
            "facilitator_timeout_seconds": float(os.getenv(SHROUD_FACILITATOR_TIMEOUT_ENV, "30")),
            "facilitator_api_key_id": os.getenv(SHROUD_FACILITATOR_KEY_ID_ENV),
            "facilitator_api_key_secret": os.getenv(SHROUD_FACILITATOR_KEY_SECRET_ENV),
            "balance_rpc_url": os.getenv(SHROUD_BALANCE_RPC_URL_ENV),
            "ledger_dir": Path(os.getenv(SHROUD_LEDGER_DIR_ENV, str(DEFAULT_LEDGER_DIR))),
            "encryption_key_path": Path(
                os.getenv(SHROUD_ENCRYPTION_KEY_PATH_ENV, str(DEFAULT_ENCRYPTION_KEY_PATH))
            ),
            "encryption_service_url": os.getenv(SHROUD_ENCRYPTION_URL_ENV),
            "flush_delay_seconds": float(os.getenv(SHROUD_FLUSH_DELAY_ENV, "1.0")),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        if isinstance(values["network"], str):
            values["network"] = Network(values["network"])
        return cls(**values)
