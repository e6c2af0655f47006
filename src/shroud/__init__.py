"""
Shroud — privacy-preserving x402 payment gateway for AI agents.

Protected resources answer with HTTP 402 challenges, payments are signed
by unlinkable ephemeral identities and settled through an external
facilitator, and every settled payment lands in an encrypted per-owner
activity ledger that only the owner can decrypt.
"""

__version__ = "0.1.0"

from .balance_cache import BalanceOverride, BalanceTrustCache, OverrideSource, RpcBalanceSource
from .config import GatewayConfig, Network
from .encryption import LocalEncryptionProvider, RemoteEncryptionClient
from .errors import (
    AttestationError,
    DecryptionError,
    DurabilityError,
    MalformedHeaderError,
    ShroudError,
)
from .facilitator import FacilitatorClient, SettleResult, VerifyResult
from .gateway import GatewayResponse, PayerContext, PaymentGateway, PaymentState
from .ledger import Activity, ActivityKind, ActivityLedger, FileLedgerStore, LogEntry
from .protocol import (
    PaymentChallenge,
    PaymentHeader,
    ProtectedResource,
    advertise,
    decode_header,
    encode_header,
    is_challenge_valid,
    issue_challenge,
)
from .scheduler import DebouncedScheduler, ManualScheduler
from .stealth import EphemeralIdentity, StealthClient, StealthSignedPayment, build_signed_payment

__all__ = [
    "Activity",
    "ActivityKind",
    "ActivityLedger",
    "AttestationError",
    "BalanceOverride",
    "BalanceTrustCache",
    "DebouncedScheduler",
    "DecryptionError",
    "DurabilityError",
    "EphemeralIdentity",
    "FacilitatorClient",
    "FileLedgerStore",
    "GatewayConfig",
    "GatewayResponse",
    "LocalEncryptionProvider",
    "LogEntry",
    "MalformedHeaderError",
    "ManualScheduler",
    "Network",
    "OverrideSource",
    "PayerContext",
    "PaymentChallenge",
    "PaymentGateway",
    "PaymentHeader",
    "PaymentState",
    "ProtectedResource",
    "RemoteEncryptionClient",
    "RpcBalanceSource",
    "SettleResult",
    "ShroudError",
    "StealthClient",
    "StealthSignedPayment",
    "VerifyResult",
    "advertise",
    "build_signed_payment",
    "decode_header",
    "encode_header",
    "is_challenge_valid",
    "issue_challenge",
]
