"""
Stealth signing client.

Payments are signed by a single-use ephemeral identity so the merchant
only ever sees an address with no link to the paying owner. The signed
message is a canonical JSON encoding of the challenge fields plus payer
and timestamp; verifying a signature means re-deriving that exact text.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Literal, Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount

from .facilitator import FacilitatorClient
from .protocol import PaymentChallenge, PaymentHeader, calculate_tight_expiry, encode_header

logger = logging.getLogger(__name__)

SubmitMethod = Literal["facilitator", "direct"]


class EphemeralIdentity:
    """A throwaway signing key. Never derived from or linked to the owner's key."""

    def __init__(self, account: LocalAccount):
        self._account = account

    @classmethod
    def generate(cls) -> "EphemeralIdentity":
        return cls(Account.create())

    @classmethod
    def from_key(cls, private_key: str) -> "EphemeralIdentity":
        return cls(Account.from_key(private_key))

    @property
    def address(self) -> str:
        return self._account.address

    def export_key(self) -> str:
        return "0x" + bytes(self._account.key).hex().removeprefix("0x")

    def sign_message(self, message: str) -> str:
        signed = self._account.sign_message(encode_defunct(text=message))
        return "0x" + bytes(signed.signature).hex().removeprefix("0x")

    def __repr__(self) -> str:
        return f"EphemeralIdentity(address={self.address})"


@dataclass(frozen=True)
class StealthSignedPayment:
    payment_id: str
    payer: str
    signature: str
    message: str
    timestamp: int
    network: str
    asset: str

    @property
    def recipient(self) -> Optional[str]:
        try:
            return json.loads(self.message).get("recipient")
        except ValueError:
            return None

    def header(self) -> PaymentHeader:
        return PaymentHeader(
            signature=self.signature,
            payment_id=self.payment_id,
            payer=self.payer,
            timestamp=self.timestamp,
        )

    def to_dict(self) -> dict:
        return {
            "paymentId": self.payment_id,
            "payer": self.payer,
            "signature": self.signature,
            "message": self.message,
            "timestamp": self.timestamp,
            "network": self.network,
            "asset": self.asset,
        }


def canonical_payment_message(
    challenge: PaymentChallenge,
    payer: str,
    timestamp: int,
    valid_until_block: Optional[int] = None,
) -> str:
    fields = {
        "paymentId": challenge.payment_id,
        "payer": payer,
        "recipient": challenge.pay_to,
        "amount": challenge.max_amount_required,
        "asset": challenge.asset,
        "network": challenge.network,
        "resource": challenge.resource,
        "timestamp": timestamp,
    }
    if valid_until_block is not None:
        fields["validUntilBlock"] = valid_until_block
    return json.dumps(fields, sort_keys=True, separators=(",", ":"))


def build_signed_payment(
    identity: EphemeralIdentity,
    challenge: PaymentChallenge,
    now_ms: Optional[int] = None,
    current_block_height: Optional[int] = None,
) -> StealthSignedPayment:
    """Sign a challenge with the ephemeral identity.

    With ``current_block_height`` the message also pins the last block at
    which the payment may land.
    """
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    valid_until = calculate_tight_expiry(current_block_height) if current_block_height is not None else None
    message = canonical_payment_message(challenge, identity.address, timestamp, valid_until)
    signature = identity.sign_message(message)
    logger.debug("Signed payment %s from ephemeral %s...", challenge.payment_id, identity.address[:10])
    return StealthSignedPayment(
        payment_id=challenge.payment_id,
        payer=identity.address,
        signature=signature,
        message=message,
        timestamp=timestamp,
        network=challenge.network,
        asset=challenge.asset,
    )


def verify_signed_payment(signed: StealthSignedPayment, challenge: PaymentChallenge) -> bool:
    """True when the message matches the challenge and was signed by ``payer``."""
    try:
        carried = json.loads(signed.message)
    except ValueError:
        return False
    if not isinstance(carried, dict):
        return False
    expected = canonical_payment_message(
        challenge, signed.payer, signed.timestamp, carried.get("validUntilBlock")
    )
    if expected != signed.message:
        return False
    try:
        recovered = Account.recover_message(encode_defunct(text=signed.message), signature=signed.signature)
    except Exception as e:
        logger.warning("Stealth signature recovery failed: %s", type(e).__name__)
        return False
    return recovered.lower() == signed.payer.lower()


def encode_stealth_header(signed: StealthSignedPayment) -> str:
    return encode_header(signed.header())


@dataclass
class SubmitResult:
    success: bool
    method: SubmitMethod
    tx_signature: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "txSignature": self.tx_signature,
            "method": self.method,
            "error": self.error,
        }


class StealthClient:
    """Submits stealth-signed payments through the facilitator.

    There is no automatic fallback: a failed submission comes back with
    ``method="direct"`` and the caller decides whether to submit on-chain.
    """

    def __init__(self, facilitator: FacilitatorClient):
        self._facilitator = facilitator

    def submit(self, signed: StealthSignedPayment, merchant_address: Optional[str] = None) -> SubmitResult:
        merchant = merchant_address or signed.recipient
        if not merchant:
            return SubmitResult(success=False, method="direct", error="No merchant address for settlement")

        logger.info("Submitting stealth payment %s from %s...", signed.payment_id, signed.payer[:10])
        result = self._facilitator.settle(
            encode_stealth_header(signed),
            merchant,
            extra={
                "paymentId": signed.payment_id,
                "payer": signed.payer,
                "message": signed.message,
                "signature": signed.signature,
                "timestamp": signed.timestamp,
            },
        )

        if result.settled or result.tx_signature:
            return SubmitResult(success=True, method="facilitator", tx_signature=result.tx_signature)

        logger.warning("Facilitator did not settle %s: %s", signed.payment_id, result.error)
        return SubmitResult(success=False, method="direct", error=result.error)
