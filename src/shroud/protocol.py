"""
x402 payment challenge protocol.

A protected resource answers an unpaid request with HTTP 402 and a
challenge. The challenge travels twice: as a ``WWW-Authenticate: X402``
header carrying scheme and network, and as base64 JSON in
``X-Payment-Required`` so header-only clients can recover the full body.
The payer answers with ``X-Payment``: base64 JSON of
``{signature, paymentId, payer, timestamp}``.
"""

from __future__ import annotations

import base64
import binascii
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .errors import MalformedHeaderError
from .facilitator import PaymentRequirements

PAYMENT_EXPIRY_SECONDS = 300

# Tighter than the chain's default validity window, so a signed payment
# cannot be held back and replayed later.
PAYMENT_EXPIRY_BLOCKS = 50
DEFAULT_EXPIRY_BLOCKS = 150

HEADER_NAME = "X-Payment"
REQUIRED_HEADER = "X-Payment-Required"
RESPONSE_HEADER = "X-Payment-Response"
AUTH_SCHEME = "X402"
SCHEME_EXACT = "exact"

REQUIRED_HEADER_FIELDS = ("signature", "paymentId", "payer", "timestamp")


@dataclass
class ProtectedResource:
    """A priced endpoint. ``price`` is a decimal USDC string, e.g. ``"0.01"``."""

    path: str
    price: str
    description: str = ""
    handler: Optional[Callable[[Optional[dict]], Any]] = field(default=None, repr=False, compare=False)


@dataclass
class PaymentChallenge:
    scheme: str
    network: str
    max_amount_required: str
    asset: str
    pay_to: str
    payment_id: str
    expiry: int
    resource: str
    description: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "scheme": self.scheme,
            "network": self.network,
            "maxAmountRequired": self.max_amount_required,
            "asset": self.asset,
            "payTo": self.pay_to,
            "paymentId": self.payment_id,
            "expiry": self.expiry,
            "resource": self.resource,
        }
        if self.description:
            data["description"] = self.description
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "PaymentChallenge":
        try:
            return cls(
                scheme=data["scheme"],
                network=data["network"],
                max_amount_required=str(data["maxAmountRequired"]),
                asset=data["asset"],
                pay_to=data["payTo"],
                payment_id=data["paymentId"],
                expiry=int(data["expiry"]),
                resource=data["resource"],
                description=data.get("description"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedHeaderError(f"Invalid payment challenge: {e}") from e

    def requirements(self) -> PaymentRequirements:
        return PaymentRequirements(
            scheme=self.scheme,
            network=self.network,
            max_amount_required=self.max_amount_required,
            resource=self.resource,
            pay_to=self.pay_to,
            asset=self.asset,
            description=self.description,
        )


@dataclass(frozen=True)
class PaymentHeader:
    signature: str
    payment_id: str
    payer: str
    timestamp: int

    def to_dict(self) -> dict:
        return {
            "signature": self.signature,
            "paymentId": self.payment_id,
            "payer": self.payer,
            "timestamp": self.timestamp,
        }


def issue_challenge(
    resource: ProtectedResource,
    pay_to: str,
    network: str,
    asset: str,
    now: Optional[float] = None,
) -> PaymentChallenge:
    """Mint a fresh challenge with a unique id and a five-minute expiry."""
    issued_at = int(now if now is not None else time.time())
    return PaymentChallenge(
        scheme=SCHEME_EXACT,
        network=network,
        max_amount_required=resource.price,
        asset=asset,
        pay_to=pay_to,
        payment_id=str(uuid.uuid4()),
        expiry=issued_at + PAYMENT_EXPIRY_SECONDS,
        resource=resource.path,
        description=resource.description or None,
    )


def is_challenge_valid(challenge: PaymentChallenge, now: Optional[float] = None) -> bool:
    current = now if now is not None else time.time()
    return current < challenge.expiry


def encode_header(header: PaymentHeader) -> str:
    raw = json.dumps(header.to_dict(), separators=(",", ":")).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def decode_header(token: str) -> PaymentHeader:
    """Parse an ``X-Payment`` value. Any defect is a hard rejection."""
    if not token or not token.strip():
        raise MalformedHeaderError("Empty payment header")
    try:
        decoded = base64.b64decode(token.strip(), validate=True).decode("utf-8")
        parsed = json.loads(decoded)
    except (binascii.Error, ValueError) as e:
        raise MalformedHeaderError(f"Payment header is not base64 JSON: {type(e).__name__}") from e

    if not isinstance(parsed, dict):
        raise MalformedHeaderError("Payment header must encode a JSON object")

    missing = [name for name in REQUIRED_HEADER_FIELDS if not parsed.get(name)]
    if missing:
        raise MalformedHeaderError(f"Payment header missing required fields: {', '.join(missing)}")

    if isinstance(parsed["timestamp"], bool):
        raise MalformedHeaderError("Payment header timestamp must be an integer")
    try:
        timestamp = int(parsed["timestamp"])
    except (TypeError, ValueError) as e:
        raise MalformedHeaderError("Payment header timestamp must be an integer") from e

    fields = {name: parsed[name] for name in ("signature", "paymentId", "payer")}
    for name, value in fields.items():
        if not isinstance(value, str):
            raise MalformedHeaderError(f"Payment header field {name} must be a string")

    return PaymentHeader(
        signature=fields["signature"],
        payment_id=fields["paymentId"],
        payer=fields["payer"],
        timestamp=timestamp,
    )


def encode_challenge(challenge: PaymentChallenge) -> str:
    return base64.b64encode(json.dumps(challenge.to_dict()).encode("utf-8")).decode("ascii")


def decode_challenge(value: str) -> PaymentChallenge:
    try:
        data = json.loads(base64.b64decode(value, validate=True).decode("utf-8"))
    except (binascii.Error, ValueError) as e:
        raise MalformedHeaderError(f"Challenge is not base64 JSON: {type(e).__name__}") from e
    if not isinstance(data, dict):
        raise MalformedHeaderError("Challenge must encode a JSON object")
    return PaymentChallenge.from_dict(data)


def advertise(challenge: PaymentChallenge) -> dict:
    """The 402 status and headers a protected endpoint returns."""
    return {
        "status": 402,
        "headers": {
            "WWW-Authenticate": f'{AUTH_SCHEME} scheme="{challenge.scheme}", network="{challenge.network}"',
            REQUIRED_HEADER: encode_challenge(challenge),
            "Content-Type": "application/json",
        },
    }


def calculate_tight_expiry(current_block_height: int) -> int:
    """Last block at which a freshly signed payment may still land."""
    if current_block_height < 0:
        raise ValueError("Block height cannot be negative")
    return current_block_height + PAYMENT_EXPIRY_BLOCKS
