"""
Payment gateway: the per-request x402 state machine.

    UNCHALLENGED -> CHALLENGED -> HEADER_RECEIVED -> VERIFIED -> SETTLED | REJECTED

A request without ``X-Payment`` gets a fresh challenge. A request with one
is decoded, matched to its pending challenge (single use), verified and
settled through the facilitator, and only then is the resource run. On
settlement the pool's balance override is debited (only when the payer
names the pool id it was funded under) and an encrypted
``agent_payment`` entry is appended for the owner. Nothing is retried
automatically; a rejected payer must start over with a new challenge.
"""

from __future__ import annotations

import base64
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional

from .balance_cache import (
    BalanceSource,
    BalanceTrustCache,
    OverrideSource,
    ResolvedBalance,
    resolve_pool_balance,
)
from .config import GatewayConfig
from .errors import (
    ChallengeExpiredError,
    MalformedHeaderError,
    ShroudError,
    UnknownChallengeError,
    UnknownResourceError,
)
from .facilitator import FacilitatorClient, base_units_to_usd
from .ledger import Activity, ActivityKind, ActivityLedger
from .money import amount_to_base_units, parse_amount
from .protocol import (
    HEADER_NAME,
    RESPONSE_HEADER,
    PaymentChallenge,
    PaymentHeader,
    ProtectedResource,
    advertise,
    decode_header,
    is_challenge_valid,
    issue_challenge,
)

logger = logging.getLogger(__name__)


class PaymentState(str, Enum):
    UNCHALLENGED = "unchallenged"
    CHALLENGED = "challenged"
    HEADER_RECEIVED = "header_received"
    VERIFIED = "verified"
    SETTLED = "settled"
    REJECTED = "rejected"


DEFAULT_RESOURCES = (
    ProtectedResource("/ai/completion", "0.01", "AI text completion with encrypted audit trail"),
    ProtectedResource("/ai/image", "0.05", "AI image generation"),
    ProtectedResource("/ai/embedding", "0.005", "Vector embeddings"),
    ProtectedResource("/data/query", "0.025", "Premium data API with encrypted usage logs"),
)


@dataclass
class PayerContext:
    """Who is paying, as far as the gateway may know. All optional."""

    owner: Optional[str] = None
    pool_address: Optional[str] = None
    pool_id: Optional[str] = None
    agent_id: Optional[str] = None


@dataclass
class GatewayResponse:
    state: PaymentState
    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    body: dict[str, Any] = field(default_factory=dict)
    challenge: Optional[PaymentChallenge] = None
    tx_signature: Optional[str] = None
    trace: list[PaymentState] = field(default_factory=list)


class PaymentGateway:
    """Gates resources behind x402 payments. Collaborators are injected."""

    def __init__(
        self,
        pay_to: str,
        network: str,
        asset: str,
        facilitator: FacilitatorClient,
        ledger: Optional[ActivityLedger] = None,
        balance_cache: Optional[BalanceTrustCache] = None,
        balance_source: Optional[BalanceSource] = None,
        resources: Optional[list[ProtectedResource]] = None,
        clock: Callable[[], float] = time.time,
    ):
        if not pay_to:
            raise ValueError("pay_to address is required")
        self.pay_to = pay_to
        self.network = network
        self.asset = asset
        self.facilitator = facilitator
        self.ledger = ledger
        self.balance_cache = balance_cache if balance_cache is not None else BalanceTrustCache(clock=clock)
        self.balance_source = balance_source
        self._clock = clock
        self._resources: dict[str, ProtectedResource] = {}
        for resource in resources if resources is not None else DEFAULT_RESOURCES:
            self.register(resource)
        self._pending: dict[str, PaymentChallenge] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        facilitator: FacilitatorClient,
        ledger: Optional[ActivityLedger] = None,
        balance_cache: Optional[BalanceTrustCache] = None,
        balance_source: Optional[BalanceSource] = None,
        resources: Optional[list[ProtectedResource]] = None,
    ) -> "PaymentGateway":
        if not config.pay_to:
            raise ValueError("pay_to is not configured")
        return cls(
            pay_to=config.pay_to,
            network=config.network.value,
            asset=config.asset,
            facilitator=facilitator,
            ledger=ledger,
            balance_cache=balance_cache,
            balance_source=balance_source,
            resources=resources,
        )

    # ── Resources ─────────────────────────────────────────────────

    def register(self, resource: ProtectedResource) -> None:
        parse_amount(resource.price)
        self._resources[resource.path] = resource

    def resource(self, path: str) -> ProtectedResource:
        try:
            return self._resources[path]
        except KeyError:
            raise UnknownResourceError(f"No protected resource at {path}") from None

    @property
    def resources(self) -> list[ProtectedResource]:
        return list(self._resources.values())

    def services(self) -> list[dict]:
        return [
            {
                "endpoint": r.path,
                "price": f"{r.price} USDC",
                "priceRaw": str(amount_to_base_units(r.price)),
                "description": r.description,
                "network": self.network,
                "x402": True,
                "encrypted": self.ledger is not None,
            }
            for r in self._resources.values()
        ]

    # ── Challenges ────────────────────────────────────────────────

    def challenge(self, path: str) -> PaymentChallenge:
        """Issue and remember a challenge for ``path``."""
        resource = self.resource(path)
        challenge = issue_challenge(resource, self.pay_to, self.network, self.asset, now=self._clock())
        with self._lock:
            self._prune_expired()
            self._pending[challenge.payment_id] = challenge
        logger.info("Issued challenge %s for %s", challenge.payment_id, path)
        return challenge

    def _claim_challenge(self, header: PaymentHeader, resource: ProtectedResource) -> PaymentChallenge:
        """Consume the pending challenge a header answers. Each challenge is single use."""
        with self._lock:
            challenge = self._pending.pop(header.payment_id, None)
        if challenge is None or challenge.resource != resource.path:
            raise UnknownChallengeError(f"No pending challenge {header.payment_id} for {resource.path}")
        if not is_challenge_valid(challenge, self._clock()):
            raise ChallengeExpiredError(challenge.payment_id, challenge.expiry)
        return challenge

    def _prune_expired(self) -> None:
        now = self._clock()
        expired = [pid for pid, c in self._pending.items() if not is_challenge_valid(c, now)]
        for pid in expired:
            del self._pending[pid]

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    # ── Request flow ──────────────────────────────────────────────

    def process(
        self,
        path: str,
        payment_token: Optional[str] = None,
        context: Optional[PayerContext] = None,
        request_body: Optional[dict] = None,
    ) -> GatewayResponse:
        """Run one request through the payment state machine."""
        resource = self.resource(path)
        context = context or PayerContext()

        if not payment_token:
            return self._challenge_response(resource)

        trace = [PaymentState.HEADER_RECEIVED]
        try:
            header = decode_header(payment_token)
        except MalformedHeaderError as e:
            logger.warning("Rejected malformed %s header for %s: %s", HEADER_NAME, path, e)
            return self._rejection(trace, 400, "malformed_payment_header", str(e))

        try:
            challenge = self._claim_challenge(header, resource)
        except UnknownChallengeError as e:
            logger.warning("Unknown challenge %s for %s", header.payment_id, path)
            return self._rejection(trace, 402, "unknown_challenge", str(e), resource)
        except ChallengeExpiredError as e:
            logger.warning("Challenge %s expired", e.payment_id)
            return self._rejection(trace, 402, "challenge_expired", str(e), resource)

        verification = self.facilitator.verify(payment_token, challenge.requirements())
        if not verification.valid:
            detail = verification.error or "Payment invalid"
            return self._rejection(trace, 402, "verification_failed", detail, resource)
        underpaid = self._underpayment(verification.amount, challenge)
        if underpaid:
            return self._rejection(trace, 402, "insufficient_payment", underpaid, resource)
        trace.append(PaymentState.VERIFIED)

        # Settlement may lag verification; the window is checked again.
        if not is_challenge_valid(challenge, self._clock()):
            logger.warning("Challenge %s expired before settlement", challenge.payment_id)
            return self._rejection(trace, 402, "challenge_expired", "Payment challenge expired", resource)

        settlement = self.facilitator.settle(payment_token, challenge.pay_to)
        if not settlement.settled:
            detail = settlement.error or "Settlement failed"
            return self._rejection(trace, 402, "settlement_failed", detail, resource)

        trace.append(PaymentState.SETTLED)
        logger.info("Payment %s settled for %s", challenge.payment_id, path)
        self._after_settlement(resource, challenge, header, settlement.tx_signature, context)

        receipt = {
            "success": True,
            "paymentId": challenge.payment_id,
            "txSignature": settlement.tx_signature,
            "network": challenge.network,
        }
        headers = {RESPONSE_HEADER: base64.b64encode(json.dumps(receipt).encode("utf-8")).decode("ascii")}

        try:
            data = resource.handler(request_body) if resource.handler is not None else None
        except Exception as e:
            logger.exception("Resource %s failed after payment %s settled", path, challenge.payment_id)
            return GatewayResponse(
                state=PaymentState.SETTLED,
                status_code=500,
                headers=headers,
                body={
                    "error": "resource_failed",
                    "detail": f"{type(e).__name__}: {e}",
                    "paymentId": challenge.payment_id,
                    "txSignature": settlement.tx_signature,
                },
                challenge=challenge,
                tx_signature=settlement.tx_signature,
                trace=trace,
            )

        return GatewayResponse(
            state=PaymentState.SETTLED,
            status_code=200,
            headers=headers,
            body={
                "success": True,
                "resource": resource.path,
                "paymentId": challenge.payment_id,
                "txSignature": settlement.tx_signature,
                "data": data,
            },
            challenge=challenge,
            tx_signature=settlement.tx_signature,
            trace=trace,
        )

    def _after_settlement(
        self,
        resource: ProtectedResource,
        challenge: PaymentChallenge,
        header: PaymentHeader,
        tx_signature: Optional[str],
        context: PayerContext,
    ) -> None:
        # Bookkeeping never turns a settled payment into an error for the payer.
        if context.pool_address:
            override = self.balance_cache.read(context.pool_address)
            if override is not None and context.pool_id and override.pool_id == context.pool_id:
                self.balance_cache.record_spend(context.pool_address, resource.price)
            elif override is not None:
                logger.warning(
                    "Not debiting %s for payment %s: pool id does not match the funded pool",
                    context.pool_address[:10],
                    challenge.payment_id,
                )

        if self.ledger is None or not context.owner:
            return
        try:
            self.ledger.append(
                context.owner,
                Activity(
                    kind=ActivityKind.AGENT_PAYMENT,
                    amount=amount_to_base_units(challenge.max_amount_required),
                    resource=resource.path,
                    payment_id=challenge.payment_id,
                    tx_signature=tx_signature,
                    agent_id=context.agent_id,
                    method="facilitator",
                    details={"payer": header.payer, "network": challenge.network},
                ),
            )
        except (ShroudError, ValueError):
            logger.exception("Ledger append failed for payment %s", challenge.payment_id)

    def _underpayment(self, verified_amount: Optional[str], challenge: PaymentChallenge) -> Optional[str]:
        if verified_amount is None or not verified_amount.isdigit():
            return None
        paid = base_units_to_usd(int(verified_amount), challenge.network, challenge.asset)
        required = parse_amount(challenge.max_amount_required)
        if paid < required:
            return f"Verified amount {paid} is below required {required}"
        return None

    def _challenge_response(self, resource: ProtectedResource) -> GatewayResponse:
        challenge = self.challenge(resource.path)
        advertisement = advertise(challenge)
        return GatewayResponse(
            state=PaymentState.CHALLENGED,
            status_code=advertisement["status"],
            headers=advertisement["headers"],
            body={"error": "payment_required", "paymentRequired": challenge.to_dict()},
            challenge=challenge,
            trace=[PaymentState.UNCHALLENGED, PaymentState.CHALLENGED],
        )

    def _rejection(
        self,
        trace: list[PaymentState],
        status_code: int,
        error: str,
        detail: str,
        resource: Optional[ProtectedResource] = None,
    ) -> GatewayResponse:
        headers: dict[str, str] = {}
        body: dict[str, Any] = {"error": error, "detail": detail}
        challenge = None
        if resource is not None:
            challenge = self.challenge(resource.path)
            headers = advertise(challenge)["headers"]
            body["paymentRequired"] = challenge.to_dict()
        return GatewayResponse(
            state=PaymentState.REJECTED,
            status_code=status_code,
            headers=headers,
            body=body,
            challenge=challenge,
            trace=[*trace, PaymentState.REJECTED],
        )

    # ── Pools ─────────────────────────────────────────────────────

    def fund_pool(
        self,
        pool_address: str,
        amount: Decimal | str,
        pool_id: str,
        owner: Optional[str] = None,
        tx_signature: Optional[str] = None,
    ):
        """Record a confirmed funding so a spurious remote zero cannot hide it."""
        override = self.balance_cache.record_funding(pool_address, amount, pool_id, OverrideSource.SHIELD_TX)
        if self.ledger is not None and owner:
            try:
                self.ledger.append(
                    owner,
                    Activity(
                        kind=ActivityKind.SHIELD_TOKENS,
                        amount=amount_to_base_units(amount),
                        tx_signature=tx_signature,
                        details={"pool_id": pool_id, "pool_address": pool_address},
                    ),
                )
            except ShroudError:
                logger.exception("Ledger append failed for pool funding %s", pool_id)
        return override

    def pool_balance(self, pool_address: str, pool_id: str) -> ResolvedBalance:
        return resolve_pool_balance(self.balance_cache, self.balance_source, pool_address, pool_id)
