"""
Balance trust cache for stealth pools.

The remote balance source is known to return spurious zeros but never
spurious positives. Funding events seen locally are recorded here as
overrides, keyed by pool address, and win over a remote zero:

1. Successful funding: add to the override.
2. Successful spend: subtract, clamped at zero; at zero the override is cleared.
3. Remote reading > 0: replaces the override (``rpc_confirmed``).
4. Remote reading == 0 with an override present: discarded.

Overrides are returned even past their trust TTL; callers decide.
State is in memory only and is lost on restart.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional, Protocol

import httpx
from eth_utils import is_address, keccak, to_checksum_address

from .money import base_units_to_decimal, parse_amount

logger = logging.getLogger(__name__)

OVERRIDE_TTL_SECONDS = 5 * 60


class OverrideSource(str, Enum):
    SHIELD_TX = "shield_tx"
    PAYMENT_SUCCESS = "payment_success"
    RPC_CONFIRMED = "rpc_confirmed"


@dataclass(frozen=True)
class BalanceOverride:
    pool_address: str
    amount: Decimal
    timestamp: float
    source: OverrideSource
    pool_id: str

    def age_seconds(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.timestamp

    def is_trusted(self, now: Optional[float] = None, ttl_seconds: float = OVERRIDE_TTL_SECONDS) -> bool:
        return self.age_seconds(now) < ttl_seconds

    def to_dict(self) -> dict:
        return {
            "pool_address": self.pool_address,
            "amount": str(self.amount),
            "timestamp": self.timestamp,
            "source": self.source.value,
            "pool_id": self.pool_id,
        }


class BalanceTrustCache:
    """Thread-safe override map; each operation is atomic per pool address."""

    def __init__(
        self,
        ttl_seconds: float = OVERRIDE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._overrides: dict[str, BalanceOverride] = {}

    def record_funding(
        self,
        pool_address: str,
        amount: Decimal | str | int,
        pool_id: str,
        source: OverrideSource = OverrideSource.SHIELD_TX,
    ) -> BalanceOverride:
        """Set or additively merge an override after a funding event."""
        added = parse_amount(amount)
        with self._lock:
            existing = self._overrides.get(pool_address)
            total = added + existing.amount if existing else added
            override = BalanceOverride(
                pool_address=pool_address,
                amount=total,
                timestamp=self._clock(),
                source=OverrideSource(source),
                pool_id=pool_id,
            )
            self._overrides[pool_address] = override
        logger.info(
            "Override set for %s: %s (%s)", pool_address[:10], total, override.source.value
        )
        return override

    def record_spend(self, pool_address: str, amount_spent: Decimal | str | int) -> Optional[BalanceOverride]:
        """Subtract a spend. Returns the remaining override, or None once cleared."""
        spent = parse_amount(amount_spent)
        with self._lock:
            existing = self._overrides.get(pool_address)
            if existing is None:
                return None
            remaining = max(Decimal(0), existing.amount - spent)
            if remaining == 0:
                del self._overrides[pool_address]
                override = None
            else:
                override = replace(existing, amount=remaining, timestamp=self._clock())
                self._overrides[pool_address] = override

        if override is None:
            logger.info("Override cleared for %s", pool_address[:10])
        else:
            logger.info("Override for %s reduced by %s to %s", pool_address[:10], spent, remaining)
        return override

    def reconcile_with_remote(
        self,
        pool_address: str,
        remote_amount: Decimal | str | int,
        pool_id: str,
    ) -> Optional[BalanceOverride]:
        """Fold a remote reading in; a remote zero never overwrites a cached balance."""
        reading = parse_amount(remote_amount)
        with self._lock:
            existing = self._overrides.get(pool_address)
            if reading > 0:
                if existing and existing.amount != reading:
                    logger.info(
                        "Remote balance for %s differs from cache: %s vs %s",
                        pool_address[:10], reading, existing.amount,
                    )
                override = BalanceOverride(
                    pool_address=pool_address,
                    amount=reading,
                    timestamp=self._clock(),
                    source=OverrideSource.RPC_CONFIRMED,
                    pool_id=pool_id,
                )
                self._overrides[pool_address] = override
                return override

        if existing is not None:
            logger.warning(
                "Remote returned 0 for %s; keeping cached %s", pool_address[:10], existing.amount
            )
        return existing

    def read(self, pool_address: str) -> Optional[BalanceOverride]:
        """Current override, even when past its TTL."""
        with self._lock:
            return self._overrides.get(pool_address)

    def is_trusted(self, pool_address: str) -> bool:
        override = self.read(pool_address)
        return override is not None and override.is_trusted(self._clock(), self.ttl_seconds)

    def clear(self, pool_address: str) -> bool:
        with self._lock:
            return self._overrides.pop(pool_address, None) is not None

    def snapshot(self) -> dict[str, BalanceOverride]:
        with self._lock:
            return dict(self._overrides)

    def now(self) -> float:
        return self._clock()


# ── Remote balance source ─────────────────────────────────────────

_BALANCE_OF_SELECTOR = keccak(text="balanceOf(address)")[:4].hex()


@dataclass(frozen=True)
class BalanceReading:
    amount: Optional[Decimal] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.amount is not None


class BalanceSource(Protocol):
    def fetch_balance(self, address: str) -> BalanceReading: ...


class RpcBalanceSource:
    """Reads an ERC-20 balance with ``eth_call``. Failures become readings with an error."""

    def __init__(
        self,
        rpc_url: str,
        asset: str,
        decimals: int = 6,
        timeout_seconds: float = 10.0,
        http: Optional[httpx.Client] = None,
    ):
        if not is_address(asset):
            raise ValueError(f"Invalid asset address: {asset}")
        self.rpc_url = rpc_url
        self.asset = to_checksum_address(asset)
        self.decimals = decimals
        self._http = http or httpx.Client(timeout=timeout_seconds)

    def fetch_balance(self, address: str) -> BalanceReading:
        if not is_address(address):
            return BalanceReading(error=f"Invalid address: {address}")
        data = "0x" + _BALANCE_OF_SELECTOR.removeprefix("0x") + address.lower().removeprefix("0x").rjust(64, "0")
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_call",
            "params": [{"to": self.asset, "data": data}, "latest"],
        }
        try:
            response = self._http.post(self.rpc_url, json=payload)
        except httpx.HTTPError as e:
            logger.warning("Balance RPC unreachable: %s", e)
            return BalanceReading(error=f"RPC unreachable: {e}")
        if response.status_code != 200:
            return BalanceReading(error=f"RPC returned {response.status_code}")
        try:
            body = response.json()
            if "error" in body:
                return BalanceReading(error=f"RPC error: {body['error']}")
            raw = int(body["result"], 16)
        except (ValueError, KeyError, TypeError) as e:
            return BalanceReading(error=f"Malformed RPC response: {type(e).__name__}")
        return BalanceReading(amount=base_units_to_decimal(raw, self.decimals))

    def close(self):
        self._http.close()


@dataclass(frozen=True)
class ResolvedBalance:
    amount: Decimal
    source: str
    trusted: bool


def resolve_pool_balance(
    cache: BalanceTrustCache,
    source: Optional[BalanceSource],
    pool_address: str,
    pool_id: str,
) -> ResolvedBalance:
    """Trusted override first; otherwise re-check remotely and reconcile."""
    override = cache.read(pool_address)
    if override is not None and override.is_trusted(cache.now(), cache.ttl_seconds):
        return ResolvedBalance(amount=override.amount, source=override.source.value, trusted=True)

    if source is None:
        if override is not None:
            return ResolvedBalance(amount=override.amount, source=override.source.value, trusted=False)
        return ResolvedBalance(amount=Decimal(0), source="none", trusted=False)

    reading = source.fetch_balance(pool_address)
    if not reading.ok:
        logger.warning("Remote balance check failed for %s: %s", pool_address[:10], reading.error)
        if override is not None:
            return ResolvedBalance(amount=override.amount, source=override.source.value, trusted=False)
        return ResolvedBalance(amount=Decimal(0), source="unavailable", trusted=False)

    reconciled = cache.reconcile_with_remote(pool_address, reading.amount, pool_id)
    if reconciled is None:
        return ResolvedBalance(amount=reading.amount, source="rpc", trusted=False)
    return ResolvedBalance(
        amount=reconciled.amount,
        source=reconciled.source.value,
        trusted=reconciled.source is OverrideSource.RPC_CONFIRMED,
    )
