"""
Settlement facilitator client.

The gateway never holds funds: on-chain verification and settlement are
delegated to an external facilitator over two calls, ``POST /verify`` and
``POST /settle``. Non-2xx answers, transport errors and unparseable bodies
all come back as typed failure results so the payment flow can move to a
definite terminal state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

import httpx
from x402.mechanisms.evm.utils import get_asset_info

from .config import DEFAULT_FACILITATOR_URL
from .facilitator_auth import FacilitatorAuth
from .money import USDC_DECIMALS

logger = logging.getLogger(__name__)


@dataclass
class PaymentRequirements:
    """What the payer was asked for; sent alongside the header on verify."""

    scheme: str
    network: str
    max_amount_required: str
    resource: str
    pay_to: str
    asset: str
    description: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "scheme": self.scheme,
            "network": self.network,
            "maxAmountRequired": self.max_amount_required,
            "resource": self.resource,
            "payTo": self.pay_to,
            "asset": self.asset,
        }
        if self.description:
            data["description"] = self.description
        return data


@dataclass
class VerifyResult:
    valid: bool
    payer: Optional[str] = None
    amount: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {"valid": self.valid, "payer": self.payer, "amount": self.amount, "error": self.error}


@dataclass
class SettleResult:
    settled: bool
    tx_signature: Optional[str] = None
    error: Optional[str] = None
    raw_response: Optional[dict] = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {"settled": self.settled, "txSignature": self.tx_signature, "error": self.error}


class FacilitatorClient:
    """Stateless verify/settle client. Construct once and pass it down."""

    def __init__(
        self,
        base_url: str = DEFAULT_FACILITATOR_URL,
        network: str = "eip155:84532",
        timeout_seconds: float = 30.0,
        auth: Optional[FacilitatorAuth] = None,
        http: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.network = network
        self._auth = auth
        self._http = http or httpx.Client(timeout=timeout_seconds)
        logger.info("Facilitator client initialized: %s (network: %s)", self.base_url, self.network)

    def verify(self, payment_header: str, requirements: PaymentRequirements) -> VerifyResult:
        """Ask the facilitator whether the header satisfies the requirements."""
        payload = {
            "paymentHeader": payment_header,
            "paymentRequirements": requirements.to_dict(),
            "network": self.network,
        }
        try:
            response = self._post("/verify", payload)
        except httpx.HTTPError as e:
            logger.warning("Facilitator verify unreachable: %s", e)
            return VerifyResult(valid=False, error=f"Facilitator unreachable: {type(e).__name__}: {e}")

        if not response.is_success:
            logger.warning("Facilitator verify failed: %d %s", response.status_code, response.text[:200])
            return VerifyResult(valid=False, error=f"Verification failed: {response.status_code}")

        body = _json_object(response)
        if body is None:
            return VerifyResult(valid=False, error="Verification failed: malformed response")

        valid = bool(body.get("valid", body.get("isValid", False)))
        result = VerifyResult(
            valid=valid,
            payer=body.get("payer"),
            amount=_optional_str(body.get("amount")),
            error=None if valid else (body.get("error") or body.get("invalidReason") or "Payment invalid"),
        )
        logger.info("Verification result: %s", "VALID" if result.valid else "INVALID")
        return result

    def settle(
        self,
        payment_header: str,
        merchant_address: str,
        extra: Optional[dict[str, Any]] = None,
    ) -> SettleResult:
        """Settle a verified payment to ``merchant_address``."""
        payload = {
            "paymentHeader": payment_header,
            "merchantAddress": merchant_address,
            "network": self.network,
        }
        if extra:
            payload.update(extra)
        try:
            response = self._post("/settle", payload)
        except httpx.HTTPError as e:
            logger.warning("Facilitator settle unreachable: %s", e)
            return SettleResult(settled=False, error=f"Facilitator unreachable: {type(e).__name__}: {e}")

        if not response.is_success:
            logger.warning("Facilitator settle failed: %d %s", response.status_code, response.text[:200])
            return SettleResult(settled=False, error=f"Settlement failed: {response.status_code}")

        body = _json_object(response)
        if body is None:
            return SettleResult(settled=False, error="Settlement failed: malformed response")

        tx_signature = body.get("txSignature") or body.get("transaction")
        settled = bool(body.get("settled", body.get("success", False)))
        if settled and not tx_signature:
            logger.warning("Facilitator reported settlement without a transaction reference")
        result = SettleResult(
            settled=settled,
            tx_signature=tx_signature,
            error=None if settled else (body.get("error") or body.get("errorReason") or "Settlement rejected"),
            raw_response=body,
        )
        logger.info("Settlement result: %s", "SUCCESS" if result.settled else "FAILED")
        return result

    def list_merchants(self) -> list:
        """Merchant discovery. Any failure yields an empty list."""
        try:
            response = self._http.get(f"{self.base_url}/list", headers=self._headers("GET", "/list"))
        except httpx.HTTPError as e:
            logger.warning("Facilitator list unreachable: %s", e)
            return []
        if not response.is_success:
            return []
        try:
            body = response.json()
        except ValueError:
            return []
        return body if isinstance(body, list) else []

    def info(self) -> dict:
        return {
            "url": self.base_url,
            "network": self.network,
            "authenticated": self._auth is not None,
        }

    def _post(self, endpoint: str, payload: dict) -> httpx.Response:
        return self._http.post(
            f"{self.base_url}{endpoint}",
            json=payload,
            headers=self._headers("POST", endpoint),
        )

    def _headers(self, method: str, endpoint: str) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._auth is not None:
            headers.update(self._auth.headers_for(method, endpoint))
        return headers

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def base_units_to_usd(amount: int, network: str, asset: str) -> Decimal:
    """Convert a facilitator-reported base-unit amount using the asset's decimals."""
    decimals = USDC_DECIMALS
    try:
        asset_info = get_asset_info(network, asset)
        decimals = int(asset_info.get("decimals", USDC_DECIMALS))
    except Exception:
        pass
    return Decimal(amount) / (Decimal(10) ** decimals)


def _json_object(response: httpx.Response) -> Optional[dict]:
    try:
        body = response.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)
