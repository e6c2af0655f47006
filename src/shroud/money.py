"""USDC amount helpers using fixed base-unit precision."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_CEILING, ROUND_FLOOR


USDC_DECIMALS = 6
BASE_UNITS_PER_USDC = 10 ** USDC_DECIMALS
_USDC_QUANT = Decimal("0.000001")


def parse_amount(value: Decimal | float | int | str) -> Decimal:
    """Parse a decimal-as-string amount, rejecting negatives and garbage."""
    try:
        dec = Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {value!r}") from e
    if not dec.is_finite() or dec < 0:
        raise ValueError(f"Amount must be a non-negative number: {value!r}")
    return dec


def amount_to_base_units(value: Decimal | float | int | str, decimals: int = USDC_DECIMALS) -> int:
    """Convert a required amount to base units, rounding up (never undercharge)."""
    dec = parse_amount(value).quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_CEILING)
    return int(dec.scaleb(decimals))


def balance_to_base_units(value: Decimal | float | int | str, decimals: int = USDC_DECIMALS) -> int:
    """Convert a held balance to base units, rounding down (never overstate)."""
    dec = parse_amount(value).quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_FLOOR)
    return int(dec.scaleb(decimals))


def base_units_to_decimal(value: int, decimals: int = USDC_DECIMALS) -> Decimal:
    """Convert integer base units to a Decimal token amount."""
    return (Decimal(value) / (Decimal(10) ** decimals)).quantize(Decimal(1).scaleb(-decimals))


def format_usdc(value: Decimal | int) -> str:
    """Format a Decimal amount (or base units) for display."""
    if isinstance(value, int):
        value = base_units_to_decimal(value)
    return f"{value.quantize(_USDC_QUANT)} USDC"
