"""Money conversion helpers using fixed micro-dollar precision."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP

from .errors import InvalidAmountError


MICROS_PER_USD = 1_000_000
_USD_QUANT = Decimal("0.000001")
_CENTS_QUANT = Decimal("0.01")


def parse_usd(value: Decimal | float | int | str) -> Decimal:
    """Parse a USD amount, rejecting anything that is not a finite number."""
    if isinstance(value, bool):
        raise InvalidAmountError(value)
    try:
        dec = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmountError(value) from None
    if not dec.is_finite():
        raise InvalidAmountError(value)
    return dec


def require_positive(value: Decimal | float | int | str) -> Decimal:
    """Parse a transfer amount: finite and strictly positive."""
    dec = parse_usd(value)
    if dec <= 0:
        raise InvalidAmountError(value)
    return dec


def require_non_negative(value: Decimal | float | int | str) -> Decimal:
    """Parse a spend or limit amount: finite and not below zero."""
    dec = parse_usd(value)
    if dec < 0:
        raise InvalidAmountError(value, "Amount must not be negative")
    return dec


def amount_usd_to_micros(value: Decimal | float | int | str) -> int:
    """Convert spend amount to micro-dollars, rounding up (conservative)."""
    dec = parse_usd(value).quantize(_USD_QUANT, rounding=ROUND_CEILING)
    return int(dec * MICROS_PER_USD)


def limit_usd_to_micros(value: Decimal | float | int | str) -> int:
    """Convert budget limit to micro-dollars, rounding down (conservative)."""
    dec = parse_usd(value).quantize(_USD_QUANT, rounding=ROUND_FLOOR)
    return int(dec * MICROS_PER_USD)


def micros_to_usd_decimal(value: int) -> Decimal:
    """Convert integer micro-dollars to Decimal USD."""
    return (Decimal(value) / Decimal(MICROS_PER_USD)).quantize(_USD_QUANT)


def micros_to_usd_float(value: int) -> float:
    """Convert integer micro-dollars to float USD (for display APIs)."""
    return float(micros_to_usd_decimal(value))


def micros_to_cents_float(value: int) -> float:
    """Round integer micro-dollars to whole cents for display."""
    return float(micros_to_usd_decimal(value).quantize(_CENTS_QUANT, rounding=ROUND_HALF_UP))


def format_usd_from_micros(value: int) -> str:
    """Format integer micro-dollars as a currency string."""
    sign = "-" if value < 0 else ""
    return f"{sign}${abs(micros_to_usd_decimal(value)):.2f}"


def percent_of(part_micros: int, whole_micros: int) -> int | None:
    """Integer-rounded percentage, ``None`` when the whole is not positive."""
    if whole_micros <= 0:
        return None
    ratio = Decimal(part_micros) * 100 / Decimal(whole_micros)
    return int(ratio.quantize(Decimal(1), rounding=ROUND_HALF_UP))
