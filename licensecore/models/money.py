"""
Money helpers - Decimal amounts quantised to a currency's minor unit.

Rounding policy: ROUND_HALF_UP to the currency's minor unit everywhere.
"""

from collections.abc import Sequence
from decimal import ROUND_HALF_UP, Decimal, localcontext

# Minor-unit exponents for currencies the settlement layer knows about.
# Unknown 3-letter codes fall back to DEFAULT_MINOR_EXPONENT.
MINOR_UNIT_EXPONENTS: dict[str, int] = {
    "USD": 2,
    "EUR": 2,
    "GBP": 2,
    "CHF": 2,
    "JPY": 0,
    "KRW": 0,
    "FIL": 18,
    "ETH": 18,
}
DEFAULT_MINOR_EXPONENT = 2

# Split percentages must add up to 100 within this tolerance
SPLIT_TOLERANCE = Decimal("0.01")

_HUNDRED = Decimal(100)
_PRECISION = 60


def minor_exponent(currency: str) -> int:
    """Number of decimal places in the currency's minor unit."""
    return MINOR_UNIT_EXPONENTS.get(currency.upper(), DEFAULT_MINOR_EXPONENT)


def minor_unit(currency: str) -> Decimal:
    """Smallest representable amount for the currency (e.g. 0.01 for USD)."""
    return Decimal(1).scaleb(-minor_exponent(currency))


def quantize(amount: Decimal, currency: str) -> Decimal:
    """Round an amount half-up to the currency's minor unit."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return Decimal(amount).quantize(minor_unit(currency), rounding=ROUND_HALF_UP)


def to_minor(amount: Decimal, currency: str) -> int:
    """Convert a major-unit amount to integer minor units (for storage)."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return int(quantize(amount, currency).scaleb(minor_exponent(currency)))


def from_minor(amount_minor: int, currency: str) -> Decimal:
    """Convert integer minor units back to a quantised major-unit amount."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return quantize(Decimal(amount_minor).scaleb(-minor_exponent(currency)), currency)


def percentages_balanced(percentages: Sequence[Decimal]) -> bool:
    """True when the percentages add up to 100 within SPLIT_TOLERANCE."""
    return abs(sum(percentages, Decimal(0)) - _HUNDRED) <= SPLIT_TOLERANCE


def split_amounts(total: Decimal, percentages: Sequence[Decimal], currency: str) -> list[Decimal]:
    """
    Divide a total by percentage shares.

    Each share is total * percentage / 100 rounded half-up to the minor unit.
    Whatever the per-share rounding leaves over (positive or negative) is
    absorbed by the largest share, so the shares always add up to the
    quantised total.
    """
    if not percentages:
        return []

    total_q = quantize(total, currency)
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        shares = [quantize(total_q * Decimal(pct) / _HUNDRED, currency) for pct in percentages]
        residual = total_q - sum(shares, Decimal(0))

    if residual:
        largest = max(range(len(percentages)), key=lambda i: percentages[i])
        shares[largest] = quantize(shares[largest] + residual, currency)

    return shares
