"""Fixed-point conversion of USD budgets into token base units."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Union

logger = logging.getLogger(__name__)

USD_DECIMALS = 6
_USD_SCALE = 10**USD_DECIMALS
_SIX_PLACES = Decimal(1).scaleb(-USD_DECIMALS)
_CENTS = Decimal("0.01")

Number = Union[Decimal, str, int]


@dataclass(frozen=True)
class ConversionResult:
    """Token amount derived from a USD budget."""

    amount: int
    price: Optional[Decimal]

    @property
    def used_price(self) -> bool:
        return self.price is not None


def _to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid decimal value: {value!r}") from exc


def _parse_price(price: Optional[Number]) -> Optional[Decimal]:
    if price is None:
        return None
    if isinstance(price, str) and not price.strip():
        return None
    value = _to_decimal(price)
    if not value.is_finite() or value <= 0:
        return None
    return value


def scale_fixed(value: Decimal, decimals: int, *, rounding: str = ROUND_DOWN) -> int:
    """Return ``value`` as an integer with ``decimals`` implied places."""

    quantum = Decimal(1).scaleb(-decimals)
    return int(value.quantize(quantum, rounding=rounding).scaleb(decimals))


def usd_to_token_amount(
    usd: Number,
    price: Optional[Number],
    decimals: int,
    *,
    symbol: str = "",
) -> ConversionResult:
    """Convert ``usd`` into base units of a token priced at ``price`` USD.

    Both operands are scaled to six-decimal integers and the division is done
    on integers, so the result truncates toward zero. When no usable price is
    available the USD figure is treated as a token amount instead.
    """

    if decimals < 0:
        raise ValueError("decimals must be non-negative")
    amount_usd = _to_decimal(usd)
    if amount_usd < 0:
        raise ValueError("USD amount must be non-negative")

    unit_price = _parse_price(price)
    price_scaled = scale_fixed(unit_price, USD_DECIMALS, rounding=ROUND_HALF_UP) if unit_price else 0
    if price_scaled <= 0:
        logger.warning(
            "Token price not available for %s, treating purchase amount as token amount",
            symbol or "token",
            extra={"event": "conversion.fallback", "symbol": symbol},
        )
        return ConversionResult(amount=scale_fixed(amount_usd, decimals), price=None)

    usd_scaled = scale_fixed(amount_usd, USD_DECIMALS)
    amount = usd_scaled * 10**decimals // price_scaled
    logger.debug(
        "Converting $%s USD to %s %s at price $%s",
        amount_usd,
        format_units(amount, decimals),
        symbol,
        unit_price,
    )
    return ConversionResult(amount=amount, price=unit_price)


def token_amount_to_usd(amount: int, price: Number, decimals: int) -> Decimal:
    """Value ``amount`` base units at ``price`` USD, truncated to six places."""

    price_scaled = scale_fixed(_to_decimal(price), USD_DECIMALS, rounding=ROUND_HALF_UP)
    usd_scaled = amount * price_scaled // 10**decimals
    return Decimal(usd_scaled) / _USD_SCALE


def format_units(amount: int, decimals: int) -> str:
    """Render base units as a plain decimal string (``1500000, 6 -> "1.5"``)."""

    if decimals == 0:
        return str(amount)
    text = format(Decimal(amount).scaleb(-decimals), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
        if "." not in text:
            text = f"{text}.0"
    return text


def format_usd(amount: Number) -> str:
    """Two-decimal display form of a USD amount."""

    return format(_to_decimal(amount).quantize(_CENTS, rounding=ROUND_HALF_UP), "f")
