"""Unit tests for dca_worker.conversion."""

from decimal import Decimal

import pytest

from dca_worker.conversion import (
    format_units,
    format_usd,
    token_amount_to_usd,
    usd_to_token_amount,
)


def test_usdc_at_one_dollar_is_exact():
    result = usd_to_token_amount(Decimal("25"), "1.00", 6, symbol="USDC")
    assert result.amount == 25_000_000
    assert result.used_price
    assert result.price == Decimal("1.00")


def test_eighteen_decimal_token_uses_integer_math():
    result = usd_to_token_amount(Decimal("12.50"), "2500.1234", 18, symbol="WETH")
    expected = 12_500_000 * 10**18 // 2_500_123_400
    assert result.amount == expected


def test_division_truncates_toward_zero():
    result = usd_to_token_amount(Decimal("10"), "3", 6)
    assert result.amount == 3_333_333


def test_price_is_rounded_to_six_places():
    result = usd_to_token_amount(Decimal("1"), "0.0000005", 6)
    # 0.0000005 rounds half-up to 0.000001
    assert result.amount == 1_000_000 * 10**6 // 1


def test_zero_usd_converts_to_zero():
    assert usd_to_token_amount(Decimal("0"), "1834.55", 18).amount == 0
    assert usd_to_token_amount(0, "0.0001", 6).amount == 0


@pytest.mark.parametrize("price", [None, "", "0", "0.0000", Decimal("0"), "0.0000001"])
def test_missing_or_zero_price_uses_fallback(price, caplog):
    with caplog.at_level("WARNING"):
        result = usd_to_token_amount(Decimal("25"), price, 6, symbol="FOO")
    assert result.amount == 25 * 10**6
    assert not result.used_price
    assert "Token price not available for FOO" in caplog.text


def test_fallback_scales_by_token_decimals():
    result = usd_to_token_amount(Decimal("1.25"), None, 18)
    assert result.amount == 125 * 10**16


def test_round_trip_stays_within_one_base_unit():
    price = "1834.5567"
    usd = Decimal("47.13")
    amount = usd_to_token_amount(usd, price, 18).amount
    back = token_amount_to_usd(amount, price, 18)
    assert back <= usd
    one_unit_usd = Decimal(price) / Decimal(10**18)
    assert usd - back <= one_unit_usd + Decimal("0.000001")


def test_conversion_is_deterministic():
    first = usd_to_token_amount(Decimal("33.33"), "0.3172", 18)
    second = usd_to_token_amount(Decimal("33.33"), "0.3172", 18)
    assert first == second


def test_negative_inputs_are_rejected():
    with pytest.raises(ValueError):
        usd_to_token_amount(Decimal("-1"), "1", 6)
    with pytest.raises(ValueError):
        usd_to_token_amount(Decimal("1"), "1", -1)


def test_format_helpers():
    assert format_units(25_000_000, 6) == "25.0"
    assert format_units(1_500_000, 6) == "1.5"
    assert format_units(0, 18) == "0.0"
    assert format_units(42, 0) == "42"
    assert format_usd(Decimal("25")) == "25.00"
    assert format_usd("12.5") == "12.50"
