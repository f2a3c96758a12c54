from decimal import Decimal

from feeledger.core.money import (
    ZERO,
    clamp_non_negative,
    from_minor_units,
    money_sum,
    percent_of,
    to_minor_units,
    to_money,
)


def test_to_money_rounds_half_up_to_centavos() -> None:
    assert to_money("10.005") == Decimal("10.01")
    assert to_money("10.004") == Decimal("10.00")
    assert to_money(Decimal("-2.345")) == Decimal("-2.35")


def test_to_money_does_not_leak_float_noise() -> None:
    assert to_money(0.1 + 0.2) == Decimal("0.30")
    assert to_money(None) == ZERO


def test_minor_units() -> None:
    assert to_minor_units("5000.00") == 500000
    assert from_minor_units(123456) == Decimal("1234.56")


def test_percent_of_rounds_half_up() -> None:
    assert percent_of("100.00", "2.5") == Decimal("2.50")
    assert percent_of("33.33", "50") == Decimal("16.67")
    assert percent_of("5000", "4.4") == Decimal("220.00")


def test_sum_and_clamp() -> None:
    assert money_sum(["0.10", "0.20", 0.3]) == Decimal("0.60")
    assert clamp_non_negative("-0.01") == ZERO
    assert clamp_non_negative("12.30") == Decimal("12.30")
