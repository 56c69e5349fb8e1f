from __future__ import annotations

from decimal import Decimal

import pytest

from freebie_agent.util.money import money_to_decimal, parse_price


@pytest.mark.parametrize(
    "text,expected",
    [
        ("$0.00", Decimal("0.00")),
        ("$0", Decimal("0.00")),
        ("FREE", Decimal("0.00")),
        (" free ", Decimal("0.00")),
        ("$1,234.5", Decimal("1234.50")),
        ("$1.99 with coupon", Decimal("1.99")),
        ("Price: $4.99 ($0.50/count)", Decimal("4.99")),
    ],
)
def test_parse_price(text: str, expected: Decimal) -> None:
    assert parse_price(text) == expected


@pytest.mark.parametrize("text", [None, "", "   ", "See options", "Currently unavailable.", "-$5.00", "Save -$2.00"])
def test_parse_price_without_a_usable_price(text) -> None:
    assert parse_price(text) is None


def test_money_to_decimal_variants() -> None:
    assert money_to_decimal("$3,040.16") == Decimal("3040.16")
    assert money_to_decimal("-$12.34") == Decimal("-12.34")
    with pytest.raises(ValueError):
        money_to_decimal("abc")
    with pytest.raises(ValueError):
        money_to_decimal("")
