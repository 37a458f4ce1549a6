from __future__ import annotations

from decimal import Decimal

import pytest

from hl_toolkit.errors import InvalidAmount, SizeTooSmall
from hl_toolkit.exec.sizing import OrderSizer, Rounding, SizeBasis, format_decimal, to_decimal


def test_notional_rounds_up_and_base_rounds_down() -> None:
    sizer = OrderSizer()
    up = sizer.quantity(100, 3, SizeBasis.NOTIONAL, Rounding.UP, 30)
    down = sizer.quantity(100, 3, SizeBasis.NOTIONAL, Rounding.DOWN, 30)
    assert up == Decimal("3.334")
    assert down == Decimal("3.333")


def test_size_strips_trailing_zeros() -> None:
    sizer = OrderSizer()
    assert sizer.size(2.5, 4, SizeBasis.BASE, Rounding.DOWN) == "2.5"
    assert sizer.size(1.5, 0, SizeBasis.BASE, Rounding.DOWN) == "1"
    assert sizer.size(201, 3, SizeBasis.NOTIONAL, Rounding.UP, Decimal("100.5")) == "2"


def test_rounding_stays_within_one_step() -> None:
    sizer = OrderSizer()
    for amount in ("0.123456", "1.5", "99.99999", "12345.6789"):
        for decimals in (0, 1, 2, 4):
            exact = Decimal(amount)
            step = Decimal(1).scaleb(-decimals)
            if exact < step:
                continue
            up = sizer.quantity(Decimal(amount), decimals, SizeBasis.BASE, Rounding.UP)
            down = sizer.quantity(Decimal(amount), decimals, SizeBasis.BASE, Rounding.DOWN)
            assert down <= exact <= up
            assert up - exact < step
            assert exact - down < step


def test_size_too_small_for_precision() -> None:
    with pytest.raises(SizeTooSmall, match=r"\(3 decimals\)"):
        OrderSizer().size(0.0004, 3, SizeBasis.BASE, Rounding.DOWN)


@pytest.mark.parametrize("bad", [0, -1, float("nan"), float("inf"), True, "abc"])
def test_invalid_amounts_rejected(bad: object) -> None:
    with pytest.raises(InvalidAmount):
        OrderSizer().size(bad, 2, SizeBasis.BASE, Rounding.DOWN)  # type: ignore[arg-type]


def test_notional_requires_reference_price() -> None:
    with pytest.raises(InvalidAmount):
        OrderSizer().size(100, 2, SizeBasis.NOTIONAL, Rounding.UP)


def test_negative_decimals_rejected() -> None:
    with pytest.raises(InvalidAmount):
        OrderSizer().size(1, -1, SizeBasis.BASE, Rounding.DOWN)


def test_to_decimal_and_format() -> None:
    assert to_decimal(0.1) == Decimal("0.1")
    assert format_decimal(Decimal("1.2300")) == "1.23"
    assert format_decimal(Decimal("1E+2")) == "100"
