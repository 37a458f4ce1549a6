"""Order size conversion at instrument precision."""

from __future__ import annotations

from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal, InvalidOperation
from enum import Enum

from hl_toolkit.errors import InvalidAmount, SizeTooSmall


class SizeBasis(str, Enum):
    NOTIONAL = "notional"  # quote currency, divided by a reference price
    BASE = "base"


class Rounding(str, Enum):
    UP = "up"
    DOWN = "down"


_DECIMAL_ROUNDING = {
    Rounding.UP: ROUND_CEILING,
    Rounding.DOWN: ROUND_FLOOR,
}


def to_decimal(value: float | int | str | Decimal, *, what: str = "amount") -> Decimal:
    """Convert a finite positive number to Decimal, else raise InvalidAmount."""
    if isinstance(value, bool):
        raise InvalidAmount(f"{what} must be a number, got {value!r}")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise InvalidAmount(f"{what} must be a number, got {value!r}") from exc
    if not result.is_finite():
        raise InvalidAmount(f"{what} must be finite, got {value!r}")
    if result <= 0:
        raise InvalidAmount(f"{what} must be greater than zero, got {value!r}")
    return result


def format_decimal(value: Decimal) -> str:
    """Plain decimal string without exponent or trailing zeros."""
    return format(value.normalize(), "f")


class OrderSizer:
    """Converts requested amounts into exchange size strings.

    Notional amounts round up so the requested value is not under-filled;
    base quantities and close fractions round down so a position is never
    over-sold.
    """

    def quantity(
        self,
        amount: float | Decimal,
        decimals: int,
        basis: SizeBasis,
        direction: Rounding,
        reference_price: float | Decimal | None = None,
    ) -> Decimal:
        """Rounded quantity as a Decimal."""
        if decimals < 0:
            raise InvalidAmount(f"size decimals must be non-negative, got {decimals}")
        raw = to_decimal(amount)
        if basis == SizeBasis.NOTIONAL:
            if reference_price is None:
                raise InvalidAmount("notional sizing requires a reference price")
            raw = raw / to_decimal(reference_price, what="reference price")

        step = Decimal(1).scaleb(-decimals)
        try:
            rounded = raw.quantize(step, rounding=_DECIMAL_ROUNDING[direction])
        except InvalidOperation as exc:
            raise InvalidAmount(f"amount {raw} cannot be represented at {decimals} decimals") from exc
        if rounded <= 0:
            raise SizeTooSmall(
                f"Order size too small for asset precision ({decimals} decimals): {raw}"
            )
        return rounded

    def size(
        self,
        amount: float | Decimal,
        decimals: int,
        basis: SizeBasis,
        direction: Rounding,
        reference_price: float | Decimal | None = None,
    ) -> str:
        """Size string for the wire."""
        return format_decimal(
            self.quantity(amount, decimals, basis, direction, reference_price)
        )
