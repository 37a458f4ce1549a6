"""Execution price derivation from top-of-book and slippage."""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal, InvalidOperation

from hl_toolkit.errors import InvalidAmount, NoLiquidity
from hl_toolkit.exec.sizing import format_decimal, to_decimal
from hl_toolkit.gateway.base import ExchangeGateway, guarded
from hl_toolkit.types import OrderKind, TopOfBook

PRICE_SIGNIFICANT_FIGURES = 5


def truncate_significant(value: Decimal, figures: int = PRICE_SIGNIFICANT_FIGURES) -> Decimal:
    """Truncate (toward zero) to ``figures`` significant figures."""
    value = to_decimal(value, what="price")
    step = Decimal(1).scaleb(value.adjusted() - (figures - 1))
    return value.quantize(step, rounding=ROUND_DOWN)


def format_price(value: Decimal) -> str:
    return format_decimal(value)


class PricingEngine:
    """Quotes limit prices verbatim and market prices off the book."""

    def __init__(self, gateway: ExchangeGateway, *, default_slippage_pct: float = 1.0) -> None:
        self._gateway = gateway
        self._default_slippage = self._slippage_fraction(default_slippage_pct)

    async def top_of_book(self, coin: str) -> TopOfBook:
        book = await guarded("get_top_of_book", self._gateway.get_top_of_book(coin))
        self.ensure_liquidity(coin, book)
        return book

    @staticmethod
    def ensure_liquidity(coin: str, book: TopOfBook) -> None:
        if not book.best_bid or not book.best_ask or book.best_bid <= 0 or book.best_ask <= 0:
            raise NoLiquidity(f"No liquidity available for {coin}")

    @staticmethod
    def mid_price(book: TopOfBook) -> Decimal:
        """Mid of the book; used for notional sizing only."""
        return book.mid

    async def quote(
        self,
        coin: str,
        is_buy: bool,
        kind: OrderKind,
        *,
        slippage_percent: float | None = None,
        limit_price: float | Decimal | None = None,
        book: TopOfBook | None = None,
    ) -> Decimal:
        """Execution price for an order.

        Limit orders return ``limit_price`` unchanged. Market orders cross
        the book by the slippage buffer and are truncated to five
        significant figures.
        """
        if kind == "limit" and limit_price is not None:
            return to_decimal(limit_price, what="limit price")

        if book is None:
            book = await self.top_of_book(coin)
        else:
            self.ensure_liquidity(coin, book)

        slippage = (
            self._default_slippage
            if slippage_percent is None
            else self._slippage_fraction(slippage_percent)
        )
        if is_buy:
            raw = book.best_ask * (1 + slippage)
        else:
            raw = book.best_bid * (1 - slippage)
        return truncate_significant(raw)

    @staticmethod
    def _slippage_fraction(percent: float) -> Decimal:
        try:
            value = Decimal(str(percent))
        except (InvalidOperation, ValueError) as exc:
            raise InvalidAmount(f"slippage must be a number, got {percent!r}") from exc
        if not value.is_finite() or value < 0 or value >= 100:
            raise InvalidAmount(f"slippage must be within [0, 100), got {percent!r}")
        return value / 100
