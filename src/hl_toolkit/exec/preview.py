"""Pre-trade simulation against order book depth."""

from __future__ import annotations

from decimal import Decimal

from hl_toolkit.errors import InvalidIntent, NoLiquidity
from hl_toolkit.exec.sizing import to_decimal
from hl_toolkit.gateway.base import ExchangeGateway, guarded
from hl_toolkit.types import Market, PositionPreview

DEFAULT_DEPTH = 20
DEFAULT_TAKER_FEE_RATE = 0.0005
DEFAULT_MAINTENANCE_MARGIN_RATE = 0.03


class PositionSimulator:
    """Walks the book to estimate fill price, slippage, fees and liquidation.

    Sizing by ``size_usd`` consumes levels by notional, sizing by
    ``size_coin`` consumes them by quantity. Slippage is measured from the
    mid. The liquidation estimate is ``fill × (1 ∓ (1/leverage + mm))`` and
    is only produced for perps.
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        *,
        depth: int = DEFAULT_DEPTH,
        taker_fee_rate: float = DEFAULT_TAKER_FEE_RATE,
        maintenance_margin_rate: float = DEFAULT_MAINTENANCE_MARGIN_RATE,
    ) -> None:
        self._gateway = gateway
        self._depth = depth
        self._taker_fee_rate = Decimal(str(taker_fee_rate))
        self._maintenance_margin_rate = Decimal(str(maintenance_margin_rate))

    async def simulate(
        self,
        coin: str,
        is_buy: bool,
        *,
        size_usd: float | None = None,
        size_coin: float | Decimal | str | None = None,
        leverage: int = 1,
        market: Market = Market.PERP,
    ) -> PositionPreview:
        if (size_usd is None) == (size_coin is None):
            raise InvalidIntent("Specify exactly one of size_usd or size_coin")
        by_notional = size_usd is not None
        remaining = to_decimal(size_usd if by_notional else size_coin)

        book = await guarded("get_order_book", self._gateway.get_order_book(coin, self._depth))
        if not book.bids or not book.asks:
            raise NoLiquidity(f"No liquidity available for {coin}")

        cost = Decimal(0)
        quantity = Decimal(0)
        consumed = 0
        for level in book.asks if is_buy else book.bids:
            if remaining <= 0:
                break
            consumed += 1
            if by_notional:
                taken = min(level.price * level.size, remaining)
                cost += taken
                quantity += taken / level.price
            else:
                taken = min(level.size, remaining)
                cost += taken * level.price
                quantity += taken
            remaining -= taken

        if remaining > 0:
            raise NoLiquidity("Insufficient liquidity in order book")

        fill_price = cost / quantity
        mid = (book.bids[0].price + book.asks[0].price) / 2
        slippage_pct = abs(fill_price - mid) / mid * 100

        liquidation: float | None = None
        if market == Market.PERP:
            buffer = 1 / Decimal(max(leverage, 1)) + self._maintenance_margin_rate
            factor = 1 - buffer if is_buy else 1 + buffer
            liquidation = float(fill_price * factor)

        return PositionPreview(
            coin=coin,
            side="buy" if is_buy else "sell",
            size=float(quantity),
            notional=float(cost),
            estimated_fill_price=float(fill_price),
            estimated_slippage_pct=float(slippage_pct),
            estimated_fees=float(cost * self._taker_fee_rate),
            estimated_liquidation_price=liquidation,
            levels_consumed=consumed,
        )
