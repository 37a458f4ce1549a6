"""Paper trading gateway with persistent local state."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

from hl_toolkit.gateway.base import ExchangeGateway, UniverseMetadata
from hl_toolkit.market.registry import SPOT_INDEX_OFFSET
from hl_toolkit.types import (
    AccountBalance,
    CancelRequest,
    Grouping,
    Market,
    MarketSnapshot,
    OpenOrder,
    OrderBook,
    OrderSpec,
    Position,
    TimeInForce,
    TopOfBook,
    TriggerRole,
    TriggerSpec,
)
from hl_toolkit.utils.logging import get_logger

_NO_MATCH = "Order could not immediately match against any resting orders."
_REDUCE_ONLY_REJECT = "Reduce only order would increase position."
_INSUFFICIENT_SPOT = "Insufficient spot balance."


@dataclass(slots=True)
class _PaperPosition:
    coin: str
    size: float  # signed, positive is long
    entry_price: float
    opened_at: str


@dataclass(slots=True)
class _PaperOrder:
    oid: int
    asset_index: int
    coin: str
    is_buy: bool
    size: float
    price: float
    reduce_only: bool
    tif: str | None = None
    trigger_price: float | None = None
    tpsl: str | None = None
    grouping: str = Grouping.NONE.value


@dataclass(slots=True)
class _PaperState:
    equity: float
    initial_equity: float
    next_oid: int = 1
    positions: dict[str, _PaperPosition] = field(default_factory=dict)
    spot_balances: dict[str, float] = field(default_factory=dict)
    orders: dict[int, _PaperOrder] = field(default_factory=dict)
    leverage: dict[str, int] = field(default_factory=dict)


class PaperGateway:
    """Simulated order entry over real market data.

    Market data and universe metadata come from ``market_data``. Marketable
    IOC/GTC orders fill at the touch plus ``slippage_bps``; GTC remainders and
    trigger orders rest until ``evaluate_resting_orders`` crosses them.
    State is persisted to ``paper_state.json`` in ``journal_dir``.
    """

    def __init__(
        self,
        market_data: ExchangeGateway,
        journal_dir: Path,
        *,
        slippage_bps: float = 2.0,
        initial_equity: float = 10_000.0,
    ) -> None:
        self._market_data = market_data
        self._slippage_bps = slippage_bps
        journal_dir.mkdir(parents=True, exist_ok=True)
        self._state_file = journal_dir / "paper_state.json"
        self._state = self._load_state(initial_equity)
        self._coins: dict[int, str] = {}
        self._logger = get_logger("hl_toolkit.gateway.paper")

    @property
    def equity(self) -> float:
        return self._state.equity

    # ------------------------------------------------------------------
    # Market data (delegated)
    # ------------------------------------------------------------------

    async def get_top_of_book(self, coin: str) -> TopOfBook:
        return await self._market_data.get_top_of_book(coin)

    async def get_order_book(self, coin: str, depth: int = 10) -> OrderBook:
        return await self._market_data.get_order_book(coin, depth)

    async def get_market_data(self, coins: list[str] | None = None) -> list[MarketSnapshot]:
        return await self._market_data.get_market_data(coins)

    async def get_universe_metadata(self, market: Market) -> UniverseMetadata:
        metadata = await self._market_data.get_universe_metadata(market)
        offset = SPOT_INDEX_OFFSET if market == Market.SPOT else 0
        for asset in metadata.assets:
            self._coins[offset + asset.index] = asset.name
        return metadata

    # ------------------------------------------------------------------
    # Order entry
    # ------------------------------------------------------------------

    async def set_leverage(self, asset_index: int, leverage: int, cross_margin: bool) -> None:
        coin = await self._coin_for(asset_index)
        self._state.leverage[coin] = int(leverage)
        self._persist()

    async def submit_order(
        self,
        asset_index: int,
        is_buy: bool,
        price: str,
        size: str,
        reduce_only: bool,
        order_spec: OrderSpec,
        grouping: Grouping = Grouping.NONE,
    ) -> Any:
        coin = await self._coin_for(asset_index)
        order = _PaperOrder(
            oid=self._next_oid(),
            asset_index=asset_index,
            coin=coin,
            is_buy=is_buy,
            size=float(size),
            price=float(price),
            reduce_only=reduce_only,
            grouping=grouping.value,
        )

        if isinstance(order_spec, TriggerSpec):
            order.trigger_price = float(order_spec.trigger_price)
            order.tpsl = order_spec.role.value
            return self._rest(order)

        order.tif = order_spec.tif.value
        if reduce_only and self._reduce_only_violation(order):
            return _status({"error": _REDUCE_ONLY_REJECT})
        if self._spot_shortfall(order):
            return _status({"error": _INSUFFICIENT_SPOT})

        book = await self._market_data.get_top_of_book(coin)
        touch = book.best_ask if is_buy else book.best_bid
        marketable = touch <= Decimal(price) if is_buy else touch >= Decimal(price)
        if marketable:
            return _status(self._fill(order, float(touch)))
        if order_spec.tif == TimeInForce.IOC:
            return _status({"error": _NO_MATCH})
        return self._rest(order)

    async def cancel_orders(self, requests: list[CancelRequest]) -> None:
        for request in requests:
            self._state.orders.pop(request.order_id, None)
        self._persist()

    async def get_open_orders(self, user: str | None = None) -> list[OpenOrder]:
        return [OpenOrder(coin=o.coin, order_id=o.oid) for o in self._state.orders.values()]

    async def evaluate_resting_orders(self) -> list[dict[str, Any]]:
        """Fill resting limit and trigger orders the current book crosses."""
        fills: list[dict[str, Any]] = []
        for order in list(self._state.orders.values()):
            book = await self._market_data.get_top_of_book(order.coin)
            if order.trigger_price is not None:
                if not _trigger_hit(order, book):
                    continue
            else:
                touch = book.best_ask if order.is_buy else book.best_bid
                if order.is_buy and touch > Decimal(str(order.price)):
                    continue
                if not order.is_buy and touch < Decimal(str(order.price)):
                    continue
            self._state.orders.pop(order.oid, None)
            if order.reduce_only and self._reduce_only_violation(order):
                continue
            if self._spot_shortfall(order):
                self._logger.warning("paper_order_dropped", oid=order.oid, reason=_INSUFFICIENT_SPOT)
                continue
            touch = book.best_ask if order.is_buy else book.best_bid
            fills.append(self._fill(order, float(touch)))
        self._persist()
        return fills

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    async def get_positions(self) -> list[Position]:
        positions: list[Position] = []
        for position in self._state.positions.values():
            book = await self._market_data.get_top_of_book(position.coin)
            mark = float(book.mid)
            unrealized = (mark - position.entry_price) * position.size
            notional = abs(position.size) * position.entry_price
            positions.append(
                Position(
                    coin=position.coin,
                    side="long" if position.size > 0 else "short",
                    size=abs(position.size),
                    entry_price=position.entry_price,
                    current_price=mark,
                    leverage=float(self._state.leverage.get(position.coin, 1)),
                    unrealized_pnl=unrealized,
                    unrealized_pnl_percent=unrealized / notional * 100 if notional else 0.0,
                )
            )
        return positions

    async def get_account_balance(self) -> AccountBalance:
        positions = await self.get_positions()
        unrealized = sum(p.unrealized_pnl for p in positions)
        margin_used = sum(p.size * p.entry_price / max(p.leverage, 1.0) for p in positions)
        account_value = self._state.equity + unrealized
        available = max(0.0, account_value - margin_used)
        return AccountBalance(
            account_value=account_value,
            available_balance=available,
            margin_used=margin_used,
            withdrawable=available,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _fill(self, order: _PaperOrder, touch: float) -> dict[str, Any]:
        slip = self._slippage_bps / 10_000.0
        fill_price = touch * (1.0 + slip) if order.is_buy else touch * (1.0 - slip)
        if order.tif is not None:
            # never fill through the limit
            fill_price = min(fill_price, order.price) if order.is_buy else max(fill_price, order.price)

        size = order.size
        if order.asset_index >= SPOT_INDEX_OFFSET:
            self._apply_spot_fill(order.coin, order.is_buy, size, fill_price)
        else:
            if order.reduce_only:
                held = self._state.positions.get(order.coin)
                size = min(size, abs(held.size)) if held else 0.0
            self._apply_perp_fill(order.coin, size if order.is_buy else -size, fill_price)

        self._persist()
        self._logger.info(
            "paper_fill",
            coin=order.coin,
            side="buy" if order.is_buy else "sell",
            size=size,
            price=fill_price,
            oid=order.oid,
        )
        return {"filled": {"totalSz": str(size), "avgPx": str(fill_price), "oid": order.oid}}

    def _apply_perp_fill(self, coin: str, signed_qty: float, price: float) -> None:
        position = self._state.positions.get(coin)
        if position is None or position.size == 0:
            self._state.positions[coin] = _PaperPosition(
                coin=coin,
                size=signed_qty,
                entry_price=price,
                opened_at=datetime.now(timezone.utc).isoformat(),
            )
            return

        if (position.size > 0) == (signed_qty > 0):
            total = position.size + signed_qty
            position.entry_price = (
                position.entry_price * position.size + price * signed_qty
            ) / total
            position.size = total
            return

        closed = min(abs(signed_qty), abs(position.size))
        direction = 1.0 if position.size > 0 else -1.0
        self._state.equity += (price - position.entry_price) * closed * direction
        remaining = position.size + signed_qty
        if abs(remaining) < 1e-12:
            del self._state.positions[coin]
        elif (remaining > 0) == (position.size > 0):
            position.size = remaining
        else:
            position.size = remaining
            position.entry_price = price
            position.opened_at = datetime.now(timezone.utc).isoformat()

    def _apply_spot_fill(self, coin: str, is_buy: bool, size: float, price: float) -> None:
        balance = self._state.spot_balances.get(coin, 0.0)
        if is_buy:
            self._state.spot_balances[coin] = balance + size
            self._state.equity -= size * price
        else:
            self._state.spot_balances[coin] = balance - size
            self._state.equity += size * price

    def _spot_shortfall(self, order: _PaperOrder) -> bool:
        if order.is_buy or order.asset_index < SPOT_INDEX_OFFSET:
            return False
        held = self._state.spot_balances.get(order.coin, 0.0)
        return order.size > held + 1e-12

    def _reduce_only_violation(self, order: _PaperOrder) -> bool:
        position = self._state.positions.get(order.coin)
        if position is None or position.size == 0:
            return True
        return (position.size > 0) == order.is_buy

    def _rest(self, order: _PaperOrder) -> dict[str, Any]:
        self._state.orders[order.oid] = order
        self._persist()
        return _status({"resting": {"oid": order.oid}})

    async def _coin_for(self, asset_index: int) -> str:
        if asset_index not in self._coins:
            market = Market.SPOT if asset_index >= SPOT_INDEX_OFFSET else Market.PERP
            await self.get_universe_metadata(market)
        try:
            return self._coins[asset_index]
        except KeyError as exc:
            raise ValueError(f"unknown_asset_index: {asset_index}") from exc

    def _next_oid(self) -> int:
        oid = self._state.next_oid
        self._state.next_oid += 1
        return oid

    def _load_state(self, initial_equity: float) -> _PaperState:
        if not self._state_file.exists():
            return _PaperState(equity=initial_equity, initial_equity=initial_equity)

        raw = json.loads(self._state_file.read_text(encoding="utf-8"))
        return _PaperState(
            equity=float(raw.get("equity", initial_equity)),
            initial_equity=float(raw.get("initial_equity", initial_equity)),
            next_oid=int(raw.get("next_oid", 1)),
            positions={
                coin: _PaperPosition(**payload)
                for coin, payload in (raw.get("positions") or {}).items()
            },
            spot_balances={k: float(v) for k, v in (raw.get("spot_balances") or {}).items()},
            orders={
                int(oid): _PaperOrder(**payload)
                for oid, payload in (raw.get("orders") or {}).items()
            },
            leverage={str(k): int(v) for k, v in (raw.get("leverage") or {}).items()},
        )

    def _persist(self) -> None:
        payload = asdict(self._state)
        serialized = json.dumps(payload, ensure_ascii=True, indent=2)
        self._state_file.write_text(serialized, encoding="utf-8")


def _status(status: dict[str, Any]) -> dict[str, Any]:
    return {"status": "ok", "response": {"type": "order", "data": {"statuses": [status]}}}


def _trigger_hit(order: _PaperOrder, book: TopOfBook) -> bool:
    mid = float(book.mid)
    trigger = order.trigger_price or 0.0
    # exit side: a sell closes a long, a buy closes a short
    closes_long = not order.is_buy
    if order.tpsl == TriggerRole.STOP_LOSS.value:
        return mid <= trigger if closes_long else mid >= trigger
    return mid >= trigger if closes_long else mid <= trigger
