from __future__ import annotations

import asyncio
from collections import Counter
from decimal import Decimal
from typing import Any

import pytest

from hl_toolkit.errors import NoLiquidity
from hl_toolkit.exec.pricing import PricingEngine
from hl_toolkit.exec.sequencer import ExecutionSequencer
from hl_toolkit.gateway.base import UniverseAsset, UniverseMetadata
from hl_toolkit.market.registry import AssetRegistry
from hl_toolkit.risk.rules import RiskGate
from hl_toolkit.types import (
    AccountBalance,
    BookLevel,
    CancelRequest,
    Grouping,
    Market,
    MarketSnapshot,
    OpenOrder,
    OrderBook,
    OrderSpec,
    Position,
    TopOfBook,
)


class FakeGateway:
    """In-memory exchange with scripted order responses."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.fetches: Counter[Market] = Counter()
        self.perp_assets = [
            UniverseAsset(name="BTC", index=0, size_decimals=3),
            UniverseAsset(name="ETH", index=1, size_decimals=4),
            UniverseAsset(name="SOL", index=5, size_decimals=2),
        ]
        self.spot_assets = [
            UniverseAsset(name="PURR/USDC", index=0, size_decimals=0, base_token="PURR"),
            UniverseAsset(name="@107", index=107, size_decimals=2, base_token="HYPE"),
            UniverseAsset(name="@200", index=200, size_decimals=1, base_token="HYPE"),
        ]
        self.books: dict[str, TopOfBook] = {
            "BTC": TopOfBook(best_bid=Decimal("100"), best_ask=Decimal("101")),
            "ETH": TopOfBook(best_bid=Decimal("2500"), best_ask=Decimal("2501")),
            "PURR/USDC": TopOfBook(best_bid=Decimal("0.2"), best_ask=Decimal("0.21")),
        }
        self.depth: dict[str, OrderBook] = {}
        self.order_responses: list[Any] = []
        self.failures: dict[str, Exception] = {}
        self.positions: list[Position] = []
        self.balance = AccountBalance(
            account_value=10_000.0,
            available_balance=10_000.0,
            margin_used=0.0,
            withdrawable=10_000.0,
        )
        self.open_orders: list[OpenOrder] = []
        self._next_oid = 100

    @staticmethod
    def filled(oid: int, size: str = "1", price: str = "100") -> dict[str, Any]:
        return _envelope({"filled": {"totalSz": size, "avgPx": price, "oid": oid}})

    @staticmethod
    def resting(oid: int) -> dict[str, Any]:
        return _envelope({"resting": {"oid": oid}})

    @staticmethod
    def error(message: str) -> dict[str, Any]:
        return _envelope({"error": message})

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def orders(self) -> list[tuple[Any, ...]]:
        return [args for name, args in self.calls if name == "submit_order"]

    async def _enter(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        await asyncio.sleep(0)
        if name in self.failures:
            raise self.failures[name]

    async def get_top_of_book(self, coin: str) -> TopOfBook:
        await self._enter("get_top_of_book", coin)
        book = self.books.get(coin)
        if book is None:
            raise NoLiquidity(f"No order book available for {coin}")
        return book

    async def get_order_book(self, coin: str, depth: int = 10) -> OrderBook:
        await self._enter("get_order_book", coin, depth)
        if coin in self.depth:
            book = self.depth[coin]
        else:
            top = self.books.get(coin)
            if top is None:
                raise NoLiquidity(f"No order book available for {coin}")
            book = OrderBook(
                coin=coin,
                bids=[BookLevel(price=top.best_bid, size=Decimal("1000"))],
                asks=[BookLevel(price=top.best_ask, size=Decimal("1000"))],
            )
        return OrderBook(coin=coin, bids=book.bids[:depth], asks=book.asks[:depth])

    async def get_market_data(self, coins: list[str] | None = None) -> list[MarketSnapshot]:
        await self._enter("get_market_data", coins)
        return [
            MarketSnapshot(coin=asset.name, price=float(self.books[asset.name].mid))
            for asset in self.perp_assets
            if asset.name in self.books and (not coins or asset.name in coins)
        ]

    async def get_universe_metadata(self, market: Market) -> UniverseMetadata:
        await self._enter("get_universe_metadata", market)
        self.fetches[market] += 1
        assets = self.perp_assets if market == Market.PERP else self.spot_assets
        return UniverseMetadata(market=market, assets=list(assets))

    async def set_leverage(self, asset_index: int, leverage: int, cross_margin: bool) -> None:
        await self._enter("set_leverage", asset_index, leverage, cross_margin)

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
        await self._enter(
            "submit_order", asset_index, is_buy, price, size, reduce_only, order_spec, grouping
        )
        if self.order_responses:
            response = self.order_responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        self._next_oid += 1
        return self.filled(self._next_oid, size=size, price=price)

    async def cancel_orders(self, requests: list[CancelRequest]) -> None:
        await self._enter("cancel_orders", list(requests))

    async def get_open_orders(self, user: str | None = None) -> list[OpenOrder]:
        await self._enter("get_open_orders", user)
        return list(self.open_orders)

    async def get_positions(self) -> list[Position]:
        await self._enter("get_positions")
        return list(self.positions)

    async def get_account_balance(self) -> AccountBalance:
        await self._enter("get_account_balance")
        return self.balance


def _envelope(status: dict[str, Any]) -> dict[str, Any]:
    return {"status": "ok", "response": {"type": "order", "data": {"statuses": [status]}}}


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def registry(gateway: FakeGateway) -> AssetRegistry:
    return AssetRegistry(gateway)


@pytest.fixture
def risk_gate() -> RiskGate:
    return RiskGate({"max_leverage": 10, "max_position_size_usd": 10_000})


@pytest.fixture
def sequencer(
    gateway: FakeGateway, registry: AssetRegistry, risk_gate: RiskGate
) -> ExecutionSequencer:
    return ExecutionSequencer(
        gateway,
        registry,
        PricingEngine(gateway),
        risk_gate=risk_gate,
    )
