"""Exchange gateway interface consumed by the execution engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Protocol, TypeVar, runtime_checkable

from hl_toolkit.errors import GatewayFailure, ToolkitError
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
    TopOfBook,
)


@dataclass(frozen=True, slots=True)
class UniverseAsset:
    """One entry of a market universe.

    For perps ``name`` is the coin and ``index`` its universe position. For
    spot ``name`` is the pair name (``PURR/USDC`` or an alias like ``@107``),
    ``index`` the pair's universe index and ``base_token`` the base token
    name whose ``size_decimals`` apply.
    """

    name: str
    index: int
    size_decimals: int
    base_token: str | None = None


@dataclass(slots=True)
class UniverseMetadata:
    market: Market
    assets: list[UniverseAsset] = field(default_factory=list)


@runtime_checkable
class ExchangeGateway(Protocol):
    """Async market-data and order-entry surface of an exchange.

    ``submit_order`` returns the exchange's raw response payload; decoding
    it is the caller's job.
    """

    async def get_top_of_book(self, coin: str) -> TopOfBook: ...

    async def get_order_book(self, coin: str, depth: int = 10) -> OrderBook: ...

    async def get_market_data(self, coins: list[str] | None = None) -> list[MarketSnapshot]: ...

    async def get_universe_metadata(self, market: Market) -> UniverseMetadata: ...

    async def set_leverage(self, asset_index: int, leverage: int, cross_margin: bool) -> None: ...

    async def submit_order(
        self,
        asset_index: int,
        is_buy: bool,
        price: str,
        size: str,
        reduce_only: bool,
        order_spec: OrderSpec,
        grouping: Grouping = Grouping.NONE,
    ) -> Any: ...

    async def cancel_orders(self, requests: list[CancelRequest]) -> None: ...

    async def get_open_orders(self, user: str | None = None) -> list[OpenOrder]: ...

    async def get_positions(self) -> list[Position]: ...

    async def get_account_balance(self) -> AccountBalance: ...


T = TypeVar("T")


async def guarded(operation: str, awaitable: Awaitable[T]) -> T:
    """Await a gateway call, wrapping foreign exceptions as GatewayFailure."""
    try:
        return await awaitable
    except ToolkitError:
        raise
    except Exception as exc:
        raise GatewayFailure(operation, exc) from exc
