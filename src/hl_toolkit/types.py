"""Shared domain types for the execution engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Literal

OrderSide = Literal["long", "short", "buy", "sell"]
OrderKind = Literal["market", "limit"]


class Market(str, Enum):
    """Market type of an instrument."""

    PERP = "perp"
    SPOT = "spot"


class TimeInForce(str, Enum):
    """Time-in-force for limit orders (exchange wire spelling)."""

    IOC = "Ioc"
    GTC = "Gtc"


class TriggerRole(str, Enum):
    """Role of a trigger order attached to a position."""

    STOP_LOSS = "sl"
    TAKE_PROFIT = "tp"


class Grouping(str, Enum):
    """Order grouping tag sent with a submission."""

    NONE = "na"
    POSITION_LINKED = "positionTpsl"


@dataclass(frozen=True, slots=True)
class InstrumentRef:
    """Identity of a tradable instrument."""

    symbol: str
    market: Market = Market.PERP

    @classmethod
    def of(cls, symbol: str, market: Market | str = Market.PERP) -> "InstrumentRef":
        return cls(symbol=symbol.strip().upper(), market=Market(market))


@dataclass(frozen=True, slots=True)
class AssetInfo:
    """Exchange asset index and size precision for one instrument."""

    index: int
    size_decimals: int
    pair_name: str


@dataclass(frozen=True, slots=True)
class TopOfBook:
    """Best bid and best ask."""

    best_bid: Decimal
    best_ask: Decimal

    @property
    def mid(self) -> Decimal:
        return (self.best_bid + self.best_ask) / 2


@dataclass(frozen=True, slots=True)
class BookLevel:
    price: Decimal
    size: Decimal


@dataclass(slots=True)
class OrderBook:
    """L2 depth, best level first on each side."""

    coin: str
    bids: list[BookLevel] = field(default_factory=list)
    asks: list[BookLevel] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class MarketSnapshot:
    """Mid price and 24h context for one perp."""

    coin: str
    price: float
    volume_24h: float = 0.0
    funding_rate: float = 0.0
    open_interest: float = 0.0


@dataclass(frozen=True, slots=True)
class PositionPreview:
    """Estimated outcome of opening a position against current depth."""

    coin: str
    side: Literal["buy", "sell"]
    size: float
    notional: float
    estimated_fill_price: float
    estimated_slippage_pct: float
    estimated_fees: float
    estimated_liquidation_price: float | None
    levels_consumed: int


@dataclass(frozen=True, slots=True)
class LimitSpec:
    """Plain limit order."""

    tif: TimeInForce


@dataclass(frozen=True, slots=True)
class TriggerSpec:
    """Trigger order used for stop-loss / take-profit legs."""

    trigger_price: str
    is_market: bool
    role: TriggerRole


OrderSpec = LimitSpec | TriggerSpec


@dataclass(slots=True)
class OrderIntent:
    """Caller-supplied request to open a position."""

    symbol: str
    side: OrderSide
    market: Market = Market.PERP
    size_usd: float | None = None
    size_coin: float | None = None
    leverage: float | None = None
    order_type: OrderKind = "market"
    limit_price: float | None = None
    stop_loss_price: float | None = None
    stop_loss_percent: float | None = None
    take_profit_price: float | None = None
    take_profit_percent: float | None = None
    slippage_percent: float | None = None

    @property
    def instrument(self) -> InstrumentRef:
        return InstrumentRef.of(self.symbol, self.market)

    @property
    def is_buy(self) -> bool:
        return self.side.lower() in ("long", "buy")

    @property
    def is_limit(self) -> bool:
        return self.order_type == "limit" and self.limit_price is not None

    @property
    def has_stop_loss(self) -> bool:
        return bool(self.stop_loss_price) or bool(self.stop_loss_percent)

    @property
    def has_take_profit(self) -> bool:
        return bool(self.take_profit_price) or bool(self.take_profit_percent)


@dataclass(slots=True)
class CloseIntent:
    """Caller-supplied request to close (part of) a perp position."""

    symbol: str
    percent: float = 100.0
    slippage_percent: float | None = None


@dataclass(frozen=True, slots=True)
class ResolvedOrder:
    """Exchange-ready order fields for one submission."""

    asset_index: int
    is_buy: bool
    price: str
    size: str
    reduce_only: bool
    spec: OrderSpec
    grouping: Grouping = Grouping.NONE


@dataclass(frozen=True, slots=True)
class ExecutionOutcome:
    """Uniform result of one order submission."""

    success: bool
    status: Literal["filled", "resting", "pending", "error"]
    order_id: int | None = None
    error: str | None = None


@dataclass(slots=True)
class Position:
    """Open perp position as reported by the exchange."""

    coin: str
    side: Literal["long", "short"]
    size: float
    entry_price: float
    current_price: float
    leverage: float
    unrealized_pnl: float
    unrealized_pnl_percent: float = 0.0
    liquidation_price: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None


@dataclass(frozen=True, slots=True)
class AccountBalance:
    """Account margin summary."""

    account_value: float
    available_balance: float
    margin_used: float
    withdrawable: float


@dataclass(frozen=True, slots=True)
class OpenOrder:
    """Resting order as reported by the exchange."""

    coin: str
    order_id: int


@dataclass(frozen=True, slots=True)
class CancelRequest:
    asset_index: int
    order_id: int


@dataclass(slots=True)
class LegResult:
    """Outcome of one leg of a multi-leg execution."""

    leg: Literal["entry", "stop_loss", "take_profit", "close"]
    outcome: ExecutionOutcome
    price: str | None = None
    size: str | None = None


@dataclass(slots=True)
class TradeResult:
    """Terminal result of an open/close/cancel request."""

    success: bool
    state: str
    order_id: int | None = None
    error: str | None = None
    error_code: str | None = None
    warnings: list[str] = field(default_factory=list)
    legs: list[LegResult] = field(default_factory=list)
    data: dict[str, object] = field(default_factory=dict)

    @property
    def partial(self) -> bool:
        """Entry succeeded but a protective leg failed."""
        return self.success and any(
            not leg.outcome.success for leg in self.legs if leg.leg != "entry"
        )


@dataclass(slots=True)
class RiskCheckResult:
    """Result of a pre-trade risk check."""

    allowed: bool
    reason: str | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class TradeRecord:
    """One realized trade kept in the bounded history."""

    timestamp: float
    pnl: float
